"""Extraction of the B2C login page settings.

The authorize page embeds a `var SETTINGS = {...};` script block. Three values
from it drive the rest of the login flow: the transaction id, the page view id
and the CSRF token. The HTML is not an API and changes with the portal; all
scraping is kept here so a new page version only needs a new extractor.
"""

import re
from dataclasses import dataclass
from typing import Protocol

from .exceptions import SettingsNotFoundError


@dataclass(frozen=True)
class AuthorizeSettings:
    """Values scraped from the authorize page."""

    trans_id: str
    page_view_id: str
    csrf: str
    page_url: str


class PageSettingsExtractor(Protocol):
    """Turns an authorize page into AuthorizeSettings.

    Implementations raise SettingsNotFoundError naming the first missing value.
    """

    def extract(self, html: str, page_url: str) -> AuthorizeSettings:
        ...


class B2CSettingsExtractor:
    """Extractor for the current Azure B2C self-asserted page."""

    TRANS_ID_PATTERN = re.compile(r'"transId"\s*:\s*"(StateProperties=[a-zA-Z0-9]+)"')
    PAGE_VIEW_ID_PATTERN = re.compile(r'"pageViewId"\s*:\s*"([a-f0-9-]+)"')
    CSRF_PATTERN = re.compile(r'"csrf"\s*:\s*"([a-zA-Z0-9=_+/-]+)"')

    def extract(self, html: str, page_url: str) -> AuthorizeSettings:
        values = {}
        for field, pattern in (
            ("transId", self.TRANS_ID_PATTERN),
            ("pageViewId", self.PAGE_VIEW_ID_PATTERN),
            ("csrf", self.CSRF_PATTERN),
        ):
            match = pattern.search(html)
            if not match:
                raise SettingsNotFoundError(field)
            values[field] = match.group(1)

        return AuthorizeSettings(
            trans_id=values["transId"],
            page_view_id=values["pageViewId"],
            csrf=values["csrf"],
            page_url=page_url,
        )
