"""Token lifecycle for the Ocea resident portal.

The portal has no public OAuth client. Tokens are obtained by replaying what
the browser does on the Azure AD B2C tenant (authorization code + PKCE):

    1. GET the authorize page with a PKCE challenge. A cookie jar is required:
       the CSRF protection relies on the x-ms-cpim-csrf cookie set here.
    2. POST the credentials to the SelfAsserted endpoint.
    3. GET the "confirmed" endpoint, which answers with a 302 whose Location
       fragment holds the authorization code.
    4. Exchange the code and the PKCE verifier for tokens.

Afterwards the access token is kept alive with the refresh token, and the full
flow is replayed only when refreshing is no longer possible.
"""

import asyncio
import base64
import hashlib
import json
import logging
import secrets
import string
import time
import uuid
from typing import Callable, Optional
from urllib.parse import parse_qs, urlparse

import httpx
from pydantic import ValidationError

from .exceptions import AuthenticationError, NoRefreshTokenError, OceaAPIError
from .login_page import AuthorizeSettings, B2CSettingsExtractor, PageSettingsExtractor
from .models import Credentials, TokenSet

logger = logging.getLogger(__name__)

# Azure AD B2C endpoints
OCEA_PORTAL_HOME = "https://espace-resident.ocea-sb.com"
B2C_ORIGIN = "https://osbespaceresident.b2clogin.com"
B2C_POLICY = "B2C_1A_SIGNUP_SIGNIN"
B2C_BASE = f"{B2C_ORIGIN}/osbespaceresident.onmicrosoft.com"
OCEA_AUTHORIZE_URL = f"{B2C_BASE}/b2c_1a_signup_signin/oauth2/v2.0/authorize"
OCEA_TOKEN_URL = f"{B2C_BASE}/b2c_1a_signup_signin/oauth2/v2.0/token"
OCEA_SELF_ASSERTED_URL = f"{B2C_BASE}/{B2C_POLICY}/SelfAsserted"
OCEA_CONFIRM_URL = f"{B2C_BASE}/{B2C_POLICY}/api/CombinedSigninAndSignup/confirmed"

OCEA_CLIENT_ID = "1cacfb15-0b3c-42cc-a662-736e4737e7d9"
OCEA_SCOPE = (
    "https://osbespaceresident.onmicrosoft.com/app-imago-espace-resident-back-prod/user_impersonation "
    "openid profile offline_access"
)

CSRF_COOKIE = "x-ms-cpim-csrf"

# Default headers
DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/107.0.0.0 Safari/537.36 Edg/107.0.1418.42"
    ),
}

PKCE_VERIFIER_LENGTH = 43
PKCE_VERIFIER_PREFIX = "clear_"


def generate_pkce_pair() -> tuple:
    """Generate a PKCE (verifier, S256 challenge) pair.

    The verifier is prefixed so it is easy to spot in network dumps.
    """
    alphabet = string.ascii_letters + string.digits
    verifier = PKCE_VERIFIER_PREFIX + "".join(secrets.choice(alphabet) for _ in range(PKCE_VERIFIER_LENGTH))
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return verifier, challenge


def generate_login_state() -> str:
    """Build the msal.js style `state` parameter."""
    state = {"id": str(uuid.uuid4()), "meta": {"interactionType": "redirect"}}
    return base64.b64encode(json.dumps(state, separators=(",", ":")).encode()).decode()


def extract_auth_code(location: Optional[str]) -> str:
    """Extract the authorization code from a redirect Location header.

    The portal uses response_mode=fragment, so the code sits after the '#'.
    """
    if not location:
        raise AuthenticationError("no location header in confirm response")

    fragment = urlparse(location).fragment
    values = parse_qs(fragment)
    code = (values.get("code") or [""])[0]
    if not code:
        raise AuthenticationError("auth code not found in redirect fragment")
    return code


class TokenManager:
    """Owns the Ocea token pair and hands out valid access tokens.

    Attributes:
        credentials: Portal username/password
        timeout: Timeout applied to every HTTP call, in seconds
    """

    def __init__(
        self,
        credentials: Credentials,
        timeout: float = 10.0,
        extractor: Optional[PageSettingsExtractor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the token manager.

        Args:
            credentials: Portal username/password
            timeout: HTTP timeout in seconds
            extractor: Login page settings extractor (default: current B2C page)
            transport: Optional httpx transport, used by tests
            clock: Returns the current epoch time in seconds
        """
        self.credentials = credentials
        self.timeout = timeout
        self._extractor = extractor or B2CSettingsExtractor()
        self._transport = transport
        self._clock = clock

        self._tokens = TokenSet()
        self._refresh_rejected = False
        self._lock = asyncio.Lock()

    @property
    def tokens(self) -> TokenSet:
        """Copy of the current token set."""
        return self._tokens.model_copy()

    async def get_token(self) -> str:
        """Return a valid access token, refreshing or logging in when needed."""
        async with self._lock:
            now = self._clock()

            if self._tokens.access_valid(now):
                return self._tokens.access_token

            if not self._refresh_rejected and self._tokens.refresh_valid(now):
                await self.refresh()
            else:
                await self.login()

            return self._tokens.access_token

    def _new_client(self) -> httpx.AsyncClient:
        # Redirects are never followed: the auth code arrives in a 302 Location
        return httpx.AsyncClient(
            follow_redirects=False,
            timeout=self.timeout,
            headers=DEFAULT_HEADERS,
            transport=self._transport,
        )

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, step: str, **kwargs) -> httpx.Response:
        """Send a request, turning transport failures into OceaAPIError."""
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise OceaAPIError(f"{step}: {type(e).__name__}: {e}") from e

    def _parse_tokens(self, resp: httpx.Response) -> TokenSet:
        try:
            tokens = TokenSet(**resp.json())
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            raise AuthenticationError(f"failed to unmarshal tokens: {e}") from e

        if not tokens.access_token:
            raise AuthenticationError("no access_token in token response")

        now = int(self._clock())
        updates = {}
        if not tokens.not_before:
            updates["not_before"] = now
        if not tokens.expires_on and tokens.expires_in:
            updates["expires_on"] = now + tokens.expires_in
        return tokens.model_copy(update=updates) if updates else tokens

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self):
        """Exchange the refresh token for a new token pair.

        Raises:
            NoRefreshTokenError: No refresh token is held
            AuthenticationError: The token endpoint refused the grant
            OceaAPIError: Network failure
        """
        if not self._tokens.refresh_token:
            raise NoRefreshTokenError()

        data = {
            "client_id": OCEA_CLIENT_ID,
            "scope": OCEA_SCOPE,
            "grant_type": "refresh_token",
            "client_info": "1",
            "client-request-id": str(uuid.uuid4()),
            "refresh_token": self._tokens.refresh_token,
        }

        async with self._new_client() as client:
            resp = await self._send(
                client, "POST", OCEA_TOKEN_URL, "refresh token",
                data=data, headers=self._token_endpoint_headers(),
            )

        if resp.status_code != 200:
            if 400 <= resp.status_code < 500:
                # Grant revoked or expired early: next attempt goes through a full login
                self._refresh_rejected = True
            raise AuthenticationError(
                f"failed to exchange refresh token: bad status code (expected 200): {resp.status_code}"
            )

        self._tokens = self._parse_tokens(resp)
        self._refresh_rejected = False
        logger.info("auth: got token from refresh")

    # =========================================================================
    # Full login
    # =========================================================================

    async def login(self):
        """Run the whole B2C login flow with the configured credentials.

        The token set is only replaced once every step succeeded.
        """
        logger.info("auth: starting login with credentials")

        request_id = str(uuid.uuid4())
        verifier, challenge = generate_pkce_pair()

        async with self._new_client() as client:
            settings = await self._step1_load_authorize_page(client, request_id, challenge)
            await self._step2_submit_credentials(client, settings)
            code = await self._step3_confirm_login(client, settings)

            # The session cookies are only needed up to the code
            client.cookies.clear()
            tokens = await self._step4_exchange_code(client, code, request_id, verifier)

        self._tokens = tokens
        self._refresh_rejected = False
        logger.info("auth: got token from credentials")

    async def _step1_load_authorize_page(
        self, client: httpx.AsyncClient, request_id: str, challenge: str
    ) -> AuthorizeSettings:
        """Step 1: Load the authorize page and scrape its SETTINGS."""
        logger.debug("Step 1: Loading authorize page...")

        params = {
            "client_id": OCEA_CLIENT_ID,
            "scope": OCEA_SCOPE,
            "redirect_uri": OCEA_PORTAL_HOME,
            "client-request-id": request_id,
            "response_mode": "fragment",
            "response_type": "code",
            "x-client-SKU": "msal.js.browser",
            "x-client-VER": "2.28.1",
            "client_info": "1",
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "nonce": str(uuid.uuid4()),
            "state": generate_login_state(),
        }

        resp = await self._send(client, "GET", OCEA_AUTHORIZE_URL, "authorize page", params=params)
        if resp.status_code != 200:
            raise AuthenticationError(f"failed to get authorize page: bad status code: {resp.status_code}")

        settings = self._extractor.extract(resp.text, str(resp.url))
        logger.debug(f"  TX: {settings.trans_id[:30]}... pageViewId: {settings.page_view_id}")
        return settings

    async def _step2_submit_credentials(self, client: httpx.AsyncClient, settings: AuthorizeSettings):
        """Step 2: Submit username and password."""
        logger.debug("Step 2: Submitting credentials...")

        csrf_cookie = None
        for cookie in client.cookies.jar:
            if cookie.name.lower() == CSRF_COOKIE:
                csrf_cookie = cookie.value
        if not csrf_cookie:
            raise AuthenticationError("csrf token not found within cookies")

        headers = {
            "Origin": B2C_ORIGIN,
            "X-CSRF-TOKEN": csrf_cookie,
            "X-Requested-With": "XMLHttpRequest",
            "Accept": "application/json",
            "Referer": settings.page_url,
        }
        data = {
            "request_type": "RESPONSE",
            "email": self.credentials.username,
            "password": self.credentials.password,
        }

        resp = await self._send(
            client, "POST", OCEA_SELF_ASSERTED_URL, "submit credentials",
            params={"tx": settings.trans_id, "p": B2C_POLICY},
            data=data,
            headers=headers,
        )
        if resp.status_code != 200:
            raise AuthenticationError(f"credential submission failed: bad status code: {resp.status_code}")

    async def _step3_confirm_login(self, client: httpx.AsyncClient, settings: AuthorizeSettings) -> str:
        """Step 3: Confirm the login and capture the auth code from the redirect."""
        logger.debug("Step 3: Confirming login...")

        diags = json.dumps(
            {"pageViewId": settings.page_view_id, "pageId": "CombinedSigninAndSignup", "trace": []},
            separators=(",", ":"),
        )
        params = {
            "p": B2C_POLICY,
            "rememberMe": "false",
            "csrf_token": settings.csrf,
            "diags": diags,
            "tx": settings.trans_id,
        }
        headers = {
            "Origin": B2C_ORIGIN,
            "Accept": "text/html",
            "Referer": settings.page_url,
        }

        resp = await self._send(client, "GET", OCEA_CONFIRM_URL, "confirm login", params=params, headers=headers)
        if resp.status_code != 302:
            raise AuthenticationError(f"failed confirm login: bad status code (expected 302): {resp.status_code}")

        return extract_auth_code(resp.headers.get("Location"))

    async def _step4_exchange_code(
        self, client: httpx.AsyncClient, code: str, request_id: str, verifier: str
    ) -> TokenSet:
        """Step 4: Exchange the auth code for tokens."""
        logger.debug("Step 4: Exchanging code...")

        data = {
            "client_id": OCEA_CLIENT_ID,
            "redirect_uri": OCEA_PORTAL_HOME,
            "scope": OCEA_SCOPE,
            "code": code,
            "code_verifier": verifier,
            "grant_type": "authorization_code",
            "client_info": "1",
            "client-request-id": request_id,
        }

        resp = await self._send(
            client, "POST", OCEA_TOKEN_URL, "exchange code",
            data=data, headers=self._token_endpoint_headers(),
        )
        if resp.status_code != 200:
            raise AuthenticationError(f"failed exchange code: bad status code (expected 200): {resp.status_code}")

        return self._parse_tokens(resp)

    def _token_endpoint_headers(self) -> dict:
        return {
            "Origin": OCEA_PORTAL_HOME,
            "Accept": "application/json",
            "Referer": OCEA_PORTAL_HOME,
        }
