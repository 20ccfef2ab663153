"""Ocea resident API client.

Read access to the resident portal's private REST API:
- resident profile and occupations
- unit ("local") description, including the billed fluids
- per-fluid consumption dashboards
- device indexes (two calls: a statement token, then the index request)

Every request carries a bearer token obtained from a TokenProvider.
"""

import aiohttp
import asyncio
import json
import logging
from datetime import date
from typing import Any, List, Optional, Protocol

from pydantic import ValidationError

from .exceptions import OceaAPIError, ServiceUnavailableError
from .models import Dashboard, Device, Local, MaintenanceResponse, Resident

logger = logging.getLogger(__name__)

OCEA_API_BASE_URL = "https://espace-resident-api.ocea-sb.com/api/v1"

# Reason sent along index requests, as done by the portal's "move-in report" page
INDEX_REQUEST_REASON = "RealisationEtatDesLieux"


class TokenProvider(Protocol):
    async def get_token(self) -> str:
        ...


class OceaClient:
    """Async client for the Ocea resident API."""

    def __init__(self, token_provider: TokenProvider, base_url: str = OCEA_API_BASE_URL, timeout: float = 10):
        """Initialize the API client.

        Args:
            token_provider: Source of bearer tokens (usually a TokenManager)
            base_url: API root, without trailing slash
            timeout: Request timeout in seconds
        """
        self.token_provider = token_provider
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self):
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> Any:
        """Send an authenticated request and return the decoded JSON body.

        Raises:
            ServiceUnavailableError: The portal answered with its maintenance payload
            OceaAPIError: Any other HTTP, transport or decoding failure
        """
        token = await self.token_provider.get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        url = f"{self.base_url}{path}"

        try:
            session = await self._get_session()
            async with session.request(method, url, params=params, json=json_body, headers=headers) as response:
                if response.status < 200 or response.status >= 400:
                    body = await response.text()
                    self._raise_for_error(response.status, path, body)
                return await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise OceaAPIError(f"Ocea API: Timeout on {method} {path}") from e
        except aiohttp.ClientError as e:
            raise OceaAPIError(f"Ocea API: Error on {method} {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise OceaAPIError(f"Ocea API: Invalid JSON from {path}: {e}") from e

    def _raise_for_error(self, status: int, path: str, body: str):
        """Raise the error matching a non-2xx/3xx response."""
        try:
            payload = json.loads(body) if body else None
        except json.JSONDecodeError:
            payload = None

        maintenance = MaintenanceResponse.from_body(payload)
        if maintenance is not None:
            logger.warning(f"Ocea API: Maintenance mode ({maintenance.ErrorMessage or 'no message'})")
            raise ServiceUnavailableError(
                status=status,
                message=maintenance.ErrorMessage,
                page_url=maintenance.MaintenancePageUrl,
            )

        logger.warning(f"Ocea API: HTTP {status} from {path}")
        raise OceaAPIError(f"HTTP request failed: invalid status code {status} on {path}", status=status)

    @staticmethod
    def _parse(model, data: Any, what: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise OceaAPIError(f"Ocea API: Unexpected {what} payload: {e}") from e

    async def get_resident(self) -> Resident:
        """Get the authenticated resident and its occupations."""
        data = await self._request("GET", "/resident")
        return self._parse(Resident, data, "resident")

    async def get_local(self, local_id: str) -> Local:
        """Get a unit and the fluids it is billed for."""
        data = await self._request("GET", f"/local/{local_id}")
        return self._parse(Local, data, "local")

    async def get_fluid_dashboard(self, local_id: str, fluid: str) -> Dashboard:
        """Get the consumption dashboard of one fluid."""
        data = await self._request("GET", f"/local/{local_id}/conso/dashboard/{fluid}")
        return self._parse(Dashboard, data, "dashboard")

    async def get_devices(self, local_id: str, statement_date: Optional[date] = None) -> List[Device]:
        """Get the absolute indexes of the unit's devices for a given day.

        The portal treats this as an audited action: a statement token must
        first be requested for the date, then posted back to get the list.
        Only devices that reported on that day are returned.

        Args:
            local_id: Unit identifier
            statement_date: Day of the statement (default: today)

        Returns:
            List of Device objects
        """
        day = statement_date or date.today()
        params = {
            "dateDemande": f"{day.isoformat()}T00:00:00.000Z",
            "raisonConforme": INDEX_REQUEST_REASON,
        }

        token = await self._request("GET", f"/local/{local_id}/indexes/token", params=params)
        if not isinstance(token, str) or not token:
            raise OceaAPIError("failed to get statement token: (empty)")

        data = await self._request("POST", "/local/indexes/demande", json_body={"localId": local_id, "token": token})
        if not isinstance(data, list):
            raise OceaAPIError(f"Ocea API: Unexpected device list payload: {type(data).__name__}")

        devices = [self._parse(Device, item, "device") for item in data]
        logger.debug(f"Ocea API: {len(devices)} devices for local {local_id} on {day.isoformat()}")
        return devices
