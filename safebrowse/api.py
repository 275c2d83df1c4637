"""
Remote threat service client

Thin async wrapper over the Safe Browsing v4 Update API endpoints:

- threatListUpdates:fetch - per-list diffs against our client states
- fullHashes:find - full hashes for locally matched prefixes

Only hash prefixes ever leave the process. Every failure (transport, HTTP
status, JSON, schema) surfaces as RemoteServiceError.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

import httpx
from pydantic import BaseModel, ValidationError

from .errors import RemoteServiceError
from .models import FullHashesResponse, ListIdentity, ThreatListUpdatesResponse

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://safebrowsing.googleapis.com/v4"


class SafeBrowsingAPI:
    """Client for the remote update and full-hash endpoints"""

    def __init__(
        self,
        api_key: str,
        client_id: str = "safebrowse",
        client_version: str = "1.0.0",
        base_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            api_key: API key sent as the ``key`` query parameter
            client_id: Client identity reported to the service
            client_version: Client version reported to the service
            base_url: Service root, without a trailing slash
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self._api_key = api_key
        self.client_id = client_id
        self.client_version = client_version
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def _client_info(self) -> Dict[str, str]:
        return {"clientId": self.client_id, "clientVersion": self.client_version}

    async def fetch_threat_list_updates(
        self, list_states: Sequence[Tuple[ListIdentity, Optional[str]]]
    ) -> ThreatListUpdatesResponse:
        """
        Ask for updates to every list, given our current client state for each.

        Lists without a state omit it, which the service answers with a full
        update.
        """
        requests = []
        for list_id, state in list_states:
            request: Dict[str, Any] = list_id.to_request()
            if state:
                request["state"] = state
            request["constraints"] = {"supportedCompressions": ["RAW"]}
            requests.append(request)

        body = {"client": self._client_info, "listUpdateRequests": requests}
        return await self._post(
            "threatListUpdates:fetch", body, ThreatListUpdatesResponse
        )

    async def find_full_hashes(
        self,
        prefixes: Iterable[str],
        threat_types: Iterable[str],
        platform_types: Iterable[str],
        threat_entry_types: Iterable[str],
        client_states: Iterable[str],
    ) -> FullHashesResponse:
        """Resolve base64 hash prefixes to the full hashes the service knows"""
        body = {
            "client": self._client_info,
            "clientStates": list(client_states),
            "threatInfo": {
                "threatTypes": list(threat_types),
                "platformTypes": list(platform_types),
                "threatEntryTypes": list(threat_entry_types),
                "threatEntries": [{"hash": prefix} for prefix in prefixes],
            },
        }
        return await self._post("fullHashes:find", body, FullHashesResponse)

    async def _post(self, method: str, body: Dict[str, Any], model: type) -> BaseModel:
        url = f"{self.base_url}/{method}"
        logger.debug(f"POST {url}")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    url,
                    params={"key": self._api_key},
                    json=body,
                    headers={"User-Agent": f"{self.client_id}/{self.client_version}"},
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as e:
            raise RemoteServiceError(
                f"{method} returned HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise RemoteServiceError(f"{method} request failed: {e}") from e
        except ValueError as e:
            raise RemoteServiceError(f"{method} returned invalid JSON: {e}") from e

        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise RemoteServiceError(f"{method} returned an unexpected body: {e}") from e
