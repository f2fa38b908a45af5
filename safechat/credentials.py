"""Credential strategies shared by the completion and moderation adapters.

Every strategy matches the protocol:

    async def headers(self) -> dict[str, str]: ...

and returns the auth headers to merge into the outgoing request.

    ApiKeyCredential         : static key in a service-specific header
                               ("api-key" for OpenAI, "Ocp-Apim-Subscription-Key"
                               for Content Safety).
    BearerTokenCredential    : static Entra ID / OpenAI bearer token.
    ManagedIdentityCredential: fetches and caches a token from the App Service
                               identity endpoint or the VM metadata service.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Protocol

import httpx

from safechat.errors import BackendUnavailable, MalformedUpstreamResponse

logger = logging.getLogger(__name__)

COGNITIVE_SERVICES_RESOURCE = "https://cognitiveservices.azure.com"
IMDS_TOKEN_URL = "http://169.254.169.254/metadata/identity/oauth2/token"

# Refresh cached tokens this many seconds before they expire
_REFRESH_MARGIN = 300


class Credential(Protocol):
    async def headers(self) -> dict[str, str]: ...


class ApiKeyCredential:
    def __init__(self, key: str, header: str = "api-key") -> None:
        self._key = key
        self._header = header

    async def headers(self) -> dict[str, str]:
        return {self._header: self._key}


class BearerTokenCredential:
    def __init__(self, token: str) -> None:
        self._token = token

    async def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}


class ManagedIdentityCredential:
    """Keyless auth through the host's managed identity.

    Uses IDENTITY_ENDPOINT/IDENTITY_HEADER when present (App Service,
    Container Apps), otherwise the instance metadata service. client_id
    selects a user-assigned identity.
    """

    def __init__(
        self,
        client_id: str = "",
        resource: str = COGNITIVE_SERVICES_RESOURCE,
        timeout: float = 10.0,
    ) -> None:
        self._client_id = client_id
        self._resource = resource
        self._timeout = timeout
        self._token = ""
        self._expires_on = 0.0

    def _build_request(self) -> tuple[str, dict[str, str], dict[str, str]]:
        """Return (url, params, headers) for whichever identity endpoint is available."""
        params = {"resource": self._resource}
        if self._client_id:
            params["client_id"] = self._client_id

        endpoint = os.getenv("IDENTITY_ENDPOINT", "")
        identity_header = os.getenv("IDENTITY_HEADER", "")
        if endpoint and identity_header:
            params["api-version"] = "2019-08-01"
            return endpoint, params, {"X-IDENTITY-HEADER": identity_header}

        params["api-version"] = "2018-02-01"
        return IMDS_TOKEN_URL, params, {"Metadata": "true"}

    async def _fetch_token(self) -> None:
        url, params, headers = self._build_request()
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(url, params=params, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise BackendUnavailable(
                f"Managed identity endpoint returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise BackendUnavailable("Cannot reach managed identity endpoint") from e

        try:
            data = resp.json()
            self._token = data["access_token"]
            self._expires_on = float(data["expires_on"])
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedUpstreamResponse("Unexpected token response from managed identity endpoint") from e
        logger.debug("managed identity token refreshed, expires_on=%d", self._expires_on)

    async def headers(self) -> dict[str, str]:
        if not self._token or time.time() >= self._expires_on - _REFRESH_MARGIN:
            await self._fetch_token()
        return {"Authorization": f"Bearer {self._token}"}
