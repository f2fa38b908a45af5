"""Completion client: HTTP connection to a chat-completion backend.

The orchestrator consumes any object matching the protocol:

    configured: bool
    async def complete(self, messages: list[PromptMessage]) -> list[str]: ...

`complete` returns the content items of the reply (possibly empty) and raises
BackendUnavailable / MalformedUpstreamResponse on failure.

Three implementations are provided:

    HttpCompletionBackend        : real HTTP client, supports Azure OpenAI and
                                   OpenAI-compatible endpoints. Selected by
                                   provider_format.
    EchoCompletionBackend        : repeats the last user message. Useful for
                                   smoke-testing the app without a model.
    UnconfiguredCompletionBackend: stands in when no endpoint is configured.

Production code builds an HttpCompletionBackend from Settings. Tests use
StubCompletion (defined in conftest.py) instead.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Protocol

import httpx

from safechat.credentials import Credential
from safechat.errors import BackendUnavailable, ConfigurationMissing, MalformedUpstreamResponse
from safechat.models import PromptMessage, Role

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol: every completion backend must match this shape
# ---------------------------------------------------------------------------

class CompletionBackend(Protocol):
    configured: bool

    async def complete(self, messages: list[PromptMessage]) -> list[str]: ...


# ---------------------------------------------------------------------------
# HttpCompletionBackend: connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["azure", "openai"]

DEFAULT_API_VERSION = "2024-10-21"


class HttpCompletionBackend:
    """Async HTTP client for chat-completion backends.

    Supported formats:
      "azure"  : POST /openai/deployments/{deployment}/chat/completions?api-version=...
                  {"messages": [...]}
      "openai" : POST /v1/chat/completions  {"model": ..., "messages": [...]}
    Both answer with {"choices": [{"message": {"content": ...}}]}.

    Args:
        endpoint:        Base URL, e.g. "https://my-resource.openai.azure.com".
        deployment:      Azure deployment name, or the model id for openai.
        credential:      Supplies auth headers for each call.
        provider_format: Wire format to use. Defaults to "azure".
        api_version:     Azure api-version query parameter.
        timeout:         HTTP timeout in seconds. Defaults to 30.
    """

    configured = True

    def __init__(
        self,
        endpoint: str,
        deployment: str,
        credential: Credential,
        provider_format: ProviderFormat = "azure",
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = endpoint.rstrip("/")
        self._deployment = deployment
        self._credential = credential
        self._format = provider_format
        self._api_version = api_version
        self._timeout = timeout

    async def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        headers.update(await self._credential.headers())
        return headers

    def _build_request(self, messages: list[PromptMessage]) -> tuple[str, dict[str, Any], dict]:
        """Return (url, params, body) for the configured format."""
        payload = [m.model_dump() for m in messages]
        if self._format == "openai":
            url = f"{self._base_url}/v1/chat/completions"
            return url, {}, {"model": self._deployment, "messages": payload}

        url = f"{self._base_url}/openai/deployments/{self._deployment}/chat/completions"
        return url, {"api-version": self._api_version}, {"messages": payload}

    def _parse_response(self, data: Any) -> list[str]:
        """Extract the content items of the first choice."""
        if not isinstance(data, dict) or not isinstance(data.get("choices"), list):
            raise MalformedUpstreamResponse("Unexpected response format from completion backend")
        choices = data["choices"]
        if not choices:
            return []

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if not isinstance(message, dict):
            raise MalformedUpstreamResponse("Completion choice has no message")
        content = message.get("content")
        if content is None:
            return [""]
        if isinstance(content, str):
            return [content]
        if isinstance(content, list):
            # Content-part arrays: [{"type": "text", "text": "..."}]
            items = []
            for part in content:
                if not isinstance(part, dict):
                    continue
                text = part.get("text")
                if text is None:
                    text = ""
                if not isinstance(text, str):
                    raise MalformedUpstreamResponse(
                        f"Unsupported content part text {type(text).__name__}"
                    )
                items.append(text)
            return items
        raise MalformedUpstreamResponse(f"Unsupported content type {type(content).__name__}")

    async def complete(self, messages: list[PromptMessage]) -> list[str]:
        url, params, body = self._build_request(messages)
        logger.debug("completion call url=%s messages=%d", url, len(messages))

        try:
            headers = await self._headers()
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, params=params, json=body, headers=headers)
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise BackendUnavailable(f"Cannot connect to completion backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise BackendUnavailable(
                f"Completion backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise BackendUnavailable(f"Completion backend timed out after {self._timeout}s") from e
        except httpx.RequestError as e:
            raise BackendUnavailable(f"Request to completion backend failed: {e!r}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedUpstreamResponse("Completion backend returned invalid JSON") from e
        items = self._parse_response(data)
        logger.debug("completion response items=%d", len(items))
        return items


# ---------------------------------------------------------------------------
# EchoCompletionBackend: no network; repeats the user
# ---------------------------------------------------------------------------

class EchoCompletionBackend:
    """Replies with the last user message. No network calls."""

    configured = True

    async def complete(self, messages: list[PromptMessage]) -> list[str]:
        logger.debug("EchoCompletionBackend messages=%d", len(messages))
        for m in reversed(messages):
            if m.role == Role.USER.value:
                return [m.content]
        return []


# ---------------------------------------------------------------------------
# UnconfiguredCompletionBackend: explicit "no endpoint" variant
# ---------------------------------------------------------------------------

class UnconfiguredCompletionBackend:
    configured = False

    async def complete(self, messages: list[PromptMessage]) -> list[str]:
        raise ConfigurationMissing("Completion backend is not configured")
