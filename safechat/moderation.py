"""Moderation client: HTTP connection to a text content-safety service.

The safety gate consumes any object matching the protocol:

    configured: bool
    supported_categories: frozenset[str]
    async def analyze(self, text: str) -> dict[str, int]: ...

`analyze` returns category → severity for the categories the backend
evaluated, and raises BackendUnavailable / MalformedUpstreamResponse on
failure.

    HttpModerationBackend        : Azure AI Content Safety text analysis,
                                   optionally with Prompt Shields for jailbreak
                                   detection.
    UnconfiguredModerationBackend: stands in when no endpoint is configured.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Protocol

import httpx

from safechat.credentials import Credential
from safechat.errors import BackendUnavailable, ConfigurationMissing, MalformedUpstreamResponse

logger = logging.getLogger(__name__)


class Category(str, Enum):
    HATE = "Hate"
    SELF_HARM = "SelfHarm"
    SEXUAL = "Sexual"
    VIOLENCE = "Violence"
    JAILBREAK = "Jailbreak"


HARM_CATEGORIES = (Category.HATE, Category.SELF_HARM, Category.SEXUAL, Category.VIOLENCE)

DEFAULT_API_VERSION = "2024-09-01"

# Prompt Shields is binary; report a detected attack on the upper end of the scale
ATTACK_SEVERITY = 6


class ModerationBackend(Protocol):
    configured: bool
    supported_categories: frozenset[str]

    async def analyze(self, text: str) -> dict[str, int]: ...


class HttpModerationBackend:
    """Async client for Azure AI Content Safety.

      POST /contentsafety/text:analyze?api-version=...
           {"text": ..., "categories": [...], "outputType": "FourSeverityLevels"}
           → {"categoriesAnalysis": [{"category": "Hate", "severity": 2}, ...]}

      POST /contentsafety/text:shieldPrompt?api-version=...   (prompt_shield=True)
           {"userPrompt": ..., "documents": []}
           → {"userPromptAnalysis": {"attackDetected": true}}

    Without prompt_shield the Jailbreak category is unsupported.
    """

    configured = True

    def __init__(
        self,
        endpoint: str,
        credential: Credential,
        prompt_shield: bool = False,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = endpoint.rstrip("/")
        self._credential = credential
        self._prompt_shield = prompt_shield
        self._api_version = api_version
        self._timeout = timeout
        categories = {c.value for c in HARM_CATEGORIES}
        if prompt_shield:
            categories.add(Category.JAILBREAK.value)
        self.supported_categories = frozenset(categories)

    async def _post(self, client: httpx.AsyncClient, operation: str, body: dict) -> Any:
        url = f"{self._base_url}/contentsafety/text:{operation}"
        headers = {"Content-Type": "application/json"}
        headers.update(await self._credential.headers())
        try:
            resp = await client.post(
                url, params={"api-version": self._api_version}, json=body, headers=headers
            )
            resp.raise_for_status()
        except httpx.ConnectError as e:
            raise BackendUnavailable(f"Cannot connect to moderation backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise BackendUnavailable(
                f"Moderation backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise BackendUnavailable(f"Moderation backend timed out after {self._timeout}s") from e
        except httpx.RequestError as e:
            raise BackendUnavailable(f"Request to moderation backend failed: {e!r}") from e
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedUpstreamResponse("Moderation backend returned invalid JSON") from e

    def _parse_analysis(self, data: Any) -> dict[str, int]:
        analyses = data.get("categoriesAnalysis") if isinstance(data, dict) else None
        if not isinstance(analyses, list):
            raise MalformedUpstreamResponse("Unexpected response format from moderation backend")
        severities: dict[str, int] = {}
        for item in analyses:
            try:
                severities[str(item["category"])] = int(item.get("severity") or 0)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise MalformedUpstreamResponse(f"Bad category analysis entry: {item!r}") from e
        return severities

    def _parse_shield(self, data: Any) -> int:
        analysis = data.get("userPromptAnalysis") if isinstance(data, dict) else None
        if not isinstance(analysis, dict) or "attackDetected" not in analysis:
            raise MalformedUpstreamResponse("Unexpected response format from prompt shield")
        return ATTACK_SEVERITY if analysis["attackDetected"] else 0

    async def analyze(self, text: str) -> dict[str, int]:
        analyze_body = {
            "text": text,
            "categories": [c.value for c in HARM_CATEGORIES],
            "outputType": "FourSeverityLevels",
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            if self._prompt_shield:
                tasks = [
                    asyncio.ensure_future(self._post(client, "analyze", analyze_body)),
                    asyncio.ensure_future(
                        self._post(client, "shieldPrompt", {"userPrompt": text, "documents": []})
                    ),
                ]
                try:
                    analysis, shield = await asyncio.gather(*tasks)
                finally:
                    # A failed call must not leave its sibling running on a closed client
                    for task in tasks:
                        task.cancel()
                    await asyncio.gather(*tasks, return_exceptions=True)
            else:
                analysis = await self._post(client, "analyze", analyze_body)
                shield = None

        severities = self._parse_analysis(analysis)
        if shield is not None:
            severities[Category.JAILBREAK.value] = self._parse_shield(shield)
        return severities


class UnconfiguredModerationBackend:
    configured = False
    supported_categories: frozenset[str] = frozenset()

    async def analyze(self, text: str) -> dict[str, int]:
        raise ConfigurationMissing("Moderation backend is not configured")
