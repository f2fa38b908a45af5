"""Safety gate: binary classification of user text before it reaches the model.

Fail-closed: an unconfigured, unreachable or misbehaving moderation backend
yields an unsafe verdict. Only cancellation propagates.
"""

from __future__ import annotations

import logging

from safechat.errors import BackendUnavailable, ConfigurationMissing, MalformedUpstreamResponse
from safechat.models import DegradeReason, ModerationVerdict
from safechat.moderation import Category, ModerationBackend

logger = logging.getLogger(__name__)

MONITORED_CATEGORIES = (
    Category.VIOLENCE,
    Category.SEXUAL,
    Category.HATE,
    Category.SELF_HARM,
    Category.JAILBREAK,
)


class SafetyGate:
    def __init__(self, backend: ModerationBackend) -> None:
        self._backend = backend

    async def check(self, text: str) -> ModerationVerdict:
        if not self._backend.configured:
            logger.info("Content safety backend is not configured. Blocking request.")
            return ModerationVerdict(failure=DegradeReason.CONFIGURATION_MISSING)

        try:
            analysis = await self._backend.analyze(text)
        except ConfigurationMissing:
            logger.warning("Content safety backend reported missing configuration. Blocking request.")
            return ModerationVerdict(failure=DegradeReason.CONFIGURATION_MISSING)
        except MalformedUpstreamResponse:
            logger.exception("Content safety backend returned a malformed response")
            return ModerationVerdict(failure=DegradeReason.MALFORMED_RESPONSE)
        except BackendUnavailable:
            logger.exception("Content safety backend unavailable")
            return ModerationVerdict(failure=DegradeReason.BACKEND_UNAVAILABLE)
        except Exception:
            logger.exception("Error analyzing content safety")
            return ModerationVerdict(failure=DegradeReason.BACKEND_UNAVAILABLE)

        return self._verdict(analysis)

    def _verdict(self, analysis: dict[str, int]) -> ModerationVerdict:
        by_name = {name.lower(): severity for name, severity in analysis.items()}
        supported = {name.lower() for name in self._backend.supported_categories}

        severities: dict[str, int] = {}
        skipped: list[str] = []
        for category in MONITORED_CATEGORIES:
            key = category.value.lower()
            if key not in supported:
                logger.warning("Content safety backend does not support %s; skipping that check.", category.value)
                skipped.append(category.value)
                continue
            severities[category.value] = by_name.get(key, 0)

        verdict = ModerationVerdict(severities=severities, skipped=skipped)
        logger.info(
            "Content safety analysis result: %s. Unsafe=%s",
            ", ".join(f"{k}:{v}" for k, v in severities.items()),
            not verdict.is_safe,
        )
        return verdict
