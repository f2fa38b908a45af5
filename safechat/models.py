"""Core domain models.

The orchestrator, the safety gate and the history store all operate on these
types. Pydantic is used for validation and serialisation at every data
boundary (session bytes, HTTP bodies, completion requests).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, computed_field, field_validator


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


# Roles that may be replayed to the model from stored history
CONVERSATION_ROLES = (Role.USER.value, Role.ASSISTANT.value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """A single conversational turn."""

    role: str
    content: str = Field(min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("role")
    @classmethod
    def _normalise_role(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class PromptMessage(BaseModel):
    """One element of the ordered sequence sent to the completion backend."""

    role: str
    content: str


class DegradeReason(str, Enum):
    CONFIGURATION_MISSING = "configuration_missing"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    MALFORMED_RESPONSE = "malformed_response"


class ReplyStatus(str, Enum):
    """How an exchange ended. Everything except OK is a degraded outcome."""

    OK = "ok"
    REFUSED = "refused"
    UNCONFIGURED = "unconfigured"
    UNAVAILABLE = "unavailable"
    NO_CONTENT = "no_content"
    EMPTY = "empty"


SEVERITY_THRESHOLD = 2


class ModerationVerdict(BaseModel):
    """Per-category severities for one piece of text. Never persisted."""

    severities: dict[str, int] = Field(default_factory=dict)
    skipped: list[str] = Field(default_factory=list)
    failure: DegradeReason | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_safe(self) -> bool:
        if self.failure is not None:
            return False
        return all(s < SEVERITY_THRESHOLD for s in self.severities.values())


class Exchange(BaseModel):
    """Result of one orchestrated turn: both new messages plus the bounded transcript."""

    user_message: Message
    assistant_message: Message
    status: ReplyStatus
    transcript: list[Message]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def persisted(self) -> bool:
        return self.status is not ReplyStatus.REFUSED
