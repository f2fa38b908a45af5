"""Session history storage.

A session's transcript is kept as one JSON array under a single key of a
byte-oriented session store:

    chat-history:{session_key}  →  [{"role", "content", "timestamp"}, ...]

The store is anything matching SessionKV. MemorySessionKV keeps values in a
process-local dict, which matches the lifetime of a browser session against a
single app process.
"""

from __future__ import annotations

import logging
from typing import Protocol

from pydantic import TypeAdapter, ValidationError

from safechat.models import CONVERSATION_ROLES, Message

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 50
KEY_PREFIX = "chat-history:"

_transcript = TypeAdapter(list[Message])


class SessionKV(Protocol):
    def get(self, key: str) -> bytes | None: ...

    def set(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


class MemorySessionKV:
    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


def trim(transcript: list[Message], max_messages: int) -> list[Message]:
    """Keep the newest max_messages entries, in their original order."""
    if len(transcript) <= max_messages:
        return list(transcript)
    return transcript[len(transcript) - max_messages:]


class SessionHistoryStore:
    def __init__(self, kv: SessionKV, max_messages: int = DEFAULT_MAX_MESSAGES) -> None:
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self._kv = kv
        self.max_messages = max_messages

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _key(self, session_key: str) -> str:
        return f"{KEY_PREFIX}{session_key}"

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------

    def load(self, session_key: str) -> list[Message]:
        """Return the stored transcript, or [] if absent, empty or unreadable."""
        raw = self._kv.get(self._key(session_key))
        if not raw:
            return []
        try:
            return _transcript.validate_json(raw)
        except (ValidationError, ValueError):
            logger.info("Discarding unreadable chat history for session %s", session_key)
            return []

    def save(self, session_key: str, transcript: list[Message]) -> None:
        """Trim to max_messages and overwrite the stored transcript."""
        kept = [m for m in transcript if m.role in CONVERSATION_ROLES]
        kept = trim(kept, self.max_messages)
        self._kv.set(self._key(session_key), _transcript.dump_json(kept))

    def clear(self, session_key: str) -> None:
        self._kv.delete(self._key(session_key))
