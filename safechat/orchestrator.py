"""Conversation orchestrator: runs one user turn end-to-end.

Turn flow:
  1. Classify the user text with the safety gate.
     Unsafe (or gate failure) → fixed refusal, history untouched, no model call.
  2. Build the prompt: system prompt, stored user/assistant turns, new user text.
  3. Call the completion backend; every failure maps to a fixed reply.
  4. Append the user turn and the assistant turn, trim to the history bound.
  5. handle() persists the trimmed transcript, except after a refusal.

No backend failure crosses this boundary as an exception. Cancellation does,
and because the save is the last step nothing is partially persisted.
"""

from __future__ import annotations

import logging
from datetime import datetime

from safechat.completion import CompletionBackend
from safechat.errors import BackendUnavailable, ConfigurationMissing, MalformedUpstreamResponse
from safechat.history import SessionHistoryStore, trim
from safechat.models import (
    CONVERSATION_ROLES,
    Exchange,
    Message,
    PromptMessage,
    ReplyStatus,
    Role,
    utcnow,
)
from safechat.safety import SafetyGate

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant for the storefront. Help customers with their "
    "questions about products, orders, and general inquiries."
)

REFUSAL_MESSAGE = (
    "Thanks for your message! I’m not able to help with that request. "
    "Please try a different question."
)
UNCONFIGURED_MESSAGE = (
    "I'm sorry, the chat service is not configured. Please contact support for assistance."
)
UNAVAILABLE_MESSAGE = (
    "I'm sorry, an error occurred while processing your request. Please try again later."
)
NO_CONTENT_MESSAGE = "I'm sorry, I couldn't generate a response. Please try again."
EMPTY_RESPONSE_MESSAGE = "I received an empty response. Please try again."


class ConversationOrchestrator:
    def __init__(
        self,
        *,
        gate: SafetyGate,
        completion: CompletionBackend,
        store: SessionHistoryStore,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        self._gate = gate
        self._completion = completion
        self._store = store
        self._system_prompt = system_prompt

    @property
    def configured(self) -> bool:
        return self._completion.configured

    # ------------------------------------------------------------------
    # Session-level operations
    # ------------------------------------------------------------------

    async def handle(self, session_key: str, user_text: str) -> Exchange:
        """Load the session transcript, run one turn, persist unless refused."""
        exchange = await self.respond(self._store.load(session_key), user_text)
        if exchange.persisted:
            self._store.save(session_key, exchange.transcript)
        return exchange

    def history(self, session_key: str) -> list[Message]:
        return self._store.load(session_key)

    def reset(self, session_key: str) -> None:
        logger.info("Clearing chat history")
        self._store.clear(session_key)

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def respond(self, history: list[Message], user_text: str) -> Exchange:
        """Turn one user message plus existing history into an Exchange."""
        if not user_text or not user_text.strip():
            raise ValueError("Message cannot be empty")

        verdict = await self._gate.check(user_text)
        if not verdict.is_safe:
            return Exchange(
                user_message=Message(role=Role.USER.value, content=user_text),
                assistant_message=Message(role=Role.ASSISTANT.value, content=REFUSAL_MESSAGE),
                status=ReplyStatus.REFUSED,
                transcript=list(history),
            )

        reply, status = await self._complete(self._build_prompt(history, user_text))

        transcript = list(history)
        user_message = Message(
            role=Role.USER.value, content=user_text, timestamp=_stamp(transcript)
        )
        transcript.append(user_message)
        assistant_message = Message(
            role=Role.ASSISTANT.value, content=reply, timestamp=_stamp(transcript)
        )
        transcript.append(assistant_message)

        return Exchange(
            user_message=user_message,
            assistant_message=assistant_message,
            status=status,
            transcript=trim(transcript, self._store.max_messages),
        )

    def _build_prompt(self, history: list[Message], user_text: str) -> list[PromptMessage]:
        prompt = [PromptMessage(role=Role.SYSTEM.value, content=self._system_prompt)]
        for m in history:
            role = m.role.lower()
            if role in CONVERSATION_ROLES:
                prompt.append(PromptMessage(role=role, content=m.content))
        prompt.append(PromptMessage(role=Role.USER.value, content=user_text))
        return prompt

    async def _complete(self, prompt: list[PromptMessage]) -> tuple[str, ReplyStatus]:
        if not self._completion.configured:
            logger.info("Completion backend is not configured. Returning fallback message.")
            return UNCONFIGURED_MESSAGE, ReplyStatus.UNCONFIGURED

        logger.info("Sending chat request with %d messages", len(prompt))
        try:
            items = await self._completion.complete(prompt)
        except ConfigurationMissing:
            logger.warning("Completion backend reported missing configuration")
            return UNCONFIGURED_MESSAGE, ReplyStatus.UNCONFIGURED
        except (BackendUnavailable, MalformedUpstreamResponse):
            logger.exception("Error getting chat response from completion backend")
            return UNAVAILABLE_MESSAGE, ReplyStatus.UNAVAILABLE
        except Exception:
            logger.exception("Unexpected error from completion backend")
            return UNAVAILABLE_MESSAGE, ReplyStatus.UNAVAILABLE

        if not items:
            logger.warning("Completion backend returned no content items")
            return NO_CONTENT_MESSAGE, ReplyStatus.NO_CONTENT

        text = items[0]
        if text is not None and not isinstance(text, str):
            logger.error("Completion backend returned a non-text content item: %r", text)
            return UNAVAILABLE_MESSAGE, ReplyStatus.UNAVAILABLE
        if not text:
            logger.warning("Completion backend returned an empty first content item")
            return EMPTY_RESPONSE_MESSAGE, ReplyStatus.EMPTY

        logger.info("Received response from completion backend")
        return text, ReplyStatus.OK


def _stamp(transcript: list[Message]) -> datetime:
    """Capture time that never goes backwards relative to the stored sequence."""
    now = utcnow()
    if transcript and transcript[-1].timestamp > now:
        return transcript[-1].timestamp
    return now
