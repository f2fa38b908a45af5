"""Tests for ConversationOrchestrator: gating, prompt assembly, fallbacks, persistence.

Scenarios:
  A: empty history, moderation backend absent → refusal, nothing persisted
  B: 49 stored messages, one safe exchange → 50 stored, no trim
  C: 50 stored messages, one safe exchange → still 50, two oldest dropped
  D: completion returns zero content items → fixed text, both turns persisted
  E: Hate at severity 2 → refusal
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import StubCompletion, StubModeration
from safechat.completion import HttpCompletionBackend, UnconfiguredCompletionBackend
from safechat.credentials import ApiKeyCredential
from safechat.errors import BackendUnavailable, ConfigurationMissing, MalformedUpstreamResponse
from safechat.models import Message, ReplyStatus
from safechat.moderation import UnconfiguredModerationBackend
from safechat.orchestrator import (
    EMPTY_RESPONSE_MESSAGE,
    NO_CONTENT_MESSAGE,
    REFUSAL_MESSAGE,
    UNAVAILABLE_MESSAGE,
    UNCONFIGURED_MESSAGE,
    ConversationOrchestrator,
)
from safechat.safety import SafetyGate

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _history(n: int) -> list[Message]:
    return [
        Message(
            role="user" if i % 2 == 0 else "assistant",
            content=f"turn {i}",
            timestamp=T0 + timedelta(seconds=i),
        )
        for i in range(n)
    ]


def _orchestrator(store, moderation=None, completion=None) -> ConversationOrchestrator:
    return ConversationOrchestrator(
        gate=SafetyGate(moderation or StubModeration()),
        completion=completion or StubCompletion(),
        store=store,
        system_prompt="You are a test assistant.",
    )


# ---------------------------------------------------------------------------
# Safe path
# ---------------------------------------------------------------------------

class TestSafeExchange:
    async def test_appends_user_then_assistant(self, orchestrator) -> None:
        exchange = await orchestrator.respond([], "Do you ship abroad?")
        assert exchange.status is ReplyStatus.OK
        assert [m.role for m in exchange.transcript] == ["user", "assistant"]
        assert exchange.transcript[0] == exchange.user_message
        assert exchange.transcript[1] == exchange.assistant_message
        assert exchange.user_message.content == "Do you ship abroad?"
        assert exchange.assistant_message.role == "assistant"
        assert exchange.assistant_message.content == "Happy to help."

    async def test_appends_exactly_two_to_existing_history(self, orchestrator) -> None:
        history = _history(6)
        exchange = await orchestrator.respond(history, "next")
        assert exchange.transcript[:6] == history
        assert len(exchange.transcript) == 8

    async def test_input_history_not_mutated(self, orchestrator) -> None:
        history = _history(2)
        await orchestrator.respond(history, "next")
        assert len(history) == 2

    async def test_timestamps_non_decreasing(self, orchestrator) -> None:
        future = datetime.now(timezone.utc) + timedelta(hours=1)
        history = [Message(role="user", content="from the future", timestamp=future)]
        exchange = await orchestrator.respond(history, "next")
        stamps = [m.timestamp for m in exchange.transcript]
        assert stamps == sorted(stamps)

    async def test_empty_text_rejected(self, orchestrator, moderation) -> None:
        for text in ("", "   ", "\n\t"):
            with pytest.raises(ValueError):
                await orchestrator.respond([], text)
        assert moderation.calls == []


class TestPromptAssembly:
    async def test_system_history_then_user(self, orchestrator, completion) -> None:
        await orchestrator.respond(_history(2), "new question")
        prompt = completion.calls[0]
        assert [(m.role, m.content) for m in prompt] == [
            ("system", "You are a test assistant."),
            ("user", "turn 0"),
            ("assistant", "turn 1"),
            ("user", "new question"),
        ]

    async def test_role_match_is_case_insensitive(self, orchestrator, completion) -> None:
        history = [
            Message.model_construct(role="User", content="a", timestamp=T0),
            Message.model_construct(role="ASSISTANT", content="b", timestamp=T0),
            Message.model_construct(role="uSeR", content="c", timestamp=T0),
        ]
        await orchestrator.respond(history, "d")
        assert [m.role for m in completion.calls[0]] == ["system", "user", "assistant", "user", "user"]

    async def test_other_roles_dropped(self, orchestrator, completion) -> None:
        history = [
            Message(role="system", content="stored system", timestamp=T0),
            Message(role="tool", content="tool output", timestamp=T0),
            Message(role="user", content="kept", timestamp=T0),
        ]
        await orchestrator.respond(history, "q")
        contents = [m.content for m in completion.calls[0]]
        assert "stored system" not in contents
        assert "tool output" not in contents
        assert "kept" in contents

    async def test_moderation_sees_only_new_text(self, orchestrator, moderation) -> None:
        await orchestrator.respond(_history(4), "only this")
        assert moderation.calls == ["only this"]


# ---------------------------------------------------------------------------
# Refusal path
# ---------------------------------------------------------------------------

class TestRefusal:
    async def test_scenario_a_moderation_absent(self, store) -> None:
        completion = StubCompletion()
        orch = _orchestrator(store, moderation=UnconfiguredModerationBackend(), completion=completion)
        exchange = await orch.handle("s1", "hello")
        assert exchange.status is ReplyStatus.REFUSED
        assert exchange.assistant_message.content == REFUSAL_MESSAGE
        assert store.load("s1") == []
        assert completion.calls == []

    async def test_scenario_e_hate_severity_two(self, store) -> None:
        moderation = StubModeration({"Hate": 2, "SelfHarm": 0, "Sexual": 0, "Violence": 0})
        completion = StubCompletion()
        orch = _orchestrator(store, moderation=moderation, completion=completion)
        exchange = await orch.respond([], "something hateful")
        assert exchange.status is ReplyStatus.REFUSED
        assert exchange.assistant_message.content == REFUSAL_MESSAGE
        assert completion.calls == []

    async def test_refusal_leaves_stored_history_unchanged(self, store) -> None:
        history = _history(4)
        store.save("s1", history)
        orch = _orchestrator(store, moderation=StubModeration({"Violence": 4}))
        exchange = await orch.handle("s1", "bad")
        assert exchange.persisted is False
        assert exchange.transcript == history
        assert store.load("s1") == history

    async def test_moderation_failure_refuses(self, store) -> None:
        orch = _orchestrator(store, moderation=StubModeration(error=BackendUnavailable("down")))
        exchange = await orch.handle("s1", "hello")
        assert exchange.assistant_message.content == REFUSAL_MESSAGE
        assert store.load("s1") == []

    async def test_refusal_text_is_fixed(self, store) -> None:
        orch = _orchestrator(store, moderation=StubModeration({"Sexual": 6}))
        a = await orch.respond([], "one thing")
        b = await orch.respond([], "another thing")
        assert a.assistant_message.content == b.assistant_message.content == REFUSAL_MESSAGE
        assert REFUSAL_MESSAGE == (
            "Thanks for your message! I’m not able to help with that request. "
            "Please try a different question."
        )


# ---------------------------------------------------------------------------
# Completion fallbacks
# ---------------------------------------------------------------------------

class TestCompletionFallbacks:
    async def test_unconfigured(self, store) -> None:
        orch = _orchestrator(store, completion=UnconfiguredCompletionBackend())
        exchange = await orch.handle("s1", "hello")
        assert exchange.status is ReplyStatus.UNCONFIGURED
        assert exchange.assistant_message.content == UNCONFIGURED_MESSAGE
        assert len(store.load("s1")) == 2

    async def test_configuration_missing_raised_at_runtime(self, store) -> None:
        orch = _orchestrator(store, completion=StubCompletion(error=ConfigurationMissing("gone")))
        exchange = await orch.respond([], "hello")
        assert exchange.assistant_message.content == UNCONFIGURED_MESSAGE

    @pytest.mark.parametrize("error", [
        BackendUnavailable("timed out"),
        MalformedUpstreamResponse("junk"),
        RuntimeError("unexpected"),
    ])
    async def test_runtime_failure_is_transient_message(self, store, error) -> None:
        orch = _orchestrator(store, completion=StubCompletion(error=error))
        exchange = await orch.handle("s1", "hello")
        assert exchange.status is ReplyStatus.UNAVAILABLE
        assert exchange.assistant_message.content == UNAVAILABLE_MESSAGE
        assert len(store.load("s1")) == 2

    async def test_scenario_d_zero_content_items(self, store) -> None:
        orch = _orchestrator(store, completion=StubCompletion(items=[]))
        exchange = await orch.handle("s1", "hello")
        assert exchange.status is ReplyStatus.NO_CONTENT
        assert exchange.assistant_message.content == NO_CONTENT_MESSAGE
        stored = store.load("s1")
        assert [m.role for m in stored] == ["user", "assistant"]
        assert stored[1].content == NO_CONTENT_MESSAGE

    async def test_empty_first_item(self, store) -> None:
        orch = _orchestrator(store, completion=StubCompletion(items=["", "second"]))
        exchange = await orch.respond([], "hello")
        assert exchange.status is ReplyStatus.EMPTY
        assert exchange.assistant_message.content == EMPTY_RESPONSE_MESSAGE

    async def test_non_text_first_item_is_transient_message(self, store) -> None:
        orch = _orchestrator(store, completion=StubCompletion(items=[{"value": "hi"}]))
        exchange = await orch.handle("s1", "hello")
        assert exchange.status is ReplyStatus.UNAVAILABLE
        assert exchange.assistant_message.content == UNAVAILABLE_MESSAGE
        assert len(store.load("s1")) == 2

    async def test_malformed_content_part_from_http_backend(self, store) -> None:
        backend = HttpCompletionBackend(
            endpoint="https://shop.openai.azure.com",
            deployment="gpt-4o",
            credential=ApiKeyCredential("secret"),
        )
        resp = MagicMock()
        resp.raise_for_status = MagicMock()
        resp.json.return_value = {
            "choices": [{"message": {"content": [{"type": "text", "text": {"value": "hi"}}]}}]
        }
        orch = _orchestrator(store, completion=backend)
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            exchange = await orch.handle("s1", "hello")
        assert exchange.status is ReplyStatus.UNAVAILABLE
        assert exchange.assistant_message.content == UNAVAILABLE_MESSAGE

    async def test_first_item_used(self, store) -> None:
        orch = _orchestrator(store, completion=StubCompletion(items=["first", "second"]))
        exchange = await orch.respond([], "hello")
        assert exchange.assistant_message.content == "first"


# ---------------------------------------------------------------------------
# History bound
# ---------------------------------------------------------------------------

class TestHistoryBound:
    async def test_scenario_b_49_becomes_50(self, store, orchestrator) -> None:
        store.save("s1", _history(49))
        await orchestrator.handle("s1", "hello")
        assert len(store.load("s1")) == 50

    async def test_scenario_c_50_stays_50(self, store, orchestrator) -> None:
        prior = _history(50)
        store.save("s1", prior)
        exchange = await orchestrator.handle("s1", "hello")
        stored = store.load("s1")
        assert len(stored) == 50
        assert stored[:48] == prior[2:]
        assert stored[-2] == exchange.user_message
        assert stored[-1] == exchange.assistant_message

    async def test_returned_transcript_is_trimmed(self, store, orchestrator) -> None:
        exchange = await orchestrator.respond(_history(50), "hello")
        assert len(exchange.transcript) == 50


# ---------------------------------------------------------------------------
# Session operations and cancellation
# ---------------------------------------------------------------------------

class TestSession:
    async def test_conversation_accumulates(self, store, orchestrator, completion) -> None:
        await orchestrator.handle("s1", "first")
        await orchestrator.handle("s1", "second")
        assert [m.content for m in store.load("s1")] == [
            "first", "Happy to help.", "second", "Happy to help.",
        ]
        # second prompt replays the first exchange
        assert [m.content for m in completion.calls[1]][1:] == ["first", "Happy to help.", "second"]

    async def test_history_and_reset(self, orchestrator) -> None:
        await orchestrator.handle("s1", "hello")
        assert len(orchestrator.history("s1")) == 2
        orchestrator.reset("s1")
        assert orchestrator.history("s1") == []

    async def test_configured_reflects_completion_backend(self, store) -> None:
        assert _orchestrator(store).configured is True
        assert _orchestrator(store, completion=UnconfiguredCompletionBackend()).configured is False

    async def test_cancelled_completion_persists_nothing(self, store) -> None:
        store.save("s1", _history(2))
        orch = _orchestrator(store, completion=StubCompletion(error=asyncio.CancelledError()))
        with pytest.raises(asyncio.CancelledError):
            await orch.handle("s1", "hello")
        assert store.load("s1") == _history(2)

    async def test_cancelled_task_persists_nothing(self, store) -> None:
        started = asyncio.Event()

        class SlowCompletion(StubCompletion):
            async def complete(self, messages):
                started.set()
                await asyncio.sleep(10)
                return ["late"]

        orch = _orchestrator(store, completion=SlowCompletion())
        task = asyncio.create_task(orch.handle("s1", "hello"))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert store.load("s1") == []

    async def test_cancelled_during_moderation_persists_nothing(self, store) -> None:
        started = asyncio.Event()

        class SlowModeration(StubModeration):
            async def analyze(self, text):
                started.set()
                await asyncio.sleep(10)
                return {}

        store.save("s1", _history(2))
        completion = StubCompletion()
        orch = _orchestrator(store, moderation=SlowModeration(), completion=completion)
        task = asyncio.create_task(orch.handle("s1", "hello"))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert store.load("s1") == _history(2)
        assert completion.calls == []
