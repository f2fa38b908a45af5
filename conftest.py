import pytest

from safechat.history import MemorySessionKV, SessionHistoryStore
from safechat.moderation import Category
from safechat.models import PromptMessage
from safechat.orchestrator import ConversationOrchestrator
from safechat.safety import SafetyGate

ALL_CATEGORIES = frozenset(c.value for c in Category)


class StubModeration:
    """Moderation backend returning canned severities (or raising a canned error)."""

    configured = True

    def __init__(
        self,
        severities: dict[str, int] | None = None,
        error: BaseException | None = None,
        supported: frozenset[str] = ALL_CATEGORIES,
    ) -> None:
        self.severities = severities or {}
        self.error = error
        self.supported_categories = supported
        self.calls: list[str] = []

    async def analyze(self, text: str) -> dict[str, int]:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return dict(self.severities)


class StubCompletion:
    """Completion backend returning canned content items and recording prompts."""

    configured = True

    def __init__(self, items: list[str] | None = None, error: BaseException | None = None) -> None:
        self.items = ["Happy to help."] if items is None else items
        self.error = error
        self.calls: list[list[PromptMessage]] = []

    async def complete(self, messages: list[PromptMessage]) -> list[str]:
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return list(self.items)


@pytest.fixture
def kv() -> MemorySessionKV:
    return MemorySessionKV()


@pytest.fixture
def store(kv: MemorySessionKV) -> SessionHistoryStore:
    return SessionHistoryStore(kv, max_messages=50)


@pytest.fixture
def moderation() -> StubModeration:
    return StubModeration()


@pytest.fixture
def completion() -> StubCompletion:
    return StubCompletion()


@pytest.fixture
def orchestrator(moderation, completion, store) -> ConversationOrchestrator:
    return ConversationOrchestrator(
        gate=SafetyGate(moderation),
        completion=completion,
        store=store,
        system_prompt="You are a test assistant.",
    )
