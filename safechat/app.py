from fastapi import FastAPI

from safechat.config import Settings, build_completion_backend, build_moderation_backend
from safechat.history import MemorySessionKV, SessionHistoryStore
from safechat.orchestrator import ConversationOrchestrator
from safechat.routes import router
from safechat.safety import SafetyGate


def create_app(
    settings: Settings | None = None,
    orchestrator: ConversationOrchestrator | None = None,
) -> FastAPI:
    if orchestrator is None:
        settings = settings or Settings.from_env()
        orchestrator = ConversationOrchestrator(
            gate=SafetyGate(build_moderation_backend(settings)),
            completion=build_completion_backend(settings),
            store=SessionHistoryStore(MemorySessionKV(), max_messages=settings.history_max),
            system_prompt=settings.system_prompt,
        )

    app = FastAPI(title="safechat")
    app.state.orchestrator = orchestrator
    app.include_router(router, prefix="/api")
    return app
