"""FastAPI endpoints under /api.

  GET    /health          liveness + whether the completion backend is configured
  GET    /chat/history    transcript for the caller's session
  POST   /chat/messages   run one moderated turn
  DELETE /chat/history    clear the caller's transcript

The session is identified by the safechat_session cookie, issued on first use.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel

from safechat.orchestrator import ConversationOrchestrator

SESSION_COOKIE = "safechat_session"

router = APIRouter()


class ChatBody(BaseModel):
    message: str


def get_orchestrator(request: Request) -> ConversationOrchestrator:
    return request.app.state.orchestrator


def session_key(request: Request, response: Response) -> str:
    key = request.cookies.get(SESSION_COOKIE)
    if not key:
        key = uuid.uuid4().hex
        response.set_cookie(SESSION_COOKIE, key, httponly=True, samesite="lax")
    return key


@router.get("/health")
async def health(orchestrator: ConversationOrchestrator = Depends(get_orchestrator)):
    """Health check."""
    return {"status": "ok", "configured": orchestrator.configured}


@router.get("/chat/history")
async def get_history(
    session: str = Depends(session_key),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Get the chat transcript for this session."""
    return [m.model_dump(mode="json") for m in orchestrator.history(session)]


@router.post("/chat/messages")
async def send_message(
    body: ChatBody,
    session: str = Depends(session_key),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Send a user message through the moderated chat pipeline."""
    if not body.message.strip():
        raise HTTPException(400, "Message cannot be empty")

    exchange = await orchestrator.handle(session, body.message)
    return {
        "userMessage": exchange.user_message.model_dump(mode="json"),
        "assistantMessage": exchange.assistant_message.model_dump(mode="json"),
        "status": exchange.status.value,
        "persisted": exchange.persisted,
    }


@router.delete("/chat/history")
async def clear_history(
    session: str = Depends(session_key),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Clear the chat transcript for this session."""
    orchestrator.reset(session)
    return {"ok": True}
