"""
AI Chat API Routes

Client surface of the orchestration core:
- start / list / end sessions (agent_id is the only handle returned)
- chat (single response) and chat stream (Server-Sent Events)
- structured tasks validated against a per-task schema
- conversation history (user and assistant turns only)

Chat, stream and task calls are rate limited per agent_id.

No response model on this router has a field that could carry a system
prompt, ciphertext, or a raw provider payload.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

import settings
from api.dependencies import build_orchestrator, get_current_user_id, get_orchestrator
from api.rate_limit import limiter
from db import get_global_engine, get_session_factory
from services.chat_orchestrator import MAX_MESSAGE_CHARS, ChatOrchestrator, ChatResponse, TaskResponse
from services.log_redaction import mask_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai", tags=["ai-chat"])


# ============================================================================
# Schemas
# ============================================================================

class StartSessionRequest(BaseModel):
    session_type: str = Field(..., min_length=1, max_length=50)
    metadata: Optional[Dict[str, Any]] = None


class SessionResponse(BaseModel):
    agent_id: str
    session_type: str
    status: str
    started_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    interaction_count: int = 0

    class Config:
        extra = "forbid"


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=MAX_MESSAGE_CHARS)


class TaskRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)


class HistoryMessageResponse(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: Optional[datetime] = None

    class Config:
        extra = "forbid"


class HistoryResponse(BaseModel):
    agent_id: str
    messages: List[HistoryMessageResponse]

    class Config:
        extra = "forbid"


class EndSessionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class EndSessionResponse(BaseModel):
    success: bool
    status: str
    duration_minutes: int

    class Config:
        extra = "forbid"


def _session_response(session) -> SessionResponse:
    return SessionResponse(
        agent_id=session.agent_id,
        session_type=session.session_type,
        status=session.status,
        started_at=session.started_at,
        expires_at=session.expires_at,
        interaction_count=session.interaction_count or 0,
    )


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/sessions", response_model=SessionResponse, status_code=201)
async def start_session(
    request: StartSessionRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    session = orchestrator.sessions.start_session(user_id, request.session_type, request.metadata)
    return _session_response(session)


@router.get("/sessions", response_model=List[SessionResponse])
async def list_sessions(
    user_id: str = Depends(get_current_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    return [_session_response(s) for s in orchestrator.sessions.active_sessions(user_id)]


@router.post("/sessions/{agent_id}/chat", response_model=ChatResponse)
@limiter.limit(settings.CHAT_RATE_LIMIT)
async def chat(
    agent_id: str,
    body: ChatRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.chat(agent_id, body.message, user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/sessions/{agent_id}/tasks/{task_type}", response_model=TaskResponse)
@limiter.limit(settings.CHAT_RATE_LIMIT)
async def run_task(
    agent_id: str,
    task_type: str,
    body: TaskRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Structured task (rcs, authenticity, questions). Invalid model output maps to 422."""
    try:
        return await orchestrator.run_task(agent_id, user_id, task_type, body.payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/sessions/{agent_id}/chat/stream")
@limiter.limit(settings.CHAT_RATE_LIMIT)
async def chat_stream(
    agent_id: str,
    body: ChatRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
):
    """
    Stream the validated response as Server-Sent Events.

    Each event is a JSON StreamChunk; the last one has done=true and the
    interaction id. The first chunk is produced before the response starts
    so auth, prompt and provider errors still map to a status code.
    """
    # The stream outlives the request scope, so it owns its DB session
    db = get_session_factory(get_global_engine())()
    orchestrator = build_orchestrator(request, db)
    chunks = orchestrator.chat_stream(agent_id, body.message, user_id)

    try:
        first = await chunks.__anext__()
    except ValueError as e:
        db.close()
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        db.close()
        raise

    async def event_source():
        try:
            yield f"data: {first.model_dump_json()}\n\n"
            async for chunk in chunks:
                yield f"data: {chunk.model_dump_json()}\n\n"
        finally:
            await chunks.aclose()
            db.close()
            logger.debug(f"Closed chat stream for session {mask_token(agent_id)}")

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/sessions/{agent_id}/history", response_model=HistoryResponse)
async def get_history(
    agent_id: str,
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    messages = await orchestrator.history(agent_id, user_id, limit)
    return HistoryResponse(
        agent_id=agent_id,
        messages=[
            HistoryMessageResponse(role=m.role, content=m.content, timestamp=m.timestamp)
            for m in messages
        ],
    )


@router.post("/sessions/{agent_id}/end", response_model=EndSessionResponse)
async def end_session(
    agent_id: str,
    request: Optional[EndSessionRequest] = None,
    user_id: str = Depends(get_current_user_id),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    reason = request.reason if request else None
    return orchestrator.sessions.end_session(agent_id, user_id, reason)
