# /clinicbot/routes/messages.py

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from clinicbot.models.domain import InboundMessage, Response
from clinicbot.services.orchestrator import DialogueOrchestrator
from clinicbot.utils.dependencies import ServiceContainer, get_orchestrator, get_services, verify_api_key
from clinicbot.utils.rate_limiter import limiter

# Endpoints used by the channel adapters. Adapters post the normalized
# inbound record and render the returned Response descriptor themselves.

router = APIRouter(tags=["Dialogue"], dependencies=[Depends(verify_api_key)])
log = structlog.get_logger(__name__)


@router.post("/messages", response_model=Response)
@limiter.limit("120/minute")
async def receive_message(
    request: Request,
    message: InboundMessage,
    orchestrator: DialogueOrchestrator = Depends(get_orchestrator),
):
    """Runs one dialogue turn and returns the reply descriptor."""
    return await orchestrator.handle_inbound(message)


@router.delete("/sessions/{session_id}")
async def end_session(session_id: str, orchestrator: DialogueOrchestrator = Depends(get_orchestrator)):
    """Administratively ends a session (idempotent)."""
    ended = await orchestrator.end_session(session_id)
    if not ended:
        log.info("end_session_noop", session_id=session_id)
    return {"session_id": session_id, "ended": ended}


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, services: ServiceContainer = Depends(get_services)):
    """Debug view of a session's dialogue state."""
    session = await services.sessions.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.model_dump(mode="json")
