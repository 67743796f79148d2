from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from spin_agent.database import get_db
from spin_agent.logging_config import get_logger
from spin_agent.models import Conversation, Message
from spin_agent.schemas.session import MessageView, RedeliverResponse, SessionView
from spin_agent.services.batch_service import BatchCoalescer
from spin_agent.services.conversation_service import get_conversation
from spin_agent.services.errors import GatewayError, StoreUnavailableError
from spin_agent.services.message_service import get_recent_messages
from spin_agent.services.state_machine import SpinStage
from spin_agent.wiring import Engine, get_coalescer, get_engine

logger = get_logger("sessions")

router = APIRouter()

ORG_SESSIONS_LIMIT = 50
RECENT_MESSAGES_LIMIT = 20


def _session_view(
    conversation: Conversation,
    recent: Optional[list[Message]] = None,
    pending_messages: Optional[int] = None,
) -> SessionView:
    stage = SpinStage(conversation.spin_stage or SpinStage.SITUATION.value)
    return SessionView(
        session_id=conversation.id,
        organization_id=conversation.organization_id,
        contact_address=conversation.contact.address,
        contact_name=conversation.contact.name,
        stage=stage.value,
        stage_label=stage.label,
        score=conversation.score or 0,
        qualified=bool(conversation.qualified),
        facts=conversation.facts or {},
        asked_topics=conversation.asked_topics or [],
        answered_topics=conversation.answered_topics or [],
        summary=conversation.summary,
        last_user_at=conversation.last_user_at,
        pending_messages=pending_messages,
        recent_messages=[MessageView.model_validate(m) for m in recent or []],
    )


@router.get("/sessions/{session_id}", response_model=SessionView)
async def get_session(
    session_id: UUID,
    db: Session = Depends(get_db),
    coalescer: BatchCoalescer = Depends(get_coalescer),
):
    conversation = get_conversation(db, session_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Session not found")

    pending = None
    try:
        pending = await coalescer.pending_count(str(conversation.id))
    except StoreUnavailableError:
        logger.warning("Pending count unavailable", extra={"context": {"session_id": str(session_id)}})

    recent = get_recent_messages(db, conversation.id, limit=RECENT_MESSAGES_LIMIT)
    return _session_view(conversation, recent, pending)


@router.get("/orgs/{org_id}/sessions", response_model=list[SessionView])
def list_org_sessions(org_id: UUID, db: Session = Depends(get_db)):
    conversations = (
        db.query(Conversation)
        .filter(Conversation.organization_id == org_id)
        .order_by(Conversation.last_message_at.desc())
        .limit(ORG_SESSIONS_LIMIT)
        .all()
    )
    return [_session_view(conversation) for conversation in conversations]


@router.post("/messages/{message_id}/redeliver", response_model=RedeliverResponse)
async def redeliver_message(
    message_id: UUID,
    db: Session = Depends(get_db),
    engine: Engine = Depends(get_engine),
):
    """Resend a stored reply whose delivery failed. Never re-runs inference."""
    message = db.get(Message, message_id)
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found")
    if message.role != "assistant":
        raise HTTPException(status_code=400, detail="Only assistant messages can be redelivered")

    conversation = message.conversation
    try:
        dispatcher = engine.dispatcher_factory(conversation)
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))

    result = await dispatcher.redeliver(db, message, conversation.contact.address)
    return RedeliverResponse(
        success=result.ok,
        message_id=message.id,
        delivery_status=message.delivery_status,
        error=result.error,
    )
