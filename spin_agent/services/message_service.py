from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from spin_agent.models import Message


def save_message(
    db: Session,
    conversation_id: UUID,
    organization_id: UUID,
    role: str,
    content: str,
    provider_message_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    delivery_status: str = "received",
    message_metadata: Optional[dict] = None,
    created_at: Optional[datetime] = None,
) -> Message:
    """Save message to database."""
    message = Message(
        conversation_id=conversation_id,
        organization_id=organization_id,
        role=role,
        content=content,
        provider_message_id=provider_message_id,
        correlation_id=correlation_id,
        delivery_status=delivery_status,
        message_metadata=message_metadata or {},
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    return message


def get_recent_messages(db: Session, conversation_id: UUID, limit: int = 20) -> list[Message]:
    """Last ``limit`` messages in chronological order."""
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))
