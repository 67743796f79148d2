from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from spin_agent.models import Contact, Conversation
from spin_agent.services.state_machine import SpinStage


def get_or_create_contact(
    db: Session, organization_id: UUID, address: str, name: Optional[str] = None
) -> Contact:
    """Find contact by address or create new one. Keeps the latest push name."""
    now = datetime.now(timezone.utc)
    contact = (
        db.query(Contact)
        .filter(Contact.organization_id == organization_id, Contact.address == address)
        .first()
    )

    if not contact:
        contact = Contact(organization_id=organization_id, address=address, name=name, created_at=now)
        db.add(contact)
    elif name and contact.name != name:
        contact.name = name
    contact.last_seen_at = now
    db.flush()

    return contact


def get_or_create_conversation(
    db: Session, organization_id: UUID, contact_id: UUID, account_id: Optional[UUID] = None
) -> Conversation:
    """One conversation per contact per organization."""
    conversation = (
        db.query(Conversation)
        .filter(Conversation.organization_id == organization_id, Conversation.contact_id == contact_id)
        .first()
    )

    if not conversation:
        now = datetime.now(timezone.utc)
        conversation = Conversation(
            organization_id=organization_id,
            contact_id=contact_id,
            account_id=account_id,
            status="active",
            spin_stage=SpinStage.SITUATION.value,
            score=0,
            qualified=False,
            facts={},
            asked_topics=[],
            answered_topics=[],
            stage_changed_at=now,
            created_at=now,
        )
        db.add(conversation)
        db.flush()

    return conversation


def get_conversation(db: Session, session_id) -> Optional[Conversation]:
    try:
        conversation_id = session_id if isinstance(session_id, UUID) else UUID(str(session_id))
    except ValueError:
        return None
    return db.get(Conversation, conversation_id)
