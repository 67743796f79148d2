import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from spin_agent.logging_config import get_logger
from spin_agent.models import WhatsAppAccount
from spin_agent.services.batch_service import BatchCoalescer, PendingMessage
from spin_agent.services.clock import now_ms
from spin_agent.services.conversation_service import get_or_create_contact, get_or_create_conversation
from spin_agent.services.dedup_service import IdempotencyGuard
from spin_agent.services.message_service import save_message

logger = get_logger("ingest_service")


def build_inbound_message_id(
    message_id: Optional[str],
    remote_jid: Optional[str],
    timestamp: Optional[int],
    message_text: Optional[str],
) -> str:
    if message_id:
        return message_id.strip()
    if remote_jid and timestamp is not None:
        return f"{remote_jid}:{timestamp}"
    if remote_jid and message_text:
        digest = hashlib.sha256(message_text.encode("utf-8")).hexdigest()[:16]
        return f"{remote_jid}:{digest}"
    return str(uuid.uuid4())


@dataclass
class InboundMessage:
    provider_message_id: str
    sender: str
    text: str
    push_name: Optional[str] = None
    timestamp: Optional[int] = None  # provider epoch seconds


@dataclass
class IngestResult:
    duplicate: bool
    session_id: Optional[UUID] = None
    batch_deadline: Optional[datetime] = None
    message_id: Optional[UUID] = None
    opened_window: bool = False


async def ingest_message(
    db: Session,
    *,
    account: WhatsAppAccount,
    message: InboundMessage,
    guard: IdempotencyGuard,
    coalescer: BatchCoalescer,
    correlation_id: str,
) -> IngestResult:
    """Accept one inbound message: dedupe, persist, enqueue for the next batch."""
    context = {
        "provider_message_id": message.provider_message_id,
        "instance_id": account.instance_id,
        "correlation_id": correlation_id,
    }

    if await guard.is_duplicate(db, message.provider_message_id):
        return IngestResult(duplicate=True)

    try:
        contact = get_or_create_contact(db, account.organization_id, message.sender, message.push_name)
        conversation = get_or_create_conversation(db, account.organization_id, contact.id, account.id)

        try:
            stored = save_message(
                db,
                conversation_id=conversation.id,
                organization_id=account.organization_id,
                role="user",
                content=message.text,
                provider_message_id=message.provider_message_id,
                correlation_id=correlation_id,
                message_metadata={"push_name": message.push_name, "provider_timestamp": message.timestamp},
            )
        except IntegrityError:
            db.rollback()
            logger.info("Duplicate message rejected by durable store", extra={"context": context})
            return IngestResult(duplicate=True)

        conversation.last_message_at = stored.created_at
        window = await coalescer.on_inbound_accepted(
            str(conversation.id),
            str(account.organization_id),
            PendingMessage(
                message_id=message.provider_message_id,
                text=message.text,
                received_at=now_ms(coalescer.clock),
                correlation_id=correlation_id,
                sender=message.sender,
            ),
        )
        db.commit()
    except Exception:
        db.rollback()
        await guard.forget(message.provider_message_id)
        logger.error("Ingestion aborted", extra={"context": context}, exc_info=True)
        raise

    logger.info(
        "Inbound message accepted",
        extra={
            "context": {
                **context,
                "session_id": str(conversation.id),
                "batch_deadline_ms": window.deadline_ms,
                "opened_window": window.opened,
            }
        },
    )
    return IngestResult(
        duplicate=False,
        session_id=conversation.id,
        batch_deadline=window.deadline,
        message_id=stored.id,
        opened_window=window.opened,
    )
