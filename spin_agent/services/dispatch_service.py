from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from spin_agent.logging_config import get_logger
from spin_agent.models import Conversation, Message
from spin_agent.services.alert_service import alert_critical
from spin_agent.services.errors import GatewayError
from spin_agent.services.message_service import save_message
from spin_agent.services.result import Result
from spin_agent.services.whatsapp_service import WhatsAppGateway, provider_message_id

logger = get_logger("dispatch_service")


class ReplyDispatcher:
    """Persists an outbound reply, then hands it to the gateway.

    The row is committed before sending so a failed or interrupted send can be
    redelivered from the stored text without running inference again.
    """

    def __init__(self, gateway: WhatsAppGateway):
        self.gateway = gateway

    async def dispatch(
        self,
        db: Session,
        conversation: Conversation,
        contact_address: str,
        text: str,
        correlation_id: Optional[str] = None,
    ) -> Result[Message]:
        message = self.persist(db, conversation, text, correlation_id=correlation_id)
        return await self.deliver(db, message, contact_address)

    def persist(
        self,
        db: Session,
        conversation: Conversation,
        text: str,
        correlation_id: Optional[str] = None,
    ) -> Message:
        """Store the reply as a pending outbound message and commit it."""
        message = save_message(
            db,
            conversation_id=conversation.id,
            organization_id=conversation.organization_id,
            role="assistant",
            content=text,
            correlation_id=correlation_id,
            delivery_status="pending",
        )
        conversation.last_message_at = message.created_at
        db.commit()
        return message

    async def redeliver(self, db: Session, message: Message, contact_address: str) -> Result[Message]:
        if message.role != "assistant":
            return Result.failure("Only assistant messages can be redelivered", code="not_outbound", value=message)
        if message.delivery_status == "sent":
            return Result.success(message)
        logger.info(
            "Redelivering stored reply",
            extra={"context": {"message_id": str(message.id), "correlation_id": message.correlation_id}},
        )
        return await self.deliver(db, message, contact_address)

    async def deliver(self, db: Session, message: Message, contact_address: str) -> Result[Message]:
        context = {
            "message_id": str(message.id),
            "conversation_id": str(message.conversation_id),
            "correlation_id": message.correlation_id,
        }
        try:
            response = await self.gateway.send(contact_address, message.content)
        except GatewayError as exc:
            message.delivery_status = "failed"
            message.delivery_error = str(exc)[:500]
            db.commit()
            logger.error("Reply dispatch failed", extra={"context": {**context, "error": str(exc)}})
            await alert_critical("WhatsApp send failed", {**context, "error": str(exc)[:200]})
            return Result.failure(str(exc), code="dispatch_failed", value=message)

        message.delivery_status = "sent"
        message.delivery_error = None
        message.sent_at = datetime.now(timezone.utc)
        gateway_id = provider_message_id(response)
        if gateway_id:
            message.provider_message_id = gateway_id
        db.commit()
        logger.info("Reply dispatched", extra={"context": context})
        return Result.success(message)
