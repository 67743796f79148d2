import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from spin_agent.database import Base
from spin_agent.models.types import JSONType


class Conversation(Base):
    """Durable snapshot of a session. One per contact per organization."""

    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("organization_id", "contact_id", name="uq_conversations_org_contact"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    contact_id = Column(Uuid, ForeignKey("contacts.id"), nullable=False)
    account_id = Column(Uuid, ForeignKey("whatsapp_accounts.id"))
    status = Column(Text, nullable=False, default="active")  # active, closed
    spin_stage = Column(Text, nullable=False, default="S")  # S, P, I, N
    score = Column(Integer, nullable=False, default=0)
    qualified = Column(Boolean, nullable=False, default=False)
    facts = Column(JSONType, nullable=False, default=dict)
    asked_topics = Column(JSONType, nullable=False, default=list)
    answered_topics = Column(JSONType, nullable=False, default=list)
    summary = Column(Text)
    stage_changed_at = Column(DateTime(timezone=True))
    last_user_at = Column(DateTime(timezone=True))
    last_message_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    contact = relationship("Contact", back_populates="conversations")
    account = relationship("WhatsAppAccount")
    messages = relationship("Message", back_populates="conversation", order_by="Message.created_at")
