import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from spin_agent.database import Base
from spin_agent.models.types import JSONType


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    organization_id = Column(Uuid, nullable=False)
    role = Column(Text, nullable=False)  # user, assistant
    content = Column(Text, nullable=False)
    provider_message_id = Column(Text, unique=True)
    correlation_id = Column(Text)
    delivery_status = Column(Text, nullable=False, default="received")  # received, pending, sent, failed
    delivery_error = Column(Text)
    message_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    sent_at = Column(DateTime(timezone=True))

    conversation = relationship("Conversation", back_populates="messages")
