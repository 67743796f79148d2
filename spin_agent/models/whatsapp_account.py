import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from spin_agent.database import Base


class WhatsAppAccount(Base):
    __tablename__ = "whatsapp_accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    instance_id = Column(Text, nullable=False, unique=True)  # Evolution instance name
    webhook_token = Column(Text, nullable=False)
    base_url = Column(Text)  # falls back to EVOLUTION_BASE_URL
    api_key = Column(Text)  # falls back to EVOLUTION_API_KEY
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    organization = relationship("Organization", back_populates="accounts")
