from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class MessageView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    role: str
    content: str
    delivery_status: str
    created_at: datetime


class SessionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_id: UUID
    organization_id: UUID
    contact_address: str
    contact_name: Optional[str] = None
    stage: str
    stage_label: str
    score: int
    qualified: bool
    facts: dict[str, str] = {}
    asked_topics: list[str] = []
    answered_topics: list[str] = []
    summary: Optional[str] = None
    last_user_at: Optional[datetime] = None
    pending_messages: Optional[int] = None
    recent_messages: list[MessageView] = []


class RedeliverResponse(BaseModel):
    success: bool
    message_id: UUID
    delivery_status: str
    error: Optional[str] = None
