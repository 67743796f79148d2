from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class BatchProcessRequest(BaseModel):
    session_id: str
    org_id: str
    scheduled_at: datetime
    deadline_ms: Optional[int] = None


class BatchOutcomeResponse(BaseModel):
    status: str
    session_id: str
    correlation_id: Optional[str] = None
    message_count: int = 0
    stage: Optional[str] = None
    previous_stage: Optional[str] = None
    score: Optional[int] = None
    qualified: bool = False
    reply_message_id: Optional[str] = None
    deadline_ms: Optional[int] = None
    error: Optional[str] = None
    message_ids: list[str] = []
