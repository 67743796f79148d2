import uuid

from sqlalchemy import BigInteger, Column, DateTime, Integer, Text, Uuid
from sqlalchemy.sql import func

from spin_agent.database import Base


class ScheduledBatch(Base):
    """Delayed callback that fires the batch processor for one window."""

    __tablename__ = "scheduled_batches"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(Text, nullable=False)
    organization_id = Column(Text, nullable=False)
    run_at = Column(DateTime(timezone=True), nullable=False, index=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    deadline_ms = Column(BigInteger)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, PROCESSING, DONE, FAILED
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
