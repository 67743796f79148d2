from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from spin_agent.logging_config import get_logger
from spin_agent.models import ScheduledBatch

logger = get_logger("scheduler_service")


class BatchScheduler(ABC):
    """Delayed-task scheduler that fires the batch processor once per window."""

    @abstractmethod
    async def schedule(
        self,
        session_id: str,
        org_id: str,
        run_at: datetime,
        scheduled_at: datetime,
        deadline_ms: Optional[int] = None,
    ) -> None:
        """Arrange one processor invocation at ``run_at``."""
        pass


class DatabaseBatchScheduler(BatchScheduler):
    """Stores callbacks in ``scheduled_batches``; the worker loop in main.py fires them."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    async def schedule(
        self,
        session_id: str,
        org_id: str,
        run_at: datetime,
        scheduled_at: datetime,
        deadline_ms: Optional[int] = None,
    ) -> None:
        db = self.session_factory()
        try:
            now = datetime.now(timezone.utc)
            db.add(
                ScheduledBatch(
                    session_id=str(session_id),
                    organization_id=str(org_id),
                    run_at=run_at,
                    scheduled_at=scheduled_at,
                    deadline_ms=deadline_ms,
                    status="PENDING",
                    attempts=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            db.commit()
        finally:
            db.close()
        logger.info(
            "Batch scheduled",
            extra={"context": {"session_id": str(session_id), "run_at": run_at.isoformat()}},
        )


def claim_due_batches(db: Session, *, limit: int = 10, now: Optional[datetime] = None) -> list[dict[str, Any]]:
    """Claim due callbacks (PENDING → PROCESSING) without blocking other workers."""
    now = now or datetime.now(timezone.utc)
    rows = (
        db.query(ScheduledBatch)
        .filter(ScheduledBatch.status == "PENDING", ScheduledBatch.run_at <= now)
        .order_by(ScheduledBatch.run_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )
    claimed = []
    for row in rows:
        row.status = "PROCESSING"
        row.attempts = (row.attempts or 0) + 1
        row.updated_at = now
        claimed.append(
            {
                "id": row.id,
                "session_id": row.session_id,
                "organization_id": row.organization_id,
                "scheduled_at": row.scheduled_at,
                "deadline_ms": row.deadline_ms,
                "attempts": row.attempts,
            }
        )
    db.commit()
    return claimed


def mark_batch_status(
    db: Session,
    *,
    batch_id,
    status: str,
    last_error: Optional[str] = None,
    run_at: Optional[datetime] = None,
) -> None:
    row = db.get(ScheduledBatch, batch_id)
    if row is None:
        return
    row.status = status
    row.last_error = last_error
    if run_at is not None:
        row.run_at = run_at
    row.updated_at = datetime.now(timezone.utc)
    db.commit()


def count_backlog(db: Session, *, now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    return (
        db.query(ScheduledBatch)
        .filter(ScheduledBatch.status == "PENDING", ScheduledBatch.run_at <= now)
        .count()
    )
