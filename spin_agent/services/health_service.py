from datetime import datetime, timedelta, timezone

from sqlalchemy import text
from sqlalchemy.orm import Session

from spin_agent.logging_config import get_logger
from spin_agent.models import Conversation, Message, ScheduledBatch
from spin_agent.services.scheduler_service import count_backlog
from spin_agent.services.state_machine import STAGE_ORDER
from spin_agent.services.state_store import StateStore

logger = get_logger("health_service")


def check_and_heal_batches(db: Session, *, stuck_after_seconds: int = 300) -> dict:
    """Return callbacks stuck in PROCESSING (worker died mid-run) to PENDING."""
    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=stuck_after_seconds)
    stuck = (
        db.query(ScheduledBatch)
        .filter(ScheduledBatch.status == "PROCESSING", ScheduledBatch.updated_at < cutoff)
        .all()
    )

    healed = []
    for batch in stuck:
        batch.status = "PENDING"
        batch.run_at = now
        batch.updated_at = now
        healed.append({"batch_id": str(batch.id), "session_id": batch.session_id, "action": "requeued"})
        logger.warning(f"Requeued stuck batch {batch.id} for session {batch.session_id}")

    db.commit()

    return {
        "healed_count": len(healed),
        "details": healed,
        "checked_at": now.isoformat(),
    }


async def get_system_health(db: Session, store: StateStore) -> dict:
    """Readiness snapshot: database, state store, scheduler backlog, pipeline counters."""
    database_ok = True
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error(f"Database health check failed: {exc}")
        database_ok = False

    state_store_ok = await store.ping()

    report = {
        "status": "ok" if database_ok and state_store_ok else "degraded",
        "database": database_ok,
        "state_store": state_store_ok,
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }
    if not database_ok:
        return report

    report["scheduler"] = {
        "due_backlog": count_backlog(db),
        "processing": db.query(ScheduledBatch).filter(ScheduledBatch.status == "PROCESSING").count(),
        "failed": db.query(ScheduledBatch).filter(ScheduledBatch.status == "FAILED").count(),
    }
    report["conversations"] = {
        stage.value: db.query(Conversation).filter(Conversation.spin_stage == stage.value).count()
        for stage in STAGE_ORDER
    }
    report["conversations"]["qualified"] = db.query(Conversation).filter(Conversation.qualified.is_(True)).count()
    report["deliveries"] = {
        "failed": db.query(Message).filter(Message.role == "assistant", Message.delivery_status == "failed").count(),
        "pending": db.query(Message).filter(Message.role == "assistant", Message.delivery_status == "pending").count(),
    }
    return report
