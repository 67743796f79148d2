import asyncio
import os
from datetime import datetime, timedelta, timezone

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from spin_agent.config import settings
from spin_agent.database import SessionLocal, get_db
from spin_agent.logging_config import get_logger, setup_logging
from spin_agent.routers import batches, sessions, webhook
from spin_agent.services.health_service import check_and_heal_batches, get_system_health
from spin_agent.services.scheduler_service import claim_due_batches, mark_batch_status
from spin_agent.services.state_store import StateStore
from spin_agent.wiring import build_engine, get_state_store

setup_logging(settings.log_level)

app = FastAPI(
    title="SPIN SDR Engine",
    description="Message batching and SPIN conversation state engine for WhatsApp",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(batches.router)
app.include_router(sessions.router)

scheduler_logger = get_logger("scheduler_worker")
_scheduler_worker_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_scheduler_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("SCHEDULER_WORKER_ENABLED"), default=True)


def _get_scheduler_worker_settings() -> tuple[float, int, int, float]:
    interval_seconds = float(os.environ.get("SCHEDULER_WORKER_INTERVAL_SECONDS", "1"))
    interval_seconds = max(interval_seconds, 0.1)
    limit = int(os.environ.get("SCHEDULER_CLAIM_LIMIT", "10"))
    max_attempts = int(os.environ.get("SCHEDULER_MAX_ATTEMPTS", "3"))
    retry_backoff_seconds = float(os.environ.get("SCHEDULER_RETRY_BACKOFF_SECONDS", "5"))
    return interval_seconds, limit, max_attempts, retry_backoff_seconds


async def run_due_batches(db: Session, processor, *, limit: int, max_attempts: int, retry_backoff_seconds: float) -> dict:
    """Fire every due callback once. Failed runs are retried until ``max_attempts``."""
    results = {"claimed": 0, "done": 0, "retried": 0, "failed": 0}
    rows = claim_due_batches(db, limit=limit)
    results["claimed"] = len(rows)

    for row in rows:
        try:
            outcome = await processor.process(
                db,
                row["session_id"],
                row["organization_id"],
                scheduled_at=row["scheduled_at"],
                deadline=row["deadline_ms"],
            )
        except Exception as exc:
            db.rollback()
            if row["attempts"] < max_attempts:
                mark_batch_status(
                    db,
                    batch_id=row["id"],
                    status="PENDING",
                    last_error=str(exc)[:500],
                    run_at=datetime.now(timezone.utc) + timedelta(seconds=retry_backoff_seconds * row["attempts"]),
                )
                results["retried"] += 1
            else:
                mark_batch_status(db, batch_id=row["id"], status="FAILED", last_error=str(exc)[:500])
                results["failed"] += 1
            scheduler_logger.error(
                "Scheduled batch failed",
                extra={"context": {"batch_id": str(row["id"]), "session_id": row["session_id"], "error": str(exc)}},
            )
            continue

        mark_batch_status(db, batch_id=row["id"], status="DONE", last_error=outcome.error)
        results["done"] += 1

    return results


async def _scheduler_worker_loop() -> None:
    while True:
        try:
            interval_seconds, limit, max_attempts, retry_backoff_seconds = _get_scheduler_worker_settings()
            await asyncio.sleep(interval_seconds)
            engine = app.state.engine
            db = SessionLocal()
            try:
                results = await run_due_batches(
                    db,
                    engine.processor,
                    limit=limit,
                    max_attempts=max_attempts,
                    retry_backoff_seconds=retry_backoff_seconds,
                )
                if results["claimed"]:
                    scheduler_logger.info("Scheduler worker processed", extra={"context": results})
                healed = check_and_heal_batches(db)
                if healed["healed_count"]:
                    scheduler_logger.warning("Stuck batches requeued", extra={"context": healed})
            finally:
                db.close()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            scheduler_logger.error(
                "Scheduler worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_scheduler_worker() -> None:
    global _scheduler_worker_task
    if getattr(app.state, "engine", None) is None:
        app.state.engine = build_engine(settings)
    if not _is_scheduler_worker_enabled():
        return
    if _scheduler_worker_task is None or _scheduler_worker_task.done():
        _scheduler_worker_task = asyncio.create_task(_scheduler_worker_loop())
        scheduler_logger.info("Scheduler worker started")


@app.on_event("shutdown")
async def stop_scheduler_worker() -> None:
    global _scheduler_worker_task
    if _scheduler_worker_task is not None:
        _scheduler_worker_task.cancel()
        try:
            await _scheduler_worker_task
        except asyncio.CancelledError:
            pass
        _scheduler_worker_task = None
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.store.close()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/ready")
async def health_ready(db: Session = Depends(get_db), store: StateStore = Depends(get_state_store)):
    report = await get_system_health(db, store)
    status_code = 200 if report["status"] == "ok" else 503
    return JSONResponse(status_code=status_code, content=report)
