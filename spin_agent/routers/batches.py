from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from spin_agent.database import get_db
from spin_agent.logging_config import get_logger
from spin_agent.schemas.batch import BatchOutcomeResponse, BatchProcessRequest
from spin_agent.services.batch_processor import BatchProcessor
from spin_agent.services.errors import GatewayError, InferenceError, StoreUnavailableError
from spin_agent.wiring import get_batch_processor

logger = get_logger("batches")

router = APIRouter()


@router.post("/batches/process", response_model=BatchOutcomeResponse)
async def process_batch(
    request: BatchProcessRequest,
    db: Session = Depends(get_db),
    processor: BatchProcessor = Depends(get_batch_processor),
):
    """Scheduled callback for one fired batch window. Safe to call more than once."""
    try:
        outcome = await processor.process(
            db,
            request.session_id,
            request.org_id,
            scheduled_at=request.scheduled_at,
            deadline=request.deadline_ms,
        )
    except StoreUnavailableError as e:
        raise HTTPException(status_code=503, detail=f"State store unavailable: {e}")
    except InferenceError as e:
        raise HTTPException(status_code=502, detail=f"Inference failed: {e}")
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=f"Gateway not available: {e}")

    return BatchOutcomeResponse(**outcome.to_dict())
