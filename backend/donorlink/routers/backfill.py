"""Backfill job endpoints.

WHAT:
    Start, cancel and inspect chunked transaction backfills.

WHY:
    - Routers handle auth + request parsing only
    - The job and its chunks are persisted before responding; the ARQ worker
      processes them, so the caller is never blocked by the export API

REFERENCES:
    - donorlink/services/backfill_orchestrator.py
    - donorlink/workers/arq_enqueue.py
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import (
    EngineActor,
    Settings,
    get_rate_limiter,
    get_settings,
    require_admin_or_cron,
    require_engine_access,
    require_organization_access,
)
from ..exceptions import ValidationFailure
from ..models import Organization
from ..schemas import (
    BackfillCancelRequest,
    BackfillCancelResponse,
    BackfillTriggerRequest,
    BackfillTriggerResponse,
    DateRange,
)
from ..services.backfill_orchestrator import BackfillOrchestrator
from ..services.rate_limiter import OrganizationRateLimiter
from ..telemetry import capture_exception
from ..workers import arq_enqueue

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/backfill",
    tags=["Backfill"],
)


def _orchestrator(db: Session, settings: Settings) -> BackfillOrchestrator:
    return BackfillOrchestrator(
        db,
        inter_chunk_delay=settings.BACKFILL_INTER_CHUNK_DELAY_SECONDS,
        max_attempts=settings.BACKFILL_MAX_ATTEMPTS,
    )


@router.post("/jobs", response_model=BackfillTriggerResponse)
async def trigger_backfill(
    request: BackfillTriggerRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    actor: EngineActor = Depends(require_admin_or_cron),
    limiter: OrganizationRateLimiter = Depends(get_rate_limiter),
) -> BackfillTriggerResponse:
    """Split the window into chunks, persist them and hand the job to the worker."""
    limiter.check_and_record(request.organization_id, "backfill")

    if not db.query(Organization).filter(Organization.id == request.organization_id).first():
        raise ValidationFailure(f"Organization {request.organization_id} does not exist")

    orchestrator = _orchestrator(db, settings)
    try:
        job = orchestrator.create_job(
            organization_id=request.organization_id,
            days_back=request.days_back,
            chunk_size_days=request.chunk_size_days,
        )
    except ValueError as e:
        raise ValidationFailure(str(e), organization_id=str(request.organization_id))

    logger.info(
        "[BACKFILL] %s triggered job %s for org %s (%d chunks)",
        actor.label, job.id, request.organization_id, job.total_chunks,
    )

    enqueued = False
    if request.start_immediately:
        try:
            result = await arq_enqueue.enqueue_backfill_job(job.id)
            enqueued = result["status"] == "enqueued"
        except Exception as e:
            # Chunks are durable; the stale sweep picks the job up later
            logger.warning("[BACKFILL] Could not enqueue job %s: %s", job.id, e)
            capture_exception(e, extra={"operation": "enqueue_backfill_job", "job_id": str(job.id)})

    return BackfillTriggerResponse(
        job_id=job.id,
        chunks_created=job.total_chunks,
        estimated_minutes=orchestrator.estimate_minutes(job.total_chunks),
        date_range=DateRange(start=job.start_date, end=job.end_date),
        enqueued=enqueued,
    )


@router.post("/jobs/cancel", response_model=BackfillCancelResponse)
def cancel_backfill(
    request: BackfillCancelRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    actor: EngineActor = Depends(require_engine_access),
) -> BackfillCancelResponse:
    """Cancel a running job; in-flight chunk results are discarded by the worker."""
    result = _orchestrator(db, settings).cancel_job(
        request.job_id,
        actor,
        organization_id=request.organization_id,
        reason=request.reason,
    )
    return BackfillCancelResponse(**result)


@router.get("/jobs/{job_id}")
def get_backfill_status(
    job_id: UUID,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    actor: EngineActor = Depends(require_engine_access),
) -> dict:
    """Job progress with per-status chunk counts and row totals."""
    status = _orchestrator(db, settings).get_status(job_id)
    require_organization_access(actor, UUID(status["organization_id"]))
    return {"success": True, **status}
