"""Reconciliation endpoint.

WHAT:
    Compares local transaction totals with the payment processor over the
    lookback window and queues backfills for organizations missing data.

WHY:
    The daily cron runs the same service; this endpoint lets admins (or the
    scheduler) run it on demand for one organization or all of them.

REFERENCES:
    - donorlink/services/reconciliation_service.py
    - donorlink/workers/arq_worker.py (run_reconciliation_job)
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import (
    EngineActor,
    Settings,
    get_rate_limiter,
    get_settings,
    require_engine_access,
    require_organization_access,
)
from ..schemas import DateRange, ReconcileRequest, ReconcileResponse
from ..services.rate_limiter import OrganizationRateLimiter
from ..services.reconciliation_service import build_reconciliation_service, summarize

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/reconciliation",
    tags=["Reconciliation"],
)


@router.post("/run", response_model=ReconcileResponse)
async def run_reconciliation(
    request: ReconcileRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    actor: EngineActor = Depends(require_engine_access),
    limiter: OrganizationRateLimiter = Depends(get_rate_limiter),
) -> ReconcileResponse:
    """Reconcile sequentially; one organization's failure does not stop the others."""
    require_organization_access(actor, request.organization_id)
    limiter.check_and_record(request.organization_id, "reconcile")

    logger.info(
        "[RECONCILE] %s requested reconciliation (organization=%s)",
        actor.label, request.organization_id or "all",
    )
    service = build_reconciliation_service(db, settings)
    start, end = service.window()
    results = await service.run(organization_id=request.organization_id)

    return ReconcileResponse(
        date_range=DateRange(start=start, end=end),
        results=[r.to_dict() for r in results],
        summary=summarize(results),
    )
