"""Attribution endpoints.

WHAT:
    Provides API endpoints for:
    - Auto-matching refcodes to ad campaigns (dry run by default)
    - Historical transaction-level attribution backfill
    - Detecting conversion events attributed to another donor's click
    - Recovering full click identifiers for recent donations
    - Refreshing refcode mappings from the Meta ads graph

WHY:
    Dashboards only trust revenue per campaign when attribution is current,
    and these are the levers admins and the scheduler use to keep it so.

REFERENCES:
    - donorlink/services/auto_match_service.py
    - donorlink/services/attribution_backfill_service.py
    - donorlink/services/mismatch_detector.py
    - donorlink/services/click_recovery_service.py
    - donorlink/services/refcode_mapping_service.py
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import EngineActor, get_rate_limiter, require_engine_access, require_organization_access
from ..exceptions import UpstreamError
from ..schemas import (
    AttributionBackfillRequest,
    AutoMatchRequest,
    DetectMismatchesRequest,
    DetectMismatchesResponse,
    RecoverClickIdsRequest,
    RefcodeMappingSyncRequest,
)
from ..services.attribution_backfill_service import AttributionBackfillService
from ..services.auto_match_service import AutoMatchService
from ..services.click_recovery_service import ClickRecoveryService
from ..services.credential_service import meta_client_for
from ..services.meta_ads_client import MetaAdsClientError
from ..services.mismatch_detector import MismatchDetector
from ..services.rate_limiter import OrganizationRateLimiter
from ..services.refcode_mapping_service import RefcodeMappingService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/attribution",
    tags=["Attribution"],
)


@router.post("/auto-match")
def auto_match(
    request: AutoMatchRequest,
    db: Session = Depends(get_db),
    actor: EngineActor = Depends(require_engine_access),
    limiter: OrganizationRateLimiter = Depends(get_rate_limiter),
) -> dict:
    """Match unattributed refcodes to campaigns; writes only when dryRun is false."""
    require_organization_access(actor, request.organization_id)
    limiter.check_and_record(request.organization_id, "auto_match")

    result = AutoMatchService(db).run(
        organization_id=request.organization_id,
        dry_run=request.dry_run,
        min_confidence=request.min_confidence,
    )
    return result.to_dict()


@router.post("/backfill")
def backfill_attribution(
    request: AttributionBackfillRequest,
    db: Session = Depends(get_db),
    actor: EngineActor = Depends(require_engine_access),
    limiter: OrganizationRateLimiter = Depends(get_rate_limiter),
) -> dict:
    """Attribute historical transactions and recompute refcode totals."""
    require_organization_access(actor, request.organization_id)
    limiter.check_and_record(request.organization_id, "attribution_backfill")

    summary = AttributionBackfillService(db).run(
        organization_id=request.organization_id,
        start_date=request.start_date,
        end_date=request.end_date,
        dry_run=request.dry_run,
    )
    return summary.to_dict()


@router.post("/detect-mismatches", response_model=DetectMismatchesResponse)
def detect_mismatches(
    request: DetectMismatchesRequest,
    db: Session = Depends(get_db),
    actor: EngineActor = Depends(require_engine_access),
) -> DetectMismatchesResponse:
    require_organization_access(actor, request.organization_id)

    result = MismatchDetector(db).detect(
        organization_id=request.organization_id,
        dry_run=request.dry_run,
        limit=request.limit,
        include_valid=request.include_valid,
    )
    return DetectMismatchesResponse(**result)


@router.post("/recover-click-ids")
def recover_click_ids(
    request: RecoverClickIdsRequest,
    db: Session = Depends(get_db),
    actor: EngineActor = Depends(require_engine_access),
) -> dict:
    require_organization_access(actor, request.organization_id)
    return ClickRecoveryService(db).recover(
        organization_id=request.organization_id,
        dry_run=request.dry_run,
        limit=request.limit,
    )


@router.post("/refcode-mappings/sync")
def sync_refcode_mappings(
    request: RefcodeMappingSyncRequest,
    db: Session = Depends(get_db),
    actor: EngineActor = Depends(require_engine_access),
    limiter: OrganizationRateLimiter = Depends(get_rate_limiter),
) -> dict:
    """Pull campaigns and ads from Meta and refresh refcode mappings."""
    require_organization_access(actor, request.organization_id)
    limiter.check_and_record(request.organization_id, "refcode_sync")

    client, account_id = meta_client_for(db, request.organization_id)
    try:
        counts = RefcodeMappingService(db).sync_from_meta(request.organization_id, client, account_id)
    except MetaAdsClientError as e:
        logger.warning("[REFCODE_SYNC] Meta API error for org %s: %s", request.organization_id, e)
        raise UpstreamError(f"Meta API error: {e}", organization_id=str(request.organization_id))
    return {"success": True, **counts}
