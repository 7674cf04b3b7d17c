"""Reconciliation auditor.

WHAT:
    For every organization with active processor credentials, compares the
    local transaction count/total over a lookback window against a fresh
    export from the processor, and triggers a backfill of exactly that window
    when the processor has more transactions than we do.

WHY:
    Webhooks and scheduled syncs miss donations. Comparing against the system
    of record daily bounds how long a gap can go unnoticed.

DISCREPANCY RULE:
    count_difference != 0
    OR percent_diff > percent_threshold   (percent_diff = |Δamount| / local_total × 100)
    OR |Δamount| > amount_threshold

    Backfill only when external_count > local_count; extra local data is never
    deleted. Organizations are processed sequentially and a failure for one is
    recorded in its result without stopping the others.

REFERENCES:
    - donorlink/services/processor_export_client.py
    - donorlink/services/backfill_orchestrator.py
    - donorlink/workers/arq_worker.py (run_reconciliation_job, daily cron)
"""

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Awaitable, Callable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from donorlink.models import PlatformEnum, Transaction
from donorlink.services.credential_service import organizations_with_credentials
from donorlink.services.processor_export_client import ProcessorExportClient
from donorlink.security import decrypt_credentials
from donorlink.telemetry import capture_exception

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 7
DEFAULT_PERCENT_THRESHOLD = 1.0
DEFAULT_AMOUNT_THRESHOLD = 100.0

CENT = Decimal("0.01")

ExportClientBuilder = Callable[[dict], ProcessorExportClient]
BackfillTrigger = Callable[[UUID, date, date], Awaitable[Optional[str]]]


def _money(value) -> float:
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


@dataclass
class ReconciliationResult:
    organization_id: str
    organization_name: str
    start_date: str
    end_date: str
    local_count: int = 0
    local_total: float = 0.0
    external_count: Optional[int] = None
    external_total: Optional[float] = None
    count_difference: int = 0
    amount_difference: float = 0.0
    percent_diff: float = 0.0
    has_discrepancy: bool = False
    backfill_triggered: bool = False
    backfill_job_id: Optional[str] = None
    status: str = "ok"
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def compare_totals(
    local_count: int,
    local_total: Decimal,
    external_count: int,
    external_total: Decimal,
    percent_threshold: float = DEFAULT_PERCENT_THRESHOLD,
    amount_threshold: float = DEFAULT_AMOUNT_THRESHOLD,
) -> Tuple[int, Decimal, float, bool]:
    """Return (count_difference, amount_difference, percent_diff, has_discrepancy)."""
    count_difference = external_count - local_count
    amount_difference = Decimal(str(external_total)) - Decimal(str(local_total))
    if local_total > 0:
        percent_diff = float(abs(amount_difference) / Decimal(str(local_total)) * 100)
    else:
        percent_diff = 0.0

    has_discrepancy = (
        count_difference != 0
        or percent_diff > percent_threshold
        or abs(amount_difference) > Decimal(str(amount_threshold))
    )
    return count_difference, amount_difference, percent_diff, has_discrepancy


class ReconciliationService:
    def __init__(
        self,
        db: Session,
        export_client_factory: ExportClientBuilder,
        trigger_backfill: BackfillTrigger,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        percent_threshold: float = DEFAULT_PERCENT_THRESHOLD,
        amount_threshold: float = DEFAULT_AMOUNT_THRESHOLD,
    ):
        self.db = db
        self.export_client_factory = export_client_factory
        self.trigger_backfill = trigger_backfill
        self.lookback_days = lookback_days
        self.percent_threshold = percent_threshold
        self.amount_threshold = amount_threshold

    def window(self, today: Optional[date] = None) -> Tuple[date, date]:
        end = today or datetime.utcnow().date()
        return end - timedelta(days=self.lookback_days), end

    def local_totals(self, organization_id: UUID, start: date, end: date) -> Tuple[int, Decimal]:
        count, total = (
            self.db.query(func.count(Transaction.id), func.coalesce(func.sum(Transaction.amount), 0))
            .filter(
                Transaction.organization_id == organization_id,
                Transaction.transaction_date >= datetime.combine(start, time.min),
                Transaction.transaction_date < datetime.combine(end + timedelta(days=1), time.min),
            )
            .one()
        )
        return int(count or 0), Decimal(str(total or 0))

    async def run(
        self,
        organization_id: Optional[UUID] = None,
        today: Optional[date] = None,
    ) -> List[ReconciliationResult]:
        start, end = self.window(today)
        targets = organizations_with_credentials(self.db, PlatformEnum.actblue.value, organization_id)
        logger.info(
            "[RECONCILE] Reconciling %d organizations from %s to %s",
            len(targets), start, end,
        )

        results = []
        for org, credential in targets:
            results.append(await self._reconcile_one(org, credential, start, end))

        discrepancies = sum(1 for r in results if r.status == "discrepancy")
        backfills = sum(1 for r in results if r.backfill_triggered)
        logger.info(
            "[RECONCILE] Complete: %d organizations, %d discrepancies, %d backfills triggered",
            len(results), discrepancies, backfills,
        )
        return results

    async def _reconcile_one(self, org, credential, start: date, end: date) -> ReconciliationResult:
        result = ReconciliationResult(
            organization_id=str(org.id),
            organization_name=org.name,
            start_date=start.isoformat(),
            end_date=end.isoformat(),
        )

        try:
            local_count, local_total = self.local_totals(org.id, start, end)
            result.local_count = local_count
            result.local_total = _money(local_total)

            credentials = decrypt_credentials(credential.encrypted_credentials, context=f"{org.id}:actblue")
            client = self.export_client_factory(credentials)
            external_count, external_total = await client.fetch_totals(start, end)
        except Exception as e:
            logger.warning("[RECONCILE] Failed for %s (%s): %s", org.name, org.id, e)
            capture_exception(e, extra={"operation": "reconcile", "organization_id": str(org.id)})
            result.status = "error"
            result.error = str(e)
            return result

        count_diff, amount_diff, percent_diff, has_discrepancy = compare_totals(
            local_count, local_total, external_count, external_total,
            self.percent_threshold, self.amount_threshold,
        )
        result.external_count = external_count
        result.external_total = _money(external_total)
        result.count_difference = count_diff
        result.amount_difference = _money(amount_diff)
        result.percent_diff = round(percent_diff, 2)
        result.has_discrepancy = has_discrepancy
        result.status = "discrepancy" if has_discrepancy else "ok"

        if has_discrepancy and external_count > local_count:
            logger.info(
                "[RECONCILE] %s missing %d transactions ($%.2f), triggering backfill %s..%s",
                org.name, count_diff, result.amount_difference, start, end,
            )
            try:
                job_id = await self.trigger_backfill(org.id, start, end)
                result.backfill_triggered = True
                result.backfill_job_id = str(job_id) if job_id else None
            except Exception as e:
                logger.warning("[RECONCILE] Backfill trigger failed for %s: %s", org.name, e)
                capture_exception(e, extra={"operation": "reconcile_backfill", "organization_id": str(org.id)})
                result.error = f"Backfill trigger failed: {e}"
        elif has_discrepancy:
            logger.info(
                "[RECONCILE] %s has %d more local transactions than the processor; no backfill",
                org.name, -count_diff,
            )

        return result


def summarize(results: List[ReconciliationResult]) -> dict:
    return {
        "total_organizations": len(results),
        "discrepancies_found": sum(1 for r in results if r.status == "discrepancy"),
        "errors": sum(1 for r in results if r.status == "error"),
        "backfills_triggered": sum(1 for r in results if r.backfill_triggered),
    }


def build_reconciliation_service(db: Session, settings) -> ReconciliationService:
    """Wire the service to configured export clients and queued backfills."""
    from donorlink.services.credential_service import build_export_client
    from donorlink.workers.arq_enqueue import start_window_backfill

    def export_client(credentials: dict) -> ProcessorExportClient:
        return build_export_client(
            credentials,
            base_url=settings.PROCESSOR_API_BASE_URL,
            poll_interval=settings.EXPORT_POLL_INTERVAL_SECONDS,
            max_polls=settings.EXPORT_MAX_POLLS_RECONCILE,
        )

    async def trigger_backfill(organization_id: UUID, start: date, end: date) -> str:
        return await start_window_backfill(
            db,
            organization_id,
            start,
            end,
            chunk_size_days=settings.BACKFILL_DEFAULT_CHUNK_DAYS,
            max_attempts=settings.BACKFILL_MAX_ATTEMPTS,
        )

    return ReconciliationService(
        db,
        export_client_factory=export_client,
        trigger_backfill=trigger_backfill,
        lookback_days=settings.RECONCILIATION_LOOKBACK_DAYS,
        percent_threshold=settings.RECONCILIATION_PERCENT_THRESHOLD,
        amount_threshold=settings.RECONCILIATION_AMOUNT_THRESHOLD,
    )
