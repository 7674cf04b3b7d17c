"""ARQ async worker - backfill, reconciliation and recovery jobs.

WHAT:
    Single async worker for the engine's background work:
    - process_backfill_job: drives one backfill job's chunks to completion
    - run_reconciliation_job: compares local totals with the processor
    - sweep_stale_chunks: releases stuck chunks and re-enqueues due retries

WHY:
    - Trigger endpoints must return immediately; chunks can take hours
    - The chunk table is the durable ledger, so a worker restart loses nothing:
      the sweep finds running jobs with claimable chunks and re-enqueues them
    - Services are sync (SQLAlchemy Session) and run via asyncio.to_thread

ARCHITECTURE:
    ┌─────────────────┐   process_backfill_job   ┌──────────────────────┐
    │  arq_worker.py  │─────────────────────────▶│ BackfillOrchestrator │
    │  (jobs + cron)  │                          │  + TransactionIngestor│
    └─────────────────┘                          └──────────────────────┘
            │ run_reconciliation_job
            ▼
    ┌───────────────────────┐  discrepancy  ┌───────────────────────┐
    │ ReconciliationService │──────────────▶│ start_window_backfill │
    └───────────────────────┘               └───────────────────────┘

USAGE:
    arq donorlink.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m donorlink.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - donorlink/services/backfill_orchestrator.py
    - donorlink/services/reconciliation_service.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
from uuid import UUID

from arq import cron, func

from donorlink.database import SessionLocal
from donorlink.deps import get_settings
from donorlink.services.backfill_orchestrator import BackfillOrchestrator
from donorlink.services.credential_service import export_client_factory
from donorlink.services.reconciliation_service import build_reconciliation_service, summarize
from donorlink.services.transaction_ingestor import TransactionIngestor
from donorlink.telemetry import capture_exception, init_sentry
from donorlink.workers.arq_enqueue import QUEUE_NAME, enqueue_backfill_job, get_redis_settings

logger = logging.getLogger(__name__)


# =============================================================================
# BACKFILL
# =============================================================================

def _run_backfill(db, job_id: UUID) -> Dict:
    settings = get_settings()
    orchestrator = BackfillOrchestrator(
        db,
        inter_chunk_delay=settings.BACKFILL_INTER_CHUNK_DELAY_SECONDS,
        max_attempts=settings.BACKFILL_MAX_ATTEMPTS,
    )
    ingestor = TransactionIngestor(
        db,
        export_client_factory(
            db,
            base_url=settings.PROCESSOR_API_BASE_URL,
            poll_interval=settings.EXPORT_POLL_INTERVAL_SECONDS,
            max_polls=settings.EXPORT_MAX_POLLS_INGEST,
        ),
    )
    # Future retries are picked up by the sweep, not by holding this job open
    job = orchestrator.run_job(job_id, ingestor, wait_for_retries=False)
    return orchestrator.get_status(job.id)


async def process_backfill_job(ctx: Dict, job_id: str) -> Dict:
    """Process every currently claimable chunk of one backfill job.

    Args:
        ctx: ARQ context
        job_id: BackfillJob UUID string

    Returns:
        Dict with the job status summary
    """
    logger.info("[ARQ] Starting backfill job %s", job_id)

    db = SessionLocal()
    try:
        status = await asyncio.to_thread(_run_backfill, db, UUID(job_id))
        logger.info(
            "[ARQ] Backfill job %s: status=%s, %d/%d chunks",
            job_id, status["status"], status["processed_chunks"], status["total_chunks"],
        )
        return {"success": True, **status}

    except Exception as e:
        logger.exception("[ARQ] Backfill job %s failed: %s", job_id, e)
        capture_exception(e, extra={"operation": "process_backfill_job", "job_id": job_id})
        return {"success": False, "error": str(e)}
    finally:
        db.close()


# =============================================================================
# RECONCILIATION
# =============================================================================

async def run_reconciliation_job(ctx: Dict, organization_id: Optional[str] = None) -> Dict:
    """Reconcile one organization or all organizations with credentials.

    Organizations are processed sequentially to bound load on the export API.
    """
    logger.info("[ARQ] Starting reconciliation (organization=%s)", organization_id or "all")

    db = SessionLocal()
    try:
        service = build_reconciliation_service(db, get_settings())
        results = await service.run(organization_id=UUID(organization_id) if organization_id else None)
        summary = summarize(results)
        logger.info("[ARQ] Reconciliation complete: %s", summary)
        return {"success": True, "summary": summary, "results": [r.to_dict() for r in results]}

    except Exception as e:
        logger.exception("[ARQ] Reconciliation failed: %s", e)
        capture_exception(e, extra={"operation": "run_reconciliation_job", "organization_id": organization_id})
        return {"success": False, "error": str(e)}
    finally:
        db.close()


async def scheduled_reconciliation(ctx: Dict) -> Dict:
    """Daily cron entrypoint."""
    return await run_reconciliation_job(ctx)


# =============================================================================
# STALE CHUNK SWEEP
# =============================================================================

def _sweep(db) -> Dict:
    settings = get_settings()
    orchestrator = BackfillOrchestrator(db, max_attempts=settings.BACKFILL_MAX_ATTEMPTS)
    swept = orchestrator.reset_stale_chunks(timedelta(minutes=settings.BACKFILL_STALE_CHUNK_MINUTES))
    swept["due_job_ids"] = [str(j) for j in orchestrator.jobs_with_due_work()]
    return swept


async def sweep_stale_chunks(ctx: Dict) -> Dict:
    """Release chunks stuck in processing and re-enqueue jobs with due work."""
    db = SessionLocal()
    try:
        swept = await asyncio.to_thread(_sweep, db)
        enqueued = 0
        for job_id in swept["due_job_ids"]:
            result = await enqueue_backfill_job(job_id)
            if result["status"] == "enqueued":
                enqueued += 1

        if swept["reset"] or swept["failed"] or enqueued:
            logger.info(
                "[ARQ] Sweep: reset=%d failed=%d re-enqueued=%d",
                swept["reset"], swept["failed"], enqueued,
            )
        return {"success": True, "reset": swept["reset"], "failed": swept["failed"], "enqueued": enqueued}

    except Exception as e:
        logger.exception("[ARQ] Stale chunk sweep failed: %s", e)
        capture_exception(e, extra={"operation": "sweep_stale_chunks"})
        return {"success": False, "error": str(e)}
    finally:
        db.close()


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize resources and log config."""
    import platform

    sentry_enabled = init_sentry()
    settings = get_settings()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up")
    logger.info("=" * 60)
    logger.info("[ARQ] Python: %s", platform.python_version())
    logger.info("[ARQ] Host: %s", platform.node())
    logger.info("[ARQ] Queue: %s", QUEUE_NAME)
    logger.info("[ARQ] Inter-chunk delay: %ss", settings.BACKFILL_INTER_CHUNK_DELAY_SECONDS)
    logger.info("[ARQ] Sentry: %s", "enabled" if sentry_enabled else "disabled")
    logger.info("=" * 60)

    ctx['startup_time'] = datetime.now(timezone.utc)
    ctx['jobs_processed'] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - cleanup and log stats."""
    jobs = ctx.get('jobs_processed', 0)
    uptime = datetime.now(timezone.utc) - ctx.get('startup_time', datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info("[ARQ] Jobs processed: %d", jobs)
    logger.info("[ARQ] Uptime: %s", uptime)
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx['jobs_processed'] = ctx.get('jobs_processed', 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - Backfill jobs are long: one job may walk a year of 30-day chunks
    - keep_result=0 for backfill jobs so the per-job arq id can be reused as
      soon as a run ends (the sweep re-enqueues jobs with due retries)
    - max_tries=1: retries live in the chunk table, not in arq
    """

    functions = [
        func(process_backfill_job, keep_result=0, timeout=6 * 3600),
        run_reconciliation_job,
        sweep_stale_chunks,
    ]

    cron_jobs = [
        cron(scheduled_reconciliation, hour={10}, minute={0}, run_at_startup=False),
        cron(sweep_stale_chunks, minute={0, 15, 30, 45}, run_at_startup=True),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    # Performance settings
    max_jobs = 4
    job_timeout = 1800               # Reconciliation polls up to 2 min per organization
    keep_result = 3600
    retry_jobs = False
    max_tries = 1
    health_check_interval = 30

    queue_name = QUEUE_NAME
