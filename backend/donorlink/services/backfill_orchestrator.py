"""Chunked backfill orchestrator.

WHAT:
    Splits a historical date range into fixed-size day windows, persists a
    BackfillJob with one BackfillChunk per window, and drives the chunks through
    their state machine until the job is terminal.

WHY:
    The upstream export API is slow and unreliable. Bounded chunks keep each
    request small, and the chunk table doubles as a durable work ledger so an
    interrupted run resumes without reprocessing completed chunks.

STATE MACHINE:
    Job:   running -> completed | completed_with_errors | failed | cancelled
    Chunk: pending -> processing -> completed
           processing -> retrying -> processing   (attempt_count < max_attempts)
           processing -> failed                   (attempt_count == max_attempts)
           pending | retrying | processing -> cancelled   (job cancelled)

CONCURRENCY:
    A chunk is claimed with a conditional UPDATE (pending/retrying -> processing).
    Cancellation is cooperative: the job status is re-read before each chunk and
    the result of an in-flight chunk, including the rows its processor wrote,
    is rolled back once the job stops running. Processors flush and leave the
    commit to the orchestrator.

REFERENCES:
    - donorlink/services/transaction_ingestor.py (default chunk processor)
    - donorlink/workers/arq_worker.py (process_backfill_job, sweep_stale_chunks)
    - donorlink/routers/backfill.py
"""

import logging
import math
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from donorlink.exceptions import AuthorizationFailure, InvalidStateTransition, NotFoundError
from donorlink.models import (
    TERMINAL_CHUNK_STATUSES,
    TERMINAL_JOB_STATUSES,
    BackfillChunk,
    BackfillChunkStatusEnum as ChunkStatus,
    BackfillJob,
    BackfillJobStatusEnum as JobStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_DAYS_BACK = 365
DEFAULT_CHUNK_SIZE_DAYS = 30
DEFAULT_MAX_ATTEMPTS = 3
RETRY_DELAYS_SECONDS = (60, 300, 900)
INTER_CHUNK_DELAY_SECONDS = 5
EXPECTED_EXPORT_SECONDS = 60

_CLAIMABLE = (ChunkStatus.pending.value, ChunkStatus.retrying.value)
_CANCELLABLE = (ChunkStatus.pending.value, ChunkStatus.retrying.value, ChunkStatus.processing.value)


@dataclass
class ChunkStats:
    """Row counts returned by a chunk processor."""
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
        }


ChunkProcessor = Callable[[BackfillChunk], ChunkStats]


def compute_chunk_ranges(
    days_back: int = DEFAULT_DAYS_BACK,
    chunk_size_days: int = DEFAULT_CHUNK_SIZE_DAYS,
    today: Optional[date] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> List[Tuple[date, date]]:
    """Walk backward from the end date in fixed windows, newest first.

    Without explicit bounds the window is the `days_back` days ending today,
    inclusive. The oldest chunk is clipped so it never precedes the start.
    """
    if chunk_size_days < 1:
        raise ValueError("chunk_size_days must be at least 1")

    if end_date is None:
        end_date = today or datetime.utcnow().date()
    if start_date is None:
        if days_back < 1:
            raise ValueError("days_back must be at least 1")
        start_date = end_date - timedelta(days=days_back - 1)
    if start_date > end_date:
        raise ValueError("start_date must not be after end_date")

    ranges = []
    chunk_end = end_date
    while chunk_end >= start_date:
        chunk_start = max(chunk_end - timedelta(days=chunk_size_days - 1), start_date)
        ranges.append((chunk_start, chunk_end))
        chunk_end = chunk_start - timedelta(days=1)
    return ranges


def finalize_status(statuses: Sequence[str]) -> str:
    """Aggregate job status from chunk statuses.

    Stays `running` until every chunk is terminal.
    """
    total = len(statuses)
    completed = sum(1 for s in statuses if s == ChunkStatus.completed.value)
    failed = sum(1 for s in statuses if s == ChunkStatus.failed.value)
    cancelled = sum(1 for s in statuses if s == ChunkStatus.cancelled.value)

    if completed + failed + cancelled < total:
        return JobStatus.running.value
    if cancelled > 0 and cancelled == total - completed:
        return JobStatus.cancelled.value
    if failed:
        return JobStatus.completed_with_errors.value
    return JobStatus.completed.value


class BackfillOrchestrator:
    """Create, run, cancel and inspect chunked backfill jobs."""

    def __init__(
        self,
        db: Session,
        inter_chunk_delay: float = INTER_CHUNK_DELAY_SECONDS,
        retry_delays: Sequence[int] = RETRY_DELAYS_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.inter_chunk_delay = inter_chunk_delay
        self.retry_delays = tuple(retry_delays) or (0,)
        self.max_attempts = max_attempts
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_job(
        self,
        organization_id: UUID,
        days_back: int = DEFAULT_DAYS_BACK,
        chunk_size_days: int = DEFAULT_CHUNK_SIZE_DAYS,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        task_name: str = "transaction_backfill",
        today: Optional[date] = None,
    ) -> BackfillJob:
        ranges = compute_chunk_ranges(
            days_back=days_back,
            chunk_size_days=chunk_size_days,
            today=today,
            start_date=start_date,
            end_date=end_date,
        )

        job = BackfillJob(
            organization_id=organization_id,
            task_name=task_name,
            status=JobStatus.running.value,
            total_chunks=len(ranges),
            processed_chunks=0,
            failed_chunks=0,
            start_date=ranges[-1][0],
            end_date=ranges[0][1],
            chunk_size_days=chunk_size_days,
            started_at=datetime.utcnow(),
        )
        self.db.add(job)
        self.db.flush()

        for index, (chunk_start, chunk_end) in enumerate(ranges):
            self.db.add(BackfillChunk(
                job_id=job.id,
                organization_id=organization_id,
                chunk_index=index,
                start_date=chunk_start,
                end_date=chunk_end,
                status=ChunkStatus.pending.value,
                attempt_count=0,
                max_attempts=self.max_attempts,
            ))
        self.db.commit()
        self.db.refresh(job)

        logger.info(
            "[BACKFILL] Created job %s for org %s: %d chunks %s..%s",
            job.id, organization_id, job.total_chunks, job.start_date, job.end_date,
        )
        return job

    def estimate_minutes(self, chunk_count: int) -> int:
        seconds = chunk_count * (self.inter_chunk_delay + EXPECTED_EXPORT_SECONDS)
        return max(1, math.ceil(seconds / 60))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _get_job(self, job_id: UUID) -> BackfillJob:
        job = self.db.query(BackfillJob).filter(BackfillJob.id == job_id).first()
        if not job:
            raise NotFoundError(f"Backfill job {job_id} not found")
        return job

    def _claim(self, chunk: BackfillChunk) -> bool:
        claimed = (
            self.db.query(BackfillChunk)
            .filter(BackfillChunk.id == chunk.id, BackfillChunk.status.in_(_CLAIMABLE))
            .update(
                {
                    BackfillChunk.status: ChunkStatus.processing.value,
                    BackfillChunk.attempt_count: BackfillChunk.attempt_count + 1,
                    BackfillChunk.started_at: datetime.utcnow(),
                    BackfillChunk.next_retry_at: None,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        self.db.refresh(chunk)
        return claimed == 1

    def _next_chunk(self, job_id: UUID) -> Tuple[Optional[BackfillChunk], Optional[datetime]]:
        """Next claimable chunk, or the earliest future retry time."""
        now = datetime.utcnow()
        candidates = (
            self.db.query(BackfillChunk)
            .filter(BackfillChunk.job_id == job_id, BackfillChunk.status.in_(_CLAIMABLE))
            .order_by(BackfillChunk.chunk_index.asc())
            .all()
        )
        earliest_retry = None
        for chunk in candidates:
            if chunk.next_retry_at is None or chunk.next_retry_at <= now:
                return chunk, None
            if earliest_retry is None or chunk.next_retry_at < earliest_retry:
                earliest_retry = chunk.next_retry_at
        return None, earliest_retry

    def _record_failure(self, chunk: BackfillChunk, error: Exception) -> None:
        if chunk.attempt_count < chunk.max_attempts:
            delay = self.retry_delays[min(chunk.attempt_count - 1, len(self.retry_delays) - 1)]
            chunk.status = ChunkStatus.retrying.value
            chunk.next_retry_at = datetime.utcnow() + timedelta(seconds=delay)
            chunk.error_message = str(error)
            logger.warning(
                "[BACKFILL] Chunk %d of job %s failed (attempt %d/%d), retry at %s: %s",
                chunk.chunk_index, chunk.job_id, chunk.attempt_count, chunk.max_attempts,
                chunk.next_retry_at, error,
            )
        else:
            chunk.status = ChunkStatus.failed.value
            chunk.next_retry_at = None
            chunk.completed_at = datetime.utcnow()
            chunk.error_message = f"Failed after {chunk.max_attempts} attempts: {error}"
            logger.error(
                "[BACKFILL] Chunk %d of job %s failed permanently: %s",
                chunk.chunk_index, chunk.job_id, error,
            )

    def _record_success(self, chunk: BackfillChunk, stats: ChunkStats) -> None:
        chunk.status = ChunkStatus.completed.value
        chunk.processed_rows = stats.processed
        chunk.inserted_rows = stats.inserted
        chunk.updated_rows = stats.updated
        chunk.skipped_rows = stats.skipped
        chunk.error_message = None
        chunk.next_retry_at = None
        chunk.completed_at = datetime.utcnow()

    def update_progress(self, job: BackfillJob) -> BackfillJob:
        """Persist chunk counters and finalize the job once every chunk is terminal.

        A cancelled job keeps its status.
        """
        statuses = [
            status for (status,) in
            self.db.query(BackfillChunk.status).filter(BackfillChunk.job_id == job.id).all()
        ]
        job.processed_chunks = sum(1 for s in statuses if s in TERMINAL_CHUNK_STATUSES)
        job.failed_chunks = sum(1 for s in statuses if s == ChunkStatus.failed.value)
        job.last_batch_at = datetime.utcnow()

        if job.status == JobStatus.cancelled.value:
            if job.completed_at is None:
                job.completed_at = datetime.utcnow()
        elif job.status == JobStatus.running.value:
            status = finalize_status(statuses)
            if status != JobStatus.running.value:
                job.status = status
                job.completed_at = datetime.utcnow()
                if status == JobStatus.completed_with_errors.value:
                    job.error_message = f"{job.failed_chunks} of {len(statuses)} chunks failed"
                logger.info(
                    "[BACKFILL] Job %s finished: status=%s, chunks=%d, failed=%d",
                    job.id, status, len(statuses), job.failed_chunks,
                )
        self.db.commit()
        return job

    def run_job(
        self,
        job_id: UUID,
        processor: ChunkProcessor,
        wait_for_retries: bool = True,
    ) -> BackfillJob:
        """Process the job's chunks sequentially until it is terminal.

        With `wait_for_retries=False` the run returns as soon as only future
        retries remain; the stale chunk sweep re-enqueues the job later.
        """
        job = self._get_job(job_id)
        logger.info("[BACKFILL] Running job %s (%s)", job.id, job.status)
        processed_any = False

        while True:
            self.db.refresh(job)
            if job.status != JobStatus.running.value:
                logger.info("[BACKFILL] Job %s is %s, stopping", job.id, job.status)
                break

            chunk, earliest_retry = self._next_chunk(job.id)
            if chunk is None:
                if earliest_retry is None or not wait_for_retries:
                    break
                wait = max(0.0, (earliest_retry - datetime.utcnow()).total_seconds())
                logger.info("[BACKFILL] Job %s waiting %.0fs for next retry", job.id, wait)
                self.sleep(wait)
                continue

            if processed_any and self.inter_chunk_delay:
                self.sleep(self.inter_chunk_delay)

            if not self._claim(chunk):
                continue
            processed_any = True

            logger.info(
                "[BACKFILL] Job %s chunk %d/%d %s..%s (attempt %d)",
                job.id, chunk.chunk_index + 1, job.total_chunks,
                chunk.start_date, chunk.end_date, chunk.attempt_count,
            )

            stats, error = None, None
            try:
                stats = processor(chunk)
            except Exception as e:
                self.db.rollback()
                error = e

            self.db.refresh(job)
            self.db.refresh(chunk)
            if job.status != JobStatus.running.value:
                logger.info(
                    "[BACKFILL] Discarding result of chunk %d: job %s is %s",
                    chunk.chunk_index, job.id, job.status,
                )
                self.db.rollback()
                self.update_progress(job)
                break
            if chunk.status != ChunkStatus.processing.value:
                # Released by the stale sweep while we were working on it
                self.db.rollback()
                continue

            if error is not None:
                self._record_failure(chunk, error)
            else:
                self._record_success(chunk, stats or ChunkStats())
                logger.info(
                    "[BACKFILL] Chunk %d done: processed=%d inserted=%d updated=%d skipped=%d",
                    chunk.chunk_index, chunk.processed_rows, chunk.inserted_rows,
                    chunk.updated_rows, chunk.skipped_rows,
                )
            self.db.commit()
            self.update_progress(job)

        return job

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_job(
        self,
        job_id: UUID,
        actor,
        organization_id: Optional[UUID] = None,
        reason: Optional[str] = None,
    ) -> Dict:
        """Cancel a running job and every non-terminal chunk.

        `actor` needs `label`, `is_admin` and `organization_ids` attributes.
        Cancelling a cancelled or failed job is a no-op; a completed job
        cannot be cancelled.
        """
        job = self._get_job(job_id)

        if organization_id is not None and job.organization_id != organization_id:
            raise NotFoundError(f"Backfill job {job_id} not found for organization {organization_id}")
        if not actor.is_admin and job.organization_id not in actor.organization_ids:
            raise AuthorizationFailure("Not allowed to cancel this backfill job")

        if job.status in (JobStatus.completed.value, JobStatus.completed_with_errors.value):
            raise InvalidStateTransition(
                f"Cannot cancel a job with status '{job.status}'", current_status=job.status
            )
        if job.status in TERMINAL_JOB_STATUSES:
            return {
                "job_id": str(job.id),
                "status": job.status,
                "cancelled_chunks": 0,
                "message": f"Job already {job.status}",
            }

        now = datetime.utcnow()
        job.status = JobStatus.cancelled.value
        job.cancelled_at = now
        job.completed_at = now
        job.cancelled_by = actor.label
        job.cancel_reason = reason or "Cancelled by user"

        cancelled_chunks = (
            self.db.query(BackfillChunk)
            .filter(BackfillChunk.job_id == job.id, BackfillChunk.status.in_(_CANCELLABLE))
            .update(
                {
                    BackfillChunk.status: ChunkStatus.cancelled.value,
                    BackfillChunk.error_message: job.cancel_reason,
                    BackfillChunk.next_retry_at: None,
                    BackfillChunk.completed_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        self.db.expire_all()
        self.update_progress(job)

        logger.info(
            "[BACKFILL] Job %s cancelled by %s (%d chunks): %s",
            job.id, actor.label, cancelled_chunks, job.cancel_reason,
        )
        return {
            "job_id": str(job.id),
            "status": job.status,
            "cancelled_chunks": cancelled_chunks,
            "message": f"Cancelled {cancelled_chunks} pending chunks",
        }

    # ------------------------------------------------------------------
    # Inspection and recovery
    # ------------------------------------------------------------------

    def get_status(self, job_id: UUID) -> Dict:
        job = self._get_job(job_id)
        chunks = (
            self.db.query(BackfillChunk)
            .filter(BackfillChunk.job_id == job.id)
            .order_by(BackfillChunk.chunk_index.asc())
            .all()
        )

        counts = {status.value: 0 for status in ChunkStatus}
        for chunk in chunks:
            counts[chunk.status] = counts.get(chunk.status, 0) + 1
        terminal = sum(counts[s] for s in TERMINAL_CHUNK_STATUSES)
        remaining = len(chunks) - terminal
        is_active = job.status == JobStatus.running.value

        return {
            "job_id": str(job.id),
            "organization_id": str(job.organization_id),
            "task_name": job.task_name,
            "status": job.status,
            "total_chunks": job.total_chunks,
            "processed_chunks": job.processed_chunks,
            "failed_chunks": job.failed_chunks,
            "date_range": {
                "start": job.start_date.isoformat() if job.start_date else None,
                "end": job.end_date.isoformat() if job.end_date else None,
            },
            "chunks": counts,
            "rows": {
                "processed": sum(c.processed_rows or 0 for c in chunks),
                "inserted": sum(c.inserted_rows or 0 for c in chunks),
                "updated": sum(c.updated_rows or 0 for c in chunks),
                "skipped": sum(c.skipped_rows or 0 for c in chunks),
            },
            "progress_percent": round(terminal / len(chunks) * 100, 1) if chunks else 0.0,
            "is_active": is_active,
            "estimated_minutes_remaining": self.estimate_minutes(remaining) if is_active and remaining else 0,
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "last_batch_at": job.last_batch_at.isoformat() if job.last_batch_at else None,
            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
            "cancelled_at": job.cancelled_at.isoformat() if job.cancelled_at else None,
            "cancel_reason": job.cancel_reason,
            "error_message": job.error_message,
        }

    def reset_stale_chunks(self, older_than: timedelta, now: Optional[datetime] = None) -> Dict:
        """Release chunks stuck in `processing` (worker died mid-chunk).

        Chunks with attempts left go back to `retrying`, the rest fail.
        """
        now = now or datetime.utcnow()
        cutoff = now - older_than
        stale = (
            self.db.query(BackfillChunk)
            .join(BackfillJob, BackfillJob.id == BackfillChunk.job_id)
            .filter(
                BackfillJob.status == JobStatus.running.value,
                BackfillChunk.status == ChunkStatus.processing.value,
                BackfillChunk.started_at < cutoff,
            )
            .all()
        )

        reset, failed = 0, 0
        job_ids = set()
        for chunk in stale:
            job_ids.add(chunk.job_id)
            if chunk.attempt_count >= chunk.max_attempts:
                chunk.status = ChunkStatus.failed.value
                chunk.completed_at = now
                chunk.error_message = f"Failed after {chunk.max_attempts} attempts: chunk timed out"
                failed += 1
            else:
                chunk.status = ChunkStatus.retrying.value
                chunk.next_retry_at = now
                chunk.error_message = "Chunk timed out while processing"
                reset += 1
        self.db.commit()

        for job_id in job_ids:
            self.update_progress(self._get_job(job_id))

        if stale:
            logger.warning("[BACKFILL] Reset %d stale chunks, failed %d", reset, failed)
        return {"reset": reset, "failed": failed, "job_ids": [str(j) for j in job_ids]}

    def jobs_with_due_work(self, now: Optional[datetime] = None) -> List[UUID]:
        """Running jobs that have claimable chunks and nothing in flight."""
        now = now or datetime.utcnow()
        rows = (
            self.db.query(BackfillChunk.job_id, BackfillChunk.status, BackfillChunk.next_retry_at)
            .join(BackfillJob, BackfillJob.id == BackfillChunk.job_id)
            .filter(
                BackfillJob.status == JobStatus.running.value,
                BackfillChunk.status.in_(_CLAIMABLE + (ChunkStatus.processing.value,)),
            )
            .all()
        )
        due, busy = set(), set()
        for job_id, status, next_retry_at in rows:
            if status == ChunkStatus.processing.value:
                busy.add(job_id)
            elif next_retry_at is None or next_retry_at <= now:
                due.add(job_id)
        return sorted(due - busy, key=str)
