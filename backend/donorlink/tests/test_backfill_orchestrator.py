"""Tests for the chunked backfill orchestrator.

WHAT:
    Job creation, chunk retries with bounded attempts, cancellation rules,
    in-flight cancellation, resume after interruption and the stale sweep.

WHY:
    The chunk table is the durable work ledger. Every transition must leave it
    consistent, or a worker restart reprocesses or skips date ranges.

REFERENCES:
    - donorlink/services/backfill_orchestrator.py (module under test)
"""

from datetime import date, datetime, timedelta

import pytest

from donorlink.deps import EngineActor
from donorlink.exceptions import AuthorizationFailure, InvalidStateTransition, NotFoundError
from donorlink.models import BackfillChunk, BackfillJob
from donorlink.services.backfill_orchestrator import BackfillOrchestrator, ChunkStats

ADMIN = EngineActor(label="cron", is_admin=True, is_cron=True)


def _orchestrator(db, **kwargs):
    kwargs.setdefault("inter_chunk_delay", 0)
    kwargs.setdefault("retry_delays", (0, 0, 0))
    kwargs.setdefault("sleep", lambda seconds: None)
    return BackfillOrchestrator(db, **kwargs)


def _chunks(db, job_id):
    return db.query(BackfillChunk).filter_by(job_id=job_id).order_by(BackfillChunk.chunk_index).all()


@pytest.fixture
def job(test_db_session, organization):
    return _orchestrator(test_db_session).create_job(
        organization.id, days_back=90, chunk_size_days=30, today=date(2025, 3, 31)
    )


class TestCreateJob:
    def test_persists_job_and_pending_chunks(self, test_db_session, job):
        chunks = _chunks(test_db_session, job.id)

        assert job.status == "running"
        assert job.total_chunks == 3
        assert (job.start_date, job.end_date) == (date(2025, 1, 1), date(2025, 3, 31))
        assert [c.status for c in chunks] == ["pending"] * 3
        assert [c.attempt_count for c in chunks] == [0, 0, 0]
        assert chunks[0].end_date == date(2025, 3, 31)

    def test_estimate_minutes(self, test_db_session):
        orchestrator = BackfillOrchestrator(test_db_session, inter_chunk_delay=5)

        assert orchestrator.estimate_minutes(12) == 13
        assert orchestrator.estimate_minutes(0) == 1


class TestRunJob:
    def test_all_chunks_succeed(self, test_db_session, job):
        seen = []

        def processor(chunk):
            seen.append((chunk.start_date, chunk.end_date))
            return ChunkStats(processed=10, inserted=7, updated=2, skipped=1)

        finished = _orchestrator(test_db_session).run_job(job.id, processor)
        status = _orchestrator(test_db_session).get_status(job.id)

        assert finished.status == "completed"
        assert seen[0] == (date(2025, 3, 2), date(2025, 3, 31))
        assert status["processed_chunks"] == 3
        assert status["rows"] == {"processed": 30, "inserted": 21, "updated": 6, "skipped": 3}
        assert status["progress_percent"] == 100.0
        assert status["is_active"] is False

    def test_failing_chunk_retries_then_fails_with_bounded_attempts(self, test_db_session, job):
        chunks = _chunks(test_db_session, job.id)
        bad_index = chunks[1].chunk_index
        calls = {"bad": 0}

        def processor(chunk):
            if chunk.chunk_index == bad_index:
                calls["bad"] += 1
                raise RuntimeError("export timed out")
            return ChunkStats(processed=1, inserted=1)

        finished = _orchestrator(test_db_session, max_attempts=3).run_job(job.id, processor)
        chunks = _chunks(test_db_session, job.id)

        assert calls["bad"] == 3
        assert chunks[1].status == "failed"
        assert chunks[1].attempt_count == 3
        assert "Failed after 3 attempts" in chunks[1].error_message
        assert all(c.attempt_count <= c.max_attempts for c in chunks)
        assert finished.status == "completed_with_errors"
        assert finished.failed_chunks == 1

    def test_every_chunk_failing_completes_with_errors(self, test_db_session, job):
        def processor(chunk):
            raise RuntimeError("processor down")

        finished = _orchestrator(test_db_session, max_attempts=2).run_job(job.id, processor)

        assert finished.status == "completed_with_errors"
        assert finished.failed_chunks == 3
        assert {c.status for c in _chunks(test_db_session, job.id)} == {"failed"}

    def test_single_chunk_window_with_exhausted_retries(self, test_db_session, organization):
        orchestrator = _orchestrator(test_db_session)
        job = orchestrator.create_job(
            organization.id, start_date=date(2025, 3, 1), end_date=date(2025, 3, 8), chunk_size_days=30
        )

        def processor(chunk):
            raise RuntimeError("export timed out")

        finished = orchestrator.run_job(job.id, processor)
        (chunk,) = _chunks(test_db_session, job.id)

        assert chunk.status == "failed"
        assert chunk.attempt_count == 3
        assert finished.status == "completed_with_errors"
        assert finished.error_message == "1 of 1 chunks failed"

    def test_future_retries_are_left_for_the_sweep(self, test_db_session, job):
        def processor(chunk):
            raise RuntimeError("flaky")

        orchestrator = _orchestrator(test_db_session, retry_delays=(600,))
        finished = orchestrator.run_job(job.id, processor, wait_for_retries=False)
        chunks = _chunks(test_db_session, job.id)

        assert finished.status == "running"
        assert [c.status for c in chunks] == ["retrying"] * 3
        assert all(c.next_retry_at > datetime.utcnow() for c in chunks)
        assert orchestrator.jobs_with_due_work() == []
        assert orchestrator.jobs_with_due_work(now=datetime.utcnow() + timedelta(seconds=601)) == [job.id]

    def test_resume_skips_completed_chunks(self, test_db_session, job):
        chunks = _chunks(test_db_session, job.id)
        chunks[0].status = "completed"
        test_db_session.commit()
        seen = []

        def processor(chunk):
            seen.append(chunk.chunk_index)
            return ChunkStats()

        _orchestrator(test_db_session).run_job(job.id, processor)

        assert seen == [1, 2]

    def test_unknown_job_raises_not_found(self, test_db_session):
        import uuid

        with pytest.raises(NotFoundError):
            _orchestrator(test_db_session).run_job(uuid.uuid4(), lambda chunk: ChunkStats())


class TestCancelJob:
    def test_cancel_marks_pending_chunks_cancelled(self, test_db_session, job):
        result = _orchestrator(test_db_session).cancel_job(job.id, ADMIN, reason="wrong window")
        test_db_session.refresh(job)

        assert result["status"] == "cancelled"
        assert result["cancelled_chunks"] == 3
        assert job.cancel_reason == "wrong window"
        assert job.cancelled_by == "cron"
        assert {c.status for c in _chunks(test_db_session, job.id)} == {"cancelled"}

    def test_cancel_leaves_finished_chunks_untouched(self, test_db_session, organization):
        orchestrator = _orchestrator(test_db_session)
        job = orchestrator.create_job(
            organization.id, days_back=150, chunk_size_days=30, today=date(2025, 3, 31)
        )
        for chunk, status in zip(
            _chunks(test_db_session, job.id), ["completed", "failed", "pending", "retrying", "processing"]
        ):
            chunk.status = status
        test_db_session.commit()

        result = orchestrator.cancel_job(job.id, ADMIN)

        assert result["cancelled_chunks"] == 3
        assert [c.status for c in _chunks(test_db_session, job.id)] == [
            "completed", "failed", "cancelled", "cancelled", "cancelled",
        ]

    def test_cancel_is_idempotent(self, test_db_session, job):
        orchestrator = _orchestrator(test_db_session)
        orchestrator.cancel_job(job.id, ADMIN)

        again = orchestrator.cancel_job(job.id, ADMIN)

        assert again["status"] == "cancelled"
        assert again["cancelled_chunks"] == 0

    def test_completed_job_cannot_be_cancelled(self, test_db_session, job):
        orchestrator = _orchestrator(test_db_session)
        orchestrator.run_job(job.id, lambda chunk: ChunkStats())

        with pytest.raises(InvalidStateTransition):
            orchestrator.cancel_job(job.id, ADMIN)

    def test_member_of_other_organization_cannot_cancel(self, test_db_session, job, other_organization):
        outsider = EngineActor(label="x@example.com", organization_ids=frozenset({other_organization.id}))

        with pytest.raises(AuthorizationFailure):
            _orchestrator(test_db_session).cancel_job(job.id, outsider)

    def test_organization_mismatch_is_not_found(self, test_db_session, job, other_organization):
        with pytest.raises(NotFoundError):
            _orchestrator(test_db_session).cancel_job(job.id, ADMIN, organization_id=other_organization.id)

    def test_in_flight_chunk_result_is_discarded_after_cancel(self, test_db_session, job):
        orchestrator = _orchestrator(test_db_session)
        processed = []

        def processor(chunk):
            processed.append(chunk.chunk_index)
            # Cancellation arrives while the first chunk is being processed
            orchestrator.cancel_job(job.id, ADMIN, reason="stop")
            return ChunkStats(processed=99, inserted=99)

        finished = orchestrator.run_job(job.id, processor)
        chunks = _chunks(test_db_session, job.id)

        assert processed == [0]
        assert finished.status == "cancelled"
        assert [c.status for c in chunks] == ["cancelled"] * 3
        assert chunks[0].processed_rows in (0, None)


class TestStaleSweep:
    def test_stuck_chunks_are_released_or_failed(self, test_db_session, job):
        chunks = _chunks(test_db_session, job.id)
        long_ago = datetime.utcnow() - timedelta(hours=2)
        chunks[0].status, chunks[0].attempt_count, chunks[0].started_at = "processing", 1, long_ago
        chunks[1].status, chunks[1].attempt_count, chunks[1].started_at = "processing", 3, long_ago
        test_db_session.commit()

        orchestrator = _orchestrator(test_db_session)
        swept = orchestrator.reset_stale_chunks(timedelta(minutes=30))
        chunks = _chunks(test_db_session, job.id)

        assert (swept["reset"], swept["failed"]) == (1, 1)
        assert chunks[0].status == "retrying"
        assert chunks[1].status == "failed"
        assert orchestrator.jobs_with_due_work() == [job.id]

    def test_recent_processing_chunk_is_left_alone(self, test_db_session, job):
        chunk = _chunks(test_db_session, job.id)[0]
        chunk.status, chunk.attempt_count, chunk.started_at = "processing", 1, datetime.utcnow()
        test_db_session.commit()

        orchestrator = _orchestrator(test_db_session)
        swept = orchestrator.reset_stale_chunks(timedelta(minutes=30))

        assert swept["reset"] == 0
        # A job with a chunk in flight is not re-enqueued
        assert orchestrator.jobs_with_due_work() == []


def test_job_rows_are_scoped_to_organization(test_db_session, job, organization):
    assert test_db_session.query(BackfillJob).filter_by(organization_id=organization.id).count() == 1
    assert {c.organization_id for c in _chunks(test_db_session, job.id)} == {organization.id}
