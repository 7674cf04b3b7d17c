"""Tests for the ARQ job functions.

WHAT:
    process_backfill_job drives a persisted job to completion with the
    ingestor; sweep_stale_chunks releases stuck chunks and re-enqueues jobs.
    Both report failures in their result instead of raising.

REFERENCES:
    - donorlink/workers/arq_worker.py (module under test)
"""

import asyncio
from datetime import date, datetime, timedelta

import pytest

from donorlink.deps import Settings
from donorlink.models import BackfillChunk, Transaction
from donorlink.services.backfill_orchestrator import BackfillOrchestrator
from donorlink.workers import arq_worker


class _SharedSession:
    """Test session handed to the job; the job's close() must not detach fixtures."""

    def __init__(self, session):
        self._session = session

    def __getattr__(self, name):
        return getattr(self._session, name)

    def close(self):
        pass


class FakeExportClient:
    async def fetch_rows(self, start, end):
        return [{
            "lineitem_id": f"L-{start.isoformat()}",
            "date": f"{start.isoformat()} 09:00:00",
            "amount": "10.00",
        }]


@pytest.fixture
def worker_env(monkeypatch, test_db_session):
    monkeypatch.setattr(arq_worker, "SessionLocal", lambda: _SharedSession(test_db_session))
    monkeypatch.setattr(
        arq_worker, "get_settings",
        lambda: Settings(BACKFILL_INTER_CHUNK_DELAY_SECONDS=0, BACKFILL_STALE_CHUNK_MINUTES=30),
    )
    monkeypatch.setattr(
        arq_worker, "export_client_factory",
        lambda db, **options: (lambda organization_id: FakeExportClient()),
    )


@pytest.fixture
def job(test_db_session, organization):
    return BackfillOrchestrator(test_db_session).create_job(
        organization.id, days_back=60, chunk_size_days=30, today=date(2025, 3, 31)
    )


def test_process_backfill_job_ingests_every_chunk(worker_env, test_db_session, job):
    result = asyncio.run(arq_worker.process_backfill_job({}, str(job.id)))

    assert result["success"] is True
    assert result["status"] == "completed"
    assert result["rows"]["inserted"] == 2
    assert test_db_session.query(Transaction).count() == 2


def test_process_backfill_job_reports_unknown_job(worker_env):
    result = asyncio.run(arq_worker.process_backfill_job({}, "00000000-0000-0000-0000-000000000000"))

    assert result["success"] is False
    assert "not found" in result["error"]


def test_sweep_releases_stuck_chunks_and_reenqueues(worker_env, monkeypatch, test_db_session, job):
    enqueued = []

    async def fake_enqueue(job_id):
        enqueued.append(job_id)
        return {"status": "enqueued"}

    monkeypatch.setattr(arq_worker, "enqueue_backfill_job", fake_enqueue)
    chunk = test_db_session.query(BackfillChunk).filter_by(job_id=job.id, chunk_index=0).one()
    chunk.status = "processing"
    chunk.attempt_count = 1
    chunk.started_at = datetime.utcnow() - timedelta(hours=1)
    test_db_session.commit()

    result = asyncio.run(arq_worker.sweep_stale_chunks({}))

    assert result == {"success": True, "reset": 1, "failed": 0, "enqueued": 1}
    assert enqueued == [str(job.id)]


def test_worker_settings_register_jobs():
    names = {getattr(f, "name", getattr(f, "__name__", None)) for f in arq_worker.WorkerSettings.functions}

    assert {"process_backfill_job", "run_reconciliation_job", "sweep_stale_chunks"} <= names
    assert arq_worker.WorkerSettings.max_tries == 1
