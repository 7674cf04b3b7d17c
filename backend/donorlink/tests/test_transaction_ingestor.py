"""Tests for transaction ingestion from processor export rows.

WHAT:
    Insert of new rows, fill-in of missing fields on re-ingestion, skip
    accounting, and the chunk-processor entry point.

REFERENCES:
    - donorlink/services/transaction_ingestor.py (module under test)
"""

from datetime import date, datetime
from decimal import Decimal

from donorlink.deps import EngineActor
from donorlink.models import BackfillChunk, Transaction
from donorlink.services.backfill_orchestrator import BackfillOrchestrator
from donorlink.services.transaction_ingestor import TransactionIngestor


def _row(lineitem_id, **overrides):
    row = {
        "receipt_id": f"R-{lineitem_id}",
        "lineitem_id": lineitem_id,
        "date": "2025-03-01 10:00:00",
        "amount": "25.00",
        "fee": "",
        "donor_email": "Ada@Example.com",
        "reference_code": "meta_fall_2025",
    }
    row.update(overrides)
    return row


class FakeExportClient:
    def __init__(self, rows):
        self.rows = rows
        self.windows = []

    async def fetch_rows(self, start, end):
        self.windows.append((start, end))
        return self.rows


def _ingestor(db, rows=()):
    client = FakeExportClient(list(rows))
    return TransactionIngestor(db, client_factory=lambda organization_id: client), client


def test_new_rows_are_inserted(test_db_session, organization):
    ingestor, _ = _ingestor(test_db_session)

    stats = ingestor.ingest_rows(organization.id, [_row("L1"), _row("L2", amount="$1,000.00", fee="30.00")])

    assert stats.to_dict() == {"processed": 2, "inserted": 2, "updated": 0, "skipped": 0}
    txn = test_db_session.query(Transaction).filter_by(transaction_id="L2").one()
    assert txn.amount == Decimal("1000.00")
    assert txn.net_amount == Decimal("970.00")
    assert txn.donor_email == "ada@example.com"
    assert txn.transaction_date == datetime(2025, 3, 1, 10, 0)
    assert txn.source_campaign == "meta"


def test_reingestion_fills_missing_fields_only(test_db_session, organization, add_transaction):
    add_transaction(organization.id, "L1", refcode="kept_refcode", donor_name="Ada L.")
    ingestor, _ = _ingestor(test_db_session)

    stats = ingestor.ingest_rows(organization.id, [
        _row("L1", donor_firstname="Ada", donor_lastname="Lovelace", click_id="clk-9"),
    ])

    assert (stats.inserted, stats.updated) == (0, 1)
    txn = test_db_session.query(Transaction).filter_by(transaction_id="L1").one()
    assert txn.refcode == "kept_refcode"
    assert txn.donor_name == "Ada L."
    assert txn.click_id == "clk-9"
    assert txn.donor_email == "ada@example.com"


def test_unchanged_and_unusable_rows_are_skipped(test_db_session, organization):
    ingestor, _ = _ingestor(test_db_session)
    ingestor.ingest_rows(organization.id, [_row("L1")])

    stats = ingestor.ingest_rows(organization.id, [
        _row("L1"),
        _row("L1"),
        _row("", receipt_id=""),
        _row("L3", date="not a date"),
    ])

    assert stats.to_dict() == {"processed": 4, "inserted": 0, "updated": 0, "skipped": 4}
    assert test_db_session.query(Transaction).count() == 1


def test_duplicate_ids_within_one_export_insert_once(test_db_session, organization):
    ingestor, _ = _ingestor(test_db_session)

    stats = ingestor.ingest_rows(organization.id, [_row("L1"), _row("L1", amount="99.00")])

    assert (stats.inserted, stats.skipped) == (1, 1)
    assert test_db_session.query(Transaction).count() == 1


def test_refund_flag_is_applied_on_reingestion(test_db_session, organization, add_transaction):
    add_transaction(organization.id, "L1")
    ingestor, _ = _ingestor(test_db_session)

    stats = ingestor.ingest_rows(organization.id, [_row("L1", refund_id="RF1", refund_date="2025-03-05")])

    assert stats.updated == 1
    assert test_db_session.query(Transaction).one().transaction_type == "refund"


def test_ingestor_is_a_chunk_processor(test_db_session, organization):
    ingestor, client = _ingestor(test_db_session, rows=[_row("L1"), _row("L2")])
    chunk = BackfillChunk(
        organization_id=organization.id,
        chunk_index=0,
        start_date=date(2025, 3, 1),
        end_date=date(2025, 3, 30),
    )

    stats = ingestor(chunk)

    assert stats.inserted == 2
    assert client.windows == [(date(2025, 3, 1), date(2025, 3, 30))]
    assert {t.organization_id for t in test_db_session.query(Transaction).all()} == {organization.id}


def test_rows_of_a_chunk_cancelled_mid_download_are_not_kept(test_db_session, organization):
    orchestrator = BackfillOrchestrator(test_db_session, inter_chunk_delay=0, sleep=lambda seconds: None)
    job = orchestrator.create_job(
        organization.id, start_date=date(2025, 3, 1), end_date=date(2025, 3, 8), chunk_size_days=30
    )
    actor = EngineActor(label="cron", is_admin=True, is_cron=True)

    class CancellingClient(FakeExportClient):
        async def fetch_rows(self, start, end):
            orchestrator.cancel_job(job.id, actor, reason="wrong window")
            return self.rows

    client = CancellingClient([_row("L1"), _row("L2")])
    ingestor = TransactionIngestor(test_db_session, client_factory=lambda organization_id: client)

    finished = orchestrator.run_job(job.id, ingestor)

    assert finished.status == "cancelled"
    assert test_db_session.query(Transaction).count() == 0


def test_completed_chunk_rows_are_committed_by_the_orchestrator(test_db_session, organization):
    orchestrator = BackfillOrchestrator(test_db_session, inter_chunk_delay=0, sleep=lambda seconds: None)
    job = orchestrator.create_job(
        organization.id, start_date=date(2025, 3, 1), end_date=date(2025, 3, 8), chunk_size_days=30
    )
    ingestor, _ = _ingestor(test_db_session, rows=[_row("L1"), _row("L2")])

    finished = orchestrator.run_job(job.id, ingestor)
    test_db_session.rollback()

    assert finished.status == "completed"
    assert test_db_session.query(Transaction).count() == 2
