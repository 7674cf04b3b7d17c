"""Transaction ingestion from processor exports (default backfill chunk processor).

WHAT:
    Downloads the paid-contributions export for a date range and upserts each
    row into the transaction ledger on (organization_id, transaction_id).

WHY:
    The backfill orchestrator and the reconciliation auditor both recover
    missing donations by re-ingesting a bounded window; re-ingestion of an
    existing row only fills in fields that were missing.

ROW MAPPING:
    lineitem_id | receipt_id          -> transaction_id (rows without both are skipped)
    paid_at | date                    -> transaction_date
    amount, fee                       -> amount, fee, net_amount (= amount - fee)
    reference_code, reference_code_2  -> refcode, refcode2
    donor first/last name variants    -> donor_name
    donor_phone                       -> phone_hash (sha256 of digits)
    refund_id + refund_date           -> transaction_type "refund"
    recurring_total_months            -> is_recurring, recurring_duration
    click_id, fbclid                  -> click_id, fbclid (when present)

REFERENCES:
    - donorlink/services/processor_export_client.py
    - donorlink/services/backfill_orchestrator.py (ChunkStats, processor contract)
"""

import asyncio
import hashlib
import logging
from datetime import date, datetime
from typing import Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from donorlink.models import BackfillChunk, Transaction
from donorlink.services.backfill_orchestrator import ChunkStats
from donorlink.services.processor_export_client import ProcessorExportClient, parse_amount

logger = logging.getLogger(__name__)

ExportClientFactory = Callable[[UUID], ProcessorExportClient]

_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S%z",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%Y-%m-%d",
    "%m/%d/%Y",
)

_FIRST_NAME_KEYS = ("donor_firstname", "donor_first_name", "donor_first", "firstname", "first_name")
_LAST_NAME_KEYS = ("donor_lastname", "donor_last_name", "donor_last", "lastname", "last_name")

# Checked in order; first keyword found in the refcode wins
_SOURCE_KEYWORDS = (
    ("meta", "meta"),
    ("fb", "meta"),
    ("sms", "sms"),
    ("email", "email"),
    ("google", "google"),
)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse export timestamps into naive UTC datetimes."""
    if not value:
        return None
    text = value.strip().replace("Z", "+0000")
    for fmt in _DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is not None:
            parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
        return parsed
    return None


def donor_name(row: Dict[str, str]) -> Optional[str]:
    first = next((row[k] for k in _FIRST_NAME_KEYS if row.get(k)), None)
    last = next((row[k] for k in _LAST_NAME_KEYS if row.get(k)), None)
    if first and last:
        return f"{first} {last}".strip()
    return first or last


def hash_phone(phone: Optional[str]) -> Optional[str]:
    digits = "".join(ch for ch in (phone or "") if ch.isdigit())
    if not digits:
        return None
    if len(digits) == 10:
        digits = "1" + digits
    return hashlib.sha256(digits.encode("utf-8")).hexdigest()


def classify_source(refcode: Optional[str]) -> Optional[str]:
    lowered = (refcode or "").lower()
    if not lowered:
        return None
    for keyword, source in _SOURCE_KEYWORDS:
        if keyword in lowered:
            return source
    return None


def map_row(row: Dict[str, str]) -> Optional[Dict]:
    """Map one export row to Transaction column values, or None to skip it."""
    transaction_id = row.get("lineitem_id") or row.get("receipt_id")
    transaction_date = parse_timestamp(row.get("paid_at") or row.get("date"))
    if not transaction_id or transaction_date is None:
        return None

    amount = parse_amount(row.get("amount"))
    fee = parse_amount(row.get("fee")) if row.get("fee") else None
    recurring_months = (row.get("recurring_total_months") or "").strip()
    refcode = row.get("reference_code") or None

    return {
        "transaction_id": transaction_id,
        "transaction_date": transaction_date,
        "amount": amount,
        "fee": fee,
        "net_amount": amount - fee if fee is not None else amount,
        "donor_email": (row.get("donor_email") or "").strip().lower() or None,
        "donor_name": donor_name(row),
        "phone_hash": hash_phone(row.get("donor_phone")),
        "refcode": refcode,
        "refcode2": row.get("reference_code_2") or None,
        "click_id": row.get("click_id") or None,
        "fbclid": row.get("fbclid") or None,
        "is_recurring": bool(recurring_months),
        "recurring_duration": int(recurring_months) if recurring_months.isdigit() else None,
        "transaction_type": "refund" if row.get("refund_id") and row.get("refund_date") else "donation",
        "source_campaign": classify_source(refcode),
    }


# Fields re-ingestion may fill in when the stored row lacks them
_FILLABLE = ("donor_name", "donor_email", "phone_hash", "refcode2", "click_id", "fbclid", "fee", "net_amount")


class TransactionIngestor:
    """Chunk processor that ingests one date range per call."""

    def __init__(self, db: Session, client_factory: ExportClientFactory):
        self.db = db
        self.client_factory = client_factory

    def __call__(self, chunk: BackfillChunk) -> ChunkStats:
        # The orchestrator commits once it has confirmed the job is still running
        return self.ingest_range(chunk.organization_id, chunk.start_date, chunk.end_date, commit=False)

    def ingest_range(self, organization_id: UUID, start: date, end: date, commit: bool = True) -> ChunkStats:
        client = self.client_factory(organization_id)
        # Runs in a worker thread (asyncio.to_thread), so there is no running loop here
        rows = asyncio.run(client.fetch_rows(start, end))
        logger.info("[INGEST] Org %s %s..%s: %d export rows", organization_id, start, end, len(rows))
        return self.ingest_rows(organization_id, rows, commit=commit)

    def ingest_rows(self, organization_id: UUID, rows: List[Dict[str, str]], commit: bool = True) -> ChunkStats:
        stats = ChunkStats()
        seen = set()

        for row in rows:
            stats.processed += 1
            values = map_row(row)
            if values is None or values["transaction_id"] in seen:
                stats.skipped += 1
                continue
            seen.add(values["transaction_id"])

            existing = (
                self.db.query(Transaction)
                .filter(
                    Transaction.organization_id == organization_id,
                    Transaction.transaction_id == values["transaction_id"],
                )
                .first()
            )
            if existing is None:
                self.db.add(Transaction(organization_id=organization_id, **values))
                stats.inserted += 1
                continue

            changed = False
            for name in _FILLABLE:
                if getattr(existing, name) in (None, "") and values[name] not in (None, ""):
                    setattr(existing, name, values[name])
                    changed = True
            if existing.transaction_type != values["transaction_type"]:
                existing.transaction_type = values["transaction_type"]
                changed = True

            if changed:
                stats.updated += 1
            else:
                stats.skipped += 1

        if commit:
            self.db.commit()
        else:
            self.db.flush()
        logger.info(
            "[INGEST] Org %s: processed=%d inserted=%d updated=%d skipped=%d",
            organization_id, stats.processed, stats.inserted, stats.updated, stats.skipped,
        )
        return stats
