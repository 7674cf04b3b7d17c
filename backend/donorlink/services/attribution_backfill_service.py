"""Historical attribution backfill (transaction granularity).

WHAT:
    Walks an organization's transaction ledger in keyset-paginated batches,
    resolves each donation to a campaign and writes transaction-level
    attribution records. Refcode-level revenue/transaction totals are then
    recomputed from the transaction-level rows.

WHY:
    Recomputing aggregates from the per-transaction rows (instead of adding to
    the stored total) keeps re-runs and retried batches idempotent.

MATCH ORDER (first hit wins):
    1. refcode exact against RefcodeMapping        -> 1.0, exact
    2. refcode2 exact against RefcodeMapping       -> 0.9, exact
    3. refcode partial containment (either way)    -> 0.7, fuzzy
    4. touchpoint correlation by click id / fbclid -> click_id / fbclid
    5. most recent prior touchpoint for the email  -> 0.7, exact

    Refcode mappings learned by auto-match cap the confidence at the
    auto-match confidence. Touchpoint matches resolve through the
    touchpoint's own refcode mapping.

REFERENCES:
    - donorlink/services/attribution_writer.py
    - donorlink/services/touchpoint_correlator.py
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from donorlink.models import (
    AttributionGranularityEnum,
    AttributionRecord,
    MatchMethodEnum,
    RefcodeMapping,
    Transaction,
)
from donorlink.services import confidence as scoring
from donorlink.services.attribution_writer import AttributionWriter
from donorlink.exceptions import AttributionWriteError
from donorlink.services.touchpoint_correlator import TouchpointCorrelator

logger = logging.getLogger(__name__)

BATCH_SIZE = 500
MAX_BATCHES = 100


@dataclass
class AttributionBackfillSummary:
    total_transactions: int = 0
    processed: int = 0
    attributed: int = 0
    skipped: int = 0
    batches: int = 0
    refcodes_updated: int = 0
    errors: List[dict] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "success": True,
            "dry_run": self.dry_run,
            "summary": {
                "total_transactions": self.total_transactions,
                "processed": self.processed,
                "attributed": self.attributed,
                "skipped": self.skipped,
                "batches": self.batches,
                "refcodes_updated": self.refcodes_updated,
            },
            "errors": self.errors,
        }


class AttributionBackfillService:
    """Attribute historical transactions for one organization."""

    def __init__(
        self,
        db: Session,
        batch_size: int = BATCH_SIZE,
        max_batches: int = MAX_BATCHES,
        correlator: Optional[TouchpointCorrelator] = None,
    ):
        self.db = db
        self.batch_size = batch_size
        self.max_batches = max_batches
        self.correlator = correlator or TouchpointCorrelator(db)
        self.writer = AttributionWriter(db)

    def _load_mappings(self, organization_id: UUID) -> Dict[str, RefcodeMapping]:
        rows = self.db.query(RefcodeMapping).filter(RefcodeMapping.organization_id == organization_id).all()
        return {row.refcode.lower(): row for row in rows if row.refcode}

    def _base_query(self, organization_id: UUID, start_date: Optional[date], end_date: Optional[date]):
        query = self.db.query(Transaction).filter(Transaction.organization_id == organization_id)
        if start_date:
            query = query.filter(Transaction.transaction_date >= datetime.combine(start_date, time.min))
        if end_date:
            query = query.filter(Transaction.transaction_date <= datetime.combine(end_date, time.max))
        return query

    def resolve(self, txn: Transaction, mappings: Dict[str, RefcodeMapping]) -> Optional[dict]:
        """Return writer fields for one transaction, or None when nothing matches."""
        refcode = (txn.refcode or "").lower()
        refcode2 = (txn.refcode2 or "").lower()

        mapping, method, conf, reason = None, None, 0.0, None
        if refcode and refcode in mappings:
            mapping, method, conf, reason = mappings[refcode], MatchMethodEnum.exact.value, scoring.REFCODE_EXACT_CONFIDENCE, "refcode_exact"
        elif refcode2 and refcode2 in mappings:
            mapping, method, conf, reason = mappings[refcode2], MatchMethodEnum.exact.value, scoring.REFCODE2_EXACT_CONFIDENCE, "refcode2_exact"
        elif refcode:
            for key, candidate in mappings.items():
                if key in refcode or refcode in key:
                    mapping, method, conf, reason = candidate, MatchMethodEnum.fuzzy.value, scoring.REFCODE_PARTIAL_CONFIDENCE, "refcode_partial"
                    break

        if mapping is not None:
            if mapping.source == "learned" and mapping.confidence is not None:
                # A learned mapping is only as strong as the auto-match behind it
                conf = min(conf, mapping.confidence)
                reason = f"{reason}_learned"
            return {
                "refcode": txn.refcode,
                "transaction_id": txn.transaction_id,
                "platform": mapping.platform,
                "campaign_id": mapping.campaign_id,
                "campaign_name": mapping.campaign_name,
                "ad_id": mapping.ad_id,
                "creative_id": mapping.creative_id,
                "confidence": conf,
                "match_method": method,
                "match_reason": reason,
            }

        if not (txn.click_id or txn.fbclid or txn.donor_email):
            return None

        correlation = self.correlator.correlate(txn)
        if correlation is None or correlation.is_mismatch:
            return None

        tp = correlation.touchpoint
        tp_refcode = (tp.refcode or "").lower()
        tp_mapping = mappings.get(tp_refcode) if tp_refcode else None
        if tp_mapping is None:
            return None
        if correlation.method in (MatchMethodEnum.click_id.value, MatchMethodEnum.fbclid.value):
            reason = f"touchpoint_{correlation.method}"
        else:
            reason = "touchpoint_email"
        conf = correlation.confidence
        if tp_mapping.source == "learned" and tp_mapping.confidence is not None:
            conf = min(conf, tp_mapping.confidence)
        return {
            "refcode": txn.refcode,
            "transaction_id": txn.transaction_id,
            "platform": tp_mapping.platform,
            "campaign_id": tp_mapping.campaign_id,
            "campaign_name": tp_mapping.campaign_name,
            "ad_id": tp_mapping.ad_id,
            "creative_id": tp_mapping.creative_id,
            "confidence": conf,
            "match_method": correlation.method,
            "match_reason": reason,
        }

    def run(
        self,
        organization_id: UUID,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        dry_run: bool = False,
    ) -> AttributionBackfillSummary:
        summary = AttributionBackfillSummary(dry_run=dry_run)
        summary.total_transactions = self._base_query(organization_id, start_date, end_date).count()
        mappings = self._load_mappings(organization_id)

        logger.info(
            "[BACKFILL_ATTRIBUTION] Starting for %s: %d transactions, %d refcode mappings (dry_run=%s)",
            organization_id, summary.total_transactions, len(mappings), dry_run,
        )

        touched_refcodes = set()
        last_id = None
        while summary.batches < self.max_batches:
            query = self._base_query(organization_id, start_date, end_date)
            if last_id is not None:
                query = query.filter(Transaction.id > last_id)
            batch = query.order_by(Transaction.id.asc()).limit(self.batch_size).all()
            if not batch:
                break

            for txn in batch:
                summary.processed += 1
                last_id = txn.id

                fields = self.resolve(txn, mappings)
                if fields is None:
                    summary.skipped += 1
                    continue

                summary.attributed += 1
                if dry_run:
                    continue

                fields["is_auto_matched"] = True
                fields["last_matched_at"] = datetime.utcnow()
                try:
                    self.writer.upsert(
                        organization_id,
                        AttributionGranularityEnum.transaction.value,
                        txn.transaction_id,
                        fields,
                    )
                except AttributionWriteError as e:
                    summary.attributed -= 1
                    summary.errors.append({"key": txn.transaction_id, "error": e.message})
                    continue
                if txn.refcode:
                    touched_refcodes.add(txn.refcode)

            summary.batches += 1
            if not dry_run:
                self.db.commit()
            logger.info(
                "[BACKFILL_ATTRIBUTION] Batch %d: processed=%d attributed=%d skipped=%d",
                summary.batches, summary.processed, summary.attributed, summary.skipped,
            )
            if len(batch) < self.batch_size:
                break

        if not dry_run and touched_refcodes:
            summary.refcodes_updated = self.recompute_refcode_totals(organization_id, touched_refcodes, summary.errors)
            self.db.commit()

        logger.info(
            "[BACKFILL_ATTRIBUTION] Complete for %s: processed=%d attributed=%d skipped=%d batches=%d",
            organization_id, summary.processed, summary.attributed, summary.skipped, summary.batches,
        )
        return summary

    def recompute_refcode_totals(self, organization_id: UUID, refcodes, errors: List[dict]) -> int:
        """Rebuild refcode-level records from transaction-level rows.

        Read-modify-write: totals are computed from scratch, so repeated runs
        converge on the same numbers.
        """
        rows = (
            self.db.query(
                AttributionRecord.refcode,
                func.count(AttributionRecord.id),
                func.coalesce(func.sum(func.coalesce(Transaction.net_amount, Transaction.amount)), 0),
            )
            .join(
                Transaction,
                (Transaction.organization_id == AttributionRecord.organization_id)
                & (Transaction.transaction_id == AttributionRecord.attribution_key),
            )
            .filter(
                AttributionRecord.organization_id == organization_id,
                AttributionRecord.granularity == AttributionGranularityEnum.transaction.value,
                AttributionRecord.refcode.in_(list(refcodes)),
            )
            .group_by(AttributionRecord.refcode)
            .all()
        )
        totals: Dict[str, Tuple[int, Decimal]] = {refcode: (count, Decimal(str(revenue))) for refcode, count, revenue in rows}

        best = self._best_transaction_record(organization_id, totals.keys())
        updated = 0
        for refcode, (count, revenue) in totals.items():
            template = best.get(refcode)
            if template is None:
                continue
            try:
                self.writer.upsert(
                    organization_id,
                    AttributionGranularityEnum.refcode.value,
                    refcode,
                    {
                        "refcode": refcode,
                        "platform": template.platform,
                        "campaign_id": template.campaign_id,
                        "campaign_name": template.campaign_name,
                        "ad_id": template.ad_id,
                        "creative_id": template.creative_id,
                        "confidence": template.confidence,
                        "match_method": template.match_method,
                        "match_reason": template.match_reason,
                        "attributed_revenue": revenue,
                        "attributed_transactions": count,
                        "is_auto_matched": True,
                        "last_matched_at": datetime.utcnow(),
                    },
                )
                updated += 1
            except AttributionWriteError as e:
                errors.append({"key": refcode, "error": e.message})
        return updated

    def _best_transaction_record(self, organization_id: UUID, refcodes) -> Dict[str, AttributionRecord]:
        """Highest-confidence transaction-level record per refcode."""
        records = (
            self.db.query(AttributionRecord)
            .filter(
                AttributionRecord.organization_id == organization_id,
                AttributionRecord.granularity == AttributionGranularityEnum.transaction.value,
                AttributionRecord.refcode.in_(list(refcodes)),
            )
            .all()
        )
        best: Dict[str, AttributionRecord] = {}
        by_refcode = defaultdict(list)
        for record in records:
            by_refcode[record.refcode].append(record)
        for refcode, group in by_refcode.items():
            best[refcode] = max(group, key=lambda r: r.confidence or 0.0)
        return best
