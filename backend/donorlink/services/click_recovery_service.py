"""Click identifier recovery.

WHAT:
    Attaches the full browser click identifier to transactions that arrived
    without one (or with a copy truncated by the processor's refcode field),
    using touchpoints captured shortly before the donation.

WHY:
    Conversion events with a full identifier match far better on the ad
    platform, and the correlator can only link what carries an identifier.

TIERS (closest prior touchpoint within the window wins inside a tier):
    high    same donor email
    medium  same refcode
    low     truncated identifier in refcode2 (`fb_<part>`) or fbclid is a
            prefix, suffix or `_aem_` suffix of the touchpoint's identifier

REFERENCES:
    - donorlink/services/click_ids.py (truncated_match)
"""

import logging
from datetime import timedelta
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from donorlink.models import Touchpoint, Transaction
from donorlink.services.click_ids import is_long_form, metadata_identifiers, truncated_match

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MINUTES = 30
TOUCHPOINT_SCAN_LIMIT = 5000
TRUNCATED_PREFIX = "fb_"
CLICK_ID_MAX_LENGTH = 100


def _full_fbclid(tp: Touchpoint) -> Optional[str]:
    value = metadata_identifiers(tp.touchpoint_metadata).get("fbclid")
    return value if is_long_form(value) else None


def _truncated_part(transaction: Transaction) -> Optional[str]:
    if transaction.refcode2 and transaction.refcode2.startswith(TRUNCATED_PREFIX):
        return transaction.refcode2[len(TRUNCATED_PREFIX):] or None
    if transaction.fbclid and not is_long_form(transaction.fbclid):
        return transaction.fbclid
    return None


class ClickRecoveryService:
    def __init__(self, db: Session, window_minutes: int = DEFAULT_WINDOW_MINUTES):
        self.db = db
        self.window = timedelta(minutes=window_minutes)

    def _candidates(self, organization_id: UUID, limit: int) -> List[Transaction]:
        rows = (
            self.db.query(Transaction)
            .filter(
                Transaction.organization_id == organization_id,
                or_(
                    Transaction.fbclid.is_(None),
                    Transaction.fbclid == "",
                    Transaction.refcode2.like(f"{TRUNCATED_PREFIX}%"),
                ),
            )
            .order_by(Transaction.transaction_date.desc())
            .all()
        )
        return [t for t in rows if not is_long_form(t.fbclid)][:limit]

    def _touchpoints(self, organization_id: UUID) -> List[Touchpoint]:
        rows = (
            self.db.query(Touchpoint)
            .filter(Touchpoint.organization_id == organization_id, Touchpoint.touchpoint_metadata.isnot(None))
            .order_by(Touchpoint.occurred_at.desc())
            .limit(TOUCHPOINT_SCAN_LIMIT)
            .all()
        )
        return [tp for tp in rows if _full_fbclid(tp)]

    def _closest(self, transaction: Transaction, touchpoints: List[Touchpoint], predicate) -> Optional[Touchpoint]:
        window_start = transaction.transaction_date - self.window
        hits = [
            tp for tp in touchpoints
            if window_start <= tp.occurred_at <= transaction.transaction_date and predicate(tp)
        ]
        if not hits:
            return None
        return min(hits, key=lambda tp: transaction.transaction_date - tp.occurred_at)

    def match(self, transaction: Transaction, touchpoints: List[Touchpoint]) -> Tuple[Optional[Touchpoint], str, str]:
        """Return (touchpoint, confidence, method); confidence is "none" when unmatched."""
        if transaction.donor_email:
            email = transaction.donor_email.strip().lower()
            tp = self._closest(
                transaction, touchpoints,
                lambda t: (t.donor_email or "").strip().lower() == email,
            )
            if tp:
                return tp, "high", "email_time"

        if transaction.refcode:
            tp = self._closest(transaction, touchpoints, lambda t: t.refcode == transaction.refcode)
            if tp:
                return tp, "medium", "refcode_time"

        truncated = _truncated_part(transaction)
        if truncated:
            tp = self._closest(transaction, touchpoints, lambda t: truncated_match(truncated, _full_fbclid(t)))
            if tp:
                return tp, "low", "truncated_time"

        return None, "none", "none"

    def recover(self, organization_id: UUID, dry_run: bool = True, limit: int = 500) -> dict:
        transactions = self._candidates(organization_id, limit)
        if not transactions:
            return {"success": True, "dry_run": dry_run, "summary": {"total_processed": 0}, "sample_matches": []}

        touchpoints = self._touchpoints(organization_id)
        logger.info(
            "[CLICK_RECOVERY] Org %s: %d transactions, %d touchpoints with full fbclid",
            organization_id, len(transactions), len(touchpoints),
        )

        results = []
        applied = 0
        for txn in transactions:
            tp, confidence, method = self.match(txn, touchpoints)
            fbclid = _full_fbclid(tp) if tp else None
            results.append({
                "transaction_id": txn.transaction_id,
                "matched_fbclid": fbclid,
                "match_confidence": confidence,
                "match_method": method,
                "touchpoint_id": str(tp.id) if tp else None,
            })
            if fbclid and not dry_run:
                txn.fbclid = fbclid
                txn.click_id = fbclid[:CLICK_ID_MAX_LENGTH]
                applied += 1

        if not dry_run:
            self.db.commit()

        summary = {
            "total_processed": len(transactions),
            "matched_high": sum(1 for r in results if r["match_confidence"] == "high"),
            "matched_medium": sum(1 for r in results if r["match_confidence"] == "medium"),
            "matched_low": sum(1 for r in results if r["match_confidence"] == "low"),
            "unmatched": sum(1 for r in results if r["match_confidence"] == "none"),
            "updates_applied": applied,
        }
        logger.info("[CLICK_RECOVERY] Complete for org %s: %s", organization_id, summary)
        return {"success": True, "dry_run": dry_run, "summary": summary, "sample_matches": results[:10]}
