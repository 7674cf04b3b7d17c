"""Touchpoint correlator.

WHAT:
    Links a donation to a causally-prior marketing touchpoint and classifies
    the linkage strength.

WHY:
    Refcodes are missing or generic on many donations; click identifiers and
    donor identity recover the ad that actually drove the gift.

STRATEGIES (first hit wins):
    1. click_id: transaction click id equals a touchpoint's click_id/fbclid
    2. fbclid:   transaction fbclid equals a touchpoint's fbclid or fbc cookie
    3. email:    most recent prior touchpoint for the same donor email

    An identifier match whose touchpoint belongs to a different donor is
    returned flagged `is_mismatch`; donor identity is the ground truth.

REFERENCES:
    - donorlink/services/mismatch_detector.py
    - donorlink/services/attribution_backfill_service.py (consumer)
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from donorlink.models import MatchMethodEnum, Touchpoint, Transaction
from donorlink.services import confidence as scoring
from donorlink.services.click_ids import identifiers_match, metadata_identifiers

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 30


@dataclass
class Correlation:
    touchpoint: Touchpoint
    method: str
    confidence: float
    is_mismatch: bool = False

    def to_dict(self) -> dict:
        return {
            "touchpoint_id": str(self.touchpoint.id),
            "touchpoint_type": self.touchpoint.touchpoint_type,
            "method": self.method,
            "confidence": self.confidence,
            "is_mismatch": self.is_mismatch,
        }


def _same_donor(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().lower() == (b or "").strip().lower()


class TouchpointCorrelator:
    """Find the touchpoint that preceded a transaction."""

    def __init__(self, db: Session, lookback_days: int = DEFAULT_LOOKBACK_DAYS):
        self.db = db
        self.lookback_days = lookback_days

    def _prior_touchpoints(self, transaction: Transaction) -> List[Touchpoint]:
        window_start = transaction.transaction_date - timedelta(days=self.lookback_days)
        return (
            self.db.query(Touchpoint)
            .filter(
                Touchpoint.organization_id == transaction.organization_id,
                Touchpoint.occurred_at <= transaction.transaction_date,
                Touchpoint.occurred_at >= window_start,
            )
            .order_by(Touchpoint.occurred_at.desc())
            .all()
        )

    def correlate(self, transaction: Transaction) -> Optional[Correlation]:
        touchpoints = self._prior_touchpoints(transaction)
        if not touchpoints:
            return None

        found = self._by_identifier(transaction, touchpoints)
        if found:
            tp_email = found.touchpoint.donor_email
            if tp_email and transaction.donor_email and not _same_donor(tp_email, transaction.donor_email):
                logger.info(
                    "[CORRELATOR] Identifier match on %s belongs to another donor (touchpoint %s)",
                    transaction.transaction_id, found.touchpoint.id,
                )
                found.is_mismatch = True
            return found

        return self._by_email(transaction, touchpoints)

    def _by_identifier(self, transaction: Transaction, touchpoints: List[Touchpoint]) -> Optional[Correlation]:
        if transaction.click_id:
            for tp in touchpoints:
                ids = metadata_identifiers(tp.touchpoint_metadata)
                if transaction.click_id in (ids.get("click_id"), ids.get("fbclid")):
                    return Correlation(tp, MatchMethodEnum.click_id.value, scoring.CLICK_ID_CONFIDENCE)

        if transaction.fbclid:
            for tp in touchpoints:
                ids = metadata_identifiers(tp.touchpoint_metadata)
                if identifiers_match(transaction.fbclid, ids.get("fbclid")) or identifiers_match(
                    transaction.fbclid, ids.get("fbc")
                ):
                    return Correlation(tp, MatchMethodEnum.fbclid.value, scoring.FBCLID_CONFIDENCE)
        return None

    def _by_email(self, transaction: Transaction, touchpoints: List[Touchpoint]) -> Optional[Correlation]:
        if not transaction.donor_email:
            return None
        for tp in touchpoints:
            if tp.donor_email and _same_donor(tp.donor_email, transaction.donor_email):
                return Correlation(tp, MatchMethodEnum.exact.value, scoring.EMAIL_CONFIDENCE)
        return None

    def latest_for_donor(self, organization_id, donor_email: str, before=None) -> List[Touchpoint]:
        """Touchpoints for a donor email, most recent first."""
        query = self.db.query(Touchpoint).filter(
            Touchpoint.organization_id == organization_id,
            func.lower(Touchpoint.donor_email) == donor_email.strip().lower(),
        )
        if before is not None:
            query = query.filter(Touchpoint.occurred_at <= before)
        return query.order_by(Touchpoint.occurred_at.desc()).all()
