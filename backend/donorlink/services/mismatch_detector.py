"""Conversion event mismatch detector.

WHAT:
    Finds conversion events whose click identifier belongs to a different
    donor than the transaction the event claims to represent, and proposes
    the transaction donor's own click identifier as the correction.

WHY:
    Shared devices and forwarded links attach one donor's click to another
    donor's gift. Sending that event to the ad platform credits the wrong ad.

CLASSIFICATION:
    valid          no touchpoint carries the event's identifier, the touchpoint
                   has no donor, or the donors agree (unverifiable is valid)
    correctable    donors differ and the transaction donor has a touchpoint
                   with a distinct long-form identifier (the correction)
    uncorrectable  donors differ and no such touchpoint exists

    Applying a correction flags the event `misattributed` and records both
    identifiers and both donors in its metadata. Nothing is deleted.

REFERENCES:
    - donorlink/services/click_ids.py
    - donorlink/services/touchpoint_correlator.py (latest_for_donor)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from donorlink.models import ConversionEvent, ConversionEventStatusEnum, Touchpoint, Transaction
from donorlink.services.click_ids import identifiers_match, is_long_form, metadata_identifiers
from donorlink.services.touchpoint_correlator import TouchpointCorrelator
from donorlink.telemetry import capture_exception

logger = logging.getLogger(__name__)

VALID = "valid"
CORRECTABLE = "correctable"
UNCORRECTABLE = "uncorrectable"

_SKIPPED_STATUSES = (
    ConversionEventStatusEnum.superseded.value,
    ConversionEventStatusEnum.misattributed.value,
)


@dataclass
class MismatchResult:
    event_id: str
    source_id: Optional[str]
    classification: str
    reason: str
    incorrect_fbc: Optional[str] = None
    correct_fbc: Optional[str] = None
    attributed_donor: Optional[str] = None
    transaction_donor: Optional[str] = None
    applied: bool = False

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "source_id": self.source_id,
            "classification": self.classification,
            "reason": self.reason,
            "incorrect_fbc": self.incorrect_fbc,
            "correct_fbc": self.correct_fbc,
            "attributed_donor": self.attributed_donor,
            "transaction_donor": self.transaction_donor,
            "applied": self.applied,
        }


@dataclass
class MismatchReport:
    dry_run: bool
    results: List[MismatchResult] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)
    scanned: int = 0

    def summary(self) -> Dict[str, int]:
        counts = {VALID: 0, CORRECTABLE: 0, UNCORRECTABLE: 0}
        for r in self.results:
            counts[r.classification] += 1
        return {
            "scanned": self.scanned,
            "valid": counts[VALID],
            "mismatches": counts[CORRECTABLE] + counts[UNCORRECTABLE],
            "correctable": counts[CORRECTABLE],
            "uncorrectable": counts[UNCORRECTABLE],
            "corrections_applied": sum(1 for r in self.results if r.applied),
            "errors": len(self.errors),
        }


def _email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _touchpoint_click_id(tp: Touchpoint) -> Optional[str]:
    """Long-form identifier on a touchpoint, preferring the cookie form."""
    ids = metadata_identifiers(tp.touchpoint_metadata)
    for key in ("fbc", "fbclid", "click_id"):
        if is_long_form(ids.get(key)):
            return ids[key]
    return None


class MismatchDetector:
    def __init__(self, db: Session):
        self.db = db
        self.correlator = TouchpointCorrelator(db)

    def _candidate_events(self, organization_id: UUID, limit: int) -> List[ConversionEvent]:
        events = (
            self.db.query(ConversionEvent)
            .filter(
                ConversionEvent.organization_id == organization_id,
                ConversionEvent.fbc.isnot(None),
                ConversionEvent.status.notin_(_SKIPPED_STATUSES),
            )
            .order_by(ConversionEvent.created_at.desc())
            .all()
        )
        # Length filter in Python; truncated identifiers cannot be attributed reliably
        return [e for e in events if is_long_form(e.fbc)][:limit]

    def _touchpoint_for(self, organization_id: UUID, fbc: str) -> Optional[Touchpoint]:
        touchpoints = (
            self.db.query(Touchpoint)
            .filter(Touchpoint.organization_id == organization_id, Touchpoint.touchpoint_metadata.isnot(None))
            .order_by(Touchpoint.occurred_at.desc())
            .all()
        )
        for tp in touchpoints:
            ids = metadata_identifiers(tp.touchpoint_metadata)
            if identifiers_match(fbc, ids.get("fbc")) or identifiers_match(fbc, ids.get("fbclid")):
                return tp
        return None

    def _correction_for(self, transaction: Transaction, incorrect_fbc: str) -> Optional[str]:
        for tp in self.correlator.latest_for_donor(
            transaction.organization_id, transaction.donor_email, before=transaction.transaction_date
        ):
            candidate = _touchpoint_click_id(tp)
            if candidate and not identifiers_match(candidate, incorrect_fbc):
                return candidate
        return None

    def classify(self, event: ConversionEvent) -> MismatchResult:
        result = MismatchResult(
            event_id=event.event_id,
            source_id=event.source_id,
            classification=VALID,
            reason="",
            incorrect_fbc=None,
        )

        transaction = None
        if event.source_id:
            transaction = (
                self.db.query(Transaction)
                .filter(
                    Transaction.organization_id == event.organization_id,
                    Transaction.transaction_id == event.source_id,
                )
                .first()
            )
        if transaction is None or not transaction.donor_email:
            result.reason = "No transaction donor to verify against"
            return result

        touchpoint = self._touchpoint_for(event.organization_id, event.fbc)
        if touchpoint is None:
            result.reason = "No touchpoint carries this click identifier"
            return result
        if not touchpoint.donor_email:
            result.reason = "Touchpoint has no donor information"
            return result

        result.attributed_donor = _email(touchpoint.donor_email)
        result.transaction_donor = _email(transaction.donor_email)
        if result.attributed_donor == result.transaction_donor:
            result.reason = "Click identifier belongs to the transaction donor"
            return result

        result.incorrect_fbc = event.fbc
        correct_fbc = self._correction_for(transaction, event.fbc)
        if correct_fbc:
            result.classification = CORRECTABLE
            result.correct_fbc = correct_fbc
            result.reason = "Click identifier belongs to another donor; transaction donor has their own"
        else:
            result.classification = UNCORRECTABLE
            result.reason = "Click identifier belongs to another donor; no replacement found"
        return result

    def _apply(self, event: ConversionEvent, result: MismatchResult) -> None:
        metadata = dict(event.event_metadata or {})
        metadata.update({
            "incorrect_fbc": result.incorrect_fbc,
            "correct_fbc": result.correct_fbc,
            "attributed_donor": result.attributed_donor,
            "transaction_donor": result.transaction_donor,
            "detected_at": datetime.utcnow().isoformat(),
        })
        event.event_metadata = metadata
        event.status = ConversionEventStatusEnum.misattributed.value
        result.applied = True

    def detect(
        self,
        organization_id: UUID,
        dry_run: bool = True,
        limit: int = 100,
        include_valid: bool = False,
    ) -> dict:
        """Classify recent conversion events and optionally flag the mismatches.

        Returns `{"summary": {...}, "results": [...]}`; valid events are only
        listed when `include_valid` is set.
        """
        events = self._candidate_events(organization_id, limit)
        report = MismatchReport(dry_run=dry_run, scanned=len(events))
        logger.info("[MISMATCH] Scanning %d events for org %s (dry_run=%s)", len(events), organization_id, dry_run)

        for event in events:
            event_id = event.event_id
            try:
                with self.db.begin_nested():
                    result = self.classify(event)
                    if result.classification != VALID and not dry_run:
                        self._apply(event, result)
            except Exception as e:
                logger.exception("[MISMATCH] Event %s could not be checked: %s", event_id, e)
                capture_exception(e, extra={"operation": "detect_mismatches", "event_id": event_id})
                report.errors.append({"event_id": event_id, "error": str(e)})
                continue

            report.results.append(result)
            if result.classification != VALID:
                logger.info(
                    "[MISMATCH] Event %s is %s (attributed=%s transaction=%s)",
                    event.event_id, result.classification, result.attributed_donor, result.transaction_donor,
                )

        if not dry_run:
            self.db.commit()

        summary = report.summary()
        logger.info("[MISMATCH] Complete for org %s: %s", organization_id, summary)
        listed = [r for r in report.results if include_valid or r.classification != VALID]
        return {
            "dry_run": dry_run,
            "summary": summary,
            "results": [r.to_dict() for r in listed],
            "errors": report.errors,
        }
