"""Attribution record writer.

WHAT:
    Idempotent upsert of AttributionRecord rows keyed by
    (organization, granularity, key), where key is a refcode or an external
    transaction id.

WHY:
    Auto-match, historical backfill and mismatch corrections all write
    attribution; a single writer keeps the invariants in one place:
        - 0 <= confidence <= 1
        - method "none" implies confidence 0 and no campaign reference
    Each record is written inside a SAVEPOINT, so a failing record is skipped
    and reported while the rest of the batch continues.

NOTE:
    The writer never accumulates revenue/transaction counts. Callers that
    aggregate must read-modify-write so retries do not double count.

REFERENCES:
    - donorlink/services/auto_match_service.py
    - donorlink/services/attribution_backfill_service.py
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from donorlink.exceptions import AttributionWriteError
from donorlink.models import AttributionGranularityEnum, AttributionRecord, MatchMethodEnum

logger = logging.getLogger(__name__)

_WRITABLE_FIELDS = {
    "refcode",
    "transaction_id",
    "platform",
    "campaign_id",
    "campaign_name",
    "ad_id",
    "creative_id",
    "confidence",
    "match_method",
    "match_reason",
    "attributed_revenue",
    "attributed_transactions",
    "is_auto_matched",
    "last_matched_at",
}

_METHODS = {m.value for m in MatchMethodEnum}
_GRANULARITIES = {g.value for g in AttributionGranularityEnum}


@dataclass
class AttributionWrite:
    """One pending upsert."""
    granularity: str
    key: str
    fields: Dict[str, Any]


@dataclass
class WriteResult:
    written: List[AttributionRecord] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "written": len(self.written),
            "created": self.created,
            "updated": self.updated,
            "errors": self.errors,
        }


def validate_attribution_fields(granularity: str, key: Optional[str], fields: Dict[str, Any]) -> None:
    """Raise AttributionWriteError if the record would break an invariant."""
    if granularity not in _GRANULARITIES:
        raise AttributionWriteError(f"Unknown granularity '{granularity}'", attribution_key=key)
    if not key:
        raise AttributionWriteError("Attribution key is required", attribution_key=key)

    unknown = set(fields) - _WRITABLE_FIELDS
    if unknown:
        raise AttributionWriteError(f"Unknown attribution fields: {sorted(unknown)}", attribution_key=key)

    method = fields.get("match_method", MatchMethodEnum.none.value)
    if method not in _METHODS:
        raise AttributionWriteError(f"Unknown match method '{method}'", attribution_key=key)

    confidence = fields.get("confidence", 0.0)
    if confidence is None or not 0.0 <= float(confidence) <= 1.0:
        raise AttributionWriteError(f"Confidence {confidence} outside [0, 1]", attribution_key=key)

    if method == MatchMethodEnum.none.value:
        if float(confidence) != 0.0:
            raise AttributionWriteError("Method 'none' requires confidence 0", attribution_key=key)
        if fields.get("campaign_id"):
            raise AttributionWriteError("Method 'none' cannot reference a campaign", attribution_key=key)

    revenue = fields.get("attributed_revenue")
    if revenue is not None and Decimal(str(revenue)) < 0:
        raise AttributionWriteError("Attributed revenue cannot be negative", attribution_key=key)


class AttributionWriter:
    """Upsert attribution records one savepoint at a time."""

    def __init__(self, db: Session):
        self.db = db

    def upsert(
        self,
        organization_id: UUID,
        granularity: str,
        key: str,
        fields: Dict[str, Any],
    ) -> Tuple[AttributionRecord, bool]:
        """Insert or overwrite one record.

        Returns:
            (record, was_created)

        Raises:
            AttributionWriteError: invariant violated or the database rejected
                the row; nothing is persisted for this record.
        """
        validate_attribution_fields(granularity, key, fields)

        values = dict(fields)
        values.setdefault("match_method", MatchMethodEnum.none.value)
        values.setdefault("confidence", 0.0)
        values["confidence"] = float(values["confidence"])
        if "attributed_revenue" in values and values["attributed_revenue"] is not None:
            values["attributed_revenue"] = Decimal(str(values["attributed_revenue"])).quantize(Decimal("0.01"))

        try:
            with self.db.begin_nested():
                record = (
                    self.db.query(AttributionRecord)
                    .filter(
                        AttributionRecord.organization_id == organization_id,
                        AttributionRecord.granularity == granularity,
                        AttributionRecord.attribution_key == key,
                    )
                    .first()
                )
                was_created = record is None
                if was_created:
                    record = AttributionRecord(
                        organization_id=organization_id,
                        granularity=granularity,
                        attribution_key=key,
                    )
                    self.db.add(record)

                for name, value in values.items():
                    setattr(record, name, value)
                record.updated_at = datetime.utcnow()
                self.db.flush()
        except SQLAlchemyError as e:
            logger.warning("[ATTRIBUTION_WRITER] Failed to write %s/%s: %s", granularity, key, e)
            raise AttributionWriteError(f"Database rejected attribution record: {e}", attribution_key=key) from e

        logger.debug(
            "[ATTRIBUTION_WRITER] %s %s/%s (method=%s, confidence=%.2f)",
            "Created" if was_created else "Updated", granularity, key,
            record.match_method, record.confidence,
        )
        return record, was_created

    def upsert_many(self, organization_id: UUID, writes: Iterable[AttributionWrite]) -> WriteResult:
        """Write each record independently; failures are reported, not raised."""
        result = WriteResult()
        for write in writes:
            try:
                record, created = self.upsert(organization_id, write.granularity, write.key, write.fields)
            except AttributionWriteError as e:
                result.errors.append({"key": write.key, "error": e.message})
                continue
            result.written.append(record)
            if created:
                result.created += 1
            else:
                result.updated += 1
        return result
