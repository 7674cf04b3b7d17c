"""Auto-match attribution service (refcode granularity).

WHAT:
    Finds refcodes seen on donations that have no refcode-level attribution
    yet, matches each against the organization's ad campaigns and, when not a
    dry run, writes the matches.

WHY:
    Staff create new refcodes faster than anyone maps them. Auto-matching
    proposes mappings with a confidence so that only strong ones are applied.

REFERENCES:
    - donorlink/services/refcode_matcher.py
    - donorlink/services/attribution_writer.py
    - donorlink/routers/attribution.py (POST /attribution/auto-match)
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from donorlink.models import (
    AttributionGranularityEnum,
    AttributionRecord,
    MetaCampaign,
    RefcodeMapping,
    Transaction,
)
from donorlink.services import confidence as scoring
from donorlink.services.attribution_writer import AttributionWrite, AttributionWriter
from donorlink.services.refcode_matcher import CampaignCandidate, RefcodeMatcher

logger = logging.getLogger(__name__)

UNMATCHED_LIST_LIMIT = 50
DEFAULT_MIN_CONFIDENCE = 0.7


@dataclass
class AutoMatchResult:
    matches: List[dict] = field(default_factory=list)
    unmatched: List[dict] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)
    errors: List[dict] = field(default_factory=list)
    dry_run: bool = True

    def to_dict(self) -> dict:
        return {
            "success": True,
            "matches": self.matches,
            "unmatched": self.unmatched,
            "summary": self.summary,
            "errors": self.errors,
            "dryRun": self.dry_run,
        }


class AutoMatchService:
    """Match unattributed refcodes to campaigns."""

    def __init__(self, db: Session, matcher: Optional[RefcodeMatcher] = None):
        self.db = db
        self.matcher = matcher or RefcodeMatcher()

    def _refcode_aggregates(self, organization_id: Optional[UUID]):
        query = self.db.query(
            Transaction.organization_id,
            Transaction.refcode,
            func.coalesce(func.sum(Transaction.amount), 0),
            func.count(Transaction.id),
        ).filter(Transaction.refcode.isnot(None), Transaction.refcode != "")
        if organization_id:
            query = query.filter(Transaction.organization_id == organization_id)
        return query.group_by(Transaction.organization_id, Transaction.refcode).all()

    def _already_attributed(self, organization_id: Optional[UUID]) -> set:
        query = self.db.query(AttributionRecord.organization_id, AttributionRecord.attribution_key).filter(
            AttributionRecord.granularity == AttributionGranularityEnum.refcode.value
        )
        if organization_id:
            query = query.filter(AttributionRecord.organization_id == organization_id)
        return {(org_id, key) for org_id, key in query.all()}

    def _campaigns_by_org(self, organization_id: Optional[UUID]) -> Dict[UUID, List[CampaignCandidate]]:
        query = self.db.query(MetaCampaign)
        if organization_id:
            query = query.filter(MetaCampaign.organization_id == organization_id)
        rows = query.all()
        # Most recently active ad first so ties resolve to it
        rows.sort(key=lambda r: r.ad_updated_at or datetime.min, reverse=True)

        grouped: Dict[UUID, List[CampaignCandidate]] = defaultdict(list)
        for row in rows:
            if row.campaign_id:
                grouped[row.organization_id].append(CampaignCandidate.from_model(row))
        return grouped

    def run(
        self,
        organization_id: Optional[UUID] = None,
        dry_run: bool = True,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    ) -> AutoMatchResult:
        logger.info(
            "[AUTO_MATCH] Starting (organization=%s, dry_run=%s, min_confidence=%.2f)",
            organization_id or "all", dry_run, min_confidence,
        )

        aggregates = self._refcode_aggregates(organization_id)
        attributed = self._already_attributed(organization_id)
        campaigns = self._campaigns_by_org(organization_id)

        result = AutoMatchResult(dry_run=dry_run)
        pending = []
        considered = 0

        for org_id, refcode, revenue, count in aggregates:
            if (org_id, refcode) in attributed:
                continue
            considered += 1
            revenue = Decimal(str(revenue or 0))

            match = self.matcher.match(refcode, campaigns.get(org_id, []))
            if match and match.confidence >= min_confidence:
                pending.append((org_id, refcode, revenue, count, match))
            else:
                result.unmatched.append({
                    "refcode": refcode,
                    "organization_id": str(org_id),
                    "revenue": float(revenue),
                    "transactions": count,
                    "best_confidence": round(match.confidence, 4) if match else 0.0,
                })

        pending.sort(key=lambda item: item[4].confidence, reverse=True)
        for org_id, refcode, revenue, count, match in pending:
            entry = {
                "refcode": refcode,
                "organization_id": str(org_id),
                "revenue": float(revenue),
                "transactions": count,
            }
            entry.update(match.to_dict())
            result.matches.append(entry)

        result.summary = {
            "total_refcodes": considered,
            "matched": len(result.matches),
            "unmatched": len(result.unmatched),
            "high_confidence": sum(1 for m in result.matches if scoring.confidence_label(m["confidence"]) == "high"),
            "medium_confidence": sum(1 for m in result.matches if scoring.confidence_label(m["confidence"]) == "medium"),
            "low_confidence": sum(1 for m in result.matches if scoring.confidence_label(m["confidence"]) == "low"),
        }
        result.unmatched = result.unmatched[:UNMATCHED_LIST_LIMIT]

        if not dry_run and pending:
            self._write(pending, result)

        logger.info(
            "[AUTO_MATCH] Done: %d refcodes, %d matched, %d unmatched (dry_run=%s)",
            considered, result.summary["matched"], result.summary["unmatched"], dry_run,
        )
        return result

    def _write(self, pending, result: AutoMatchResult) -> None:
        writer = AttributionWriter(self.db)
        now = datetime.utcnow()
        by_org = defaultdict(list)
        for org_id, refcode, revenue, count, match in pending:
            by_org[org_id].append(AttributionWrite(
                granularity=AttributionGranularityEnum.refcode.value,
                key=refcode,
                fields={
                    "refcode": refcode,
                    "platform": match.campaign.platform,
                    "campaign_id": match.campaign.campaign_id,
                    "campaign_name": match.campaign.campaign_name,
                    "ad_id": match.campaign.ad_id,
                    "creative_id": match.campaign.creative_id,
                    "confidence": match.confidence,
                    "match_method": match.match_method,
                    "match_reason": match.reason,
                    "attributed_revenue": revenue,
                    "attributed_transactions": count,
                    "is_auto_matched": True,
                    "last_matched_at": now,
                },
            ))

        for org_id, writes in by_org.items():
            write_result = writer.upsert_many(org_id, writes)
            result.errors.extend(write_result.errors)
            failed = {error["key"] for error in write_result.errors}
            self._learn_mappings(
                org_id, [item for item in pending if item[0] == org_id and item[1] not in failed]
            )
        self.db.commit()
        result.summary["written"] = result.summary["matched"] - len(result.errors)

    def _learn_mappings(self, organization_id: UUID, pending) -> int:
        """Store applied matches as `learned` refcode mappings.

        The transaction-level backfill resolves refcodes through the mapping
        table; declared mappings are never overwritten.
        """
        if not pending:
            return 0
        existing = {
            row.refcode: row
            for row in self.db.query(RefcodeMapping).filter(
                RefcodeMapping.organization_id == organization_id,
                RefcodeMapping.refcode.in_([item[1] for item in pending]),
            )
        }
        learned = 0
        for _, refcode, _, _, match in pending:
            mapping = existing.get(refcode)
            if mapping is not None and mapping.source != "learned":
                continue
            if mapping is None:
                mapping = RefcodeMapping(organization_id=organization_id, refcode=refcode, source="learned")
                self.db.add(mapping)
            mapping.platform = match.campaign.platform
            mapping.campaign_id = match.campaign.campaign_id
            mapping.campaign_name = match.campaign.campaign_name
            mapping.ad_id = match.campaign.ad_id
            mapping.creative_id = match.campaign.creative_id
            mapping.confidence = match.confidence
            learned += 1
        logger.info("[AUTO_MATCH] Learned %d refcode mappings for %s", learned, organization_id)
        return learned
