"""Refcode → campaign matcher.

WHAT:
    Maps a donation refcode to one of an organization's ad campaigns using
    three strategies in priority order: exact, pattern, fuzzy.

WHY:
    Refcodes are free text chosen by campaign staff. Most are the campaign id
    verbatim, many follow a channel-prefix convention (meta_<topic>_<year>),
    and the rest only resemble the campaign name.

REFERENCES:
    - donorlink/services/refcode_normalizer.py
    - donorlink/services/confidence.py
    - donorlink/services/auto_match_service.py (consumer)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Pattern

from donorlink.services import confidence as scoring
from donorlink.services.refcode_normalizer import (
    SimilarityStrategy,
    normalize,
    word_overlap_similarity,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatternRule:
    """Channel-prefix rule: group 1 is the topic, optional group 2 a year."""
    name: str
    regex: Pattern
    base_confidence: float


DEFAULT_PATTERN_RULES: List[PatternRule] = [
    PatternRule("meta", re.compile(r"meta[_\-]?(\w+)[_\-]?(\d{4})"), 0.85),
    PatternRule("fb", re.compile(r"fb[_\-]?(\w+)"), 0.80),
    PatternRule("sms", re.compile(r"sms[_\-]?(\w+)"), 0.75),
    PatternRule("email", re.compile(r"email[_\-]?(\w+)"), 0.75),
]

_TOPIC_SEPARATORS = re.compile(r"[_\-]+")


@dataclass
class CampaignCandidate:
    campaign_id: str
    campaign_name: str = ""
    ad_id: Optional[str] = None
    creative_id: Optional[str] = None
    platform: str = "meta"

    @classmethod
    def from_model(cls, row: Any) -> "CampaignCandidate":
        return cls(
            campaign_id=str(row.campaign_id),
            campaign_name=row.campaign_name or "",
            ad_id=getattr(row, "ad_id", None),
            creative_id=getattr(row, "creative_id", None),
            platform=getattr(row, "platform", None) or "meta",
        )


@dataclass
class RefcodeMatch:
    campaign: CampaignCandidate
    confidence: float
    reason: str
    method: str  # direct, pattern, fuzzy
    similarity: Optional[float] = None

    @property
    def match_method(self) -> str:
        return scoring.to_match_method(self.method)

    def to_dict(self) -> dict:
        return {
            "campaign_id": self.campaign.campaign_id,
            "campaign_name": self.campaign.campaign_name,
            "ad_id": self.campaign.ad_id,
            "creative_id": self.campaign.creative_id,
            "confidence": round(self.confidence, 4),
            "reason": self.reason,
            "method": self.method,
        }


@dataclass
class RefcodeMatcher:
    """Three-tier refcode matcher.

    Usage:
        matcher = RefcodeMatcher()
        match = matcher.match("meta_fall_2025", campaigns)
        if match:
            print(match.campaign.campaign_id, match.confidence)
    """

    similarity: SimilarityStrategy = word_overlap_similarity
    pattern_rules: List[PatternRule] = field(default_factory=lambda: list(DEFAULT_PATTERN_RULES))

    def match(self, refcode: Optional[str], campaigns: Iterable[CampaignCandidate]) -> Optional[RefcodeMatch]:
        """Return the first non-empty result of exact, pattern, fuzzy; else None."""
        if not refcode or not normalize(refcode):
            return None

        candidates = list(campaigns)
        if not candidates:
            return None

        return (
            self._match_exact(refcode, candidates)
            or self._match_pattern(refcode, candidates)
            or self._match_fuzzy(refcode, candidates)
        )

    def _match_exact(self, refcode: str, campaigns: List[CampaignCandidate]) -> Optional[RefcodeMatch]:
        target = normalize(refcode)
        for campaign in campaigns:
            if normalize(campaign.campaign_id) == target:
                return RefcodeMatch(
                    campaign=campaign,
                    confidence=scoring.EXACT_CONFIDENCE,
                    reason="direct",
                    method="direct",
                )
        return None

    def _match_pattern(self, refcode: str, campaigns: List[CampaignCandidate]) -> Optional[RefcodeMatch]:
        lowered = refcode.lower()
        for rule in self.pattern_rules:
            found = rule.regex.search(lowered)
            if not found:
                continue

            topic = _TOPIC_SEPARATORS.sub(" ", found.group(1)).strip()
            year = found.group(2) if rule.regex.groups >= 2 else None
            if not topic:
                continue

            for campaign in campaigns:
                name = (campaign.campaign_name or "").lower()
                if topic not in name:
                    continue

                year_matched = bool(year and year in name)
                reason = f"Pattern match: refcode contains \"{topic}\""
                if year_matched:
                    reason += f" and year {year}"
                return RefcodeMatch(
                    campaign=campaign,
                    confidence=scoring.pattern_confidence(rule.base_confidence, year_matched),
                    reason=reason,
                    method="pattern",
                )
        return None

    def _match_fuzzy(self, refcode: str, campaigns: List[CampaignCandidate]) -> Optional[RefcodeMatch]:
        best: Optional[CampaignCandidate] = None
        best_score = 0.0
        for campaign in campaigns:
            score = self.similarity(refcode, campaign.campaign_name or "")
            if score > scoring.FUZZY_SIMILARITY_FLOOR and score > best_score:
                best, best_score = campaign, score

        if best is None:
            return None

        return RefcodeMatch(
            campaign=best,
            confidence=scoring.fuzzy_confidence(best_score),
            reason=f"Fuzzy match with {round(best_score * 100)}% similarity",
            method="fuzzy",
            similarity=best_score,
        )
