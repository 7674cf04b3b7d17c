"""Confidence scoring constants and helpers.

WHAT:
    Single home for every confidence value the matcher, correlator and
    backfill services assign, plus the bucketing used in summaries.

WHY:
    The tiers must stay ordered (exact > pattern > fuzzy); keeping the numbers
    together makes that ordering reviewable in one place.
"""

from typing import Optional

from donorlink.models import MatchMethodEnum

# Refcode matcher
EXACT_CONFIDENCE = 1.0
PATTERN_YEAR_BOOST = 0.10
PATTERN_MAX_CONFIDENCE = 0.95
FUZZY_SIMILARITY_FLOOR = 0.5
FUZZY_WEIGHT = 0.8
FUZZY_MAX_CONFIDENCE = 0.75

# Historical attribution backfill
REFCODE_EXACT_CONFIDENCE = 1.0
REFCODE2_EXACT_CONFIDENCE = 0.9
REFCODE_PARTIAL_CONFIDENCE = 0.7

# Touchpoint correlator
CLICK_ID_CONFIDENCE = 1.0
FBCLID_CONFIDENCE = 0.95
EMAIL_CONFIDENCE = 0.7

# Summary buckets
HIGH_CONFIDENCE = 0.9
MEDIUM_CONFIDENCE = 0.7

# Matcher reason -> stored match method
_MATCHER_METHODS = {
    "direct": MatchMethodEnum.exact.value,
    "pattern": MatchMethodEnum.fuzzy.value,
    "fuzzy": MatchMethodEnum.fuzzy.value,
}


def clamp(value: float) -> float:
    return max(0.0, min(float(value), 1.0))


def fuzzy_confidence(similarity: float) -> float:
    """Fuzzy matches are capped below pattern and exact confidence."""
    return min(clamp(similarity) * FUZZY_WEIGHT, FUZZY_MAX_CONFIDENCE)


def pattern_confidence(base: float, year_matched: bool) -> float:
    if year_matched:
        return min(base + PATTERN_YEAR_BOOST, PATTERN_MAX_CONFIDENCE)
    return base


def confidence_label(confidence: Optional[float]) -> str:
    """Bucket a score into high / medium / low."""
    if confidence is None:
        return "low"
    if confidence >= HIGH_CONFIDENCE:
        return "high"
    if confidence >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


def to_match_method(matcher_method: Optional[str]) -> str:
    """Map a matcher method (direct/pattern/fuzzy) to a stored match method."""
    if not matcher_method:
        return MatchMethodEnum.none.value
    return _MATCHER_METHODS.get(matcher_method, matcher_method)
