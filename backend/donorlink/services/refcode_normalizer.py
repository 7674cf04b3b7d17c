"""Refcode normalization and similarity scoring.

WHAT:
    Canonicalizes free-text campaign identifiers (refcodes, campaign ids,
    campaign names) and scores how similar two of them are.

WHY:
    Refcodes are typed by hand into donation links ("Meta_Fall-2025",
    "meta fall 2025"), so equality must ignore case and separators.
    The similarity function sits behind `SimilarityStrategy` so the matcher can
    be given an alternative scorer without touching orchestration code.

REFERENCES:
    - donorlink/services/refcode_matcher.py (consumer)
"""

import re
from typing import Callable, List, Optional

_SEPARATORS = re.compile(r"[_\-\s]+")
_NON_ALNUM = re.compile(r"[^a-z0-9]")

# (a, b) -> score in [0, 1]
SimilarityStrategy = Callable[[str, str], float]


def normalize(value: Optional[str]) -> str:
    """Lower-case and strip separators and punctuation.

    Total function: never raises, returns "" for None/empty input.
    """
    if not value:
        return ""
    lowered = str(value).lower()
    return _NON_ALNUM.sub("", _SEPARATORS.sub("", lowered))


def split_words(value: Optional[str]) -> List[str]:
    """Split on separators, dropping empty tokens."""
    if not value:
        return []
    return [word for word in _SEPARATORS.split(str(value).lower()) if word]


def word_overlap_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Word-overlap similarity between two identifiers.

    Scoring:
        - normalized equality: 1.0
        - normalized containment (either direction): 0.8
        - otherwise: exact word matches (len > 2) weigh 1, partial/substring
          word matches weigh 0.5, divided by the larger word count

    Partial matches can push the raw ratio above 1.0 when one short word is
    contained in several words of the other string; the result is clamped
    once, at the end, to [0, 1].
    """
    norm_a = normalize(a)
    norm_b = normalize(b)

    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    if norm_a in norm_b or norm_b in norm_a:
        return 0.8

    words_a = split_words(a)
    words_b = split_words(b)
    if not words_a or not words_b:
        return 0.0

    matching = 0.0
    for word_a in words_a:
        for word_b in words_b:
            if word_a == word_b and len(word_a) > 2:
                matching += 1
            elif word_a in word_b or word_b in word_a:
                matching += 0.5

    score = matching / max(len(words_a), len(words_b))
    return max(0.0, min(score, 1.0))
