"""
Confidence Scoring Rules

Scores a (document, transaction) pair on three signals:
- amount closeness (weight 0.5)
- date proximity (weight 0.2)
- counterparty / vendor name similarity (weight 0.3)

The weighted total is rounded to 4 decimals and falls into one of the
display bands:
- High (>= 0.90)
- Medium (0.70 - 0.90)
- Low (0.50 - 0.70)
- below 0.50 is not actionable
"""

import re
from datetime import date
from typing import Dict, Optional, Tuple
from difflib import SequenceMatcher

from reconciliation.models import ConfidenceBand, MatchEntity


HIGH_CONFIDENCE = 0.9
MEDIUM_CONFIDENCE = 0.7
LOW_CONFIDENCE = 0.5

# Relative amount difference -> score, first matching tier wins
AMOUNT_TIERS = (
    (0.01, 0.98),
    (0.02, 0.95),
    (0.03, 0.90),
    (0.05, 0.85),
    (0.10, 0.60),
    (0.20, 0.30),
)

# Days apart -> score
DATE_TIERS = (
    (1, 0.95),
    (3, 0.85),
    (7, 0.75),
    (14, 0.60),
)

LEGAL_SUFFIXES = frozenset({
    "INC", "INCORPORATED", "LLC", "LTD", "LIMITED", "CORP", "CORPORATION",
    "CO", "COMPANY", "PTY", "PLC", "GMBH", "AB", "AS", "BV", "SA",
})

_NON_ALNUM = re.compile(r"[^A-Z0-9 ]+")


def confidence_band(score: float) -> ConfidenceBand:
    """Map a confidence score to its display band."""
    if score >= HIGH_CONFIDENCE:
        return ConfidenceBand.HIGH
    if score >= MEDIUM_CONFIDENCE:
        return ConfidenceBand.MEDIUM
    if score >= LOW_CONFIDENCE:
        return ConfidenceBand.LOW
    return ConfidenceBand.NONE


def normalise_name(name: Optional[str]) -> str:
    """Uppercase, drop punctuation and trailing legal suffixes."""
    if not name:
        return ""
    cleaned = _NON_ALNUM.sub(" ", name.upper().replace("&", " AND "))
    tokens = cleaned.split()
    while len(tokens) > 1 and tokens[-1] in LEGAL_SUFFIXES:
        tokens.pop()
    return " ".join(tokens)


def amount_difference(a: int, b: int) -> float:
    """Relative difference of two minor-unit amounts, by absolute value."""
    a, b = abs(a), abs(b)
    if a == b:
        return 0.0
    return abs(a - b) / max(a, b)


def name_similarity(a: Optional[str], b: Optional[str]) -> Optional[float]:
    """Similarity of two names in [0, 1], None when either is missing."""
    left, right = normalise_name(a), normalise_name(b)
    if not left or not right:
        return None
    if left == right:
        return 1.0

    ratio = SequenceMatcher(None, left, right).ratio()

    # "ACME" vs "ACME HARDWARE STORE"
    left_tokens, right_tokens = set(left.split()), set(right.split())
    if left_tokens <= right_tokens or right_tokens <= left_tokens:
        ratio = max(ratio, 0.85)

    return round(ratio, 4)


class ConfidenceScorer:
    """
    Weighted scoring of a candidate pair.
    """

    WEIGHT_AMOUNT = 0.5
    WEIGHT_DATE = 0.2
    WEIGHT_NAME = 0.3

    # Score used when one side has no name
    NEUTRAL_NAME_SCORE = 0.5

    def __call__(self, anchor: MatchEntity, candidate: MatchEntity) -> Tuple[float, Dict[str, float]]:
        return self.score(anchor, candidate)

    def score(self, anchor: MatchEntity, candidate: MatchEntity) -> Tuple[float, Dict[str, float]]:
        """
        Score the pair.

        Returns:
            Tuple of (total_score, scoring_breakdown)
        """
        breakdown = {
            "amount": self._score_amount(anchor.amount, candidate.amount),
            "date": self._score_date(anchor.date, candidate.date),
            "name": self._score_name(anchor.name, candidate.name),
        }

        total_score = (
            breakdown["amount"] * self.WEIGHT_AMOUNT +
            breakdown["date"] * self.WEIGHT_DATE +
            breakdown["name"] * self.WEIGHT_NAME
        )
        total_score = min(1.0, max(0.0, round(total_score, 4)))
        breakdown["total"] = total_score

        return total_score, breakdown

    def _score_amount(self, a: int, b: int) -> float:
        if a == 0 and b == 0:
            return 1.0
        if a == 0 or b == 0:
            return 0.0

        diff = amount_difference(a, b)
        if diff == 0:
            return 1.0
        for limit, score in AMOUNT_TIERS:
            if diff <= limit:
                return score
        return 0.0

    def _score_date(self, a: date, b: date) -> float:
        days = abs((a - b).days)
        if days == 0:
            return 1.0
        for limit, score in DATE_TIERS:
            if days <= limit:
                return score
        if days <= 30:
            return round(max(0.3, 1 - days / 30 * 0.7), 4)
        return 0.1

    def _score_name(self, a: Optional[str], b: Optional[str]) -> float:
        similarity = name_similarity(a, b)
        if similarity is None:
            return self.NEUTRAL_NAME_SCORE
        return similarity
