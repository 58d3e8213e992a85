"""
Matching Rules Module
"""

from .scoring import (
    ConfidenceScorer,
    confidence_band,
    name_similarity,
    normalise_name,
    amount_difference,
)

__all__ = [
    "ConfidenceScorer",
    "confidence_band",
    "name_similarity",
    "normalise_name",
    "amount_difference",
]
