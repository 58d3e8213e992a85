"""
Matching Engine

Pure computation: one anchor (document or transaction) and the opposite-side
entities around it go in, one MatchDecision comes out. Nothing here touches
the database; the matching service persists the decision.

Classification:
- top score >= auto floor and no runner-up within the ambiguity margin
  -> auto_matched
- otherwise, candidates >= suggestion floor -> suggestion_created (top N)
- otherwise, non-empty pool -> no_match_yet
- otherwise -> no_match

Ties are broken by exact amount, then date distance, then id.
"""

import logging
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from reconciliation.models import (
    AnchorKind,
    MatchAction,
    MatchDecision,
    MatchEntity,
    MatchStatus,
    MatchSuggestion,
    MatchType,
    ScoredCandidate,
    SETTLED_STATUSES,
)
from reconciliation.matching_rules.scoring import (
    ConfidenceScorer,
    HIGH_CONFIDENCE,
    amount_difference,
    name_similarity,
)

logger = logging.getLogger(__name__)

Scorer = Callable[[MatchEntity, MatchEntity], Tuple[float, Dict[str, float]]]


class MatchingEngine:
    """
    Scores a candidate pool against an anchor and classifies the result.
    """

    # Plausibility pre-filter: a candidate must be close on amount or on name
    PLAUSIBLE_AMOUNT_DIFFERENCE = 0.05
    PLAUSIBLE_NAME_SIMILARITY = 0.6

    def __init__(
        self,
        auto_match_threshold: float = 0.9,
        suggest_match_threshold: float = 0.5,
        ambiguity_margin: float = 0.05,
        date_window_days: int = 45,
        max_suggestions: int = 3,
        scorer: Optional[Scorer] = None,
    ):
        if not 0.0 < suggest_match_threshold <= auto_match_threshold <= 1.0:
            raise ValueError(
                f"Invalid thresholds: suggest={suggest_match_threshold}, auto={auto_match_threshold}"
            )
        self.auto_match_threshold = auto_match_threshold
        self.suggest_match_threshold = suggest_match_threshold
        self.ambiguity_margin = ambiguity_margin
        self.date_window_days = date_window_days
        self.max_suggestions = max_suggestions
        self.scorer: Scorer = scorer or ConfidenceScorer()

    @classmethod
    def from_settings(cls, settings) -> "MatchingEngine":
        return cls(
            auto_match_threshold=settings.AUTO_MATCH_THRESHOLD,
            suggest_match_threshold=settings.SUGGEST_MATCH_THRESHOLD,
            ambiguity_margin=settings.AUTO_MATCH_MARGIN,
            date_window_days=settings.MATCH_DATE_WINDOW_DAYS,
            max_suggestions=settings.MAX_SUGGESTIONS,
        )

    # ==================== PUBLIC API ====================

    def match(
        self,
        anchor: MatchEntity,
        candidates: Iterable[MatchEntity],
        declined_ids: FrozenSet[str] = frozenset(),
    ) -> MatchDecision:
        """
        Decide the outcome for one anchor.

        Args:
            anchor: The document or transaction being matched
            candidates: Opposite-side entities fetched around the anchor
            declined_ids: Candidate ids whose pair with the anchor was declined

        Returns:
            MatchDecision
        """
        if anchor.match_status in SETTLED_STATUSES:
            return self._settled_decision(anchor)

        pool = self.rank(anchor, candidates, declined_ids)

        if not pool:
            return MatchDecision(anchor=anchor, action=MatchAction.NO_MATCH)

        top = pool[0]
        runner_up = pool[1] if len(pool) > 1 else None

        if top.confidence_score >= self.auto_match_threshold and not self._is_ambiguous(top, runner_up):
            logger.info(
                f"Auto-match {anchor.kind.value} {anchor.id} -> {top.id} ({top.confidence_score})"
            )
            return MatchDecision(
                anchor=anchor,
                action=MatchAction.AUTO_MATCHED,
                suggestions=[self._to_suggestion(anchor, top, MatchType.AUTO_MATCHED)],
                pool_size=len(pool),
            )

        eligible = [c for c in pool if c.confidence_score >= self.suggest_match_threshold]
        if eligible:
            suggestions = [
                self._to_suggestion(
                    anchor,
                    c,
                    MatchType.HIGH_CONFIDENCE if c.confidence_score >= HIGH_CONFIDENCE else MatchType.SUGGESTED,
                )
                for c in eligible[:self.max_suggestions]
            ]
            return MatchDecision(
                anchor=anchor,
                action=MatchAction.SUGGESTION_CREATED,
                suggestions=suggestions,
                pool_size=len(pool),
            )

        return MatchDecision(anchor=anchor, action=MatchAction.NO_MATCH_YET, pool_size=len(pool))

    def rank(
        self,
        anchor: MatchEntity,
        candidates: Iterable[MatchEntity],
        declined_ids: FrozenSet[str] = frozenset(),
    ) -> List[ScoredCandidate]:
        """Filter, score and sort the candidate pool, best first."""
        scored = []
        for candidate in candidates:
            if not self.is_candidate(anchor, candidate) or candidate.id in declined_ids:
                continue
            if not self._is_plausible(anchor, candidate):
                continue

            score, breakdown = self.scorer(anchor, candidate)
            scored.append(ScoredCandidate(
                candidate=candidate,
                confidence_score=score,
                scoring_breakdown=breakdown,
                date_distance=abs((anchor.date - candidate.date).days),
                exact_amount=abs(anchor.amount) == abs(candidate.amount),
            ))

        scored.sort(key=lambda c: (-c.confidence_score, not c.exact_amount, c.date_distance, c.id))
        return scored

    def is_candidate(self, anchor: MatchEntity, candidate: MatchEntity) -> bool:
        """Tenant, currency, date window and status filter."""
        return (
            candidate.kind is anchor.kind.opposite
            and candidate.team_id == anchor.team_id
            and candidate.currency == anchor.currency
            and abs((anchor.date - candidate.date).days) <= self.date_window_days
            and candidate.match_status not in SETTLED_STATUSES
        )

    # ==================== INTERNALS ====================

    def _is_plausible(self, anchor: MatchEntity, candidate: MatchEntity) -> bool:
        if amount_difference(anchor.amount, candidate.amount) <= self.PLAUSIBLE_AMOUNT_DIFFERENCE:
            return True
        similarity = name_similarity(anchor.name, candidate.name)
        return similarity is not None and similarity >= self.PLAUSIBLE_NAME_SIMILARITY

    def _is_ambiguous(self, top: ScoredCandidate, runner_up: Optional[ScoredCandidate]) -> bool:
        if runner_up is None:
            return False
        return round(top.confidence_score - runner_up.confidence_score, 4) < self.ambiguity_margin

    def _to_suggestion(
        self,
        anchor: MatchEntity,
        scored: ScoredCandidate,
        match_type: MatchType,
    ) -> MatchSuggestion:
        if anchor.kind is AnchorKind.DOCUMENT:
            document_id, transaction_id = anchor.id, scored.id
        else:
            document_id, transaction_id = scored.id, anchor.id

        return MatchSuggestion(
            document_id=document_id,
            transaction_id=transaction_id,
            confidence_score=scored.confidence_score,
            match_type=match_type,
            amount_score=scored.scoring_breakdown.get("amount"),
            date_score=scored.scoring_breakdown.get("date"),
            name_score=scored.scoring_breakdown.get("name"),
        )

    def _settled_decision(self, anchor: MatchEntity) -> MatchDecision:
        if anchor.match_status in (MatchStatus.AUTO_MATCHED, MatchStatus.MANUAL_MATCHED):
            action = MatchAction.AUTO_MATCHED
        else:
            action = MatchAction.NO_MATCH
        return MatchDecision(anchor=anchor, action=action, settled=True)
