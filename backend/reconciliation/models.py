"""
Reconciliation Domain Models

Statuses, match types and the value objects exchanged between the
matching engine, the matching service and the job handlers.

Status lifecycle (per document, reflected on the transaction side):
- unmatched -> auto_matched   (engine committed)
- unmatched -> suggested      (awaiting review)
- suggested -> manual_matched | flagged | excluded   (human review)
- unmatched | suggested -> manual_matched   (manual match)
- auto_matched -> manual_matched   (bulk confirm)

auto_matched, manual_matched, flagged and excluded are settled: the engine
never touches an anchor or candidate in one of these states.
"""

from enum import Enum
from datetime import date
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field


class MatchStatus(str, Enum):
    """
    Match status of a document or transaction.
    """
    UNMATCHED = "unmatched"
    AUTO_MATCHED = "auto_matched"
    SUGGESTED = "suggested"
    MANUAL_MATCHED = "manual_matched"
    FLAGGED = "flagged"
    EXCLUDED = "excluded"


# Statuses a matching job may move away from
OPEN_STATUSES = frozenset({MatchStatus.UNMATCHED, MatchStatus.SUGGESTED})

# Statuses the engine never changes
SETTLED_STATUSES = frozenset({
    MatchStatus.AUTO_MATCHED,
    MatchStatus.MANUAL_MATCHED,
    MatchStatus.FLAGGED,
    MatchStatus.EXCLUDED,
})

LINKED_STATUSES = frozenset({MatchStatus.AUTO_MATCHED, MatchStatus.MANUAL_MATCHED})


class MatchType(str, Enum):
    """
    Classification stored on a suggestion row.
    """
    AUTO_MATCHED = "auto_matched"         # Committed without review
    HIGH_CONFIDENCE = "high_confidence"   # High band but ambiguous, needs review
    SUGGESTED = "suggested"               # Medium or low band
    MANUAL = "manual"                     # Linked by a reviewer without a suggestion


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    EXPIRED = "expired"


class MatchAction(str, Enum):
    """
    Outcome of one matching attempt, returned to the queue.
    """
    AUTO_MATCHED = "auto_matched"
    SUGGESTION_CREATED = "suggestion_created"
    NO_MATCH = "no_match"           # Empty candidate pool
    NO_MATCH_YET = "no_match_yet"   # Candidates exist, none cleared the floor


class ConfidenceBand(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class AnchorKind(str, Enum):
    DOCUMENT = "document"
    TRANSACTION = "transaction"

    @property
    def opposite(self) -> "AnchorKind":
        if self is AnchorKind.DOCUMENT:
            return AnchorKind.TRANSACTION
        return AnchorKind.DOCUMENT


class AuditAction(str, Enum):
    AUTO_MATCH = "auto_match"
    SUGGEST = "suggest"
    CONFIRM = "confirm"
    DECLINE = "decline"
    FLAG = "flag"
    EXCLUDE = "exclude"
    MANUAL_MATCH = "manual_match"


@dataclass(frozen=True)
class MatchEntity:
    """
    A document or a transaction, reduced to the fields matching looks at.

    amount is in minor units (cents), signed.
    """
    id: str
    team_id: str
    kind: AnchorKind
    amount: int
    currency: str
    date: date
    name: Optional[str]
    match_status: MatchStatus

    @property
    def is_settled(self) -> bool:
        return self.match_status in SETTLED_STATUSES


@dataclass
class ScoredCandidate:
    """
    A candidate from the pool together with its confidence score.
    """
    candidate: MatchEntity
    confidence_score: float
    scoring_breakdown: Dict[str, float]
    date_distance: int
    exact_amount: bool

    @property
    def id(self) -> str:
        return self.candidate.id


@dataclass
class MatchSuggestion:
    """
    A (document, transaction) pair proposed or committed by the engine.
    """
    document_id: str
    transaction_id: str
    confidence_score: float
    match_type: MatchType
    amount_score: Optional[float] = None
    date_score: Optional[float] = None
    name_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "document_id": self.document_id,
            "confidence_score": self.confidence_score,
            "match_type": self.match_type.value,
        }


@dataclass
class MatchDecision:
    """
    What the engine decided for one anchor. Pure data, nothing persisted yet.

    settled is True when the anchor was already in a settled status and the
    engine made no decision of its own.
    """
    anchor: MatchEntity
    action: MatchAction
    suggestions: List[MatchSuggestion] = field(default_factory=list)
    pool_size: int = 0
    settled: bool = False

    @property
    def suggestion(self) -> Optional[MatchSuggestion]:
        return self.suggestions[0] if self.suggestions else None


@dataclass
class MatchOutcome:
    """
    Persisted result of a matching attempt, as returned by a job.

    superseded marks an outcome that another job had already committed.
    """
    action: MatchAction
    suggestion: Optional[MatchSuggestion] = None
    status: Optional[MatchStatus] = None
    superseded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"action": self.action.value}
        if self.suggestion is not None:
            result["suggestion"] = self.suggestion.to_dict()
        if self.status is not None:
            result["status"] = self.status.value
        if self.superseded:
            result["superseded"] = True
        return result
