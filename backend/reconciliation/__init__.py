"""
Reconciliation Matching Module

Links inbox documents (receipts, invoices) to bank transactions:
- Confidence scoring (amount, date, name similarity)
- Auto-matching for unambiguous high confidence candidates
- Ranked suggestions for review
- Bidirectional triggering (new transactions and new documents)
- Compare-and-set persistence, safe under concurrent jobs
"""

from reconciliation.models import (
    MatchStatus,
    MatchType,
    MatchAction,
    SuggestionStatus,
    ConfidenceBand,
    AnchorKind,
    MatchEntity,
    MatchSuggestion,
    MatchDecision,
    MatchOutcome,
)
from reconciliation.matching_rules.scoring import ConfidenceScorer, confidence_band
from reconciliation.engine import MatchingEngine
from reconciliation.sharding import chunk_ids
from reconciliation.dispatcher import (
    TransactionsArrived,
    DocumentsIngested,
    SweepRequested,
    PlannedJob,
    plan_jobs,
    SmartMatchingDispatcher,
)

__all__ = [
    # Models
    'MatchStatus',
    'MatchType',
    'MatchAction',
    'SuggestionStatus',
    'ConfidenceBand',
    'AnchorKind',
    'MatchEntity',
    'MatchSuggestion',
    'MatchDecision',
    'MatchOutcome',
    # Engine
    'ConfidenceScorer',
    'confidence_band',
    'MatchingEngine',
    # Dispatcher
    'chunk_ids',
    'TransactionsArrived',
    'DocumentsIngested',
    'SweepRequested',
    'PlannedJob',
    'plan_jobs',
    'SmartMatchingDispatcher',
]
