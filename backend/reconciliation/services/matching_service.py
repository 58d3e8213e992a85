"""
Matching Service

Applies matching engine decisions to the database:
- Single anchor matching (document or transaction)
- Batch matching of documents
- Bidirectional matching of newly arrived transactions
- Review transitions: confirm, decline, manual match, bulk confirm, flag, exclude
- Match status counts per team
- Audit logging

Concurrency: every attempt runs in one database transaction. A
compare-and-set conflict rolls the attempt back; the anchor is then
re-read and, if another job settled it, that job's outcome is returned
marked as superseded.
"""

import logging
from collections import Counter
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import async_sessionmaker

from jobs.errors import (
    AnchorNotFoundError,
    PayloadValidationError,
    ReviewError,
    StaleMatchError,
    SuggestionNotFoundError,
)
from jobs.schemas import AnchorError, MultiAnchorResult
from reconciliation.engine import MatchingEngine
from reconciliation.models import (
    AnchorKind,
    AuditAction,
    MatchAction,
    MatchOutcome,
    MatchStatus,
    MatchSuggestion,
    MatchType,
    LINKED_STATUSES,
    OPEN_STATUSES,
    SuggestionStatus,
)
from reconciliation.repository import MatchRepository

logger = logging.getLogger(__name__)


class MatchAuditEvent:
    """Log event names for matching operations."""
    MATCH_COMMITTED = "matching.match_committed"
    SUGGESTIONS_CREATED = "matching.suggestions_created"
    NO_MATCH = "matching.no_match"
    SUPERSEDED = "matching.superseded"
    BATCH_COMPLETED = "matching.batch_completed"
    REVIEWED = "matching.reviewed"


def log_matching_event(
    event_type: str,
    team_id: str,
    details: Dict[str, Any],
    anchor_id: Optional[str] = None,
    actor: str = "system"
):
    """Log matching event for the audit trail."""
    log_entry = {
        "event": event_type,
        "team_id": team_id,
        "anchor_id": anchor_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Matching event: {event_type}", extra=log_entry)


class MatchingService:
    """
    Runs the matching engine against the current database state and commits
    its decisions.
    """

    # Conflicting attempts before giving up and reporting the current state
    MAX_STALE_RETRIES = 3

    def __init__(
        self,
        session_factory: async_sessionmaker,
        engine: MatchingEngine,
        sweep_page_size: int = 50,
    ):
        self.session_factory = session_factory
        self.engine = engine
        self.sweep_page_size = sweep_page_size

    # ==================== SINGLE ANCHOR ====================

    async def match_document(self, team_id: str, document_id: str) -> MatchOutcome:
        return await self._match_anchor(AnchorKind.DOCUMENT, str(team_id), str(document_id))

    async def match_transaction(self, team_id: str, transaction_id: str) -> MatchOutcome:
        return await self._match_anchor(AnchorKind.TRANSACTION, str(team_id), str(transaction_id))

    async def _match_anchor(self, kind: AnchorKind, team_id: str, anchor_id: str) -> MatchOutcome:
        for attempt in range(1, self.MAX_STALE_RETRIES + 1):
            try:
                return await self._attempt_match(kind, team_id, anchor_id, superseded=attempt > 1)
            except StaleMatchError as e:
                logger.info(f"Stale match for {kind.value} {anchor_id} (attempt {attempt}): {e}")

        # Still racing after every retry: report whatever is committed now
        async with self.session_factory() as session:
            repo = MatchRepository(session)
            anchor = await self._load_anchor(repo, kind, team_id, anchor_id)
            outcome = await repo.existing_outcome(anchor)
        outcome.superseded = True
        log_matching_event(MatchAuditEvent.SUPERSEDED, team_id, outcome.to_dict(), anchor_id=anchor_id)
        return outcome

    async def _attempt_match(
        self,
        kind: AnchorKind,
        team_id: str,
        anchor_id: str,
        superseded: bool,
    ) -> MatchOutcome:
        async with self.session_factory() as session:
            async with session.begin():
                repo = MatchRepository(session)
                anchor = await self._load_anchor(repo, kind, team_id, anchor_id)

                if anchor.is_settled:
                    outcome = await repo.existing_outcome(anchor)
                    outcome.superseded = superseded
                    if superseded:
                        log_matching_event(
                            MatchAuditEvent.SUPERSEDED, team_id, outcome.to_dict(), anchor_id=anchor_id
                        )
                    return outcome

                pool = await repo.fetch_candidate_pool(team_id, anchor, self.engine.date_window_days)
                declined = await repo.fetch_declined_ids(anchor)
                decision = self.engine.match(anchor, pool, declined)

                if decision.action in (MatchAction.AUTO_MATCHED, MatchAction.SUGGESTION_CREATED):
                    await repo.commit_match(decision)

        if decision.action is MatchAction.AUTO_MATCHED:
            status = MatchStatus.AUTO_MATCHED
        elif decision.action is MatchAction.SUGGESTION_CREATED:
            status = MatchStatus.SUGGESTED
        else:
            status = anchor.match_status
        outcome = MatchOutcome(action=decision.action, suggestion=decision.suggestion, status=status)
        details = {
            "kind": kind.value,
            "pool_size": decision.pool_size,
            **outcome.to_dict(),
        }
        if decision.action is MatchAction.AUTO_MATCHED:
            log_matching_event(MatchAuditEvent.MATCH_COMMITTED, team_id, details, anchor_id=anchor_id)
        elif decision.action is MatchAction.SUGGESTION_CREATED:
            details["suggestions"] = len(decision.suggestions)
            log_matching_event(MatchAuditEvent.SUGGESTIONS_CREATED, team_id, details, anchor_id=anchor_id)
        else:
            log_matching_event(MatchAuditEvent.NO_MATCH, team_id, details, anchor_id=anchor_id)
        return outcome

    async def _load_anchor(self, repo: MatchRepository, kind: AnchorKind, team_id: str, anchor_id: str):
        anchor = await repo.get_entity(kind, team_id, anchor_id)
        if anchor is None:
            raise AnchorNotFoundError(kind.value, anchor_id, team_id)
        return anchor

    # ==================== MULTI ANCHOR ====================

    async def process_batch(self, team_id: str, document_ids: Sequence[str]) -> Dict[str, Any]:
        """
        Match each document on its own. A document that cannot be matched
        (missing, or owned by another team) is recorded and does not stop
        the others. Store errors abort the job so the queue retries it;
        documents already settled by the first attempt are no-ops then.
        """
        return await self._process_many(
            AnchorKind.DOCUMENT, str(team_id), [str(i) for i in document_ids]
        )

    async def process_bidirectional(self, team_id: str, new_transaction_ids: Sequence[str]) -> Dict[str, Any]:
        """
        Match newly arrived transactions against the pending documents, so a
        transaction arriving after its document still closes the loop.
        """
        return await self._process_many(
            AnchorKind.TRANSACTION, str(team_id), [str(i) for i in new_transaction_ids]
        )

    async def _process_many(self, kind: AnchorKind, team_id: str, anchor_ids: List[str]) -> Dict[str, Any]:
        results = []
        errors = []
        counts: Counter = Counter()

        for anchor_id in anchor_ids:
            try:
                outcome = await self._match_anchor(kind, team_id, anchor_id)
            except PayloadValidationError as e:
                logger.warning(f"Skipping {kind.value} {anchor_id}: {e}")
                errors.append(AnchorError(id=anchor_id, error=f"{type(e).__name__}: {e}"))
                counts["error"] += 1
                continue

            results.append({"id": anchor_id, **outcome.to_dict()})
            counts[outcome.action.value] += 1

        summary = MultiAnchorResult(
            processed=len(results),
            results=results,
            errors=errors,
            counts=dict(counts),
        )
        log_matching_event(
            MatchAuditEvent.BATCH_COMPLETED,
            team_id,
            {"kind": kind.value, "requested": len(anchor_ids), "counts": dict(counts)},
        )
        return summary.model_dump()

    # ==================== SWEEP SUPPORT ====================

    async def fetch_pending_documents(self, team_id: str, limit: Optional[int] = None) -> List[str]:
        async with self.session_factory() as session:
            repo = MatchRepository(session)
            return await repo.fetch_pending_documents(str(team_id), limit or self.sweep_page_size)

    async def teams_with_pending_documents(self) -> List[str]:
        async with self.session_factory() as session:
            repo = MatchRepository(session)
            return await repo.teams_with_pending_documents()

    # ==================== STATS ====================

    async def get_match_stats(
        self,
        team_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> Dict[str, Any]:
        """
        Match status counts for a team's transactions and documents,
        optionally limited to a date range.
        """
        team_id = str(team_id)
        async with self.session_factory() as session:
            repo = MatchRepository(session)
            transactions = await repo.status_summary(AnchorKind.TRANSACTION, team_id, start, end)
            documents = await repo.status_summary(AnchorKind.DOCUMENT, team_id, start, end)

        return {
            "team_id": team_id,
            "transactions": _summarise(transactions),
            "documents": _summarise(documents),
        }

    # ==================== REVIEW ====================

    async def confirm_suggestion(self, team_id: str, suggestion_id: str, actor: str) -> MatchOutcome:
        """
        Promote a pending suggestion to the active link (manual_matched).
        """
        async with self.session_factory() as session:
            async with session.begin():
                repo = MatchRepository(session)
                row = await self._pending_suggestion(repo, team_id, suggestion_id)
                suggestion = _row_suggestion(row)

                document = await repo.get_entity(AnchorKind.DOCUMENT, team_id, row.document_id)
                try:
                    await repo.link(team_id, suggestion, MatchStatus.MANUAL_MATCHED, OPEN_STATUSES)
                    await repo.set_suggestion_status(
                        suggestion_id, SuggestionStatus.PENDING, SuggestionStatus.CONFIRMED
                    )
                except StaleMatchError as e:
                    raise ReviewError(f"Suggestion {suggestion_id} can no longer be confirmed: {e}") from e

                await repo.add_audit(
                    team_id=team_id,
                    action=AuditAction.CONFIRM,
                    document_id=row.document_id,
                    transaction_id=row.transaction_id,
                    confidence=row.confidence_score,
                    previous_status=document.match_status if document else None,
                    new_status=MatchStatus.MANUAL_MATCHED,
                    actor=actor,
                )

        log_matching_event(
            MatchAuditEvent.REVIEWED, team_id,
            {"review": AuditAction.CONFIRM.value, "suggestion_id": suggestion_id},
            anchor_id=suggestion.document_id, actor=actor
        )
        return MatchOutcome(
            action=MatchAction.AUTO_MATCHED,
            suggestion=suggestion,
            status=MatchStatus.MANUAL_MATCHED,
        )

    async def decline_suggestion(self, team_id: str, suggestion_id: str, actor: str) -> None:
        """
        Decline a pending suggestion. The pair is never proposed again;
        sides left without pending suggestions return to unmatched.
        """
        async with self.session_factory() as session:
            async with session.begin():
                repo = MatchRepository(session)
                row = await self._pending_suggestion(repo, team_id, suggestion_id)
                try:
                    await repo.set_suggestion_status(
                        suggestion_id, SuggestionStatus.PENDING, SuggestionStatus.DECLINED
                    )
                except StaleMatchError as e:
                    raise ReviewError(f"Suggestion {suggestion_id} is no longer pending") from e

                await repo.release_orphaned(AnchorKind.DOCUMENT, [row.document_id])
                await repo.release_orphaned(AnchorKind.TRANSACTION, [row.transaction_id])
                await repo.add_audit(
                    team_id=team_id,
                    action=AuditAction.DECLINE,
                    document_id=row.document_id,
                    transaction_id=row.transaction_id,
                    confidence=row.confidence_score,
                    actor=actor,
                )

        log_matching_event(
            MatchAuditEvent.REVIEWED, team_id,
            {"review": AuditAction.DECLINE.value, "suggestion_id": suggestion_id},
            anchor_id=row.document_id, actor=actor
        )

    async def manual_match(
        self,
        team_id: str,
        document_id: str,
        transaction_id: str,
        actor: str,
        note: Optional[str] = None,
    ) -> MatchOutcome:
        """
        Link a document and a transaction picked by a reviewer, whether or
        not the engine ever suggested the pair. Both sides must still be open.
        """
        team_id, document_id, transaction_id = str(team_id), str(document_id), str(transaction_id)
        suggestion = MatchSuggestion(
            document_id=document_id,
            transaction_id=transaction_id,
            confidence_score=1.0,
            match_type=MatchType.MANUAL,
        )

        async with self.session_factory() as session:
            async with session.begin():
                repo = MatchRepository(session)
                document = await self._load_anchor(repo, AnchorKind.DOCUMENT, team_id, document_id)
                transaction = await self._load_anchor(repo, AnchorKind.TRANSACTION, team_id, transaction_id)
                try:
                    await repo.link(team_id, suggestion, MatchStatus.MANUAL_MATCHED, OPEN_STATUSES)
                    await repo.upsert_suggestion(team_id, suggestion, SuggestionStatus.CONFIRMED)
                except StaleMatchError as e:
                    raise ReviewError(
                        f"Cannot link document {document_id} ({document.match_status.value}) "
                        f"to transaction {transaction_id} ({transaction.match_status.value})"
                    ) from e

                await repo.add_audit(
                    team_id=team_id,
                    action=AuditAction.MANUAL_MATCH,
                    document_id=document_id,
                    transaction_id=transaction_id,
                    confidence=1.0,
                    previous_status=document.match_status,
                    new_status=MatchStatus.MANUAL_MATCHED,
                    actor=actor,
                    details={"note": note} if note else None,
                )

        log_matching_event(
            MatchAuditEvent.REVIEWED, team_id,
            {"review": AuditAction.MANUAL_MATCH.value, "transaction_id": transaction_id},
            anchor_id=document_id, actor=actor
        )
        return MatchOutcome(
            action=MatchAction.AUTO_MATCHED,
            suggestion=suggestion,
            status=MatchStatus.MANUAL_MATCHED,
        )

    async def bulk_confirm(
        self,
        team_id: str,
        actor: str,
        transaction_ids: Optional[Sequence[str]] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> Dict[str, Any]:
        """
        Confirm auto-matched and suggested transactions in one go.

        auto_matched pairs become manual_matched. A suggested transaction is
        linked to its best pending suggestion. Each transaction is confirmed
        in its own database transaction; those that changed underneath are
        skipped.
        """
        team_id = str(team_id)
        ids = [str(i) for i in transaction_ids] if transaction_ids else None
        async with self.session_factory() as session:
            repo = MatchRepository(session)
            targets = await repo.fetch_confirmable_transactions(team_id, ids, start, end)

        confirmed = []
        skipped = []
        for transaction_id, status in targets:
            try:
                await self._confirm_transaction(team_id, transaction_id, status, actor)
            except StaleMatchError as e:
                logger.info(f"Bulk confirm skipped transaction {transaction_id}: {e}")
                skipped.append(transaction_id)
                continue
            confirmed.append(transaction_id)

        log_matching_event(
            MatchAuditEvent.REVIEWED, team_id,
            {"review": "bulk_confirm", "confirmed": len(confirmed), "skipped": len(skipped)},
            actor=actor
        )
        return {"confirmed": len(confirmed), "transaction_ids": confirmed, "skipped": skipped}

    async def _confirm_transaction(self, team_id: str, transaction_id: str, status: MatchStatus, actor: str):
        async with self.session_factory() as session:
            async with session.begin():
                repo = MatchRepository(session)
                if status is MatchStatus.AUTO_MATCHED:
                    document_id = await repo.promote_auto_match(team_id, transaction_id)
                    confidence = None
                else:
                    pending = await repo.list_suggestions(
                        AnchorKind.TRANSACTION, transaction_id, SuggestionStatus.PENDING
                    )
                    if not pending:
                        raise StaleMatchError(AnchorKind.TRANSACTION.value, transaction_id)
                    best = pending[0]
                    await repo.link(
                        team_id, _row_suggestion(best), MatchStatus.MANUAL_MATCHED, OPEN_STATUSES
                    )
                    await repo.set_suggestion_status(
                        best.id, SuggestionStatus.PENDING, SuggestionStatus.CONFIRMED
                    )
                    document_id = best.document_id
                    confidence = best.confidence_score

                await repo.add_audit(
                    team_id=team_id,
                    action=AuditAction.CONFIRM,
                    document_id=document_id,
                    transaction_id=transaction_id,
                    confidence=confidence,
                    previous_status=status,
                    new_status=MatchStatus.MANUAL_MATCHED,
                    actor=actor,
                    details={"bulk": True},
                )

    async def flag_document(self, team_id: str, document_id: str, actor: str) -> None:
        await self._settle_document(team_id, document_id, MatchStatus.FLAGGED, AuditAction.FLAG, actor)

    async def exclude_document(self, team_id: str, document_id: str, actor: str) -> None:
        await self._settle_document(team_id, document_id, MatchStatus.EXCLUDED, AuditAction.EXCLUDE, actor)

    async def _settle_document(
        self,
        team_id: str,
        document_id: str,
        new_status: MatchStatus,
        action: AuditAction,
        actor: str,
    ):
        """Take a document out of automatic matching for good."""
        async with self.session_factory() as session:
            async with session.begin():
                repo = MatchRepository(session)
                document = await self._load_anchor(repo, AnchorKind.DOCUMENT, team_id, document_id)
                try:
                    await repo.compare_and_set_status(
                        AnchorKind.DOCUMENT, team_id, document_id, OPEN_STATUSES, new_status
                    )
                except StaleMatchError as e:
                    raise ReviewError(
                        f"Document {document_id} is {document.match_status.value} and cannot be {new_status.value}"
                    ) from e

                released = await repo.expire_pending_suggestions(AnchorKind.DOCUMENT, document_id)
                await repo.release_orphaned(AnchorKind.TRANSACTION, released)
                await repo.add_audit(
                    team_id=team_id,
                    action=action,
                    document_id=document_id,
                    previous_status=document.match_status,
                    new_status=new_status,
                    actor=actor,
                )

        log_matching_event(
            MatchAuditEvent.REVIEWED, team_id,
            {"review": action.value}, anchor_id=document_id, actor=actor
        )

    async def _pending_suggestion(self, repo: MatchRepository, team_id: str, suggestion_id: str):
        row = await repo.get_suggestion(team_id, suggestion_id)
        if row is None:
            raise SuggestionNotFoundError(suggestion_id, team_id)
        if row.status != SuggestionStatus.PENDING.value:
            raise ReviewError(f"Suggestion {suggestion_id} is {row.status}, not pending")
        return row


def _row_suggestion(row) -> MatchSuggestion:
    return MatchSuggestion(
        document_id=row.document_id,
        transaction_id=row.transaction_id,
        confidence_score=row.confidence_score,
        match_type=MatchType(row.match_type),
    )


def _summarise(rows) -> Dict[str, Any]:
    counts = {status.value: 0 for status in MatchStatus}
    total_amount = 0
    matched_amount = 0
    for status, count, amount in rows:
        counts[status] = count
        total_amount += amount
        if MatchStatus(status) in LINKED_STATUSES:
            matched_amount += amount

    total = sum(counts.values())
    matched = counts[MatchStatus.AUTO_MATCHED.value] + counts[MatchStatus.MANUAL_MATCHED.value]
    return {
        "total": total,
        "counts": counts,
        "matched": matched,
        "match_rate": round(matched / total * 100) if total else 0,
        "total_amount": total_amount,
        "matched_amount": matched_amount,
    }
