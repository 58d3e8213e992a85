"""
Match Repository

Reads and writes the rows the matching core owns the status of
(inbox_documents, transactions, match_suggestions, match_audit_log).

All status writes are compare-and-set: the UPDATE carries the expected
prior statuses in its WHERE clause and a zero rowcount raises
StaleMatchError. Callers run a whole commit inside one database
transaction so a conflict rolls every write back.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.matching_models import (
    InboxDocumentDB,
    MatchAuditLogDB,
    MatchSuggestionDB,
    TransactionDB,
)
from jobs.errors import StaleMatchError
from reconciliation.models import (
    AnchorKind,
    AuditAction,
    LINKED_STATUSES,
    MatchAction,
    MatchDecision,
    MatchEntity,
    MatchOutcome,
    MatchStatus,
    MatchSuggestion,
    MatchType,
    OPEN_STATUSES,
    SuggestionStatus,
)

logger = logging.getLogger(__name__)

Pair = Tuple[str, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _model_for(kind: AnchorKind):
    return InboxDocumentDB if kind is AnchorKind.DOCUMENT else TransactionDB


def _suggestion_column(kind: AnchorKind):
    if kind is AnchorKind.DOCUMENT:
        return MatchSuggestionDB.document_id
    return MatchSuggestionDB.transaction_id


def _values(statuses: Iterable[MatchStatus]) -> List[str]:
    return [s.value for s in statuses]


def _to_entity(row, kind: AnchorKind) -> MatchEntity:
    return MatchEntity(
        id=row.id,
        team_id=row.team_id,
        kind=kind,
        amount=row.amount,
        currency=row.currency,
        date=row.date,
        name=row.vendor_name if kind is AnchorKind.DOCUMENT else row.name,
        match_status=MatchStatus(row.match_status),
    )


class MatchRepository:
    """
    Persistence operations for one database transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ==================== READS ====================

    async def get_entity(self, kind: AnchorKind, team_id: str, entity_id: str) -> Optional[MatchEntity]:
        model = _model_for(kind)
        result = await self.session.execute(
            select(model).where(model.id == entity_id, model.team_id == team_id)
        )
        row = result.scalar_one_or_none()
        return _to_entity(row, kind) if row else None

    async def fetch_candidate_pool(
        self,
        team_id: str,
        anchor: MatchEntity,
        window_days: int,
    ) -> List[MatchEntity]:
        """
        Opposite-side entities of the same team and currency, within the
        date window, still open for matching.
        """
        kind = anchor.kind.opposite
        model = _model_for(kind)
        window = timedelta(days=window_days)
        result = await self.session.execute(
            select(model)
            .where(
                model.team_id == team_id,
                model.currency == anchor.currency,
                model.date >= anchor.date - window,
                model.date <= anchor.date + window,
                model.match_status.in_(_values(OPEN_STATUSES)),
            )
            .order_by(model.date, model.id)
        )
        return [_to_entity(row, kind) for row in result.scalars().all()]

    async def fetch_declined_ids(self, anchor: MatchEntity) -> FrozenSet[str]:
        """Counterpart ids whose pair with the anchor was declined in review."""
        if anchor.kind is AnchorKind.DOCUMENT:
            counterpart = MatchSuggestionDB.transaction_id
        else:
            counterpart = MatchSuggestionDB.document_id
        result = await self.session.execute(
            select(counterpart).where(
                _suggestion_column(anchor.kind) == anchor.id,
                MatchSuggestionDB.status == SuggestionStatus.DECLINED.value,
            )
        )
        return frozenset(result.scalars().all())

    async def fetch_pending_documents(self, team_id: str, limit: int) -> List[str]:
        """Oldest unmatched document ids for a team."""
        result = await self.session.execute(
            select(InboxDocumentDB.id)
            .where(
                InboxDocumentDB.team_id == team_id,
                InboxDocumentDB.match_status == MatchStatus.UNMATCHED.value,
            )
            .order_by(InboxDocumentDB.created_at, InboxDocumentDB.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def teams_with_pending_documents(self) -> List[str]:
        result = await self.session.execute(
            select(InboxDocumentDB.team_id)
            .where(InboxDocumentDB.match_status == MatchStatus.UNMATCHED.value)
            .distinct()
            .order_by(InboxDocumentDB.team_id)
        )
        return list(result.scalars().all())

    async def status_summary(
        self,
        kind: AnchorKind,
        team_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[Tuple[str, int, int]]:
        """(match_status, count, sum of absolute amounts) per status."""
        model = _model_for(kind)
        query = (
            select(model.match_status, func.count(model.id), func.sum(func.abs(model.amount)))
            .where(model.team_id == team_id)
            .group_by(model.match_status)
        )
        if start is not None:
            query = query.where(model.date >= start)
        if end is not None:
            query = query.where(model.date <= end)
        result = await self.session.execute(query)
        return [(status, count, amount or 0) for status, count, amount in result.all()]

    async def fetch_confirmable_transactions(
        self,
        team_id: str,
        transaction_ids: Optional[Iterable[str]] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[Tuple[str, MatchStatus]]:
        """Auto-matched and suggested transactions, oldest first."""
        query = select(TransactionDB.id, TransactionDB.match_status).where(
            TransactionDB.team_id == team_id,
            TransactionDB.match_status.in_(
                [MatchStatus.AUTO_MATCHED.value, MatchStatus.SUGGESTED.value]
            ),
        )
        if transaction_ids:
            query = query.where(TransactionDB.id.in_(list(transaction_ids)))
        if start is not None:
            query = query.where(TransactionDB.date >= start)
        if end is not None:
            query = query.where(TransactionDB.date <= end)
        result = await self.session.execute(query.order_by(TransactionDB.date, TransactionDB.id))
        return [(row.id, MatchStatus(row.match_status)) for row in result.all()]

    async def get_suggestion(self, team_id: str, suggestion_id: str) -> Optional[MatchSuggestionDB]:
        result = await self.session.execute(
            select(MatchSuggestionDB).where(
                MatchSuggestionDB.id == suggestion_id,
                MatchSuggestionDB.team_id == team_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_suggestions(
        self,
        kind: AnchorKind,
        entity_id: str,
        status: Optional[SuggestionStatus] = None,
    ) -> List[MatchSuggestionDB]:
        query = select(MatchSuggestionDB).where(_suggestion_column(kind) == entity_id)
        if status is not None:
            query = query.where(MatchSuggestionDB.status == status.value)
        result = await self.session.execute(
            query.order_by(MatchSuggestionDB.confidence_score.desc(), MatchSuggestionDB.id)
        )
        return list(result.scalars().all())

    async def existing_outcome(self, anchor: MatchEntity) -> MatchOutcome:
        """
        The outcome already committed for an anchor, used when a job finds
        its anchor settled or loses a compare-and-set race.
        """
        status = anchor.match_status

        if status in LINKED_STATUSES:
            return MatchOutcome(
                action=MatchAction.AUTO_MATCHED,
                suggestion=await self._find_link(anchor),
                status=status,
            )

        if status is MatchStatus.SUGGESTED:
            pending = await self.list_suggestions(anchor.kind, anchor.id, SuggestionStatus.PENDING)
            return MatchOutcome(
                action=MatchAction.SUGGESTION_CREATED,
                suggestion=_row_to_suggestion(pending[0]) if pending else None,
                status=status,
            )

        if status is MatchStatus.UNMATCHED:
            return MatchOutcome(action=MatchAction.NO_MATCH_YET, status=status)

        # flagged, excluded
        return MatchOutcome(action=MatchAction.NO_MATCH, status=status)

    async def _find_link(self, anchor: MatchEntity) -> Optional[MatchSuggestion]:
        if anchor.kind is AnchorKind.DOCUMENT:
            where = InboxDocumentDB.id == anchor.id
        else:
            where = InboxDocumentDB.transaction_id == anchor.id
        result = await self.session.execute(
            select(InboxDocumentDB.id, InboxDocumentDB.transaction_id, InboxDocumentDB.match_confidence)
            .where(where, InboxDocumentDB.match_status.in_(_values(LINKED_STATUSES)))
        )
        link = result.first()
        if link is None or link.transaction_id is None:
            return None

        type_result = await self.session.execute(
            select(MatchSuggestionDB.match_type).where(
                MatchSuggestionDB.document_id == link.id,
                MatchSuggestionDB.transaction_id == link.transaction_id,
            )
        )
        match_type = type_result.scalar_one_or_none() or MatchType.AUTO_MATCHED.value

        return MatchSuggestion(
            document_id=link.id,
            transaction_id=link.transaction_id,
            confidence_score=link.match_confidence if link.match_confidence is not None else 1.0,
            match_type=MatchType(match_type),
        )

    # ==================== COMMIT ====================

    async def commit_match(
        self,
        decision: MatchDecision,
        expected_prior: FrozenSet[MatchStatus] = OPEN_STATUSES,
        actor: str = "system",
    ) -> None:
        """
        Persist an auto_matched or suggestion_created decision.

        Raises:
            StaleMatchError: an entity left the expected prior statuses
        """
        if decision.action is MatchAction.AUTO_MATCHED:
            await self._commit_auto_match(decision, expected_prior, actor)
        elif decision.action is MatchAction.SUGGESTION_CREATED:
            await self._commit_suggestions(decision, expected_prior, actor)
        else:
            raise ValueError(f"Nothing to commit for {decision.action.value}")

    async def _commit_auto_match(
        self,
        decision: MatchDecision,
        expected_prior: FrozenSet[MatchStatus],
        actor: str,
    ):
        anchor = decision.anchor
        suggestion = decision.suggestion

        await self.link(anchor.team_id, suggestion, MatchStatus.AUTO_MATCHED, expected_prior)
        await self.upsert_suggestion(anchor.team_id, suggestion, SuggestionStatus.CONFIRMED)

        await self.add_audit(
            team_id=anchor.team_id,
            action=AuditAction.AUTO_MATCH,
            document_id=suggestion.document_id,
            transaction_id=suggestion.transaction_id,
            confidence=suggestion.confidence_score,
            previous_status=anchor.match_status,
            new_status=MatchStatus.AUTO_MATCHED,
            actor=actor,
        )

    async def _commit_suggestions(
        self,
        decision: MatchDecision,
        expected_prior: FrozenSet[MatchStatus],
        actor: str,
    ):
        anchor = decision.anchor
        counterpart_kind = anchor.kind.opposite

        await self.compare_and_set_status(
            anchor.kind, anchor.team_id, anchor.id, expected_prior, MatchStatus.SUGGESTED
        )

        keep = {(s.document_id, s.transaction_id) for s in decision.suggestions}
        released = await self.expire_pending_suggestions(anchor.kind, anchor.id, keep=keep)

        counterpart_ids = []
        for suggestion in decision.suggestions:
            changed = await self.upsert_suggestion(anchor.team_id, suggestion, SuggestionStatus.PENDING)
            counterpart_ids.append(
                suggestion.transaction_id if anchor.kind is AnchorKind.DOCUMENT else suggestion.document_id
            )
            if changed:
                await self.add_audit(
                    team_id=anchor.team_id,
                    action=AuditAction.SUGGEST,
                    document_id=suggestion.document_id,
                    transaction_id=suggestion.transaction_id,
                    confidence=suggestion.confidence_score,
                    previous_status=anchor.match_status,
                    new_status=MatchStatus.SUGGESTED,
                    actor=actor,
                    details={"match_type": suggestion.match_type.value},
                )

        # Counterparts must still be open; unmatched ones become suggested
        model = _model_for(counterpart_kind)
        claimed = set(counterpart_ids)
        result = await self.session.execute(
            update(model)
            .where(
                model.id.in_(claimed),
                model.team_id == anchor.team_id,
                model.match_status.in_(_values(OPEN_STATUSES)),
            )
            .values(
                match_status=case(
                    (model.match_status == MatchStatus.UNMATCHED.value, MatchStatus.SUGGESTED.value),
                    else_=model.match_status,
                ),
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(claimed):
            raise StaleMatchError(counterpart_kind.value, ", ".join(sorted(claimed)))

        await self.release_orphaned(counterpart_kind, released - claimed)

    async def link(
        self,
        team_id: str,
        suggestion: MatchSuggestion,
        new_status: MatchStatus,
        expected_prior: FrozenSet[MatchStatus] = OPEN_STATUSES,
    ) -> None:
        """
        Set the active link between a document and a transaction and retire
        every other pending suggestion of either side.
        """
        now = utc_now()
        await self.compare_and_set_status(
            AnchorKind.DOCUMENT, team_id, suggestion.document_id, expected_prior, new_status,
            transaction_id=suggestion.transaction_id,
            match_confidence=suggestion.confidence_score,
            matched_at=now,
        )
        await self.compare_and_set_status(
            AnchorKind.TRANSACTION, team_id, suggestion.transaction_id, expected_prior, new_status,
        )

        pair = {(suggestion.document_id, suggestion.transaction_id)}
        released_transactions = await self.expire_pending_suggestions(
            AnchorKind.DOCUMENT, suggestion.document_id, keep=pair
        )
        released_documents = await self.expire_pending_suggestions(
            AnchorKind.TRANSACTION, suggestion.transaction_id, keep=pair
        )
        await self.release_orphaned(AnchorKind.TRANSACTION, released_transactions)
        await self.release_orphaned(AnchorKind.DOCUMENT, released_documents)

    async def promote_auto_match(self, team_id: str, transaction_id: str) -> str:
        """
        Move an auto_matched pair to manual_matched.

        Returns:
            Id of the linked document

        Raises:
            StaleMatchError: the pair is no longer auto_matched
        """
        result = await self.session.execute(
            select(InboxDocumentDB.id).where(
                InboxDocumentDB.team_id == team_id,
                InboxDocumentDB.transaction_id == transaction_id,
                InboxDocumentDB.match_status == MatchStatus.AUTO_MATCHED.value,
            )
        )
        document_id = result.scalar_one_or_none()
        if document_id is None:
            raise StaleMatchError(AnchorKind.TRANSACTION.value, transaction_id)

        expected = {MatchStatus.AUTO_MATCHED}
        await self.compare_and_set_status(
            AnchorKind.DOCUMENT, team_id, document_id, expected, MatchStatus.MANUAL_MATCHED
        )
        await self.compare_and_set_status(
            AnchorKind.TRANSACTION, team_id, transaction_id, expected, MatchStatus.MANUAL_MATCHED
        )
        return document_id

    # ==================== WRITE PRIMITIVES ====================

    async def compare_and_set_status(
        self,
        kind: AnchorKind,
        team_id: str,
        entity_id: str,
        expected_prior: Iterable[MatchStatus],
        new_status: MatchStatus,
        **values: Any,
    ) -> None:
        model = _model_for(kind)
        result = await self.session.execute(
            update(model)
            .where(
                model.id == entity_id,
                model.team_id == team_id,
                model.match_status.in_(_values(expected_prior)),
            )
            .values(match_status=new_status.value, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleMatchError(kind.value, entity_id)

    async def expire_pending_suggestions(
        self,
        kind: AnchorKind,
        entity_id: str,
        keep: Set[Pair] = frozenset(),
    ) -> Set[str]:
        """
        Expire the entity's pending suggestions except the kept pairs.

        Returns:
            Ids of the counterparts that lost a pending suggestion
        """
        result = await self.session.execute(
            select(
                MatchSuggestionDB.id,
                MatchSuggestionDB.document_id,
                MatchSuggestionDB.transaction_id,
            ).where(
                _suggestion_column(kind) == entity_id,
                MatchSuggestionDB.status == SuggestionStatus.PENDING.value,
            )
        )
        expired_ids = []
        counterparts = set()
        for row in result.all():
            if (row.document_id, row.transaction_id) in keep:
                continue
            expired_ids.append(row.id)
            counterparts.add(row.transaction_id if kind is AnchorKind.DOCUMENT else row.document_id)

        if expired_ids:
            await self.session.execute(
                update(MatchSuggestionDB)
                .where(MatchSuggestionDB.id.in_(expired_ids))
                .values(status=SuggestionStatus.EXPIRED.value, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
        return counterparts

    async def release_orphaned(self, kind: AnchorKind, entity_ids: Iterable[str]) -> None:
        """Move suggested entities with no pending suggestion left back to unmatched."""
        model = _model_for(kind)
        for entity_id in entity_ids:
            remaining = await self.session.execute(
                select(func.count(MatchSuggestionDB.id)).where(
                    _suggestion_column(kind) == entity_id,
                    MatchSuggestionDB.status == SuggestionStatus.PENDING.value,
                )
            )
            if remaining.scalar():
                continue
            await self.session.execute(
                update(model)
                .where(model.id == entity_id, model.match_status == MatchStatus.SUGGESTED.value)
                .values(match_status=MatchStatus.UNMATCHED.value, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )

    async def upsert_suggestion(
        self,
        team_id: str,
        suggestion: MatchSuggestion,
        status: SuggestionStatus,
    ) -> bool:
        """
        Insert or refresh the row for a (document, transaction) pair.

        Returns:
            True if the row was created or its content changed

        Raises:
            StaleMatchError: a concurrent job inserted the same pair first
        """
        row = await self._find_suggestion(suggestion.document_id, suggestion.transaction_id)

        if row is None:
            await self._insert_suggestion(team_id, suggestion, status)
            return True

        changed = (
            row.status != status.value
            or row.confidence_score != suggestion.confidence_score
            or row.match_type != suggestion.match_type.value
        )
        if changed:
            row.status = status.value
            row.confidence_score = suggestion.confidence_score
            row.amount_score = suggestion.amount_score
            row.date_score = suggestion.date_score
            row.name_score = suggestion.name_score
            row.match_type = suggestion.match_type.value
            await self.session.flush()
        return changed

    async def _find_suggestion(self, document_id: str, transaction_id: str) -> Optional[MatchSuggestionDB]:
        result = await self.session.execute(
            select(MatchSuggestionDB).where(
                MatchSuggestionDB.document_id == document_id,
                MatchSuggestionDB.transaction_id == transaction_id,
            )
        )
        return result.scalar_one_or_none()

    async def _insert_suggestion(
        self,
        team_id: str,
        suggestion: MatchSuggestion,
        status: SuggestionStatus,
    ) -> None:
        self.session.add(MatchSuggestionDB(
            team_id=team_id,
            document_id=suggestion.document_id,
            transaction_id=suggestion.transaction_id,
            confidence_score=suggestion.confidence_score,
            amount_score=suggestion.amount_score,
            date_score=suggestion.date_score,
            name_score=suggestion.name_score,
            match_type=suggestion.match_type.value,
            status=status.value,
        ))
        try:
            await self.session.flush()
        except IntegrityError as e:
            # uq_match_suggestions_pair: the row committed after our read
            raise StaleMatchError(
                "suggestion", f"{suggestion.document_id}/{suggestion.transaction_id}"
            ) from e

    async def set_suggestion_status(
        self,
        suggestion_id: str,
        expected: SuggestionStatus,
        new_status: SuggestionStatus,
    ) -> None:
        result = await self.session.execute(
            update(MatchSuggestionDB)
            .where(
                MatchSuggestionDB.id == suggestion_id,
                MatchSuggestionDB.status == expected.value,
            )
            .values(status=new_status.value, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleMatchError("suggestion", suggestion_id)

    async def add_audit(
        self,
        team_id: str,
        action: AuditAction,
        document_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        confidence: Optional[float] = None,
        previous_status: Optional[MatchStatus] = None,
        new_status: Optional[MatchStatus] = None,
        actor: str = "system",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.session.add(MatchAuditLogDB(
            team_id=team_id,
            document_id=document_id,
            transaction_id=transaction_id,
            action=action.value,
            confidence=confidence,
            previous_status=previous_status.value if previous_status else None,
            new_status=new_status.value if new_status else None,
            actor=actor,
            details=details,
        ))


def _row_to_suggestion(row: MatchSuggestionDB) -> MatchSuggestion:
    return MatchSuggestion(
        document_id=row.document_id,
        transaction_id=row.transaction_id,
        confidence_score=row.confidence_score,
        match_type=MatchType(row.match_type),
        amount_score=row.amount_score,
        date_score=row.date_score,
        name_score=row.name_score,
    )
