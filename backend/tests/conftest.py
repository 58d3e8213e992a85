"""
Shared fixtures for the matching test suite.

Database tests run against a throwaway SQLite file per test (aiosqlite),
created with the same engine builder the service uses.
"""

import uuid
from datetime import date, timedelta
from typing import List, Optional

import pytest
import pytest_asyncio
from sqlalchemy import select

from database.connection import build_engine, build_session_factory, create_tables
from database.matching_models import (
    InboxDocumentDB,
    MatchAuditLogDB,
    MatchSuggestionDB,
    TransactionDB,
)

TEAM_ID = "5f0c6a52-8f0e-4f43-9a43-0d6a3f3b2c11"
OTHER_TEAM_ID = "9b2d7e15-3c4a-4d8e-b1f6-7a5e2c9d0f22"
BASE_DATE = date(2024, 3, 1)


def new_id() -> str:
    return str(uuid.uuid4())


class Seeder:
    """Insert and read back matching rows."""

    def __init__(self, session_factory, team_id: str = TEAM_ID):
        self.session_factory = session_factory
        self.team_id = team_id

    async def document(
        self,
        amount: int,
        vendor_name: Optional[str] = None,
        days: int = 0,
        status: str = "unmatched",
        currency: str = "USD",
        team_id: Optional[str] = None,
        id: Optional[str] = None,
    ) -> str:
        row = InboxDocumentDB(
            id=id or new_id(),
            team_id=team_id or self.team_id,
            amount=amount,
            currency=currency,
            date=BASE_DATE + timedelta(days=days),
            vendor_name=vendor_name,
            match_status=status,
        )
        await self._add(row)
        return row.id

    async def transaction(
        self,
        amount: int,
        name: Optional[str] = None,
        days: int = 0,
        status: str = "unmatched",
        currency: str = "USD",
        team_id: Optional[str] = None,
        id: Optional[str] = None,
    ) -> str:
        row = TransactionDB(
            id=id or new_id(),
            team_id=team_id or self.team_id,
            amount=amount,
            currency=currency,
            date=BASE_DATE + timedelta(days=days),
            name=name,
            match_status=status,
        )
        await self._add(row)
        return row.id

    async def _add(self, row):
        async with self.session_factory() as session:
            async with session.begin():
                session.add(row)

    async def get_document(self, document_id: str) -> InboxDocumentDB:
        return await self._get(InboxDocumentDB, document_id)

    async def get_transaction(self, transaction_id: str) -> TransactionDB:
        return await self._get(TransactionDB, transaction_id)

    async def _get(self, model, entity_id: str):
        async with self.session_factory() as session:
            result = await session.execute(select(model).where(model.id == entity_id))
            return result.scalar_one()

    async def suggestions(self, document_id: Optional[str] = None) -> List[MatchSuggestionDB]:
        query = select(MatchSuggestionDB)
        if document_id is not None:
            query = query.where(MatchSuggestionDB.document_id == document_id)
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(MatchSuggestionDB.transaction_id))
            return list(result.scalars().all())

    async def audit_rows(self, action: Optional[str] = None) -> List[MatchAuditLogDB]:
        query = select(MatchAuditLogDB)
        if action is not None:
            query = query.where(MatchAuditLogDB.action == action)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())


async def make_database(path):
    engine = build_engine(f"sqlite+aiosqlite:///{path}")
    await create_tables(engine)
    return engine


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Fresh SQLite database with the matching tables."""
    engine = await make_database(tmp_path / "matching.db")
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)
