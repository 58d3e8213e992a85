"""
Recon Core - Matching Database Models

Tables:
- transactions: Bank transactions (matching fields only)
- inbox_documents: Receipts and invoices awaiting a transaction link
- match_suggestions: Ranked candidate pairs with score breakdown
- match_audit_log: Immutable trail of committed match transitions
- queue_jobs: Persistent task queue
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Float, Integer, BigInteger, Date, DateTime,
    Index, UniqueConstraint, JSON
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== MATCHING ====================

class TransactionDB(Base):
    """Bank transaction as seen by the matching core."""
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    team_id = Column(String(36), nullable=False, index=True)

    # Signed minor units
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    date = Column(Date, nullable=False)
    name = Column(Text, nullable=True)

    match_status = Column(String(20), nullable=False, default="unmatched")

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_transactions_team_currency_date', 'team_id', 'currency', 'date'),
        Index('ix_transactions_team_status', 'team_id', 'match_status'),
    )


class InboxDocumentDB(Base):
    """
    Financial document (receipt, invoice) waiting to be linked.

    transaction_id is the single active link; it is only set for
    auto_matched and manual_matched documents.
    """
    __tablename__ = "inbox_documents"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    team_id = Column(String(36), nullable=False, index=True)

    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    date = Column(Date, nullable=False)
    vendor_name = Column(Text, nullable=True)

    match_status = Column(String(20), nullable=False, default="unmatched")
    transaction_id = Column(String(36), nullable=True, index=True)
    match_confidence = Column(Float, nullable=True)
    matched_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_inbox_documents_team_currency_date', 'team_id', 'currency', 'date'),
        Index('ix_inbox_documents_team_status', 'team_id', 'match_status'),
    )


class MatchSuggestionDB(Base):
    """Candidate pair proposed for review, one row per (document, transaction)."""
    __tablename__ = "match_suggestions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    team_id = Column(String(36), nullable=False, index=True)
    document_id = Column(String(36), nullable=False, index=True)
    transaction_id = Column(String(36), nullable=False, index=True)

    confidence_score = Column(Float, nullable=False)
    amount_score = Column(Float, nullable=True)
    date_score = Column(Float, nullable=True)
    name_score = Column(Float, nullable=True)
    match_type = Column(String(20), nullable=False)

    # pending, confirmed, declined, expired
    status = Column(String(20), nullable=False, default="pending", index=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('document_id', 'transaction_id', name='uq_match_suggestions_pair'),
    )


class MatchAuditLogDB(Base):
    """Append-only record of every committed match transition."""
    __tablename__ = "match_audit_log"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    team_id = Column(String(36), nullable=False, index=True)
    document_id = Column(String(36), nullable=True, index=True)
    transaction_id = Column(String(36), nullable=True, index=True)

    action = Column(String(20), nullable=False)
    confidence = Column(Float, nullable=True)
    previous_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=True)
    actor = Column(String(100), nullable=False, default="system")
    details = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)


# ==================== QUEUE ====================

class QueueJobDB(Base):
    """Persisted job on a named queue."""
    __tablename__ = "queue_jobs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    queue_name = Column(String(100), nullable=False)
    job_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)

    # waiting, active, completed, failed
    status = Column(String(20), nullable=False, default="waiting")
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)

    run_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    result = Column(JSON, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index('ix_queue_jobs_queue_status_run_at', 'queue_name', 'status', 'run_at'),
        Index('ix_queue_jobs_queue_status_finished', 'queue_name', 'status', 'finished_at'),
    )
