"""
Job payload and result schemas.

Payloads are validated once, when the worker deserialises a job
(JobDefinition.parse_payload). Handlers only ever see these models.
"""

from enum import Enum
from typing import Dict, List
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class JobType(str, Enum):
    PROCESS_DOCUMENT_MATCHING = "process-document-matching"
    PROCESS_TRANSACTION_MATCHING = "process-transaction-matching"
    BATCH_PROCESS_MATCHING = "batch-process-matching"
    MATCH_TRANSACTIONS_BIDIRECTIONAL = "match-transactions-bidirectional"


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# Largest document list a batch job accepts (one sweep page)
MAX_BATCH_DOCUMENTS = 50


# ==================== Payloads ====================

class JobPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    team_id: UUID = Field(..., description="Tenant the anchors belong to")


class DocumentMatchingPayload(JobPayload):
    document_id: UUID


class TransactionMatchingPayload(JobPayload):
    transaction_id: UUID


class BatchMatchingPayload(JobPayload):
    document_ids: List[UUID] = Field(..., min_length=1, max_length=MAX_BATCH_DOCUMENTS)


class BidirectionalMatchingPayload(JobPayload):
    new_transaction_ids: List[UUID] = Field(..., min_length=1)


# ==================== Results ====================

class AnchorError(BaseModel):
    id: str
    error: str


class MultiAnchorResult(BaseModel):
    """Result of a batch or bidirectional job."""
    processed: int
    results: List[Dict] = Field(default_factory=list)
    errors: List[AnchorError] = Field(default_factory=list)
    counts: Dict[str, int] = Field(default_factory=dict)
