"""
Bidirectional Trigger Dispatcher

Turns a matching event into the jobs to enqueue.

Events:
- DocumentsIngested: explicit documents; one batch job when the list is
  small, otherwise one batch job per chunk of 10
- TransactionsArrived: one bidirectional job over the new transactions
- SweepRequested: one batch job over the oldest pending documents, or
  nothing when there are none

plan_jobs() holds the whole policy and does no I/O.
SmartMatchingDispatcher.dispatch() fetches pending documents for sweeps
and enqueues what plan_jobs() returns.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Type, Union

from pydantic import ValidationError

from jobs.errors import PayloadValidationError
from jobs.queue import JobQueue
from jobs.schemas import (
    BatchMatchingPayload,
    BidirectionalMatchingPayload,
    JobPayload,
    JobType,
)
from reconciliation.sharding import chunk_ids

logger = logging.getLogger(__name__)

SMALL_BATCH_THRESHOLD = 10
BATCH_CHUNK_SIZE = 10
SWEEP_PAGE_SIZE = 50


# ==================== EVENTS ====================

@dataclass(frozen=True)
class TransactionsArrived:
    team_id: str
    transaction_ids: Tuple[str, ...]


@dataclass(frozen=True)
class DocumentsIngested:
    team_id: str
    document_ids: Tuple[str, ...]


@dataclass(frozen=True)
class SweepRequested:
    team_id: str


MatchingEvent = Union[TransactionsArrived, DocumentsIngested, SweepRequested]


@dataclass(frozen=True)
class PlannedJob:
    job_type: JobType
    payload: JobPayload


# ==================== POLICY ====================

def plan_jobs(
    event: MatchingEvent,
    pending_document_ids: Sequence[str] = (),
    small_batch_threshold: int = SMALL_BATCH_THRESHOLD,
    chunk_size: int = BATCH_CHUNK_SIZE,
) -> List[PlannedJob]:
    """
    Decide which jobs an event produces.

    Args:
        event: The event that just happened
        pending_document_ids: Sweep page of unmatched documents (sweeps only)
        small_batch_threshold: Largest document list sent as a single job
        chunk_size: Shard size for larger document lists

    Returns:
        Jobs to enqueue, possibly none
    """
    if isinstance(event, DocumentsIngested):
        ids = list(event.document_ids)
        if not ids:
            return []
        if len(ids) <= small_batch_threshold:
            return [_batch_job(event.team_id, ids)]
        return [_batch_job(event.team_id, chunk) for chunk in chunk_ids(ids, chunk_size)]

    if isinstance(event, TransactionsArrived):
        if not event.transaction_ids:
            return []
        return [_planned(
            JobType.MATCH_TRANSACTIONS_BIDIRECTIONAL,
            BidirectionalMatchingPayload,
            team_id=event.team_id,
            new_transaction_ids=list(event.transaction_ids),
        )]

    if isinstance(event, SweepRequested):
        if not pending_document_ids:
            return []
        return [_batch_job(event.team_id, list(pending_document_ids))]

    raise TypeError(f"Unknown matching event: {type(event).__name__}")


def _batch_job(team_id: str, document_ids: List[str]) -> PlannedJob:
    return _planned(
        JobType.BATCH_PROCESS_MATCHING,
        BatchMatchingPayload,
        team_id=team_id,
        document_ids=document_ids,
    )


def _planned(job_type: JobType, payload_model: Type[JobPayload], **fields) -> PlannedJob:
    try:
        payload = payload_model(**fields)
    except ValidationError as e:
        raise PayloadValidationError(job_type.value, str(e)) from e
    return PlannedJob(job_type=job_type, payload=payload)


# ==================== DISPATCH ====================

class SmartMatchingDispatcher:
    """
    Entry point for ingestion pipelines and the periodic sweep.
    """

    def __init__(
        self,
        queue: JobQueue,
        matching_service,
        small_batch_threshold: int = SMALL_BATCH_THRESHOLD,
        chunk_size: int = BATCH_CHUNK_SIZE,
        sweep_page_size: int = SWEEP_PAGE_SIZE,
    ):
        self.queue = queue
        self.matching_service = matching_service
        self.small_batch_threshold = small_batch_threshold
        self.chunk_size = chunk_size
        self.sweep_page_size = sweep_page_size

    @classmethod
    def from_settings(cls, settings, queue: JobQueue, matching_service) -> "SmartMatchingDispatcher":
        return cls(
            queue,
            matching_service,
            small_batch_threshold=settings.SMALL_BATCH_THRESHOLD,
            chunk_size=settings.BATCH_CHUNK_SIZE,
            sweep_page_size=settings.SWEEP_PAGE_SIZE,
        )

    async def dispatch(self, event: MatchingEvent) -> List[str]:
        """
        Enqueue the jobs for an event.

        Returns:
            Ids of the enqueued jobs
        """
        pending: Sequence[str] = ()
        if isinstance(event, SweepRequested):
            pending = await self.matching_service.fetch_pending_documents(
                event.team_id, self.sweep_page_size
            )

        jobs = plan_jobs(
            event,
            pending,
            small_batch_threshold=self.small_batch_threshold,
            chunk_size=self.chunk_size,
        )
        if not jobs:
            logger.info(f"No matching jobs for {type(event).__name__} (team {event.team_id})")
            return []

        job_ids = await self.queue.enqueue_many([(job.job_type, job.payload) for job in jobs])
        logger.info(
            f"Dispatched {len(job_ids)} matching job(s) for {type(event).__name__} (team {event.team_id})",
            extra={"job_types": sorted({job.job_type.value for job in jobs})}
        )
        return job_ids

    async def sweep_all(self) -> int:
        """Dispatch a sweep for every team with pending documents."""
        dispatched = 0
        for team_id in await self.matching_service.teams_with_pending_documents():
            job_ids = await self.dispatch(SweepRequested(team_id=team_id))
            dispatched += len(job_ids)
        return dispatched

    async def run_sweeps(self, interval_seconds: float, stop_event: Optional[asyncio.Event] = None):
        """Periodic fallback sweep until stop_event is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Starting periodic sweep (interval={interval_seconds}s)")
        while not stop_event.is_set():
            try:
                dispatched = await self.sweep_all()
                if dispatched:
                    logger.info(f"Sweep dispatched {dispatched} job(s)")
            except Exception as e:
                logger.error(f"Sweep error: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
