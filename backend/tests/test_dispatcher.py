"""
Unit Tests for the Bidirectional Trigger Dispatcher

Tests:
- Job planning per event (small batch, sharding, transactions, sweep)
- Chunking helper
- Dispatch through a mocked queue and matching service
- Periodic sweep loop

Run with: pytest backend/tests/test_dispatcher.py -v
"""

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from jobs.errors import PayloadValidationError
from jobs.schemas import BatchMatchingPayload, BidirectionalMatchingPayload, JobType
from reconciliation.dispatcher import (
    DocumentsIngested,
    SmartMatchingDispatcher,
    SweepRequested,
    TransactionsArrived,
    plan_jobs,
)
from reconciliation.sharding import chunk_ids

TEAM_ID = "5f0c6a52-8f0e-4f43-9a43-0d6a3f3b2c11"


def ids(count):
    return tuple(str(uuid.uuid4()) for _ in range(count))


def as_strings(values):
    return [str(v) for v in values]


class TestChunkIds:
    """Shard helper."""

    def test_even_and_remainder_chunks(self):
        assert chunk_ids(list(range(25)), 10) == [
            list(range(10)), list(range(10, 20)), list(range(20, 25)),
        ]

    def test_exact_multiple(self):
        assert [len(c) for c in chunk_ids(list(range(20)), 10)] == [10, 10]

    def test_empty(self):
        assert chunk_ids([], 10) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            chunk_ids([1, 2], 0)


class TestPlanDocumentsIngested:
    """Explicit document lists."""

    def test_small_list_is_one_job(self):
        document_ids = ids(10)
        jobs = plan_jobs(DocumentsIngested(TEAM_ID, document_ids))

        assert len(jobs) == 1
        assert jobs[0].job_type == JobType.BATCH_PROCESS_MATCHING
        assert isinstance(jobs[0].payload, BatchMatchingPayload)
        assert as_strings(jobs[0].payload.document_ids) == list(document_ids)

    def test_large_list_is_sharded_by_ten(self):
        document_ids = ids(25)
        jobs = plan_jobs(DocumentsIngested(TEAM_ID, document_ids))

        assert [len(job.payload.document_ids) for job in jobs] == [10, 10, 5]
        assert all(job.job_type == JobType.BATCH_PROCESS_MATCHING for job in jobs)

        # Every document in exactly one shard, order kept
        flattened = [i for job in jobs for i in as_strings(job.payload.document_ids)]
        assert flattened == list(document_ids)

    def test_eleven_documents_is_two_jobs(self):
        jobs = plan_jobs(DocumentsIngested(TEAM_ID, ids(11)))
        assert [len(job.payload.document_ids) for job in jobs] == [10, 1]

    def test_empty_list_plans_nothing(self):
        assert plan_jobs(DocumentsIngested(TEAM_ID, ())) == []

    def test_invalid_id_is_a_validation_error(self):
        with pytest.raises(PayloadValidationError):
            plan_jobs(DocumentsIngested(TEAM_ID, ("not-a-uuid",)))

    def test_invalid_team_is_a_validation_error(self):
        with pytest.raises(PayloadValidationError):
            plan_jobs(DocumentsIngested("team-1", ids(1)))


class TestPlanTransactionsArrived:
    """New transactions trigger one bidirectional job."""

    def test_single_bidirectional_job(self):
        transaction_ids = ids(30)
        jobs = plan_jobs(TransactionsArrived(TEAM_ID, transaction_ids))

        assert len(jobs) == 1
        assert jobs[0].job_type == JobType.MATCH_TRANSACTIONS_BIDIRECTIONAL
        assert isinstance(jobs[0].payload, BidirectionalMatchingPayload)
        assert as_strings(jobs[0].payload.new_transaction_ids) == list(transaction_ids)

    def test_empty_list_plans_nothing(self):
        assert plan_jobs(TransactionsArrived(TEAM_ID, ())) == []


class TestPlanSweep:
    """Fallback sweep over pending documents."""

    def test_no_pending_documents_is_a_no_op(self):
        assert plan_jobs(SweepRequested(TEAM_ID), pending_document_ids=[]) == []

    def test_pending_page_is_one_batch_job(self):
        pending = ids(50)
        jobs = plan_jobs(SweepRequested(TEAM_ID), pending_document_ids=pending)

        assert len(jobs) == 1
        assert jobs[0].job_type == JobType.BATCH_PROCESS_MATCHING
        assert len(jobs[0].payload.document_ids) == 50

    def test_unknown_event_raises(self):
        with pytest.raises(TypeError):
            plan_jobs(object())


class TestSmartMatchingDispatcher:
    """Dispatch through the queue."""

    @pytest.fixture
    def queue(self):
        queue = MagicMock()
        queue.enqueue_many = AsyncMock(side_effect=lambda jobs: [f"job-{i}" for i in range(len(jobs))])
        return queue

    @pytest.fixture
    def service(self):
        service = MagicMock()
        service.fetch_pending_documents = AsyncMock(return_value=[])
        service.teams_with_pending_documents = AsyncMock(return_value=[])
        return service

    @pytest.fixture
    def dispatcher(self, queue, service):
        return SmartMatchingDispatcher(queue, service)

    @pytest.mark.asyncio
    async def test_sharded_documents_enqueued_together(self, dispatcher, queue):
        job_ids = await dispatcher.dispatch(DocumentsIngested(TEAM_ID, ids(25)))

        assert job_ids == ["job-0", "job-1", "job-2"]
        queue.enqueue_many.assert_awaited_once()
        enqueued = queue.enqueue_many.await_args.args[0]
        assert [job_type for job_type, _ in enqueued] == [JobType.BATCH_PROCESS_MATCHING] * 3

    @pytest.mark.asyncio
    async def test_transactions_enqueue_bidirectional_job(self, dispatcher, queue):
        await dispatcher.dispatch(TransactionsArrived(TEAM_ID, ids(3)))

        enqueued = queue.enqueue_many.await_args.args[0]
        assert len(enqueued) == 1
        assert enqueued[0][0] == JobType.MATCH_TRANSACTIONS_BIDIRECTIONAL

    @pytest.mark.asyncio
    async def test_sweep_fetches_one_page(self, dispatcher, queue, service):
        pending = list(ids(7))
        service.fetch_pending_documents.return_value = pending

        job_ids = await dispatcher.dispatch(SweepRequested(TEAM_ID))

        service.fetch_pending_documents.assert_awaited_once_with(TEAM_ID, 50)
        assert job_ids == ["job-0"]
        payload = queue.enqueue_many.await_args.args[0][0][1]
        assert as_strings(payload.document_ids) == pending

    @pytest.mark.asyncio
    async def test_empty_sweep_enqueues_nothing(self, dispatcher, queue):
        assert await dispatcher.dispatch(SweepRequested(TEAM_ID)) == []
        queue.enqueue_many.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_documents_do_not_query_pending(self, dispatcher, service):
        await dispatcher.dispatch(DocumentsIngested(TEAM_ID, ids(2)))
        service.fetch_pending_documents.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sweep_all_covers_every_team(self, dispatcher, service):
        other_team = "9b2d7e15-3c4a-4d8e-b1f6-7a5e2c9d0f22"
        service.teams_with_pending_documents.return_value = [TEAM_ID, other_team]
        service.fetch_pending_documents.return_value = list(ids(2))

        dispatched = await dispatcher.sweep_all()

        assert dispatched == 2
        assert service.fetch_pending_documents.await_count == 2

    @pytest.mark.asyncio
    async def test_run_sweeps_stops_on_event(self, dispatcher, service):
        stop_event = asyncio.Event()

        async def teams():
            stop_event.set()
            return []

        service.teams_with_pending_documents.side_effect = teams

        await asyncio.wait_for(dispatcher.run_sweeps(0.01, stop_event), timeout=1)
        service.teams_with_pending_documents.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_sweeps_survives_errors(self, dispatcher, service):
        stop_event = asyncio.Event()
        calls = []

        async def teams():
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("store unavailable")
            stop_event.set()
            return []

        service.teams_with_pending_documents.side_effect = teams

        await asyncio.wait_for(dispatcher.run_sweeps(0.01, stop_event), timeout=1)
        assert len(calls) == 2
