"""
Integration Tests for the Task Queue Runtime

Runs the job store, queue and worker against a SQLite database.

Tests:
- Enqueue and queue depth
- Successful execution and stored results
- Retries with backoff, terminal failure after the last attempt
- Non-retryable payload validation failures
- Maximum job duration
- Store errors inside batch and bidirectional jobs
- Per-queue concurrency
- Retention pruning, stalled job recovery, manual retry

Run with: pytest backend/tests/test_queue_runtime.py -v
"""

import asyncio
import uuid
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from jobs.errors import AnchorNotFoundError, PayloadValidationError, QueueNotRegisteredError
from jobs.matching_jobs import build_registry
from jobs.queue import JobQueue
from jobs.registry import JobRegistry, QueueConfig
from jobs.schemas import (
    BatchMatchingPayload,
    BidirectionalMatchingPayload,
    DocumentMatchingPayload,
    JobStatus,
    JobType,
)
from jobs.store import JobStore
from jobs.worker import QueueWorker
from reconciliation.engine import MatchingEngine
from reconciliation.services.matching_service import MatchingService

TEAM_ID = "5f0c6a52-8f0e-4f43-9a43-0d6a3f3b2c11"
QUEUE = "transaction-matching"


def document_payload():
    return DocumentMatchingPayload(team_id=TEAM_ID, document_id=str(uuid.uuid4()))


def build(session_factory, handler, **config):
    registry = JobRegistry()
    registry.register_queue(QueueConfig(name=QUEUE, **config))
    registry.register(JobType.PROCESS_DOCUMENT_MATCHING, QUEUE, DocumentMatchingPayload, handler)
    store = JobStore(session_factory)
    return registry, store, JobQueue(registry, store)


async def run_once(worker):
    started = await worker.process_once()
    await worker.drain()
    return started


class TestEnqueue:
    """Enqueue side and queue depth."""

    @pytest.mark.asyncio
    async def test_enqueue_persists_waiting_job(self, session_factory):
        registry, store, queue = build(session_factory, AsyncMock(return_value={}))

        job_id = await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, document_payload())

        job = await store.get_job(job_id)
        assert job.status == JobStatus.WAITING
        assert job.queue_name == QUEUE
        assert job.max_attempts == 3
        assert job.payload["team_id"] == TEAM_ID

        stats = await queue.get_queue_stats(QUEUE)
        assert stats["concurrency"] == 20
        assert stats["counts"]["waiting"] == 1
        assert stats["counts"]["total"] == 1

    @pytest.mark.asyncio
    async def test_unregistered_job_type_writes_nothing(self, session_factory):
        registry, store, queue = build(session_factory, AsyncMock(return_value={}))
        payload = BatchMatchingPayload(team_id=TEAM_ID, document_ids=[str(uuid.uuid4())])

        with pytest.raises(QueueNotRegisteredError):
            await queue.enqueue_many([
                (JobType.PROCESS_DOCUMENT_MATCHING, document_payload()),
                (JobType.BATCH_PROCESS_MATCHING, payload),
            ])

        assert (await store.get_stats(QUEUE))["total"] == 0

    @pytest.mark.asyncio
    async def test_wrong_payload_model_rejected(self, session_factory):
        registry, store, queue = build(session_factory, AsyncMock(return_value={}))
        payload = BatchMatchingPayload(team_id=TEAM_ID, document_ids=[str(uuid.uuid4())])

        with pytest.raises(PayloadValidationError):
            await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, payload)

    @pytest.mark.asyncio
    async def test_unknown_queue_stats(self, session_factory):
        registry, store, queue = build(session_factory, AsyncMock(return_value={}))

        with pytest.raises(QueueNotRegisteredError):
            await queue.get_queue_stats("document-ocr")


class TestWorkerExecution:
    """Job execution outcomes."""

    @pytest.mark.asyncio
    async def test_successful_job_is_completed(self, session_factory):
        handler = AsyncMock(return_value={"action": "auto_matched"})
        registry, store, queue = build(session_factory, handler)
        payload = document_payload()
        job_id = await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, payload)

        worker = QueueWorker(registry, store, QUEUE)
        assert await run_once(worker) == 1

        job = await store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"action": "auto_matched"}
        assert job.attempts_made == 1
        handler.assert_awaited_once_with(payload)
        assert worker.stats["completed"] == 1

    @pytest.mark.asyncio
    async def test_failed_attempt_is_delayed_by_backoff(self, session_factory):
        handler = AsyncMock(side_effect=ConnectionError("store timeout"))
        registry, store, queue = build(session_factory, handler)
        job_id = await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, document_payload())

        worker = QueueWorker(registry, store, QUEUE)
        await run_once(worker)

        job = await store.get_job(job_id)
        assert job.status == JobStatus.WAITING
        assert job.attempts_made == 1
        assert "ConnectionError" in job.last_error

        # First retry waits 2 seconds
        assert (await store.get_stats(QUEUE))["delayed"] == 1
        assert await worker.process_once() == 0

    @pytest.mark.asyncio
    async def test_terminal_failure_after_last_attempt(self, session_factory):
        handler = AsyncMock(side_effect=ConnectionError("store timeout"))
        registry, store, queue = build(session_factory, handler, backoff_seconds=0.0)
        job_id = await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, document_payload())

        worker = QueueWorker(registry, store, QUEUE)
        with patch("jobs.worker.capture_job_failure") as capture:
            for _ in range(3):
                assert await run_once(worker) == 1
            assert await run_once(worker) == 0

        job = await store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts_made == 3
        assert handler.await_count == 3
        capture.assert_called_once()
        assert worker.stats["retried"] == 2
        assert worker.stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_retry_succeeds_on_second_attempt(self, session_factory):
        handler = AsyncMock(side_effect=[ConnectionError("blip"), {"action": "no_match"}])
        registry, store, queue = build(session_factory, handler, backoff_seconds=0.0)
        job_id = await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, document_payload())

        worker = QueueWorker(registry, store, QUEUE)
        await run_once(worker)
        await run_once(worker)

        job = await store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempts_made == 2

    @pytest.mark.asyncio
    async def test_invalid_payload_is_not_retried(self, session_factory):
        handler = AsyncMock(return_value={})
        registry, store, queue = build(session_factory, handler)
        job_id = await store.add(
            QUEUE, JobType.PROCESS_DOCUMENT_MATCHING.value,
            {"team_id": TEAM_ID, "document_id": "not-a-uuid"}, max_attempts=3,
        )

        worker = QueueWorker(registry, store, QUEUE)
        with patch("jobs.worker.capture_job_failure"):
            await run_once(worker)

        job = await store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts_made == 1
        assert "PayloadValidationError" in job.last_error
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_anchor_not_found_is_not_retried(self, session_factory):
        handler = AsyncMock(side_effect=AnchorNotFoundError("document", "d-1", TEAM_ID))
        registry, store, queue = build(session_factory, handler)
        job_id = await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, document_payload())

        worker = QueueWorker(registry, store, QUEUE)
        with patch("jobs.worker.capture_job_failure"):
            await run_once(worker)

        job = await store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts_made == 1

    @pytest.mark.asyncio
    async def test_job_exceeding_max_duration_counts_as_attempt(self, session_factory):
        async def slow(payload):
            await asyncio.sleep(5)
            return {}

        registry, store, queue = build(session_factory, slow, max_duration_seconds=0.05, attempts=1)
        job_id = await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, document_payload())

        worker = QueueWorker(registry, store, QUEUE)
        with patch("jobs.worker.capture_job_failure"):
            await run_once(worker)

        job = await store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert "JobTimeoutError" in job.last_error

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, session_factory):
        release = asyncio.Event()

        async def blocked(payload):
            await release.wait()
            return {}

        registry, store, queue = build(session_factory, blocked, concurrency=2)
        for _ in range(5):
            await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, document_payload())

        worker = QueueWorker(registry, store, QUEUE)
        assert await worker.process_once() == 2
        assert await worker.process_once() == 0
        assert worker.in_flight == 2

        release.set()
        await worker.drain()
        assert await worker.process_once() == 2
        await worker.drain()

        stats = await store.get_stats(QUEUE)
        assert stats["completed"] == 4
        assert stats["waiting"] == 1

    @pytest.mark.asyncio
    async def test_run_continuous_until_stopped(self, session_factory):
        handler = AsyncMock(return_value={})
        registry, store, queue = build(session_factory, handler)
        for _ in range(3):
            await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, document_payload())

        worker = QueueWorker(registry, store, QUEUE, poll_interval=0.01)
        task = asyncio.create_task(worker.run_continuous())
        for _ in range(200):
            if (await store.get_stats(QUEUE))["completed"] == 3:
                break
            await asyncio.sleep(0.01)
        worker.stop()
        await asyncio.wait_for(task, timeout=2)

        assert handler.await_count == 3


class TestRetentionAndRecovery:
    """Pruning, stalled jobs and manual retry."""

    @pytest.mark.asyncio
    async def test_prune_keeps_newest_completed(self, session_factory):
        registry, store, queue = build(session_factory, AsyncMock(return_value={}))
        for _ in range(5):
            job_id = await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, document_payload())
            await store.claim_next(QUEUE, 1)
            await store.complete(job_id, {})

        removed = await store.prune(QUEUE, JobStatus.COMPLETED, keep_count=2, keep_seconds=3600)

        assert removed == 3
        assert (await store.get_stats(QUEUE))["completed"] == 2

    @pytest.mark.asyncio
    async def test_prune_by_age(self, session_factory):
        registry, store, queue = build(session_factory, AsyncMock(return_value={}))
        job_id = await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, document_payload())
        await store.claim_next(QUEUE, 1)
        await store.fail(job_id, "boom")
        await asyncio.sleep(0.01)

        assert await store.prune(QUEUE, JobStatus.FAILED, keep_count=50, keep_seconds=0) == 1
        assert await store.get_job(job_id) is None

    @pytest.mark.asyncio
    async def test_prune_leaves_waiting_jobs(self, session_factory):
        registry, store, queue = build(session_factory, AsyncMock(return_value={}))
        await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, document_payload())

        worker = QueueWorker(registry, store, QUEUE)
        await worker.prune()

        assert (await store.get_stats(QUEUE))["waiting"] == 1

    @pytest.mark.asyncio
    async def test_stalled_active_job_is_requeued(self, session_factory):
        registry, store, queue = build(session_factory, AsyncMock(return_value={}))
        job_id = await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, document_payload())
        await store.claim_next(QUEUE, 1)

        # Negative threshold: everything active counts as stalled
        assert await store.requeue_stalled(QUEUE, stalled_seconds=-1) == 1

        job = await store.get_job(job_id)
        assert job.status == JobStatus.WAITING
        assert job.attempts_made == 1

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, session_factory):
        registry, store, queue = build(session_factory, AsyncMock(return_value={}))
        await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, document_payload())

        first, second = await asyncio.gather(store.claim_next(QUEUE, 5), store.claim_next(QUEUE, 5))

        assert len(first) + len(second) == 1

    @pytest.mark.asyncio
    async def test_manual_retry_of_failed_job(self, session_factory):
        registry, store, queue = build(session_factory, AsyncMock(return_value={}))
        job_id = await queue.enqueue(JobType.PROCESS_DOCUMENT_MATCHING, document_payload())
        await store.claim_next(QUEUE, 1)
        await store.fail(job_id, "ConnectionError: store timeout")

        failed = await queue.get_failed_jobs(QUEUE)
        assert [job["id"] for job in failed] == [job_id]
        assert failed[0]["last_error"] == "ConnectionError: store timeout"

        assert await queue.retry_failed_job(job_id) is True
        assert await queue.retry_failed_job(job_id) is False

        job = await store.get_job(job_id)
        assert job.status == JobStatus.WAITING
        assert job.attempts_made == 0


class TestMultiAnchorJobs:
    """Batch and bidirectional jobs running the matching handlers."""

    @pytest.fixture
    def matching(self, session_factory):
        service = MatchingService(session_factory, MatchingEngine())
        registry = build_registry(service, QueueConfig(name=QUEUE))
        store = JobStore(session_factory)
        return registry, store, JobQueue(registry, store)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("job_type,payload", [
        (
            JobType.BATCH_PROCESS_MATCHING,
            BatchMatchingPayload(team_id=TEAM_ID, document_ids=[str(uuid.uuid4())]),
        ),
        (
            JobType.MATCH_TRANSACTIONS_BIDIRECTIONAL,
            BidirectionalMatchingPayload(team_id=TEAM_ID, new_transaction_ids=[str(uuid.uuid4())]),
        ),
    ])
    async def test_store_error_schedules_retry(self, matching, job_type, payload):
        registry, store, queue = matching
        job_id = await queue.enqueue(job_type, payload)
        lost = OperationalError("SELECT 1", {}, ConnectionResetError("connection reset"))

        worker = QueueWorker(registry, store, QUEUE)
        with patch.object(MatchingService, "_match_anchor", AsyncMock(side_effect=lost)):
            await run_once(worker)

        job = await store.get_job(job_id)
        assert job.status == JobStatus.WAITING
        assert job.attempts_made == 1
        assert job.result is None
        assert "OperationalError" in job.last_error
        assert (await store.get_stats(QUEUE))["delayed"] == 1
        assert worker.stats["retried"] == 1

    @pytest.mark.asyncio
    async def test_missing_document_completes_with_error_entry(self, matching):
        registry, store, queue = matching
        missing = str(uuid.uuid4())
        job_id = await queue.enqueue(
            JobType.BATCH_PROCESS_MATCHING,
            BatchMatchingPayload(team_id=TEAM_ID, document_ids=[missing]),
        )

        worker = QueueWorker(registry, store, QUEUE)
        await run_once(worker)

        job = await store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result["processed"] == 0
        assert job.result["errors"][0]["id"] == missing
        assert "AnchorNotFoundError" in job.result["errors"][0]["error"]
