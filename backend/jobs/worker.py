"""
Queue Worker

Polls one named queue and executes its jobs.

Features:
- Per-queue concurrency limit (asyncio.Semaphore)
- Payload validation at the deserialisation boundary (no retry on failure)
- Maximum job duration; a timed out job counts as a failed attempt
- Retries with exponential backoff (2s, 4s, ...)
- Retention pruning of completed and failed jobs
- Recovery of jobs left active by a dead worker
"""

import asyncio
import logging
import time
from collections import Counter
from typing import Optional, Set

from jobs.errors import JobTimeoutError, PayloadValidationError, QueueNotRegisteredError
from jobs.registry import JobRegistry
from jobs.schemas import JobStatus
from jobs.store import JobRecord, JobStore
from logging_config import clear_job_context, set_job_context
from sentry_integration import capture_job_failure

logger = logging.getLogger(__name__)


class QueueWorker:
    """
    Background worker for one queue.

    process_once() claims as many due jobs as there are free slots and
    starts them; run_continuous() does that in a loop until stop().
    """

    def __init__(
        self,
        registry: JobRegistry,
        store: JobStore,
        queue_name: str,
        poll_interval: float = 1.0,
        prune_interval: float = 60.0,
    ):
        self.registry = registry
        self.store = store
        self.queue_name = queue_name
        self.config = registry.queue_config(queue_name)
        self.poll_interval = poll_interval
        self.prune_interval = prune_interval

        self._semaphore = asyncio.Semaphore(self.config.concurrency)
        self._in_flight: Set[asyncio.Task] = set()
        self._running = False
        self._last_prune: Optional[float] = None
        self.stats: Counter = Counter()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    # ==================== POLLING ====================

    async def process_once(self) -> int:
        """
        Claim due jobs up to the free concurrency and start them.

        Returns:
            Number of jobs started
        """
        free_slots = self.config.concurrency - len(self._in_flight)
        if free_slots <= 0:
            return 0

        jobs = await self.store.claim_next(self.queue_name, free_slots)
        for job in jobs:
            task = asyncio.create_task(self.execute(job))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        return len(jobs)

    async def drain(self):
        """Wait for every started job to finish."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def prune(self) -> int:
        removed = await self.store.prune(
            self.queue_name,
            JobStatus.COMPLETED,
            keep_count=self.config.keep_completed_count,
            keep_seconds=self.config.keep_completed_seconds,
        )
        removed += await self.store.prune(
            self.queue_name,
            JobStatus.FAILED,
            keep_count=self.config.keep_failed_count,
            keep_seconds=self.config.keep_failed_seconds,
        )
        self._last_prune = time.monotonic()
        return removed

    async def run_continuous(self):
        """
        Run the worker until stop() is called.
        """
        self._running = True
        logger.info(
            f"Starting queue worker (queue={self.queue_name}, "
            f"concurrency={self.config.concurrency}, poll_interval={self.poll_interval}s)"
        )

        await self.store.requeue_stalled(
            self.queue_name,
            stalled_seconds=self.config.max_duration_seconds * 2,
        )

        try:
            while self._running:
                started = 0
                try:
                    started = await self.process_once()
                    if self._last_prune is None or time.monotonic() - self._last_prune >= self.prune_interval:
                        await self.prune()
                except Exception as e:
                    logger.error(f"Worker error: {e}")

                if not started:
                    await asyncio.sleep(self.poll_interval)
        finally:
            await self.drain()
            logger.info(f"Queue worker stopped ({dict(self.stats)})")

    def stop(self):
        """Stop the continuous worker after the in-flight jobs finish."""
        self._running = False
        logger.info("Queue worker stopping...")

    # ==================== EXECUTION ====================

    async def execute(self, job: JobRecord) -> JobStatus:
        """Run one claimed job and record its outcome."""
        async with self._semaphore:
            set_job_context(job_id=job.id, job_type=job.job_type, team_id=job.payload.get("team_id"))
            try:
                return await self._execute(job)
            finally:
                clear_job_context()

    async def _execute(self, job: JobRecord) -> JobStatus:
        self.stats["processed"] += 1
        try:
            definition = self.registry.resolve(job.job_type)
            payload = definition.parse_payload(job.payload)
            result = await asyncio.wait_for(
                definition.handler(payload),
                timeout=self.config.max_duration_seconds,
            )
        except (PayloadValidationError, QueueNotRegisteredError) as e:
            await self._fail_terminal(job, e)
            return JobStatus.FAILED
        except asyncio.TimeoutError:
            return await self._fail_attempt(job, JobTimeoutError(job.id, self.config.max_duration_seconds))
        except Exception as e:
            return await self._fail_attempt(job, e)

        await self.store.complete(job.id, result)
        self.stats["completed"] += 1
        logger.info(
            f"Job {job.job_type} completed (attempt {job.attempts_made}/{job.max_attempts})",
            extra={"job_result": result}
        )
        return JobStatus.COMPLETED

    async def _fail_attempt(self, job: JobRecord, error: BaseException) -> JobStatus:
        if job.attempts_made >= job.max_attempts:
            await self._fail_terminal(job, error)
            return JobStatus.FAILED

        delay = self.config.backoff_delay(job.attempts_made)
        await self.store.schedule_retry(job.id, _describe(error), delay)
        self.stats["retried"] += 1
        logger.warning(
            f"Job {job.job_type} failed (attempt {job.attempts_made}/{job.max_attempts}), "
            f"retry in {delay}s: {_describe(error)}"
        )
        return JobStatus.WAITING

    async def _fail_terminal(self, job: JobRecord, error: BaseException):
        await self.store.fail(job.id, _describe(error))
        self.stats["failed"] += 1
        logger.error(
            f"Job {job.job_type} failed permanently after {job.attempts_made} attempt(s): {_describe(error)}"
        )
        capture_job_failure(
            error,
            job_id=job.id,
            job_type=job.job_type,
            queue_name=job.queue_name,
            attempts_made=job.attempts_made,
        )


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"[:1000]
