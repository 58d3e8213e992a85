"""
Job Queue

Enqueue side of the task queue runtime plus the operator view
(queue depth, failed jobs, manual retry).
"""

import asyncio
import logging
from typing import Any, Dict, List, Sequence, Tuple, Union

from jobs.errors import PayloadValidationError
from jobs.registry import JobRegistry
from jobs.schemas import JobPayload, JobType
from jobs.store import JobStore

logger = logging.getLogger(__name__)


class JobQueue:
    """
    Resolves each job type to its queue through the registry and persists
    the job. Unknown job types raise QueueNotRegisteredError before
    anything is written.
    """

    def __init__(self, registry: JobRegistry, store: JobStore):
        self.registry = registry
        self.store = store

    async def enqueue(self, job_type: Union[JobType, str], payload: JobPayload) -> str:
        definition = self.registry.resolve(job_type)
        if not isinstance(payload, definition.payload_model):
            raise PayloadValidationError(
                definition.job_type,
                f"expected {definition.payload_model.__name__}, got {type(payload).__name__}"
            )

        config = self.registry.queue_config(definition.queue_name)
        job_id = await self.store.add(
            queue_name=definition.queue_name,
            job_type=definition.job_type,
            payload=payload.model_dump(mode="json"),
            max_attempts=config.attempts,
        )
        logger.info(
            f"Enqueued {definition.job_type} on {definition.queue_name}",
            extra={"enqueued_job_id": job_id, "queue": definition.queue_name}
        )
        return job_id

    async def enqueue_many(self, jobs: Sequence[Tuple[Union[JobType, str], JobPayload]]) -> List[str]:
        """Enqueue several jobs concurrently. Every job type is resolved first."""
        for job_type, _ in jobs:
            self.registry.resolve(job_type)
        return list(await asyncio.gather(*(self.enqueue(job_type, payload) for job_type, payload in jobs)))

    # ==================== OPERATOR VIEW ====================

    async def get_queue_stats(self, queue_name: str) -> Dict[str, Any]:
        config = self.registry.queue_config(queue_name)
        counts = await self.store.get_stats(queue_name)
        return {
            "queue": queue_name,
            "concurrency": config.concurrency,
            "counts": counts,
        }

    async def get_failed_jobs(self, queue_name: str, limit: int = 50) -> List[Dict[str, Any]]:
        self.registry.queue_config(queue_name)
        jobs = await self.store.get_failed(queue_name, limit)
        return [job.to_dict() for job in jobs]

    async def retry_failed_job(self, job_id: str, retried_by: str = "operator") -> bool:
        retried = await self.store.retry_failed(job_id)
        if retried:
            logger.info(f"Failed job {job_id} re-queued by {retried_by}")
        return retried
