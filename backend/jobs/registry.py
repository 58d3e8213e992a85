"""
Job Registry

Maps every job type to exactly one named queue, its payload schema and its
handler. Built once at startup and passed to the dispatcher and the worker.

Resolution failures are configuration errors and raise immediately.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Type, Union

from pydantic import ValidationError

from jobs.errors import (
    DuplicateRegistrationError,
    PayloadValidationError,
    QueueNotRegisteredError,
)
from jobs.schemas import JobPayload, JobType

logger = logging.getLogger(__name__)

JobHandler = Callable[[Any], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class QueueConfig:
    """
    Per-queue runtime options.

    Completed and failed jobs are pruned by count and by age, whichever
    removes more.
    """
    name: str
    concurrency: int = 20
    attempts: int = 3
    backoff_seconds: float = 2.0
    max_duration_seconds: float = 180.0
    keep_completed_count: int = 50
    keep_completed_seconds: int = 24 * 3600
    keep_failed_count: int = 50
    keep_failed_seconds: int = 7 * 24 * 3600

    @classmethod
    def from_settings(cls, settings, name: str, concurrency: int) -> "QueueConfig":
        return cls(
            name=name,
            concurrency=concurrency,
            attempts=settings.JOB_ATTEMPTS,
            backoff_seconds=settings.JOB_BACKOFF_SECONDS,
            max_duration_seconds=settings.JOB_MAX_DURATION_SECONDS,
            keep_completed_count=settings.KEEP_COMPLETED_COUNT,
            keep_completed_seconds=settings.KEEP_COMPLETED_SECONDS,
            keep_failed_count=settings.KEEP_FAILED_COUNT,
            keep_failed_seconds=settings.KEEP_FAILED_SECONDS,
        )

    def backoff_delay(self, attempts_made: int) -> float:
        """Delay before the next attempt: 2s, 4s, 8s, ..."""
        return self.backoff_seconds * (2 ** max(0, attempts_made - 1))


@dataclass(frozen=True)
class JobDefinition:
    job_type: str
    queue_name: str
    payload_model: Type[JobPayload]
    handler: JobHandler

    def parse_payload(self, raw: Dict[str, Any]) -> JobPayload:
        """Validate a stored payload. Raises PayloadValidationError."""
        try:
            return self.payload_model.model_validate(raw)
        except ValidationError as e:
            raise PayloadValidationError(self.job_type, str(e)) from e


class JobRegistry:
    """
    Explicit registry of queues and job types.
    """

    def __init__(self):
        self._queues: Dict[str, QueueConfig] = {}
        self._definitions: Dict[str, JobDefinition] = {}

    def register_queue(self, config: QueueConfig) -> QueueConfig:
        if config.name in self._queues:
            raise DuplicateRegistrationError(f"Queue already registered: {config.name}")
        if config.concurrency < 1:
            raise ValueError(f"Queue {config.name} needs a concurrency of at least 1")
        self._queues[config.name] = config
        return config

    def register(
        self,
        job_type: Union[JobType, str],
        queue_name: str,
        payload_model: Type[JobPayload],
        handler: JobHandler,
    ) -> JobDefinition:
        key = _job_type_key(job_type)
        if key in self._definitions:
            raise DuplicateRegistrationError(f"Job type already registered: {key}")
        if queue_name not in self._queues:
            raise QueueNotRegisteredError(f"Queue {queue_name} not registered (job type {key})")

        definition = JobDefinition(
            job_type=key,
            queue_name=queue_name,
            payload_model=payload_model,
            handler=handler,
        )
        self._definitions[key] = definition
        logger.debug(f"Registered job type {key} on queue {queue_name}")
        return definition

    def resolve(self, job_type: Union[JobType, str]) -> JobDefinition:
        key = _job_type_key(job_type)
        try:
            return self._definitions[key]
        except KeyError:
            raise QueueNotRegisteredError(f"No queue registered for job type: {key}") from None

    def queue_config(self, queue_name: str) -> QueueConfig:
        try:
            return self._queues[queue_name]
        except KeyError:
            raise QueueNotRegisteredError(f"Queue not registered: {queue_name}") from None

    def queue_names(self) -> List[str]:
        return list(self._queues)

    def job_types(self, queue_name: str) -> List[str]:
        return [d.job_type for d in self._definitions.values() if d.queue_name == queue_name]


def _job_type_key(job_type: Union[JobType, str]) -> str:
    return job_type.value if isinstance(job_type, JobType) else job_type
