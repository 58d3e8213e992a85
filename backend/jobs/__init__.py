"""
Task Queue Runtime

Named queues of typed jobs, persisted in queue_jobs and executed by
QueueWorker with retries, backoff, retention and per-queue concurrency.
"""

from jobs.errors import (
    MatchingError,
    PayloadValidationError,
    AnchorNotFoundError,
    RegistryError,
    QueueNotRegisteredError,
    DuplicateRegistrationError,
    JobTimeoutError,
    StaleMatchError,
    ReviewError,
)
from jobs.schemas import JobType, JobStatus
from jobs.registry import JobRegistry, JobDefinition, QueueConfig
from jobs.store import JobStore, JobRecord
from jobs.queue import JobQueue
from jobs.worker import QueueWorker

__all__ = [
    # Errors
    'MatchingError',
    'PayloadValidationError',
    'AnchorNotFoundError',
    'RegistryError',
    'QueueNotRegisteredError',
    'DuplicateRegistrationError',
    'JobTimeoutError',
    'StaleMatchError',
    'ReviewError',
    # Runtime
    'JobType',
    'JobStatus',
    'JobRegistry',
    'JobDefinition',
    'QueueConfig',
    'JobStore',
    'JobRecord',
    'JobQueue',
    'QueueWorker',
]
