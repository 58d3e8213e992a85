"""
Recon Core - Runtime wiring

Builds the objects the API and the worker share: matching engine and
service, job registry, store, queue and dispatcher. Built once per process
and passed around explicitly.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Settings
from database.connection import get_session_factory
from jobs.matching_jobs import build_registry
from jobs.queue import JobQueue
from jobs.registry import JobRegistry, QueueConfig
from jobs.store import JobStore
from reconciliation.dispatcher import SmartMatchingDispatcher
from reconciliation.engine import MatchingEngine
from reconciliation.services.matching_service import MatchingService


@dataclass
class MatchingRuntime:
    settings: Settings
    session_factory: async_sessionmaker
    engine: MatchingEngine
    service: MatchingService
    registry: JobRegistry
    store: JobStore
    queue: JobQueue
    dispatcher: SmartMatchingDispatcher

    @property
    def queue_name(self) -> str:
        return self.settings.MATCHING_QUEUE_NAME


def build_runtime(
    settings: Settings,
    session_factory: Optional[async_sessionmaker] = None,
    engine: Optional[MatchingEngine] = None,
) -> MatchingRuntime:
    session_factory = session_factory or get_session_factory()
    engine = engine or MatchingEngine.from_settings(settings)

    service = MatchingService(
        session_factory,
        engine,
        sweep_page_size=settings.SWEEP_PAGE_SIZE,
    )
    registry = build_registry(
        service,
        QueueConfig.from_settings(
            settings,
            name=settings.MATCHING_QUEUE_NAME,
            concurrency=settings.MATCHING_QUEUE_CONCURRENCY,
        ),
    )
    store = JobStore(session_factory)
    queue = JobQueue(registry, store)
    dispatcher = SmartMatchingDispatcher.from_settings(settings, queue, service)

    return MatchingRuntime(
        settings=settings,
        session_factory=session_factory,
        engine=engine,
        service=service,
        registry=registry,
        store=store,
        queue=queue,
        dispatcher=dispatcher,
    )
