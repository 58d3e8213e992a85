"""
Matching Worker

Standalone process that executes the matching queue and runs the periodic
sweep of pending documents.

Usage:
- python -m worker   (from backend/)
- recon-worker       (console script)

Exits with status 1 when the database is unreachable at startup.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from config import Settings, get_settings
from database import create_tables, dispose_engine, init_db
from jobs.worker import QueueWorker
from logging_config import setup_logging
from runtime import MatchingRuntime, build_runtime
from sentry_integration import init_sentry

logger = logging.getLogger(__name__)


async def run_worker(settings: Optional[Settings] = None, runtime: Optional[MatchingRuntime] = None):
    """Run the matching worker until SIGINT/SIGTERM."""
    settings = settings or get_settings()

    if runtime is None:
        await init_db()
        if settings.is_development:
            await create_tables()
        runtime = build_runtime(settings)

    worker = QueueWorker(
        runtime.registry,
        runtime.store,
        runtime.queue_name,
        poll_interval=settings.WORKER_POLL_INTERVAL_SECONDS,
    )
    stop_event = asyncio.Event()

    def shutdown():
        worker.stop()
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown)
        except NotImplementedError:
            # Windows event loops
            pass

    tasks = [worker.run_continuous()]
    if settings.SWEEP_INTERVAL_SECONDS > 0:
        tasks.append(runtime.dispatcher.run_sweeps(settings.SWEEP_INTERVAL_SECONDS, stop_event))

    try:
        await asyncio.gather(*tasks)
    finally:
        await dispose_engine()


def main():
    settings = get_settings()
    setup_logging(
        level=settings.LOG_LEVEL,
        json_format=settings.LOG_JSON,
        service_name=f"{settings.SERVICE_NAME}-worker"
    )
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT)

    try:
        asyncio.run(run_worker(settings))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error(f"Matching worker failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
