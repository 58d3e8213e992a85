"""
Job Store

Persistence for the task queue runtime (queue_jobs table).

Job state machine:
    waiting -> active -> completed
                      -> failed
                      -> waiting   (failed attempt with attempts left, delayed by backoff)

Every transition is a conditional update on the expected current status, so
two workers polling the same queue never run the same job.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from database.matching_models import QueueJobDB, generate_uuid
from jobs.schemas import JobStatus

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class JobRecord:
    """
    A job row as seen by the worker and the operator view.
    """
    id: str
    queue_name: str
    job_type: str
    payload: Dict[str, Any]
    status: JobStatus
    attempts_made: int
    max_attempts: int
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: QueueJobDB) -> "JobRecord":
        return cls(
            id=row.id,
            queue_name=row.queue_name,
            job_type=row.job_type,
            payload=row.payload or {},
            status=JobStatus(row.status),
            attempts_made=row.attempts_made,
            max_attempts=row.max_attempts,
            last_error=row.last_error,
            result=row.result,
            created_at=row.created_at,
            finished_at=row.finished_at,
        )

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempts_made)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue_name": self.queue_name,
            "job_type": self.job_type,
            "payload": self.payload,
            "status": self.status.value,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "created_at": _format_datetime(self.created_at),
            "finished_at": _format_datetime(self.finished_at),
        }


class JobStore:
    """
    Queue operations over the queue_jobs table. Each call runs in its own
    short database transaction.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ==================== ENQUEUE ====================

    async def add(
        self,
        queue_name: str,
        job_type: str,
        payload: Dict[str, Any],
        max_attempts: int,
        delay_seconds: float = 0,
    ) -> str:
        job_ids = await self.add_bulk([(queue_name, job_type, payload, max_attempts)], delay_seconds)
        return job_ids[0]

    async def add_bulk(
        self,
        jobs: Sequence[Tuple[str, str, Dict[str, Any], int]],
        delay_seconds: float = 0,
    ) -> List[str]:
        """Insert (queue_name, job_type, payload, max_attempts) tuples as waiting jobs."""
        now = utc_now()
        rows = [
            QueueJobDB(
                id=generate_uuid(),
                queue_name=queue_name,
                job_type=job_type,
                payload=payload,
                status=JobStatus.WAITING.value,
                attempts_made=0,
                max_attempts=max_attempts,
                run_at=now + timedelta(seconds=delay_seconds),
                created_at=now,
            )
            for queue_name, job_type, payload, max_attempts in jobs
        ]
        async with self.session_factory() as session:
            async with session.begin():
                session.add_all(rows)
        return [row.id for row in rows]

    # ==================== WORKER TRANSITIONS ====================

    async def claim_next(self, queue_name: str, limit: int) -> List[JobRecord]:
        """
        Move up to `limit` due jobs from waiting to active.

        A job is only claimed if it is still waiting at update time.
        """
        if limit <= 0:
            return []

        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(QueueJobDB.id)
                    .where(
                        QueueJobDB.queue_name == queue_name,
                        QueueJobDB.status == JobStatus.WAITING.value,
                        QueueJobDB.run_at <= now,
                    )
                    .order_by(QueueJobDB.run_at, QueueJobDB.created_at)
                    .limit(limit)
                )
                candidate_ids = list(result.scalars().all())

                claimed_ids = []
                for job_id in candidate_ids:
                    claim = await session.execute(
                        update(QueueJobDB)
                        .where(
                            QueueJobDB.id == job_id,
                            QueueJobDB.status == JobStatus.WAITING.value,
                        )
                        .values(
                            status=JobStatus.ACTIVE.value,
                            started_at=now,
                            attempts_made=QueueJobDB.attempts_made + 1,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if claim.rowcount == 1:
                        claimed_ids.append(job_id)

                if not claimed_ids:
                    return []

                rows = await session.execute(
                    select(QueueJobDB).where(QueueJobDB.id.in_(claimed_ids))
                )
                by_id = {row.id: JobRecord.from_row(row) for row in rows.scalars().all()}

        return [by_id[job_id] for job_id in claimed_ids if job_id in by_id]

    async def complete(self, job_id: str, result: Optional[Dict[str, Any]]) -> bool:
        return await self._finish(job_id, {
            "status": JobStatus.COMPLETED.value,
            "finished_at": utc_now(),
            "result": result,
        })

    async def fail(self, job_id: str, error: str) -> bool:
        """Terminal failure: no attempts left or not retryable."""
        return await self._finish(job_id, {
            "status": JobStatus.FAILED.value,
            "finished_at": utc_now(),
            "last_error": error,
        })

    async def schedule_retry(self, job_id: str, error: str, delay_seconds: float) -> bool:
        """Failed attempt with attempts left: back to waiting after the backoff delay."""
        return await self._finish(job_id, {
            "status": JobStatus.WAITING.value,
            "run_at": utc_now() + timedelta(seconds=delay_seconds),
            "started_at": None,
            "last_error": error,
        })

    async def _finish(self, job_id: str, values: Dict[str, Any]) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(QueueJobDB)
                    .where(
                        QueueJobDB.id == job_id,
                        QueueJobDB.status == JobStatus.ACTIVE.value,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount == 0:
            logger.warning(f"Job {job_id} was no longer active, transition to {values['status']} skipped")
        return result.rowcount > 0

    async def requeue_stalled(self, queue_name: str, stalled_seconds: float) -> int:
        """
        Recover jobs left active by a worker that died.

        The lost run already counted as an attempt; jobs without attempts
        left are failed instead of requeued.
        """
        now = utc_now()
        cutoff = now - timedelta(seconds=stalled_seconds)
        stalled = (
            QueueJobDB.queue_name == queue_name,
            QueueJobDB.status == JobStatus.ACTIVE.value,
            QueueJobDB.started_at < cutoff,
        )
        async with self.session_factory() as session:
            async with session.begin():
                exhausted = await session.execute(
                    update(QueueJobDB)
                    .where(*stalled, QueueJobDB.attempts_made >= QueueJobDB.max_attempts)
                    .values(
                        status=JobStatus.FAILED.value,
                        finished_at=now,
                        last_error="Job stalled: worker stopped before finishing",
                    )
                    .execution_options(synchronize_session=False)
                )
                requeued = await session.execute(
                    update(QueueJobDB)
                    .where(*stalled)
                    .values(status=JobStatus.WAITING.value, run_at=now, started_at=None)
                    .execution_options(synchronize_session=False)
                )

        if exhausted.rowcount or requeued.rowcount:
            logger.warning(
                f"Recovered stalled jobs on {queue_name}: "
                f"{requeued.rowcount} requeued, {exhausted.rowcount} failed"
            )
        return requeued.rowcount

    # ==================== RETENTION ====================

    async def prune(
        self,
        queue_name: str,
        status: JobStatus,
        keep_count: int,
        keep_seconds: int,
    ) -> int:
        """
        Delete finished jobs older than keep_seconds, then everything beyond
        the newest keep_count.
        """
        cutoff = utc_now() - timedelta(seconds=keep_seconds)
        same_bucket = (
            QueueJobDB.queue_name == queue_name,
            QueueJobDB.status == status.value,
        )
        newest = (
            select(QueueJobDB.id)
            .where(*same_bucket)
            .order_by(QueueJobDB.finished_at.desc(), QueueJobDB.id.desc())
            .limit(keep_count)
        )

        async with self.session_factory() as session:
            async with session.begin():
                by_age = await session.execute(
                    delete(QueueJobDB)
                    .where(*same_bucket, QueueJobDB.finished_at < cutoff)
                    .execution_options(synchronize_session=False)
                )
                by_count = await session.execute(
                    delete(QueueJobDB)
                    .where(*same_bucket, QueueJobDB.id.not_in(newest))
                    .execution_options(synchronize_session=False)
                )

        removed = by_age.rowcount + by_count.rowcount
        if removed:
            logger.debug(f"Pruned {removed} {status.value} jobs from {queue_name}")
        return removed

    # ==================== OPERATOR VIEW ====================

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        async with self.session_factory() as session:
            result = await session.execute(select(QueueJobDB).where(QueueJobDB.id == job_id))
            row = result.scalar_one_or_none()
            return JobRecord.from_row(row) if row else None

    async def get_stats(self, queue_name: str) -> Dict[str, int]:
        """Job counts per status (queue depth)."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(QueueJobDB.status, func.count(QueueJobDB.id))
                .where(QueueJobDB.queue_name == queue_name)
                .group_by(QueueJobDB.status)
            )
            counts = {status: count for status, count in result.all()}

            delayed_result = await session.execute(
                select(func.count(QueueJobDB.id)).where(
                    QueueJobDB.queue_name == queue_name,
                    QueueJobDB.status == JobStatus.WAITING.value,
                    QueueJobDB.run_at > utc_now(),
                )
            )
            delayed = delayed_result.scalar() or 0

        stats = {status.value: counts.get(status.value, 0) for status in JobStatus}
        stats["delayed"] = delayed
        stats["total"] = sum(counts.values())
        return stats

    async def get_failed(self, queue_name: str, limit: int = 50) -> List[JobRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(QueueJobDB)
                .where(
                    QueueJobDB.queue_name == queue_name,
                    QueueJobDB.status == JobStatus.FAILED.value,
                )
                .order_by(QueueJobDB.finished_at.desc())
                .limit(limit)
            )
            return [JobRecord.from_row(row) for row in result.scalars().all()]

    async def retry_failed(self, job_id: str) -> bool:
        """Put a terminally failed job back on its queue with a fresh attempt budget."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(QueueJobDB)
                    .where(
                        QueueJobDB.id == job_id,
                        QueueJobDB.status == JobStatus.FAILED.value,
                    )
                    .values(
                        status=JobStatus.WAITING.value,
                        attempts_made=0,
                        run_at=utc_now(),
                        started_at=None,
                        finished_at=None,
                    )
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount > 0
