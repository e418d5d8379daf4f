"""Celery queue backend.

Each job gets a ``queue_jobs`` row first, then a broker message carrying
only the job id. The worker task (``worker.tasks.workflow``) keeps the
row's lifecycle up to date, so stats and job lookups read the table and
never touch the broker.
"""

import logging
from typing import Optional

from kombu.exceptions import OperationalError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings, get_settings
from core.constants import JobStatus
from core.exceptions import InfrastructureError
from db.models.queue_job import QueueJobRecord
from worker.queue import QueueJob, QueueStats

logger = logging.getLogger(__name__)


def record_to_dict(record: QueueJobRecord) -> dict:
    return {
        "job_id": record.id,
        "workflow_id": record.workflow_id,
        "trigger_type": record.trigger_type,
        "priority": record.priority,
        "status": record.status,
        "attempts_made": record.attempts_made,
        "max_attempts": record.max_attempts,
        "error": record.error,
        "failed_step_id": record.failed_step_id,
        "result": record.result,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "finished_at": record.finished_at.isoformat() if record.finished_at else None,
    }


def record_to_job(record: QueueJobRecord) -> QueueJob:
    return QueueJob(
        job_id=record.id,
        workflow_id=record.workflow_id,
        user_id=record.user_id,
        organization_id=record.organization_id,
        trigger_type=record.trigger_type,
        payload=record.payload or {},
        priority=record.priority,
    )


class CeleryQueueBackend:
    """Queue backend that hands jobs to Celery workers over Redis."""

    def __init__(self, session_factory: async_sessionmaker, settings: Optional[Settings] = None):
        self._session_factory = session_factory
        self.settings = settings or get_settings()

    async def enqueue(self, job: QueueJob) -> str:
        from worker.tasks.workflow import execute_queue_job

        async with self._session_factory() as session:
            record = QueueJobRecord(
                id=job.job_id,
                workflow_id=job.workflow_id,
                user_id=job.user_id,
                organization_id=job.organization_id,
                trigger_type=job.trigger_type.value,
                payload=job.payload,
                priority=job.priority,
                status=(JobStatus.DELAYED if job.delay > 0 else JobStatus.WAITING).value,
                max_attempts=self.settings.QUEUE_MAX_ATTEMPTS,
            )
            session.add(record)
            await session.commit()

        try:
            execute_queue_job.apply_async(
                args=[job.job_id],
                countdown=job.delay or None,
                priority=max(0, min(int(job.priority), 9)),
                queue=self.settings.QUEUE_NAME,
            )
        except (OperationalError, OSError) as e:
            # Nobody will ever pick the row up
            async with self._session_factory() as session:
                stale = await session.get(QueueJobRecord, job.job_id)
                if stale is not None:
                    await session.delete(stale)
                    await session.commit()
            raise InfrastructureError(f"Celery broker unavailable: {e}") from e

        return job.job_id

    async def stats(self) -> QueueStats:
        async with self._session_factory() as session:
            result = await session.execute(
                select(QueueJobRecord.status, func.count()).group_by(QueueJobRecord.status)
            )
            counts = {status: count for status, count in result.all()}
        return QueueStats(**{s.value: counts.get(s.value, 0) for s in JobStatus})

    async def get_job(self, job_id: str) -> Optional[dict]:
        async with self._session_factory() as session:
            record = await session.get(QueueJobRecord, job_id)
            return record_to_dict(record) if record is not None else None

    async def close(self, grace: Optional[float] = None) -> None:
        # Workers are separate processes with their own warm shutdown
        return None
