"""Celery tasks for maintenance and cleanup.

Scheduled by Celery beat (see ``celery_app.beat_schedule``):
1. Delete expired ephemeral storage records
2. Prune finished queue jobs past their retention window or count cap
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select

from app.config import get_settings
from core.constants import JobStatus
from db.models.queue_job import QueueJobRecord
from db.worker_session import worker_session_factory
from services.storage_service import EphemeralStorage
from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


def _run(coro):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@celery_app.task(
    name="worker.tasks.maintenance.cleanup_expired_storage",
    queue="default",
)
def cleanup_expired_storage():
    """Delete expired ephemeral storage records."""
    try:
        deleted = _run(_cleanup_storage())
        logger.info("Storage cleanup removed %s expired records", deleted)
        return {"deleted": deleted}
    except Exception as exc:
        logger.error("Storage cleanup failed: %s", exc, exc_info=True)
        return {"status": "error", "error": str(exc)}


async def _cleanup_storage() -> int:
    async with worker_session_factory() as session_factory:
        return await EphemeralStorage(session_factory).cleanup_expired()


@celery_app.task(
    name="worker.tasks.maintenance.prune_finished_jobs",
    queue="default",
)
def prune_finished_jobs():
    """Apply completed/failed job retention to the queue_jobs table."""
    try:
        stats = _run(_prune_jobs())
        logger.info("Queue job pruning completed: %s", stats)
        return stats
    except Exception as exc:
        logger.error("Queue job pruning failed: %s", exc, exc_info=True)
        return {"status": "error", "error": str(exc)}


async def _prune_jobs() -> dict:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    policies = {
        JobStatus.COMPLETED: (
            settings.QUEUE_COMPLETED_RETENTION_SECONDS,
            settings.QUEUE_COMPLETED_RETENTION_COUNT,
        ),
        JobStatus.FAILED: (
            settings.QUEUE_FAILED_RETENTION_SECONDS,
            settings.QUEUE_FAILED_RETENTION_COUNT,
        ),
    }
    stats = {}

    async with worker_session_factory() as session_factory:
        async with session_factory() as session:
            for status, (max_age, max_count) in policies.items():
                cutoff = now - timedelta(seconds=max_age)
                aged = await session.execute(
                    delete(QueueJobRecord).where(
                        QueueJobRecord.status == status.value,
                        QueueJobRecord.finished_at < cutoff,
                    )
                )

                keep = (
                    select(QueueJobRecord.id)
                    .where(QueueJobRecord.status == status.value)
                    .order_by(QueueJobRecord.finished_at.desc())
                    .limit(max_count)
                )
                capped = await session.execute(
                    delete(QueueJobRecord).where(
                        QueueJobRecord.status == status.value,
                        QueueJobRecord.id.not_in(keep),
                    )
                )
                stats[status.value] = (aged.rowcount or 0) + (capped.rowcount or 0)
            await session.commit()

    return stats
