"""Celery application configuration for the ``celery`` queue backend.

This module sets up the Celery app with:
- Redis as broker and result backend
- Workflow jobs routed to one execution queue, with broker priorities
- Worker concurrency and per-window start limit from settings
- Beat schedule for maintenance (storage expiry, job retention)

Start a worker with:
    celery -A worker.celery_app worker -Q workflows-execution,default
"""

from celery import Celery
from celery.schedules import crontab

from app.config import get_settings

settings = get_settings()


def rate_limit_expression(max_jobs: int, window_seconds: float) -> str:
    """Celery rate-limit string for ``max_jobs`` per window."""
    if window_seconds == 60:
        return f"{max_jobs}/m"
    if window_seconds == 3600:
        return f"{max_jobs}/h"
    per_second = max_jobs / window_seconds
    if per_second >= 1:
        return f"{per_second:g}/s"
    return f"{max_jobs * 60 / window_seconds:g}/m"


def _cron_schedule(expression: str) -> crontab:
    minute, hour, day_of_month, month_of_year, day_of_week = expression.split()
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


celery_app = Celery(
    "automation_engine",
    broker=settings.REDIS_URL or "redis://localhost:6379/0",
    backend=settings.REDIS_URL or "redis://localhost:6379/0",
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    task_routes={
        "worker.tasks.workflow.*": {"queue": settings.QUEUE_NAME},
        "worker.tasks.maintenance.*": {"queue": "default"},
    },
    task_default_queue="default",

    # Lower number runs first, matching QueueJob.priority
    broker_transport_options={
        "priority_steps": list(range(10)),
        "sep": ":",
        "queue_order_strategy": "priority",
    },

    result_expires=settings.QUEUE_COMPLETED_RETENTION_SECONDS,

    worker_concurrency=settings.queue_concurrency,
    task_acks_late=True,           # Acknowledge after execution
    worker_prefetch_multiplier=1,  # One job at a time per worker process
    task_reject_on_worker_lost=True,
    task_acks_on_failure_or_timeout=True,
    worker_cancel_long_running_tasks_on_connection_loss=False,

    beat_schedule={
        "cleanup-expired-storage": {
            "task": "worker.tasks.maintenance.cleanup_expired_storage",
            "schedule": _cron_schedule(settings.STORAGE_CLEANUP_CRON),
            "options": {"queue": "default"},
        },
        "prune-finished-jobs": {
            "task": "worker.tasks.maintenance.prune_finished_jobs",
            "schedule": crontab(minute=15),  # Hourly
            "options": {"queue": "default"},
        },
    },

    include=[
        "worker.tasks.workflow",
        "worker.tasks.maintenance",
    ],
)
