"""Celery task for queued workflow execution.

The broker message carries only the job id; everything else lives in
the ``queue_jobs`` row written by ``CeleryQueueBackend.enqueue``. Each
delivery runs one attempt through the same ``WorkflowRunner`` the
in-process pool uses and applies the same retry decision: an open
circuit defers without consuming an attempt, retryable failures back
off exponentially until ``QUEUE_MAX_ATTEMPTS`` is reached.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from app.config import get_settings
from core.constants import JobStatus
from core.logging_config import bind_job_context, clear_job_context
from db.models.queue_job import QueueJobRecord
from db.worker_session import worker_session_factory
from worker.celery_app import celery_app, rate_limit_expression
from worker.queue import DEFER, FAIL, RETRY, RetryDecision, decide_retry
from workflow.retry_strategies import RetryStrategy

logger = logging.getLogger(__name__)

settings = get_settings()


async def _run_attempt(job_id: str) -> Optional[RetryDecision]:
    """Run the job's next attempt and update its row.

    Returns:
        None when the job is finished (or unknown), otherwise the retry decision
    """
    from app.container import build_runner
    from worker.celery_backend import record_to_job

    async with worker_session_factory() as session_factory:
        async with session_factory() as session:
            record = await session.get(QueueJobRecord, job_id)
            if record is None:
                logger.warning(f"Queue job {job_id} not found; dropping message")
                return None
            if record.status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value):
                # Redelivery after a lost ack
                logger.info(f"Queue job {job_id} already {record.status}; skipping")
                return None

            record.status = JobStatus.ACTIVE.value
            record.attempts_made += 1
            record.started_at = record.started_at or datetime.now(timezone.utc)
            await session.commit()
            job = record_to_job(record)
            attempt = record.attempts_made
            deferrals = record.deferrals
            max_attempts = record.max_attempts

        bind_job_context(job_id=job_id, workflow_id=job.workflow_id, attempt=attempt)
        runner = build_runner(session_factory, settings)
        error: Optional[Exception] = None
        result = None
        try:
            result = await runner.run(job, attempt)
        except Exception as e:
            error = e
        finally:
            clear_job_context()

        decision = None
        async with session_factory() as session:
            record = await session.get(QueueJobRecord, job_id)
            if error is None:
                record.status = JobStatus.COMPLETED.value
                record.result = result.to_dict()
                record.error = None
                record.failed_step_id = None
                record.finished_at = datetime.now(timezone.utc)
                logger.info(f"Queue job {job_id} completed on attempt {attempt}")
            else:
                record.error = str(error)
                record.failed_step_id = getattr(error, "step_id", None)
                if getattr(error, "result", None) is not None:
                    record.result = error.result

                strategy = RetryStrategy.for_queue(max_attempts, settings.QUEUE_BACKOFF_BASE_SECONDS)
                decision = decide_retry(
                    error, attempt, deferrals, strategy, settings.QUEUE_MAX_CIRCUIT_DEFERRALS
                )
                if decision.action == DEFER:
                    record.attempts_made -= 1
                    record.deferrals += 1
                    record.status = JobStatus.DELAYED.value
                    logger.warning(f"Queue job {job_id} deferred {decision.delay:.1f}s: circuit open")
                elif decision.action == RETRY:
                    record.status = JobStatus.DELAYED.value
                    logger.warning(
                        f"Queue job {job_id} attempt {attempt}/{max_attempts} failed, "
                        f"retrying in {decision.delay:.0f}s: {error}"
                    )
                else:
                    record.status = JobStatus.FAILED.value
                    record.finished_at = datetime.now(timezone.utc)
                    logger.error(f"Queue job {job_id} failed after {attempt} attempts: {error}")
            await session.commit()

    if decision is None or decision.action == FAIL:
        return None
    return decision


@celery_app.task(
    name="worker.tasks.workflow.execute_queue_job",
    bind=True,
    acks_late=True,
    max_retries=None,  # Bounded by the job row's attempts, not by Celery
    rate_limit=rate_limit_expression(
        settings.QUEUE_MAX_JOBS_PER_WINDOW, settings.QUEUE_RATE_WINDOW_SECONDS
    ),
)
def execute_queue_job(self, job_id: str):
    """Execute one attempt of a queued workflow job."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        decision = loop.run_until_complete(_run_attempt(job_id))
    finally:
        loop.close()

    if decision is not None:
        raise self.retry(countdown=decision.delay)
    return {"job_id": job_id}
