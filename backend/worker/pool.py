"""
In-process worker pool — the ``local`` queue backend.

Runs queued jobs on the current event loop:

- jobs start in priority order (lower number first), FIFO within a priority
- delayed jobs wait until their start time
- at most ``concurrency`` jobs run at once
- at most ``max_jobs_per_window`` jobs start per rolling window
- a failed attempt is retried up to ``max_attempts`` in total, waiting
  ``backoff_base * 2 ** (n - 1)`` seconds after the n-th failure
- errors flagged non-retryable (validation, missing credentials) fail
  the job at once
- a failure caused by an open circuit puts the job back until the
  circuit's cooldown ends, without spending an attempt (bounded by
  ``max_circuit_deferrals``)
- finished jobs are kept for inspection, pruned by age and count

Jobs live in process memory; they do not survive a restart. Use the
Celery backend when that matters.
"""

import asyncio
import heapq
import itertools
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from app.config import Settings
from core.constants import JobStatus
from core.exceptions import InfrastructureError
from core.logging_config import bind_job_context, clear_job_context
from core.rate_limit import RollingWindowLimiter
from worker.queue import (
    DEFER,
    RETRY,
    JobHandler,
    JobRecord,
    QueueJob,
    QueueStats,
    decide_retry,
)
from workflow.retry_strategies import RetryStrategy

logger = structlog.get_logger(__name__)

_JOBS_KEY = "queue:jobs-started"


class WorkerPool:
    """Priority queue with a bounded pool of asyncio workers."""

    def __init__(
        self,
        handler: JobHandler,
        concurrency: int = 20,
        max_jobs_per_window: int = 300,
        window_seconds: float = 60.0,
        max_attempts: int = 3,
        backoff_base: float = 10.0,
        completed_retention_seconds: float = 86400,
        completed_retention_count: int = 1000,
        failed_retention_seconds: float = 604800,
        failed_retention_count: int = 5000,
        max_circuit_deferrals: int = 5,
        shutdown_grace: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._handler = handler
        self.concurrency = concurrency
        self.max_jobs_per_window = max_jobs_per_window
        self.window_seconds = window_seconds
        self.retry = RetryStrategy.for_queue(max_attempts=max_attempts, base_delay=backoff_base)
        self.completed_retention = (completed_retention_seconds, completed_retention_count)
        self.failed_retention = (failed_retention_seconds, failed_retention_count)
        self.max_circuit_deferrals = max_circuit_deferrals
        self.shutdown_grace = shutdown_grace
        self._clock = clock

        self._records: dict[str, JobRecord] = {}
        self._ready: list = []
        self._delayed: list = []
        self._seq = itertools.count()
        self._limiter = RollingWindowLimiter(clock=clock)
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._running: set[asyncio.Task] = set()
        self._closing = False

    @classmethod
    def from_settings(cls, handler: JobHandler, settings: Settings) -> "WorkerPool":
        return cls(
            handler,
            concurrency=settings.queue_concurrency,
            max_jobs_per_window=settings.QUEUE_MAX_JOBS_PER_WINDOW,
            window_seconds=settings.QUEUE_RATE_WINDOW_SECONDS,
            max_attempts=settings.QUEUE_MAX_ATTEMPTS,
            backoff_base=settings.QUEUE_BACKOFF_BASE_SECONDS,
            completed_retention_seconds=settings.QUEUE_COMPLETED_RETENTION_SECONDS,
            completed_retention_count=settings.QUEUE_COMPLETED_RETENTION_COUNT,
            failed_retention_seconds=settings.QUEUE_FAILED_RETENTION_SECONDS,
            failed_retention_count=settings.QUEUE_FAILED_RETENTION_COUNT,
            max_circuit_deferrals=settings.QUEUE_MAX_CIRCUIT_DEFERRALS,
            shutdown_grace=settings.QUEUE_SHUTDOWN_GRACE_SECONDS,
        )

    @property
    def max_attempts(self) -> int:
        return self.retry.max_attempts

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    # ─── Lifecycle ────────────────────────────────────────────

    def start(self) -> None:
        if self.is_running:
            return
        self._closing = False
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._wakeup = asyncio.Event()
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="worker-pool")
        logger.info(
            "worker_pool_started",
            concurrency=self.concurrency,
            max_jobs_per_window=self.max_jobs_per_window,
        )

    async def close(self, grace: Optional[float] = None) -> None:
        """Stop taking jobs; wait up to ``grace`` seconds for running ones."""
        grace = self.shutdown_grace if grace is None else grace
        self._closing = True
        if self._wakeup is not None:
            self._wakeup.set()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None

        if self._running:
            logger.info("worker_pool_draining", active=len(self._running), grace=grace)
            _, pending = await asyncio.wait(set(self._running), timeout=grace)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("worker_pool_forced_shutdown", cancelled=len(pending))

        unfinished = sum(1 for r in self._records.values() if not r.is_finished)
        logger.info("worker_pool_stopped", unfinished=unfinished)

    # ─── Queue API ────────────────────────────────────────────

    async def enqueue(self, job: QueueJob) -> str:
        if self._closing:
            raise InfrastructureError("Worker pool is shutting down")
        if not self.is_running:
            self.start()

        record = JobRecord(job=job, max_attempts=self.max_attempts)
        self._records[job.job_id] = record
        self._schedule(record, job.delay)
        return job.job_id

    async def stats(self) -> QueueStats:
        self._prune()
        stats = QueueStats()
        for record in self._records.values():
            name = record.status.value
            setattr(stats, name, getattr(stats, name) + 1)
        return stats

    async def get_job(self, job_id: str) -> Optional[dict]:
        record = self._records.get(job_id)
        return record.to_dict() if record else None

    def get_record(self, job_id: str) -> Optional[JobRecord]:
        return self._records.get(job_id)

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> JobRecord:
        """Wait until a job completes or fails for good."""
        record = self._records[job_id]
        await asyncio.wait_for(record.done.wait(), timeout)
        return record

    # ─── Scheduling ───────────────────────────────────────────

    def _schedule(self, record: JobRecord, delay: float) -> None:
        if delay and delay > 0:
            record.status = JobStatus.DELAYED
            record.run_at = self._clock() + delay
            heapq.heappush(self._delayed, (record.run_at, next(self._seq), record.job_id))
        else:
            record.status = JobStatus.WAITING
            heapq.heappush(self._ready, (record.job.priority, next(self._seq), record.job_id))
        if self._wakeup is not None:
            self._wakeup.set()

    def _promote_delayed(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            record = self._records.get(job_id)
            if record is None or record.status != JobStatus.DELAYED:
                continue
            record.status = JobStatus.WAITING
            heapq.heappush(self._ready, (record.job.priority, next(self._seq), job_id))

    def _next_wakeup(self) -> Optional[float]:
        if not self._delayed:
            return None
        return max(0.0, self._delayed[0][0] - self._clock())

    async def _wait(self, timeout: Optional[float]) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    async def _dispatch_loop(self) -> None:
        while not self._closing:
            self._promote_delayed()
            if not self._ready:
                await self._wait(self._next_wakeup())
                continue

            await self._semaphore.acquire()
            if self._closing:
                self._semaphore.release()
                break

            allowed, _, _, retry_after = self._limiter.check_and_increment(
                _JOBS_KEY, self.max_jobs_per_window, self.window_seconds
            )
            if not allowed:
                self._semaphore.release()
                logger.info("job_start_rate_limited", retry_after=round(retry_after, 3))
                await self._wait(retry_after)
                continue

            self._promote_delayed()
            _, _, job_id = heapq.heappop(self._ready)
            record = self._records.get(job_id)
            if record is None or record.status != JobStatus.WAITING:
                self._semaphore.release()
                continue

            record.status = JobStatus.ACTIVE
            task = asyncio.create_task(self._run(record), name=f"job-{job_id}")
            self._running.add(task)
            task.add_done_callback(self._running.discard)

    # ─── Execution ────────────────────────────────────────────

    async def _run(self, record: JobRecord) -> None:
        record.attempts_made += 1
        record.started_at = datetime.now(timezone.utc)
        attempt = record.attempts_made
        bind_job_context(job_id=record.job_id, workflow_id=record.job.workflow_id, attempt=attempt)
        try:
            result = await self._handler(record.job, attempt)
        except asyncio.CancelledError:
            record.status = JobStatus.FAILED
            record.error = "Cancelled during shutdown"
            record.finished_at = datetime.now(timezone.utc)
            record.done.set()
            raise
        except Exception as e:
            self._on_failure(record, e)
        else:
            record.status = JobStatus.COMPLETED
            record.result = result.to_dict() if hasattr(result, "to_dict") else result
            record.error = None
            record.failed_step_id = None
            record.finished_at = datetime.now(timezone.utc)
            record.done.set()
            logger.info("job_completed", attempts=attempt)
        finally:
            clear_job_context()
            self._semaphore.release()
            self._prune()
            self._wakeup.set()

    def _on_failure(self, record: JobRecord, error: Exception) -> None:
        attempt = record.attempts_made
        record.error = str(error)
        record.failed_step_id = getattr(error, "step_id", None)
        if getattr(error, "result", None) is not None:
            record.result = error.result

        decision = decide_retry(
            error, attempt, record.deferrals, self.retry, self.max_circuit_deferrals
        )
        if decision.action == DEFER:
            record.attempts_made -= 1
            record.deferrals += 1
            logger.warning(
                "job_deferred_circuit_open",
                retry_after=decision.delay,
                deferrals=record.deferrals,
            )
            self._schedule(record, decision.delay)
            return

        if decision.action == RETRY:
            logger.warning(
                "job_attempt_failed_retrying",
                error=record.error,
                failed_step_id=record.failed_step_id,
                retry_in=decision.delay,
            )
            self._schedule(record, decision.delay)
            return

        record.status = JobStatus.FAILED
        record.finished_at = datetime.now(timezone.utc)
        record.done.set()
        logger.error(
            "job_failed",
            error=record.error,
            failed_step_id=record.failed_step_id,
            attempts=attempt,
        )

    # ─── Retention ────────────────────────────────────────────

    def _prune(self) -> None:
        now = datetime.now(timezone.utc)
        for status, (max_age, max_count) in (
            (JobStatus.COMPLETED, self.completed_retention),
            (JobStatus.FAILED, self.failed_retention),
        ):
            finished = sorted(
                (r for r in self._records.values() if r.status == status),
                key=lambda r: r.finished_at,
                reverse=True,
            )
            cutoff = now - timedelta(seconds=max_age)
            for index, record in enumerate(finished):
                if index >= max_count or record.finished_at < cutoff:
                    del self._records[record.job_id]
