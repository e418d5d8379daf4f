"""
Scheduler — named recurring jobs driven by cron expressions.

One explicit instance is owned by the application runtime and handed to
whatever needs to register or control jobs. Each enabled job runs in
its own asyncio task that sleeps until the next cron fire time.

    scheduler = Scheduler(on_run=record_job_run)
    scheduler.register("storage-cleanup", "0 * * * *", storage.cleanup_expired)
    scheduler.start()

``register`` rejects duplicate names and invalid expressions and leaves
the job map untouched when it does. ``register_or_update`` replaces a
job atomically and marks the scheduler running, so jobs added at run
time fire even if ``start`` was never called. ``start_job`` likewise
launches its job regardless of the scheduler state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from croniter import croniter

from core.exceptions import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

JobCallable = Callable[[], Awaitable[Any]]


def cron_problems(expression: Any) -> list[str]:
    """Problems with a 5-field cron expression (empty when valid)."""
    if not isinstance(expression, str) or not expression.strip():
        return ["cron expression is required"]
    fields = expression.split()
    if len(fields) != 5:
        return [f"cron expression '{expression}' must have 5 fields, got {len(fields)}"]
    if not croniter.is_valid(expression):
        return [f"invalid cron expression '{expression}'"]
    return []


def validate_cron(expression: Any) -> None:
    problems = cron_problems(expression)
    if problems:
        raise ValidationError(problems[0], issues=problems)


@dataclass
class ScheduledJob:
    """One named registration."""

    name: str
    cron: str
    func: JobCallable
    enabled: bool = True
    description: str = ""
    run_count: int = 0
    last_run_at: Optional[datetime] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()

    def next_run(self, now: Optional[datetime] = None) -> datetime:
        base = now or datetime.now(timezone.utc)
        return croniter(self.cron, base).get_next(datetime)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "cron": self.cron,
            "enabled": self.enabled,
            "active": self.active,
            "description": self.description,
            "run_count": self.run_count,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_status": self.last_status,
            "last_error": self.last_error,
            "next_run_at": self.next_run().isoformat() if self.enabled else None,
        }


# (job, status, message, duration_ms)
RunCallback = Callable[[ScheduledJob, str, str, int], Awaitable[None]]


class Scheduler:
    """Cron job registry and runner."""

    def __init__(
        self,
        on_run: Optional[RunCallback] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._jobs: dict[str, ScheduledJob] = {}
        self._running = False
        self._on_run = on_run
        self._clock = clock

    # ─── Registration ─────────────────────────────────────────

    def register(
        self,
        name: str,
        cron: str,
        func: JobCallable,
        enabled: bool = True,
        description: str = "",
    ) -> bool:
        """Add a new job.

        Returns:
            True if the job is scheduled to fire, False if registered disabled

        Raises:
            ConflictError: a job with this name exists
            ValidationError: invalid cron expression
        """
        if name in self._jobs:
            raise ConflictError(f"Scheduled job '{name}' already exists")
        validate_cron(cron)

        job = ScheduledJob(name=name, cron=cron, func=func, enabled=enabled, description=description)
        self._jobs[name] = job
        logger.info(f"Registered scheduled job '{name}' ({cron})")
        if enabled and self._running:
            self._launch(job)
        return enabled

    def register_or_update(
        self,
        name: str,
        cron: str,
        func: JobCallable,
        enabled: bool = True,
        description: str = "",
    ) -> bool:
        """Replace (or add) a job and make sure it runs.

        Raises:
            ValidationError: invalid cron expression; the existing job is kept
        """
        validate_cron(cron)

        previous = self._jobs.pop(name, None)
        if previous is not None:
            self._cancel(previous)

        job = ScheduledJob(name=name, cron=cron, func=func, enabled=enabled, description=description)
        if previous is not None:
            job.run_count = previous.run_count
            job.last_run_at = previous.last_run_at
            job.last_status = previous.last_status
            job.last_error = previous.last_error
        self._jobs[name] = job
        self._running = True
        if enabled:
            self._launch(job)
        logger.info(f"{'Updated' if previous else 'Registered'} scheduled job '{name}' ({cron})")
        return enabled

    def unregister(self, name: str) -> bool:
        job = self._jobs.pop(name, None)
        if job is None:
            return False
        self._cancel(job)
        logger.info(f"Unregistered scheduled job '{name}'")
        return True

    # ─── Lifecycle ────────────────────────────────────────────

    def start(self) -> None:
        if self._running:
            logger.warning("Scheduler already running")
            return
        self._running = True
        for job in self._jobs.values():
            if job.enabled and not job.active:
                self._launch(job)
        logger.info(f"Scheduler started with {len(self._jobs)} jobs")

    async def stop(self) -> None:
        self._running = False
        tasks = [job.task for job in self._jobs.values() if job.active]
        for job in self._jobs.values():
            self._cancel(job)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")

    def start_job(self, name: str) -> None:
        """Enable a job and launch it, whether or not ``start`` has been called."""
        job = self._get(name)
        job.enabled = True
        if not job.active:
            self._launch(job)
        logger.info(f"Started scheduled job '{name}'")

    def stop_job(self, name: str) -> None:
        job = self._get(name)
        job.enabled = False
        self._cancel(job)

    async def run_now(self, name: str) -> ScheduledJob:
        """Run a job once, outside its schedule."""
        job = self._get(name)
        await self._execute(job)
        return job

    # ─── Introspection ────────────────────────────────────────

    def has_job(self, name: str) -> bool:
        return name in self._jobs

    def get_job(self, name: str) -> Optional[ScheduledJob]:
        return self._jobs.get(name)

    def get_jobs(self) -> list[dict]:
        return [job.to_dict() for job in sorted(self._jobs.values(), key=lambda j: j.name)]

    @property
    def is_running(self) -> bool:
        return self._running

    def next_run(self, name: str) -> Optional[datetime]:
        job = self._get(name)
        return job.next_run(self._clock()) if job.enabled else None

    # ─── Internals ────────────────────────────────────────────

    def _get(self, name: str) -> ScheduledJob:
        job = self._jobs.get(name)
        if job is None:
            raise NotFoundError(f"Scheduled job '{name}' not found")
        return job

    def _launch(self, job: ScheduledJob) -> None:
        job.task = asyncio.create_task(self._loop(job), name=f"cron-{job.name}")

    @staticmethod
    def _cancel(job: ScheduledJob) -> None:
        if job.active:
            job.task.cancel()
        job.task = None

    async def _loop(self, job: ScheduledJob) -> None:
        while True:
            now = self._clock()
            wait = (job.next_run(now) - now).total_seconds()
            await asyncio.sleep(max(wait, 0))
            await self._execute(job)

    async def _execute(self, job: ScheduledJob) -> None:
        started = time.monotonic()
        job.last_run_at = self._clock()
        job.run_count += 1
        try:
            result = await job.func()
            job.last_status, job.last_error = "success", None
            message = f"{job.name} completed"
            if result is not None:
                message = f"{message}: {result}"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.last_status, job.last_error = "error", str(e)
            message = str(e)
            logger.exception(f"Scheduled job '{job.name}' failed: {e}")

        duration_ms = int((time.monotonic() - started) * 1000)
        if self._on_run is not None:
            try:
                await self._on_run(job, job.last_status, message, duration_ms)
            except Exception as e:
                logger.error(f"Could not record run of '{job.name}': {e}")
