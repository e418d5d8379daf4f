"""
Execution queue — job types and the enqueue facade.

Triggers never run workflows themselves; they build a ``QueueJob`` and
hand it to ``ExecutionQueue.enqueue``. The facade forwards to the
configured backend (the in-process ``WorkerPool`` or the Celery
backend). When no backend is configured, or the backend reports that it
is unreachable, the job runs once, synchronously, in the caller:

    result = await queue.enqueue(job)
    result.job_id   # "direct-execution"
    result.queued   # False
    result.result   # the execution result

Direct execution has no retry and no concurrency ceiling.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol

import structlog

from core.constants import DIRECT_EXECUTION_JOB_ID, JobStatus, TriggerType
from core.exceptions import CircuitOpenError, InfrastructureError, StepExecutionError
from workflow.retry_strategies import RetryStrategy

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueueJob:
    """One request to execute a workflow."""

    workflow_id: str
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    trigger_type: TriggerType = TriggerType.MANUAL
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    delay: float = 0.0
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        self.trigger_type = TriggerType(self.trigger_type)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "workflow_id": self.workflow_id,
            "user_id": self.user_id,
            "organization_id": self.organization_id,
            "trigger_type": self.trigger_type.value,
            "payload": self.payload,
            "priority": self.priority,
            "delay": self.delay,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueueJob":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class JobRecord:
    """Lifecycle bookkeeping for a queued job."""

    job: QueueJob
    status: JobStatus = JobStatus.WAITING
    attempts_made: int = 0
    max_attempts: int = 3
    deferrals: int = 0
    error: Optional[str] = None
    failed_step_id: Optional[str] = None
    result: Any = None
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    run_at: float = 0.0
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "workflow_id": self.job.workflow_id,
            "trigger_type": self.job.trigger_type.value,
            "priority": self.job.priority,
            "status": self.status.value,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "error": self.error,
            "failed_step_id": self.failed_step_id,
            "result": self.result,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        """Jobs not yet finished."""
        return self.waiting + self.active + self.delayed

    def to_dict(self) -> dict:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "total": self.total,
        }


@dataclass
class EnqueueResult:
    job_id: str
    queued: bool
    result: Any = None

    def to_dict(self) -> dict:
        data = {"job_id": self.job_id, "queued": self.queued}
        if not self.queued:
            data["result"] = self.result
        return data


class QueueBackend(Protocol):
    """What ``ExecutionQueue`` needs from a backend."""

    async def enqueue(self, job: QueueJob) -> str: ...

    async def stats(self) -> QueueStats: ...

    async def get_job(self, job_id: str) -> Optional[dict]: ...

    async def close(self, grace: Optional[float] = None) -> None: ...


# (job, attempt) -> execution result; raises on failure
JobHandler = Callable[[QueueJob, int], Awaitable[Any]]


# ─── Retry decisions (shared by both backends) ───────────────

DEFER = "defer"
RETRY = "retry"
FAIL = "fail"


@dataclass
class RetryDecision:
    action: str
    delay: float = 0.0


def circuit_retry_after(error: BaseException) -> Optional[float]:
    """Cooldown left when the failure came from an open circuit, else None."""
    for candidate in (error, getattr(error, "cause", None)):
        if isinstance(candidate, CircuitOpenError):
            return candidate.retry_after
    return None


def decide_retry(
    error: BaseException,
    attempts_made: int,
    deferrals: int,
    strategy: RetryStrategy,
    max_deferrals: int,
) -> RetryDecision:
    """What to do with a job after a failed attempt.

    An open circuit defers the job until the cooldown ends and the caller
    gives the attempt back. Otherwise retryable errors are retried with
    the strategy's backoff until the attempts run out.
    """
    wait = circuit_retry_after(error)
    if wait is not None and deferrals < max_deferrals:
        return RetryDecision(DEFER, max(wait, 0.001))
    if getattr(error, "retryable", True) and attempts_made < strategy.max_attempts:
        return RetryDecision(RETRY, strategy.compute_delay(attempts_made))
    return RetryDecision(FAIL)


class ExecutionQueue:
    """Enqueue facade with direct-execution fallback."""

    def __init__(self, backend: Optional[QueueBackend], handler: JobHandler):
        self.backend = backend
        self._handler = handler

    @property
    def mode(self) -> str:
        return "direct" if self.backend is None else type(self.backend).__name__

    async def enqueue(self, job: QueueJob) -> EnqueueResult:
        if self.backend is not None:
            try:
                job_id = await self.backend.enqueue(job)
                logger.info(
                    "job_enqueued",
                    job_id=job_id,
                    workflow_id=job.workflow_id,
                    trigger_type=job.trigger_type.value,
                    priority=job.priority,
                    delay=job.delay,
                )
                return EnqueueResult(job_id=job_id, queued=True)
            except InfrastructureError as e:
                logger.error(
                    "queue_unavailable_running_directly",
                    workflow_id=job.workflow_id,
                    error=str(e),
                )

        return await self.run_direct(job)

    async def run_direct(self, job: QueueJob) -> EnqueueResult:
        """Run one attempt in the caller. Step failures come back as the result."""
        logger.info("job_direct_execution", workflow_id=job.workflow_id)
        try:
            result = await self._handler(job, 1)
        except StepExecutionError as e:
            return EnqueueResult(job_id=DIRECT_EXECUTION_JOB_ID, queued=False, result=e.result)
        if hasattr(result, "to_dict"):
            result = result.to_dict()
        return EnqueueResult(job_id=DIRECT_EXECUTION_JOB_ID, queued=False, result=result)

    async def stats(self) -> QueueStats:
        if self.backend is None:
            return QueueStats()
        return await self.backend.stats()

    async def get_job(self, job_id: str) -> Optional[dict]:
        if self.backend is None:
            return None
        return await self.backend.get_job(job_id)

    async def close(self, grace: Optional[float] = None) -> None:
        if self.backend is not None:
            await self.backend.close(grace)
