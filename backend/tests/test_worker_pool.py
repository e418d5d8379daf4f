"""Tests for the in-process worker pool and the retry decision."""

import asyncio

import pytest

from core.constants import JobStatus
from core.exceptions import (
    CircuitOpenError,
    CredentialNotFoundError,
    InfrastructureError,
    StepExecutionError,
    ValidationError,
)
from worker.pool import WorkerPool
from worker.queue import DEFER, FAIL, RETRY, QueueJob, decide_retry
from workflow.retry_strategies import RetryStrategy


class Handler:
    """Job handler that replays a script of outcomes per job."""

    def __init__(self, *outcomes, delay: float = 0.0):
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls = []

    async def __call__(self, job, attempt):
        self.calls.append((job.job_id, attempt))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else {"ok": True}
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _pool(handler, **overrides) -> WorkerPool:
    values = {"concurrency": 5, "max_attempts": 3, "backoff_base": 0.01}
    values.update(overrides)
    return WorkerPool(handler, **values)


def _job(**overrides) -> QueueJob:
    return QueueJob(workflow_id="wf-1", user_id="user-1", **overrides)


@pytest.mark.unit
class TestDecideRetry:
    """Retry decisions shared by both backends."""

    strategy = RetryStrategy.for_queue(max_attempts=3, base_delay=10)

    def test_retryable_error_backs_off_exponentially(self):
        assert decide_retry(RuntimeError("x"), 1, 0, self.strategy, 5).delay == 10
        decision = decide_retry(RuntimeError("x"), 2, 0, self.strategy, 5)
        assert (decision.action, decision.delay) == (RETRY, 20)

    def test_attempts_exhausted(self):
        assert decide_retry(RuntimeError("x"), 3, 0, self.strategy, 5).action == FAIL

    def test_final_errors_fail_at_once(self):
        assert decide_retry(ValidationError("bad"), 1, 0, self.strategy, 5).action == FAIL
        wrapped = StepExecutionError("s", "missing", cause=CredentialNotFoundError(["x"]))
        assert decide_retry(wrapped, 1, 0, self.strategy, 5).action == FAIL

    def test_open_circuit_defers(self):
        error = StepExecutionError("s", "open", cause=CircuitOpenError("ai.openai.chat", 42))
        decision = decide_retry(error, 3, 0, self.strategy, 5)
        assert (decision.action, decision.delay) == (DEFER, 42)

    def test_deferrals_are_bounded(self):
        error = CircuitOpenError("ai.openai.chat", 42)
        assert decide_retry(error, 1, 5, self.strategy, 5).action == FAIL


@pytest.mark.unit
class TestWorkerPool:
    """Attempts, ordering, delay and shutdown."""

    @pytest.mark.asyncio
    async def test_success_after_two_failures(self):
        handler = Handler(RuntimeError("flaky"), RuntimeError("flaky"), {"ok": 1})
        pool = _pool(handler)
        job_id = await pool.enqueue(_job())

        record = await pool.wait_for(job_id, timeout=5)
        assert record.status == JobStatus.COMPLETED
        assert record.attempts_made == 3
        assert record.result == {"ok": 1}
        assert [attempt for _, attempt in handler.calls] == [1, 2, 3]
        await pool.close(grace=1)

    @pytest.mark.asyncio
    async def test_fails_after_max_attempts(self):
        failure = StepExecutionError("fetch", "boom", result={"success": False})
        pool = _pool(Handler(failure, failure, failure, failure))
        job_id = await pool.enqueue(_job())

        record = await pool.wait_for(job_id, timeout=5)
        assert record.status == JobStatus.FAILED
        assert record.attempts_made == 3
        assert record.failed_step_id == "fetch"
        assert record.result == {"success": False}
        await pool.close(grace=1)

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_first_attempt(self):
        handler = Handler(ValidationError("workflow has no steps"))
        pool = _pool(handler)
        record = await pool.wait_for(await pool.enqueue(_job()), timeout=5)
        assert record.status == JobStatus.FAILED
        assert len(handler.calls) == 1
        await pool.close(grace=1)

    @pytest.mark.asyncio
    async def test_open_circuit_does_not_spend_attempts(self):
        circuit = StepExecutionError("ask", "open", cause=CircuitOpenError("ai.openai.chat", 0.01))
        handler = Handler(circuit, circuit, {"ok": True})
        pool = _pool(handler, max_attempts=1)

        record = await pool.wait_for(await pool.enqueue(_job()), timeout=5)
        assert record.status == JobStatus.COMPLETED
        assert record.attempts_made == 1
        assert record.deferrals == 2
        await pool.close(grace=1)

    @pytest.mark.asyncio
    async def test_priority_order(self):
        handler = Handler()
        pool = _pool(handler, concurrency=1)
        low = await pool.enqueue(_job(priority=9))
        high = await pool.enqueue(_job(priority=1))
        normal = await pool.enqueue(_job(priority=5))

        await pool.wait_for(low, timeout=5)
        assert [job_id for job_id, _ in handler.calls] == [high, normal, low]
        await pool.close(grace=1)

    @pytest.mark.asyncio
    async def test_delayed_job_waits(self):
        pool = _pool(Handler())
        job_id = await pool.enqueue(_job(delay=0.1))
        assert pool.get_record(job_id).status == JobStatus.DELAYED
        assert (await pool.stats()).delayed == 1

        record = await pool.wait_for(job_id, timeout=5)
        assert record.status == JobStatus.COMPLETED
        await pool.close(grace=1)

    @pytest.mark.asyncio
    async def test_concurrency_ceiling(self):
        active = 0
        peak = 0

        async def handler(job, attempt):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1

        pool = _pool(handler, concurrency=2)
        ids = [await pool.enqueue(_job()) for _ in range(6)]
        for job_id in ids:
            await pool.wait_for(job_id, timeout=5)
        assert peak == 2
        await pool.close(grace=1)

    @pytest.mark.asyncio
    async def test_stats_and_job_lookup(self):
        pool = _pool(Handler({"ok": True}, ValidationError("bad")), concurrency=1)
        first = await pool.enqueue(_job())
        second = await pool.enqueue(_job())
        await pool.wait_for(first, timeout=5)
        await pool.wait_for(second, timeout=5)

        stats = await pool.stats()
        assert (stats.completed, stats.failed, stats.total) == (1, 1, 0)
        job = await pool.get_job(second)
        assert job["status"] == "failed"
        assert await pool.get_job("missing") is None
        await pool.close(grace=1)

    @pytest.mark.asyncio
    async def test_retention_prunes_by_count(self):
        pool = _pool(Handler(), concurrency=1, completed_retention_count=2)
        ids = [await pool.enqueue(_job()) for _ in range(4)]
        await pool.wait_for(ids[-1], timeout=5)
        assert (await pool.stats()).completed == 2
        assert pool.get_record(ids[0]) is None
        await pool.close(grace=1)

    @pytest.mark.asyncio
    async def test_close_waits_for_running_jobs(self):
        pool = _pool(Handler(delay=0.05))
        job_id = await pool.enqueue(_job())
        await asyncio.sleep(0.01)

        await pool.close(grace=1)
        assert pool.get_record(job_id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_close_cancels_after_grace(self):
        pool = _pool(Handler(delay=5))
        job_id = await pool.enqueue(_job())
        await asyncio.sleep(0.01)

        await pool.close(grace=0.05)
        record = pool.get_record(job_id)
        assert record.status == JobStatus.FAILED
        assert record.error == "Cancelled during shutdown"

    @pytest.mark.asyncio
    async def test_enqueue_after_close_is_rejected(self):
        pool = _pool(Handler())
        await pool.close(grace=0)
        with pytest.raises(InfrastructureError):
            await pool.enqueue(_job())
