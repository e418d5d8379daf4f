"""Tests for the cron scheduler."""

import asyncio
from datetime import datetime, timezone

import pytest

from core.exceptions import ConflictError, NotFoundError, ValidationError
from triggers.scheduler import Scheduler, cron_problems


def _just_before_the_minute() -> datetime:
    return datetime(2026, 1, 1, 12, 0, 59, 950000, tzinfo=timezone.utc)


class Counter:
    def __init__(self, fail: bool = False):
        self.calls = 0
        self.fail = fail

    async def __call__(self):
        self.calls += 1
        if self.fail:
            raise RuntimeError("job failed")
        return f"run {self.calls}"


@pytest.fixture
def runs():
    return []


@pytest.fixture
def scheduler(runs):
    async def on_run(job, status, message, duration_ms):
        runs.append((job.name, status, message))

    return Scheduler(on_run=on_run, clock=_just_before_the_minute)


@pytest.mark.unit
class TestCronValidation:
    def test_valid_expression(self):
        assert cron_problems("*/5 * * * *") == []

    def test_wrong_field_count(self):
        assert cron_problems("* * *") == ["cron expression '* * *' must have 5 fields, got 3"]

    def test_out_of_range_field(self):
        assert cron_problems("61 * * * *") == ["invalid cron expression '61 * * * *'"]

    def test_missing_expression(self):
        assert cron_problems("") == ["cron expression is required"]
        assert cron_problems(None) == ["cron expression is required"]


@pytest.mark.unit
class TestRegistration:
    """Adding, replacing and removing jobs."""

    def test_register_and_introspect(self, scheduler):
        assert scheduler.register("cleanup", "0 * * * *", Counter(), description="hourly") is True
        assert scheduler.has_job("cleanup")
        jobs = scheduler.get_jobs()
        assert [j["name"] for j in jobs] == ["cleanup"]
        assert jobs[0]["description"] == "hourly"
        assert scheduler.next_run("cleanup") == datetime(2026, 1, 1, 13, 0, tzinfo=timezone.utc)

    def test_invalid_cron_leaves_map_unchanged(self, scheduler):
        with pytest.raises(ValidationError):
            scheduler.register("broken", "* * *", Counter())
        assert not scheduler.has_job("broken")
        assert scheduler.get_jobs() == []

    def test_duplicate_name_rejected(self, scheduler):
        first = Counter()
        scheduler.register("job", "0 * * * *", first)
        with pytest.raises(ConflictError):
            scheduler.register("job", "*/5 * * * *", Counter())
        assert scheduler.get_job("job").func is first
        assert scheduler.get_job("job").cron == "0 * * * *"

    def test_disabled_job_has_no_next_run(self, scheduler):
        assert scheduler.register("later", "0 * * * *", Counter(), enabled=False) is False
        assert scheduler.next_run("later") is None

    def test_unregister(self, scheduler):
        scheduler.register("job", "0 * * * *", Counter())
        assert scheduler.unregister("job") is True
        assert scheduler.unregister("job") is False

    def test_unknown_job(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.stop_job("ghost")

    @pytest.mark.asyncio
    async def test_register_or_update_keeps_job_on_bad_cron(self, scheduler):
        scheduler.register_or_update("job", "0 * * * *", Counter())
        with pytest.raises(ValidationError):
            scheduler.register_or_update("job", "not a cron", Counter())
        assert scheduler.get_job("job").cron == "0 * * * *"
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_register_or_update_marks_running_and_keeps_history(self, scheduler):
        scheduler.register("job", "0 * * * *", Counter())
        await scheduler.run_now("job")

        scheduler.register_or_update("job", "*/10 * * * *", Counter())
        job = scheduler.get_job("job")
        assert scheduler.is_running
        assert job.active
        assert job.cron == "*/10 * * * *"
        assert job.run_count == 1
        await scheduler.stop()


@pytest.mark.unit
class TestRunning:
    """Firing, manual runs and lifecycle."""

    @pytest.mark.asyncio
    async def test_run_now_records_success(self, scheduler, runs):
        scheduler.register("job", "0 * * * *", Counter())
        job = await scheduler.run_now("job")
        assert job.run_count == 1
        assert job.last_status == "success"
        assert runs == [("job", "success", "job completed: run 1")]

    @pytest.mark.asyncio
    async def test_run_now_records_failure(self, scheduler, runs):
        scheduler.register("job", "0 * * * *", Counter(fail=True))
        job = await scheduler.run_now("job")
        assert job.last_status == "error"
        assert job.last_error == "job failed"
        assert runs == [("job", "error", "job failed")]

    @pytest.mark.asyncio
    async def test_started_job_fires_on_schedule(self, scheduler):
        counter = Counter()
        scheduler.register("tick", "* * * * *", counter)
        scheduler.start()
        assert scheduler.is_running

        for _ in range(100):
            if counter.calls:
                break
            await asyncio.sleep(0.02)
        await scheduler.stop()

        assert counter.calls >= 1
        assert not scheduler.is_running
        assert not scheduler.get_job("tick").active

    @pytest.mark.asyncio
    async def test_stop_and_start_single_job(self, scheduler):
        scheduler.register("job", "0 * * * *", Counter())
        scheduler.start()
        assert scheduler.get_job("job").active

        scheduler.stop_job("job")
        job = scheduler.get_job("job")
        assert not job.enabled
        assert not job.active

        scheduler.start_job("job")
        assert scheduler.get_job("job").active
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_start_job_before_scheduler_start(self, scheduler):
        scheduler.register("job", "0 * * * *", Counter(), enabled=False)
        assert not scheduler.is_running

        scheduler.start_job("job")
        job = scheduler.get_job("job")
        assert job.enabled
        assert job.active
        await scheduler.stop()
        assert not job.active

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_the_run(self):
        async def on_run(job, status, message, duration_ms):
            raise RuntimeError("database down")

        scheduler = Scheduler(on_run=on_run)
        scheduler.register("job", "0 * * * *", Counter())
        job = await scheduler.run_now("job")
        assert job.last_status == "success"
