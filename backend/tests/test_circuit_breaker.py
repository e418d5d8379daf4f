"""Tests for the per-capability circuit breaker."""

import pytest

from core.circuit_breaker import CLOSED, HALF_OPEN, OPEN, CircuitBreaker


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(failure_threshold=3, recovery_timeout=30, clock=clock)


@pytest.mark.unit
class TestConsecutiveFailures:
    """Opening on consecutive failures."""

    def test_starts_closed(self, breaker):
        assert breaker.state("svc") == CLOSED
        assert breaker.can_execute("svc")

    def test_opens_at_threshold(self, breaker):
        for _ in range(2):
            breaker.record_failure("svc", "boom")
        assert breaker.can_execute("svc")

        breaker.record_failure("svc", "boom")
        assert breaker.state("svc") == OPEN
        assert not breaker.can_execute("svc")
        assert breaker.retry_after("svc") == 30

    def test_success_resets_the_count(self, breaker):
        breaker.record_failure("svc")
        breaker.record_failure("svc")
        breaker.record_success("svc")
        breaker.record_failure("svc")
        assert breaker.state("svc") == CLOSED

    def test_capabilities_are_isolated(self, breaker):
        for _ in range(3):
            breaker.record_failure("a")
        assert not breaker.can_execute("a")
        assert breaker.can_execute("b")


@pytest.mark.unit
class TestRecovery:
    """Cooldown, half-open trial and re-opening."""

    def _trip(self, breaker):
        for _ in range(3):
            breaker.record_failure("svc", "down")

    def test_half_open_after_cooldown(self, breaker, clock):
        self._trip(breaker)
        clock.now = 10
        assert breaker.retry_after("svc") == 20
        clock.now = 30
        assert breaker.state("svc") == HALF_OPEN

    def test_half_open_allows_one_trial(self, breaker, clock):
        self._trip(breaker)
        clock.now = 30
        assert breaker.can_execute("svc")
        assert not breaker.can_execute("svc")

    def test_trial_success_closes(self, breaker, clock):
        self._trip(breaker)
        clock.now = 30
        breaker.can_execute("svc")
        breaker.record_success("svc")
        assert breaker.state("svc") == CLOSED
        assert breaker.can_execute("svc")

    def test_trial_failure_reopens(self, breaker, clock):
        self._trip(breaker)
        clock.now = 30
        breaker.can_execute("svc")
        breaker.record_failure("svc", "still down")
        assert breaker.state("svc") == OPEN
        assert breaker.retry_after("svc") == 30

    def test_released_trial_can_be_taken_again(self, breaker, clock):
        self._trip(breaker)
        clock.now = 30
        assert breaker.can_execute("svc")
        breaker.release_trial("svc")
        assert breaker.state("svc") == HALF_OPEN
        assert breaker.can_execute("svc")

    def test_release_outside_half_open_is_ignored(self, breaker):
        breaker.release_trial("svc")
        assert breaker.can_execute("svc")
        self._trip(breaker)
        breaker.release_trial("svc")
        assert not breaker.can_execute("svc")


@pytest.mark.unit
class TestFailureRate:
    """Opening on failure rate over the recent window."""

    def test_opens_on_failure_rate(self, clock):
        breaker = CircuitBreaker(
            failure_threshold=100, failure_rate_threshold=0.5, min_calls=4, clock=clock
        )
        breaker.record_success("svc")
        breaker.record_failure("svc")
        breaker.record_success("svc")
        assert breaker.state("svc") == CLOSED

        breaker.record_failure("svc")
        assert breaker.state("svc") == OPEN

    def test_needs_min_calls(self, clock):
        breaker = CircuitBreaker(
            failure_threshold=100, failure_rate_threshold=0.5, min_calls=10, clock=clock
        )
        breaker.record_failure("svc")
        breaker.record_failure("svc")
        assert breaker.state("svc") == CLOSED


@pytest.mark.unit
class TestStatus:
    def test_status_reports_each_capability(self, breaker):
        breaker.record_failure("svc", "timeout")
        breaker.record_success("other")

        status = breaker.get_status()
        assert status["svc"]["state"] == CLOSED
        assert status["svc"]["consecutive_failures"] == 1
        assert status["svc"]["last_error"] == "timeout"
        assert status["other"]["recent_calls"] == 1

    def test_reset_one_and_all(self, breaker):
        for _ in range(3):
            breaker.record_failure("a")
            breaker.record_failure("b")

        breaker.reset("a")
        assert breaker.can_execute("a")
        assert not breaker.can_execute("b")

        breaker.reset()
        assert breaker.get_status() == {}
