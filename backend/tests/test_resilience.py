"""Tests for the resilience layer around external capability calls."""

import asyncio

import pytest

from capabilities.base import CapabilityDescriptor, param
from conftest import make_settings
from core.circuit_breaker import CLOSED, CircuitBreaker
from core.exceptions import CapabilityTimeoutError, CircuitOpenError, RateLimitExceeded
from core.rate_limit import TokenBucketLimiter
from workflow.resilience import ResilienceLayer, get_resilience_layer, reset_resilience_layer
from workflow.retry_strategies import RetryStrategy


def _descriptor(**overrides) -> CapabilityDescriptor:
    values = {"path": "test.remote.call", "handler": lambda value: value,
              "parameters": [param("value")], "external": True}
    values.update(overrides)
    return CapabilityDescriptor(**values)


class Flaky:
    """Fails ``failures`` times, then returns ``"ok"``."""

    def __init__(self, failures: int, error: Exception = None):
        self.failures = failures
        self.error = error or ConnectionError("connection reset")
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def layer(sleeps):
    async def record_sleep(delay):
        sleeps.append(delay)

    return ResilienceLayer(
        breaker=CircuitBreaker(failure_threshold=3, recovery_timeout=60),
        settings=make_settings(RATE_LIMIT_MAX_WAIT_SECONDS=0.0),
        sleep=record_sleep,
    )


@pytest.mark.unit
class TestProtections:
    """Breaker, limiter and timeout."""

    @pytest.mark.asyncio
    async def test_success_passes_result_through(self, layer):
        assert await layer.call(_descriptor(), Flaky(0)) == "ok"

    @pytest.mark.asyncio
    async def test_open_circuit_skips_the_handler(self, layer):
        fn = Flaky(100)
        for _ in range(3):
            with pytest.raises(ConnectionError):
                await layer.call(_descriptor(), fn)

        with pytest.raises(CircuitOpenError) as exc:
            await layer.call(_descriptor(), fn)
        assert fn.calls == 3
        assert exc.value.retry_after > 0

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, layer):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(CapabilityTimeoutError):
            await layer.call(_descriptor(timeout=0.01), slow)
        assert layer.status()["circuits"]["test.remote.call"]["consecutive_failures"] == 1

    @pytest.mark.asyncio
    async def test_rate_limit_rejects_past_max_wait(self, layer):
        descriptor = _descriptor(rate_limit=(1, 60))
        await layer.call(descriptor, Flaky(0))
        with pytest.raises(RateLimitExceeded):
            await layer.call(descriptor, Flaky(0))

    @pytest.mark.asyncio
    async def test_status_reports_circuits_and_buckets(self, layer):
        await layer.call(_descriptor(rate_limit=(10, 60)), Flaky(0))
        status = layer.status()
        assert status["circuits"]["test.remote.call"]["state"] == "closed"
        assert status["rate_limits"] == {"test.remote.call": 9}

        layer.reset()
        assert layer.status() == {"circuits": {}, "rate_limits": {}}

    @pytest.mark.asyncio
    async def test_rate_limit_wait_uses_the_injected_sleep(self):
        clock = FakeClock()
        slept = []

        async def fake_sleep(delay):
            slept.append(delay)
            clock.now += delay

        layer = ResilienceLayer(
            limiter=TokenBucketLimiter(clock),
            settings=make_settings(RATE_LIMIT_MAX_WAIT_SECONDS=120.0),
            sleep=fake_sleep,
        )
        descriptor = _descriptor(rate_limit=(1, 60))
        await layer.call(descriptor, Flaky(0))
        assert await layer.call(descriptor, Flaky(0)) == "ok"
        assert slept == [pytest.approx(60.0)]

    @pytest.mark.asyncio
    async def test_cancelled_trial_hands_back_its_slot(self):
        clock = FakeClock()
        layer = ResilienceLayer(
            breaker=CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=clock),
            settings=make_settings(),
        )
        descriptor = _descriptor()
        with pytest.raises(ConnectionError):
            await layer.call(descriptor, Flaky(1))

        clock.now = 30
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(10)

        trial = asyncio.create_task(layer.call(descriptor, hang))
        await started.wait()
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        assert await layer.call(descriptor, Flaky(0)) == "ok"
        assert layer.breaker.state(descriptor.path) == CLOSED


@pytest.mark.unit
class TestInCallRetry:
    """Optional retry strategies around one call."""

    @pytest.mark.asyncio
    async def test_explicit_strategy_retries_transient_errors(self, layer, sleeps):
        fn = Flaky(2)
        result = await layer.call(_descriptor(), fn, retry=RetryStrategy.fixed(max_retries=3, delay=0.5))
        assert result == "ok"
        assert fn.calls == 3
        assert sleeps == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_descriptor_preset_is_used(self, layer, sleeps):
        fn = Flaky(1)
        assert await layer.call(_descriptor(retry="storage"), fn) == "ok"
        assert fn.calls == 2
        assert len(sleeps) == 1

    @pytest.mark.asyncio
    async def test_non_retryable_error_is_not_retried(self, layer):
        fn = Flaky(5, error=ValueError("bad input"))
        with pytest.raises(ValueError):
            await layer.call(_descriptor(), fn, retry=RetryStrategy.fixed(max_retries=3, delay=0))
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_open_circuit_stops_retrying(self, layer):
        fn = Flaky(100)
        with pytest.raises(CircuitOpenError):
            await layer.call(_descriptor(), fn, retry=RetryStrategy.fixed(max_retries=10, delay=0))
        assert fn.calls == 3


@pytest.mark.unit
class TestSingleton:
    def test_singleton_is_shared_until_reset(self):
        first = get_resilience_layer()
        assert get_resilience_layer() is first
        reset_resilience_layer()
        assert get_resilience_layer() is not first

    def test_custom_limiter_is_used(self):
        limiter = TokenBucketLimiter()
        assert ResilienceLayer(limiter=limiter, settings=make_settings()).limiter is limiter
