"""
Resilience wrapper for external capability calls.

Every call to a capability marked ``external`` goes through, in order:

1. the per-capability token bucket (delays the call while the bucket is
   empty, fails only if the wait would exceed the configured maximum)
2. the per-capability circuit breaker (rejects immediately while open,
   without calling the handler)
3. a timeout around the handler itself

Calls that reach the handler are counted in the usage tracker when one
is attached.

Timeouts and handler errors count as failures for the breaker; a
rejection by an open circuit does not. A trial call that is cancelled
hands its half-open slot back without counting either way.

A capability that names a ``retry`` preset (or a caller passing a
``RetryStrategy``) repeats the whole sequence above for retryable
failures. An open circuit is never retried in-call.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

from app.config import Settings, get_settings
from capabilities.base import CapabilityDescriptor
from core.circuit_breaker import CircuitBreaker
from core.exceptions import CapabilityTimeoutError, CircuitOpenError
from core.rate_limit import TokenBucketLimiter
from services.usage_service import UsageTracker
from workflow.retry_strategies import RETRY_PRESETS, RetryStrategy, execute_with_retry

logger = structlog.get_logger(__name__)


class ResilienceLayer:
    """Rate limiter, circuit breaker and timeout in front of external calls."""

    def __init__(
        self,
        breaker: Optional[CircuitBreaker] = None,
        limiter: Optional[TokenBucketLimiter] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        usage: Optional[UsageTracker] = None,
    ):
        self.settings = settings or get_settings()
        self._sleep = sleep
        self.usage = usage
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=self.settings.CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=self.settings.CIRCUIT_RECOVERY_SECONDS,
            failure_rate_threshold=self.settings.CIRCUIT_FAILURE_RATE_THRESHOLD,
            min_calls=self.settings.CIRCUIT_MIN_CALLS,
        )
        self.limiter = limiter or TokenBucketLimiter()

    def _rate_limit(self, descriptor: CapabilityDescriptor) -> tuple[int, float]:
        if descriptor.rate_limit:
            return descriptor.rate_limit
        return (
            self.settings.CAPABILITY_RATE_LIMIT,
            self.settings.CAPABILITY_RATE_WINDOW_SECONDS,
        )

    def _timeout(self, descriptor: CapabilityDescriptor) -> float:
        return descriptor.timeout or self.settings.CAPABILITY_TIMEOUT_SECONDS

    async def call(
        self,
        descriptor: CapabilityDescriptor,
        fn: Callable[[], Awaitable[Any]],
        retry: Optional[RetryStrategy] = None,
    ) -> Any:
        """Run ``fn`` under the protections configured for ``descriptor``.

        Raises:
            RateLimitExceeded: the bucket stayed empty past the max wait
            CircuitOpenError: the capability's circuit is open
            CapabilityTimeoutError: the call exceeded its timeout
        """
        if retry is None and descriptor.retry:
            retry = RETRY_PRESETS[descriptor.retry]
        if retry is None:
            return await self._protected_call(descriptor, fn)
        return await execute_with_retry(
            self._protected_call, retry, descriptor, fn, sleep=self._sleep
        )

    async def _protected_call(
        self,
        descriptor: CapabilityDescriptor,
        fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        key = descriptor.path
        capacity, window = self._rate_limit(descriptor)
        waited = await self.limiter.acquire(
            key,
            capacity,
            window,
            max_wait=self.settings.RATE_LIMIT_MAX_WAIT_SECONDS,
            sleep=self._sleep,
        )
        if waited:
            logger.info("capability_rate_limited", capability=key, waited=round(waited, 3))

        if not self.breaker.can_execute(key):
            retry_after = self.breaker.retry_after(key)
            logger.warning("capability_circuit_open", capability=key, retry_after=retry_after)
            raise CircuitOpenError(key, retry_after)

        timeout = self._timeout(descriptor)
        try:
            await self._track_usage(key)
            result = await asyncio.wait_for(fn(), timeout=timeout)
        except asyncio.TimeoutError:
            self.breaker.record_failure(key, f"timeout after {timeout}s")
            raise CapabilityTimeoutError(key, timeout) from None
        except Exception as e:
            self.breaker.record_failure(key, str(e))
            raise
        except BaseException:
            self.breaker.release_trial(key)
            raise

        self.breaker.record_success(key)
        return result

    async def _track_usage(self, key: str) -> None:
        if self.usage is None:
            return
        try:
            await self.usage.record(key)
        except Exception as e:
            # Accounting must not fail the call it is counting
            logger.error("capability_usage_not_recorded", capability=key, error=str(e))

    def status(self) -> dict:
        return {
            "circuits": self.breaker.get_status(),
            "rate_limits": self.limiter.status(),
        }

    def reset(self) -> None:
        self.breaker.reset()
        self.limiter.reset()


# ─── Singleton ────────────────────────────────────────────────

_resilience: Optional[ResilienceLayer] = None


def get_resilience_layer() -> ResilienceLayer:
    global _resilience
    if _resilience is None:
        _resilience = ResilienceLayer()
    return _resilience


def reset_resilience_layer() -> None:
    global _resilience
    _resilience = None
