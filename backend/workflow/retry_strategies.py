"""Retry policies for queued workflow executions and capability calls.

Provides:
- Fixed delay
- Exponential backoff (with optional jitter)
- Linear backoff
- Retry decisions driven by the ``retryable`` flag carried by engine errors

The execution queue uses ``RetryStrategy.for_queue()``: at most
``max_attempts`` attempts in total, waiting ``base * 2 ** (n - 1)``
seconds after the n-th failed attempt.

Usage:
    strategy = RetryStrategy.exponential(max_retries=2, base_delay=10.0, jitter=False)
    if strategy.should_retry(attempt, error):
        delay = strategy.compute_delay(attempt)
"""

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import httpx
import structlog

from core.exceptions import AutomationError

logger = structlog.get_logger(__name__)


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


TRANSIENT_ERRORS = (
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
    httpx.TransportError,
)


def is_retryable(error: BaseException) -> bool:
    """Whether another attempt could succeed where this one failed.

    Engine errors say so themselves; HTTP status errors are transient
    for 429 and 5xx; bare transport errors are always transient.
    Anything else is treated as a bug in the workflow and not retried.
    """
    if isinstance(error, AutomationError):
        return bool(error.retryable)
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    return isinstance(error, TRANSIENT_ERRORS)


@dataclass
class RetryStrategy:
    """Configurable retry strategy.

    ``max_retries`` counts retries, not attempts: a strategy with
    ``max_retries=2`` allows three attempts in total.
    """
    policy: RetryPolicy
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 300.0
    jitter: bool = True
    jitter_range: float = 0.5
    retryable_errors: list[str] = field(default_factory=list)

    @classmethod
    def none(cls) -> "RetryStrategy":
        """No retries: fail immediately."""
        return cls(policy=RetryPolicy.NONE, max_retries=0)

    @classmethod
    def fixed(cls, max_retries: int = 3, delay: float = 5.0) -> "RetryStrategy":
        return cls(
            policy=RetryPolicy.FIXED,
            max_retries=max_retries,
            base_delay=delay,
            jitter=False,
        )

    @classmethod
    def exponential(
        cls,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: bool = True,
    ) -> "RetryStrategy":
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
        )

    @classmethod
    def linear(
        cls,
        max_retries: int = 5,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
    ) -> "RetryStrategy":
        """Linear backoff: delay = base_delay * attempt_number."""
        return cls(
            policy=RetryPolicy.LINEAR,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=False,
        )

    @classmethod
    def for_queue(cls, max_attempts: int = 3, base_delay: float = 10.0) -> "RetryStrategy":
        """Queue policy: deterministic exponential backoff, no jitter."""
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max(0, max_attempts - 1),
            base_delay=base_delay,
            max_delay=base_delay * 2 ** max(0, max_attempts - 1),
            jitter=False,
        )

    @classmethod
    def from_dict(cls, config: dict) -> "RetryStrategy":
        """Create a strategy from a stored configuration dict."""
        return cls(
            policy=RetryPolicy(config.get("policy", "exponential")),
            max_retries=config.get("max_retries", 3),
            base_delay=config.get("base_delay", 1.0),
            max_delay=config.get("max_delay", 300.0),
            jitter=config.get("jitter", True),
            jitter_range=config.get("jitter_range", 0.5),
            retryable_errors=config.get("retryable_errors", []),
        )

    def to_dict(self) -> dict:
        return {
            "policy": self.policy.value,
            "max_retries": self.max_retries,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "jitter": self.jitter,
            "jitter_range": self.jitter_range,
            "retryable_errors": self.retryable_errors,
        }

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def compute_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0

        if self.policy == RetryPolicy.FIXED:
            delay = self.base_delay
        elif self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        elif self.policy == RetryPolicy.LINEAR:
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))

        return round(delay, 3)

    def should_retry(self, attempt: int, error: Optional[BaseException] = None) -> bool:
        """Whether to schedule another attempt after ``attempt`` failed."""
        if self.policy == RetryPolicy.NONE:
            return False
        if attempt >= self.max_attempts:
            return False
        if error is None:
            return True
        if self.retryable_errors:
            return type(error).__name__ in self.retryable_errors
        return is_retryable(error)

    def schedule(self) -> list[float]:
        """Delays after each failed attempt that is followed by a retry."""
        return [self.compute_delay(n) for n in range(1, self.max_retries + 1)]


# ─── Preset strategies ───

RETRY_PRESETS: dict[str, RetryStrategy] = {
    "none": RetryStrategy.none(),
    "queue": RetryStrategy.for_queue(),
    "api_call": RetryStrategy.exponential(max_retries=3, base_delay=1.0, max_delay=30.0),
    "messaging": RetryStrategy.linear(max_retries=3, base_delay=5.0, max_delay=30.0),
    "storage": RetryStrategy.fixed(max_retries=2, delay=0.5),
}


async def execute_with_retry(
    func: Callable,
    strategy: RetryStrategy,
    *args,
    on_retry: Optional[Callable] = None,
    sleep: Callable = asyncio.sleep,
    **kwargs,
):
    """Execute an async function under a retry strategy.

    Args:
        func: Async callable to execute.
        strategy: RetryStrategy instance.
        on_retry: Optional callback(attempt, error, delay) called before each retry.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        The result of func(*args, **kwargs).

    Raises:
        The last exception once the strategy gives up.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not strategy.should_retry(attempt, e):
                raise

            delay = strategy.compute_delay(attempt)
            logger.info(
                "retry_scheduled",
                attempt=attempt,
                delay=delay,
                error=str(e),
            )
            if on_retry:
                try:
                    outcome = on_retry(attempt, e, delay)
                    if asyncio.iscoroutine(outcome):
                        await outcome
                except Exception as callback_error:
                    logger.warning("retry_callback_failed", error=str(callback_error))

            await sleep(delay)
