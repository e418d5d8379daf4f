"""Rate limiting primitives shared by the resilience layer and the queue.

- ``TokenBucketLimiter``: per-capability call budget. A bucket holds up to
  ``capacity`` tokens and refills continuously at ``capacity / window``
  tokens per second. Callers that find the bucket empty are delayed until
  a token is available instead of failing.
- ``RollingWindowLimiter``: exact count of events in the trailing window,
  used to cap how many queue jobs start per window.

Both keep state in process memory behind a ``threading.Lock``. The Celery
backend relies on Celery's own task rate limit instead.
"""

import asyncio
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple

from core.exceptions import RateLimitExceeded


@dataclass
class _Bucket:
    capacity: float
    refill_rate: float  # tokens per second
    tokens: float
    updated_at: float


class TokenBucketLimiter:
    """Thread-safe token buckets keyed by capability path."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._buckets: dict[str, _Bucket] = {}
        self._clock = clock

    def _bucket(self, key: str, capacity: int, window_seconds: float) -> _Bucket:
        bucket = self._buckets.get(key)
        rate = capacity / window_seconds
        if bucket is None or bucket.capacity != capacity or bucket.refill_rate != rate:
            tokens = capacity if bucket is None else min(bucket.tokens, capacity)
            bucket = _Bucket(capacity, rate, tokens, self._clock())
            self._buckets[key] = bucket
        return bucket

    def try_acquire(
        self, key: str, capacity: int, window_seconds: float
    ) -> Tuple[bool, float, float]:
        """Take one token if available.

        Returns:
            (allowed, remaining_tokens, retry_after_seconds)
        """
        now = self._clock()
        with self._lock:
            bucket = self._bucket(key, capacity, window_seconds)
            elapsed = now - bucket.updated_at
            bucket.tokens = min(bucket.capacity, bucket.tokens + elapsed * bucket.refill_rate)
            bucket.updated_at = now

            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return (True, bucket.tokens, 0.0)

            retry_after = (1 - bucket.tokens) / bucket.refill_rate
            return (False, bucket.tokens, retry_after)

    async def acquire(
        self,
        key: str,
        capacity: int,
        window_seconds: float,
        max_wait: float,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> float:
        """Wait for a token; returns seconds spent waiting.

        Raises:
            RateLimitExceeded: if the next token is further away than ``max_wait``
        """
        waited = 0.0
        while True:
            allowed, _, retry_after = self.try_acquire(key, capacity, window_seconds)
            if allowed:
                return waited
            if waited + retry_after > max_wait:
                raise RateLimitExceeded(key, retry_after)
            await sleep(retry_after)
            waited += retry_after

    def remaining(self, key: str) -> Optional[float]:
        with self._lock:
            bucket = self._buckets.get(key)
            return None if bucket is None else round(bucket.tokens, 2)

    def status(self) -> dict[str, float]:
        """Tokens left per key, as of the last acquire."""
        with self._lock:
            return {key: round(b.tokens, 2) for key, b in self._buckets.items()}

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key:
                self._buckets.pop(key, None)
            else:
                self._buckets.clear()


class RollingWindowLimiter:
    """Exact rolling-window counter.

    Keeps one timestamp per admitted event, so it is meant for modest
    volumes such as job starts, not per-request API traffic.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._events: dict[str, deque] = defaultdict(deque)
        self._clock = clock

    def check_and_increment(
        self, key: str, max_events: int, window_seconds: float
    ) -> Tuple[bool, int, int, float]:
        """Admit one event if the window has room.

        Returns:
            (allowed, current_count, limit, retry_after_seconds)
        """
        now = self._clock()
        with self._lock:
            events = self._events[key]
            while events and now - events[0] >= window_seconds:
                events.popleft()

            if len(events) >= max_events:
                retry_after = window_seconds - (now - events[0])
                return (False, len(events), max_events, max(retry_after, 0.0))

            events.append(now)
            return (True, len(events), max_events, 0.0)

    def count(self, key: str, window_seconds: float) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for ts in self._events[key] if now - ts < window_seconds)
