"""Circuit breaker for external capability calls.

Stops calling a capability that keeps failing. The circuit for a
capability opens after N consecutive failures, or when the failure rate
over the most recent calls crosses a threshold. After a cooldown it goes
half-open and lets a trial call through: success closes it, failure
opens it again for another cooldown.

    closed -> open -> half-open -> closed
                 ^         |
                 +---------+
"""

import logging
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Optional

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half-open"


class CircuitBreaker:
    """Per-capability circuit breaker."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max: int = 1,
        failure_rate_threshold: float = 0.5,
        min_calls: int = 20,
        window_size: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max = half_open_max
        self.failure_rate_threshold = failure_rate_threshold
        self.min_calls = min_calls
        self._clock = clock
        self._lock = threading.Lock()

        self._failures: dict[str, int] = defaultdict(int)
        self._opened_at: dict[str, float] = {}
        self._state: dict[str, str] = defaultdict(lambda: CLOSED)
        self._trials: dict[str, int] = defaultdict(int)
        self._outcomes: dict[str, deque] = defaultdict(lambda: deque(maxlen=window_size))
        self._last_error: dict[str, Optional[str]] = {}

    def state(self, key: str) -> str:
        with self._lock:
            return self._current_state(key)

    def _current_state(self, key: str) -> str:
        state = self._state[key]
        if state == OPEN:
            elapsed = self._clock() - self._opened_at.get(key, 0.0)
            if elapsed >= self.recovery_timeout:
                self._state[key] = HALF_OPEN
                self._trials[key] = 0
                logger.info(f"Circuit half-open for {key} after {elapsed:.0f}s cooldown")
                return HALF_OPEN
        return state

    def can_execute(self, key: str) -> bool:
        """Check whether a call may go through, reserving a trial slot when half-open."""
        with self._lock:
            state = self._current_state(key)
            if state == CLOSED:
                return True
            if state == HALF_OPEN:
                if self._trials[key] < self.half_open_max:
                    self._trials[key] += 1
                    return True
                return False
            return False

    def release_trial(self, key: str) -> None:
        """Give back a half-open trial slot whose call never finished."""
        with self._lock:
            if self._state[key] == HALF_OPEN and self._trials[key] > 0:
                self._trials[key] -= 1

    def retry_after(self, key: str) -> float:
        """Seconds until the circuit for ``key`` leaves the open state."""
        with self._lock:
            if self._state[key] != OPEN:
                return 0.0
            elapsed = self._clock() - self._opened_at.get(key, 0.0)
            return max(0.0, self.recovery_timeout - elapsed)

    def record_success(self, key: str) -> None:
        with self._lock:
            if self._state[key] != CLOSED:
                logger.info(f"Circuit CLOSED for {key} after successful trial call")
            self._failures[key] = 0
            self._trials[key] = 0
            self._state[key] = CLOSED
            self._outcomes[key].append(True)

    def record_failure(self, key: str, error: Optional[str] = None) -> None:
        """Record a failed call; may trip the breaker."""
        with self._lock:
            self._failures[key] += 1
            self._outcomes[key].append(False)
            self._last_error[key] = error

            if self._state[key] == HALF_OPEN:
                self._open(key, "trial call failed")
                return

            if self._failures[key] >= self.failure_threshold:
                self._open(key, f"{self._failures[key]} consecutive failures")
                return

            outcomes = self._outcomes[key]
            if len(outcomes) >= self.min_calls:
                rate = outcomes.count(False) / len(outcomes)
                if rate >= self.failure_rate_threshold:
                    self._open(key, f"failure rate {rate:.0%} over {len(outcomes)} calls")

    def _open(self, key: str, reason: str) -> None:
        self._state[key] = OPEN
        self._opened_at[key] = self._clock()
        self._trials[key] = 0
        logger.error(
            f"Circuit OPENED for {key}: {reason}. "
            f"Cooldown: {self.recovery_timeout}s. Last error: {self._last_error.get(key)}"
        )

    def get_status(self) -> dict:
        """Get status of all tracked capabilities."""
        with self._lock:
            result = {}
            for key in set(self._failures) | set(self._state):
                outcomes = self._outcomes[key]
                result[key] = {
                    "state": self._current_state(key),
                    "consecutive_failures": self._failures[key],
                    "recent_calls": len(outcomes),
                    "recent_failures": outcomes.count(False),
                    "last_error": self._last_error.get(key),
                }
            return result

    def reset(self, key: Optional[str] = None) -> None:
        """Reset breaker for one capability or all of them."""
        with self._lock:
            stores = (
                self._failures, self._opened_at, self._state,
                self._trials, self._outcomes, self._last_error,
            )
            for store in stores:
                if key:
                    store.pop(key, None)
                else:
                    store.clear()
