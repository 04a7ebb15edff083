"""
Token-bucket rate limiter with a ramp-up schedule.

The allowed rate starts at ``initial_ops_per_second`` and is multiplied by
``multiplier`` for every full ``window_s`` that elapses, up to
``max_ops_per_second``. A burst of RESOURCE_EXHAUSTED results halves the rate
immediately and restarts the ramp window from the reduced rate.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque, Optional, Tuple

from loguru import logger

DEFAULT_INITIAL_OPS_PER_SECOND = 500
DEFAULT_MAX_OPS_PER_SECOND = 10_000
RATE_LIMITER_MULTIPLIER = 1.5
RATE_LIMITER_WINDOW_S = 5 * 60.0
DEFAULT_CONTENTION_THRESHOLD = 10
DEFAULT_CONTENTION_WINDOW_S = 1.0

Clock = Callable[[], float]


class RateLimiter:
    def __init__(
        self,
        initial_ops_per_second: int = DEFAULT_INITIAL_OPS_PER_SECOND,
        max_ops_per_second: int = DEFAULT_MAX_OPS_PER_SECOND,
        *,
        multiplier: float = RATE_LIMITER_MULTIPLIER,
        window_s: float = RATE_LIMITER_WINDOW_S,
        contention_threshold: int = DEFAULT_CONTENTION_THRESHOLD,
        contention_window_s: float = DEFAULT_CONTENTION_WINDOW_S,
        clock: Optional[Clock] = None,
    ) -> None:
        if initial_ops_per_second < 1:
            raise ValueError("initial_ops_per_second must be >= 1")
        if max_ops_per_second < initial_ops_per_second:
            raise ValueError("max_ops_per_second must be >= initial_ops_per_second")
        if multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if window_s <= 0:
            raise ValueError("window_s must be > 0")

        self._clock = clock or time.monotonic
        self._max_ops = max_ops_per_second
        self._multiplier = multiplier
        self._window_s = window_s
        self._contention_threshold = contention_threshold
        self._contention_window_s = contention_window_s

        now = self._clock()
        self._base_ops = initial_ops_per_second
        self._window_start = now
        self._tokens = float(initial_ops_per_second)
        self._last_refill = now
        self._exhausted: Deque[Tuple[float, int]] = deque()

    # ---------- rate ----------

    def ops_per_second(self, now: Optional[float] = None) -> int:
        """Currently allowed rate (also the bucket capacity)."""
        now = self._clock() if now is None else now
        windows = int(max(0.0, now - self._window_start) // self._window_s)
        rate = int(self._base_ops * (self._multiplier**windows))
        return max(1, min(self._max_ops, rate))

    def _refill(self, now: float) -> None:
        rate = self.ops_per_second(now)
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(rate), self._tokens + elapsed * rate)
        self._last_refill = now

    # ---------- tokens ----------

    def try_make_request(self, num_operations: int) -> bool:
        """Consume tokens for ``num_operations`` if available right now."""
        now = self._clock()
        self._refill(now)
        if num_operations <= self._tokens:
            self._tokens -= num_operations
            return True
        return False

    def get_next_request_delay(self, num_operations: int) -> float:
        """Seconds until ``num_operations`` tokens are available; -1 if never."""
        now = self._clock()
        self._refill(now)
        rate = self.ops_per_second(now)
        if num_operations > rate:
            return -1.0
        if num_operations <= self._tokens:
            return 0.0
        return (num_operations - self._tokens) / rate

    # ---------- contention ----------

    def on_resource_exhausted(self, count: int = 1) -> bool:
        """Record exhausted results; returns True if the rate was halved."""
        now = self._clock()
        self._exhausted.append((now, count))
        while self._exhausted and now - self._exhausted[0][0] > self._contention_window_s:
            self._exhausted.popleft()
        if sum(n for _, n in self._exhausted) < self._contention_threshold:
            return False

        current = self.ops_per_second(now)
        self._refill(now)
        self._base_ops = max(1, current // 2)
        self._window_start = now
        self._tokens = min(self._tokens, float(self._base_ops))
        self._exhausted.clear()
        logger.warning(
            f"RateLimiter: sustained RESOURCE_EXHAUSTED, rate reduced {current} -> {self._base_ops} ops/s"
        )
        return True
