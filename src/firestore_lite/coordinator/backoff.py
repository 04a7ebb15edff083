"""
Exponential backoff with jitter.

Each call to ``next_delay()`` returns the current base delay with a random
jitter of up to ``±jitter_factor/2`` of it applied, then grows the base by
``backoff_factor`` up to ``max_delay_ms``. Random source and sleep function
are injectable so that tests get a deterministic sequence and no real waits.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from loguru import logger

DEFAULT_INITIAL_DELAY_MS = 1000
DEFAULT_BACKOFF_FACTOR = 1.5
DEFAULT_MAX_DELAY_MS = 60 * 1000
DEFAULT_JITTER_FACTOR = 1.0

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BackoffSettings:
    initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    jitter_factor: float = DEFAULT_JITTER_FACTOR

    def __post_init__(self) -> None:
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("backoff delays must be >= 0")
        if self.backoff_factor < 1.0:
            raise ValueError("backoff_factor must be >= 1.0")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be within [0, 1]")


class ExponentialBackoff:
    def __init__(
        self,
        settings: Optional[BackoffSettings] = None,
        *,
        rng: Optional[random.Random] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self._settings = settings or BackoffSettings()
        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep
        self._current_base_ms = float(self._settings.initial_delay_ms)
        self._retry_count = 0
        self._waiting = False

    @property
    def settings(self) -> BackoffSettings:
        return self._settings

    @property
    def retry_count(self) -> int:
        return self._retry_count

    def reset(self) -> None:
        """Restart the sequence at the initial delay."""
        self._current_base_ms = float(self._settings.initial_delay_ms)
        self._retry_count = 0

    def reset_to_max(self) -> None:
        """Make the next delay the maximum (e.g. after RESOURCE_EXHAUSTED)."""
        self._current_base_ms = float(self._settings.max_delay_ms)

    def next_delay(self) -> float:
        """Return the next delay in seconds and advance the sequence."""
        s = self._settings
        jitter = (self._rng.random() - 0.5) * s.jitter_factor * self._current_base_ms
        delay_ms = max(0.0, self._current_base_ms + jitter)

        self._current_base_ms = min(self._current_base_ms * s.backoff_factor, float(s.max_delay_ms))
        self._retry_count += 1
        return delay_ms / 1000.0

    async def back_off_and_wait(self) -> None:
        if self._waiting:
            raise RuntimeError("A backoff operation is already in progress.")
        delay = self.next_delay()
        if delay > 0:
            logger.debug(f"ExponentialBackoff: waiting {delay * 1000:.0f}ms before retrying")
        self._waiting = True
        try:
            await self._sleep(delay)
        finally:
            self._waiting = False
