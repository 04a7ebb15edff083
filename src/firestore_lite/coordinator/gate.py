"""
Pending-operations gate with high/low watermarks.

Producers call ``acquire()`` before issuing an operation and ``release()``
when it settles. Once the high watermark is reached ``acquire()`` blocks until
the count falls to the low watermark, emitting HARD on pause and OK on resume.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from loguru import logger

from .feedback import BackpressureLevel, FeedbackBus, FeedbackEvent


class PendingOpsGate:
    def __init__(
        self,
        high_watermark: int,
        low_watermark: int,
        *,
        source_id: str = "pending-ops",
        bus: Optional[FeedbackBus] = None,
    ):
        if high_watermark <= 0:
            raise ValueError("high_watermark must be > 0")
        if not 0 <= low_watermark <= high_watermark:
            raise ValueError("low_watermark must be within [0, high_watermark]")

        self._high_wm = high_watermark
        self._low_wm = low_watermark
        self._source_id = source_id
        self._bus = bus
        self._pending = 0
        self._high_fired = False  # avoid duplicate signals

        self._below_low = asyncio.Event()
        self._below_low.set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def pending(self) -> int:
        return self._pending

    @property
    def paused(self) -> bool:
        return self._high_fired

    async def wait_for_capacity(self) -> None:
        """Return at once below the high watermark, else after draining to the low one."""
        if self._pending >= self._high_wm:
            await self._pause()

    async def acquire(self) -> None:
        """Count one more in-flight operation, waiting first if saturated."""
        await self.wait_for_capacity()
        self._pending += 1
        self._idle.clear()

    def release(self) -> None:
        """Mark one operation as settled. Safe to call from done-callbacks."""
        if self._pending <= 0:
            raise RuntimeError("release() called more times than acquire()")
        self._pending -= 1
        if self._pending <= self._low_wm:
            self._below_low.set()
        if self._pending == 0:
            self._idle.set()

    async def wait_idle(self) -> None:
        """Wait until every acquired operation has been released."""
        await self._idle.wait()

    async def _pause(self) -> None:
        self._below_low.clear()
        self._high_fired = True
        logger.debug(
            f"PendingOpsGate [{self._source_id}] pausing at {self._pending} pending operations"
        )
        await self._signal(BackpressureLevel.HARD, "high_watermark")
        await self._below_low.wait()
        self._high_fired = False
        logger.debug(
            f"PendingOpsGate [{self._source_id}] resuming at {self._pending} pending operations"
        )
        await self._signal(BackpressureLevel.OK, "low_watermark")

    async def _signal(self, level: BackpressureLevel, reason: str) -> None:
        if self._bus is None:
            return
        await self._bus.publish(
            FeedbackEvent(
                source_id=self._source_id,
                pending_ops=self._pending,
                capacity=self._high_wm,
                level=level,
                reason=reason,
            )
        )
