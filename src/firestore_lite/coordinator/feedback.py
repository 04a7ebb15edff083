"""
Backpressure feedback for the write pipeline.

In-process pub/sub for throttling signals: recursive delete reports when it
stops fetching because too many deletes are unsettled, and BulkWriter reports
when contention forced it to cut its rate. Each ``Firestore`` instance owns
its own bus.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from loguru import logger


class BackpressureLevel(str, Enum):
    """Backpressure severity levels."""

    OK = "ok"  # producer may run at full speed
    SOFT = "soft"  # throughput reduced by the server
    HARD = "hard"  # producer is paused


@dataclass(frozen=True)
class FeedbackEvent:
    """Immutable backpressure event.

    Attributes:
        source_id: Emitting component (e.g. "recursive-delete:users/alice")
        pending_ops: Unsettled operations at the time of the event
        capacity: Operations the source allows before it pauses (or its rate)
        level: Backpressure severity
        reason: Optional context (e.g. "high_watermark", "rate_reduced")
    """

    source_id: str
    pending_ops: int
    capacity: int
    level: BackpressureLevel
    reason: str | None = None

    @property
    def utilization(self) -> float:
        """Pending operations relative to capacity (0.0 when capacity is 0)."""
        return self.pending_ops / self.capacity if self.capacity > 0 else 0.0


class FeedbackSubscriber(Protocol):
    async def __call__(self, event: FeedbackEvent) -> None: ...


class FeedbackBus:
    """Pub/sub bus with error-isolated async subscribers.

    Example:
        async def on_feedback(event: FeedbackEvent):
            if event.level == BackpressureLevel.HARD:
                logger.info(f"{event.source_id} paused")

        db.feedback.subscribe(on_feedback)
    """

    def __init__(self) -> None:
        self._subs: list[FeedbackSubscriber] = []

    def subscribe(self, callback: FeedbackSubscriber) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Feedback subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: FeedbackSubscriber) -> None:
        """Remove a subscriber; no-op if it was never added."""
        if callback in self._subs:
            self._subs.remove(callback)
            logger.debug(f"Feedback subscriber removed (total: {len(self._subs)})")

    async def publish(self, event: FeedbackEvent) -> None:
        """Deliver ``event`` to every subscriber in registration order.

        A failing subscriber is logged and skipped; the others still run.
        """
        if not self._subs:
            return

        logger.debug(
            f"Publishing feedback: source={event.source_id} "
            f"level={event.level.value} "
            f"pending={event.pending_ops}/{event.capacity} ({event.utilization:.1%})"
        )

        # Copy so subscribers may unsubscribe while being called.
        for callback in list(self._subs):
            try:
                await callback(event)
            except Exception as exc:
                logger.warning(f"Feedback subscriber error (ignored): {type(exc).__name__}: {exc}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)
