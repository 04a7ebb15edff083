"""
BulkWriter: throttled, batched, non-atomic writes.

Operations are queued and sent in ``batchWrite`` calls of up to
``max_batch_size`` writes. The scheduler never puts two operations on the
same document in flight at once, respects the rate limiter's token budget and
re-queues transient failures with a per-operation backoff. Every operation
settles independently: one failed write never fails its siblings.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Deque,
    Dict,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Union,
)

from loguru import logger

from ..batch import MAX_BATCH_SIZE, Precondition, build_create, build_delete, build_set, build_update
from ..errors import (
    BulkWriterClosedError,
    BulkWriterError,
    StatusCode,
    default_bulk_writer_retry,
    status_of,
)
from ..metrics.registry import metrics_registry
from ..models import BatchWriteResponse, Status, WriteResult
from ..path import ResourcePath
from ..transport import FirestoreMethod
from ..utils import request_tag
from .backoff import BackoffSettings, ExponentialBackoff
from .feedback import BackpressureLevel, FeedbackBus, FeedbackEvent
from .rate_limiter import (
    DEFAULT_CONTENTION_THRESHOLD,
    DEFAULT_CONTENTION_WINDOW_S,
    DEFAULT_INITIAL_OPS_PER_SECOND,
    DEFAULT_MAX_OPS_PER_SECOND,
    RATE_LIMITER_MULTIPLIER,
    RATE_LIMITER_WINDOW_S,
    Clock,
    RateLimiter,
)

if TYPE_CHECKING:
    from ..client import Firestore
    from ..reference import DocumentReference

DEFAULT_MAX_BATCH_SIZE = 20
DEFAULT_MAX_RETRY_ATTEMPTS = 10

ErrorPredicate = Callable[[BulkWriterError], bool]
ResultCallback = Callable[["DocumentReference", WriteResult], None]


@dataclass(frozen=True)
class ThrottlingOptions:
    enabled: bool = True
    initial_ops_per_second: int = DEFAULT_INITIAL_OPS_PER_SECOND
    max_ops_per_second: int = DEFAULT_MAX_OPS_PER_SECOND
    multiplier: float = RATE_LIMITER_MULTIPLIER
    window_s: float = RATE_LIMITER_WINDOW_S
    contention_threshold: int = DEFAULT_CONTENTION_THRESHOLD
    contention_window_s: float = DEFAULT_CONTENTION_WINDOW_S


@dataclass(frozen=True)
class BulkWriterOptions:
    """BulkWriter tuning.

    ``throttling`` accepts ``False`` to disable rate limiting entirely, or a
    ``ThrottlingOptions`` to change the ramp-up schedule.
    """

    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE
    max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    throttling: Union[bool, ThrottlingOptions] = True
    backoff: BackoffSettings = field(default_factory=lambda: BackoffSettings(jitter_factor=0.3))

    def __post_init__(self) -> None:
        if not 1 <= self.max_batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"max_batch_size must be within [1, {MAX_BATCH_SIZE}]")
        if self.max_retry_attempts < 0:
            raise ValueError("max_retry_attempts must be >= 0")

    @property
    def throttling_options(self) -> ThrottlingOptions:
        if isinstance(self.throttling, ThrottlingOptions):
            return self.throttling
        return ThrottlingOptions(enabled=bool(self.throttling))


class BulkWriterOperation:
    """One queued write plus its retry bookkeeping."""

    def __init__(
        self,
        ref: "DocumentReference",
        op_type: str,
        write: Dict[str, Any],
        future: asyncio.Future,
        backoff_settings: BackoffSettings,
    ):
        self.ref = ref
        self.op_type = op_type
        self.write = write
        self.future = future
        self.failed_attempts = 0
        self.last_error: Optional[BulkWriterError] = None
        self.ready_at = 0.0
        self._backoff = ExponentialBackoff(backoff_settings)

    @property
    def path(self) -> ResourcePath:
        return self.ref.resource_path

    def next_retry_delay(self, status: StatusCode) -> float:
        if status == StatusCode.RESOURCE_EXHAUSTED:
            self._backoff.reset_to_max()
        return self._backoff.next_delay()


class BulkWriter:
    """Created through ``Firestore.bulk_writer()``.

    Example:
        writer = db.bulk_writer()
        for row in rows:
            writer.set(db.doc(f"users/{row['id']}"), row)
        await writer.close()
    """

    def __init__(
        self,
        client: "Firestore",
        options: Optional[BulkWriterOptions] = None,
        *,
        bus: Optional[FeedbackBus] = None,
        clock: Optional[Clock] = None,
        writer_id: str = "default",
    ):
        self._client = client
        self._options = options or BulkWriterOptions()
        self._bus = bus
        self._writer_id = writer_id

        throttling = self._options.throttling_options
        self._rate_limiter: Optional[RateLimiter] = None
        if throttling.enabled:
            self._rate_limiter = RateLimiter(
                throttling.initial_ops_per_second,
                throttling.max_ops_per_second,
                multiplier=throttling.multiplier,
                window_s=throttling.window_s,
                contention_threshold=throttling.contention_threshold,
                contention_window_s=throttling.contention_window_s,
                clock=clock,
            )

        self._queue: Deque[BulkWriterOperation] = deque()
        self._in_flight: Dict[ResourcePath, BulkWriterOperation] = {}
        self._unsettled: Set[BulkWriterOperation] = set()
        self._batch_tasks: Set[asyncio.Task] = set()
        self._schedule_handle: Optional[asyncio.Handle] = None
        self._timer: Optional[asyncio.TimerHandle] = None

        self._error_predicate: ErrorPredicate = partial(
            default_bulk_writer_retry, max_attempts=self._options.max_retry_attempts
        )
        self._result_callbacks: List[ResultCallback] = []
        self._closed = False

    # ---------- public surface ----------

    @property
    def pending_count(self) -> int:
        """Operations enqueued but not yet settled (retries included)."""
        return len(self._unsettled)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def rate_limiter(self) -> Optional[RateLimiter]:
        return self._rate_limiter

    def create(self, ref: "DocumentReference", data: Mapping[str, Any]) -> asyncio.Future:
        self._verify_not_closed()
        return self._enqueue(ref, "create", build_create(self._client.serializer, ref, data))

    def set(self, ref: "DocumentReference", data: Mapping[str, Any], *, merge: bool = False) -> asyncio.Future:
        self._verify_not_closed()
        return self._enqueue(ref, "set", build_set(self._client.serializer, ref, data, merge=merge))

    def update(
        self,
        ref: "DocumentReference",
        data: Mapping[str, Any],
        precondition: Optional[Precondition] = None,
    ) -> asyncio.Future:
        self._verify_not_closed()
        return self._enqueue(
            ref, "update", build_update(self._client.serializer, ref, data, precondition)
        )

    def delete(self, ref: "DocumentReference", precondition: Optional[Precondition] = None) -> asyncio.Future:
        self._verify_not_closed()
        return self._enqueue(ref, "delete", build_delete(self._client.serializer, ref, precondition))

    def on_write_result(self, callback: ResultCallback) -> None:
        """Register ``callback(ref, result)``, called after every successful write."""
        self._result_callbacks.append(callback)

    def on_write_error(self, predicate: ErrorPredicate) -> None:
        """Replace the retry predicate; returning True re-queues the failed write."""
        self._error_predicate = predicate

    async def flush(self) -> None:
        """Wait until every operation enqueued so far has settled."""
        pending = [op.future for op in self._unsettled]
        if not pending:
            return
        self._schedule_soon()
        logger.debug(f"BulkWriter [{self._writer_id}] flushing {len(pending)} operations")
        await asyncio.wait(pending)

    async def close(self) -> None:
        """Flush, then reject every later enqueue with BulkWriterClosedError."""
        if not self._closed:
            self._closed = True
            logger.info(f"BulkWriter [{self._writer_id}] closing with {self.pending_count} pending operations")
        await self.flush()
        self._client._bulk_writer_closed(self)

    # ---------- queueing ----------

    def _verify_not_closed(self) -> None:
        if self._closed:
            raise BulkWriterClosedError()

    def _enqueue(self, ref: "DocumentReference", op_type: str, write: Dict[str, Any]) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        op = BulkWriterOperation(ref, op_type, write, loop.create_future(), self._options.backoff)
        self._queue.append(op)
        self._unsettled.add(op)
        self._schedule_soon()
        return op.future

    def _schedule_soon(self) -> None:
        # Coalesces synchronous enqueue loops into full batches.
        if self._schedule_handle is None:
            self._schedule_handle = asyncio.get_running_loop().call_soon(self._run_scheduler)

    def _run_scheduler(self) -> None:
        self._schedule_handle = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        loop = asyncio.get_running_loop()
        wake_at: Optional[float] = None

        while self._queue:
            now = loop.time()
            limit = self._options.max_batch_size
            if self._rate_limiter is not None:
                limit = min(limit, self._rate_limiter.ops_per_second())

            batch, ready_at = self._take_batch(now, limit)
            if ready_at is not None:
                wake_at = ready_at if wake_at is None else min(wake_at, ready_at)
            if not batch:
                break

            if self._rate_limiter is not None and not self._rate_limiter.try_make_request(len(batch)):
                delay = self._rate_limiter.get_next_request_delay(len(batch))
                self._queue.extendleft(reversed(batch))
                throttled_at = now + max(delay, 0.0)
                wake_at = throttled_at if wake_at is None else min(wake_at, throttled_at)
                logger.debug(
                    f"BulkWriter [{self._writer_id}] throttled; next batch in {delay * 1000:.0f}ms"
                )
                break

            self._send(batch)

        if wake_at is not None and self._queue:
            self._timer = loop.call_at(wake_at, self._run_scheduler)

    def _take_batch(self, now: float, limit: int) -> Tuple[List[BulkWriterOperation], Optional[float]]:
        """Pull up to ``limit`` dispatchable operations, keeping queue order for the rest."""
        batch: List[BulkWriterOperation] = []
        batch_paths: Set[ResourcePath] = set()
        kept: Deque[BulkWriterOperation] = deque()
        ready_at: Optional[float] = None

        while self._queue and len(batch) < limit:
            op = self._queue.popleft()
            owner = self._in_flight.get(op.path)
            if (owner is not None and owner is not op) or op.path in batch_paths:
                kept.append(op)
            elif op.ready_at > now:
                kept.append(op)
                ready_at = op.ready_at if ready_at is None else min(ready_at, op.ready_at)
            else:
                batch.append(op)
                batch_paths.add(op.path)

        kept.extend(self._queue)
        self._queue = kept
        return batch, ready_at

    def _send(self, batch: List[BulkWriterOperation]) -> None:
        for op in batch:
            self._in_flight[op.path] = op
        task = asyncio.ensure_future(self._send_batch(batch))
        self._batch_tasks.add(task)
        task.add_done_callback(self._batch_tasks.discard)

    # ---------- batch execution ----------

    async def _send_batch(self, batch: List[BulkWriterOperation]) -> None:
        tag = request_tag()
        outcomes: List[Union[WriteResult, BulkWriterError]]
        try:
            await self._client.initialize_if_needed(tag)
            logger.debug(f"BulkWriter._send_batch [{tag}] sending {len(batch)} writes")
            raw = await self._client._funnel.request(
                FirestoreMethod.BATCH_WRITE,
                {
                    "database": self._client.formatted_name,
                    "writes": [op.write for op in batch],
                },
                tag,
            )
            outcomes = self._match_results(batch, BatchWriteResponse.model_validate(raw))
        except Exception as e:
            # The whole RPC failed: every write in the batch sees the same error.
            logger.debug(f"BulkWriter._send_batch [{tag}] batch failed: {e}")
            status = status_of(e) or StatusCode.UNKNOWN
            message = getattr(e, "reason", None) or str(e)
            outcomes = [self._make_error(op, status, message) for op in batch]

        exhausted = 0
        for op, outcome in zip(batch, outcomes):
            if isinstance(outcome, BulkWriterError) and outcome.status == StatusCode.RESOURCE_EXHAUSTED:
                exhausted += 1
            self._process_outcome(op, outcome)

        await self._on_contention(exhausted)
        self._schedule_soon()

    def _match_results(
        self, batch: List[BulkWriterOperation], response: BatchWriteResponse
    ) -> List[Union[WriteResult, BulkWriterError]]:
        outcomes: List[Union[WriteResult, BulkWriterError]] = []
        for i, op in enumerate(batch):
            status = response.status[i] if i < len(response.status) else Status()
            if status.code == StatusCode.OK:
                result = response.write_results[i] if i < len(response.write_results) else WriteResult()
                outcomes.append(result)
            else:
                try:
                    code = StatusCode(status.code)
                except ValueError:
                    code = StatusCode.UNKNOWN
                outcomes.append(self._make_error(op, code, status.message))
        return outcomes

    def _make_error(self, op: BulkWriterOperation, status: StatusCode, message: str) -> BulkWriterError:
        op.failed_attempts += 1
        return BulkWriterError(status, message, op.ref, op.op_type, op.failed_attempts)

    def _process_outcome(
        self, op: BulkWriterOperation, outcome: Union[WriteResult, BulkWriterError]
    ) -> None:
        if isinstance(outcome, WriteResult):
            metrics_registry.bulk_writer_ops_total.labels(op_type=op.op_type, outcome="success").inc()
            self._settle(op)
            if not op.future.done():
                op.future.set_result(outcome)
            for callback in list(self._result_callbacks):
                try:
                    callback(op.ref, outcome)
                except Exception as e:
                    logger.warning(f"BulkWriter [{self._writer_id}] on_write_result callback failed: {e}")
            return

        op.last_error = outcome
        try:
            retry = bool(self._error_predicate(outcome))
        except Exception as e:
            logger.warning(f"BulkWriter [{self._writer_id}] on_write_error predicate raised: {e}")
            metrics_registry.bulk_writer_ops_total.labels(op_type=op.op_type, outcome="failure").inc()
            self._settle(op)
            if not op.future.done():
                op.future.set_exception(e)
            return

        if retry:
            delay = op.next_retry_delay(outcome.status)
            op.ready_at = asyncio.get_running_loop().time() + delay
            # Keeps its document slot; goes to the front so it is not starved.
            self._queue.appendleft(op)
            metrics_registry.bulk_writer_ops_total.labels(op_type=op.op_type, outcome="retry").inc()
            logger.debug(
                f"BulkWriter [{self._writer_id}] retrying {op.op_type} {op.ref.path} "
                f"in {delay * 1000:.0f}ms (attempt {op.failed_attempts}): {outcome.reason}"
            )
            return

        metrics_registry.bulk_writer_ops_total.labels(op_type=op.op_type, outcome="failure").inc()
        self._settle(op)
        if not op.future.done():
            op.future.set_exception(outcome)

    def _settle(self, op: BulkWriterOperation) -> None:
        if self._in_flight.get(op.path) is op:
            del self._in_flight[op.path]
        self._unsettled.discard(op)

    async def _on_contention(self, exhausted: int) -> None:
        if self._rate_limiter is None:
            return
        halved = exhausted > 0 and self._rate_limiter.on_resource_exhausted(exhausted)
        rate = self._rate_limiter.ops_per_second()
        metrics_registry.bulk_writer_ops_per_second.labels(writer=self._writer_id).set(rate)
        if halved and self._bus is not None:
            await self._bus.publish(
                FeedbackEvent(
                    source_id=f"bulk-writer:{self._writer_id}",
                    pending_ops=self.pending_count,
                    capacity=rate,
                    level=BackpressureLevel.SOFT,
                    reason="rate_reduced",
                )
            )
