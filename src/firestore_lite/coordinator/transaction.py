"""
Transaction coordinator.

Runs a user function inside a server transaction and retries the whole
function on contention. Within one attempt all reads must happen before the
first write: reads go to the server immediately, writes are buffered and sent
with the commit.
"""

from __future__ import annotations

import inspect
from datetime import datetime
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    TypeVar,
    Union,
)

from loguru import logger

from ..batch import Precondition, WriteBatch
from ..errors import StatusCode, TransactionUsageError, is_retryable_transaction_error, status_of
from ..metrics.registry import metrics_registry
from ..models import BeginTransactionResponse
from ..query import Query
from ..snapshot import DocumentSnapshot
from ..transport import FirestoreMethod
from ..utils import format_timestamp
from .backoff import BackoffSettings, ExponentialBackoff, SleepFn

if TYPE_CHECKING:
    from ..client import Firestore
    from ..reference import DocumentReference

T = TypeVar("T")

DEFAULT_MAX_TRANSACTION_ATTEMPTS = 5

READ_AFTER_WRITE_ERROR_MSG = "Firestore transactions require all reads to be executed before all writes."
WRITE_BEFORE_READ_ERROR_MSG = (
    "Firestore read-write transactions must read at least one document before writing."
)
READ_ONLY_WRITE_ERROR_MSG = "Firestore read-only transactions cannot execute writes."


class TransactionState(str, Enum):
    IDLE = "idle"
    STARTED = "started"
    RETRYING = "retrying"
    COMMITTED = "committed"
    FAILED = "failed"


class Transaction:
    """Handle passed to the update function of ``Firestore.run_transaction``."""

    def __init__(
        self,
        client: "Firestore",
        tag: str,
        *,
        read_only: bool = False,
        read_time: Optional[datetime] = None,
        backoff_settings: Optional[BackoffSettings] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        if read_time is not None and not read_only:
            raise ValueError("read_time is only supported for read-only transactions")
        self._client = client
        self._tag = tag
        self._read_only = read_only
        self._read_time = read_time
        self._backoff = ExponentialBackoff(backoff_settings, sleep=sleep)
        self._write_batch = WriteBatch(client)
        self._token: Optional[str] = None
        self._previous_token: Optional[str] = None
        self._reads_issued = False
        self._attempt = 0
        self.state = TransactionState.IDLE

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def read_only(self) -> bool:
        return self._read_only

    # ---------- reads ----------

    async def get(
        self, ref_or_query: Union["DocumentReference", Query]
    ) -> Union[DocumentSnapshot, List[DocumentSnapshot]]:
        """Read one document, or run a query, inside this transaction."""
        token = await self._before_read()
        if isinstance(ref_or_query, Query):
            return await ref_or_query.get(transaction=token, tag=self._tag)
        [snapshot] = await self._client.get_all(ref_or_query, transaction=token, tag=self._tag)
        return snapshot

    async def get_all(
        self, *refs: "DocumentReference", field_mask: Optional[List[str]] = None
    ) -> List[DocumentSnapshot]:
        token = await self._before_read()
        return await self._client.get_all(
            *refs, field_mask=field_mask, transaction=token, tag=self._tag
        )

    async def _before_read(self) -> str:
        if not self._write_batch.is_empty:
            raise TransactionUsageError(READ_AFTER_WRITE_ERROR_MSG)
        if self._token is None:
            await self._begin()
        self._reads_issued = True
        assert self._token is not None
        return self._token

    # ---------- buffered writes ----------

    def _before_write(self) -> None:
        if self._read_only:
            raise TransactionUsageError(READ_ONLY_WRITE_ERROR_MSG)
        if not self._reads_issued:
            raise TransactionUsageError(WRITE_BEFORE_READ_ERROR_MSG)

    def create(self, ref: "DocumentReference", data: Mapping[str, Any]) -> "Transaction":
        self._before_write()
        self._write_batch.create(ref, data)
        return self

    def set(self, ref: "DocumentReference", data: Mapping[str, Any], *, merge: bool = False) -> "Transaction":
        self._before_write()
        self._write_batch.set(ref, data, merge=merge)
        return self

    def update(
        self,
        ref: "DocumentReference",
        data: Mapping[str, Any],
        precondition: Optional[Precondition] = None,
    ) -> "Transaction":
        self._before_write()
        self._write_batch.update(ref, data, precondition)
        return self

    def delete(self, ref: "DocumentReference", precondition: Optional[Precondition] = None) -> "Transaction":
        self._before_write()
        self._write_batch.delete(ref, precondition)
        return self

    # ---------- protocol ----------

    async def _begin(self) -> None:
        options: Dict[str, Any]
        if self._read_only:
            read_only: Dict[str, Any] = {}
            if self._read_time is not None:
                read_only["readTime"] = format_timestamp(self._read_time)
            options = {"readOnly": read_only}
        else:
            read_write: Dict[str, Any] = {}
            if self._previous_token is not None:
                read_write["retryTransaction"] = self._previous_token
            options = {"readWrite": read_write}

        raw = await self._client._funnel.request(
            FirestoreMethod.BEGIN_TRANSACTION,
            {"database": self._client.formatted_name, "options": options},
            self._tag,
        )
        self._token = BeginTransactionResponse.model_validate(raw).transaction
        logger.debug(f"Transaction.begin [{self._tag}] attempt {self._attempt} began transaction")

    async def _commit(self) -> None:
        if self._token is None:
            # Nothing was read, so nothing can have been written.
            return
        # Keep the token on failure so the caller can roll it back.
        await self._write_batch.commit(transaction=self._token, tag=self._tag)
        self._previous_token, self._token = self._token, None

    async def _rollback(self) -> None:
        if self._token is None:
            return
        token, self._token = self._token, None
        self._previous_token = token
        try:
            await self._client._funnel.request(
                FirestoreMethod.ROLLBACK,
                {"database": self._client.formatted_name, "transaction": token},
                self._tag,
            )
        except Exception as e:
            logger.warning(f"Transaction.rollback [{self._tag}] failed (ignored): {e}")

    def _reset(self) -> None:
        self._write_batch = WriteBatch(self._client)
        self._reads_issued = False
        self._token = None

    async def _back_off(self, error: BaseException) -> None:
        if status_of(error) == StatusCode.RESOURCE_EXHAUSTED:
            self._backoff.reset_to_max()
        await self._backoff.back_off_and_wait()

    async def run(
        self,
        update_fn: Callable[["Transaction"], Union[Awaitable[T], T]],
        max_attempts: int = DEFAULT_MAX_TRANSACTION_ATTEMPTS,
    ) -> T:
        if self._read_only:
            max_attempts = 1
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            self._attempt = attempt
            if last_error is not None:
                self.state = TransactionState.RETRYING
                logger.warning(
                    f"Transaction.run [{self._tag}] retrying transaction "
                    f"(attempt {attempt}/{max_attempts}) after: {last_error}"
                )
                await self._back_off(last_error)
            self._reset()
            self.state = TransactionState.STARTED

            try:
                result = update_fn(self)
                if inspect.isawaitable(result):
                    result = await result
                await self._commit()
            except Exception as e:
                last_error = e
                await self._rollback()
                if self._read_only or not is_retryable_transaction_error(e):
                    logger.debug(f"Transaction.run [{self._tag}] failed with non-retryable error: {e}")
                    metrics_registry.transaction_attempts_total.labels(outcome="failed").inc()
                    self.state = TransactionState.FAILED
                    raise
                metrics_registry.transaction_attempts_total.labels(outcome="retried").inc()
                continue

            metrics_registry.transaction_attempts_total.labels(outcome="committed").inc()
            self.state = TransactionState.COMMITTED
            logger.debug(f"Transaction.run [{self._tag}] committed on attempt {attempt}")
            return result

        self.state = TransactionState.FAILED
        logger.debug(f"Transaction.run [{self._tag}] exhausted {max_attempts} attempts: {last_error}")
        assert last_error is not None
        raise last_error
