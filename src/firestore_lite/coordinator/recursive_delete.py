"""
Recursive delete driver.

Deletes a document or collection together with everything beneath it. The
subtree is listed page by page with a kindless all-descendants query that
only selects document names, in descending name order so each document is
listed once even while deletes are in progress. Every document is deleted
through a BulkWriter; fetching pauses while too many deletes are unsettled.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, List, Optional, Union

from loguru import logger

from ..errors import RecursiveDeleteError
from ..path import DOCUMENT_ID, ResourcePath
from ..query import Query, QueryOptions
from ..utils import request_tag
from .feedback import FeedbackBus
from .gate import PendingOpsGate

if TYPE_CHECKING:
    from ..client import Firestore
    from ..reference import CollectionReference, DocumentReference
    from .bulk_writer import BulkWriter

MAX_PENDING_OPS = 5000
MIN_PENDING_OPS = 1000

# Smallest possible document id; bounds the name range of one collection.
REFERENCE_NAME_MIN_ID = "__id-9223372036854775808__"


class RecursiveDelete:
    def __init__(
        self,
        client: "Firestore",
        writer: "BulkWriter",
        ref: Union["DocumentReference", "CollectionReference"],
        max_pending_ops: int = MAX_PENDING_OPS,
        min_pending_ops: int = MIN_PENDING_OPS,
        *,
        bus: Optional[FeedbackBus] = None,
    ):
        if max_pending_ops < 1:
            raise ValueError("max_pending_ops must be >= 1")
        if not 0 <= min_pending_ops <= max_pending_ops:
            raise ValueError("min_pending_ops must be within [0, max_pending_ops]")
        self._client = client
        self._writer = writer
        self._ref = ref
        self._max_pending_ops = max_pending_ops
        self._gate = PendingOpsGate(
            max_pending_ops,
            min_pending_ops,
            source_id=f"recursive-delete:{ref.path}",
            bus=bus,
        )
        self._tag = request_tag()
        self._errors_count = 0
        self._last_error: Optional[BaseException] = None
        self._pages_fetched = 0

    @property
    def pages_fetched(self) -> int:
        return self._pages_fetched

    def _descendants_query(self, start_after: Optional["DocumentReference"]) -> Query:
        path = self._ref.resource_path
        if path.is_document:
            options = QueryOptions(parent_path=path, collection_id=None, all_descendants=True)
        else:
            options = QueryOptions(parent_path=path.parent(), collection_id=None, all_descendants=True)

        query = Query(self._client, options).select(DOCUMENT_ID)
        if path.is_collection:
            # Every document of the collection sorts between these two names.
            lower = ResourcePath(path.segments + (REFERENCE_NAME_MIN_ID,))
            upper = ResourcePath(path.segments[:-1] + (path.id + "\0", REFERENCE_NAME_MIN_ID))
            query = query.where(DOCUMENT_ID, ">=", self._client.document_ref(lower)).where(
                DOCUMENT_ID, "<", self._client.document_ref(upper)
            )
        query = query.order_by(DOCUMENT_ID, "desc").limit(self._max_pending_ops)
        if start_after is not None:
            query = query.start_after(start_after)
        return query

    async def _fetch_page(self, start_after: Optional["DocumentReference"]) -> List["DocumentReference"]:
        snapshots = await self._descendants_query(start_after).get(tag=self._tag)
        self._pages_fetched += 1
        return [snapshot.reference for snapshot in snapshots]

    async def run(self) -> None:
        logger.debug(f"RecursiveDelete.run [{self._tag}] deleting {self._ref.path}")
        last_ref: Optional["DocumentReference"] = None

        while True:
            await self._gate.wait_for_capacity()
            try:
                page = await self._fetch_page(last_ref)
            except Exception as e:
                logger.warning(f"RecursiveDelete.run [{self._tag}] failed to fetch descendants: {e}")
                self._record_failure(e)
                break

            for ref in page:
                await self._delete(ref)
            if page:
                last_ref = page[-1]
            if len(page) < self._max_pending_ops:
                break

        if self._ref.resource_path.is_document:
            await self._delete(self._ref)

        await self._gate.wait_idle()
        logger.debug(
            f"RecursiveDelete.run [{self._tag}] finished after {self._pages_fetched} pages "
            f"with {self._errors_count} failures"
        )
        if self._errors_count:
            raise RecursiveDeleteError(self._errors_count, self._last_error)

    async def _delete(self, ref: "DocumentReference") -> None:
        await self._gate.acquire()
        try:
            future = self._writer.delete(ref)
        except Exception:
            self._gate.release()
            raise
        future.add_done_callback(self._on_delete_settled)

    def _on_delete_settled(self, future: asyncio.Future) -> None:
        self._gate.release()
        if future.cancelled():
            self._record_failure(asyncio.CancelledError())
        elif future.exception() is not None:
            self._record_failure(future.exception())

    def _record_failure(self, error: BaseException) -> None:
        self._errors_count += 1
        self._last_error = error
