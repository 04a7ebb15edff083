"""
Firestore client: the composition root.

Builds the client pool and request funnel for one database and hands them to
references, queries, transactions, bulk writers and recursive deletes.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Set,
    TypeVar,
    Union,
)

from loguru import logger

from .batch import WriteBatch
from .config import FirestoreSettings, load_settings
from .coordinator.backoff import BackoffSettings, SleepFn
from .coordinator.bulk_writer import BulkWriter, BulkWriterOptions, ThrottlingOptions
from .coordinator.feedback import FeedbackBus
from .coordinator.funnel import RequestFunnel
from .coordinator.pool import ClientPool
from .coordinator.recursive_delete import MAX_PENDING_OPS, MIN_PENDING_OPS, RecursiveDelete
from .coordinator.transaction import DEFAULT_MAX_TRANSACTION_ATTEMPTS, Transaction
from .errors import FirestoreError
from .models import BatchGetResponse
from .path import EMPTY_PATH, ResourcePath, collection_path, document_path
from .query import Query, QueryOptions
from .reference import CollectionReference, DocumentReference, list_collection_ids
from .serializer import Serializer
from .snapshot import DocumentSnapshot
from .transport import FirestoreMethod, RestTransport, TokenProvider, Transport
from .utils import format_timestamp, parse_timestamp, request_tag

T = TypeVar("T")

TransportFactory = Callable[[FirestoreSettings], Transport]


def build_pool(settings: FirestoreSettings, transport_factory: TransportFactory) -> ClientPool[Transport]:
    return ClientPool(
        settings.max_concurrent_per_client,
        settings.max_pool_size,
        settings.max_idle_clients,
        client_factory=lambda: transport_factory(settings),
        client_destructor=lambda transport: transport.close(),
    )


def build_funnel(
    settings: FirestoreSettings,
    pool: ClientPool[Transport],
    resource_prefix: Callable[[], str],
    sleep: Optional[SleepFn] = None,
) -> RequestFunnel:
    return RequestFunnel(
        pool,
        resource_prefix,
        custom_headers=settings.custom_headers,
        backoff_settings=BackoffSettings(
            initial_delay_ms=settings.initial_retry_delay_ms,
            backoff_factor=settings.retry_delay_multiplier,
            max_delay_ms=settings.max_retry_delay_ms,
        ),
        timeout_s=settings.timeout_s,
        sleep=sleep,
    )


class Firestore:
    """Entry point for one database.

    Example:
        async with Firestore(project_id="demo") as db:
            await db.doc("users/alice").set({"name": "Alice"})
            snap = await db.doc("users/alice").get()
    """

    def __init__(
        self,
        settings: Optional[FirestoreSettings] = None,
        *,
        transport_factory: Optional[TransportFactory] = None,
        token_provider: Optional[TokenProvider] = None,
        sleep: Optional[SleepFn] = None,
        **overrides: Any,
    ) -> None:
        if settings is None:
            settings = load_settings(**overrides)
        elif overrides:
            settings = settings.model_copy(update=overrides)
        self._settings = settings

        if transport_factory is None:

            def transport_factory(s: FirestoreSettings) -> Transport:
                return RestTransport(s, token_provider=token_provider)

        self._sleep = sleep
        self._pool = build_pool(settings, transport_factory)
        self._funnel = build_funnel(settings, self._pool, lambda: self.formatted_name, sleep)
        self._serializer: Optional[Serializer] = None
        self._feedback = FeedbackBus()
        self._bulk_writers: Set[BulkWriter] = set()
        self._writer_seq = 0
        self._initialized = False

    # ---------- identity ----------

    @property
    def settings(self) -> FirestoreSettings:
        return self._settings

    @property
    def project_id(self) -> str:
        if not self._settings.project_id:
            raise FirestoreError(
                "No project id configured. Pass project_id= or set FIRESTORE_PROJECT_ID.",
                code="MISSING_PROJECT_ID",
            )
        return self._settings.project_id

    @property
    def database_id(self) -> str:
        return self._settings.database_id

    @property
    def formatted_name(self) -> str:
        """``projects/{project}/databases/{database}``"""
        return f"projects/{self.project_id}/databases/{self.database_id}"

    @property
    def serializer(self) -> Serializer:
        if self._serializer is None:
            self._serializer = Serializer(self.project_id, self.database_id, self.document_ref)
        return self._serializer

    @property
    def feedback(self) -> FeedbackBus:
        """Backpressure events from this client's bulk writers and recursive deletes."""
        return self._feedback

    @property
    def pool(self) -> ClientPool[Transport]:
        return self._pool

    async def initialize_if_needed(self, tag: str) -> None:
        if self._initialized:
            return
        logger.debug(f"Firestore.initializeIfNeeded [{tag}] using project {self.project_id}")
        self._initialized = True

    # ---------- references ----------

    def document_ref(self, path: ResourcePath) -> DocumentReference:
        return DocumentReference(self, path)

    def doc(self, path: str) -> DocumentReference:
        return DocumentReference(self, document_path(path))

    def collection(self, path: str) -> CollectionReference:
        return CollectionReference(self, collection_path(path))

    def collection_group(self, collection_id: str) -> Query:
        """Query every collection named ``collection_id``, at any depth."""
        if not collection_id or "/" in collection_id:
            raise ValueError(f"Invalid collection id {collection_id!r}; it must not contain '/'")
        return Query(self, QueryOptions(EMPTY_PATH, collection_id, all_descendants=True))

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    # ---------- reads ----------

    async def get_all(
        self,
        *refs: DocumentReference,
        field_mask: Optional[List[str]] = None,
        transaction: Optional[str] = None,
        read_time: Optional[datetime] = None,
        tag: Optional[str] = None,
    ) -> List[DocumentSnapshot]:
        """Fetch documents in one batchGet stream; results follow the order of ``refs``."""
        if not refs:
            return []
        tag = tag or request_tag()
        await self.initialize_if_needed(tag)

        names = list(dict.fromkeys(self.serializer.document_name(r.resource_path) for r in refs))
        payload: Dict[str, Any] = {"database": self.formatted_name, "documents": names}
        if field_mask is not None:
            payload["mask"] = {"fieldPaths": list(field_mask)}
        if transaction is not None:
            payload["transaction"] = transaction
        elif read_time is not None:
            payload["readTime"] = format_timestamp(read_time)

        by_name: Dict[str, DocumentSnapshot] = {}
        stream = await self._funnel.request_stream(FirestoreMethod.BATCH_GET_DOCUMENTS, payload, tag)
        async with stream:
            async for item in stream:
                resp = BatchGetResponse.model_validate(item)
                read_at = parse_timestamp(resp.read_time)
                if resp.found is not None:
                    doc = resp.found
                    by_name[doc.name] = DocumentSnapshot(
                        self.document_ref(ResourcePath.from_name(doc.name)),
                        self.serializer.decode_fields(doc.fields),
                        read_time=read_at,
                        create_time=parse_timestamp(doc.create_time),
                        update_time=parse_timestamp(doc.update_time),
                    )
                elif resp.missing is not None:
                    by_name[resp.missing] = DocumentSnapshot(
                        self.document_ref(ResourcePath.from_name(resp.missing)),
                        None,
                        read_time=read_at,
                    )

        snapshots: List[DocumentSnapshot] = []
        for ref in refs:
            name = self.serializer.document_name(ref.resource_path)
            if name not in by_name:
                raise FirestoreError(f"Did not receive document for {ref.path!r}", code="MISSING_RESULT")
            snapshots.append(by_name[name])
        return snapshots

    async def list_collections(self) -> List[CollectionReference]:
        """Root collections of the database."""
        return await self._list_collections(EMPTY_PATH)

    async def _list_collections(self, parent: ResourcePath) -> List[CollectionReference]:
        ids = await list_collection_ids(self, parent)
        return [CollectionReference(self, parent.append(collection_id)) for collection_id in ids]

    # ---------- transactions ----------

    async def run_transaction(
        self,
        update_fn: Callable[[Transaction], Union[Awaitable[T], T]],
        *,
        max_attempts: int = DEFAULT_MAX_TRANSACTION_ATTEMPTS,
        read_only: bool = False,
        read_time: Optional[datetime] = None,
    ) -> T:
        """Run ``update_fn`` in a transaction, retrying it on contention.

        ``update_fn`` may be a plain function or a coroutine function. Its
        return value is returned once the transaction commits.
        """
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            raise ValueError("max_attempts must be an integer >= 1")
        if read_time is not None and not read_only:
            raise ValueError("read_time is only supported for read-only transactions")

        tag = request_tag()
        await self.initialize_if_needed(tag)
        transaction = Transaction(
            self,
            tag,
            read_only=read_only,
            read_time=read_time,
            sleep=self._sleep,
        )
        return await transaction.run(update_fn, max_attempts)

    # ---------- bulk writes ----------

    def bulk_writer(
        self,
        options: Optional[BulkWriterOptions] = None,
        *,
        throttling: Union[bool, ThrottlingOptions, None] = None,
    ) -> BulkWriter:
        options = options or BulkWriterOptions()
        if throttling is not None:
            options = replace(options, throttling=throttling)
        self._writer_seq += 1
        writer = BulkWriter(self, options, bus=self._feedback, writer_id=str(self._writer_seq))
        self._bulk_writers.add(writer)
        return writer

    def _bulk_writer_closed(self, writer: BulkWriter) -> None:
        self._bulk_writers.discard(writer)

    async def recursive_delete(
        self,
        ref: Union[DocumentReference, CollectionReference],
        bulk_writer: Optional[BulkWriter] = None,
        *,
        max_pending_ops: int = MAX_PENDING_OPS,
        min_pending_ops: int = MIN_PENDING_OPS,
    ) -> None:
        """Delete ``ref`` and every document beneath it."""
        writer = bulk_writer or self.bulk_writer()
        try:
            await RecursiveDelete(
                self,
                writer,
                ref,
                max_pending_ops,
                min_pending_ops,
                bus=self._feedback,
            ).run()
        finally:
            if bulk_writer is None:
                await writer.close()

    # ---------- lifecycle ----------

    async def terminate(self) -> None:
        """Wait for in-flight requests and release every transport client."""
        if self._bulk_writers:
            raise FirestoreError(
                "All BulkWriter instances must be closed before terminating the client.",
                code="BULK_WRITERS_OPEN",
            )
        logger.info("Firestore.terminate: shutting down client pool")
        await self._pool.terminate()

    async def __aenter__(self) -> "Firestore":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.terminate()
