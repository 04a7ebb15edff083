"""
firestore-lite: asyncio client for Cloud Firestore over REST.

Usage:
    from firestore_lite import Firestore

    async with Firestore(project_id="demo") as db:
        await db.run_transaction(transfer)

        writer = db.bulk_writer()
        writer.set(db.doc("users/alice"), {"name": "Alice"})
        await writer.close()

        await db.recursive_delete(db.collection("users"))
"""

from .batch import Precondition, WriteBatch
from .client import Firestore
from .config import FirestoreSettings, load_settings
from .coordinator import (
    BackpressureLevel,
    BulkWriter,
    BulkWriterOptions,
    FeedbackBus,
    FeedbackEvent,
    ThrottlingOptions,
    Transaction,
)
from .errors import (
    BulkWriterClosedError,
    BulkWriterError,
    ClientPoolTerminatedError,
    FirestoreError,
    InvalidPathError,
    RecursiveDeleteError,
    RpcError,
    StatusCode,
    TransactionUsageError,
)
from .models import WriteResult
from .query import Query
from .reference import CollectionReference, DocumentReference
from .serializer import GeoPoint
from .snapshot import DocumentSnapshot

__version__ = "0.1.0"
__all__ = [
    "Firestore",
    "FirestoreSettings",
    "load_settings",
    "DocumentReference",
    "CollectionReference",
    "Query",
    "DocumentSnapshot",
    "WriteBatch",
    "WriteResult",
    "Precondition",
    "GeoPoint",
    "Transaction",
    "BulkWriter",
    "BulkWriterOptions",
    "ThrottlingOptions",
    "BackpressureLevel",
    "FeedbackBus",
    "FeedbackEvent",
    # errors
    "FirestoreError",
    "RpcError",
    "StatusCode",
    "ClientPoolTerminatedError",
    "BulkWriterClosedError",
    "BulkWriterError",
    "TransactionUsageError",
    "InvalidPathError",
    "RecursiveDeleteError",
]
