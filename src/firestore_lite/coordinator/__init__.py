"""Request and write coordination.

- ExponentialBackoff with injectable randomness and sleep
- ClientPool multiplexing operations over transport clients
- RequestFunnel with retry policy and healthy-stream handoff
- Transaction retry loop
- BulkWriter with RateLimiter ramp-up and per-document serialization
- RecursiveDelete with pending-ops watermarks
- FeedbackBus for backpressure signals
"""

from .backoff import BackoffSettings, ExponentialBackoff
from .bulk_writer import BulkWriter, BulkWriterOperation, BulkWriterOptions, ThrottlingOptions
from .feedback import BackpressureLevel, FeedbackBus, FeedbackEvent, FeedbackSubscriber
from .funnel import MAX_REQUEST_RETRIES, RequestFunnel, ResponseStream, StreamState
from .gate import PendingOpsGate
from .pool import ClientPool
from .rate_limiter import RateLimiter
from .recursive_delete import RecursiveDelete
from .transaction import Transaction, TransactionState

__all__ = [
    # retry
    "BackoffSettings",
    "ExponentialBackoff",
    # transport coordination
    "ClientPool",
    "RequestFunnel",
    "ResponseStream",
    "StreamState",
    "MAX_REQUEST_RETRIES",
    # transactions
    "Transaction",
    "TransactionState",
    # bulk writes
    "BulkWriter",
    "BulkWriterOperation",
    "BulkWriterOptions",
    "ThrottlingOptions",
    "RateLimiter",
    "RecursiveDelete",
    # backpressure
    "BackpressureLevel",
    "FeedbackBus",
    "FeedbackEvent",
    "FeedbackSubscriber",
    "PendingOpsGate",
]
