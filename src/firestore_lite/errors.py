"""
Custom exceptions for the Firestore client.

Provides structured error handling with retry classification and observability.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Dict, Optional


class StatusCode(IntEnum):
    """Canonical RPC status codes (shared by the gRPC and REST surfaces)."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


# HTTP fallbacks for error payloads that carry no textual status.
_HTTP_STATUS_CODES = {
    400: StatusCode.INVALID_ARGUMENT,
    401: StatusCode.UNAUTHENTICATED,
    403: StatusCode.PERMISSION_DENIED,
    404: StatusCode.NOT_FOUND,
    409: StatusCode.ABORTED,
    412: StatusCode.FAILED_PRECONDITION,
    429: StatusCode.RESOURCE_EXHAUSTED,
    499: StatusCode.CANCELLED,
    500: StatusCode.INTERNAL,
    501: StatusCode.UNIMPLEMENTED,
    503: StatusCode.UNAVAILABLE,
    504: StatusCode.DEADLINE_EXCEEDED,
}


class FirestoreError(Exception):
    """Base error for the Firestore client.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "FIRESTORE_ERROR"
        self.details = details or {}


class RpcError(FirestoreError):
    """An RPC failed with a canonical status code."""

    def __init__(
        self,
        status: StatusCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(f"{status.value} {status.name}: {message}", status.name, details)
        self.status = status
        self.reason = message


class ClientPoolTerminatedError(FirestoreError):
    """The client pool was terminated; no further requests are accepted."""

    def __init__(self) -> None:
        super().__init__("The client has already been terminated", code="POOL_TERMINATED")


class BulkWriterClosedError(FirestoreError):
    """A write was enqueued on a BulkWriter after close() was called."""

    def __init__(self) -> None:
        super().__init__(
            "BulkWriter has already been closed.",
            code="BULK_WRITER_CLOSED",
        )


class TransactionUsageError(FirestoreError):
    """Reads and writes were issued in an order the transaction cannot honour."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="TRANSACTION_USAGE")


class InvalidPathError(FirestoreError, ValueError):
    """A resource path is malformed or has the wrong shape."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="INVALID_PATH", details={"path": path})
        self.path = path


class BulkWriterError(RpcError):
    """A single BulkWriter operation failed.

    Passed to the ``on_write_error`` predicate, and used to fail the
    operation's future when it is not retried.
    """

    def __init__(
        self,
        status: StatusCode,
        message: str,
        document_ref: Any,
        operation_type: str,
        failed_attempts: int,
    ) -> None:
        super().__init__(
            status,
            message,
            details={
                "document": getattr(document_ref, "path", None),
                "operation_type": operation_type,
                "failed_attempts": failed_attempts,
            },
        )
        self.document_ref = document_ref
        self.operation_type = operation_type
        self.failed_attempts = failed_attempts


class RecursiveDeleteError(FirestoreError):
    """One or more deletes issued by recursive_delete() failed."""

    def __init__(self, failed: int, last_error: Optional[BaseException]) -> None:
        noun = "deletes" if failed != 1 else "delete"
        super().__init__(
            f"{failed} {noun} failed. The last delete failed with: {last_error}",
            code="RECURSIVE_DELETE_FAILED",
            details={"failed": failed},
        )
        self.failed = failed
        self.last_error = last_error


def map_http_error(http_status: int, body: Any) -> RpcError:
    """Convert a REST error payload into an RpcError.

    The REST surface returns ``{"error": {"code": 409, "status": "ABORTED",
    "message": "..."}}``; older proxies send a list with one such object.
    """
    if isinstance(body, list) and body:
        body = body[0]
    err = body.get("error", {}) if isinstance(body, dict) else {}
    message = err.get("message") or f"HTTP {http_status}"
    status_name = err.get("status")
    if status_name in StatusCode.__members__:
        status = StatusCode[status_name]
    else:
        status = _HTTP_STATUS_CODES.get(http_status, StatusCode.UNKNOWN)
    return RpcError(status, message, details={"http_status": http_status})


def status_of(err: BaseException) -> Optional[StatusCode]:
    return err.status if isinstance(err, RpcError) else None


# Status codes that never succeed on retry for idempotent streaming reads.
_PERMANENT_STREAM_CODES = {
    StatusCode.INVALID_ARGUMENT,
    StatusCode.NOT_FOUND,
    StatusCode.ALREADY_EXISTS,
    StatusCode.PERMISSION_DENIED,
    StatusCode.FAILED_PRECONDITION,
    StatusCode.OUT_OF_RANGE,
    StatusCode.UNIMPLEMENTED,
    StatusCode.DATA_LOSS,
    StatusCode.UNAUTHENTICATED,
}

_RETRYABLE_TRANSACTION_CODES = {
    StatusCode.ABORTED,
    StatusCode.CANCELLED,
    StatusCode.UNKNOWN,
    StatusCode.DEADLINE_EXCEEDED,
    StatusCode.INTERNAL,
    StatusCode.UNAVAILABLE,
    StatusCode.UNAUTHENTICATED,
    StatusCode.RESOURCE_EXHAUSTED,
}

BULK_WRITER_RETRY_CODES = frozenset(
    {
        StatusCode.RESOURCE_EXHAUSTED,
        StatusCode.ABORTED,
        StatusCode.UNAVAILABLE,
        StatusCode.DEADLINE_EXCEEDED,
    }
)


def is_permanent_rpc_error(err: BaseException) -> bool:
    """True when retrying a streaming read cannot help."""
    status = status_of(err)
    if status is None:
        # Non-RPC failures (bugs, bad arguments) are never retried.
        return True
    return status in _PERMANENT_STREAM_CODES


def is_retryable_transaction_error(err: BaseException) -> bool:
    status = status_of(err)
    if status is None:
        return False
    if status in _RETRYABLE_TRANSACTION_CODES:
        return True
    # The server reports idle transactions past their 60s lease this way.
    if status == StatusCode.INVALID_ARGUMENT:
        return "transaction has expired" in str(err).lower()
    return False


def default_bulk_writer_retry(error: "BulkWriterError", max_attempts: int = 10) -> bool:
    """Default ``on_write_error`` predicate: retry transient codes a bounded number of times."""
    return error.status in BULK_WRITER_RETRY_CODES and error.failed_attempts < max_attempts
