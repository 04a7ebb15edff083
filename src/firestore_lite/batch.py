"""
Write construction and atomic write batches.

The ``build_*`` helpers turn a reference plus native data into a REST
``Write``; WriteBatch, Transaction and BulkWriter all share them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

from loguru import logger

from .errors import StatusCode
from .models import CommitResponse, WriteResult
from .serializer import Serializer, expand_update_data, quote_field_path
from .transport import FirestoreMethod
from .utils import format_timestamp, request_tag

if TYPE_CHECKING:
    from .client import Firestore
    from .reference import DocumentReference

# Maximum number of writes the server accepts in one commit.
MAX_BATCH_SIZE = 500

# Commits outside a transaction are only retried when the request never reached the backend.
_COMMIT_RETRY_CODES = frozenset({StatusCode.UNAVAILABLE})


@dataclass(frozen=True)
class Precondition:
    exists: Optional[bool] = None
    last_update_time: Union[datetime, str, None] = None

    def to_wire(self) -> Optional[Dict[str, Any]]:
        if self.exists is not None and self.last_update_time is not None:
            raise ValueError("Precondition accepts either 'exists' or 'last_update_time', not both")
        if self.exists is not None:
            return {"exists": self.exists}
        if self.last_update_time is not None:
            ts = self.last_update_time
            return {"updateTime": ts if isinstance(ts, str) else format_timestamp(ts)}
        return None


def _leaf_paths(data: Mapping[str, Any], prefix: tuple = ()) -> List[str]:
    paths: List[str] = []
    for key, value in data.items():
        here = prefix + (key,)
        if isinstance(value, Mapping) and value:
            paths.extend(_leaf_paths(value, here))
        else:
            paths.append(quote_field_path(here))
    return paths


def _require_document(ref: Any) -> None:
    path = getattr(ref, "resource_path", None)
    if path is None or not path.is_document:
        raise ValueError(f"Expected a DocumentReference, got {ref!r}")


def build_create(serializer: Serializer, ref: "DocumentReference", data: Mapping[str, Any]) -> Dict[str, Any]:
    _require_document(ref)
    return {
        "update": {
            "name": serializer.document_name(ref.resource_path),
            "fields": serializer.encode_fields(data),
        },
        "currentDocument": {"exists": False},
    }


def build_set(
    serializer: Serializer,
    ref: "DocumentReference",
    data: Mapping[str, Any],
    *,
    merge: bool = False,
) -> Dict[str, Any]:
    _require_document(ref)
    write: Dict[str, Any] = {
        "update": {
            "name": serializer.document_name(ref.resource_path),
            "fields": serializer.encode_fields(data),
        }
    }
    if merge:
        write["updateMask"] = {"fieldPaths": _leaf_paths(data)}
    return write


def build_update(
    serializer: Serializer,
    ref: "DocumentReference",
    data: Mapping[str, Any],
    precondition: Optional[Precondition] = None,
) -> Dict[str, Any]:
    _require_document(ref)
    if not data:
        raise ValueError("At least one field must be updated.")
    nested, mask = expand_update_data(data)
    current = (precondition or Precondition(exists=True)).to_wire()
    return {
        "update": {
            "name": serializer.document_name(ref.resource_path),
            "fields": serializer.encode_fields(nested),
        },
        "updateMask": {"fieldPaths": mask},
        "currentDocument": current,
    }


def build_delete(
    serializer: Serializer,
    ref: "DocumentReference",
    precondition: Optional[Precondition] = None,
) -> Dict[str, Any]:
    _require_document(ref)
    write: Dict[str, Any] = {"delete": serializer.document_name(ref.resource_path)}
    current = precondition.to_wire() if precondition else None
    if current:
        write["currentDocument"] = current
    return write


class WriteBatch:
    """Accumulates writes and applies them atomically with ``commit()``."""

    def __init__(self, client: "Firestore"):
        self._client = client
        self._writes: List[Dict[str, Any]] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._writes)

    @property
    def is_empty(self) -> bool:
        return not self._writes

    @property
    def writes(self) -> List[Dict[str, Any]]:
        return list(self._writes)

    def _add(self, write: Dict[str, Any]) -> "WriteBatch":
        if self._committed:
            raise ValueError("Cannot modify a WriteBatch that has been committed.")
        if len(self._writes) >= MAX_BATCH_SIZE:
            raise ValueError(f"A WriteBatch may contain at most {MAX_BATCH_SIZE} writes.")
        self._writes.append(write)
        return self

    def create(self, ref: "DocumentReference", data: Mapping[str, Any]) -> "WriteBatch":
        return self._add(build_create(self._client.serializer, ref, data))

    def set(self, ref: "DocumentReference", data: Mapping[str, Any], *, merge: bool = False) -> "WriteBatch":
        return self._add(build_set(self._client.serializer, ref, data, merge=merge))

    def update(
        self,
        ref: "DocumentReference",
        data: Mapping[str, Any],
        precondition: Optional[Precondition] = None,
    ) -> "WriteBatch":
        return self._add(build_update(self._client.serializer, ref, data, precondition))

    def delete(self, ref: "DocumentReference", precondition: Optional[Precondition] = None) -> "WriteBatch":
        return self._add(build_delete(self._client.serializer, ref, precondition))

    def clear(self) -> None:
        self._writes.clear()

    async def commit(
        self,
        *,
        transaction: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> List[WriteResult]:
        """Apply all writes atomically; returns one WriteResult per write."""
        tag = tag or request_tag()
        await self._client.initialize_if_needed(tag)
        self._committed = True

        payload: Dict[str, Any] = {
            "database": self._client.formatted_name,
            "writes": list(self._writes),
        }
        if transaction is not None:
            payload["transaction"] = transaction

        logger.debug(f"WriteBatch.commit [{tag}] sending {len(self._writes)} writes")
        raw = await self._client._funnel.request(
            FirestoreMethod.COMMIT,
            payload,
            tag,
            retry_codes=None if transaction is not None else _COMMIT_RETRY_CODES,
        )
        response = CommitResponse.model_validate(raw)
        return [
            WriteResult(update_time=r.update_time or response.commit_time)
            for r in response.write_results
        ] or [WriteResult(update_time=response.commit_time) for _ in self._writes]
