"""
Structured queries.

Queries are immutable; every builder method returns a new Query. Execution
goes through the ``runQuery`` stream of the request funnel.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Tuple

from .models import RunQueryResponse
from .path import DOCUMENT_ID, ResourcePath
from .serializer import quote_field_path
from .snapshot import DocumentSnapshot
from .transport import FirestoreMethod
from .utils import format_timestamp, parse_timestamp, request_tag

if TYPE_CHECKING:
    from datetime import datetime

    from .client import Firestore

_OPERATORS = {
    "<": "LESS_THAN",
    "<=": "LESS_THAN_OR_EQUAL",
    "==": "EQUAL",
    "!=": "NOT_EQUAL",
    ">": "GREATER_THAN",
    ">=": "GREATER_THAN_OR_EQUAL",
    "array-contains": "ARRAY_CONTAINS",
    "in": "IN",
    "not-in": "NOT_IN",
    "array-contains-any": "ARRAY_CONTAINS_ANY",
}

_DIRECTIONS = {
    "asc": "ASCENDING",
    "ascending": "ASCENDING",
    "desc": "DESCENDING",
    "descending": "DESCENDING",
}


def _field_ref(field: str) -> Dict[str, str]:
    if field == DOCUMENT_ID:
        return {"fieldPath": DOCUMENT_ID}
    return {"fieldPath": quote_field_path(tuple(field.split(".")))}


@dataclass(frozen=True)
class QueryOptions:
    parent_path: ResourcePath
    collection_id: Optional[str]
    all_descendants: bool = False
    filters: Tuple[Tuple[str, str, Any], ...] = ()
    orders: Tuple[Tuple[str, str], ...] = ()
    limit: Optional[int] = None
    start_at: Optional[Tuple[Tuple[Any, ...], bool]] = None  # (values, before)
    end_at: Optional[Tuple[Tuple[Any, ...], bool]] = None
    projection: Optional[Tuple[str, ...]] = None


class Query:
    def __init__(self, client: "Firestore", options: QueryOptions):
        self._client = client
        self._options = options

    @property
    def options(self) -> QueryOptions:
        return self._options

    @property
    def firestore(self) -> "Firestore":
        return self._client

    def _with(self, **changes: Any) -> "Query":
        return Query(self._client, replace(self._options, **changes))

    # ---------- builders ----------

    def where(self, field: str, op: str, value: Any) -> "Query":
        if op not in _OPERATORS:
            raise ValueError(f"Invalid query operator {op!r}; expected one of {sorted(_OPERATORS)}")
        return self._with(filters=self._options.filters + ((field, op, value),))

    def order_by(self, field: str, direction: str = "asc") -> "Query":
        key = direction.lower()
        if key not in _DIRECTIONS:
            raise ValueError(f"Invalid direction {direction!r}; expected 'asc' or 'desc'")
        if self._options.start_at or self._options.end_at:
            raise ValueError("order_by() must be called before start_at()/start_after()/end_*()")
        return self._with(orders=self._options.orders + ((field, _DIRECTIONS[key]),))

    def limit(self, count: int) -> "Query":
        if not isinstance(count, int) or count < 0:
            raise ValueError("limit must be a non-negative integer")
        return self._with(limit=count)

    def select(self, *fields: str) -> "Query":
        return self._with(projection=tuple(fields))

    def start_at(self, *values: Any) -> "Query":
        return self._with(start_at=(values, True))

    def start_after(self, *values: Any) -> "Query":
        return self._with(start_at=(values, False))

    def end_before(self, *values: Any) -> "Query":
        return self._with(end_at=(values, True))

    def end_at(self, *values: Any) -> "Query":
        return self._with(end_at=(values, False))

    # ---------- wire format ----------

    def _encode_filter(self, field: str, op: str, value: Any) -> Dict[str, Any]:
        if op == "==" and value is None:
            return {"unaryFilter": {"field": _field_ref(field), "op": "IS_NULL"}}
        if op == "==" and isinstance(value, float) and value != value:
            return {"unaryFilter": {"field": _field_ref(field), "op": "IS_NAN"}}
        return {
            "fieldFilter": {
                "field": _field_ref(field),
                "op": _OPERATORS[op],
                "value": self._client.serializer.encode_value(value),
            }
        }

    def _encode_cursor(self, cursor: Tuple[Tuple[Any, ...], bool]) -> Dict[str, Any]:
        values, before = cursor
        encoded = []
        for v in values:
            if isinstance(v, DocumentSnapshot):
                v = v.reference
            encoded.append(self._client.serializer.encode_value(v))
        return {"values": encoded, "before": before}

    def to_structured_query(self) -> Dict[str, Any]:
        o = self._options
        selector: Dict[str, Any] = {}
        if o.collection_id is not None:
            selector["collectionId"] = o.collection_id
        if o.all_descendants:
            selector["allDescendants"] = True
        query: Dict[str, Any] = {"from": [selector]}

        if o.projection is not None:
            query["select"] = {"fields": [_field_ref(f) for f in o.projection]}
        if o.filters:
            encoded = [self._encode_filter(*f) for f in o.filters]
            if len(encoded) == 1:
                query["where"] = encoded[0]
            else:
                query["where"] = {"compositeFilter": {"op": "AND", "filters": encoded}}
        if o.orders:
            query["orderBy"] = [
                {"field": _field_ref(field), "direction": direction} for field, direction in o.orders
            ]
        if o.start_at is not None:
            query["startAt"] = self._encode_cursor(o.start_at)
        if o.end_at is not None:
            query["endAt"] = self._encode_cursor(o.end_at)
        if o.limit is not None:
            query["limit"] = o.limit
        return query

    def _request(self, transaction: Optional[str], read_time: Optional["datetime"]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "parent": self._client.serializer.document_name(self._options.parent_path),
            "structuredQuery": self.to_structured_query(),
        }
        if transaction is not None:
            payload["transaction"] = transaction
        elif read_time is not None:
            payload["readTime"] = format_timestamp(read_time)
        return payload

    # ---------- execution ----------

    async def stream(
        self,
        *,
        transaction: Optional[str] = None,
        read_time: Optional["datetime"] = None,
        tag: Optional[str] = None,
    ) -> AsyncIterator[DocumentSnapshot]:
        tag = tag or request_tag()
        await self._client.initialize_if_needed(tag)
        response_stream = await self._client._funnel.request_stream(
            FirestoreMethod.RUN_QUERY, self._request(transaction, read_time), tag
        )
        async with response_stream:
            async for item in response_stream:
                resp = RunQueryResponse.model_validate(item)
                if resp.document is None:
                    continue
                doc = resp.document
                yield DocumentSnapshot(
                    self._client.document_ref(ResourcePath.from_name(doc.name)),
                    self._client.serializer.decode_fields(doc.fields),
                    read_time=parse_timestamp(resp.read_time),
                    create_time=parse_timestamp(doc.create_time),
                    update_time=parse_timestamp(doc.update_time),
                )

    async def get(
        self,
        *,
        transaction: Optional[str] = None,
        read_time: Optional["datetime"] = None,
        tag: Optional[str] = None,
    ) -> List[DocumentSnapshot]:
        return [
            snap
            async for snap in self.stream(transaction=transaction, read_time=read_time, tag=tag)
        ]
