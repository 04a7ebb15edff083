"""
Unit tests for recursive delete paging, pacing and failure aggregation.
"""

import pytest

from firestore_lite.coordinator.feedback import BackpressureLevel
from firestore_lite.coordinator.recursive_delete import REFERENCE_NAME_MIN_ID
from firestore_lite.errors import RecursiveDeleteError, RpcError, StatusCode
from firestore_lite.transport import FirestoreMethod

RUN_QUERY = FirestoreMethod.RUN_QUERY
BATCH_WRITE = FirestoreMethod.BATCH_WRITE

DESCENDANTS = [
    "users/alice/posts/p1",
    "users/alice/posts/p2",
    "users/alice/posts/p2/comments/c1",
    "users/alice/posts/p3",
    "users/alice/likes/l1",
    "users/alice/likes/l2",
    "users/alice/settings/s",
]


@pytest.fixture
def deleted(server):
    """Names deleted through batchWrite; deletes of names in the returned set fail."""
    names = []
    deny = set()

    def batch_write(request):
        statuses = []
        for write in request["writes"]:
            names.append(write["delete"])
            if write["delete"] in deny:
                statuses.append({"code": StatusCode.PERMISSION_DENIED, "message": "missing permission"})
            else:
                statuses.append({})
        return {"writeResults": [{} for _ in statuses], "status": statuses}

    server.handle(BATCH_WRITE, batch_write)
    return names, deny


def serve_subtree(server, doc_name, paths):
    """Answer runQuery like the backend: descending names after the cursor, up to the limit."""
    names = sorted((doc_name(p) for p in paths), reverse=True)

    def run_query(request):
        query = request["structuredQuery"]
        candidates = names
        if "startAt" in query:
            cursor = query["startAt"]["values"][0]["referenceValue"]
            candidates = [n for n in names if n < cursor]
        return [
            {"document": {"name": n}, "readTime": "2024-01-01T00:00:00Z"}
            for n in candidates[: query["limit"]]
        ]

    server.handle(RUN_QUERY, run_query)
    return names


@pytest.mark.asyncio
async def test_document_subtree_is_paged_in_descending_order(db, server, doc_name, deleted):
    names, _ = deleted
    expected = serve_subtree(server, doc_name, DESCENDANTS)
    events = []

    async def on_feedback(event):
        events.append(event.level)

    db.feedback.subscribe(on_feedback)

    await db.recursive_delete(db.doc("users/alice"), max_pending_ops=3, min_pending_ops=1)

    queries = server.requests(RUN_QUERY)
    # 7 descendants in pages of 3.
    assert len(queries) == 3

    first = queries[0]
    assert first["parent"] == doc_name("users/alice")
    structured = first["structuredQuery"]
    assert structured["from"] == [{"allDescendants": True}]
    assert structured["select"] == {"fields": [{"fieldPath": "__name__"}]}
    assert structured["orderBy"] == [{"field": {"fieldPath": "__name__"}, "direction": "DESCENDING"}]
    assert structured["limit"] == 3
    assert "startAt" not in structured

    cursors = [q["structuredQuery"]["startAt"] for q in queries[1:]]
    assert cursors == [
        {"values": [{"referenceValue": expected[2]}], "before": False},
        {"values": [{"referenceValue": expected[5]}], "before": False},
    ]

    # Every descendant once, in listing order, then the root.
    assert names == expected + [doc_name("users/alice")]
    assert BackpressureLevel.HARD in events
    assert events[-1] == BackpressureLevel.OK


@pytest.mark.asyncio
async def test_collection_is_bounded_by_name_range(db, server, doc_name, deleted):
    names, _ = deleted
    serve_subtree(server, doc_name, ["users/alice", "users/bob", "users/bob/posts/p1"])

    await db.recursive_delete(db.collection("users"))

    [query] = server.requests(RUN_QUERY)
    assert query["parent"] == "projects/test-project/databases/(default)/documents"
    where = query["structuredQuery"]["where"]["compositeFilter"]
    assert where["op"] == "AND"
    lower, upper = where["filters"]
    assert lower["fieldFilter"]["op"] == "GREATER_THAN_OR_EQUAL"
    assert lower["fieldFilter"]["value"] == {"referenceValue": doc_name(f"users/{REFERENCE_NAME_MIN_ID}")}
    assert upper["fieldFilter"]["op"] == "LESS_THAN"
    assert upper["fieldFilter"]["value"] == {"referenceValue": doc_name(f"users\0/{REFERENCE_NAME_MIN_ID}")}

    # No root document for a collection.
    assert sorted(names) == sorted(doc_name(p) for p in ["users/alice", "users/bob", "users/bob/posts/p1"])


@pytest.mark.asyncio
async def test_failures_are_aggregated_after_all_deletes(db, server, doc_name, deleted):
    names, deny = deleted
    serve_subtree(server, doc_name, DESCENDANTS)
    deny.update({doc_name("users/alice/likes/l1"), doc_name("users/alice/likes/l2")})

    with pytest.raises(RecursiveDeleteError) as exc_info:
        await db.recursive_delete(db.doc("users/alice"))

    err = exc_info.value
    assert err.failed == 2
    assert str(err).startswith("2 deletes failed. The last delete failed with: ")
    assert "PERMISSION_DENIED" in str(err)
    # Everything else was still attempted.
    assert len(names) == len(DESCENDANTS) + 1


@pytest.mark.asyncio
async def test_query_failure_counts_as_failure(db, server, deleted):
    names, _ = deleted
    server.on(RUN_QUERY, RpcError(StatusCode.PERMISSION_DENIED, "no list access"))

    with pytest.raises(RecursiveDeleteError) as exc_info:
        await db.recursive_delete(db.doc("users/alice"))

    assert exc_info.value.failed == 1
    assert "no list access" in str(exc_info.value)
    assert len(server.requests(RUN_QUERY)) == 1


@pytest.mark.asyncio
async def test_supplied_writer_is_left_open(db, server, doc_name, deleted):
    serve_subtree(server, doc_name, ["users/alice/posts/p1"])
    writer = db.bulk_writer()

    await db.recursive_delete(db.doc("users/alice"), writer)

    assert not writer.closed
    await writer.close()


@pytest.mark.asyncio
async def test_invalid_watermarks(db):
    with pytest.raises(ValueError):
        await db.recursive_delete(db.doc("users/alice"), max_pending_ops=10, min_pending_ops=20)
