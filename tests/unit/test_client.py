"""
Unit tests for the client surface: references, reads, write batches and lifecycle.
"""

import pytest

from firestore_lite.batch import MAX_BATCH_SIZE, Precondition
from firestore_lite.client import Firestore
from firestore_lite.config import FirestoreSettings
from firestore_lite.errors import ClientPoolTerminatedError, FirestoreError, InvalidPathError
from firestore_lite.transport import FirestoreMethod

BATCH_GET = FirestoreMethod.BATCH_GET_DOCUMENTS
COMMIT = FirestoreMethod.COMMIT
LIST_IDS = FirestoreMethod.LIST_COLLECTION_IDS


def found(name, /, **fields):
    return {
        "found": {"name": name, "fields": fields, "updateTime": "2024-01-01T00:00:00Z"},
        "readTime": "2024-01-01T00:00:01Z",
    }


def test_references(db):
    alice = db.doc("users/alice")
    assert alice.id == "alice"
    assert alice.parent == db.collection("users")
    assert alice.collection("posts").path == "users/alice/posts"
    assert db.collection("users").parent is None
    assert db.collection("users/alice/posts").parent == alice
    assert len(db.collection("users").doc().id) == 20
    with pytest.raises(InvalidPathError):
        db.doc("users")
    with pytest.raises(ValueError):
        db.collection_group("a/b")


@pytest.mark.asyncio
async def test_get_all_preserves_request_order(db, server, doc_name):
    server.on(
        BATCH_GET,
        [
            {"missing": doc_name("users/carol"), "readTime": "2024-01-01T00:00:01Z"},
            found(doc_name("users/alice"), name={"stringValue": "Alice"}),
        ],
    )

    alice, carol = await db.get_all(db.doc("users/alice"), db.doc("users/carol"))

    assert alice.exists and alice.to_dict() == {"name": "Alice"}
    assert not carol.exists and carol.to_dict() is None
    [request] = server.requests(BATCH_GET)
    assert request["documents"] == [doc_name("users/alice"), doc_name("users/carol")]
    assert request["database"] == "projects/test-project/databases/(default)"


@pytest.mark.asyncio
async def test_get_all_missing_result(db, server):
    server.on(BATCH_GET, [])
    with pytest.raises(FirestoreError, match="Did not receive document"):
        await db.get_all(db.doc("users/alice"))


@pytest.mark.asyncio
async def test_document_writes_commit_one_write(db, server, doc_name):
    server.handle(COMMIT, lambda req: {"commitTime": "2024-01-01T00:00:00Z", "writeResults": [{}]})

    await db.doc("users/alice").set({"a": {"b": 1}}, merge=True)
    await db.doc("users/alice").update({"a.c": 2})
    await db.doc("users/alice").delete(Precondition(exists=True))

    set_write, update_write, delete_write = [r["writes"][0] for r in server.requests(COMMIT)]
    assert set_write["updateMask"] == {"fieldPaths": ["a.b"]}
    assert update_write["updateMask"] == {"fieldPaths": ["a.c"]}
    assert update_write["currentDocument"] == {"exists": True}
    assert update_write["update"]["fields"] == {
        "a": {"mapValue": {"fields": {"c": {"integerValue": "2"}}}}
    }
    assert delete_write == {"delete": doc_name("users/alice"), "currentDocument": {"exists": True}}


@pytest.mark.asyncio
async def test_write_batch_is_atomic_and_single_use(db, server):
    server.on(COMMIT, {"commitTime": "2024-01-01T00:00:00Z"})
    batch = db.batch()
    batch.create(db.doc("users/a"), {"n": 1}).delete(db.doc("users/b"))

    results = await batch.commit()

    assert len(results) == 2
    assert all(r.update_time == "2024-01-01T00:00:00Z" for r in results)
    with pytest.raises(ValueError):
        batch.set(db.doc("users/c"), {})


def test_write_batch_limit(db):
    batch = db.batch()
    for i in range(MAX_BATCH_SIZE):
        batch.delete(db.doc(f"users/u{i}"))
    with pytest.raises(ValueError):
        batch.delete(db.doc("users/overflow"))


def test_precondition_is_exclusive():
    with pytest.raises(ValueError):
        Precondition(exists=True, last_update_time="2024-01-01T00:00:00Z").to_wire()


@pytest.mark.asyncio
async def test_list_collections_pages(db, server, doc_name):
    server.on(
        LIST_IDS,
        {"collectionIds": ["posts"], "nextPageToken": "t1"},
        {"collectionIds": ["likes"]},
    )

    refs = await db.doc("users/alice").list_collections()

    assert [r.path for r in refs] == ["users/alice/posts", "users/alice/likes"]
    first, second = server.requests(LIST_IDS)
    assert first == {"parent": doc_name("users/alice")}
    assert second["pageToken"] == "t1"


@pytest.mark.asyncio
async def test_query_wire_format(db, server, doc_name):
    server.on(FirestoreMethod.RUN_QUERY, [{"readTime": "2024-01-01T00:00:00Z"}])
    query = (
        db.collection("users")
        .where("age", ">=", 18)
        .where("nickname", "==", None)
        .order_by("age", "desc")
        .limit(5)
    )

    assert await query.get() == []

    [request] = server.requests(FirestoreMethod.RUN_QUERY)
    sq = request["structuredQuery"]
    assert request["parent"] == "projects/test-project/databases/(default)/documents"
    assert sq["from"] == [{"collectionId": "users"}]
    age, nickname = sq["where"]["compositeFilter"]["filters"]
    assert age["fieldFilter"]["op"] == "GREATER_THAN_OR_EQUAL"
    assert nickname == {"unaryFilter": {"field": {"fieldPath": "nickname"}, "op": "IS_NULL"}}
    assert sq["orderBy"] == [{"field": {"fieldPath": "age"}, "direction": "DESCENDING"}]
    assert sq["limit"] == 5


@pytest.mark.asyncio
async def test_missing_project_id():
    client = Firestore(FirestoreSettings(_env_file=None, project_id=None, emulator_host=None))
    with pytest.raises(FirestoreError) as exc_info:
        client.formatted_name
    assert exc_info.value.code == "MISSING_PROJECT_ID"
    await client.terminate()


@pytest.mark.asyncio
async def test_context_manager_terminates_pool(make_db):
    async with make_db() as db:
        pass
    with pytest.raises(ClientPoolTerminatedError):
        await db.get_all(db.doc("users/alice"))
