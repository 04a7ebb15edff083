"""
Unit tests for BulkWriter scheduling, retries and shutdown.
"""

import asyncio

import pytest

from firestore_lite.coordinator.backoff import BackoffSettings
from firestore_lite.coordinator.bulk_writer import BulkWriter, BulkWriterOptions, ThrottlingOptions
from firestore_lite.coordinator.feedback import BackpressureLevel
from firestore_lite.errors import BulkWriterClosedError, BulkWriterError, FirestoreError, RpcError, StatusCode
from firestore_lite.transport import FirestoreMethod

BATCH_WRITE = FirestoreMethod.BATCH_WRITE
NO_DELAY = BackoffSettings(initial_delay_ms=0, max_delay_ms=0, jitter_factor=0.0)
UPDATE_TIME = "2024-01-01T00:00:00Z"


def target(write):
    return write.get("delete") or write["update"]["name"]


def respond(writes, statuses=None):
    statuses = statuses or [{} for _ in writes]
    return {
        "writeResults": [{"updateTime": UPDATE_TIME} if not s else {} for s in statuses],
        "status": statuses,
    }


@pytest.fixture
def batches(server):
    """Every batchWrite request's writes; succeeds unless scripted otherwise."""
    seen = []

    def handle(request):
        return respond(request["writes"])

    server.handle(BATCH_WRITE, handle)
    original_unary = server.unary

    async def recording_unary(method, request, options):
        if method is BATCH_WRITE:
            seen.append(request["writes"])
        return await original_unary(method, request, options)

    server.unary = recording_unary
    return seen


def options(**kw):
    kw.setdefault("backoff", NO_DELAY)
    return BulkWriterOptions(**kw)


@pytest.mark.asyncio
async def test_synchronous_enqueues_form_full_batches(db, batches):
    writer = db.bulk_writer(options())
    futures = [writer.set(db.doc(f"users/u{i}"), {"i": i}) for i in range(45)]

    await writer.close()

    assert [len(b) for b in batches] == [20, 20, 5]
    assert all(f.result().update_time == UPDATE_TIME for f in futures)


@pytest.mark.asyncio
async def test_one_in_flight_operation_per_document(db, batches, doc_name):
    writer = db.bulk_writer(options())
    alice, bob = db.doc("users/alice"), db.doc("users/bob")

    first = writer.set(alice, {"v": 1})
    second = writer.update(alice, {"v": 2})
    other = writer.set(bob, {"v": 1})
    await writer.close()

    assert [[target(w) for w in b] for b in batches] == [
        [doc_name("users/alice"), doc_name("users/bob")],
        [doc_name("users/alice")],
    ]
    assert batches[1][0]["update"]["fields"] == {"v": {"integerValue": "2"}}
    assert first.done() and second.done() and other.done()


@pytest.mark.asyncio
async def test_failed_write_does_not_affect_siblings(db, server, batches):
    server.on(
        BATCH_WRITE,
        lambda request: respond(
            request["writes"],
            [{}, {"code": StatusCode.FAILED_PRECONDITION, "message": "no document to update"}, {}],
        ),
    )
    writer = db.bulk_writer(options())
    ok1 = writer.set(db.doc("c/a"), {"x": 1})
    bad = writer.update(db.doc("c/b"), {"x": 1})
    ok2 = writer.delete(db.doc("c/c"))

    await writer.close()

    assert ok1.result().update_time == UPDATE_TIME
    assert ok2.exception() is None
    err = bad.exception()
    assert isinstance(err, BulkWriterError)
    assert err.status == StatusCode.FAILED_PRECONDITION
    assert err.operation_type == "update"
    assert err.failed_attempts == 1
    assert err.document_ref == db.doc("c/b")
    assert len(batches) == 1


@pytest.mark.asyncio
async def test_transient_failure_is_retried(db, server, batches):
    server.on(BATCH_WRITE, lambda request: respond(request["writes"], [{"code": StatusCode.UNAVAILABLE}]))
    writer = db.bulk_writer(options())

    fut = writer.set(db.doc("c/a"), {"x": 1})
    await writer.close()

    assert fut.result().update_time == UPDATE_TIME
    assert len(batches) == 2


@pytest.mark.asyncio
async def test_retries_stop_at_max_attempts(db, server, batches):
    server.handle(BATCH_WRITE, lambda request: respond(request["writes"], [{"code": StatusCode.ABORTED}]))
    writer = db.bulk_writer(options(max_retry_attempts=3))

    fut = writer.set(db.doc("c/a"), {"x": 1})
    await writer.close()

    err = fut.exception()
    assert isinstance(err, BulkWriterError)
    assert err.status == StatusCode.ABORTED
    assert err.failed_attempts == 3
    assert len(batches) == 3


@pytest.mark.asyncio
async def test_custom_error_predicate(db, server, batches):
    server.handle(BATCH_WRITE, lambda request: respond(request["writes"], [{"code": StatusCode.UNAVAILABLE}]))
    writer = db.bulk_writer(options())
    seen = []

    def never_retry(error):
        seen.append(error.failed_attempts)
        return False

    writer.on_write_error(never_retry)
    fut = writer.create(db.doc("c/a"), {"x": 1})
    await writer.close()

    assert seen == [1]
    assert isinstance(fut.exception(), BulkWriterError)
    assert len(batches) == 1


@pytest.mark.asyncio
async def test_rpc_failure_applies_to_every_write(db, server, batches):
    server.on(BATCH_WRITE, RpcError(StatusCode.PERMISSION_DENIED, "denied"))
    writer = db.bulk_writer(options())

    futures = [writer.set(db.doc(f"c/d{i}"), {}) for i in range(3)]
    await writer.close()

    for fut in futures:
        err = fut.exception()
        assert isinstance(err, BulkWriterError)
        assert err.status == StatusCode.PERMISSION_DENIED
        assert err.reason == "denied"


@pytest.mark.asyncio
async def test_on_write_result_called_for_each_success(db, batches):
    writer = db.bulk_writer(options())
    results = []
    writer.on_write_result(lambda ref, result: results.append(ref.path))

    writer.set(db.doc("c/a"), {})
    writer.set(db.doc("c/b"), {})
    await writer.close()

    assert sorted(results) == ["c/a", "c/b"]


@pytest.mark.asyncio
async def test_close_settles_everything_and_rejects_later_writes(db, server, batches):
    server.on(BATCH_WRITE, lambda request: respond(request["writes"], [{"code": StatusCode.UNAVAILABLE}, {}]))
    writer = db.bulk_writer(options())
    futures = [writer.set(db.doc("c/a"), {}), writer.set(db.doc("c/b"), {})]

    await writer.close()

    assert all(f.done() for f in futures)
    assert writer.pending_count == 0
    with pytest.raises(BulkWriterClosedError):
        writer.set(db.doc("c/c"), {})
    # Closing again is harmless.
    await writer.close()


@pytest.mark.asyncio
async def test_flush_waits_for_enqueued_writes(db, server, batches):
    release = asyncio.Event()
    original = server.unary

    async def slow_unary(method, request, options):
        if len(batches) > 0:
            await release.wait()
        return await original(method, request, options)

    server.unary = slow_unary
    writer = db.bulk_writer(options())

    early = writer.set(db.doc("c/a"), {})
    await writer.flush()
    assert early.done()

    late = writer.set(db.doc("c/b"), {})
    flushing = asyncio.create_task(writer.flush())
    for _ in range(5):
        await asyncio.sleep(0)
    assert not flushing.done()
    assert writer.pending_count == 1

    release.set()
    await flushing
    assert late.done()
    await writer.close()


@pytest.mark.asyncio
async def test_rate_limiter_caps_dispatch(db, server, batches):
    clock = [0.0]
    original = server.unary

    async def timed_unary(method, request, options):
        # Each round trip takes one simulated second.
        clock[0] += 1.0
        return await original(method, request, options)

    server.unary = timed_unary
    throttling = ThrottlingOptions(initial_ops_per_second=10, max_ops_per_second=10)
    writer = BulkWriter(db, options(throttling=throttling), clock=lambda: clock[0])

    for i in range(25):
        writer.set(db.doc(f"c/d{i}"), {})
    await writer.close()

    assert [len(b) for b in batches] == [10, 10, 5]


@pytest.mark.asyncio
async def test_contention_halves_rate_and_publishes_feedback(db, server, batches):
    server.on(
        BATCH_WRITE,
        lambda request: respond(request["writes"], [{"code": StatusCode.RESOURCE_EXHAUSTED}] * len(request["writes"])),
    )
    events = []

    async def on_feedback(event):
        events.append(event)

    db.feedback.subscribe(on_feedback)
    throttling = ThrottlingOptions(contention_threshold=2)
    writer = db.bulk_writer(options(throttling=throttling))

    writer.set(db.doc("c/a"), {})
    writer.set(db.doc("c/b"), {})
    await writer.close()

    assert writer.rate_limiter.ops_per_second() == 250
    assert [e.level for e in events] == [BackpressureLevel.SOFT]
    assert events[0].reason == "rate_reduced"
    assert events[0].capacity == 250


@pytest.mark.asyncio
async def test_unthrottled_writer_has_no_rate_limiter(db, batches):
    writer = db.bulk_writer(throttling=False)
    assert writer.rate_limiter is None
    writer.set(db.doc("c/a"), {})
    await writer.close()
    assert len(batches) == 1


@pytest.mark.asyncio
async def test_terminate_requires_closed_writers(db, batches):
    writer = db.bulk_writer(options())
    with pytest.raises(FirestoreError, match="must be closed"):
        await db.terminate()

    await writer.close()
    await db.terminate()


def test_invalid_batch_size():
    with pytest.raises(ValueError):
        BulkWriterOptions(max_batch_size=501)
