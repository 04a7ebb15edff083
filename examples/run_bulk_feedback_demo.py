"""
Bulk write and recursive delete with backpressure feedback.

Writes a few thousand documents through a BulkWriter, then deletes the whole
collection with recursive_delete() using low watermarks so the pause/resume
signals show up on the client's feedback bus.

Needs the local emulator (FIRESTORE_EMULATOR_HOST, FIRESTORE_PROJECT_ID).
"""

import asyncio

from loguru import logger

from firestore_lite import BackpressureLevel, FeedbackEvent, Firestore

DOCS = 3000


async def main():
    events = []

    async def feedback_observer(event: FeedbackEvent):
        events.append(event)
        logger.info(
            f"Feedback: {event.level.value.upper()} - "
            f"pending {event.pending_ops}/{event.capacity} ({event.utilization:.1%}) - "
            f"source: {event.source_id}"
        )
        if event.reason:
            logger.info(f"   Reason: {event.reason}")

    async with Firestore() as db:
        db.feedback.subscribe(feedback_observer)

        logger.info(f"Phase 1: writing {DOCS} documents")
        writer = db.bulk_writer()
        writer.on_write_result(lambda ref, result: None)
        coll = db.collection("bulk-demo")
        for i in range(DOCS):
            writer.set(coll.doc(f"doc-{i:05d}"), {"n": i, "even": i % 2 == 0})
        await writer.close()
        logger.info(f"   rate limiter ended at {writer.rate_limiter.ops_per_second():.0f} ops/s")

        logger.info("Phase 2: recursive delete with max_pending_ops=500")
        await db.recursive_delete(coll, max_pending_ops=500, min_pending_ops=100)

    paused = sum(1 for e in events if e.level == BackpressureLevel.HARD)
    logger.info(f"Demo complete: {len(events)} feedback events, paused {paused} times")


if __name__ == "__main__":
    asyncio.run(main())
