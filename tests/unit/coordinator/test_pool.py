"""
Unit tests for ClientPool.
"""

import asyncio

import pytest

from firestore_lite.coordinator.pool import ClientPool
from firestore_lite.errors import ClientPoolTerminatedError


class Client:
    def __init__(self, n: int):
        self.n = n
        self.destroyed = False


def make_pool(max_concurrent=2, max_size=1, max_idle=1):
    created = []

    def factory():
        c = Client(len(created))
        created.append(c)
        return c

    def destroy(c):
        c.destroyed = True

    pool = ClientPool(max_concurrent, max_size, max_idle, factory, destroy)
    return pool, created


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_third_call_queues_until_slot_frees():
    """maxConcurrentPerClient=2, maxPoolSize=1: two dispatched, one queued."""
    pool, created = make_pool(max_concurrent=2, max_size=1)
    release = [asyncio.Event() for _ in range(3)]
    started = []

    async def op_for(i):
        async def op(client):
            started.append(i)
            await release[i].wait()
            return i

        return await pool.run(f"op{i}", op)

    tasks = [asyncio.create_task(op_for(i)) for i in range(3)]
    await settle()

    assert started == [0, 1]
    assert pool.op_count == 2
    assert pool.queued == 1
    assert len(created) == 1

    release[0].set()
    await settle()
    assert started == [0, 1, 2]
    assert pool.queued == 0

    release[1].set()
    release[2].set()
    assert await asyncio.gather(*tasks) == [0, 1, 2]
    assert len(created) == 1


@pytest.mark.asyncio
async def test_prefers_busiest_client_with_capacity():
    pool, created = make_pool(max_concurrent=3, max_size=4)
    gate = asyncio.Event()
    used = []

    async def op(client):
        used.append(client.n)
        await gate.wait()

    tasks = [asyncio.create_task(pool.run("t", op)) for _ in range(4)]
    await settle()

    # Three share the first client before a second is created.
    assert used == [0, 0, 0, 1]
    assert pool.size == 2
    gate.set()
    await asyncio.gather(*tasks)


@pytest.mark.asyncio
async def test_concurrency_ceiling_holds():
    pool, _ = make_pool(max_concurrent=2, max_size=2)
    active = 0
    peak = 0

    async def op(client):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        active -= 1

    await asyncio.gather(*(pool.run("t", op) for _ in range(20)))
    assert peak == 4
    assert pool.op_count == 0


@pytest.mark.asyncio
async def test_idle_clients_beyond_limit_are_destroyed():
    pool, created = make_pool(max_concurrent=1, max_size=3, max_idle=1)
    gate = asyncio.Event()

    async def op(client):
        await gate.wait()

    tasks = [asyncio.create_task(pool.run("t", op)) for _ in range(3)]
    await settle()
    assert pool.size == 3

    gate.set()
    await asyncio.gather(*tasks)
    assert pool.size == 1
    assert sum(c.destroyed for c in created) == 2


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_slot():
    pool, _ = make_pool(max_concurrent=1, max_size=1)
    gate = asyncio.Event()

    async def blocking(client):
        await gate.wait()

    async def quick(client):
        return "done"

    first = asyncio.create_task(pool.run("a", blocking))
    await settle()
    queued = asyncio.create_task(pool.run("b", quick))
    await settle()
    assert pool.queued == 1

    queued.cancel()
    with pytest.raises(asyncio.CancelledError):
        await queued
    assert pool.queued == 0

    gate.set()
    await first
    assert await pool.run("c", quick) == "done"
    assert pool.op_count == 0


@pytest.mark.asyncio
async def test_terminate_waits_for_running_operations():
    pool, created = make_pool(max_concurrent=1, max_size=1)
    gate = asyncio.Event()

    async def op(client):
        await gate.wait()
        return "finished"

    running = asyncio.create_task(pool.run("t", op))
    await settle()

    terminating = asyncio.create_task(pool.terminate())
    await settle()
    assert not terminating.done()

    gate.set()
    assert await running == "finished"
    await terminating
    assert pool.size == 0
    assert all(c.destroyed for c in created)

    with pytest.raises(ClientPoolTerminatedError):
        await pool.run("late", op)


@pytest.mark.asyncio
async def test_async_destructor_is_awaited_on_terminate():
    closed = []

    async def destroy(client):
        await asyncio.sleep(0)
        closed.append(client)

    pool = ClientPool(1, 1, 1, object, destroy)

    async def op(client):
        return client

    client = await pool.run("t", op)
    await pool.terminate()
    assert closed == [client]
