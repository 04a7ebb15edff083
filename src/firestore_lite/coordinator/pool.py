"""
Client pool.

Multiplexes logical operations over a bounded set of transport clients. Each
client serves at most ``max_concurrent_per_client`` operations at a time; new
clients are created on demand up to ``max_pool_size``. When every client is
saturated and the pool is full, callers wait in FIFO order and are handed a
reserved slot as soon as one frees up.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Generic, List, Optional, TypeVar

from loguru import logger

from ..errors import ClientPoolTerminatedError
from ..metrics.registry import metrics_registry

C = TypeVar("C")
R = TypeVar("R")


class ClientPool(Generic[C]):
    def __init__(
        self,
        max_concurrent_per_client: int,
        max_pool_size: int,
        max_idle_clients: int,
        client_factory: Callable[[], C],
        client_destructor: Callable[[C], Any],
    ) -> None:
        if max_concurrent_per_client < 1:
            raise ValueError("max_concurrent_per_client must be >= 1")
        if max_pool_size < 1:
            raise ValueError("max_pool_size must be >= 1")
        if max_idle_clients < 0:
            raise ValueError("max_idle_clients must be >= 0")

        self._max_concurrent = max_concurrent_per_client
        self._max_pool_size = max_pool_size
        self._max_idle = max_idle_clients
        self._factory = client_factory
        self._destructor = client_destructor

        # Insertion-ordered: client -> active operation count
        self._active: Dict[C, int] = {}
        self._waiters: Deque[asyncio.Future] = deque()
        self._pending_destroys: List[asyncio.Task] = []
        self._terminated = False
        self._terminate_task: Optional[asyncio.Task] = None
        self._drained = asyncio.Event()
        self._drained.set()

    # ---------- introspection ----------

    @property
    def size(self) -> int:
        return len(self._active)

    @property
    def op_count(self) -> int:
        return sum(self._active.values())

    @property
    def queued(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    @property
    def terminated(self) -> bool:
        return self._terminated

    # ---------- public API ----------

    async def run(self, tag: str, op: Callable[[C], Awaitable[R]]) -> R:
        """Run ``op`` on a pooled client, waiting for capacity if needed."""
        if self._terminated:
            raise ClientPoolTerminatedError()

        client = self._acquire(tag)
        if client is None:
            client = await self._wait_for_slot(tag)

        try:
            return await op(client)
        finally:
            self._release(tag, client)

    async def terminate(self) -> None:
        """Stop accepting work, wait for running operations, destroy every client."""
        self._terminated = True
        if self._terminate_task is None:
            self._terminate_task = asyncio.ensure_future(self._terminate())
        await asyncio.shield(self._terminate_task)

    # ---------- internals ----------

    def _acquire(self, tag: str) -> Optional[C]:
        """Reserve a slot synchronously, or return None if none is available."""
        selected: Optional[C] = None
        selected_count = -1
        # Prefer the busiest client with spare capacity so idle ones can be reaped.
        for client, count in self._active.items():
            if count < self._max_concurrent and count > selected_count:
                selected, selected_count = client, count

        if selected is None:
            if len(self._active) >= self._max_pool_size:
                return None
            selected = self._factory()
            self._active[selected] = 0
            metrics_registry.pool_clients.set(len(self._active))
            logger.debug(f"ClientPool.acquire [{tag}] created client (pool size {len(self._active)})")
        else:
            logger.trace(f"ClientPool.acquire [{tag}] re-using client ({selected_count} active)")

        self._active[selected] += 1
        self._drained.clear()
        return selected

    async def _wait_for_slot(self, tag: str) -> C:
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future = loop.create_future()
        self._waiters.append(waiter)
        self._drained.clear()
        logger.debug(f"ClientPool.run [{tag}] all clients saturated; queued ({len(self._waiters)} waiting)")
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was handed over just before cancellation; give it back.
                self._release(tag, waiter.result())
            else:
                self._check_drained()
            raise

    def _release(self, tag: str, client: C) -> None:
        self._active[client] -= 1

        while self._waiters:
            waiter = self._waiters[0]
            if waiter.done():
                self._waiters.popleft()
                continue
            handoff = self._acquire(tag)
            if handoff is None:
                break
            self._waiters.popleft()
            waiter.set_result(handoff)

        self._reap_idle_clients()
        self._check_drained()

    def _reap_idle_clients(self) -> None:
        if self._terminated:
            return
        idle = [c for c, n in self._active.items() if n == 0]
        for client in idle[self._max_idle :]:
            del self._active[client]
            metrics_registry.pool_clients.set(len(self._active))
            logger.debug(f"ClientPool: destroying idle client (pool size {len(self._active)})")
            self._destroy(client)

    def _destroy(self, client: C) -> None:
        result = self._destructor(client)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending_destroys.append(task)
            task.add_done_callback(self._pending_destroys.remove)

    def _check_drained(self) -> None:
        if self.op_count == 0 and self.queued == 0:
            self._drained.set()

    async def _terminate(self) -> None:
        await self._drained.wait()
        clients = list(self._active)
        self._active.clear()
        metrics_registry.pool_clients.set(0)
        for client in clients:
            self._destroy(client)
        if self._pending_destroys:
            await asyncio.gather(*list(self._pending_destroys), return_exceptions=True)
        logger.info(f"ClientPool terminated ({len(clients)} clients destroyed)")
