"""
Request funnel.

Single choke point for every RPC: attaches the routing header, runs the call
on a pooled client, applies the retry policy and keeps a pooled client busy
for as long as a response stream is being consumed.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from time import monotonic
from typing import Any, AsyncIterator, Callable, Collection, Dict, Optional

from loguru import logger

from ..errors import RpcError, StatusCode, is_permanent_rpc_error
from ..metrics.registry import metrics_registry
from ..transport import CallOptions, FirestoreMethod, Transport
from .backoff import BackoffSettings, ExponentialBackoff, SleepFn
from .pool import ClientPool

CLOUD_RESOURCE_HEADER = "google-cloud-resource-prefix"

# The maximum number of times to retry idempotent requests.
MAX_REQUEST_RETRIES = 5


class StreamState(str, Enum):
    PENDING = "pending"
    HEALTHY = "healthy"
    ENDED = "ended"
    FAILED = "failed"


class ResponseStream:
    """Async iterator over the elements of one streaming RPC.

    The funnel only returns a stream after ``initialize()`` succeeded, i.e. the
    first element arrived, the stream ended cleanly, or the initial request was
    written. Exactly one terminal event (end or error) is delivered.
    """

    def __init__(self, source: AsyncIterator[Dict[str, Any]], method: FirestoreMethod, tag: str):
        self._source = source
        self._method = method
        self._tag = tag
        self._state = StreamState.PENDING
        self._prefetched: list[Dict[str, Any]] = []
        self._closed = asyncio.Event()

    @property
    def state(self) -> StreamState:
        return self._state

    async def initialize(self, request: Optional[Dict[str, Any]] = None) -> None:
        writer = getattr(self._source, "write", None)
        try:
            if request is not None and writer is not None:
                logger.debug(f"Firestore.requestStream [{self._tag}] sending request: {request}")
                await writer(request)
            else:
                self._prefetched.append(await self._source.__anext__())
        except StopAsyncIteration:
            logger.debug(f"Firestore.requestStream [{self._tag}] received stream end")
            self._state = StreamState.ENDED
            self._finish()
            return
        except Exception as e:
            logger.debug(f"Firestore.requestStream [{self._tag}] received initial error: {e}")
            self._state = StreamState.FAILED
            self._finish()
            raise
        logger.debug(f"Firestore.requestStream [{self._tag}] marking stream as healthy")
        self._state = StreamState.HEALTHY

    def __aiter__(self) -> "ResponseStream":
        return self

    async def __anext__(self) -> Dict[str, Any]:
        if self._prefetched:
            return self._prefetched.pop(0)
        if self._state is not StreamState.HEALTHY:
            raise StopAsyncIteration
        try:
            item = await self._source.__anext__()
        except StopAsyncIteration:
            logger.debug(f"Firestore.requestStream [{self._tag}] received stream end")
            self._state = StreamState.ENDED
            self._finish()
            raise
        except Exception as e:
            # Partial results were already delivered; never replay.
            logger.debug(f"Firestore.requestStream [{self._tag}] received stream error: {e}")
            self._state = StreamState.FAILED
            self._finish()
            raise
        logger.trace(f"Firestore.requestStream [{self._tag}] received response: {item}")
        return item

    async def aclose(self) -> None:
        if self._state in (StreamState.PENDING, StreamState.HEALTHY):
            self._state = StreamState.ENDED
        closer = getattr(self._source, "aclose", None)
        if closer is not None:
            await closer()
        self._finish()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def __aenter__(self) -> "ResponseStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _finish(self) -> None:
        self._closed.set()


class RequestFunnel:
    def __init__(
        self,
        pool: ClientPool[Transport],
        resource_prefix: Callable[[], str],
        *,
        custom_headers: Optional[Dict[str, str]] = None,
        backoff_settings: Optional[BackoffSettings] = None,
        timeout_s: Optional[float] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self._pool = pool
        self._resource_prefix = resource_prefix
        self._custom_headers = dict(custom_headers or {})
        self._backoff_settings = backoff_settings or BackoffSettings()
        self._timeout_s = timeout_s
        self._sleep = sleep

    def _call_options(self) -> CallOptions:
        headers = {CLOUD_RESOURCE_HEADER: self._resource_prefix(), **self._custom_headers}
        return CallOptions(headers=headers, timeout_s=self._timeout_s)

    def _backoff(self) -> ExponentialBackoff:
        return ExponentialBackoff(self._backoff_settings, sleep=self._sleep)

    # ---------- unary ----------

    async def request(
        self,
        method: FirestoreMethod,
        payload: Dict[str, Any],
        tag: str,
        retry_codes: Optional[Collection[StatusCode]] = None,
    ) -> Dict[str, Any]:
        """Issue a unary RPC; retry with backoff only on ``retry_codes``."""
        options = self._call_options()
        attempts = MAX_REQUEST_RETRIES if retry_codes else 1
        backoff = self._backoff()
        last_error: Optional[RpcError] = None

        for attempt in range(attempts):
            if last_error is not None:
                logger.warning(
                    f"Firestore.request [{tag}] retrying {method.value} "
                    f"(attempt {attempt + 1}/{attempts}) after: {last_error}"
                )
                metrics_registry.request_retries_total.labels(method=method.value).inc()
                await backoff.back_off_and_wait()
            try:
                return await self._pool.run(
                    tag, lambda client: self._unary(client, method, payload, options, tag)
                )
            except RpcError as e:
                last_error = e
                if not retry_codes or e.status not in retry_codes:
                    raise

        assert last_error is not None
        raise last_error

    async def _unary(
        self,
        client: Transport,
        method: FirestoreMethod,
        payload: Dict[str, Any],
        options: CallOptions,
        tag: str,
    ) -> Dict[str, Any]:
        logger.debug(f"Firestore.request [{tag}] sending {method.value}: {payload}")
        t0 = monotonic()
        try:
            result = await client.invoke_unary(method, payload, options)
        except Exception as e:
            logger.debug(f"Firestore.request [{tag}] received error: {e}")
            metrics_registry.requests_total.labels(method=method.value, outcome="error").inc()
            raise
        metrics_registry.request_latency_ms.labels(method=method.value).observe(
            (monotonic() - t0) * 1000.0
        )
        metrics_registry.requests_total.labels(method=method.value, outcome="ok").inc()
        logger.debug(f"Firestore.request [{tag}] received response: {result}")
        return result

    # ---------- streaming ----------

    async def request_stream(
        self,
        method: FirestoreMethod,
        payload: Dict[str, Any],
        tag: str,
        *,
        initial_request: Optional[Dict[str, Any]] = None,
    ) -> ResponseStream:
        """Open a healthy response stream, retrying failures before the first element."""
        options = self._call_options()
        backoff = self._backoff()
        last_error: Optional[BaseException] = None

        for attempt in range(MAX_REQUEST_RETRIES):
            if last_error is not None:
                logger.warning(
                    f"Firestore._retry [{tag}] retrying {method.value} "
                    f"that failed with error: {last_error}"
                )
                metrics_registry.request_retries_total.labels(method=method.value).inc()
                await backoff.back_off_and_wait()
            try:
                stream = await self._open_stream(method, payload, tag, options, initial_request)
            except Exception as e:
                last_error = e
                if is_permanent_rpc_error(e):
                    break
                continue
            metrics_registry.requests_total.labels(method=method.value, outcome="ok").inc()
            return stream

        logger.debug(f"Firestore._retry [{tag}] request failed with error: {last_error}")
        metrics_registry.requests_total.labels(method=method.value, outcome="error").inc()
        assert last_error is not None
        raise last_error

    async def _open_stream(
        self,
        method: FirestoreMethod,
        payload: Dict[str, Any],
        tag: str,
        options: CallOptions,
        initial_request: Optional[Dict[str, Any]],
    ) -> ResponseStream:
        loop = asyncio.get_running_loop()
        ready: asyncio.Future = loop.create_future()

        async def op(client: Transport) -> None:
            logger.debug(f"Firestore.requestStream [{tag}] sending {method.value}: {payload}")
            stream = ResponseStream(client.invoke_stream(method, payload, options), method, tag)
            await stream.initialize(initial_request)
            ready.set_result(stream)
            # The pooled client stays reserved until the caller is done with the stream.
            await stream.wait_closed()

        def settle(task: asyncio.Task) -> None:
            if ready.done():
                return
            if task.cancelled():
                ready.cancel()
            elif task.exception() is not None:
                ready.set_exception(task.exception())
            else:
                ready.set_exception(
                    RpcError(StatusCode.UNKNOWN, f"{method.value} stream closed before use")
                )

        task = asyncio.ensure_future(self._pool.run(tag, op))
        task.add_done_callback(settle)
        try:
            return await asyncio.shield(ready)
        except asyncio.CancelledError:
            if ready.done() and not ready.cancelled() and ready.exception() is None:
                await ready.result().aclose()
            else:
                task.cancel()
            raise
