"""
Wire transport for the Firestore REST surface.

Every RPC the client issues is a member of FirestoreMethod; the route table
maps it to its REST path and says whether the response is consumed as a
stream. Transports only move JSON; retry, pooling and headers are handled by
the request funnel.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Protocol

import httpx
from loguru import logger

from .config import FirestoreSettings
from .errors import FirestoreError, RpcError, StatusCode, map_http_error


class FirestoreMethod(str, Enum):
    BEGIN_TRANSACTION = "beginTransaction"
    COMMIT = "commit"
    ROLLBACK = "rollback"
    BATCH_WRITE = "batchWrite"
    BATCH_GET_DOCUMENTS = "batchGetDocuments"
    RUN_QUERY = "runQuery"
    LIST_COLLECTION_IDS = "listCollectionIds"


@dataclass(frozen=True)
class Route:
    path_param: str  # request key holding the resource name
    suffix: str  # appended to the resource name
    streaming: bool = False


ROUTES: Dict[FirestoreMethod, Route] = {
    FirestoreMethod.BEGIN_TRANSACTION: Route("database", "/documents:beginTransaction"),
    FirestoreMethod.COMMIT: Route("database", "/documents:commit"),
    FirestoreMethod.ROLLBACK: Route("database", "/documents:rollback"),
    FirestoreMethod.BATCH_WRITE: Route("database", "/documents:batchWrite"),
    FirestoreMethod.BATCH_GET_DOCUMENTS: Route("database", "/documents:batchGet", streaming=True),
    FirestoreMethod.RUN_QUERY: Route("parent", ":runQuery", streaming=True),
    FirestoreMethod.LIST_COLLECTION_IDS: Route("parent", ":listCollectionIds"),
}


@dataclass
class CallOptions:
    headers: Dict[str, str] = field(default_factory=dict)
    timeout_s: Optional[float] = None


class Transport(Protocol):
    """What the client pool hands to every operation."""

    async def invoke_unary(
        self, method: FirestoreMethod, request: Dict[str, Any], options: CallOptions
    ) -> Dict[str, Any]: ...

    def invoke_stream(
        self, method: FirestoreMethod, request: Dict[str, Any], options: CallOptions
    ) -> AsyncIterator[Dict[str, Any]]: ...

    async def close(self) -> None: ...


TokenProvider = Callable[[], Awaitable[str]]


class RestTransport:
    """Transport speaking JSON over HTTP/1.1 via httpx."""

    def __init__(
        self,
        settings: FirestoreSettings,
        *,
        token_provider: Optional[TokenProvider] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._token_provider = token_provider
        self._client = http_client or httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.timeout_s,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _headers(self, options: CallOptions) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token_provider is not None:
            headers["Authorization"] = f"Bearer {await self._token_provider()}"
        elif self._settings.access_token:
            headers["Authorization"] = f"Bearer {self._settings.access_token}"
        headers.update(options.headers)
        return headers

    @staticmethod
    def _split(method: FirestoreMethod, request: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
        route = ROUTES[method]
        body = dict(request)
        try:
            resource = body.pop(route.path_param)
        except KeyError:
            raise FirestoreError(
                f"{method.value} request is missing '{route.path_param}'",
                code="INVALID_REQUEST",
            ) from None
        return f"/{resource}{route.suffix}", body

    async def _post(
        self, method: FirestoreMethod, request: Dict[str, Any], options: CallOptions
    ) -> Any:
        url, body = self._split(method, request)
        try:
            response = await self._client.post(
                url,
                json=body,
                headers=await self._headers(options),
                timeout=options.timeout_s or self._settings.timeout_s,
            )
        except httpx.TimeoutException as e:
            raise RpcError(StatusCode.DEADLINE_EXCEEDED, f"{method.value} timed out: {e}") from e
        except httpx.TransportError as e:
            raise RpcError(StatusCode.UNAVAILABLE, f"{method.value} failed: {e}") from e

        try:
            payload = response.json() if response.content else {}
        except ValueError:
            payload = {}
        if response.status_code >= 400:
            raise map_http_error(response.status_code, payload)
        return payload

    async def invoke_unary(
        self, method: FirestoreMethod, request: Dict[str, Any], options: CallOptions
    ) -> Dict[str, Any]:
        if ROUTES[method].streaming:
            raise FirestoreError(f"{method.value} is a streaming RPC", code="INVALID_REQUEST")
        payload = await self._post(method, request, options)
        return payload if isinstance(payload, dict) else {}

    async def invoke_stream(
        self, method: FirestoreMethod, request: Dict[str, Any], options: CallOptions
    ) -> AsyncIterator[Dict[str, Any]]:
        if not ROUTES[method].streaming:
            raise FirestoreError(f"{method.value} is a unary RPC", code="INVALID_REQUEST")
        payload = await self._post(method, request, options)
        # Streaming RPCs answer with a JSON array over REST.
        items = payload if isinstance(payload, list) else [payload]
        logger.trace(f"RestTransport.{method.value} received {len(items)} stream elements")
        for item in items:
            yield item
