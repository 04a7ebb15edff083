"""
Pytest configuration and fixtures for firestore-lite.

Provides an in-memory scripted server in place of the REST transport and a
client wired to it.
"""

import asyncio
import sys
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Tuple

import pytest

from firestore_lite.client import Firestore
from firestore_lite.config import FirestoreSettings
from firestore_lite.transport import CallOptions, FirestoreMethod

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

PROJECT = "test-project"
DOCS_ROOT = f"projects/{PROJECT}/databases/(default)/documents"


class FakeServer:
    """Scripted responses shared by every FakeTransport of one client.

    A scripted response is consumed once, in order, per method:

    - a dict is returned from a unary call
    - a list is streamed item by item (an Exception item is raised in place)
    - an Exception is raised
    - a callable is invoked with the request and its result used as above

    When no scripted response is left the method's handler (if any) is used.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[FirestoreMethod, Dict[str, Any], CallOptions]] = []
        self._scripted: Dict[FirestoreMethod, Deque[Any]] = defaultdict(deque)
        self._handlers: Dict[FirestoreMethod, Callable[[Dict[str, Any]], Any]] = {}

    def on(self, method: FirestoreMethod, *responses: Any) -> "FakeServer":
        self._scripted[method].extend(responses)
        return self

    def handle(self, method: FirestoreMethod, handler: Callable[[Dict[str, Any]], Any]) -> "FakeServer":
        self._handlers[method] = handler
        return self

    def requests(self, method: FirestoreMethod) -> List[Dict[str, Any]]:
        return [req for m, req, _ in self.calls if m is method]

    def _next(self, method: FirestoreMethod, request: Dict[str, Any]) -> Any:
        if self._scripted[method]:
            response = self._scripted[method].popleft()
        elif method in self._handlers:
            response = self._handlers[method]
        else:
            raise AssertionError(f"unexpected {method.value} call: {request}")
        if callable(response) and not isinstance(response, Exception):
            response = response(request)
        return response

    async def unary(self, method: FirestoreMethod, request: Dict[str, Any], options: CallOptions) -> Dict[str, Any]:
        self.calls.append((method, request, options))
        await asyncio.sleep(0)
        response = self._next(method, request)
        if isinstance(response, Exception):
            raise response
        return response

    async def stream(self, method: FirestoreMethod, request: Dict[str, Any], options: CallOptions):
        self.calls.append((method, request, options))
        await asyncio.sleep(0)
        response = self._next(method, request)
        if isinstance(response, Exception):
            raise response
        for item in response:
            if isinstance(item, Exception):
                raise item
            yield item


class FakeTransport:
    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.closed = False

    async def invoke_unary(self, method, request, options):
        return await self.server.unary(method, request, options)

    def invoke_stream(self, method, request, options):
        return self.server.stream(method, request, options)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file."""
    return FirestoreSettings(_env_file=None, project_id=PROJECT, emulator_host=None)


@pytest.fixture
def doc_name():
    """Full resource name of a document path in the test database."""

    def build(path: str) -> str:
        return f"{DOCS_ROOT}/{path}"

    return build


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def sleeps():
    """Delays requested by retry loops (nothing actually waits)."""
    return []


@pytest.fixture
def make_db(server, sleeps):
    """Build a client on the fake server; keyword arguments override settings."""

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)

    def factory(**overrides: Any) -> Firestore:
        overrides.setdefault("project_id", PROJECT)
        overrides.setdefault("emulator_host", None)
        return Firestore(
            FirestoreSettings(_env_file=None, **overrides),
            transport_factory=lambda s: FakeTransport(server),
            sleep=fake_sleep,
        )

    return factory


@pytest.fixture
def db(make_db):
    return make_db()
