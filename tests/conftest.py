"""Pytest configuration and shared fixtures."""

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import pytest
import pytest_asyncio

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


# =============================================================================
# Backend Double
# =============================================================================

class FakeBackend:
    """Records every request and answers from a route table.

    ``/health`` answers 200 unless ``healthy`` is False, in which case the
    connection is refused. Unknown routes answer 404.
    """

    def __init__(self, healthy: bool = True):
        self.healthy = healthy
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}

    def add(
        self,
        method: str,
        path: str,
        status: int = 200,
        json: Any = None,
        text: Optional[str] = None,
        headers: Optional[dict] = None,
    ) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            if text is not None:
                return httpx.Response(status, text=text, headers=headers)
            return httpx.Response(status, json=json, headers=headers)

        self._routes[(method.upper(), path)] = respond

    def add_handler(
        self, method: str, path: str, handler: Callable[[httpx.Request], httpx.Response]
    ) -> None:
        self._routes[(method.upper(), path)] = handler

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/health":
            if not self.healthy:
                raise httpx.ConnectError("Connection refused", request=request)
            return httpx.Response(200, json={"status": "ok"})
        respond = self._routes.get((request.method, request.url.path))
        if respond is None:
            return httpx.Response(404, json={"error": "Not found"})
        return respond(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def calls(self, path: Optional[str] = None) -> list[httpx.Request]:
        if path is None:
            return list(self.requests)
        return [r for r in self.requests if r.url.path == path]


# =============================================================================
# WebSocket Double
# =============================================================================

_CLOSE = object()


class FakeWebSocket:
    """In-memory socket; messages fed by the test are yielded by iteration."""

    def __init__(self, url: str):
        self.url = url
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def feed(self, message: Any) -> None:
        self._queue.put_nowait(message)

    def fail(self, exc: BaseException) -> None:
        self._queue.put_nowait(exc)

    def end(self) -> None:
        """Simulate the server closing the stream."""
        self._queue.put_nowait(_CLOSE)

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._queue.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeConnector:
    """Stands in for ``websockets.connect``."""

    def __init__(self):
        self.sockets: list[FakeWebSocket] = []
        self.failures: list[BaseException] = []

    async def __call__(self, url: str, **kwargs) -> FakeWebSocket:
        if self.failures:
            raise self.failures.pop(0)
        ws = FakeWebSocket(url)
        self.sockets.append(ws)
        return ws

    @property
    def last(self) -> FakeWebSocket:
        return self.sockets[-1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def opened_urls():
    return []


@pytest.fixture
def settings():
    from src.settings import Settings

    return Settings(
        api_base_url="http://backend.test",
        stream_base_url="ws://backend.test",
        default_user_id="1",
    )


@pytest_asyncio.fixture
async def session(settings, backend, connector, opened_urls):
    """BrokerSession wired to the backend and socket doubles, closed after the test."""
    from src.broker_connect import BrokerSession

    session = BrokerSession(
        settings,
        transport=backend.transport,
        connector=connector,
        opener=opened_urls.append,
    )
    yield session
    await session.aclose()


@pytest.fixture
def waiter():
    return wait_until
