# Ensure tests import the service package from this checkout first.
import asyncio
import os
import sys

import httpx
import pytest

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from webproxy.forwarding.engine import ForwardingEngine  # noqa: E402
from webproxy.guard.address_guard import AddressGuard  # noqa: E402
from webproxy.guard.target import TargetValidator  # noqa: E402
from webproxy.relay.websocket_relay import WebSocketRelay  # noqa: E402
from webproxy.session.store import SessionStore  # noqa: E402

# Hosts used across the tests; only the 93.184.216.x and 2606:2800:: addresses are public.
PUBLIC_DNS = {
    "example.com": ["93.184.216.34", "2606:2800:220:1:248:1893:25c8:1946"],
    "a.example": ["93.184.216.35"],
    "b.example": ["93.184.216.36"],
    "c.example": ["93.184.216.37"],
    "mixed.example": ["10.0.0.5", "93.184.216.38"],
    "internal.example": ["10.1.2.3", "fd00::1"],
    "loopback.example": ["127.0.0.1", "::1"],
    "ws.example": ["93.184.216.39"],
}


class FakeResolver:
    """Async resolver backed by a dict; records every lookup."""

    def __init__(self, records=None):
        self.records = dict(PUBLIC_DNS if records is None else records)
        self.lookups = []

    async def __call__(self, host):
        self.lookups.append(host)
        return list(self.records.get(host, []))


class UpstreamRecorder:
    """httpx.MockTransport handler that serves canned responses per URL."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, url, status_code=200, headers=None, content=b""):
        self.routes[url] = (status_code, headers or [], content)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url not in self.routes:
            return httpx.Response(404, content=b"not found")
        status_code, headers, content = self.routes[url]
        return httpx.Response(status_code, headers=headers, content=content)

    @property
    def urls(self):
        return [str(r.url) for r in self.requests]


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def guard(resolver):
    return AddressGuard(resolver=resolver)


@pytest.fixture
def validator(guard):
    return TargetValidator(guard)


@pytest.fixture
def store():
    return SessionStore(capacity=100, ttl=1800)


@pytest.fixture
def upstream():
    return UpstreamRecorder()


@pytest.fixture
def engine(store, validator, upstream):
    return ForwardingEngine(
        store,
        validator,
        timeout=5,
        max_redirects=5,
        transport=httpx.MockTransport(upstream),
    )


class FakeWebSocketUpstream:
    """
    Stand-in for a websockets client connection.

    Messages sent to it are echoed back. ``script`` items are delivered first;
    a ``("close", code)`` item ends the stream as if the server closed.
    """

    def __init__(self, script=None, subprotocol=None):
        self.script = list(script or [])
        self.subprotocol = subprotocol
        self.fail_on_send = None
        self.sent = []
        self.close_code = None
        self.close_reason = None
        self._queue = None

    def _messages(self):
        if self._queue is None:
            self._queue = asyncio.Queue()
            for item in self.script:
                self._queue.put_nowait(item)
        return self._queue

    async def send(self, message):
        if self.fail_on_send is not None:
            raise self.fail_on_send
        self.sent.append(message)
        await self._messages().put(message)

    async def close(self, code=1000, reason=""):
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
        await self._messages().put(("close", code))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._messages().get()
        if isinstance(item, tuple) and item[0] == "close":
            if self.close_code is None:
                self.close_code = item[1]
                self.close_reason = ""
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Replacement for ``websockets.asyncio.client.connect``."""

    def __init__(self):
        self.upstream = FakeWebSocketUpstream()
        self.error = None
        self.calls = []

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.upstream


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def relay(store, validator, connector):
    return WebSocketRelay(store, validator, timeout=5, connector=connector)
