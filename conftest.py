# Ensure tests import the service package from this directory first.
import os
import sys
from typing import Callable, List

import httpx
import pytest
from fastapi.testclient import TestClient

SERVICE_ROOT = os.path.dirname(__file__)

if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)


class UpstreamBody(httpx.AsyncByteStream):
    """Body of a fake upstream response, read lazily like a network body."""

    def __init__(self, body: bytes):
        self.body = body

    async def __aiter__(self):
        if self.body:
            yield self.body

    async def aclose(self):
        pass


def as_network_response(response: httpx.Response) -> httpx.Response:
    """
    Give a handler's response an unread body.

    ``httpx.Response(content=...)`` reads its body on creation; a real
    upstream response arrives unread and is streamed by the proxy.
    """
    if not isinstance(response.stream, httpx.ByteStream):
        return response
    # ByteStream holds the bytes exactly as given, before any decoding
    raw = b"".join(response.stream)
    return httpx.Response(
        response.status_code,
        headers=response.headers,
        stream=UpstreamBody(raw),
    )


class RecordingUpstream:
    """Plays the target server and keeps every request the proxy sent it."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = (
            lambda request: httpx.Response(200, content=b"ok")
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return as_network_response(self.handler(request))

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def upstream():
    return RecordingUpstream()


@pytest.fixture
def make_proxy_client(upstream):
    """Build a TestClient for a proxy app whose upstream is the recorder."""
    clients = []

    def _make(api_key=None, renderer=None) -> TestClient:
        from fetchproxy.server import create_app

        app = create_app(
            api_key=api_key,
            transport=httpx.MockTransport(upstream),
            renderer=renderer,
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def proxy_client(make_proxy_client):
    return make_proxy_client()
