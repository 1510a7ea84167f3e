# Ensure tests import the package from this checkout first, whether or not it
# has been installed, so `import pageproxy.*` behaves the same everywhere.
import os
import sys
from typing import Callable, List, Optional

import httpx
import pytest

SERVICE_ROOT = os.path.dirname(__file__)

if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)


class _UnreadStream(httpx.AsyncByteStream):
    """Raw body bytes served as a stream that has not been read yet."""

    def __init__(self, raw: bytes):
        self._raw = raw

    async def __aiter__(self):
        yield self._raw


class FakeUpstream:
    """
    Stand-in for the proxied site, served through ``httpx.MockTransport``.

    Tests assign ``handler`` to shape responses; every request that reaches
    the transport is kept in ``requests``.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.handler: Optional[Callable[[httpx.Request], httpx.Response]] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.handler is None:
            response = httpx.Response(200, text="ok")
        else:
            response = self.handler(request)
        if not response.is_stream_consumed:
            return response
        # httpx reads ``content=`` bodies on construction; hand the transport
        # the original raw bytes unread, as a real upstream would.
        raw = b"".join(response.stream)
        return httpx.Response(
            response.status_code,
            headers=response.headers,
            stream=_UnreadStream(raw),
        )

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def upstream_client(upstream):
    from pageproxy.proxy.forwarder import build_upstream_client

    return build_upstream_client(transport=httpx.MockTransport(upstream))


@pytest.fixture
def proxy_client(upstream_client):
    """TestClient for the app with the upstream client swapped for the fake."""
    from fastapi.testclient import TestClient

    from pageproxy.proxy.route import get_upstream_client
    from pageproxy.server import app

    app.dependency_overrides[get_upstream_client] = lambda: upstream_client
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()
