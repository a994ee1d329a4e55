# Make `import cors_gateway.*` work from a plain checkout, without an install.
import os
import sys

import httpx
import pytest
from starlette.datastructures import Headers

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)


@pytest.fixture
def make_context():
    """Build a RequestContext without going through an ASGI server."""
    from cors_gateway.gateway.context import RequestContext

    def _make(
        method="GET",
        raw_path="/https://api.example.com/data",
        headers=None,
        client_address="192.168.1.100",
    ):
        request_headers = Headers(headers=headers or {})
        return RequestContext(
            method=method,
            raw_path=raw_path,
            origin=request_headers.get("origin", ""),
            headers=request_headers,
            client_address=client_address,
        )

    return _make


@pytest.fixture
def mock_forwarder():
    """HttpxForwarder whose upstream is an httpx.MockTransport handler."""
    from cors_gateway.gateway.proxy import HttpxForwarder

    def _create(handler):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), follow_redirects=False
        )
        return HttpxForwarder(client=client)

    return _create
