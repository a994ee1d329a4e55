from urllib.parse import quote

import httpx
import pytest
from fastapi.testclient import TestClient

from cors_gateway.gateway.admission import AdmissionConfig
from cors_gateway.server import create_app

ORIGIN = "https://app.example.com"


class Upstream:
    """Records forwarded requests and answers with a canned response."""

    def __init__(self, response=None, error=None):
        self.requests = []
        self.response = response or httpx.Response(200, json={"ok": True})
        self.error = error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def gateway(mock_forwarder, upstream):
    def _create(config=None, handler=None):
        app = create_app(
            config=config or AdmissionConfig(),
            forwarder=mock_forwarder(handler or upstream),
        )
        return TestClient(app, follow_redirects=False)

    return _create


class TestPreflight:
    def test_preflight_mirrors_origin(self, gateway, upstream):
        response = gateway().options(
            "/https://api.example.com/users",
            headers={
                "Origin": ORIGIN,
                "Access-Control-Request-Method": "PUT",
                "Access-Control-Request-Headers": "authorization, x-trace",
            },
        )

        assert response.status_code == 200
        assert response.content == b""
        assert response.headers["access-control-allow-origin"] == ORIGIN
        assert response.headers["access-control-allow-credentials"] == "true"
        assert response.headers["access-control-allow-headers"] == "authorization, x-trace"
        assert response.headers["access-control-max-age"] == "600"
        assert upstream.requests == []

    def test_preflight_ignores_origin_policy(self, gateway):
        client = gateway(AdmissionConfig(origin_blacklist={ORIGIN}))

        response = client.options("/https://api.example.com/", headers={"Origin": ORIGIN})

        assert response.status_code == 200

    def test_preflight_on_any_path(self, gateway):
        assert gateway().options("/").status_code == 200
        assert gateway().options("/invalidurl").status_code == 200


class TestGatewayResponses:
    def test_landing_page(self, gateway):
        response = gateway().get("/", headers={"Origin": ORIGIN})

        assert response.status_code == 200
        assert "<html>" in response.text
        assert "http://testserver/https://api.example.com/data" in response.text
        assert response.headers["access-control-allow-origin"] == ORIGIN

    def test_invalid_target_url(self, gateway, upstream):
        response = gateway().get("/invalidurl", headers={"Origin": ORIGIN})

        assert response.status_code == 400
        assert response.json() == {"error": "invalid_target_url"}
        assert response.headers["access-control-allow-origin"] == ORIGIN
        assert upstream.requests == []

    def test_empty_target_on_post(self, gateway):
        response = gateway().post("/", content=b"x")

        assert response.status_code == 400
        assert response.json() == {"error": "invalid_target_url"}

    def test_docs_path_is_not_served(self, gateway):
        assert gateway().get("/docs").json() == {"error": "invalid_target_url"}

    @pytest.mark.parametrize(
        "path",
        ["/https://localhost/", "/http://a.test/", "/http://256.256.256.256/"],
    )
    def test_invalid_host(self, gateway, upstream, path):
        response = gateway().get(path)

        assert response.status_code == 404
        assert response.json() == {"error": "invalid_host"}
        assert upstream.requests == []

    def test_healthz(self, gateway):
        response = gateway().get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["uptime"] >= 0

    def test_metrics(self, gateway):
        client = gateway()
        client.get("/invalidurl")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "cors_gateway_requests_total" in response.text
        assert "cors_gateway_errors_total" in response.text
        assert "cors_gateway_requests_inflight" in response.text


class TestAdmissionRejections:
    def test_blacklisted_origin(self, gateway, upstream):
        client = gateway(AdmissionConfig(origin_blacklist={"http://evil.test"}))

        response = client.get("/https://api.example.com/", headers={"Origin": "http://evil.test"})

        assert response.status_code == 403
        assert response.json() == {"error": "origin_blacklisted"}
        assert response.headers["access-control-allow-origin"] == "http://evil.test"
        assert upstream.requests == []

    def test_origin_not_whitelisted(self, gateway):
        client = gateway(AdmissionConfig(origin_whitelist={ORIGIN}))

        response = client.get("/https://api.example.com/", headers={"Origin": "http://other.test"})

        assert response.status_code == 403
        assert response.json() == {"error": "origin_not_whitelisted"}

    def test_missing_required_header(self, gateway):
        client = gateway(AdmissionConfig(required_headers=["x-requested-with"]))

        response = client.get("/https://api.example.com/")

        assert response.status_code == 400
        assert response.json() == {"error": "missing_required_header"}

    def test_rate_limited(self, gateway):
        client = gateway(AdmissionConfig(rate_limiter=lambda ctx: False))

        response = client.get("/https://api.example.com/", headers={"Origin": ORIGIN})

        assert response.status_code == 429
        assert response.json() == {"error": "rate_limit_exceeded"}
        assert response.headers["access-control-allow-origin"] == ORIGIN

    def test_admission_runs_before_target_validation(self, gateway):
        client = gateway(AdmissionConfig(origin_blacklist={"http://evil.test"}))

        response = client.get("/invalidurl", headers={"Origin": "http://evil.test"})

        assert response.status_code == 403


class TestForwarding:
    def test_get_is_forwarded(self, gateway, upstream):
        response = gateway().get(
            "/https://api.example.com/users?page=2",
            headers={"Origin": ORIGIN, "X-Trace": "abc"},
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert response.headers["access-control-allow-origin"] == ORIGIN
        assert response.headers["access-control-expose-headers"] == "*"

        (request,) = upstream.requests
        assert str(request.url) == "https://api.example.com/users?page=2"
        assert request.headers["host"] == "api.example.com"
        assert request.headers["x-trace"] == "abc"
        assert request.headers["origin"] == ORIGIN

    def test_percent_encoded_target(self, gateway, upstream):
        gateway().get("/" + quote("https://api.example.com/a?b=1", safe=""))

        assert str(upstream.requests[0].url) == "https://api.example.com/a?b=1"

    def test_single_slash_scheme(self, gateway, upstream):
        gateway().get("/https:/api.example.com/x")

        assert str(upstream.requests[0].url) == "https://api.example.com/x"

    def test_body_is_forwarded(self, gateway, upstream):
        gateway().post(
            "/https://api.example.com/items",
            content=b'{"name":"widget"}',
            headers={"Content-Type": "application/json"},
        )

        (request,) = upstream.requests
        assert request.method == "POST"
        assert request.content == b'{"name":"widget"}'
        assert request.headers["content-type"] == "application/json"

    def test_header_policy(self, gateway, upstream):
        config = AdmissionConfig(
            headers_to_remove=["cookie"], headers_to_set={"X-Api-Key": "server-secret"}
        )

        gateway(config).get(
            "/https://api.example.com/",
            headers={"Cookie": "session=1", "X-Api-Key": "client"},
        )

        request = upstream.requests[0]
        assert "cookie" not in request.headers
        assert request.headers.get_list("x-api-key") == ["server-secret"]

    def test_upstream_status_is_passed_through(self, gateway):
        upstream = Upstream(httpx.Response(404, text="not here"))

        response = gateway(handler=upstream).get("/https://api.example.com/missing")

        assert response.status_code == 404
        assert response.text == "not here"

    def test_redirect_is_rewritten(self, gateway):
        upstream = Upstream(httpx.Response(302, headers={"Location": "/b"}))

        response = gateway(handler=upstream).get("/http://a.test.example.com/x")

        assert response.status_code == 302
        assert response.headers["location"] == "/http://a.test.example.com/b"

    def test_cross_origin_redirect_under_same_origin_policy(self, gateway):
        upstream = Upstream(httpx.Response(301, headers={"Location": "https://other.example.org/"}))
        config = AdmissionConfig(redirect_same_origin_only=True)

        response = gateway(config, handler=upstream).get("/https://api.example.com/old")

        assert response.headers["location"] == "https://other.example.org/"

    def test_upstream_cors_headers_are_replaced(self, gateway):
        upstream = Upstream(
            httpx.Response(
                200,
                headers={"Access-Control-Allow-Origin": "https://upstream.example.com"},
                text="ok",
            )
        )

        response = gateway(handler=upstream).get(
            "/https://api.example.com/", headers={"Origin": ORIGIN}
        )

        assert response.headers.get_list("access-control-allow-origin") == [ORIGIN]

    def test_proxy_error(self, gateway):
        upstream = Upstream(error=httpx.ConnectError("Name or service not known"))

        response = gateway(handler=upstream).get(
            "/https://unreachable.example.com/", headers={"Origin": ORIGIN}
        )

        assert response.status_code == 502
        assert response.json() == {
            "error": "proxy_error",
            "message": "Name or service not known",
        }
        assert response.headers["access-control-allow-origin"] == ORIGIN

    def test_head_request(self, gateway, upstream):
        response = gateway().head("/https://api.example.com/")

        assert response.status_code == 200
        assert upstream.requests[0].method == "HEAD"


class TestRawRequestTarget:
    """Requests whose path bytes were sent without percent-encoding."""

    @staticmethod
    async def _call(app, raw_path):
        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": raw_path.decode("latin-1"),
            "raw_path": raw_path,
            "query_string": b"",
            "root_path": "",
            "headers": [(b"host", b"testserver"), (b"origin", ORIGIN.encode())],
            "client": ("127.0.0.1", 50000),
            "server": ("testserver", 80),
        }
        messages = []

        async def receive():
            return {"type": "http.request", "body": b"", "more_body": False}

        async def send(message):
            messages.append(message)

        await app(scope, receive, send)
        return messages

    @pytest.mark.asyncio
    async def test_utf8_path_is_forwarded(self, mock_forwarder, upstream):
        app = create_app(config=AdmissionConfig(), forwarder=mock_forwarder(upstream))

        messages = await self._call(app, "/https://café.example.com/menu".encode("utf-8"))

        assert messages[0]["status"] == 200
        (request,) = upstream.requests
        assert request.url.host == "café.example.com".encode("idna").decode("ascii")
        assert request.url.path == "/menu"

    @pytest.mark.asyncio
    async def test_non_utf8_path_is_invalid_target(self, mock_forwarder, upstream):
        app = create_app(config=AdmissionConfig(), forwarder=mock_forwarder(upstream))

        messages = await self._call(app, b"/https://caf\xe9.example.com/")

        start = messages[0]
        body = b"".join(m.get("body", b"") for m in messages[1:])
        assert start["status"] == 400
        assert (b"access-control-allow-origin", ORIGIN.encode()) in start["headers"]
        assert body == b'{"error":"invalid_target_url"}'
        assert upstream.requests == []
