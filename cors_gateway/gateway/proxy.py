import asyncio
import logging
from typing import AsyncIterator, Iterable, List, Mapping, Optional, Protocol, Tuple
from urllib.parse import quote, urljoin

import httpx
from fastapi.responses import Response, StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect

from cors_gateway.gateway.admission import AdmissionConfig
from cors_gateway.gateway.context import RequestContext
from cors_gateway.gateway.cors import CORS_HEADER_NAMES, build_cors_headers
from cors_gateway.gateway.errors import ErrorKind, error_response
from cors_gateway.gateway.target import ResolvedTarget, origin_of
from cors_gateway.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)
from cors_gateway.vars import UPSTREAM_MAX_CONNECTIONS, UPSTREAM_TIMEOUT_SECONDS

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

REDIRECT_STATUSES = {301, 302, 303, 307, 308}

# Characters left as-is when re-quoting a rewritten redirect URL
_URL_SAFE = ":/?#[]@!$&'()*+,;=%~"

HeaderList = List[Tuple[str, str]]
RawHeaderList = List[Tuple[bytes, bytes]]

# Status reported when the client goes away before its request body is read
CLIENT_CLOSED_REQUEST = 499


class Forwarder(Protocol):
    async def send(
        self,
        method: str,
        url: str,
        headers: HeaderList,
        content: Optional[AsyncIterator[bytes]] = None,
    ) -> httpx.Response: ...

    async def aclose(self) -> None: ...


class HttpxForwarder:
    """
    Byte transport on one shared httpx.AsyncClient.

    The client keeps a keep-alive pool toward upstreams, never follows
    redirects (they are rewritten instead) and returns streamed responses.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = UPSTREAM_TIMEOUT_SECONDS,
        max_connections: int = UPSTREAM_MAX_CONNECTIONS,
    ):
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_connections,
            ),
            follow_redirects=False,
        )

    async def send(
        self,
        method: str,
        url: str,
        headers: HeaderList,
        content: Optional[AsyncIterator[bytes]] = None,
    ) -> httpx.Response:
        request = self.client.build_request(method, url, headers=headers, content=content)
        return await self.client.send(request, stream=True)

    async def aclose(self) -> None:
        await self.client.aclose()


def rewrite_location(
    location: str, target: ResolvedTarget, same_origin_only: bool = False
) -> str:
    """
    Point a redirect back through the gateway.

    The location is resolved against the target and prefixed with "/" so the
    browser re-enters the gateway. With same_origin_only, redirects leaving
    the target's origin are passed through untouched, as are locations that
    cannot be parsed.
    """
    try:
        absolute = urljoin(target.href, location)
    except ValueError:
        logger.debug(f"[Proxy] Unparseable Location left as-is: {location!r}")
        return location
    if same_origin_only and origin_of(absolute) != target.origin:
        return location
    return "/" + quote(absolute, safe=_URL_SAFE)


class ResponseInterceptor:
    """
    Rewrites the head of exactly one upstream response for exactly one client request.

    A fresh interceptor is created per forwarded request and consuming it a
    second time is an error, so a response can never pick up another
    request's Origin. Header values stay bytes, as the upstream sent them;
    only a redirect Location is decoded to be rewritten.
    """

    def __init__(
        self,
        target: ResolvedTarget,
        request_headers: Mapping[str, str],
        redirect_same_origin_only: bool = False,
    ):
        self.target = target
        self.request_headers = request_headers
        self.redirect_same_origin_only = redirect_same_origin_only
        self._consumed = False

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(
        self, status_code: int, upstream_headers: Iterable[Tuple[bytes, bytes]]
    ) -> RawHeaderList:
        if self._consumed:
            raise RuntimeError("Response interceptor already consumed")
        self._consumed = True

        headers: RawHeaderList = []
        for raw_name, raw_value in upstream_headers:
            name = raw_name.decode("latin-1").lower()
            if name in HOP_BY_HOP_HEADERS or name in CORS_HEADER_NAMES:
                continue
            if name == "location" and status_code in REDIRECT_STATUSES:
                raw_value = self._rewrite_location(raw_value)
            headers.append((name.encode("latin-1"), raw_value))

        headers.extend(
            (name.encode("latin-1"), value.encode("latin-1"))
            for name, value in build_cors_headers(self.request_headers).items()
        )
        return headers

    def _rewrite_location(self, raw_value: bytes) -> bytes:
        try:
            location = raw_value.decode("utf-8")
        except UnicodeDecodeError:
            return raw_value
        rewritten = rewrite_location(
            location, self.target, self.redirect_same_origin_only
        )
        if rewritten == location:
            return raw_value
        logger.debug(f"[Proxy] Location rewritten: {location} -> {rewritten}")
        # quote() leaves only ASCII behind
        return rewritten.encode("ascii")


async def _relay_body(upstream: httpx.Response, target: ResolvedTarget) -> AsyncIterator[bytes]:
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    except (asyncio.CancelledError, GeneratorExit):
        logger.debug(f"[Proxy] Client went away while streaming from {target.origin}")
        raise
    except httpx.HTTPError as e:
        logger.warning(
            f"[Proxy] Upstream body from {target.origin} broke off: {format_exception_message(e)}"
        )
        raise
    finally:
        await upstream.aclose()


class ProxyOrchestrator:
    """Forwards admitted requests and rewrites the upstream response for the browser."""

    def __init__(self, config: AdmissionConfig, forwarder: Forwarder):
        self.config = config
        self.forwarder = forwarder

    def outbound_headers(self, inbound: Iterable[Tuple[str, str]]) -> HeaderList:
        """
        Headers sent upstream: inbound minus hop-by-hop headers and Host, then
        configured removals and overrides, all matched case-insensitively.
        """
        removed = {name.lower() for name in self.config.headers_to_remove}
        overrides = {name.lower(): value for name, value in self.config.headers_to_set.items()}

        headers = [
            (name.lower(), value)
            for name, value in inbound
            if name.lower() not in HOP_BY_HOP_HEADERS
            and name.lower() != "host"
            and name.lower() not in removed
            and name.lower() not in overrides
        ]
        headers.extend(overrides.items())

        # Bodies are relayed undecoded, so never ask for an encoding the client did not
        if not any(name == "accept-encoding" for name, _ in headers):
            headers.append(("accept-encoding", "identity"))
        return headers

    async def forward(
        self,
        context: RequestContext,
        target: ResolvedTarget,
        body: Optional[AsyncIterator[bytes]] = None,
    ) -> Response:
        interceptor = ResponseInterceptor(
            target, context.headers, self.config.redirect_same_origin_only
        )
        headers = self.outbound_headers(context.headers.items())

        with tracer.start_as_current_span("proxy_request") as span:
            span.set_attribute("proxy.target_url", target.href)
            span.set_attribute("proxy.method", context.method)
            logger.debug(f"[Proxy] Proxying {context.method} -> {target.href}")

            try:
                upstream = await self.forwarder.send(
                    context.method, target.href, headers, body
                )
            except ClientDisconnect:
                span.set_attribute("proxy.error", "ClientDisconnect")
                logger.debug(
                    f"[Proxy] Client went away while uploading to {target.origin}"
                )
                return Response(status_code=CLIENT_CLOSED_REQUEST)
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                span.set_attribute("proxy.error", type(e).__name__)
                log_exception_with_details(
                    logger,
                    f"[Proxy] Forwarding to {target.origin} failed:",
                    e,
                    level=logging.WARNING,
                    include_traceback=False,
                )
                return error_response(
                    ErrorKind.PROXY_ERROR,
                    context.headers,
                    message=format_exception_message(e),
                )

            span.set_attribute("proxy.status_code", upstream.status_code)

        try:
            response_headers = interceptor.consume(
                upstream.status_code, upstream.headers.raw
            )
            response = StreamingResponse(
                _relay_body(upstream, target),
                status_code=upstream.status_code,
                background=BackgroundTask(upstream.aclose),
            )
        except Exception as e:
            await upstream.aclose()
            log_exception_with_details(
                logger, f"[Proxy] Response from {target.origin} not relayable:", e
            )
            return error_response(
                ErrorKind.PROXY_ERROR,
                context.headers,
                message=format_exception_message(e),
            )
        response.raw_headers = response_headers
        return response
