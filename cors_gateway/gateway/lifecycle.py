import asyncio
import logging

from starlette.datastructures import Headers

from cors_gateway.gateway.errors import ErrorKind, error_response
from cors_gateway.gateway.metrics import GatewayMetrics, gateway_metrics
from cors_gateway.vars import INBOUND_TIMEOUT_SECONDS

logger = logging.getLogger("uvicorn.error")


class InboundLifecycleMiddleware:
    """
    ASGI middleware owning the inbound side of every HTTP request.

    Counts requests, in-flight requests and error responses, and enforces the
    inbound idle timeout: when neither the client nor the handler has moved a
    message for ``timeout`` seconds the handler is cancelled. A 504 is written
    if no response has started yet; otherwise the response is abandoned and
    the server drops the connection.
    """

    def __init__(
        self,
        app,
        timeout: float = INBOUND_TIMEOUT_SECONDS,
        metrics: GatewayMetrics = gateway_metrics,
    ):
        self.app = app
        self.timeout = timeout
        self.metrics = metrics

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        loop = asyncio.get_running_loop()
        state = {"last_activity": loop.time(), "started": False}

        async def tracked_receive():
            message = await receive()
            state["last_activity"] = loop.time()
            return message

        async def tracked_send(message):
            if message["type"] == "http.response.start":
                state["started"] = True
                if message["status"] >= 400:
                    self.metrics.error()
            state["last_activity"] = loop.time()
            await send(message)

        self.metrics.request_started()
        handler = asyncio.ensure_future(self.app(scope, tracked_receive, tracked_send))
        try:
            while True:
                remaining = state["last_activity"] + self.timeout - loop.time()
                if remaining <= 0:
                    break
                done, _ = await asyncio.wait({handler}, timeout=remaining)
                if done:
                    handler.result()
                    return

            handler.cancel()
            await asyncio.gather(handler, return_exceptions=True)
            logger.info(
                f"[Lifecycle] Inbound idle timeout after {self.timeout}s: {scope.get('path')}"
            )
            if not state["started"]:
                self.metrics.error()
                response = error_response(ErrorKind.CLIENT_TIMEOUT, Headers(scope=scope))
                await response(scope, receive, send)
        finally:
            if not handler.done():
                handler.cancel()
            self.metrics.request_finished()
