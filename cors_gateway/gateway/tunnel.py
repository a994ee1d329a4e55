"""WebSocket upgrade path: bidirectional tunnels to the embedded target."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from cors_gateway.gateway.context import RequestContext
from cors_gateway.gateway.hosts import is_valid_hostname
from cors_gateway.gateway.proxy import ProxyOrchestrator
from cors_gateway.gateway.target import ResolvedTarget, decode_target, resolve_target
from cors_gateway.utils.exception_logging import format_exception_message
from cors_gateway.vars import MAX_TUNNELS_PER_ORIGIN, UPSTREAM_TIMEOUT_SECONDS

logger = logging.getLogger("uvicorn.error")

# Close codes sent to the client when the tunnel cannot be set up
POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011
TRY_AGAIN_LATER = 1013

# Handshake headers the websockets client generates itself
WEBSOCKET_HANDSHAKE_HEADERS = {
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
}


class TunnelCapacityError(Exception):
    pass


class TunnelLimiter:
    """
    Tracks open tunnels per upstream origin.

    Each tunnel holds a lease for its whole lifetime and releases it when
    either side closes. Origins with no open tunnel are dropped from the
    table.
    """

    def __init__(self, max_per_origin: int = MAX_TUNNELS_PER_ORIGIN):
        self.max_per_origin = max_per_origin
        self._open: Dict[str, int] = {}

    def open_count(self, origin: str) -> int:
        return self._open.get(origin, 0)

    @asynccontextmanager
    async def lease(self, origin: str):
        count = self._open.get(origin, 0)
        if count >= self.max_per_origin:
            raise TunnelCapacityError(f"Too many open tunnels to {origin}")
        self._open[origin] = count + 1
        try:
            yield
        finally:
            remaining = self._open.get(origin, 1) - 1
            if remaining > 0:
                self._open[origin] = remaining
            else:
                self._open.pop(origin, None)


def resolve_upgrade_target(context: RequestContext) -> Optional[ResolvedTarget]:
    target = resolve_target(decode_target(context.raw_path))
    if target is None or not is_valid_hostname(target.hostname):
        return None
    return target


async def _client_to_upstream(websocket: WebSocket, upstream) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        if message.get("text") is not None:
            await upstream.send(message["text"])
        elif message.get("bytes") is not None:
            await upstream.send(message["bytes"])


async def _upstream_to_client(upstream, websocket: WebSocket) -> None:
    async for message in upstream:
        if isinstance(message, str):
            await websocket.send_text(message)
        else:
            await websocket.send_bytes(message)


def _client_close_code(upstream_code: Optional[int]) -> int:
    # 1005, 1006 and 1015 are reserved and may not be sent in a close frame
    if upstream_code is None or upstream_code in (1005, 1006, 1015):
        return 1000
    return upstream_code


class WebSocketTunnel:
    def __init__(
        self,
        orchestrator: ProxyOrchestrator,
        limiter: Optional[TunnelLimiter] = None,
        open_timeout: float = UPSTREAM_TIMEOUT_SECONDS,
    ):
        self.orchestrator = orchestrator
        self.limiter = limiter or TunnelLimiter()
        self.open_timeout = open_timeout

    def upstream_headers(self, context: RequestContext):
        return [
            (name, value)
            for name, value in self.orchestrator.outbound_headers(context.headers.items())
            if name not in WEBSOCKET_HANDSHAKE_HEADERS
        ]

    async def serve(self, websocket: WebSocket) -> None:
        context = RequestContext.from_connection(websocket)
        target = resolve_upgrade_target(context)
        if target is None:
            logger.info(f"[Tunnel] Rejected upgrade to invalid target: {context.raw_path}")
            await websocket.close(code=POLICY_VIOLATION)
            return

        try:
            async with self.limiter.lease(target.origin):
                await self._open_and_relay(websocket, context, target)
        except TunnelCapacityError as e:
            logger.warning(f"[Tunnel] {e}")
            await websocket.close(code=TRY_AGAIN_LATER)

    async def _open_and_relay(
        self, websocket: WebSocket, context: RequestContext, target: ResolvedTarget
    ) -> None:
        subprotocols = [
            p.strip()
            for p in context.headers.get("sec-websocket-protocol", "").split(",")
            if p.strip()
        ]
        try:
            upstream = await connect(
                target.websocket_url,
                additional_headers=self.upstream_headers(context),
                subprotocols=subprotocols or None,
                open_timeout=self.open_timeout,
            )
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as e:
            logger.warning(
                f"[Tunnel] Could not open upstream {target.websocket_url}: {format_exception_message(e)}"
            )
            await websocket.close(code=INTERNAL_ERROR)
            return

        try:
            await websocket.accept(subprotocol=upstream.subprotocol)
            logger.debug(f"[Tunnel] Opened tunnel to {target.websocket_url}")
            await self._relay(websocket, upstream)
        finally:
            await upstream.close()
            if websocket.client_state == WebSocketState.CONNECTED:
                await websocket.close(code=_client_close_code(upstream.close_code))
            logger.debug(f"[Tunnel] Closed tunnel to {target.websocket_url}")

    async def _relay(self, websocket: WebSocket, upstream) -> None:
        tasks = {
            asyncio.ensure_future(_client_to_upstream(websocket, upstream)),
            asyncio.ensure_future(_upstream_to_client(upstream, websocket)),
        }
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if task.cancelled():
                continue
            error = task.exception()
            if error is None or isinstance(error, (ConnectionClosed, WebSocketDisconnect)):
                continue
            logger.warning(f"[Tunnel] Relay stopped: {format_exception_message(error)}")
