import logging
import time
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Request, WebSocket
from fastapi.responses import HTMLResponse, JSONResponse, Response

from cors_gateway.gateway.admission import Admission
from cors_gateway.gateway.context import RequestContext
from cors_gateway.gateway.cors import build_cors_headers
from cors_gateway.gateway.errors import ErrorKind, GatewayRejection
from cors_gateway.gateway.hosts import is_valid_hostname
from cors_gateway.gateway.metrics import gateway_metrics
from cors_gateway.gateway.target import decode_target, resolve_target

router = APIRouter()
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

LANDING_PAGE = """<!DOCTYPE html>
<html>
<head><title>CORS gateway</title></head>
<body>
<h1>CORS gateway</h1>
<p>Prefix the URL you want to reach with this gateway's address:</p>
<pre>{base}https://api.example.com/data</pre>
<p>The response comes back with CORS headers for your page's origin.
Redirects are rewritten to stay on the gateway and WebSocket upgrades are tunnelled.</p>
</body>
</html>
"""


def _request_body(request: Request) -> Optional[AsyncIterator[bytes]]:
    content_length = request.headers.get("content-length")
    if (content_length and content_length != "0") or "transfer-encoding" in request.headers:
        return request.stream()
    return None


@router.get("/healthz")
async def healthz(request: Request):
    uptime = time.monotonic() - request.app.state.started_at
    return JSONResponse(content={"status": "ok", "uptime": round(uptime, 3)})


@router.get("/metrics")
async def metrics():
    return Response(
        content=gateway_metrics.render(), media_type=gateway_metrics.content_type
    )


@router.api_route("/{target:path}", methods=PROXY_METHODS)
async def proxy_entry(request: Request):
    """
    Main entry: admit the request, resolve the embedded target and forward it.

    Exactly one outcome per request: preflight answer, admission rejection,
    landing page, invalid target, invalid host, or the forwarded response.
    """
    state = request.app.state
    context = RequestContext.from_connection(request)

    if state.admission.admit(context) is Admission.PREFLIGHT:
        return Response(status_code=200, headers=build_cors_headers(request.headers))

    suffix = decode_target(context.raw_path)
    if suffix == "" and context.method == "GET":
        return HTMLResponse(
            LANDING_PAGE.format(base=str(request.base_url)),
            headers=build_cors_headers(request.headers),
        )

    target = resolve_target(suffix)
    if target is None:
        logger.debug(f"[Gateway] Invalid target URL: {context.raw_path}")
        raise GatewayRejection(ErrorKind.INVALID_TARGET_URL)
    if not is_valid_hostname(target.hostname):
        logger.debug(f"[Gateway] Invalid target host: {target.hostname}")
        raise GatewayRejection(ErrorKind.INVALID_HOST)

    return await state.orchestrator.forward(context, target, _request_body(request))


@router.websocket("/{target:path}")
async def tunnel_entry(websocket: WebSocket):
    await websocket.app.state.tunnel.serve(websocket)
