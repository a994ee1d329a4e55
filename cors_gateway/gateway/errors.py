from enum import Enum
from typing import Dict, Mapping, Optional

from fastapi.responses import JSONResponse

from cors_gateway.gateway.cors import build_cors_headers


class ErrorKind(str, Enum):
    ORIGIN_BLACKLISTED = "origin_blacklisted"
    ORIGIN_NOT_WHITELISTED = "origin_not_whitelisted"
    MISSING_REQUIRED_HEADER = "missing_required_header"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_TARGET_URL = "invalid_target_url"
    INVALID_HOST = "invalid_host"
    CLIENT_TIMEOUT = "client_timeout"
    PROXY_ERROR = "proxy_error"


STATUS_CODES = {
    ErrorKind.ORIGIN_BLACKLISTED: 403,
    ErrorKind.ORIGIN_NOT_WHITELISTED: 403,
    ErrorKind.MISSING_REQUIRED_HEADER: 400,
    ErrorKind.RATE_LIMIT_EXCEEDED: 429,
    ErrorKind.INVALID_TARGET_URL: 400,
    ErrorKind.INVALID_HOST: 404,
    ErrorKind.CLIENT_TIMEOUT: 504,
    ErrorKind.PROXY_ERROR: 502,
}


class GatewayRejection(Exception):
    """A request the gateway answers itself instead of forwarding."""

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.kind = kind
        self.status_code = STATUS_CODES[kind]
        self.message = message
        self.headers = headers or {}
        super().__init__(message or kind.value)


def error_response(
    kind: ErrorKind,
    request_headers: Mapping[str, str],
    message: Optional[str] = None,
    extra_headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """JSON error body with CORS headers so browser callers can read it."""
    content = {"error": kind.value}
    if message:
        content["message"] = message
    return JSONResponse(
        status_code=STATUS_CODES[kind],
        content=content,
        headers=build_cors_headers(request_headers, extra_headers),
    )
