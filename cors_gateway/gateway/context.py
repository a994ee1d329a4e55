from dataclasses import dataclass
from typing import Optional

from starlette.datastructures import Headers
from starlette.requests import HTTPConnection


def raw_request_target(scope) -> Optional[str]:
    """
    Undecoded path plus query string, as the client sent it.

    None when the raw bytes are not UTF-8, which no target URL can be.
    """
    raw_path = scope.get("raw_path")
    query = scope.get("query_string", b"")
    try:
        if raw_path:
            path = raw_path.decode("utf-8", errors="strict")
        else:
            path = scope.get("path", "/")
        if query:
            return f"{path}?{query.decode('utf-8', errors='strict')}"
    except UnicodeDecodeError:
        return None
    return path


@dataclass(frozen=True)
class RequestContext:
    """Per-request view of the inbound request; never shared between requests."""

    method: str
    raw_path: Optional[str]
    origin: str
    headers: Headers
    client_address: Optional[str]

    @classmethod
    def from_connection(cls, connection: HTTPConnection) -> "RequestContext":
        scope = connection.scope
        return cls(
            method=scope.get("method", "GET").upper(),
            raw_path=raw_request_target(scope),
            origin=connection.headers.get("origin", ""),
            headers=connection.headers,
            client_address=connection.client.host if connection.client else None,
        )
