from typing import Dict, Mapping, Optional

ALLOWED_METHODS = "GET,POST,PUT,PATCH,DELETE,OPTIONS"
PREFLIGHT_MAX_AGE_SECONDS = 600
VARY = "Origin, Access-Control-Request-Method, Access-Control-Request-Headers"

# Names (lower case) of every header build_cors_headers emits
CORS_HEADER_NAMES = frozenset(
    {
        "access-control-allow-origin",
        "access-control-allow-credentials",
        "access-control-allow-methods",
        "access-control-allow-headers",
        "access-control-expose-headers",
        "access-control-max-age",
        "vary",
    }
)


def build_cors_headers(
    request_headers: Mapping[str, str],
    base_headers: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Build the CORS headers for a response to the given request.

    The caller's Origin is mirrored (``*`` when absent) and the requested
    preflight headers are echoed back. Origin policy is enforced earlier by
    the admission pipeline. The result mirrors the request, so it is built
    fresh for every response.
    """
    headers = dict(base_headers or {})
    headers["access-control-allow-origin"] = request_headers.get("origin") or "*"
    headers["access-control-allow-credentials"] = "true"
    headers["access-control-allow-methods"] = ALLOWED_METHODS
    headers["access-control-allow-headers"] = (
        request_headers.get("access-control-request-headers") or "*"
    )
    headers["access-control-expose-headers"] = "*"
    headers["vary"] = VARY
    headers["access-control-max-age"] = str(PREFLIGHT_MAX_AGE_SECONDS)
    return headers
