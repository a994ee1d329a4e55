"""Resolution of the target URL embedded in a gateway request path."""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlsplit

SUPPORTED_SCHEMES = ("http", "https")
DEFAULT_PORTS = {"http": 80, "https": 443}

# Bound for re-resolving double-embedded URLs like "http://http://evil.com"
MAX_RESOLVE_DEPTH = 5


def format_origin(scheme: str, hostname: str, port: Optional[int]) -> str:
    """Canonical ``scheme://hostname[:port]`` with the scheme's default port omitted."""
    scheme = scheme.lower()
    hostname = hostname.lower()
    if ":" in hostname:
        hostname = f"[{hostname}]"
    if port is None or DEFAULT_PORTS.get(scheme) == port:
        return f"{scheme}://{hostname}"
    return f"{scheme}://{hostname}:{port}"


def origin_of(url: str) -> Optional[str]:
    """Origin of an absolute URL, or None when it has no usable host."""
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not parts.hostname:
        return None
    return format_origin(parts.scheme, parts.hostname, port)


@dataclass(frozen=True)
class ResolvedTarget:
    scheme: str
    hostname: str
    port: Optional[int]
    path: str
    query: str

    @property
    def origin(self) -> str:
        return format_origin(self.scheme, self.hostname, self.port)

    @property
    def href(self) -> str:
        if self.query:
            return f"{self.origin}{self.path}?{self.query}"
        return f"{self.origin}{self.path}"

    @property
    def websocket_url(self) -> str:
        ws_scheme = "wss" if self.scheme == "https" else "ws"
        return ws_scheme + self.href[len(self.scheme):]


def decode_target(raw_path: Optional[str]) -> Optional[str]:
    """
    Percent-decode the request target after its leading slash.

    Returns None when there is no target or it is not valid UTF-8 once decoded.
    """
    if raw_path is None:
        return None
    suffix = raw_path[1:] if raw_path.startswith("/") else raw_path
    try:
        return unquote(suffix, errors="strict")
    except UnicodeDecodeError:
        return None


def _normalize_scheme_slashes(url: str) -> str:
    lowered = url.lower()
    for scheme in SUPPORTED_SCHEMES:
        single = f"{scheme}:/"
        if lowered.startswith(single) and not lowered.startswith(f"{scheme}://"):
            return f"{scheme}://{url[len(single):]}"
    return url


def _is_scheme_confused(netloc: str) -> bool:
    """True when the authority is itself a scheme, as in ``http://http://host``."""
    host_port = netloc.rpartition("@")[2]
    if host_port.startswith("["):
        return False
    if host_port.count(":") > 1:
        return True
    return host_port.endswith(":") and host_port[:-1].lower() in SUPPORTED_SCHEMES


def resolve_target(raw: Optional[str], _depth: int = 0) -> Optional[ResolvedTarget]:
    """
    Parse a decoded path suffix into a ResolvedTarget.

    Returns None for empty input, unparseable URLs, unsupported schemes,
    missing hosts, or scheme-confused input that does not resolve within
    MAX_RESOLVE_DEPTH re-resolutions.
    """
    if not raw or _depth > MAX_RESOLVE_DEPTH:
        return None

    normalized = _normalize_scheme_slashes(raw.strip())
    try:
        parts = urlsplit(normalized)
        port = parts.port
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    if scheme not in SUPPORTED_SCHEMES:
        return None

    if _is_scheme_confused(parts.netloc):
        remainder = normalized[normalized.index("//") + 2:]
        return resolve_target(remainder, _depth + 1)

    hostname = parts.hostname
    if not hostname:
        return None

    return ResolvedTarget(
        scheme=scheme,
        hostname=hostname.lower(),
        port=None if port == DEFAULT_PORTS[scheme] else port,
        path=parts.path or "/",
        query=parts.query,
    )
