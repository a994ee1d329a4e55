import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "cors-gateway")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "4399"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info").lower()

INBOUND_TIMEOUT_SECONDS = float(os.environ.get("INBOUND_TIMEOUT_SECONDS", "15"))
UPSTREAM_TIMEOUT_SECONDS = float(os.environ.get("UPSTREAM_TIMEOUT_SECONDS", "15"))
UPSTREAM_MAX_CONNECTIONS = int(os.environ.get("UPSTREAM_MAX_CONNECTIONS", "100"))
MAX_TUNNELS_PER_ORIGIN = int(os.environ.get("MAX_TUNNELS_PER_ORIGIN", "32"))


def _parse_list(raw: str) -> list:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _parse_header_assignments(raw: str) -> dict:
    mapping: dict = {}
    if not raw:
        return mapping
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if "=" in entry:
            key, val = entry.split("=", 1)
            key = key.strip()
            val = val.strip()
            if key:
                mapping[key] = val
    return mapping


ORIGIN_BLACKLIST = _parse_list(os.environ.get("ORIGIN_BLACKLIST", ""))
ORIGIN_WHITELIST = _parse_list(os.environ.get("ORIGIN_WHITELIST", ""))
REQUIRE_HEADERS = _parse_list(os.environ.get("REQUIRE_HEADERS", ""))
REMOVE_HEADERS = _parse_list(os.environ.get("REMOVE_HEADERS", ""))
SET_HEADERS = _parse_header_assignments(os.environ.get("SET_HEADERS", ""))
REDIRECT_SAME_ORIGIN = os.environ.get("REDIRECT_SAME_ORIGIN", "false").lower() == "true"

# Rate limiting is off unless a sustained rate is configured
RATE_LIMIT_PER_SECOND = float(os.environ.get("RATE_LIMIT_PER_SECOND", "0"))
RATE_LIMIT_BURST = int(os.environ.get("RATE_LIMIT_BURST", "20"))

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
