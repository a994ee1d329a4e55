import ipaddress
import re

import tldextract

MAX_HOSTNAME_LENGTH = 253

_LABEL = re.compile(r"^(?!-)[a-z0-9_-]{1,63}(?<!-)$")

# Bundled public suffix snapshot only; no list download at runtime
_extract = tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)


def is_ip_literal(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return True


def is_valid_hostname(hostname: str) -> bool:
    """
    Decide whether a target hostname is an acceptable forwarding destination.

    Literal IPv4/IPv6 addresses pass unconditionally. Anything else must be a
    syntactically valid DNS name with a registrable domain under a known
    public suffix. No DNS lookups are made.
    """
    if not hostname:
        return False
    if is_ip_literal(hostname.strip("[]")):
        return True

    try:
        ascii_name = hostname.encode("idna").decode("ascii").lower()
    except UnicodeError:
        return False

    if ascii_name.endswith("."):
        ascii_name = ascii_name[:-1]
    if not ascii_name or len(ascii_name) > MAX_HOSTNAME_LENGTH:
        return False
    if not all(_LABEL.match(label) for label in ascii_name.split(".")):
        return False

    parts = _extract(ascii_name)
    return bool(parts.domain and parts.suffix)
