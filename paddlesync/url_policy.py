from __future__ import annotations

import re
from urllib.parse import urlsplit


ALLOWED_SCHEME = "https"

BLOCKED_HOSTNAMES = {"localhost", "127.0.0.1", "::1", "0.0.0.0", "::"}

_PRIVATE_172 = re.compile(r"^172\.(1[6-9]|2[0-9]|3[0-1])\.")
_CGNAT_100 = re.compile(r"^100\.(6[4-9]|[7-9][0-9]|1[0-1][0-9]|12[0-7])\.")


def validate_url(url: str) -> bool:
    """String-level pre-filter for feed URLs; fails closed.

    This does not resolve DNS. ``safe_fetch`` checks the resolved addresses.
    """
    if not isinstance(url, str) or not url.strip():
        return False
    try:
        parsed = urlsplit(url.strip())
        hostname = parsed.hostname
        # Accessing .port validates it and raises on garbage such as ":abc".
        parsed.port
    except ValueError:
        return False

    if parsed.scheme.lower() != ALLOWED_SCHEME:
        return False
    if not hostname:
        return False

    hostname = hostname.rstrip(".")
    if hostname in BLOCKED_HOSTNAMES:
        return False
    if hostname.startswith(("10.", "127.", "192.168.", "169.254.")):
        return False
    if _PRIVATE_172.match(hostname) or _CGNAT_100.match(hostname):
        return False
    return True
