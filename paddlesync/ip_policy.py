from __future__ import annotations

import ipaddress


BLOCKED_IPV4_NETWORKS = tuple(
    ipaddress.IPv4Network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
    )
)

BLOCKED_IPV6_NETWORKS = tuple(
    ipaddress.IPv6Network(cidr)
    for cidr in (
        "::/128",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)


def is_private_ip(ip: str) -> bool:
    """Return True when a resolved address must not be contacted.

    Best-effort policy over the loopback, RFC 1918, link-local, CGNAT and IPv6
    unique-local ranges. Strings that are not IP literals are not private.
    """
    text = str(ip or "").strip()
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1]
    # Scoped IPv6 literals (fe80::1%eth0) carry a zone index.
    text = text.split("%", 1)[0]
    try:
        address = ipaddress.ip_address(text)
    except ValueError:
        return False

    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is not None:
            return _in_networks(address.ipv4_mapped, BLOCKED_IPV4_NETWORKS)
        return _in_networks(address, BLOCKED_IPV6_NETWORKS)
    return _in_networks(address, BLOCKED_IPV4_NETWORKS)


def _in_networks(address, networks) -> bool:
    return any(address in network for network in networks)
