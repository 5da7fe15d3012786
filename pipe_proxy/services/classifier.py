"""Pure classification of IP literals and hostnames for SSRF checks.

Nothing in this module performs I/O.
"""
from __future__ import annotations

import ipaddress
import re
from typing import Optional

# Inclusive octet ranges treated as private/internal
PRIVATE_IPV4_RANGES = [
    ((10, 0, 0, 0), (10, 255, 255, 255)),      # 10.0.0.0/8
    ((172, 16, 0, 0), (172, 31, 255, 255)),    # 172.16.0.0/12
    ((192, 168, 0, 0), (192, 168, 255, 255)),  # 192.168.0.0/16
    ((127, 0, 0, 0), (127, 255, 255, 255)),    # 127.0.0.0/8 loopback
    ((169, 254, 0, 0), (169, 254, 255, 255)),  # 169.254.0.0/16 link-local
    ((0, 0, 0, 0), (0, 0, 0, 0)),
]

DISALLOWED_HOSTNAMES = {"localhost", "ip6-localhost", "0.0.0.0"}

_IPV6_TEXT = re.compile(r"^[0-9a-fA-F:]+$")
_UNIQUE_LOCAL = ipaddress.ip_network("fc00::/7")


def parse_ipv4(address: str) -> Optional[tuple[int, int, int, int]]:
    """Parse a dotted-quad into octets, or None.

    Only canonical decimal octets are accepted: ``010.0.0.1`` or ``1.2.3`` are not IPv4
    literals here.
    """
    parts = address.split(".")
    if len(parts) != 4:
        return None
    octets = []
    for part in parts:
        if not part.isdigit() or not part.isascii():
            return None
        num = int(part)
        if num > 255 or part != str(num):
            return None
        octets.append(num)
    return octets[0], octets[1], octets[2], octets[3]


def _ipv4_private(octets: tuple[int, int, int, int]) -> bool:
    return any(start <= octets <= end for start, end in PRIVATE_IPV4_RANGES)


def _parse_ipv6(address: str) -> Optional[ipaddress.IPv6Address]:
    try:
        return ipaddress.IPv6Address(address)
    except ValueError:
        return None


def is_literal_ip(address: str) -> bool:
    """True when ``address`` is an IPv4 or IPv6 literal rather than a name."""
    if parse_ipv4(address):
        return True
    if ":" in address and _IPV6_TEXT.match(address):
        return True
    return _parse_ipv6(address) is not None


def is_private_ip(address: str) -> bool:
    """True when ``address`` is loopback, private, link-local, unique-local or unspecified."""
    lowered = address.lower()
    if lowered in ("::1", "::") or lowered.startswith("fe80:"):
        return True
    if lowered.startswith("fc") or lowered.startswith("fd"):
        return True

    octets = parse_ipv4(address)
    if octets:
        return _ipv4_private(octets)

    ip6 = _parse_ipv6(lowered)
    if ip6 is None:
        return False
    if ip6.ipv4_mapped is not None:
        return _ipv4_private(parse_ipv4(str(ip6.ipv4_mapped)))  # type: ignore[arg-type]
    return ip6.is_loopback or ip6.is_unspecified or ip6.is_link_local or ip6 in _UNIQUE_LOCAL


def is_hostname_disallowed(hostname: str) -> bool:
    """True for names that always point back at the local machine or network."""
    lowered = hostname.lower().rstrip(".")
    return lowered in DISALLOWED_HOSTNAMES or lowered.endswith(".local")
