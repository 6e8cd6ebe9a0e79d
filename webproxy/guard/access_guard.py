"""
Pre-flight check of target hosts against internal-network destinations.

The check is lexical: it looks at the hostname as written in the target URL
and never resolves it, so it does not protect against DNS rebinding.
"""

import ipaddress
import logging
import re
import socket
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import urlsplit

from webproxy.errors import ForbiddenTarget

logger = logging.getLogger("uvicorn.error")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}
BLOCKED_SUFFIXES = (".localhost", ".local", ".internal", ".home.arpa")

CGNAT_NETWORK = ipaddress.ip_network("100.64.0.0/10")

# Dotted or bare numbers in decimal, octal or hex, e.g. "2130706433" or "0x7f.1".
_NUMERIC_HOST = re.compile(r"^(0x[0-9a-f]+|[0-9]+)(\.(0x[0-9a-f]+|[0-9]+)){0,3}$")


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOWED = AccessDecision(True)


def parse_ip_literal(host: str) -> Optional[IPAddress]:
    """IP address written in ``host``, including shorthand IPv4 forms, or None."""
    candidate = host.strip("[]")
    try:
        ip = ipaddress.ip_address(candidate)
    except ValueError:
        ip = None
        if _NUMERIC_HOST.match(candidate):
            try:
                ip = ipaddress.IPv4Address(socket.inet_aton(candidate))
            except OSError:
                ip = None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _address_scope(ip: IPAddress) -> Optional[str]:
    if ip.is_loopback:
        return "loopback"
    if ip.is_unspecified:
        return "unspecified"
    if ip.is_link_local:
        return "link-local"
    if isinstance(ip, ipaddress.IPv4Address) and ip in CGNAT_NETWORK:
        return "carrier-grade NAT"
    if ip.is_private:
        return "private"
    if ip.is_multicast:
        return "multicast"
    if ip.is_reserved:
        return "reserved"
    return None


def check_host(hostname: str) -> AccessDecision:
    host = (hostname or "").strip().lower().rstrip(".")
    if not host:
        return AccessDecision(False, "Target URL has no host")

    if host in BLOCKED_HOSTNAMES or host.endswith(BLOCKED_SUFFIXES):
        return AccessDecision(False, f"Host '{host}' names a local or internal network")

    ip = parse_ip_literal(host)
    if ip is not None:
        scope = _address_scope(ip)
        if scope:
            return AccessDecision(False, f"Address {ip} is a {scope} address")
    return ALLOWED


def check(target_url: str) -> AccessDecision:
    """Allowed unless the target's host is internal-network addressing."""
    try:
        hostname = urlsplit(target_url).hostname
    except ValueError as e:
        return AccessDecision(False, f"Target URL could not be parsed: {e}")
    return check_host(hostname or "")


def ensure_allowed(target_url: str) -> None:
    decision = check(target_url)
    if not decision.allowed:
        logger.warning(f"[Guard] Rejected {target_url}: {decision.reason}")
        raise ForbiddenTarget(
            f"Cannot proxy requests to internal/local addresses. {decision.reason}",
            target_url,
        )
