"""Server-side request forgery guard.

Every URL the pipeline is about to fetch goes through :meth:`SsrfGuard.validate`,
including each redirect hop.  The guard resolves the host and rejects any
address inside the blocked networks below.
"""

from __future__ import annotations

import ipaddress
import socket
from typing import Callable, Iterable
from urllib.parse import urlsplit

from .errors import ErrorKind, SecurityError

MAX_URL_LENGTH = 2000
ALLOWED_SCHEMES = ("http", "https")

BLOCKED_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "0.0.0.0/8",
        "::1/128",
        "::/128",
        "fc00::/7",
        "fe80::/10",
    )
)

Resolver = Callable[[str], Iterable[str]]


def resolve_host(host: str) -> list[str]:
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    addresses: list[str] = []
    for info in infos:
        sockaddr = info[4]
        if not sockaddr:
            continue
        address = str(sockaddr[0]).split("%", 1)[0]
        if address not in addresses:
            addresses.append(address)
    return addresses


def is_blocked_ip(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return any(
        address.version == network.version and address in network
        for network in BLOCKED_NETWORKS
    )


class SsrfGuard:
    """Stateless URL validator; safe to share between threads."""

    def __init__(self, resolver: Resolver | None = None) -> None:
        self._resolver = resolver or resolve_host

    def validate(self, url: str) -> None:
        if not url or not url.strip():
            raise SecurityError("Invalid URL format: URL is empty", kind=ErrorKind.INVALID_URL)
        if len(url) > MAX_URL_LENGTH:
            raise SecurityError(
                f"URL too long (max {MAX_URL_LENGTH} characters)", kind=ErrorKind.INVALID_URL
            )
        try:
            parts = urlsplit(url.strip())
            host = parts.hostname
            parts.port  # raises ValueError on a malformed port
        except ValueError as exc:
            raise SecurityError(
                "Invalid URL format: could not parse URL", kind=ErrorKind.INVALID_URL
            ) from exc

        scheme = (parts.scheme or "").lower()
        if scheme not in ALLOWED_SCHEMES:
            raise SecurityError(f"Invalid URL scheme (must be HTTP/HTTPS): {scheme or 'none'}")
        if not host:
            raise SecurityError("Invalid URL format: missing host", kind=ErrorKind.INVALID_URL)
        if parts.username or parts.password:
            raise SecurityError("URLs with embedded credentials are not allowed")

        for address in self._addresses_for(host):
            if is_blocked_ip(address):
                raise SecurityError(f"Private IP address blocked: {address}")

    def is_safe(self, url: str) -> bool:
        try:
            self.validate(url)
        except SecurityError:
            return False
        return True

    def _addresses_for(self, host: str) -> list[ipaddress.IPv4Address | ipaddress.IPv6Address]:
        try:
            return [ipaddress.ip_address(host)]
        except ValueError:
            pass
        try:
            resolved = list(self._resolver(host))
        except (OSError, UnicodeError) as exc:
            raise SecurityError(f"Could not resolve hostname: {host}") from exc
        addresses = []
        for value in resolved:
            try:
                addresses.append(ipaddress.ip_address(value))
            except ValueError:
                continue
        if not addresses:
            raise SecurityError(f"Could not resolve hostname: {host}")
        return addresses
