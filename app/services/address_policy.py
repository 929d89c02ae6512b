# app/services/address_policy.py
from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from typing import Awaitable, Callable, Iterable, List, Optional, Union

from app.errors import AddressBlocked

logger = logging.getLogger(__name__)

Resolver = Callable[[str], Awaitable[List[str]]]

_IPV4_INTERNAL = tuple(
    ipaddress.IPv4Network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.0.0.0/24",
        "192.0.2.0/24",
        "192.88.99.0/24",
        "192.168.0.0/16",
        "198.18.0.0/15",
        "198.51.100.0/24",
        "203.0.113.0/24",
        "224.0.0.0/4",  # multicast
        "240.0.0.0/4",  # reserved, includes broadcast
    )
)

_IPV6_INTERNAL = tuple(
    ipaddress.IPv6Network(cidr)
    for cidr in (
        "::/128",  # unspecified
        "::1/128",  # loopback
        "fc00::/7",  # unique local
        "fe80::/10",  # link-local
        "ff00::/8",  # multicast
        "2001:db8::/32",  # documentation
        "2001:10::/28",  # ORCHID
    )
)

IpAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def normalize_hostname(hostname: str) -> str:
    return hostname.strip().lower().rstrip(".")


def _strip_ip_literal(value: str) -> str:
    literal = value.strip()
    if literal.startswith("[") and literal.endswith("]"):
        literal = literal[1:-1]
    # Zone index (fe80::1%eth0) does not change the range an address falls in
    return literal.split("%", 1)[0]


def parse_ip_literal(value: str) -> Optional[IpAddress]:
    """Parse an IPv4/IPv6 literal (brackets and zone ids allowed); None when not an IP."""
    try:
        return ipaddress.ip_address(_strip_ip_literal(value))
    except ValueError:
        return None


def _is_internal(ip: IpAddress) -> bool:
    if isinstance(ip, ipaddress.IPv4Address):
        return any(ip in net for net in _IPV4_INTERNAL)
    if ip.ipv4_mapped is not None:
        return _is_internal(ip.ipv4_mapped)
    return any(ip in net for net in _IPV6_INTERNAL)


def is_internal_or_reserved(ip_literal: str) -> bool:
    """
    True when the literal falls in a private, reserved, loopback, link-local,
    multicast or documentation range. Raises ValueError for non-IP input.
    """
    ip = parse_ip_literal(ip_literal)
    if ip is None:
        raise ValueError(f"Invalid IP address: {ip_literal}")
    return _is_internal(ip)


def hostname_matches_pattern(hostname: str, pattern: str) -> bool:
    if pattern.startswith("*."):
        base = pattern[2:]
        if not base:
            return False
        return hostname == base or hostname.endswith("." + base)
    return hostname == pattern


async def resolve_all(hostname: str) -> List[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    return list(dict.fromkeys(info[4][0] for info in infos))


class AddressGuard:
    """
    DNS-rebinding guard for external-only destinations.

    Hostnames are resolved twice and every returned address must be public,
    unless the hostname matches one of the operator allow patterns
    ("host" or "*.domain"). The connection itself is not pinned to the checked
    addresses, so a resolver that changes its answer after the second lookup
    can still win the race.
    """

    def __init__(
        self,
        allow_patterns: Iterable[str] = (),
        resolver: Optional[Resolver] = None,
        double_lookup: bool = True,
    ):
        self.allow_patterns = [normalize_hostname(p) for p in allow_patterns if p.strip()]
        self._resolve = resolver or resolve_all
        self.double_lookup = double_lookup

    def internal_allowed_for(self, hostname: str) -> bool:
        host = normalize_hostname(hostname)
        if not host:
            return False
        return any(hostname_matches_pattern(host, p) for p in self.allow_patterns)

    async def _lookup(self, hostname: str) -> List[str]:
        try:
            addresses = await self._resolve(hostname)
        except (OSError, UnicodeError) as e:
            raise AddressBlocked(
                f"DNS resolution failed for hostname {hostname}: {e}", hostname=hostname
            ) from e
        if not addresses:
            raise AddressBlocked(f"No DNS records found for hostname: {hostname}", hostname=hostname)
        return addresses

    def _check(self, hostname: str, addresses: List[str], allow_internal: bool) -> None:
        for address in addresses:
            ip = parse_ip_literal(address)
            if ip is None:
                raise AddressBlocked(
                    f"Resolver returned a non-IP answer for hostname {hostname}: {address}",
                    hostname=hostname,
                    address=address,
                )
            if _is_internal(ip) and not allow_internal:
                raise AddressBlocked(
                    f"Blocked internal or reserved address for hostname {hostname}: {address}",
                    hostname=hostname,
                    address=address,
                )

    async def assert_external(self, hostname: str) -> None:
        host = normalize_hostname(hostname)
        if not host:
            raise AddressBlocked("Hostname is required for external address check")

        literal = parse_ip_literal(host)
        if literal is not None:
            if _is_internal(literal):
                raise AddressBlocked(
                    f"Blocked internal or reserved address: {_strip_ip_literal(host)}",
                    hostname=host,
                    address=str(literal),
                )
            return

        allow_internal = self.internal_allowed_for(host)

        self._check(host, await self._lookup(host), allow_internal)
        if self.double_lookup:
            self._check(host, await self._lookup(host), allow_internal)

        if allow_internal:
            logger.debug("internal addresses permitted for allowlisted host %s", host)
