"""Address helpers — multi-address parsing, ordering and exclusion.

Peers advertise themselves with multi-addresses such as
``/dns4/bootstrap-1.test.network/tcp/3919`` or ``/ip4/10.102.4.6/tcp/45861``.
Only the host and port are relevant for endpoint resolution; the transport
code and protocol segments are validated but otherwise ignored.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Iterable, Iterator

MIN_PORT = 1
MAX_PORT = 65535


class AddressError(ValueError):
    """Raised when a multi-address cannot be parsed."""


class MalformedAddressError(AddressError):
    """The string doesn't look like /<code>/<host>/<protocol>/<port>."""


class EmptyHostError(AddressError):
    """The host segment is empty."""


class InvalidPortError(AddressError):
    """The port segment is not a non-negative integer."""


class PortRangeError(ValueError):
    """Raised for an invalid ``start-end`` port range."""


def parse_multi_address(multi_address: str) -> tuple[str, int | None]:
    """Extract host and port from a multi-address.

    Args:
        multi_address: String like ``/ip4/10.0.0.5/tcp/4001``. Segments after
            the port (e.g. ``/p2p/<id>``) are ignored.

    Returns:
        ``(host, port)``; port is None when advertised as 0.

    Raises:
        MalformedAddressError: Wrong shape.
        EmptyHostError: Host segment is empty.
        InvalidPortError: Port segment is not a non-negative integer.
    """
    if not multi_address.startswith("/"):
        raise MalformedAddressError(f"multi-address must start with '/': {multi_address!r}")

    segments = multi_address[1:].split("/")
    if segments and segments[-1] == "":
        segments.pop()
    if len(segments) < 4:
        raise MalformedAddressError(
            f"expected /<code>/<host>/<protocol>/<port>, got {multi_address!r}"
        )

    code, host, protocol, port_str = segments[:4]
    if not code or not protocol:
        raise MalformedAddressError(f"empty code or protocol in {multi_address!r}")
    if not host:
        raise EmptyHostError(f"empty host in {multi_address!r}")
    if not (port_str.isascii() and port_str.isdigit()):
        raise InvalidPortError(f"invalid port {port_str!r} in {multi_address!r}")

    port = int(port_str)
    if port > MAX_PORT:
        raise InvalidPortError(f"port {port} out of range in {multi_address!r}")
    return host, (port or None)


def _parse_ip(address: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(address)
    except ValueError:
        return None


def is_ip_literal(address: str) -> bool:
    """True if the address is an IPv4 or IPv6 literal."""
    return _parse_ip(address) is not None


def classify_order(addresses: Iterable[str]) -> list[str]:
    """Order addresses for resolution attempts.

    DNS names come first (ascending), then IP literals (descending).
    Duplicates are dropped.
    """
    unique = set(addresses)
    hostnames = sorted(a for a in unique if not is_ip_literal(a))
    ips = sorted((a for a in unique if is_ip_literal(a)), reverse=True)
    return hostnames + ips


def is_excluded(
    address: str,
    banned: Iterable[str],
    allow_private: bool = False,
) -> bool:
    """Check if an address must not be probed.

    Banned literals and loopback IPs are always excluded; private-range IPs
    unless ``allow_private`` is set.
    """
    if address in set(banned):
        return True
    ip = _parse_ip(address)
    if ip is None:
        return False
    if ip.is_loopback:
        return True
    if ip.is_private and not allow_private:
        return True
    return False


def join_host_port(host: str, port: int) -> str:
    """Build a ``host:port`` endpoint, bracketing IPv6 hosts."""
    if ":" in host and not host.startswith("["):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


@dataclass(frozen=True)
class PortRange:
    """Inclusive range of TCP ports to scan for the diagnostics endpoint."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if not (MIN_PORT <= self.start <= MAX_PORT and MIN_PORT <= self.end <= MAX_PORT):
            raise PortRangeError(
                f"ports must be within {MIN_PORT}-{MAX_PORT}: {self.start}-{self.end}"
            )
        if self.start > self.end:
            raise PortRangeError(f"range start {self.start} is after end {self.end}")

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.start, self.end + 1))

    def __len__(self) -> int:
        return self.end - self.start + 1

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.start <= port <= self.end

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


def parse_port_range(value: str) -> PortRange:
    """Parse a ``start-end`` string such as ``9701-9799``."""
    parts = value.strip().split("-")
    if len(parts) != 2:
        raise PortRangeError(f"invalid range provided: {value!r}")

    bounds = []
    for part in parts:
        part = part.strip()
        if not (part.isascii() and part.isdigit()):
            raise PortRangeError(f"failed to convert {part!r} to a port number")
        bounds.append(int(part))

    return PortRange(bounds[0], bounds[1])
