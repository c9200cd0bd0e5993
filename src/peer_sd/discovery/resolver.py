"""Endpoint resolver — find the diagnostics endpoint of each discovered peer.

Peers advertise their network addresses but not the port their diagnostics
endpoint listens on. For every peer the resolver:

  1. Re-checks the endpoint found in the previous round, if any.
  2. Otherwise walks the peer's addresses (DNS names first) and for each
     usable address tries a port already seen serving this peer, then
     scans the configured port range.

Every successful diagnostics call is recorded in a per-round port cache
keyed by (address, identity of the node that answered), so a peer running
on the same host as one scanned earlier is found without a second scan.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Iterable

from peer_sd.discovery.peer import PeerRecord, ResolutionState
from peer_sd.network.address import PortRange, is_excluded, join_host_port
from peer_sd.network.diagnostics import DiagnosticsError, DiagnosticsGateway
from peer_sd.network.probe import PortProbe, is_port_open

logger = logging.getLogger(__name__)

DEFAULT_SCAN_TIMEOUT = 1.0
DEFAULT_MAX_CONCURRENCY = 16
DEFAULT_BANNED_ADDRESSES = ("127.0.0.1",)


class ResolutionError(Exception):
    """Raised when an address/port candidate is rejected."""


class PortClosedError(ResolutionError):
    """Nothing is listening on the port."""


class UnreachableDiagnosticsError(ResolutionError):
    """The port is open but doesn't serve diagnostics."""


class WrongPeerError(ResolutionError):
    """The port serves diagnostics of another peer."""

    def __init__(self, found_identity: str) -> None:
        super().__init__(f"port serves another peer: {found_identity}")
        self.found_identity = found_identity


class DiscoveredPortCache:
    """Ports found serving a given identity at a given address.

    Scoped to a single round. All writes happen on the event loop thread,
    so concurrent resolutions never lose an entry.
    """

    def __init__(self) -> None:
        self._ports: dict[tuple[str, str], int] = {}

    def get(self, address: str, identity: str) -> int | None:
        return self._ports.get((address, identity))

    def record(self, address: str, identity: str, port: int) -> None:
        self._ports[(address, identity)] = port

    def __contains__(self, key: object) -> bool:
        return key in self._ports

    def __len__(self) -> int:
        return len(self._ports)


@dataclass
class RoundContext:
    """State owned by a single discovery round."""

    round_number: int
    port_cache: DiscoveredPortCache = field(default_factory=DiscoveredPortCache)
    started_at: float = field(default_factory=time.time)


@dataclass
class ResolverConfig:
    """Settings for endpoint resolution."""

    port_range: PortRange
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT
    banned_addresses: list[str] = field(
        default_factory=lambda: list(DEFAULT_BANNED_ADDRESSES),
    )
    allow_private_addresses: bool = False


class EndpointResolver:
    """Resolves a working diagnostics endpoint per peer."""

    def __init__(
        self,
        config: ResolverConfig,
        gateway: DiagnosticsGateway,
        port_probe: PortProbe = is_port_open,
    ) -> None:
        self.config = config
        self._gateway = gateway
        self._port_probe = port_probe

    async def resolve_all(
        self,
        peers: Iterable[PeerRecord],
        ctx: RoundContext,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> list[PeerRecord]:
        """Resolve peers concurrently.

        Returns:
            The peers that ended up with a working endpoint.
        """
        peers = list(peers)
        semaphore = asyncio.Semaphore(max(1, max_concurrency))

        async def _resolve_one(peer: PeerRecord) -> None:
            async with semaphore:
                try:
                    await self.resolve(peer, ctx)
                except Exception:
                    logger.exception("Unexpected error resolving peer %s", peer.identity)
                    peer.endpoint = ""
                    peer.state = ResolutionState.EXHAUSTED

        await asyncio.gather(*(_resolve_one(p) for p in peers))
        return [p for p in peers if p.is_resolved]

    async def resolve(self, peer: PeerRecord, ctx: RoundContext) -> ResolutionState:
        """Run endpoint resolution for one peer.

        Sets ``peer.endpoint`` and ``peer.state``; the endpoint is cleared
        when resolution is exhausted.
        """
        logger.info("Resolving diagnostics endpoint for peer %s", peer.identity)

        if peer.endpoint:
            peer.state = ResolutionState.HAS_CACHED_ENDPOINT
            if await self._verify_endpoint(peer):
                logger.info(
                    "Already known endpoint still works: peer=%s endpoint=%s",
                    peer.identity, peer.endpoint,
                )
                peer.state = ResolutionState.VERIFIED
                return peer.state

            logger.warning(
                "Already known endpoint doesn't work: peer=%s endpoint=%s",
                peer.identity, peer.endpoint,
            )
            peer.state = ResolutionState.STALE
            peer.endpoint = ""

        logger.info("Starting diagnostics port scan for peer %s", peer.identity)
        peer.state = ResolutionState.SCANNING

        for address in peer.addresses:
            if await self._resolve_address(peer, address, ctx):
                peer.state = ResolutionState.RESOLVED
                return peer.state

        logger.error(
            "Failed to find diagnostics port: peer=%s addresses=%s",
            peer.identity, peer.addresses,
        )
        peer.endpoint = ""
        peer.state = ResolutionState.EXHAUSTED
        return peer.state

    async def check_port(
        self,
        peer: PeerRecord,
        address: str,
        port: int,
        ctx: RoundContext,
    ) -> str:
        """Check whether ``address:port`` serves diagnostics for ``peer``.

        Records the port for whichever identity answered, so other peers
        sharing the address can reuse it.

        Returns:
            The endpoint, also stored on ``peer.endpoint``.

        Raises:
            PortClosedError: Nothing listens on the port.
            UnreachableDiagnosticsError: Diagnostics call failed.
            WrongPeerError: Another peer answered.
        """
        if not await self._port_probe(address, port, self.config.scan_timeout):
            raise PortClosedError(f"port {port} is not open")

        endpoint = join_host_port(address, port)
        try:
            record = await self._gateway.fetch(endpoint)
        except DiagnosticsError as e:
            raise UnreachableDiagnosticsError(f"failed to get diagnostics: {e}") from e

        if record.self_identity:
            ctx.port_cache.record(address, record.self_identity, port)

        if record.self_identity != peer.identity:
            raise WrongPeerError(record.self_identity)

        peer.endpoint = endpoint
        return endpoint

    async def _verify_endpoint(self, peer: PeerRecord) -> bool:
        try:
            record = await self._gateway.fetch(peer.endpoint)
        except DiagnosticsError as e:
            logger.debug("Known endpoint %s failed: %s", peer.endpoint, e)
            return False
        return record.self_identity == peer.identity

    async def _resolve_address(
        self,
        peer: PeerRecord,
        address: str,
        ctx: RoundContext,
    ) -> bool:
        if is_excluded(
            address,
            self.config.banned_addresses,
            self.config.allow_private_addresses,
        ):
            logger.info("Skipping excluded address: peer=%s address=%s", peer.identity, address)
            return False

        # The advertised network port tells us whether the host is up at all.
        if peer.port is not None and not await self._port_probe(
            address, peer.port, self.config.scan_timeout,
        ):
            logger.warning(
                "Address not reachable: peer=%s address=%s port=%d",
                peer.identity, address, peer.port,
            )
            return False

        cached_port = ctx.port_cache.get(address, peer.identity)
        if cached_port is not None:
            try:
                await self.check_port(peer, address, cached_port, ctx)
            except ResolutionError as e:
                logger.warning(
                    "Failed to check cached port: address=%s port=%d err=%s",
                    address, cached_port, e,
                )
            else:
                logger.info(
                    "Found diagnostics port: peer=%s address=%s port=%d",
                    peer.identity, address, cached_port,
                )
                return True

        for port in self.config.port_range:
            logger.debug(
                "Scanning port: peer=%s address=%s port=%d",
                peer.identity, address, port,
            )
            try:
                await self.check_port(peer, address, port, ctx)
            except ResolutionError as e:
                logger.debug("Failed to check port: address=%s port=%d err=%s", address, port, e)
                continue
            logger.info(
                "Found diagnostics port: peer=%s address=%s port=%d",
                peer.identity, address, port,
            )
            return True

        return False
