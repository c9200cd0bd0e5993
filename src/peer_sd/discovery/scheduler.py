"""Discovery scheduler — run discovery rounds and publish target updates.

Each round:
  1. Fetch diagnostics from every bootstrap source (in parallel).
  2. Combine their connected peers into unique peer records, carrying over
     last round's endpoints as hints.
  3. Resolve a diagnostics endpoint for every peer (in parallel).
  4. Build target groups for resolved peers, plus an empty group for every
     peer published last round that wasn't resolved this round.
  5. Publish the batch to the sink.

Rounds never overlap. The stop event is only checked between rounds, so a
round in progress always finishes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from peer_sd.config import DiscoveryConfig
from peer_sd.discovery.combiner import PeerCombiner
from peer_sd.discovery.peer import PeerRecord
from peer_sd.discovery.resolver import EndpointResolver, RoundContext
from peer_sd.network.diagnostics import DiagnosticsError, DiagnosticsGateway, DiagnosticsRecord
from peer_sd.network.probe import PortProbe, is_port_open
from peer_sd.output.targets import TargetGroup, TargetSink

logger = logging.getLogger(__name__)


class DiscoveryScheduler:
    """Drives periodic discovery rounds.

    Across rounds only the published identities and their endpoints are
    kept; everything else is rebuilt each round.
    """

    def __init__(
        self,
        config: DiscoveryConfig,
        gateway: DiagnosticsGateway,
        sink: TargetSink,
        port_probe: PortProbe = is_port_open,
    ) -> None:
        self.config = config
        self._gateway = gateway
        self._sink = sink
        self.combiner = PeerCombiner()
        self.resolver = EndpointResolver(config.resolver_config(), gateway, port_probe)

        self._round_number = 0
        self._previous_sources: set[str] = set()
        self._previous_endpoints: dict[str, str] = {}  # identity -> endpoint
        self._last_round_duration = 0.0
        self._last_resolved = 0
        self._last_removed = 0

    @property
    def rounds_completed(self) -> int:
        return self._round_number

    @property
    def known_sources(self) -> set[str]:
        """Identities published as live targets by the last round."""
        return set(self._previous_sources)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run rounds until ``stop_event`` is set.

        The first round starts immediately; each following round starts
        ``refresh_interval`` after the previous one started, or right away
        if that round took longer.
        """
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                await self.run_round()
            except Exception:
                logger.exception("Discovery round failed")

            if stop_event.is_set():
                break
            delay = max(0.0, self.config.refresh_interval - (loop.time() - started))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
            break

        logger.info("Discovery stopped after %d rounds", self._round_number)

    async def collect_diagnostics(self) -> list[DiagnosticsRecord]:
        """Fetch diagnostics from all sources; failed sources are left out."""
        results = await asyncio.gather(
            *(self._fetch_source(addr) for addr in self.config.sources),
        )
        return [r for r in results if r is not None]

    async def run_round(self) -> list[TargetGroup]:
        """Run one full discovery round and publish its targets."""
        started = time.monotonic()
        ctx = RoundContext(round_number=self._round_number + 1)
        logger.info("Starting discovery round %d", ctx.round_number)

        records = await self.collect_diagnostics()
        peers = self.combiner.combine(records, self._previous_endpoints)
        logger.info("Discovered %d connected peers", len(peers))
        logger.debug("Discovered peers: %s", peers)

        resolved = await self.resolver.resolve_all(
            peers.values(), ctx, self.config.max_concurrent_resolutions,
        )

        groups = self._build_target_groups(resolved)

        self._previous_sources = {p.identity for p in resolved}
        self._previous_endpoints = {p.identity: p.endpoint for p in resolved}
        self._round_number = ctx.round_number

        self._sink.publish(groups)

        self._last_round_duration = time.monotonic() - started
        self._last_resolved = len(resolved)
        self._last_removed = sum(1 for g in groups if g.is_removal)
        logger.info(
            "Discovery round %d completed: resolved=%d removed=%d unresolved=%d "
            "cached_ports=%d duration=%.1fs",
            ctx.round_number,
            self._last_resolved,
            self._last_removed,
            len(peers) - len(resolved),
            len(ctx.port_cache),
            self._last_round_duration,
        )
        return groups

    def get_stats(self) -> dict[str, Any]:
        return {
            "rounds_completed": self._round_number,
            "known_targets": len(self._previous_sources),
            "sources": len(self.config.sources),
            "last_round_duration": self._last_round_duration,
            "last_resolved": self._last_resolved,
            "last_removed": self._last_removed,
        }

    # ── Internals ────────────────────────────────────────────────

    async def _fetch_source(self, address: str) -> DiagnosticsRecord | None:
        logger.info("Collecting diagnostics from source %s", address)
        try:
            return await self._gateway.fetch(address)
        except DiagnosticsError as e:
            logger.error("Failed to get diagnostics from %s: %s", address, e)
            return None

    def _build_target_groups(self, resolved: list[PeerRecord]) -> list[TargetGroup]:
        groups = [
            TargetGroup.for_peer(peer)
            for peer in sorted(resolved, key=lambda p: p.identity)
        ]
        # When a target disappears, send an update with an empty target list.
        current = {p.identity for p in resolved}
        for source in sorted(self._previous_sources - current):
            logger.info("Target %s disappeared", source)
            groups.append(TargetGroup.removal(source))
        return groups
