"""Tests for peer_sd.discovery.resolver.EndpointResolver."""

from __future__ import annotations

import asyncio

import pytest

from peer_sd.discovery.peer import PeerRecord, ResolutionState
from peer_sd.discovery.resolver import (
    DiscoveredPortCache,
    EndpointResolver,
    PortClosedError,
    ResolverConfig,
    RoundContext,
    UnreachableDiagnosticsError,
    WrongPeerError,
)
from peer_sd.network.address import PortRange


# ── Helpers ──────────────────────────────────────────────────────

def make_peer(
    identity: str = "P1",
    addresses: list[str] | None = None,
    port: int | None = None,
    endpoint: str = "",
) -> PeerRecord:
    return PeerRecord(
        identity=identity,
        network_id=f"net-{identity}",
        addresses=addresses if addresses is not None else ["host-a"],
        port=port,
        endpoint=endpoint,
    )


@pytest.fixture
def config():
    return ResolverConfig(port_range=PortRange(9701, 9705), scan_timeout=0.1)


@pytest.fixture
def resolver(config, gateway, probe):
    return EndpointResolver(config, gateway, probe)


@pytest.fixture
def ctx():
    return RoundContext(round_number=1)


# ── Port cache ───────────────────────────────────────────────────

class TestPortCache:
    def test_record_and_get(self):
        cache = DiscoveredPortCache()
        cache.record("host-a", "P1", 9701)
        assert cache.get("host-a", "P1") == 9701
        assert cache.get("host-a", "P2") is None
        assert ("host-a", "P1") in cache
        assert len(cache) == 1

    def test_overwrite(self):
        cache = DiscoveredPortCache()
        cache.record("host-a", "P1", 9701)
        cache.record("host-a", "P1", 9702)
        assert cache.get("host-a", "P1") == 9702

    def test_fresh_per_round(self):
        assert RoundContext(1).port_cache is not RoundContext(2).port_cache


# ── check_port ───────────────────────────────────────────────────

class TestCheckPort:
    @pytest.mark.asyncio
    async def test_closed(self, resolver, ctx):
        with pytest.raises(PortClosedError):
            await resolver.check_port(make_peer(), "host-a", 9701, ctx)

    @pytest.mark.asyncio
    async def test_open_but_no_diagnostics(self, resolver, probe, ctx):
        probe.open("host-a", 9701)
        with pytest.raises(UnreachableDiagnosticsError):
            await resolver.check_port(make_peer(), "host-a", 9701, ctx)
        assert len(ctx.port_cache) == 0

    @pytest.mark.asyncio
    async def test_wrong_peer_still_cached(self, resolver, gateway, probe, ctx):
        probe.open("host-a", 9701)
        gateway.serve("host-a:9701", "P2")
        with pytest.raises(WrongPeerError) as exc:
            await resolver.check_port(make_peer("P1"), "host-a", 9701, ctx)
        assert exc.value.found_identity == "P2"
        assert ctx.port_cache.get("host-a", "P2") == 9701

    @pytest.mark.asyncio
    async def test_success(self, resolver, gateway, probe, ctx):
        probe.open("host-a", 9701)
        gateway.serve("host-a:9701", "P1")
        peer = make_peer("P1")
        endpoint = await resolver.check_port(peer, "host-a", 9701, ctx)
        assert endpoint == "host-a:9701"
        assert peer.endpoint == "host-a:9701"
        assert ctx.port_cache.get("host-a", "P1") == 9701

    @pytest.mark.asyncio
    async def test_ipv6_endpoint(self, resolver, gateway, probe, ctx):
        probe.open("2604:1380::1", 9701)
        gateway.serve("[2604:1380::1]:9701", "P1")
        endpoint = await resolver.check_port(make_peer("P1"), "2604:1380::1", 9701, ctx)
        assert endpoint == "[2604:1380::1]:9701"


# ── Cached endpoint ──────────────────────────────────────────────

class TestCachedEndpoint:
    @pytest.mark.asyncio
    async def test_verified_with_single_call(self, resolver, gateway, probe, ctx):
        gateway.serve("host-a:9703", "P1")
        peer = make_peer("P1", endpoint="host-a:9703")

        state = await resolver.resolve(peer, ctx)

        assert state == ResolutionState.VERIFIED
        assert peer.endpoint == "host-a:9703"
        assert gateway.calls == ["host-a:9703"]
        assert probe.calls == []

    @pytest.mark.asyncio
    async def test_stale_when_unreachable(self, resolver, gateway, probe, ctx):
        probe.open("host-a", 9702)
        gateway.serve("host-a:9702", "P1")
        peer = make_peer("P1", endpoint="host-a:9999")

        state = await resolver.resolve(peer, ctx)

        assert state == ResolutionState.RESOLVED
        assert peer.endpoint == "host-a:9702"

    @pytest.mark.asyncio
    async def test_stale_when_identity_changed(self, resolver, gateway, probe, ctx):
        gateway.serve("host-a:9701", "P-new")
        probe.open("host-a", 9701)
        peer = make_peer("P1", endpoint="host-a:9701")

        state = await resolver.resolve(peer, ctx)

        assert state == ResolutionState.EXHAUSTED
        assert peer.endpoint == ""
        # The scan still taught us where P-new lives.
        assert ctx.port_cache.get("host-a", "P-new") == 9701


# ── Scanning ─────────────────────────────────────────────────────

class TestScanning:
    @pytest.mark.asyncio
    async def test_scans_range_ascending(self, resolver, gateway, probe, ctx):
        probe.open("host-a", 9703)
        gateway.serve("host-a:9703", "P1")
        peer = make_peer("P1")

        state = await resolver.resolve(peer, ctx)

        assert state == ResolutionState.RESOLVED
        assert peer.endpoint == "host-a:9703"
        assert probe.calls == [("host-a", 9701), ("host-a", 9702), ("host-a", 9703)]

    @pytest.mark.asyncio
    async def test_first_success_wins(self, resolver, gateway, probe, ctx):
        for port in (9702, 9704):
            probe.open("host-a", port)
            gateway.serve(f"host-a:{port}", "P1")
        peer = make_peer("P1")
        await resolver.resolve(peer, ctx)
        assert peer.endpoint == "host-a:9702"

    @pytest.mark.asyncio
    async def test_addresses_in_order(self, resolver, gateway, probe, ctx):
        probe.open("host-b", 9701)
        gateway.serve("host-b:9701", "P1")
        probe.open("34.1.2.3", 9701)
        gateway.serve("34.1.2.3:9701", "P1")
        peer = make_peer("P1", addresses=["host-b", "34.1.2.3"])

        await resolver.resolve(peer, ctx)

        assert peer.endpoint == "host-b:9701"
        assert all(host == "host-b" for host, _ in probe.calls)

    @pytest.mark.asyncio
    async def test_falls_through_to_next_address(self, resolver, gateway, probe, ctx):
        probe.open("34.1.2.3", 9705)
        gateway.serve("34.1.2.3:9705", "P1")
        peer = make_peer("P1", addresses=["host-dead", "34.1.2.3"])

        state = await resolver.resolve(peer, ctx)

        assert state == ResolutionState.RESOLVED
        assert peer.endpoint == "34.1.2.3:9705"

    @pytest.mark.asyncio
    async def test_excluded_addresses_skipped(self, resolver, gateway, probe, ctx):
        probe.open("10.0.0.5", 9701)
        gateway.serve("10.0.0.5:9701", "P1")
        peer = make_peer("P1", addresses=["127.0.0.1", "10.0.0.5"])

        state = await resolver.resolve(peer, ctx)

        assert state == ResolutionState.EXHAUSTED
        assert probe.calls == []

    @pytest.mark.asyncio
    async def test_private_allowed(self, gateway, probe, ctx):
        config = ResolverConfig(
            port_range=PortRange(9701, 9701),
            allow_private_addresses=True,
        )
        resolver = EndpointResolver(config, gateway, probe)
        probe.open("10.0.0.5", 9701)
        gateway.serve("10.0.0.5:9701", "P1")
        peer = make_peer("P1", addresses=["10.0.0.5"])

        assert await resolver.resolve(peer, ctx) == ResolutionState.RESOLVED

    @pytest.mark.asyncio
    async def test_unreachable_host_skipped(self, resolver, gateway, probe, ctx):
        # Advertised network port closed: the address is not scanned at all.
        probe.open("host-a", 9701)
        gateway.serve("host-a:9701", "P1")
        peer = make_peer("P1", port=4001)

        state = await resolver.resolve(peer, ctx)

        assert state == ResolutionState.EXHAUSTED
        assert probe.calls == [("host-a", 4001)]

    @pytest.mark.asyncio
    async def test_reachable_host_scanned(self, resolver, gateway, probe, ctx):
        probe.open("host-a", 4001)
        probe.open("host-a", 9702)
        gateway.serve("host-a:9702", "P1")
        peer = make_peer("P1", port=4001)

        assert await resolver.resolve(peer, ctx) == ResolutionState.RESOLVED
        assert peer.endpoint == "host-a:9702"

    @pytest.mark.asyncio
    async def test_exhausted(self, resolver, ctx):
        peer = make_peer("P1", addresses=["host-a", "host-b"])
        assert await resolver.resolve(peer, ctx) == ResolutionState.EXHAUSTED
        assert peer.endpoint == ""
        assert not peer.is_resolved

    @pytest.mark.asyncio
    async def test_no_addresses(self, resolver, ctx):
        peer = make_peer("P1", addresses=[])
        assert await resolver.resolve(peer, ctx) == ResolutionState.EXHAUSTED


# ── Port cache reuse ─────────────────────────────────────────────

class TestPortCacheReuse:
    @pytest.mark.asyncio
    async def test_shared_address_skips_range_scan(self, resolver, gateway, probe, ctx):
        # P2 listens on 9701 and P1 on 9702 of the same host.
        probe.open("host-a", 9701)
        probe.open("host-a", 9702)
        gateway.serve("host-a:9701", "P2")
        gateway.serve("host-a:9702", "P1")

        p1 = make_peer("P1")
        p2 = make_peer("P2")

        await resolver.resolve(p1, ctx)
        assert p1.endpoint == "host-a:9702"
        assert ctx.port_cache.get("host-a", "P2") == 9701

        probe.calls.clear()
        gateway.calls.clear()
        await resolver.resolve(p2, ctx)

        assert p2.endpoint == "host-a:9701"
        assert probe.calls == [("host-a", 9701)]
        assert gateway.calls == ["host-a:9701"]

    @pytest.mark.asyncio
    async def test_stale_cache_falls_back_to_scan(self, resolver, gateway, probe, ctx):
        ctx.port_cache.record("host-a", "P1", 9799)
        probe.open("host-a", 9704)
        gateway.serve("host-a:9704", "P1")
        peer = make_peer("P1")

        await resolver.resolve(peer, ctx)

        assert peer.endpoint == "host-a:9704"
        assert probe.calls[0] == ("host-a", 9799)


# ── resolve_all ──────────────────────────────────────────────────

class TestResolveAll:
    @pytest.mark.asyncio
    async def test_returns_resolved_only(self, resolver, gateway, probe, ctx):
        probe.open("host-a", 9701)
        gateway.serve("host-a:9701", "P1")
        peers = [make_peer("P1"), make_peer("P2", addresses=["host-b"])]

        resolved = await resolver.resolve_all(peers, ctx)

        assert [p.identity for p in resolved] == ["P1"]
        assert peers[1].state == ResolutionState.EXHAUSTED

    @pytest.mark.asyncio
    async def test_unexpected_error_isolated(self, config, gateway, probe, ctx):
        async def flaky_probe(host, port, timeout):
            if host == "host-boom":
                raise RuntimeError("boom")
            return await probe(host, port, timeout)

        resolver = EndpointResolver(config, gateway, flaky_probe)
        probe.open("host-a", 9701)
        gateway.serve("host-a:9701", "P1")
        peers = [make_peer("P1"), make_peer("P2", addresses=["host-boom"])]

        resolved = await resolver.resolve_all(peers, ctx)

        assert [p.identity for p in resolved] == ["P1"]
        assert peers[1].state == ResolutionState.EXHAUSTED

    @pytest.mark.asyncio
    async def test_hung_peer_does_not_block_others(self, config, gateway, probe, ctx):
        release = asyncio.Event()

        async def slow_probe(host, port, timeout):
            if host == "host-slow":
                await release.wait()
                return False
            return await probe(host, port, timeout)

        resolver = EndpointResolver(config, gateway, slow_probe)
        probe.open("host-a", 9701)
        gateway.serve("host-a:9701", "P1")
        fast = make_peer("P1")
        slow = make_peer("P2", addresses=["host-slow"])

        task = asyncio.create_task(resolver.resolve_all([slow, fast], ctx, max_concurrency=2))
        for _ in range(50):
            if fast.is_resolved:
                break
            await asyncio.sleep(0)
        assert fast.is_resolved
        assert not task.done()

        release.set()
        resolved = await task
        assert [p.identity for p in resolved] == ["P1"]
