"""Shared test doubles: an in-memory diagnostics gateway and port probe."""

from __future__ import annotations

import pytest

from peer_sd.network.diagnostics import (
    DiagnosticsRecord,
    EmptyAddressError,
    PeerInfo,
    SourceUnreachableError,
)


def make_record(
    self_identity: str,
    peers: list[tuple[str, str, list[str]]] | None = None,
    self_network_id: str = "",
) -> DiagnosticsRecord:
    """Build a record from (identity, network_id, multiaddrs) tuples."""
    return DiagnosticsRecord(
        client_info=PeerInfo(identity=self_identity, network_id=self_network_id),
        connected_peers=[
            PeerInfo(identity=i, network_id=n, multi_addresses=addrs)
            for i, n, addrs in (peers or [])
        ],
    )


class FakeGateway:
    """Serves canned diagnostics records per endpoint."""

    def __init__(self) -> None:
        self.records: dict[str, DiagnosticsRecord] = {}
        self.calls: list[str] = []

    def serve(
        self,
        endpoint: str,
        self_identity: str,
        peers: list[tuple[str, str, list[str]]] | None = None,
    ) -> None:
        self.records[endpoint] = make_record(self_identity, peers)

    def drop(self, endpoint: str) -> None:
        self.records.pop(endpoint, None)

    async def fetch(self, endpoint: str) -> DiagnosticsRecord:
        self.calls.append(endpoint)
        if not endpoint:
            raise EmptyAddressError("address is empty")
        if endpoint not in self.records:
            raise SourceUnreachableError(f"connection refused: {endpoint}")
        return self.records[endpoint]


class FakeProbe:
    """Reports ports as open only if registered."""

    def __init__(self) -> None:
        self.open_ports: set[tuple[str, int]] = set()
        self.calls: list[tuple[str, int]] = []

    def open(self, host: str, port: int) -> None:
        self.open_ports.add((host, port))

    def close(self, host: str, port: int) -> None:
        self.open_ports.discard((host, port))

    async def __call__(self, host: str, port: int, timeout: float) -> bool:
        self.calls.append((host, port))
        return (host, port) in self.open_ports


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()
