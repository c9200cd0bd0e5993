"""Peer combiner — merge connected-peer lists from all bootstrap sources.

Different bootstrap nodes know different subsets of the network and may know
different addresses for the same peer. The combiner builds one record per
peer identity with the union of its addresses.

Sources are processed in configured order and the first network ID seen for
an identity wins; a later source reporting another network ID for the same
identity is treated as inconsistent and its entry for that peer is dropped.
The same goes for ports: the first non-zero port advertised is kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from peer_sd.discovery.peer import PeerRecord
from peer_sd.network.address import AddressError, classify_order, parse_multi_address
from peer_sd.network.diagnostics import DiagnosticsRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityMismatch:
    """A source reported another network ID for an already known identity."""

    identity: str
    expected_network_id: str
    actual_network_id: str
    source_index: int


@dataclass(frozen=True)
class MalformedEntry:
    """A multi-address that couldn't be parsed."""

    identity: str
    multi_address: str
    error: str


@dataclass
class PeerCombiner:
    """Combines diagnostics records into a set of unique peers.

    ``mismatches`` and ``malformed`` describe what was skipped during the
    last call to :meth:`combine`.
    """

    mismatches: list[IdentityMismatch] = field(default_factory=list)
    malformed: list[MalformedEntry] = field(default_factory=list)

    def combine(
        self,
        records: Sequence[DiagnosticsRecord],
        previous_endpoints: Mapping[str, str] | None = None,
    ) -> dict[str, PeerRecord]:
        """Merge connected peers of all records.

        Args:
            records: One record per responding source, in configured order.
            previous_endpoints: identity -> endpoint resolved last round,
                attached to the new records as a resolution hint.

        Returns:
            Mapping of peer identity to its combined record.
        """
        self.mismatches = []
        self.malformed = []
        previous_endpoints = previous_endpoints or {}

        network_ids: dict[str, str] = {}     # identity -> network id
        hosts: dict[str, set[str]] = {}      # identity -> host set
        ports: dict[str, int] = {}           # identity -> first non-zero port

        for source_index, record in enumerate(records):
            for peer in record.connected_peers:
                if not peer.identity:
                    logger.warning(
                        "Skipping connected peer without identity from source #%d",
                        source_index,
                    )
                    continue

                known = network_ids.get(peer.identity)
                if known is not None and known != peer.network_id:
                    logger.warning(
                        "Previously resolved network ID for peer %s doesn't match: "
                        "previous=%s current=%s",
                        peer.identity, known, peer.network_id,
                    )
                    self.mismatches.append(IdentityMismatch(
                        identity=peer.identity,
                        expected_network_id=known,
                        actual_network_id=peer.network_id,
                        source_index=source_index,
                    ))
                    continue
                network_ids[peer.identity] = peer.network_id
                peer_hosts = hosts.setdefault(peer.identity, set())

                for multi_address in peer.multi_addresses:
                    try:
                        host, port = parse_multi_address(multi_address)
                    except AddressError as e:
                        logger.error(
                            "Failed to extract peer address from multi address: "
                            "peer=%s multiaddress=%s err=%s",
                            peer.identity, multi_address, e,
                        )
                        self.malformed.append(MalformedEntry(
                            identity=peer.identity,
                            multi_address=multi_address,
                            error=str(e),
                        ))
                        continue

                    peer_hosts.add(host)
                    if port is not None and peer.identity not in ports:
                        ports[peer.identity] = port

        return {
            identity: PeerRecord(
                identity=identity,
                network_id=network_id,
                addresses=classify_order(hosts[identity]),
                port=ports.get(identity),
                endpoint=previous_endpoints.get(identity, ""),
            )
            for identity, network_id in network_ids.items()
        }
