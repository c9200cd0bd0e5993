"""Networking layer — address handling, port probes and diagnostics client."""

from peer_sd.network.address import PortRange, classify_order, is_excluded, parse_multi_address
from peer_sd.network.diagnostics import DiagnosticsRecord, HttpDiagnosticsGateway, PeerInfo
from peer_sd.network.probe import is_port_open

__all__ = [
    "PortRange",
    "classify_order",
    "is_excluded",
    "parse_multi_address",
    "DiagnosticsRecord",
    "HttpDiagnosticsGateway",
    "PeerInfo",
    "is_port_open",
]
