"""Discovery core — combining peer lists and resolving their endpoints."""

from peer_sd.discovery.peer import PeerRecord, ResolutionState
from peer_sd.discovery.combiner import PeerCombiner
from peer_sd.discovery.resolver import DiscoveredPortCache, EndpointResolver, RoundContext

__all__ = [
    "PeerRecord",
    "ResolutionState",
    "PeerCombiner",
    "DiscoveredPortCache",
    "EndpointResolver",
    "RoundContext",
]
