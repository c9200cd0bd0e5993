"""Peer records — one discovered peer and its endpoint resolution state."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ResolutionState(str, Enum):
    """Where a peer is in endpoint resolution."""

    PENDING = "pending"
    HAS_CACHED_ENDPOINT = "has_cached_endpoint"
    VERIFIED = "verified"
    STALE = "stale"
    SCANNING = "scanning"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"


@dataclass
class PeerRecord:
    """A peer combined from all bootstrap sources for one round."""

    identity: str
    network_id: str
    addresses: list[str] = field(default_factory=list)
    port: int | None = None
    endpoint: str = ""  # Previous round's endpoint as a hint, then the resolved one
    state: ResolutionState = ResolutionState.PENDING

    @property
    def is_resolved(self) -> bool:
        """True if a working diagnostics endpoint was found this round."""
        return bool(self.endpoint) and self.state in (
            ResolutionState.VERIFIED,
            ResolutionState.RESOLVED,
        )
