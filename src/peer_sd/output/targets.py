"""Target groups — the unit handed to output sinks."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from peer_sd.discovery.peer import PeerRecord

LABEL_ADDRESS = "__address__"
LABEL_META_PREFIX = "__meta_"
LABEL_CHAIN_ADDRESS = LABEL_META_PREFIX + "chain_address"
LABEL_NETWORK_ID = LABEL_META_PREFIX + "network_id"


@dataclass
class TargetGroup:
    """Endpoints sharing a source key and labels.

    A group with no targets tells consumers that a previously emitted
    source is gone.
    """

    source: str
    targets: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def is_removal(self) -> bool:
        return not self.targets

    @classmethod
    def for_peer(cls, peer: PeerRecord) -> TargetGroup:
        """Target group for a resolved peer."""
        return cls(
            source=peer.identity,
            targets=[peer.endpoint],
            labels={
                LABEL_ADDRESS: peer.endpoint,
                LABEL_CHAIN_ADDRESS: peer.identity,
                LABEL_NETWORK_ID: peer.network_id,
            },
        )

    @classmethod
    def removal(cls, source: str) -> TargetGroup:
        return cls(source=source)

    def to_file_sd(self) -> dict[str, Any]:
        """Entry of a Prometheus file_sd JSON document."""
        return {"targets": list(self.targets), "labels": dict(self.labels)}


class TargetSink(Protocol):
    """Receives the full target list once per round."""

    def publish(self, groups: list[TargetGroup]) -> None: ...


class MemorySink:
    """Keeps every published batch in memory."""

    def __init__(self) -> None:
        self.batches: list[list[TargetGroup]] = []

    def publish(self, groups: list[TargetGroup]) -> None:
        self.batches.append(list(groups))

    @property
    def last(self) -> list[TargetGroup]:
        return self.batches[-1] if self.batches else []
