"""Output sinks for discovered targets."""

from peer_sd.output.file_sd import FileSDSink
from peer_sd.output.targets import MemorySink, TargetGroup

__all__ = ["FileSDSink", "MemorySink", "TargetGroup"]
