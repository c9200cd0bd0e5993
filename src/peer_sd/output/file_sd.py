"""File sink — maintain a Prometheus file_sd target file.

The sink keeps the latest group per source key. Removal groups (no
targets) drop their source. After each batch the whole current set is
written as a JSON array, replacing the previous file atomically so
Prometheus never reads a partial document.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from peer_sd.output.targets import TargetGroup

logger = logging.getLogger(__name__)


class FileSDSink:
    """Writes target groups to a file_sd compatible JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._groups: dict[str, TargetGroup] = {}
        self._last_written: str | None = None

    @property
    def sources(self) -> list[str]:
        """Source keys currently written to the file."""
        return sorted(self._groups)

    def publish(self, groups: list[TargetGroup]) -> None:
        """Apply a batch of updates and rewrite the file if it changed."""
        for group in groups:
            if group.is_removal:
                if self._groups.pop(group.source, None) is not None:
                    logger.info("Removing target source %s", group.source)
            else:
                self._groups[group.source] = group

        content = self.render()
        if content == self._last_written:
            logger.debug("Targets unchanged, not rewriting %s", self.path)
            return

        self._write(content)
        self._last_written = content
        logger.info("Wrote %d target groups to %s", len(self._groups), self.path)

    def render(self) -> str:
        """Current file contents."""
        entries = [self._groups[s].to_file_sd() for s in sorted(self._groups)]
        return json.dumps(entries, indent=2) + "\n"

    def _write(self, content: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
