"""Discovery configuration."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from peer_sd.network.address import PortRange, PortRangeError, parse_port_range
from peer_sd.network.diagnostics import DEFAULT_DIAGNOSTICS_PATH
from peer_sd.discovery.resolver import (
    DEFAULT_BANNED_ADDRESSES,
    DEFAULT_MAX_CONCURRENCY,
    ResolverConfig,
)

DEFAULT_SOURCE = "localhost:9701"
DEFAULT_REFRESH_INTERVAL = "5m"
DEFAULT_SCAN_RANGE = "9701-9799"
DEFAULT_SCAN_TIMEOUT = "1s"
DEFAULT_DIAGNOSTICS_TIMEOUT = "5s"
DEFAULT_OUTPUT_FILE = "peer_sd.json"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class ConfigError(ValueError):
    """Raised for invalid static configuration."""


def parse_duration(value: Any) -> float:
    """Convert a duration to seconds.

    Accepts numbers (seconds) and strings such as ``"500ms"``, ``"5m"`` or
    ``"1m30s"``.
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(n + u for n, u in parts) != text:
                raise ConfigError(f"invalid duration: {value!r}") from None
            seconds = sum(float(n) * _UNIT_SECONDS[u] for n, u in parts)
    else:
        raise ConfigError(f"invalid duration: {value!r}")

    if seconds <= 0:
        raise ConfigError(f"duration must be positive: {value!r}")
    return seconds


@dataclass
class DiscoveryConfig:
    """Full configuration of the discovery service."""

    sources: list[str] = field(default_factory=lambda: [DEFAULT_SOURCE])
    refresh_interval: float = 300.0
    port_range: PortRange = field(default_factory=lambda: parse_port_range(DEFAULT_SCAN_RANGE))
    scan_timeout: float = 1.0
    diagnostics_timeout: float = 5.0
    banned_addresses: list[str] = field(
        default_factory=lambda: list(DEFAULT_BANNED_ADDRESSES),
    )
    allow_private_addresses: bool = False
    output_file: str = DEFAULT_OUTPUT_FILE
    max_concurrent_resolutions: int = DEFAULT_MAX_CONCURRENCY
    diagnostics_path: str = DEFAULT_DIAGNOSTICS_PATH
    log_json: bool = False

    def resolver_config(self) -> ResolverConfig:
        return ResolverConfig(
            port_range=self.port_range,
            scan_timeout=self.scan_timeout,
            banned_addresses=list(self.banned_addresses),
            allow_private_addresses=self.allow_private_addresses,
        )

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DiscoveryConfig:
        """Build and validate a config from JSON-like data.

        Raises:
            ConfigError: A value is missing or invalid.
        """
        sources = raw.get("sources", [DEFAULT_SOURCE])
        if isinstance(sources, str):
            sources = [s.strip() for s in sources.split(",")]
        sources = [s for s in sources if s]
        if not sources:
            raise ConfigError("at least one source address is required")

        scan_range = raw.get("scan_range", DEFAULT_SCAN_RANGE)
        try:
            port_range = parse_port_range(str(scan_range))
        except PortRangeError as e:
            raise ConfigError(f"invalid port range value provided {scan_range}: {e}") from e

        max_concurrent = raw.get("max_concurrent_resolutions", DEFAULT_MAX_CONCURRENCY)
        if not isinstance(max_concurrent, int) or max_concurrent < 1:
            raise ConfigError(f"max_concurrent_resolutions must be >= 1: {max_concurrent!r}")

        banned = raw.get("banned_addresses", DEFAULT_BANNED_ADDRESSES)
        if not isinstance(banned, (list, tuple)) or not all(isinstance(a, str) for a in banned):
            raise ConfigError(f"banned_addresses must be a list of strings: {banned!r}")

        allow_private = raw.get("allow_private_addresses", False)
        if not isinstance(allow_private, bool):
            raise ConfigError(f"allow_private_addresses must be true or false: {allow_private!r}")

        log_json = raw.get("log_json", False)
        if not isinstance(log_json, bool):
            raise ConfigError(f"log_json must be true or false: {log_json!r}")

        return cls(
            sources=sources,
            refresh_interval=parse_duration(raw.get("refresh_interval", DEFAULT_REFRESH_INTERVAL)),
            port_range=port_range,
            scan_timeout=parse_duration(raw.get("scan_timeout", DEFAULT_SCAN_TIMEOUT)),
            diagnostics_timeout=parse_duration(
                raw.get("diagnostics_timeout", DEFAULT_DIAGNOSTICS_TIMEOUT),
            ),
            banned_addresses=list(banned),
            allow_private_addresses=allow_private,
            output_file=raw.get("output_file", DEFAULT_OUTPUT_FILE),
            max_concurrent_resolutions=max_concurrent,
            diagnostics_path=raw.get("diagnostics_path", DEFAULT_DIAGNOSTICS_PATH),
            log_json=log_json,
        )
