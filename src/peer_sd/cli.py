"""CLI entry point for the peer discovery service.

Usage:
    peer-sd --source bootstrap-1.example:9701 --source bootstrap-2.example:9701
    peer-sd --config sd_config.json --output-file /etc/prometheus/peers.json
    peer-sd --config sd_config.json --scan-range 9601-9621 --allow-private
    peer-sd --source bootstrap-1.example:9701 --log-json

Environment variables:
    PEER_SD_SOURCES:      Comma-separated bootstrap source addresses
    PEER_SD_OUTPUT_FILE:  Override output file
    PEER_SD_SCAN_RANGE:   Override diagnostics port scan range

Precedence: CLI flags > environment > config file > defaults.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Mapping

from pythonjsonlogger.json import JsonFormatter

from peer_sd.config import ConfigError, DiscoveryConfig
from peer_sd.discovery.scheduler import DiscoveryScheduler
from peer_sd.network.diagnostics import HttpDiagnosticsGateway
from peer_sd.output.file_sd import FileSDSink

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Discover network peers and export them to a file_sd target file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to JSON config file",
    )
    parser.add_argument(
        "--source", "-s",
        action="append",
        dest="sources",
        help="Bootstrap node address (host:port) to discover peers from; repeatable",
    )
    parser.add_argument(
        "--output-file", "-o",
        help="Output file for file_sd compatible targets",
    )
    parser.add_argument(
        "--refresh-interval",
        help="Frequency for running the discovery (e.g. 5m)",
    )
    parser.add_argument(
        "--scan-range",
        help="Port range for diagnostics endpoint scan (e.g. 9701-9799)",
    )
    parser.add_argument(
        "--scan-timeout",
        help="Timeout for a single port probe (e.g. 1s)",
    )
    parser.add_argument(
        "--diagnostics-timeout",
        help="Timeout for a diagnostics endpoint call (e.g. 5s)",
    )
    parser.add_argument(
        "--ban",
        action="append",
        dest="banned_addresses",
        help="Address that must never be probed; repeatable",
    )
    parser.add_argument(
        "--allow-private",
        action="store_true",
        default=None,
        help="Probe private-range addresses too",
    )
    parser.add_argument(
        "--log-level", "-l",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        default=None,
        help="Write log records as JSON objects",
    )
    return parser.parse_args(argv)


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Install a single stderr handler on the root logger."""
    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            rename_fields={"levelname": "level", "name": "logger"},
        ))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[handler],
        force=True,
    )


def load_config(
    config_path: str | None,
    overrides: dict[str, Any],
    environ: Mapping[str, str] | None = None,
) -> DiscoveryConfig:
    """Load configuration from file, environment and CLI overrides.

    Raises:
        ConfigError: The file is missing or unreadable, or a value is invalid.
    """
    raw: dict[str, Any] = {}
    if config_path:
        path = Path(config_path).resolve()
        if not path.exists():
            raise ConfigError(f"config file not found: {path}")
        try:
            with open(path) as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"failed to read config file {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"config file must contain a JSON object: {path}")

    env = os.environ if environ is None else environ
    if env.get("PEER_SD_SOURCES"):
        raw["sources"] = [s.strip() for s in env["PEER_SD_SOURCES"].split(",")]
    if env.get("PEER_SD_OUTPUT_FILE"):
        raw["output_file"] = env["PEER_SD_OUTPUT_FILE"]
    if env.get("PEER_SD_SCAN_RANGE"):
        raw["scan_range"] = env["PEER_SD_SCAN_RANGE"]

    for key, value in overrides.items():
        if value is not None:
            raw[key] = value

    return DiscoveryConfig.from_dict(raw)


async def run_discovery(config: DiscoveryConfig) -> None:
    """Run discovery rounds until interrupted."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_signal() -> None:
        logger.info("Shutting down after the current round...")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    sink = FileSDSink(config.output_file)
    async with HttpDiagnosticsGateway(
        timeout=config.diagnostics_timeout,
        path=config.diagnostics_path,
    ) as gateway:
        scheduler = DiscoveryScheduler(config, gateway, sink)
        await scheduler.run(stop_event)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    overrides = {
        "sources": args.sources,
        "output_file": args.output_file,
        "refresh_interval": args.refresh_interval,
        "scan_range": args.scan_range,
        "scan_timeout": args.scan_timeout,
        "diagnostics_timeout": args.diagnostics_timeout,
        "banned_addresses": args.banned_addresses,
        "allow_private_addresses": args.allow_private,
        "log_json": args.log_json,
    }

    try:
        config = load_config(args.config, overrides)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(args.log_level, json_format=config.log_json)

    logger.info("Sources: %s", ", ".join(config.sources))
    logger.info(
        "Refresh interval: %.0fs, scan range: %s, output: %s",
        config.refresh_interval, config.port_range, config.output_file,
    )

    asyncio.run(run_discovery(config))


if __name__ == "__main__":
    main()
