"""TCP reachability probe."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

PortProbe = Callable[[str, int, float], Awaitable[bool]]


async def is_port_open(host: str, port: int, timeout: float) -> bool:
    """Return True if a TCP connect to host:port succeeds within ``timeout``."""
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout,
        )
    except (OSError, asyncio.TimeoutError):
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        logger.debug("Error closing probe connection to %s:%d", host, port)
    return True
