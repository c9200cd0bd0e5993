"""Diagnostics client — fetch a node's self-description and connected peers.

Every node in the network serves ``GET /diagnostics`` on its diagnostics
port. The payload identifies the node itself (``client_info``) and lists the
peers it is connected to, each with the multi-addresses it advertises:

    {
        "client_info": {"chain_address": "0xabc...", "network_id": "16Uiu..."},
        "connected_peers": [
            {"chain_address": "0xdef...", "network_id": "16Uiu...",
             "multiaddrs": ["/dns4/node-1.example/tcp/3919"]}
        ]
    }
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_DIAGNOSTICS_PATH = "/diagnostics"
DEFAULT_DIAGNOSTICS_TIMEOUT = 5.0


class DiagnosticsError(Exception):
    """Raised when diagnostics can't be fetched from an endpoint."""


class EmptyAddressError(DiagnosticsError):
    """No endpoint was given."""


class SourceUnreachableError(DiagnosticsError):
    """The endpoint didn't answer (connection error, timeout, bad status)."""


class DiagnosticsDecodeError(DiagnosticsError):
    """The endpoint answered with something that isn't a diagnostics record."""


class PeerInfo(BaseModel):
    """A node as described in a diagnostics payload."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    identity: str = Field(default="", alias="chain_address")
    network_id: str = Field(default="", alias="network_id")
    multi_addresses: list[str] = Field(default_factory=list, alias="multiaddrs")

    @field_validator("multi_addresses", mode="before")
    @classmethod
    def _null_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class DiagnosticsRecord(BaseModel):
    """Decoded diagnostics payload."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    client_info: PeerInfo = Field(default_factory=PeerInfo)
    connected_peers: list[PeerInfo] = Field(default_factory=list)

    @field_validator("client_info", mode="before")
    @classmethod
    def _null_client_info(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("connected_peers", mode="before")
    @classmethod
    def _null_peers(cls, v: Any) -> Any:
        return [] if v is None else v

    @property
    def self_identity(self) -> str:
        """Identity the answering node reports for itself."""
        return self.client_info.identity


class DiagnosticsGateway(Protocol):
    """Anything that can fetch a diagnostics record for an endpoint."""

    async def fetch(self, endpoint: str) -> DiagnosticsRecord: ...


class HttpDiagnosticsGateway:
    """Fetch diagnostics over HTTP with aiohttp.

    Use as an async context manager so the client session is closed:

        async with HttpDiagnosticsGateway(timeout=5.0) as gateway:
            record = await gateway.fetch("node-1.example:9701")
    """

    def __init__(
        self,
        timeout: float = DEFAULT_DIAGNOSTICS_TIMEOUT,
        path: str = DEFAULT_DIAGNOSTICS_PATH,
    ) -> None:
        self.timeout = ClientTimeout(total=timeout)
        self.path = path if path.startswith("/") else f"/{path}"
        self._session: ClientSession | None = None

    async def start(self) -> None:
        """Open the client session."""
        if self._session is None:
            self._session = ClientSession(timeout=self.timeout)

    async def stop(self) -> None:
        """Close the client session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> HttpDiagnosticsGateway:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def fetch(self, endpoint: str) -> DiagnosticsRecord:
        """Fetch and decode diagnostics from ``endpoint`` (host:port).

        Raises:
            EmptyAddressError: ``endpoint`` is empty.
            SourceUnreachableError: Connection failed, timed out, or non-200.
            DiagnosticsDecodeError: Body is not a valid diagnostics record.
        """
        if not endpoint:
            raise EmptyAddressError("address is empty")
        if self._session is None:
            await self.start()

        url = f"http://{endpoint}{self.path}"
        try:
            async with self._session.get(url, timeout=self.timeout) as resp:
                if resp.status != 200:
                    raise SourceUnreachableError(
                        f"unexpected HTTP status {resp.status} from {url}"
                    )
                body = await resp.read()
        except (ClientError, asyncio.TimeoutError, OSError) as e:
            raise SourceUnreachableError(f"failed to get diagnostics from {url}: {e}") from e

        try:
            return DiagnosticsRecord.model_validate_json(body)
        except ValidationError as e:
            raise DiagnosticsDecodeError(f"failed to decode diagnostics from {url}: {e}") from e
