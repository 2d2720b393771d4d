"""Transport contract shared by the WebRTC and WebSocket implementations."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

from interaction.gain import GainStage

STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"
STATE_FAILED = "failed"
STATE_CLOSED = "closed"

TERMINAL_STATES = frozenset({STATE_FAILED, STATE_CLOSED})


@dataclass(frozen=True)
class TransportConfig:
    voice: str
    model: str
    url: str
    ice_servers: tuple[str, ...] = ()
    sample_rate: int = 24000
    chunk_size: int = 960


@dataclass
class TransportChannels:
    """Handles returned by ``Transport.open``."""

    ready: asyncio.Event = field(default_factory=asyncio.Event)
    inbound: "asyncio.Queue[str]" = field(default_factory=asyncio.Queue)
    state_changes: "asyncio.Queue[str]" = field(default_factory=asyncio.Queue)

    def publish_state(self, state: str) -> None:
        self.state_changes.put_nowait(state)


class Transport(Protocol):
    gain: GainStage

    async def open(self, config: TransportConfig) -> TransportChannels:
        """Acquire the capture device, negotiate, and return channel handles."""

    async def send_control_event(self, event: dict[str, Any]) -> None:
        """Send one JSON control event; raises ``TransportError`` when closed."""

    async def close(self, *, timeout: float | None = None) -> None:
        """Stop media, close channels, release the capture device. Idempotent."""


def with_model(url: str, model: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}model={model}"
