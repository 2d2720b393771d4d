"""Connection and assistant state for a realtime voice session."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from core.logging import logger


class ConnectionStatus(str, Enum):
    """Lifecycle of the transport connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class AssistantMode(str, Enum):
    """What the assistant is doing, derived from inbound events."""

    IDLE = "idle"
    LISTENING = "listening"
    SPEAKING = "speaking"
    PROCESSING = "processing"


class TransportKind(str, Enum):
    WEBRTC = "webrtc"
    WEBSOCKET = "websocket"


@dataclass(frozen=True)
class SessionConfig:
    """User-facing session settings; ``start_time`` is set while connected."""

    voice: str = "alloy"
    language: str = "English (US)"
    model: str = "gpt-4o-realtime-preview-2024-12-17"
    transport_kind: TransportKind = TransportKind.WEBRTC
    start_time: datetime | None = None
    wake_phrase: str = "Hey Assistant"

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "SessionConfig":
        session_cfg = config.get("session") or {}
        defaults = cls()
        return cls(
            voice=str(session_cfg.get("voice", defaults.voice)),
            language=str(session_cfg.get("language", defaults.language)),
            model=str(session_cfg.get("model", defaults.model)),
            transport_kind=TransportKind(str(session_cfg.get("transport", defaults.transport_kind.value))),
            wake_phrase=str(session_cfg.get("wake_phrase", defaults.wake_phrase)),
        )

    def started(self, when: datetime) -> "SessionConfig":
        return replace(self, start_time=when)

    def stopped(self) -> "SessionConfig":
        return replace(self, start_time=None)


@dataclass(frozen=True)
class RecentEvent:
    name: str
    time: str


class RecentEventLog:
    """Bounded, most-recent-first log of protocol event names."""

    def __init__(self, maxlen: int = 10) -> None:
        self._events: deque[RecentEvent] = deque(maxlen=maxlen)

    def record(self, name: str, when: datetime | None = None) -> RecentEvent:
        stamp = (when or datetime.now()).strftime("%H:%M:%S")
        event = RecentEvent(name=name, time=stamp)
        self._events.appendleft(event)
        return event

    def snapshot(self) -> tuple[RecentEvent, ...]:
        return tuple(self._events)

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)


StateHandler = Callable[[ConnectionStatus, AssistantMode], Awaitable[None] | None]


class StateTracker:
    """Publish status/mode transitions to an optional observer."""

    def __init__(self) -> None:
        self.status = ConnectionStatus.DISCONNECTED
        self.mode = AssistantMode.IDLE
        self._handler: StateHandler | None = None

    def set_handler(self, handler: StateHandler | None) -> None:
        self._handler = handler

    def update(
        self,
        *,
        status: ConnectionStatus | None = None,
        mode: AssistantMode | None = None,
        reason: str = "",
    ) -> bool:
        new_status = status if status is not None else self.status
        new_mode = mode if mode is not None else self.mode
        if new_status == self.status and new_mode == self.mode:
            return False

        suffix = f" ({reason})" if reason else ""
        if new_status != self.status:
            logger.info("Connection status transition: %s -> %s%s", self.status.value, new_status.value, suffix)
        if new_mode != self.mode:
            logger.info("Assistant mode transition: %s -> %s%s", self.mode.value, new_mode.value, suffix)
        self.status = new_status
        self.mode = new_mode
        self._dispatch()
        return True

    def _dispatch(self) -> None:
        if self._handler is None:
            return
        try:
            result = self._handler(self.status, self.mode)
            if asyncio.iscoroutine(result):
                asyncio.get_running_loop().create_task(result)
        except Exception:
            logger.exception("State handler failed for %s/%s", self.status.value, self.mode.value)
