"""One-time ``session.update`` configuration with live user context."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from ai.events import session_update
from ai.utils import build_session_instructions
from core.errors import ToolProviderError
from core.logging import log_session_update, log_warning, logger
from services.capabilities import CapabilityProviders


@dataclass(frozen=True)
class ContextSnapshot:
    """User context captured once per configuration."""

    location: str = ""
    temperature_unit: str = "F"
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    timezone: str | None = None
    weather_summary: str | None = None
    memories: tuple[str, ...] = ()


class ContextProvider(Protocol):
    async def snapshot(self) -> ContextSnapshot:
        """Resolve the user context, waiting for it if necessary."""


@dataclass
class StaticContextProvider:
    snapshot_value: ContextSnapshot

    async def snapshot(self) -> ContextSnapshot:
        return self.snapshot_value


class BackendContextProvider:
    """Location and unit from config, enriched with weather and memories."""

    def __init__(self, config: dict[str, Any], providers: CapabilityProviders) -> None:
        self._context_cfg = dict(config.get("context") or {})
        self._providers = providers

    async def snapshot(self) -> ContextSnapshot:
        location = str(self._context_cfg.get("location") or "")
        unit = str(self._context_cfg.get("temperature_unit") or "F")
        weather_task = self._weather_summary(location, unit)
        memory_task = self._memories()
        weather_summary, memories = await asyncio.gather(weather_task, memory_task)
        return ContextSnapshot(
            location=location,
            temperature_unit=unit,
            timezone=self._context_cfg.get("timezone"),
            weather_summary=weather_summary,
            memories=memories,
        )

    async def _weather_summary(self, location: str, unit: str) -> str | None:
        if not location or not self._context_cfg.get("include_weather", True):
            return None
        try:
            payload = await self._providers.weather.current(location, unit)
        except ToolProviderError as exc:
            log_warning(f"Skipping weather context: {exc}")
            return None
        current = payload.get("currentWeather") or {}
        temperature = current.get("temperature")
        description = current.get("description") or current.get("condition")
        if temperature is None and not description:
            return None
        parts = [f"{temperature}°{unit}" if temperature is not None else None, description]
        return ", ".join(str(part) for part in parts if part)

    async def _memories(self) -> tuple[str, ...]:
        if not self._context_cfg.get("include_memories", True):
            return ()
        try:
            items = await self._providers.memory.recent(
                limit=int(self._context_cfg.get("memory_limit", 8)),
                importance_min=int(self._context_cfg.get("memory_importance_min", 6)),
            )
        except ToolProviderError as exc:
            log_warning(f"Skipping memory context: {exc}")
            return ()
        lines = []
        for item in items:
            content = str(item.get("content") or "").strip()
            if content:
                kind = item.get("memoryType") or item.get("memory_type") or "note"
                lines.append(f"{kind}: {content}")
        return tuple(lines)


def build_context_block(context: ContextSnapshot) -> str:
    unit_name = "Celsius" if context.temperature_unit.upper() == "C" else "Fahrenheit"
    local_now = context.now.astimezone()
    lines = [
        "Current context:",
        f"- Date and time: {local_now.strftime('%A, %B %d, %Y %I:%M %p')}",
        f"- Preferred temperature unit: {unit_name}",
    ]
    if context.location:
        lines.append(f"- User location: {context.location}")
        lines.append(
            f"When the user asks about the weather without naming a place, use {context.location}."
        )
    if context.weather_summary:
        lines.append(f"- Current weather at the user's location: {context.weather_summary}")
    if context.memories:
        lines.append("What you remember about the user:")
        lines.extend(f"- {memory}" for memory in context.memories)
    return "\n".join(lines)


class SessionConfigurator:
    """Send exactly one ``session.update`` per connection."""

    def __init__(
        self,
        send: Callable[[dict[str, Any]], Awaitable[None]],
        *,
        tools: list[dict[str, Any]],
        config: dict[str, Any],
        voice: str,
    ) -> None:
        self._send = send
        self._tools = list(tools)
        self._turn_detection = dict(config.get("turn_detection") or {})
        self._transcription_model = str((config.get("transcription") or {}).get("model", "whisper-1"))
        self.voice = voice
        self.configured = False
        self._configured_event = asyncio.Event()
        self._in_progress = False
        self.last_context: ContextSnapshot | None = None

    def reset(self) -> None:
        self.configured = False
        self._configured_event.clear()
        self._in_progress = False
        self.last_context = None

    def build_event(self, context: ContextSnapshot) -> dict[str, Any]:
        return session_update(
            {
                "instructions": build_session_instructions(build_context_block(context)),
                "voice": self.voice,
                "modalities": ["text", "audio"],
                "tools": self._tools,
                "tool_choice": "auto",
                "input_audio_transcription": {"model": self._transcription_model},
                "turn_detection": {
                    "type": self._turn_detection.get("type", "server_vad"),
                    "threshold": self._turn_detection.get("threshold"),
                    "prefix_padding_ms": self._turn_detection.get("prefix_padding_ms"),
                    "silence_duration_ms": self._turn_detection.get("silence_duration_ms"),
                    "create_response": self._turn_detection.get("create_response", True),
                    "interrupt_response": self._turn_detection.get("interrupt_response", True),
                },
            }
        )

    async def configure(self, provider: ContextProvider) -> bool:
        if self.configured or self._in_progress:
            logger.info("Session already configured for this connection; skipping")
            return False
        self._in_progress = True
        try:
            context = await provider.snapshot()
            event = self.build_event(context)
            await self._send(event)
        finally:
            self._in_progress = False
        self.configured = True
        self.last_context = context
        self._configured_event.set()
        log_session_update(event)
        return True

    async def wait_configured(self) -> None:
        """Block until this connection's ``session.update`` has been sent."""

        await self._configured_event.wait()
