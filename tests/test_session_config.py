"""Tests for session configuration and context snapshots."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from ai.session_config import (
    BackendContextProvider,
    ContextSnapshot,
    SessionConfigurator,
    StaticContextProvider,
    build_context_block,
)
from ai.tools import tools
from config.controller import normalize_config
from core.errors import ToolProviderError
from services.capabilities import CapabilityProviders, TimeProvider


class _Sender:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def __call__(self, event: dict[str, Any]) -> None:
        self.events.append(event)


class _SlowProvider:
    def __init__(self) -> None:
        self.release = asyncio.Event()

    async def snapshot(self) -> ContextSnapshot:
        await self.release.wait()
        return ContextSnapshot(location="Austin")


def _configurator(sender: _Sender) -> SessionConfigurator:
    return SessionConfigurator(sender, tools=tools, config=normalize_config({}), voice="verse")


def _snapshot() -> ContextSnapshot:
    return ContextSnapshot(
        location="Austin, TX",
        temperature_unit="F",
        now=datetime(2024, 5, 1, 15, 30, tzinfo=timezone.utc),
        weather_summary="75°F, Sunny",
        memories=("preference: likes short answers",),
    )


def test_session_update_payload() -> None:
    sender = _Sender()
    configurator = _configurator(sender)

    sent = asyncio.run(configurator.configure(StaticContextProvider(_snapshot())))

    assert sent is True
    assert len(sender.events) == 1
    event = sender.events[0]
    session = event["session"]
    assert event["type"] == "session.update"
    assert session["voice"] == "verse"
    assert session["tool_choice"] == "auto"
    assert {tool["name"] for tool in session["tools"]} == {"get_weather", "web_search", "get_time", "remember_user_info"}
    assert session["turn_detection"] == {
        "type": "server_vad",
        "threshold": 0.5,
        "prefix_padding_ms": 300,
        "silence_duration_ms": 500,
        "create_response": True,
        "interrupt_response": True,
    }
    assert session["input_audio_transcription"] == {"model": "whisper-1"}
    assert "Austin, TX" in session["instructions"]
    assert "remember_user_info" in session["instructions"]
    assert "likes short answers" in session["instructions"]


def test_duplicate_configure_is_suppressed_until_reset() -> None:
    sender = _Sender()
    configurator = _configurator(sender)
    provider = StaticContextProvider(_snapshot())

    async def _run():
        first = await configurator.configure(provider)
        second = await configurator.configure(provider)
        configurator.reset()
        third = await configurator.configure(provider)
        return first, second, third

    assert asyncio.run(_run()) == (True, False, True)
    assert len(sender.events) == 2


def test_configure_waits_for_context_instead_of_skipping() -> None:
    sender = _Sender()
    configurator = _configurator(sender)
    provider = _SlowProvider()

    async def _run():
        task = asyncio.create_task(configurator.configure(provider))
        await asyncio.sleep(0)
        concurrent = await configurator.configure(provider)
        assert sender.events == []
        provider.release.set()
        return concurrent, await task

    concurrent, first = asyncio.run(_run())

    assert concurrent is False
    assert first is True
    assert len(sender.events) == 1
    assert configurator.last_context.location == "Austin"


def test_wait_configured_returns_once_session_update_is_sent() -> None:
    sender = _Sender()
    configurator = _configurator(sender)
    provider = _SlowProvider()

    async def _run():
        waiter = asyncio.create_task(configurator.wait_configured())
        configuring = asyncio.create_task(configurator.configure(provider))
        await asyncio.sleep(0)
        early = waiter.done()
        provider.release.set()
        await configuring
        await asyncio.wait_for(waiter, timeout=1.0)
        configurator.reset()
        return early, configurator.configured

    assert asyncio.run(_run()) == (False, False)
    assert [event["type"] for event in sender.events] == ["session.update"]


def test_context_block_mentions_unit_and_weather_default() -> None:
    block = build_context_block(_snapshot())

    assert "Fahrenheit" in block
    assert "use Austin, TX" in block
    assert "75°F, Sunny" in block


class _Weather:
    def __init__(self, fail: bool) -> None:
        self._fail = fail

    async def current(self, location: str, unit: str | None = None) -> dict[str, Any]:
        if self._fail:
            raise ToolProviderError("down")
        return {"currentWeather": {"temperature": 20, "description": "Cloudy"}}


class _Memory:
    async def recent(self, *, limit: int = 8, importance_min: int = 6) -> list[dict[str, Any]]:
        return [{"memoryType": "goal", "content": "run a marathon"}, {"content": ""}]


def test_backend_context_provider_enriches_and_tolerates_failures() -> None:
    config = normalize_config({"context": {"location": "Berlin", "temperature_unit": "C"}})

    def _providers(fail: bool) -> CapabilityProviders:
        return CapabilityProviders(weather=_Weather(fail), search=None, memory=_Memory(), time=TimeProvider())

    ok = asyncio.run(BackendContextProvider(config, _providers(False)).snapshot())
    degraded = asyncio.run(BackendContextProvider(config, _providers(True)).snapshot())

    assert ok.location == "Berlin"
    assert ok.temperature_unit == "C"
    assert ok.weather_summary == "20°C, Cloudy"
    assert ok.memories == ("goal: run a marathon",)
    assert degraded.weather_summary is None
    assert degraded.memories == ("goal: run a marathon",)
