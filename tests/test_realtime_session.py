"""Lifecycle and event-flow tests for the realtime session orchestrator."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from ai.realtime_api import RealtimeSession
from ai.session_config import ContextSnapshot, StaticContextProvider
from ai.transcript import Speaker
from config.controller import normalize_config
from core.errors import DeviceError, ProtocolError, TransportError
from interaction.capture import FakeCaptureDevice
from interaction.gain import GainStage
from interaction.state import AssistantMode, ConnectionStatus
from services.capabilities import CapabilityProviders, TimeProvider
from services.session_tokens import EphemeralSession
from transport.base import STATE_FAILED, TransportChannels


class _FakeTokens:
    def __init__(self) -> None:
        self.requests: list[tuple[str, str]] = []

    async def create_session(self, voice: str, model: str) -> EphemeralSession:
        self.requests.append((voice, model))
        return EphemeralSession(session_id="sess_1", token="ek_test")


class _FakeTransport:
    def __init__(
        self,
        capture: FakeCaptureDevice,
        *,
        ready: bool = True,
        gate: asyncio.Event | None = None,
        fail_close: bool = False,
    ) -> None:
        self.capture = capture
        self.gate = gate
        self.fail_close = fail_close
        self.gain = GainStage()
        self.ready = ready
        self.sent: list[dict[str, Any]] = []
        self.channels: TransportChannels | None = None
        self.close_calls = 0
        self.closed = False
        self.config = None

    async def open(self, config) -> TransportChannels:
        if self.gate is not None:
            await self.gate.wait()
        self.capture.acquire()
        self.config = config
        self.channels = TransportChannels()
        if self.ready:
            self.channels.ready.set()
        return self.channels

    async def send_control_event(self, event: dict[str, Any]) -> None:
        if self.closed:
            raise TransportError("Control channel is not open")
        self.sent.append(json.loads(json.dumps(event)))

    async def close(self, *, timeout: float | None = None) -> None:
        self.close_calls += 1
        self.closed = True
        self.capture.release()
        if self.fail_close:
            raise OSError("socket already gone")

    def sent_types(self) -> list[str]:
        return [event["type"] for event in self.sent]

    def outputs(self) -> list[dict[str, Any]]:
        return [
            {"call_id": event["item"]["call_id"], "output": json.loads(event["item"]["output"])}
            for event in self.sent
            if event["type"] == "conversation.item.create" and event["item"]["type"] == "function_call_output"
        ]


class _FakeWeather:
    def __init__(self, delay_s: float = 0.0) -> None:
        self.calls: list[tuple[str, str | None]] = []
        self._delay_s = delay_s

    async def current(self, location: str, unit: str | None = None) -> dict[str, Any]:
        self.calls.append((location, unit))
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        return {"location": location, "currentWeather": {"temperature": 75, "description": "Sunny"}}


class _Harness:
    def __init__(self, *, weather: _FakeWeather | None = None, ready: bool = True, **overrides: Any) -> None:
        self.capture = FakeCaptureDevice()
        self.tokens = _FakeTokens()
        self.weather = weather or _FakeWeather()
        self.transports: list[_FakeTransport] = []
        self.errors: list[Exception] = []
        self.ready = ready
        self.gate: asyncio.Event | None = None
        self.fail_close = False
        config = normalize_config(overrides)
        providers = CapabilityProviders(weather=self.weather, search=None, memory=None, time=TimeProvider())
        self.session = RealtimeSession(
            config,
            capture=self.capture,
            token_issuer=self.tokens,
            providers=providers,
            context_provider=StaticContextProvider(ContextSnapshot(location="Austin", temperature_unit="F")),
            transport_factory=self._factory,
        )
        self.session.set_error_handler(self.errors.append)

    def _factory(self, kind, *, capture, token_issuer, sink, gain) -> _FakeTransport:
        transport = _FakeTransport(capture, ready=self.ready, gate=self.gate, fail_close=self.fail_close)
        self.transports.append(transport)
        return transport

    @property
    def transport(self) -> _FakeTransport:
        return self.transports[-1]


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def test_connect_reaches_connected_listening_and_configures_once() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.connect()
        await _settle()
        await session.configure_session()

    asyncio.run(_run())

    assert session.status is ConnectionStatus.CONNECTED
    assert session.mode is AssistantMode.LISTENING
    assert session.session_info.start_time is not None
    assert harness.transport.sent_types().count("session.update") == 1
    assert harness.capture.is_acquired
    assert session.recent_events[0].name == "channel.open"


def test_disconnect_twice_matches_single_disconnect() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.connect()
        await session.disconnect()
        first = (session.status, session.mode, session.session_info.start_time, harness.capture.release_count)
        await session.disconnect()
        second = (session.status, session.mode, session.session_info.start_time, harness.capture.release_count)
        return first, second

    first, second = asyncio.run(_run())

    assert first == second
    assert first == (ConnectionStatus.DISCONNECTED, AssistantMode.IDLE, None, 1)
    assert harness.transport.closed


def test_force_stop_is_safe_from_any_state() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.force_stop()
        await session.connect()
        await session.force_stop()
        await session.force_stop()

    asyncio.run(_run())

    assert session.status is ConnectionStatus.DISCONNECTED
    assert session.mode is AssistantMode.IDLE
    assert harness.capture.acquire_count == 1
    assert harness.capture.release_count == 1
    assert not harness.capture.is_acquired


def test_reconnect_tears_down_previous_transport_first() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.connect()
        await session.connect()

    asyncio.run(_run())

    first, second = harness.transports
    assert first.closed
    assert not second.closed
    assert harness.capture.acquire_count == 2
    assert harness.capture.release_count == 1
    assert session.status is ConnectionStatus.CONNECTED


def test_denied_microphone_surfaces_device_error() -> None:
    harness = _Harness()
    harness.capture.permission_granted = False
    session = harness.session

    with pytest.raises(DeviceError):
        asyncio.run(session.connect())

    assert session.status is ConnectionStatus.DISCONNECTED
    assert isinstance(session.last_error, DeviceError)
    assert session.get_session_health()["failures"] == 1


def test_channel_never_ready_times_out_and_releases_device() -> None:
    harness = _Harness(ready=False, realtime={"connect_timeout_s": 0.01})
    session = harness.session

    with pytest.raises(TransportError):
        asyncio.run(session.connect())

    assert session.status is ConnectionStatus.DISCONNECTED
    assert not harness.capture.is_acquired
    assert harness.transport.closed


def test_transport_failure_forces_disconnect_and_reports_error() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.connect()
        harness.transport.channels.publish_state(STATE_FAILED)
        await _settle()

    asyncio.run(_run())

    assert session.status is ConnectionStatus.DISCONNECTED
    assert session.mode is AssistantMode.IDLE
    assert not harness.capture.is_acquired
    assert any(isinstance(error, TransportError) for error in harness.errors)


def test_inbound_queue_is_consumed_in_order() -> None:
    harness = _Harness()
    session = harness.session
    modes: list[AssistantMode] = []
    session.set_state_handler(lambda status, mode: modes.append(mode))

    async def _run():
        await session.connect()
        for event_type in ("input_audio_buffer.speech_started", "input_audio_buffer.speech_stopped", "response.done"):
            harness.transport.channels.inbound.put_nowait(json.dumps({"type": event_type}))
        await _settle()

    asyncio.run(_run())

    assert modes[-2:] == [AssistantMode.PROCESSING, AssistantMode.LISTENING]


def test_weather_round_trip_attaches_tool_call_to_reply() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.connect()
        await _settle()
        await session.handle_event(
            {"type": "conversation.item.input_audio_transcription.completed", "transcript": "what's the weather in Austin"}
        )
        await session.handle_event(
            {
                "type": "response.output_item.added",
                "response_id": "r1",
                "item": {"type": "function_call", "call_id": "call_1", "name": "get_weather"},
            }
        )
        assert session.current_tool == "Getting weather"
        await session.handle_event(
            {
                "type": "response.function_call_arguments.done",
                "response_id": "r1",
                "call_id": "call_1",
                "arguments": '{"location": "Austin"}',
            }
        )
        await session.wait_for_tools()
        await session.handle_event({"type": "response.done", "response": {"id": "r1", "output": []}})
        await session.handle_event({"type": "response.audio_transcript.delta", "response_id": "r2", "delta": "It's 75"})
        await session.handle_event(
            {"type": "response.audio_transcript.done", "response_id": "r2", "transcript": "It's 75 and sunny in Austin."}
        )

    asyncio.run(_run())

    assert harness.weather.calls == [("Austin", "F")]
    assert [output["call_id"] for output in harness.transport.outputs()] == ["call_1"]
    assert harness.transport.sent_types()[-1] == "response.create"
    user, reply = session.messages
    assert user.speaker is Speaker.USER
    assert reply.speaker is Speaker.ASSISTANT
    assert reply.tool_calls[0].tool == "get_weather"
    assert reply.tool_calls[0].arguments == {"location": "Austin"}
    assert reply.tool_calls[0].result["currentWeather"]["temperature"] == 75
    assert session.mode is AssistantMode.LISTENING
    assert session.current_tool is None


def test_tool_timeout_still_returns_to_listening() -> None:
    harness = _Harness(weather=_FakeWeather(delay_s=1.0), tools={"timeout_s": 0.01})
    session = harness.session

    async def _run():
        await session.connect()
        await session.handle_event({"type": "input_audio_buffer.speech_started"})
        await session.handle_event({"type": "input_audio_buffer.speech_stopped"})
        await session.handle_event(
            {
                "type": "response.done",
                "response": {
                    "id": "r1",
                    "output": [{"type": "function_call", "call_id": "c1", "name": "get_weather", "arguments": "{}"}],
                },
            }
        )
        assert session.mode is AssistantMode.PROCESSING
        await session.wait_for_tools()
        await session.handle_event({"type": "response.done", "response": {"id": "r2", "output": []}})

    asyncio.run(_run())

    output = harness.transport.outputs()[0]
    assert output["call_id"] == "c1"
    assert output["output"]["error"] is True
    assert session.mode is AssistantMode.LISTENING


def test_stop_phrase_disconnects_within_one_event() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.connect()
        await session.handle_event(
            {"type": "conversation.item.input_audio_transcription.completed", "transcript": "Thanks, goodbye!"}
        )

    asyncio.run(_run())

    assert session.status is ConnectionStatus.DISCONNECTED
    assert session.mode is AssistantMode.IDLE
    assert not harness.capture.is_acquired
    assert harness.capture.release_count == 1
    assert session.messages[-1].text == "Thanks, goodbye!"


def test_stop_phrase_from_queue_ends_consumer_cleanly() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.connect()
        harness.transport.channels.inbound.put_nowait(
            json.dumps({"type": "conversation.item.input_audio_transcription.completed", "transcript": "hang up"})
        )
        await _settle()

    asyncio.run(_run())

    assert session.status is ConnectionStatus.DISCONNECTED
    assert "stop phrase" in session.get_session_health()["last_disconnect_reason"]


def test_error_event_surfaces_protocol_error_and_keeps_connection() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.connect()
        await session.handle_event({"type": "error", "error": {"message": "Invalid value", "code": "invalid_value"}})
        await session.handle_event("{}")

    asyncio.run(_run())

    assert isinstance(session.last_error, ProtocolError)
    assert str(session.last_error) == "Invalid value"
    assert session.status is ConnectionStatus.CONNECTED
    assert [event.name for event in session.recent_events[:2]] == ["malformed", "error"]


def test_late_tool_result_is_dropped_after_disconnect() -> None:
    harness = _Harness(weather=_FakeWeather(delay_s=0.05))
    session = harness.session

    async def _run():
        await session.connect()
        await session.handle_event(
            {"type": "response.function_call_done", "call_id": "c1", "name": "get_weather", "arguments": "{}"}
        )
        await session.disconnect()
        await asyncio.sleep(0.1)

    asyncio.run(_run())

    assert harness.transport.outputs() == []
    assert session.messages == ()


def test_recent_events_are_bounded_and_newest_first() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        for index in range(12):
            await session.handle_event({"type": f"custom.event_{index}"})

    asyncio.run(_run())

    names = [event.name for event in session.recent_events]
    assert len(names) == 10
    assert names[0] == "custom.event_11"
    assert names[-1] == "custom.event_2"


def test_send_text_message_requests_a_response() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.connect()
        await session.send_text_message("What time is it?")

    asyncio.run(_run())

    assert harness.transport.sent_types()[-2:] == ["conversation.item.create", "response.create"]
    assert session.mode is AssistantMode.PROCESSING
    assert session.messages[-1].text == "What time is it?"


def test_send_text_message_requires_connection() -> None:
    session = _Harness().session

    with pytest.raises(TransportError):
        asyncio.run(session.send_text_message("hello"))


def test_clear_transcript_keeps_status_and_mode() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.connect()
        await session.handle_event(
            {"type": "conversation.item.input_audio_transcription.completed", "transcript": "hello there"}
        )
        await session.handle_event({"type": "input_audio_buffer.speech_stopped"})
        session.clear_transcript()

    asyncio.run(_run())

    assert session.messages == ()
    assert session.status is ConnectionStatus.CONNECTED
    assert session.mode is AssistantMode.PROCESSING


def test_voice_is_locked_while_connected() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.connect()
        locked = session.update_voice("verse")
        await session.disconnect()
        unlocked = session.update_voice("verse")
        return locked, unlocked

    assert asyncio.run(_run()) == (False, True)
    assert session.session_info.voice == "verse"

    session.update_wake_phrase("Hey Computer")
    assert session.session_info.wake_phrase == "Hey Computer"


def test_tool_call_lands_on_its_own_reply_not_an_earlier_one() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.connect()
        await _settle()
        await session.handle_event({"type": "response.audio_transcript.done", "response_id": "r1", "transcript": "Hello there"})
        await session.handle_event({"type": "response.done", "response": {"id": "r1", "output": []}})
        await session.handle_event(
            {
                "type": "response.output_item.added",
                "response_id": "r2",
                "item": {"type": "function_call", "call_id": "call_1", "name": "get_weather"},
            }
        )
        await session.handle_event(
            {"type": "response.audio_transcript.done", "response_id": "r2", "transcript": "Let me check the weather"}
        )
        await session.handle_event(
            {
                "type": "response.function_call_arguments.done",
                "response_id": "r2",
                "call_id": "call_1",
                "arguments": '{"location": "Austin"}',
            }
        )
        await session.wait_for_tools()

    asyncio.run(_run())

    placed = [
        (message.text, [call.tool for call in message.tool_calls or ()])
        for message in session.messages
    ]
    assert placed == [("Hello there", []), ("Let me check the weather", ["get_weather"])]


def test_tool_only_reply_hands_its_call_to_the_continuation() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.connect()
        await _settle()
        await session.handle_event({"type": "response.audio_transcript.done", "response_id": "r1", "transcript": "Hi!"})
        await session.handle_event({"type": "response.done", "response": {"id": "r1", "output": []}})
        await session.handle_event(
            {"type": "response.function_call_done", "response_id": "r2", "call_id": "c1", "name": "get_weather", "arguments": "{}"}
        )
        await session.wait_for_tools()
        await session.handle_event({"type": "response.done", "response": {"id": "r2", "output": []}})
        await session.handle_event({"type": "response.audio_transcript.done", "response_id": "r3", "transcript": "Sunny."})

    asyncio.run(_run())

    first, continuation = session.messages
    assert first.tool_calls is None
    assert [call.call_id for call in continuation.tool_calls] == ["c1"]


@pytest.mark.parametrize("stop", ["force_stop", "disconnect"])
def test_stopping_while_opening_closes_what_open_built(stop: str) -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        harness.gate = asyncio.Event()
        connecting = asyncio.ensure_future(session.connect())
        await _settle()
        assert session.status is ConnectionStatus.CONNECTING
        await getattr(session, stop)()
        harness.gate.set()
        with pytest.raises(TransportError):
            await connecting

    asyncio.run(_run())

    assert session.status is ConnectionStatus.DISCONNECTED
    assert harness.capture.acquire_count == 1
    assert not harness.capture.is_acquired
    assert harness.transport.close_calls == 2
    assert session.get_session_health()["connections"] == 0


def test_force_stop_while_waiting_for_the_channel_ends_connect_promptly() -> None:
    harness = _Harness(ready=False, realtime={"connect_timeout_s": 30.0})
    session = harness.session

    async def _run():
        connecting = asyncio.ensure_future(session.connect())
        await _settle()
        await session.force_stop()
        with pytest.raises(TransportError, match="stopped"):
            await asyncio.wait_for(connecting, timeout=1.0)

    asyncio.run(_run())

    assert session.status is ConnectionStatus.DISCONNECTED
    assert not harness.capture.is_acquired


def test_text_message_right_after_connect_follows_session_update() -> None:
    harness = _Harness()
    session = harness.session

    async def _run():
        await session.connect()
        await session.send_text_message("Hello")

    asyncio.run(_run())

    assert harness.transport.sent_types() == ["session.update", "conversation.item.create", "response.create"]


def test_stop_phrase_with_failing_close_surfaces_error_and_disconnects() -> None:
    harness = _Harness()
    harness.fail_close = True
    session = harness.session

    async def _run():
        await session.connect()
        harness.transport.channels.inbound.put_nowait(
            json.dumps({"type": "conversation.item.input_audio_transcription.completed", "transcript": "goodbye"})
        )
        await _settle()

    asyncio.run(_run())

    assert session.status is ConnectionStatus.DISCONNECTED
    assert isinstance(session.last_error, TransportError)
    assert any(isinstance(error, TransportError) for error in harness.errors)
    assert not harness.capture.is_acquired
