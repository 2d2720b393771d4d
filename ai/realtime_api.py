"""Realtime session orchestrator: lifecycle, event loop and effect routing."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
import time
from typing import Any, Awaitable, Callable

from ai.dispatcher import (
    AppendDelta,
    AttachToolCalls,
    DiscardPartial,
    ExecuteTool,
    FinalizeMessage,
    RequestDisconnect,
    SessionState,
    SurfaceError,
    reduce,
)
from ai.events import (
    ChannelClosed,
    ChannelOpened,
    SessionEvent,
    TextMessageSent,
    ToolResultDelivered,
    decode_event,
    response_create,
    user_text_message,
)
from ai.session_config import BackendContextProvider, ContextProvider, SessionConfigurator
from ai.tools import ToolCallContext, ToolExecutor, tool_display_name, tools
from ai.transcript import ToolInvocation, TranscriptAggregator, TranscriptMessage
from core.errors import DeviceError, ProtocolError, TransportError, VoiceSessionError
from core.logging import configure_logging, log_error, log_info, log_warning, log_ws_event, logger
from interaction.audio import AudioSink, NullAudioSink, PyAudioSink
from interaction.capture import CaptureDevice, PyAudioCaptureDevice
from interaction.gain import GainStage
from interaction.state import (
    AssistantMode,
    ConnectionStatus,
    RecentEvent,
    RecentEventLog,
    SessionConfig,
    StateHandler,
    StateTracker,
    TransportKind,
)
from services.backend_client import BackendClient
from services.capabilities import CapabilityProviders
from services.session_tokens import SessionTokenClient, TokenIssuer
from transport import create_transport
from transport.base import TERMINAL_STATES, Transport, TransportChannels, TransportConfig

ErrorHandler = Callable[[VoiceSessionError], Awaitable[None] | None]
TransportFactory = Callable[..., Transport]


@dataclass
class SessionContext:
    """Mutable state of one connection, replaced wholesale on every teardown."""

    generation: int
    state: SessionState
    transport: Transport | None = None
    channels: TransportChannels | None = None
    tasks: list[asyncio.Task[Any]] = field(default_factory=list)
    # resolved invocations waiting for the reducer to place them
    resolved: dict[str, ToolInvocation] = field(default_factory=dict)
    closed: asyncio.Event = field(default_factory=asyncio.Event)


class RealtimeSession:
    """Own the transport, the reducer state and every session resource."""

    def __init__(
        self,
        config: dict[str, Any],
        *,
        capture: CaptureDevice,
        token_issuer: TokenIssuer,
        providers: CapabilityProviders,
        context_provider: ContextProvider | None = None,
        sink: AudioSink | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self.config = config
        self.session_info = SessionConfig.from_config(config)
        self._capture = capture
        self._token_issuer = token_issuer
        self._context_provider = context_provider or BackendContextProvider(config, providers)
        self._sink = sink or NullAudioSink()
        self._transport_factory = transport_factory or create_transport

        realtime_cfg = config.get("realtime") or {}
        self._connect_timeout_s = float(realtime_cfg.get("connect_timeout_s", 15.0))
        self._close_timeout_s = float(realtime_cfg.get("close_timeout_s", 5.0))
        self._force_close_timeout_s = float(realtime_cfg.get("force_close_timeout_s", 0.5))
        self._stop_phrases = tuple(config.get("stop_phrases") or ())

        self.tracker = StateTracker()
        self.transcript = TranscriptAggregator()
        self._recent_events = RecentEventLog()
        self._executor = ToolExecutor(
            providers,
            timeout_s=float((config.get("tools") or {}).get("timeout_s", 20.0)),
        )
        self._configurator = SessionConfigurator(
            self._send_current,
            tools=tools,
            config=config,
            voice=self.session_info.voice,
        )
        self._ctx = SessionContext(generation=0, state=self._initial_state())
        self._error_handler: ErrorHandler | None = None
        self.last_error: VoiceSessionError | None = None

        self._session_connection_attempts = 0
        self._session_connections = 0
        self._session_failures = 0
        self._last_connect_time: float | None = None
        self._last_disconnect_reason: str | None = None
        self._last_failure_reason: str | None = None

    @classmethod
    def from_config(cls, config: dict[str, Any] | None = None, *, playback: bool = True) -> "RealtimeSession":
        if config is None:
            from config import ConfigController

            config = ConfigController.get_instance().get_config()
        configure_logging(config)
        audio_cfg = config.get("audio") or {}
        client = BackendClient.from_config(config)
        providers = CapabilityProviders.from_config(config, client)
        capture = PyAudioCaptureDevice(
            audio_cfg.get("input_device_name"),
            sample_rate=int(audio_cfg.get("sample_rate", 24000)),
            chunk_size=int(audio_cfg.get("chunk_size", 960)),
        )
        sink: AudioSink = NullAudioSink()
        if playback:
            sink = PyAudioSink(audio_cfg.get("output_device_name"), int(audio_cfg.get("sample_rate", 24000)))
        return cls(
            config,
            capture=capture,
            token_issuer=SessionTokenClient(client),
            providers=providers,
            sink=sink,
        )

    def _initial_state(self) -> SessionState:
        if self._stop_phrases:
            return SessionState(stop_phrases=self._stop_phrases)
        return SessionState()

    # Observers

    def set_state_handler(self, handler: StateHandler | None) -> None:
        self.tracker.set_handler(handler)

    def set_error_handler(self, handler: ErrorHandler | None) -> None:
        self._error_handler = handler

    @property
    def status(self) -> ConnectionStatus:
        return self.tracker.status

    @property
    def mode(self) -> AssistantMode:
        return self.tracker.mode

    @property
    def recent_events(self) -> tuple[RecentEvent, ...]:
        return self._recent_events.snapshot()

    @property
    def messages(self) -> tuple[TranscriptMessage, ...]:
        return self.transcript.messages

    @property
    def current_tool(self) -> str | None:
        return tool_display_name(self._ctx.state.tool_in_flight)

    @property
    def voice_intensity(self) -> float:
        transport = self._ctx.transport
        if transport is None:
            return 0.0
        return transport.gain.level

    @property
    def is_configured(self) -> bool:
        return self._configurator.configured

    def get_session_health(self) -> dict[str, Any]:
        return {
            "connected": self.status is ConnectionStatus.CONNECTED,
            "configured": self._configurator.configured,
            "connection_attempts": self._session_connection_attempts,
            "connections": self._session_connections,
            "failures": self._session_failures,
            "tools_in_flight": len(self._executor.in_flight),
            "last_connect_time": self._last_connect_time or 0.0,
            "last_disconnect_reason": self._last_disconnect_reason or "",
            "last_failure_reason": self._last_failure_reason or "",
        }

    def _note_connection_attempt(self) -> None:
        self._session_connection_attempts += 1

    def _note_connected(self) -> None:
        self._session_connections += 1
        self._last_connect_time = time.time()
        self._last_disconnect_reason = None

    def _note_disconnect(self, reason: str) -> None:
        self._last_disconnect_reason = reason

    def _note_failure(self, reason: str) -> None:
        self._session_failures += 1
        self._last_failure_reason = reason

    # Lifecycle

    async def connect(self) -> None:
        """Open a fresh connection, tearing down any previous one first."""

        if self._ctx.transport is not None or self.status is not ConnectionStatus.DISCONNECTED:
            await self._teardown(force=True, reason="reconnect")

        self._note_connection_attempt()
        ctx = SessionContext(generation=self._ctx.generation + 1, state=self._ctx.state)
        self._ctx = ctx
        self._configurator.reset()
        self._executor.reset()
        self.tracker.update(status=ConnectionStatus.CONNECTING, reason="connect")

        audio_cfg = self.config.get("audio") or {}
        realtime_cfg = self.config.get("realtime") or {}
        kind = self.session_info.transport_kind
        url = realtime_cfg.get("websocket_url") if kind is TransportKind.WEBSOCKET else realtime_cfg.get("webrtc_url")
        transport = self._transport_factory(
            kind,
            capture=self._capture,
            token_issuer=self._token_issuer,
            sink=self._sink,
            gain=GainStage(float(audio_cfg.get("input_gain", 1.0))),
        )
        ctx.transport = transport
        transport_config = TransportConfig(
            voice=self.session_info.voice,
            model=self.session_info.model,
            url=str(url or ""),
            ice_servers=tuple(realtime_cfg.get("ice_servers") or ()),
            sample_rate=int(audio_cfg.get("sample_rate", 24000)),
            chunk_size=int(audio_cfg.get("chunk_size", 960)),
        )

        try:
            channels = await transport.open(transport_config)
            ctx.channels = channels
            await self._wait_for(ctx, channels.ready.wait(), "Control channel")
        except (DeviceError, TransportError) as exc:
            if self._ctx is not ctx:
                # stopped while opening; close whatever open() built after teardown
                await self._close_quietly(transport)
                raise
            await self._fail(ctx, exc)
            raise

        self._on_channel_open(ctx)

    async def _wait_for(self, ctx: SessionContext, waiter: Awaitable[Any], what: str) -> None:
        """Await ``waiter`` unless the connection is torn down or the connect timeout passes."""

        tasks = [asyncio.ensure_future(waiter), asyncio.ensure_future(ctx.closed.wait())]
        try:
            done, _ = await asyncio.wait(
                tasks,
                timeout=self._connect_timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in tasks:
                task.cancel()
        if self._ctx is not ctx:
            raise TransportError(f"Connection was stopped while waiting for {what.lower()}")
        if not done:
            raise TransportError(f"{what} not ready after {self._connect_timeout_s:g}s")
        tasks[0].result()

    async def _close_quietly(self, transport: Transport) -> None:
        try:
            await transport.close(timeout=self._force_close_timeout_s)
        except Exception:
            logger.exception("Transport close failed")

    def _on_channel_open(self, ctx: SessionContext) -> None:
        self._note_connected()
        self.session_info = self.session_info.started(datetime.now())
        self._recent_events.record("channel.open")
        self.tracker.update(status=ConnectionStatus.CONNECTED, reason="control channel open")
        self._step(ctx, ChannelOpened())
        log_info("Conversation started. Speak freely, and the assistant will respond.", style="bold green")

        loop = asyncio.get_running_loop()
        ctx.tasks.append(loop.create_task(self._consume_events(ctx), name="session-events"))
        ctx.tasks.append(loop.create_task(self._watch_transport(ctx), name="session-transport"))
        ctx.tasks.append(loop.create_task(self._configure(ctx), name="session-configure"))

    async def disconnect(self, reason: str = "user disconnect") -> None:
        """Graceful teardown; a no-op when already disconnected."""

        if self._ctx.transport is None and self.status is ConnectionStatus.DISCONNECTED:
            return
        log_info(f"Disconnecting: {reason}", style="bold yellow")
        await self._teardown(force=False, reason=reason)

    async def force_stop(self, reason: str = "force stop") -> None:
        """Immediate teardown; safe from any state."""

        logger.info("Force stopping session (%s)", reason)
        await self._teardown(force=True, reason=reason)

    async def _fail(self, ctx: SessionContext, exc: VoiceSessionError) -> None:
        if self._ctx is not ctx:
            return
        self._note_failure(str(exc))
        log_error(f"Session failure: {exc}")
        await self._teardown(force=True, reason=str(exc))
        self._surface(exc)

    async def _teardown(self, *, force: bool, reason: str) -> None:
        ctx = self._ctx
        closed_state, _ = reduce(ctx.state, ChannelClosed())
        self._ctx = SessionContext(generation=ctx.generation + 1, state=closed_state)
        ctx.closed.set()

        current = asyncio.current_task()
        for task in ctx.tasks:
            if task is not current:
                task.cancel()
        self._executor.cancel_all()

        if force:
            self._capture.release()

        close_error: Exception | None = None
        if ctx.transport is not None:
            timeout = self._force_close_timeout_s if force else self._close_timeout_s
            try:
                await ctx.transport.close(timeout=timeout)
            except Exception as exc:
                logger.exception("Transport close failed")
                if not force:
                    close_error = exc
        self._capture.release()

        self.session_info = self.session_info.stopped()
        self.transcript.reset_buffers()
        self._configurator.reset()
        if ctx.transport is not None:
            self._recent_events.record("channel.close")
        self.tracker.update(status=ConnectionStatus.DISCONNECTED, mode=closed_state.mode, reason=reason)
        self._note_disconnect(reason)

        if close_error is not None:
            raise TransportError(f"Transport did not close cleanly: {close_error}") from close_error

    # Outbound

    async def _send_current(self, event: dict[str, Any]) -> None:
        await self._send_on(self._ctx, event)

    async def _send_on(self, ctx: SessionContext, event: dict[str, Any]) -> None:
        if self._ctx is not ctx or ctx.transport is None or self.status is not ConnectionStatus.CONNECTED:
            raise TransportError("Session is not connected")
        await ctx.transport.send_control_event(event)

    async def configure_session(self) -> bool:
        return await self._configurator.configure(self._context_provider)

    async def _configure(self, ctx: SessionContext) -> None:
        try:
            await self._configurator.configure(self._context_provider)
        except TransportError as exc:
            if self._ctx is ctx:
                log_warning(f"Session configuration not sent: {exc}")

    async def send_text_message(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        ctx = self._ctx
        if self.status is ConnectionStatus.CONNECTED and not self._configurator.configured:
            await self._wait_for(ctx, self._configurator.wait_configured(), "Session configuration")
        await self._send_on(ctx, user_text_message(text))
        await self._send_on(ctx, response_create())
        self._step(ctx, TextMessageSent(text=text))

    async def wait_for_tools(self) -> None:
        await self._executor.drain()

    def clear_transcript(self) -> None:
        self.transcript.clear()

    def export_transcript(self) -> dict[str, Any]:
        return self.transcript.export()

    def update_voice(self, voice: str) -> bool:
        if self.status is not ConnectionStatus.DISCONNECTED:
            log_warning("Voice can only be changed while disconnected")
            return False
        self.session_info = replace(self.session_info, voice=voice)
        self._configurator.voice = voice
        return True

    def update_wake_phrase(self, wake_phrase: str) -> None:
        self.session_info = replace(self.session_info, wake_phrase=wake_phrase)

    # Inbound

    async def _consume_events(self, ctx: SessionContext) -> None:
        assert ctx.channels is not None
        while self._ctx is ctx:
            raw = await ctx.channels.inbound.get()
            await self.handle_event(raw)

    async def _watch_transport(self, ctx: SessionContext) -> None:
        assert ctx.channels is not None
        while self._ctx is ctx:
            state = await ctx.channels.state_changes.get()
            logger.info("Transport state: %s", state)
            if state in TERMINAL_STATES:
                await self._fail(ctx, TransportError(f"Transport {state}"))
                return

    async def handle_event(self, raw: str | bytes | dict[str, Any]) -> None:
        """Classify one inbound control message and apply its effects."""

        ctx = self._ctx
        name, event = decode_event(raw)
        self._recent_events.record(name)
        if isinstance(raw, dict):
            log_ws_event("Incoming", raw)
        else:
            log_ws_event("Incoming", {"type": name})
        for request in self._step(ctx, event):
            log_info(f"Stop phrase heard ('{request.phrase}'); ending session", style="bold yellow")
            try:
                await self.disconnect(reason=f"stop phrase '{request.phrase}'")
            except TransportError as exc:
                self._surface(exc)

    def _step(self, ctx: SessionContext, event: SessionEvent) -> list[RequestDisconnect]:
        state, effects = reduce(ctx.state, event)
        ctx.state = state
        if self._ctx is ctx:
            self.tracker.update(mode=state.mode, reason=type(event).__name__)

        disconnects: list[RequestDisconnect] = []
        for effect in effects:
            if isinstance(effect, AppendDelta):
                self.transcript.append_delta(effect.speaker, effect.text)
            elif isinstance(effect, FinalizeMessage):
                calls = [ctx.resolved.pop(call_id) for call_id in effect.tool_call_ids if call_id in ctx.resolved]
                self.transcript.finalize(effect.speaker, effect.text, calls or None)
            elif isinstance(effect, AttachToolCalls):
                calls = [ctx.resolved.pop(call_id) for call_id in effect.call_ids if call_id in ctx.resolved]
                if effect.patch_latest:
                    self.transcript.attach_tool_calls(calls)
                else:
                    self.transcript.hold_tool_calls(calls)
            elif isinstance(effect, DiscardPartial):
                self.transcript.discard(effect.speaker)
                self._sink.flush()
            elif isinstance(effect, ExecuteTool):
                self._executor.execute(
                    effect.name,
                    effect.arguments,
                    effect.call_id,
                    context=self._tool_context(ctx),
                )
            elif isinstance(effect, SurfaceError):
                log_error(f"Error: {effect.message}")
                self._surface(ProtocolError(effect.message, remote_code=effect.code))
            elif isinstance(effect, RequestDisconnect):
                disconnects.append(effect)
        return disconnects

    def _tool_context(self, ctx: SessionContext) -> ToolCallContext:
        context_cfg = self.config.get("context") or {}
        snapshot = self._configurator.last_context

        async def send(event: dict[str, Any]) -> None:
            await self._send_on(ctx, event)

        def on_complete(invocation: ToolInvocation) -> None:
            if self._ctx is not ctx:
                return
            ctx.resolved[invocation.call_id] = invocation
            self._step(ctx, ToolResultDelivered(call_id=invocation.call_id))

        return ToolCallContext(
            send=send,
            on_complete=on_complete,
            location=snapshot.location if snapshot else str(context_cfg.get("location") or ""),
            temperature_unit=snapshot.temperature_unit if snapshot else str(context_cfg.get("temperature_unit") or "F"),
            timezone=context_cfg.get("timezone"),
        )

    def _surface(self, exc: VoiceSessionError) -> None:
        self.last_error = exc
        handler = self._error_handler
        if handler is None:
            return
        try:
            result = handler(exc)
            if asyncio.iscoroutine(result):
                asyncio.get_running_loop().create_task(result)
        except Exception:
            logger.exception("Error handler failed for %s", type(exc).__name__)
