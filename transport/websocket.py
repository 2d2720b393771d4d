"""WebSocket transport: the socket itself carries control events and audio."""

from __future__ import annotations

import asyncio
import base64
import importlib
import importlib.util
import json
from typing import Any

from ai.events import input_audio_append
from core.errors import DeviceError, TransportError
from core.logging import log_info, log_warning, log_ws_event, logger
from interaction.audio import AudioSink, NullAudioSink
from interaction.capture import CaptureDevice
from interaction.gain import GainStage
from services.session_tokens import TokenIssuer
from transport.base import STATE_CLOSED, STATE_CONNECTED, STATE_FAILED, TransportChannels, TransportConfig, with_model

AUDIO_DELTA_EVENTS = {"response.audio.delta", "response.output_audio.delta"}
MIC_POLL_INTERVAL_S = 0.03


def _require_websockets() -> Any:
    if importlib.util.find_spec("websockets") is None:
        raise TransportError("websockets is required for the websocket transport")
    return importlib.import_module("websockets")


def base64_encode_audio(audio_bytes: bytes) -> str:
    return base64.b64encode(audio_bytes).decode("utf-8")


class WebSocketTransport:
    """Realtime connection over a single websocket."""

    def __init__(
        self,
        capture: CaptureDevice,
        token_issuer: TokenIssuer,
        *,
        sink: AudioSink | None = None,
        gain: GainStage | None = None,
    ) -> None:
        self._capture = capture
        self._token_issuer = token_issuer
        self._sink = sink or NullAudioSink()
        self.gain = gain or GainStage()
        self._websocket: Any | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._closed = False

    async def open(self, config: TransportConfig) -> TransportChannels:
        websockets = _require_websockets()
        self._closed = False
        self._capture.acquire()
        channels = TransportChannels()
        try:
            session = await self._token_issuer.create_session(config.voice, config.model)
            self._raise_if_closed()
            headers = {
                "Authorization": f"Bearer {session.token}",
                "OpenAI-Beta": "realtime=v1",
            }
            self._websocket = await websockets.connect(
                with_model(config.url, config.model),
                additional_headers=headers,
                close_timeout=10,
                ping_interval=30,
                ping_timeout=10,
            )
            self._raise_if_closed()
        except (DeviceError, TransportError):
            await self.close(timeout=1.0)
            raise
        except Exception as exc:
            await self.close(timeout=1.0)
            raise TransportError(f"WebSocket connection failed: {exc}") from exc

        log_info("✅ Connected to the server.", style="bold green")
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._receive_loop(channels), name="ws-receive"),
            loop.create_task(self._send_audio_loop(), name="ws-mic"),
        ]
        channels.ready.set()
        channels.publish_state(STATE_CONNECTED)
        return channels

    def _raise_if_closed(self) -> None:
        if self._closed:
            raise TransportError("Transport closed while opening")

    async def _receive_loop(self, channels: TransportChannels) -> None:
        websockets = _require_websockets()
        websocket = self._websocket
        try:
            async for message in websocket:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                self._route_audio(message)
                channels.inbound.put_nowait(message)
        except websockets.exceptions.ConnectionClosedError as exc:
            if not self._closed:
                log_warning(f"WebSocket connection lost: {exc}")
                channels.publish_state(STATE_FAILED)
            return
        if not self._closed:
            channels.publish_state(STATE_CLOSED)

    def _route_audio(self, message: str) -> None:
        if '"type"' not in message or "audio.delta" not in message:
            return
        try:
            event = json.loads(message)
        except json.JSONDecodeError:
            return
        if isinstance(event, dict) and event.get("type") in AUDIO_DELTA_EVENTS:
            delta = event.get("delta")
            if isinstance(delta, str) and delta:
                self._sink.play_audio(base64.b64decode(delta))

    async def _send_audio_loop(self) -> None:
        while not self._closed:
            audio_data = self._capture.read_chunk()
            if audio_data:
                pcm = self.gain.process(audio_data)
                try:
                    await self.send_control_event(input_audio_append(base64_encode_audio(pcm)))
                except TransportError:
                    return
            await asyncio.sleep(MIC_POLL_INTERVAL_S)

    async def send_control_event(self, event: dict[str, Any]) -> None:
        websocket = self._websocket
        if self._closed or websocket is None:
            raise TransportError("WebSocket is not open")
        log_ws_event("Outgoing", event)
        try:
            await websocket.send(json.dumps(event))
        except _require_websockets().exceptions.ConnectionClosed as exc:
            raise TransportError(f"WebSocket closed while sending: {exc}") from exc

    async def close(self, *, timeout: float | None = None) -> None:
        # also releases anything open() built after an earlier close
        first = not self._closed
        self._closed = True

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self._tasks.clear()

        try:
            self._capture.release()
        except DeviceError as exc:
            log_warning(f"Capture release failed: {exc}")

        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            try:
                await asyncio.wait_for(websocket.close(), timeout=timeout)
            except asyncio.TimeoutError:
                log_warning("WebSocket close timed out; abandoning")
        self._sink.flush()
        self.gain.reset()
        if first:
            logger.info("WebSocket transport closed")
