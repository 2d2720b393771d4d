"""WebRTC transport: one audio track plus the ``oai-events`` data channel."""

from __future__ import annotations

import asyncio
import fractions
import json
import time
from typing import Any
from urllib import error, request

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.mediastreams import MediaStreamError
import av
import numpy as np

from core.errors import DeviceError, TransportError
from core.logging import log_info, log_warning, log_ws_event, logger
from interaction.audio import AudioSink, NullAudioSink
from interaction.capture import CaptureDevice
from interaction.gain import GainStage
from services.session_tokens import TokenIssuer
from transport.base import (
    STATE_CLOSED,
    STATE_CONNECTED,
    STATE_FAILED,
    TransportChannels,
    TransportConfig,
    with_model,
)

CONTROL_CHANNEL_LABEL = "oai-events"


class CaptureTrack(MediaStreamTrack):
    """Outbound audio track fed from the capture device through the gain stage."""

    kind = "audio"

    def __init__(self, capture: CaptureDevice, gain: GainStage, *, sample_rate: int, chunk_size: int) -> None:
        super().__init__()
        self._capture = capture
        self._gain = gain
        self._sample_rate = sample_rate
        self._chunk_bytes = chunk_size * 2
        self._samples = chunk_size
        self._buffer = bytearray()
        self._start: float | None = None
        self._timestamp = 0

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError

        if self._start is None:
            self._start = time.time()
            self._timestamp = 0
        else:
            self._timestamp += self._samples
            wait = self._start + (self._timestamp / self._sample_rate) - time.time()
            if wait > 0:
                await asyncio.sleep(wait)

        chunk = self._capture.read_chunk()
        if chunk:
            self._buffer.extend(self._gain.process(chunk))
        if len(self._buffer) >= self._chunk_bytes:
            pcm = bytes(self._buffer[: self._chunk_bytes])
            del self._buffer[: self._chunk_bytes]
        else:
            pcm = bytes(self._buffer).ljust(self._chunk_bytes, b"\x00")
            self._buffer.clear()

        samples = np.frombuffer(pcm, dtype=np.int16).reshape(1, -1)
        frame = av.AudioFrame.from_ndarray(samples, format="s16", layout="mono")
        frame.sample_rate = self._sample_rate
        frame.pts = self._timestamp
        frame.time_base = fractions.Fraction(1, self._sample_rate)
        return frame


def post_sdp_offer(url: str, token: str, sdp: str, timeout_s: float = 15.0) -> str:
    req = request.Request(
        url,
        data=sdp.encode("utf-8"),
        headers={
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/sdp",
        },
        method="POST",
    )
    try:
        with request.urlopen(req, timeout=timeout_s) as response:
            return response.read().decode("utf-8")
    except error.HTTPError as exc:
        raise TransportError(f"SDP exchange failed with HTTP {exc.code}") from exc
    except (error.URLError, TimeoutError, OSError) as exc:
        raise TransportError(f"SDP exchange failed: {exc}") from exc


class WebRTCTransport:
    """aiortc peer connection to the realtime endpoint."""

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
        self._pc: RTCPeerConnection | None = None
        self._channel: Any | None = None
        self._track: CaptureTrack | None = None
        self._channels: TransportChannels | None = None
        self._remote_tasks: list[asyncio.Task[None]] = []
        self._closed = False

    async def open(self, config: TransportConfig) -> TransportChannels:
        self._closed = False
        self._capture.acquire()
        channels = TransportChannels()
        self._channels = channels
        try:
            session = await self._token_issuer.create_session(config.voice, config.model)
            self._raise_if_closed()
            pc = RTCPeerConnection(
                RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in config.ice_servers])
            )
            self._pc = pc
            self._wire_peer_connection(pc, channels)

            self._track = CaptureTrack(
                self._capture,
                self.gain,
                sample_rate=config.sample_rate,
                chunk_size=config.chunk_size,
            )
            pc.addTrack(self._track)

            channel = pc.createDataChannel(CONTROL_CHANNEL_LABEL, ordered=True)
            self._channel = channel
            self._wire_control_channel(channel, channels)

            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            self._raise_if_closed()
            answer_sdp = await asyncio.to_thread(
                post_sdp_offer,
                with_model(config.url, config.model),
                session.token,
                pc.localDescription.sdp,
            )
            self._raise_if_closed()
            await pc.setRemoteDescription(RTCSessionDescription(sdp=answer_sdp, type="answer"))
            self._raise_if_closed()
        except (DeviceError, TransportError):
            await self.close(timeout=1.0)
            raise
        except Exception as exc:
            await self.close(timeout=1.0)
            raise TransportError(f"WebRTC negotiation failed: {exc}") from exc

        log_info("WebRTC offer/answer exchange complete", style="bold green")
        return channels

    def _raise_if_closed(self) -> None:
        if self._closed:
            raise TransportError("Transport closed while opening")

    def _wire_peer_connection(self, pc: RTCPeerConnection, channels: TransportChannels) -> None:
        @pc.on("connectionstatechange")
        async def on_connection_state() -> None:
            state = pc.connectionState
            logger.info("Peer connection state: %s", state)
            if state == "failed":
                channels.publish_state(STATE_FAILED)
            elif state == "closed" and not self._closed:
                channels.publish_state(STATE_CLOSED)

        @pc.on("iceconnectionstatechange")
        async def on_ice_state() -> None:
            if pc.iceConnectionState == "failed":
                log_warning("ICE connection failed")
                channels.publish_state(STATE_FAILED)

        @pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            if track.kind != "audio":
                return
            logger.info("Remote audio track received")
            self._remote_tasks.append(asyncio.ensure_future(self._play_remote(track)))

    def _wire_control_channel(self, channel: Any, channels: TransportChannels) -> None:
        @channel.on("open")
        def on_open() -> None:
            log_info("Control channel open", style="bold green")
            channels.ready.set()
            channels.publish_state(STATE_CONNECTED)

        @channel.on("message")
        def on_message(message: str | bytes) -> None:
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            channels.inbound.put_nowait(message)

        @channel.on("close")
        def on_close() -> None:
            if not self._closed:
                log_warning("Control channel closed by remote")
                channels.publish_state(STATE_CLOSED)

    async def _play_remote(self, track: MediaStreamTrack) -> None:
        resampler = av.AudioResampler(format="s16", layout="mono", rate=24000)
        try:
            while True:
                frame = await track.recv()
                for out in resampler.resample(frame):
                    self._sink.play_audio(bytes(out.planes[0])[: out.samples * 2])
        except MediaStreamError:
            logger.info("Remote audio track ended")

    async def send_control_event(self, event: dict[str, Any]) -> None:
        channel = self._channel
        if self._closed or channel is None or channel.readyState != "open":
            raise TransportError("Control channel is not open")
        log_ws_event("Outgoing", event)
        channel.send(json.dumps(event))

    async def close(self, *, timeout: float | None = None) -> None:
        # also releases anything open() built after an earlier close
        first = not self._closed
        self._closed = True

        if self._track is not None:
            self._track.stop()
            self._track = None
        try:
            self._capture.release()
        except DeviceError as exc:
            log_warning(f"Capture release failed: {exc}")

        for task in self._remote_tasks:
            task.cancel()
        self._remote_tasks.clear()

        if self._channel is not None:
            self._channel.close()
            self._channel = None

        pc, self._pc = self._pc, None
        if pc is not None:
            try:
                await asyncio.wait_for(pc.close(), timeout=timeout)
            except asyncio.TimeoutError:
                log_warning("Peer connection close timed out; abandoning")
        self._sink.flush()
        self.gain.reset()
        if first:
            logger.info("WebRTC transport closed")
