"""Realtime transports."""

from __future__ import annotations

from interaction.audio import AudioSink
from interaction.capture import CaptureDevice
from interaction.gain import GainStage
from interaction.state import TransportKind
from services.session_tokens import TokenIssuer
from transport.base import Transport, TransportChannels, TransportConfig

__all__ = ["Transport", "TransportChannels", "TransportConfig", "create_transport"]


def create_transport(
    kind: TransportKind,
    *,
    capture: CaptureDevice,
    token_issuer: TokenIssuer,
    sink: AudioSink | None = None,
    gain: GainStage | None = None,
) -> Transport:
    if kind is TransportKind.WEBSOCKET:
        from transport.websocket import WebSocketTransport

        return WebSocketTransport(capture, token_issuer, sink=sink, gain=gain)

    from transport.webrtc import WebRTCTransport

    return WebRTCTransport(capture, token_issuer, sink=sink, gain=gain)
