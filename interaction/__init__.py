"""Interaction package utilities."""

from interaction.audio import AudioSink, NullAudioSink, PyAudioSink
from interaction.capture import CaptureDevice, FakeCaptureDevice, PyAudioCaptureDevice
from interaction.gain import GainStage
from interaction.state import AssistantMode, ConnectionStatus, SessionConfig, TransportKind

__all__ = [
    "AssistantMode",
    "AudioSink",
    "CaptureDevice",
    "ConnectionStatus",
    "FakeCaptureDevice",
    "GainStage",
    "NullAudioSink",
    "PyAudioCaptureDevice",
    "PyAudioSink",
    "SessionConfig",
    "TransportKind",
]
