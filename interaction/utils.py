"""Audio utility constants."""

from __future__ import annotations

import importlib
import importlib.util

from core.errors import DeviceError


CHANNELS = 1
RATE = 24000
CHUNK = 960
SAMPLE_WIDTH = 2


def load_pyaudio():
    """Import PyAudio or raise ``DeviceError`` when it is not installed."""

    if importlib.util.find_spec("pyaudio") is None:
        raise DeviceError("PyAudio is required for audio IO")
    return importlib.import_module("pyaudio")


def resolve_device_index(
    audio: object,
    device_name: str | None,
    *,
    require_input: bool = False,
    require_output: bool = False,
) -> int | None:
    """Resolve an audio device index by exact device name.

    Returns ``None`` when no name is given so the host default is used. Raises
    ``DeviceError`` when no suitable device exists at all.
    """

    get_count = getattr(audio, "get_device_count")
    get_info = getattr(audio, "get_device_info_by_index")
    candidates = 0
    for i in range(get_count()):
        info = get_info(i)
        if require_input and info.get("maxInputChannels", 0) <= 0:
            continue
        if require_output and info.get("maxOutputChannels", 0) <= 0:
            continue
        candidates += 1
        if device_name and info.get("name") == device_name:
            return int(info.get("index", i))

    if candidates == 0:
        kind = "capture" if require_input else "playback"
        raise DeviceError(f"No {kind} device available")
    if device_name:
        raise DeviceError(f"Audio device named '{device_name}' not found")
    return None


def resolve_format() -> int:
    """Resolve the PyAudio format constant."""

    return load_pyaudio().paInt16
