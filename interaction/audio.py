"""Remote audio playback sinks."""

from __future__ import annotations

import queue
import threading
from typing import Any, Protocol

from core.errors import DeviceError
from core.logging import logger
from interaction.utils import CHANNELS, RATE, load_pyaudio, resolve_device_index, resolve_format


class AudioSink(Protocol):
    """Consumer of remote PCM16 mono audio."""

    def play_audio(self, audio_data: bytes) -> None:
        """Enqueue audio data for playback."""

    def flush(self) -> None:
        """Drop queued audio (interruption)."""

    def close(self) -> None:
        """Release the output device."""


class NullAudioSink:
    """Sink that counts and discards audio."""

    def __init__(self) -> None:
        self.bytes_received = 0
        self.closed = False

    def play_audio(self, audio_data: bytes) -> None:
        self.bytes_received += len(audio_data)

    def flush(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class PyAudioSink:
    """PyAudio playback with a background worker thread."""

    def __init__(self, output_device_name: str | None = None, sample_rate: int = RATE) -> None:
        pyaudio = load_pyaudio()
        self.sample_rate = sample_rate
        self.p = pyaudio.PyAudio()
        try:
            output_device_index = resolve_device_index(self.p, output_device_name, require_output=True)
            self.stream = self.p.open(
                format=resolve_format(),
                channels=CHANNELS,
                rate=sample_rate,
                output=True,
                output_device_index=output_device_index,
                start=True,
            )
        except DeviceError:
            self.p.terminate()
            raise
        except Exception as exc:
            self.p.terminate()
            raise DeviceError(f"Failed to open output audio device '{output_device_name}'") from exc

        self._q: queue.Queue[bytes | None] = queue.Queue(maxsize=256)
        self._stop = threading.Event()
        self._t = threading.Thread(target=self._worker, daemon=True)
        self._t.start()
        logger.info("[AUDIO] Output device opened: %s @ %s Hz", output_device_name or "default", sample_rate)

    def _worker(self) -> None:
        try:
            while not self._stop.is_set():
                try:
                    audio_data = self._q.get(timeout=0.1)
                except queue.Empty:
                    continue
                if audio_data is None:
                    break
                self.stream.write(audio_data)
        except Exception:
            logger.exception("Audio output worker crashed")

    def play_audio(self, audio_data: bytes) -> None:
        try:
            self._q.put_nowait(audio_data)
        except queue.Full:
            logger.warning("Audio queue full; dropping audio")

    def flush(self) -> None:
        try:
            while True:
                self._q.get_nowait()
        except queue.Empty:
            pass

    def close(self) -> None:
        self._stop.set()
        try:
            self._q.put_nowait(None)
        except queue.Full:
            pass
        self._t.join(timeout=1.0)
        stream: Any = self.stream
        try:
            stream.stop_stream()
            stream.close()
        finally:
            self.p.terminate()
