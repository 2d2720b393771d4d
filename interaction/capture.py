"""Capture device capability with exclusive acquire/release semantics."""

from __future__ import annotations

from dataclasses import dataclass, field
import errno
import queue
from typing import Any, Protocol

from core.errors import DeviceError
from core.logging import logger
from interaction.utils import CHANNELS, CHUNK, RATE, load_pyaudio, resolve_device_index, resolve_format


class CaptureDevice(Protocol):
    """Exclusive handle on the local microphone."""

    sample_rate: int

    @property
    def is_acquired(self) -> bool:
        """Return True while the device is held."""

    def acquire(self) -> None:
        """Open the device; raises ``DeviceError`` when missing, denied or busy."""

    def release(self) -> None:
        """Close the device. Safe to call when not acquired."""

    def read_chunk(self) -> bytes | None:
        """Return queued PCM16 audio or ``None`` when nothing is buffered."""


class PyAudioCaptureDevice:
    """PyAudio microphone capture with internal buffering."""

    def __init__(
        self,
        input_device_name: str | None = None,
        *,
        sample_rate: int = RATE,
        chunk_size: int = CHUNK,
    ) -> None:
        self.input_device_name = input_device_name
        self.sample_rate = sample_rate
        self.chunk_size = chunk_size
        self.queue: queue.Queue[bytes] = queue.Queue(maxsize=50)
        self._p: Any | None = None
        self._stream: Any | None = None

    @property
    def is_acquired(self) -> bool:
        return self._stream is not None

    def acquire(self) -> None:
        if self._stream is not None:
            raise DeviceError("Capture device busy: already acquired")

        pyaudio = load_pyaudio()
        self._pa_continue = pyaudio.paContinue
        self._p = pyaudio.PyAudio()
        try:
            device_index = resolve_device_index(self._p, self.input_device_name, require_input=True)
            self._stream = self._p.open(
                format=resolve_format(),
                channels=CHANNELS,
                rate=self.sample_rate,
                input=True,
                input_device_index=device_index,
                frames_per_buffer=self.chunk_size,
                stream_callback=self._callback,
            )
        except DeviceError:
            self._terminate()
            raise
        except OSError as exc:
            self._terminate()
            if exc.errno in (errno.EACCES, errno.EPERM):
                raise DeviceError(f"Microphone permission denied: {exc}") from exc
            if exc.errno == errno.EBUSY:
                raise DeviceError(f"Capture device busy: {exc}") from exc
            raise DeviceError(f"Failed to open capture device: {exc}") from exc
        except Exception as exc:
            self._terminate()
            raise DeviceError(f"Failed to open capture device: {exc}") from exc

        logger.info(
            "[CAPTURE] Input device acquired: %s @ %s Hz",
            self.input_device_name or "default",
            self.sample_rate,
        )

    def _callback(
        self,
        in_data: bytes,
        frame_count: int,
        time_info: dict[str, Any],
        status: int,
    ) -> tuple[None, int]:
        try:
            self.queue.put_nowait(in_data)
        except queue.Full:
            pass
        return (None, self._pa_continue)

    def read_chunk(self) -> bytes | None:
        chunks: list[bytes] = []
        while True:
            try:
                chunks.append(self.queue.get_nowait())
            except queue.Empty:
                break
        return b"".join(chunks) if chunks else None

    def release(self) -> None:
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        try:
            stream.stop_stream()
            stream.close()
        finally:
            self._terminate()
            self._drain()
        logger.info("[CAPTURE] Input device released")

    def _terminate(self) -> None:
        if self._p is not None:
            self._p.terminate()
            self._p = None

    def _drain(self) -> None:
        while True:
            try:
                self.queue.get_nowait()
            except queue.Empty:
                break


@dataclass
class FakeCaptureDevice:
    """In-memory capture device for tests and headless runs."""

    chunks: list[bytes] = field(default_factory=list)
    available: bool = True
    permission_granted: bool = True
    sample_rate: int = RATE
    acquire_count: int = 0
    release_count: int = 0
    _held: bool = False

    @property
    def is_acquired(self) -> bool:
        return self._held

    def acquire(self) -> None:
        if not self.available:
            raise DeviceError("No capture device available")
        if not self.permission_granted:
            raise DeviceError("Microphone permission denied")
        if self._held:
            raise DeviceError("Capture device busy: already acquired")
        self._held = True
        self.acquire_count += 1

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        self.release_count += 1

    def read_chunk(self) -> bytes | None:
        if not self._held or not self.chunks:
            return None
        return self.chunks.pop(0)
