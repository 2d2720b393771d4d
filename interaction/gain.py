"""Pass-through gain stage between raw capture and the outbound track."""

from __future__ import annotations

import numpy as np

INT16_MAX = 32767
INT16_MIN = -32768


class GainStage:
    """Route PCM16 audio through a gain node and meter its level.

    Capture audio is never fed straight to the outbound track: the remote voice
    activity detector can drop the first frames of a raw stream, clipping the
    start of an utterance. At unity gain the stage returns the input bytes
    unchanged.
    """

    def __init__(self, gain: float = 1.0) -> None:
        if gain < 0:
            raise ValueError("gain must be non-negative")
        self.gain = float(gain)
        self.level = 0.0
        self.frames_processed = 0

    def process(self, pcm: bytes) -> bytes:
        if not pcm:
            return pcm
        samples = np.frombuffer(pcm, dtype=np.int16)
        self.level = self.rms(samples)
        self.frames_processed += len(samples)
        if self.gain == 1.0:
            return pcm
        scaled = np.clip(samples.astype(np.float32) * self.gain, INT16_MIN, INT16_MAX)
        return scaled.astype(np.int16).tobytes()

    @staticmethod
    def rms(samples: np.ndarray) -> float:
        """Return RMS of int16 samples normalized to 0..1."""

        if samples.size == 0:
            return 0.0
        as_float = samples.astype(np.float64) / 32768.0
        return float(np.sqrt(np.mean(as_float**2)))

    def reset(self) -> None:
        self.level = 0.0
        self.frames_processed = 0
