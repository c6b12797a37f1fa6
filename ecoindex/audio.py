"""WAV decoding into stereo float waveforms."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
from scipy.io import wavfile

from ecoindex.types import Outcome


@dataclass(frozen=True)
class StereoWaveform:
    """Two independent channels sharing one sample rate."""

    left: np.ndarray
    right: np.ndarray
    sample_rate: int

    @property
    def duration(self) -> float:
        """Length in seconds."""
        if self.sample_rate <= 0:
            raise ValueError(f"Invalid sample rate: {self.sample_rate}")
        return float(len(self.left) / self.sample_rate)

    def channels(self) -> tuple[tuple[str, np.ndarray], ...]:
        return (("left", self.left), ("right", self.right))

    def mixdown(self) -> np.ndarray:
        return 0.5 * (self.left + self.right)


def _to_float(x: np.ndarray) -> np.ndarray:
    # 8-bit PCM is unsigned, centred on 128
    if x.dtype == np.uint8:
        return (x.astype(np.float64) - 128.0) / 128.0
    if np.issubdtype(x.dtype, np.integer):
        return x.astype(np.float64) / float(np.iinfo(x.dtype).max)
    return x.astype(np.float64)


def load_wav(
    path: Path,
    logger: logging.Logger,
    max_duration_sec: Optional[float] = None,
) -> Outcome[StereoWaveform]:
    """Decode a WAV file into a ``StereoWaveform``.

    Never raises: unreadable, missing or malformed files come back as a
    failed ``Outcome`` and are logged on the audio stream. Mono files are
    accepted with the single channel used for both sides. Files with more
    than two channels keep the first two.
    """
    path = Path(path)
    logger.info(f"Reading file: {path}")
    try:
        sr, x = wavfile.read(path)
    except Exception as e:
        logger.error(f"Failed to read {path}: {e}")
        return Outcome.failure(f"{type(e).__name__}: {e}")

    x = _to_float(x)
    if x.ndim == 1:
        logger.warning(f"Mono file {path.name}: using the single channel as left and right")
        left = right = x
    elif x.ndim == 2 and x.shape[1] >= 2:
        left, right = x[:, 0], x[:, 1]
    elif x.ndim == 2 and x.shape[1] == 1:
        logger.warning(f"Mono file {path.name}: using the single channel as left and right")
        left = right = x[:, 0]
    else:
        logger.error(f"Unsupported channel layout in {path}: shape {x.shape}")
        return Outcome.failure(f"unsupported channel layout {x.shape}")

    if left.size == 0:
        logger.error(f"No samples in {path}")
        return Outcome.failure("empty audio")

    # Optionally truncate audio
    if max_duration_sec is not None and max_duration_sec > 0:
        max_samples = int(max_duration_sec * sr)
        if len(left) > max_samples:
            left = left[:max_samples]
            right = right[:max_samples]

    return Outcome.success(
        StereoWaveform(
            left=np.ascontiguousarray(left),
            right=np.ascontiguousarray(right),
            sample_rate=int(sr),
        )
    )
