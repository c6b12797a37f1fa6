"""Shared fixtures: synthetic WAV recordings and per-test log streams."""

from pathlib import Path

import numpy as np
import pytest
from scipy.io import wavfile

from ecoindex.logs import LogStreams

SR = 22050


def make_stereo(seconds: float = 1.0, freq: float = 3000.0, seed: int = 0, sr: int = SR) -> np.ndarray:
    """Tone plus noise, different level on each channel, float in [-1, 1]."""
    rng = np.random.default_rng(seed)
    t = np.arange(int(seconds * sr)) / sr
    tone = np.sin(2 * np.pi * freq * t)
    left = 0.5 * tone + 0.05 * rng.standard_normal(t.size)
    right = 0.3 * tone + 0.05 * rng.standard_normal(t.size)
    return np.clip(np.stack([left, right], axis=1), -1.0, 1.0)


def write_wav(path: Path, data: np.ndarray, sr: int = SR) -> Path:
    """Write float data in [-1, 1] as 16-bit PCM."""
    path.parent.mkdir(parents=True, exist_ok=True)
    wavfile.write(path, sr, (data * 32767).astype(np.int16))
    return path


@pytest.fixture
def wav_dir(tmp_path):
    """Directory with five valid stereo recordings, rec_01.wav .. rec_05.wav."""
    d = tmp_path / "site_A"
    for i in range(1, 6):
        write_wav(d / f"rec_{i:02d}.wav", make_stereo(seed=i, freq=2500.0 + 250 * i))
    return d


@pytest.fixture
def logs(tmp_path):
    streams = LogStreams(tmp_path / "log")
    yield streams
    streams.close()
