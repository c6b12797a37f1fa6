"""Ecoacoustic index computations on a single channel.

Every function here takes a mono float64 signal, its sample rate and the
index's parameter mapping, and returns a dict of scalar fields. The primary
field of an index is keyed by the empty string.

Functions raise on numerically undefined input (e.g. a silent channel where
an index divides by total energy). The engine turns those errors into NaN
fields for that index only.
"""

from __future__ import annotations

from typing import Mapping

import librosa
import numpy as np
from scipy import signal

Params = Mapping[str, object]

EPS = 1e-12


def _spectrogram(x: np.ndarray, sr: int, wl: int, ovlp: float = 0.0) -> tuple[np.ndarray, np.ndarray]:
    """Magnitude spectrogram (freq x time) with a Hann window."""
    nperseg = int(min(int(wl), len(x)))
    if nperseg < 2:
        raise ValueError(f"signal too short for a spectrogram ({len(x)} samples)")
    noverlap = int(nperseg * float(ovlp) / 100.0)
    f, _, S = signal.spectrogram(
        x,
        fs=sr,
        window="hann",
        nperseg=nperseg,
        noverlap=noverlap,
        detrend=False,
        mode="magnitude",
    )
    return f, S


def _mean_spectrum(x: np.ndarray, sr: int, wl: int, ovlp: float = 0.0) -> tuple[np.ndarray, np.ndarray]:
    f, S = _spectrogram(x, sr, wl, ovlp)
    return f, S.mean(axis=1)


def _normalized_entropy(values: np.ndarray) -> float:
    """Shannon entropy of a non-negative distribution, scaled to [0, 1]."""
    values = np.asarray(values, dtype=np.float64)
    total = float(values.sum())
    if values.size < 2:
        raise ValueError("entropy needs at least two values")
    if total <= 0:
        raise ZeroDivisionError("zero total energy")
    p = values / total
    p = p[p > 0]
    return float(-np.sum(p * np.log(p)) / np.log(values.size))


def _to_db(S: np.ndarray) -> np.ndarray:
    """Decibels relative to the maximum of ``S``."""
    peak = float(np.max(S))
    if peak <= 0:
        raise ZeroDivisionError("zero peak amplitude")
    return 20.0 * np.log10(np.maximum(S / peak, EPS))


# --- soundecology-style indices ---


def acoustic_complexity(x: np.ndarray, sr: int, params: Params) -> dict[str, float]:
    """Acoustic Complexity Index.

    Sums, over frequency bins within ``[min_freq, max_freq]`` and over
    clusters of ``j`` seconds, the absolute intensity differences between
    adjacent frames divided by the cluster's total intensity.

    Returns:
        ``""``: total ACI, ``"bymin"``: total ACI per minute of audio.
    """
    fft_w = int(params["fft_w"])
    f, S = _spectrogram(x, sr, fft_w)
    band = (f >= float(params["min_freq"])) & (f <= float(params["max_freq"]))
    S = S[band]
    if S.size == 0:
        raise ValueError("no frequency bins inside [min_freq, max_freq]")
    if float(S.sum()) <= 0:
        raise ZeroDivisionError("silent channel")

    frames_per_cluster = max(1, int(float(params["j"]) * sr / fft_w))
    n_clusters = S.shape[1] // frames_per_cluster
    if n_clusters == 0:
        clusters = [S]
    else:
        clusters = [S[:, k * frames_per_cluster:(k + 1) * frames_per_cluster] for k in range(n_clusters)]

    total = 0.0
    for c in clusters:
        diffs = np.abs(np.diff(c, axis=1)).sum(axis=1)
        energy = c.sum(axis=1)
        nz = energy > 0
        total += float(np.sum(diffs[nz] / energy[nz]))

    minutes = len(x) / sr / 60.0
    return {"": total, "bymin": total / minutes}


def ndsi(x: np.ndarray, sr: int, params: Params) -> dict[str, float]:
    """Normalized Difference Soundscape Index, (bio - anthro) / (bio + anthro)."""
    nperseg = int(min(int(params["fft_w"]), len(x)))
    f, psd = signal.welch(x, fs=sr, nperseg=nperseg)
    anthro = float(psd[(f >= float(params["anthro_min"])) & (f < float(params["anthro_max"]))].sum())
    bio = float(psd[(f >= float(params["bio_min"])) & (f < float(params["bio_max"]))].sum())
    if anthro + bio <= 0:
        raise ZeroDivisionError("no energy in the anthrophony or biophony bands")
    return {"": (bio - anthro) / (bio + anthro)}


def bioacoustic_index(x: np.ndarray, sr: int, params: Params) -> dict[str, float]:
    """Area under the mean dB spectrum above its minimum, within the band."""
    f, spec = _mean_spectrum(x, sr, int(params["fft_w"]))
    db = _to_db(spec)
    band = (f >= float(params["min_freq"])) & (f <= float(params["max_freq"]))
    if band.sum() < 2:
        raise ValueError("fewer than two frequency bins inside [min_freq, max_freq]")
    db_band = db[band]
    df_khz = float(f[1] - f[0]) / 1000.0
    return {"": float(np.sum(db_band - db_band.min()) * df_khz)}


def _band_occupancy(x: np.ndarray, sr: int, params: Params) -> np.ndarray:
    """Fraction of spectrogram cells above ``db_threshold`` per frequency band."""
    f, S = _spectrogram(x, sr, int(params.get("fft_w", 512)))
    db = _to_db(S)
    step = float(params["freq_step"])
    threshold = float(params["db_threshold"])
    occupancy = []
    for lo in np.arange(0.0, float(params["max_freq"]), step):
        rows = (f >= lo) & (f < lo + step)
        if not rows.any():
            occupancy.append(0.0)
            continue
        occupancy.append(float(np.mean(db[rows] > threshold)))
    return np.asarray(occupancy)


def acoustic_diversity(x: np.ndarray, sr: int, params: Params) -> dict[str, float]:
    """Shannon diversity of band occupancy."""
    occ = _band_occupancy(x, sr, params)
    total = occ.sum()
    if total <= 0:
        return {"": 0.0}
    p = occ[occ > 0] / total
    return {"": float(-np.sum(p * np.log(p)))}


def acoustic_evenness(x: np.ndarray, sr: int, params: Params) -> dict[str, float]:
    """Gini coefficient of band occupancy."""
    occ = np.sort(_band_occupancy(x, sr, params))
    n = occ.size
    total = occ.sum()
    if n == 0 or total <= 0:
        return {"": 0.0}
    ranks = np.arange(1, n + 1)
    return {"": float(np.sum((2 * ranks - n - 1) * occ) / (n * total))}


# --- seewave-style indices ---


def temporal_entropy(x: np.ndarray, sr: int, params: Params) -> dict[str, float]:
    return {"": _normalized_entropy(np.abs(x))}


def spectral_entropy(x: np.ndarray, sr: int, params: Params) -> dict[str, float]:
    _, spec = _mean_spectrum(x, sr, int(params["wl"]), float(params.get("ovlp", 0)))
    return {"": _normalized_entropy(spec)}


def total_entropy(x: np.ndarray, sr: int, params: Params) -> dict[str, float]:
    """Product of temporal (Hilbert envelope) and spectral entropy."""
    envelope = np.abs(signal.hilbert(x))
    ht = _normalized_entropy(envelope)
    _, spec = _mean_spectrum(x, sr, int(params["wl"]))
    hf = _normalized_entropy(spec)
    return {"": ht * hf}


def median_amplitude_envelope(x: np.ndarray, sr: int, params: Params) -> dict[str, float]:
    return {"": float(np.median(np.abs(signal.hilbert(x))))}


def number_of_peaks(x: np.ndarray, sr: int, params: Params) -> dict[str, float]:
    """Count of local maxima in the normalized mean spectrum."""
    _, spec = _mean_spectrum(x, sr, int(params["wl"]), float(params.get("ovlp", 0)))
    peak = float(spec.max())
    if peak <= 0:
        raise ZeroDivisionError("zero peak amplitude")
    peaks, _ = signal.find_peaks(spec / peak)
    return {"": int(len(peaks))}


def spectral_flux(x: np.ndarray, sr: int, params: Params) -> dict[str, float]:
    """Summed Euclidean distance between consecutive normalized spectra."""
    _, S = _spectrogram(x, sr, int(params["wl"]), float(params.get("ovlp", 0)))
    sums = S.sum(axis=0)
    if not np.any(sums > 0):
        raise ZeroDivisionError("silent channel")
    frames = S[:, sums > 0] / sums[sums > 0]
    if frames.shape[1] < 2:
        return {"": 0.0}
    flux = np.sqrt(np.sum(np.diff(frames, axis=1) ** 2, axis=0))
    return {"": float(np.nansum(flux))}


def spectral_properties(x: np.ndarray, sr: int, params: Params) -> dict[str, float]:
    """Centroid (Hz), skewness, kurtosis and flatness of the mean spectrum."""
    f, spec = _mean_spectrum(x, sr, int(params["wl"]), float(params.get("ovlp", 0)))
    total = float(spec.sum())
    if total <= 0:
        raise ZeroDivisionError("zero total energy")
    amp = spec / total
    centroid = float(np.sum(f * amp))
    sd = float(np.sqrt(np.sum((f - centroid) ** 2 * amp)))
    if sd <= 0:
        raise ZeroDivisionError("zero spectral spread")
    skewness = float(np.sum((f - centroid) ** 3 * amp) / sd**3)
    kurtosis = float(np.sum((f - centroid) ** 4 * amp) / sd**4)
    sfm = float(np.exp(np.mean(np.log(np.maximum(spec, EPS)))) / np.mean(spec))
    return {"centroid": centroid, "skewness": skewness, "kurtosis": kurtosis, "sfm": sfm}


# --- cepstral ---


def mfcc_mean(x: np.ndarray, sr: int, params: Params) -> dict[str, float]:
    """Mean over frames and coefficients of the MFCC matrix (Slaney mel scale)."""
    wl = int(params["fft_w"])
    if len(x) < wl:
        raise ValueError(f"signal shorter than fft_w ({len(x)} < {wl})")
    hop = max(1, int(wl * (1.0 - float(params["ovlp"]) / 100.0)))
    mfcc = librosa.feature.mfcc(
        y=np.asarray(x, dtype=np.float64),
        sr=sr,
        n_mfcc=int(params["ncoef"]),
        n_fft=wl,
        hop_length=hop,
        n_mels=int(params["nbands"]),
        fmin=float(params["min_freq"]),
        fmax=min(float(params["max_freq"]), sr / 2.0),
    )
    return {"": float(np.mean(mfcc))}
