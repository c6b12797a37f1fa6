"""Psychoacoustic building blocks via MOSQITO.

MOSQITO expects calibrated Pa for absolute SPL. Field recordings are
uncalibrated, so these values are relative features, comparable only
between recordings made with the same gain chain.
"""

from __future__ import annotations

from typing import Mapping

import numpy as np

# Imported at module level so loky workers pay the import once
from mosqito.sq_metrics import loudness_zwst, sharpness_din_st


def to_float(v) -> float:
    """Convert MOSQITO outputs to a scalar.

    Many MOSQITO functions return either:
    - a float/np scalar
    - an ndarray
    - a tuple where the first item is the metric and the rest are details
    """
    if isinstance(v, tuple):
        v = v[0]
    if isinstance(v, np.ndarray):
        return float(np.max(v)) if v.size else 0.0
    return float(v)


def loudness(x: np.ndarray, sr: int, params: Mapping[str, object]) -> dict[str, float]:
    """Zwicker stationary loudness (sone)."""
    return {"": to_float(loudness_zwst(x, sr, field_type=str(params["field_type"])))}


def sharpness(x: np.ndarray, sr: int, params: Mapping[str, object]) -> dict[str, float]:
    """DIN 45692 sharpness (acum)."""
    s = sharpness_din_st(
        x,
        sr,
        weighting=str(params["weighting"]),
        field_type=str(params["field_type"]),
    )
    return {"": to_float(s)}
