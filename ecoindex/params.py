"""Index parameter table: built-in defaults merged with an optional JSON file."""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Optional

from ecoindex.types import PipelineValidationError

DEFAULT_PARAMS: dict[str, dict[str, object]] = {
    "ACI": {"min_freq": 0, "max_freq": 11000, "j": 10, "fft_w": 512},
    "NDSI": {"anthro_min": 0, "anthro_max": 2000, "bio_min": 2000, "bio_max": 11000, "fft_w": 512},
    "BIO": {"min_freq": 2000, "max_freq": 11000, "fft_w": 512},
    "ADI": {"max_freq": 11000, "db_threshold": -50, "freq_step": 1000},
    "AEI": {"max_freq": 11000, "db_threshold": -50, "freq_step": 1000},
    "ENTROPY": {"wl": 512},
    "TEMP_ENT": {},
    "SPEC_ENT": {"wl": 512, "ovlp": 0},
    "MAE": {},
    "NP": {"wl": 512, "ovlp": 0},
    "SPECFLUX": {"wl": 512, "ovlp": 0},
    "SPECPROP": {"wl": 512, "ovlp": 0},
    "MFCC": {"fft_w": 512, "ovlp": 50, "ncoef": 13, "min_freq": 0, "max_freq": 11000, "nbands": 40},
    "LOUDNESS": {"field_type": "free"},
    "SHARPNESS": {"weighting": "din", "field_type": "free"},
}


class ParameterTable(Mapping):
    """Read-only mapping of index name to its parameter set.

    Shared by every task of a run. Lookups return ``MappingProxyType`` views
    so compute functions cannot mutate the table. The table itself pickles
    as a plain object, which loky needs to ship it to workers.
    """

    def __init__(self, table: Mapping[str, Mapping[str, object]]):
        self._table = {name: dict(p) for name, p in table.items()}

    def __getitem__(self, name: str) -> Mapping[str, object]:
        return MappingProxyType(self._table[name])

    def __iter__(self) -> Iterator[str]:
        return iter(self._table)

    def __len__(self) -> int:
        return len(self._table)

    def to_dict(self) -> dict[str, dict[str, object]]:
        """Deep copy, for provenance output."""
        return {name: dict(p) for name, p in self._table.items()}


def load_params(path: Optional[Path] = None, known: Optional[list[str]] = None) -> ParameterTable:
    """Build the parameter table for a run.

    Values from ``path`` (a JSON object of index name -> parameter object)
    are merged over ``DEFAULT_PARAMS`` per index. Names in the file that are
    not in ``known`` (defaults to the built-in index names) are rejected.
    """
    table = {name: dict(p) for name, p in DEFAULT_PARAMS.items()}
    if path is None:
        return ParameterTable(table)

    path = Path(path)
    try:
        overrides = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise PipelineValidationError(f"Parameter file not found: {path}")
    except json.JSONDecodeError as e:
        raise PipelineValidationError(f"Parameter file {path} is not valid JSON: {e}")

    if not isinstance(overrides, dict):
        raise PipelineValidationError(f"Parameter file {path} must contain a JSON object")

    valid = set(known) if known is not None else set(DEFAULT_PARAMS)
    unknown = sorted(set(overrides) - valid)
    if unknown:
        raise PipelineValidationError(
            f"Parameter file {path} names unknown indices: {', '.join(unknown)}"
        )

    for name, values in overrides.items():
        if not isinstance(values, dict):
            raise PipelineValidationError(f"Parameters for {name} must be a JSON object")
        table.setdefault(name, {}).update(values)
    return ParameterTable(table)
