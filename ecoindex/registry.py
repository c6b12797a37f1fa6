"""Named registry of index computations.

Each index is registered once under an ``IndexName`` with a channel
function ``(samples, sample_rate, params) -> {field: scalar}``. The
registry owns the channel split and output column naming, so compute
functions never see stereo data.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Mapping, Optional, Union

import numpy as np

from ecoindex import acoustic, psychoacoustic
from ecoindex.audio import StereoWaveform
from ecoindex.types import PipelineValidationError, UnknownIndexError

ChannelFn = Callable[[np.ndarray, int, Mapping[str, object]], Mapping[str, float]]


class IndexName(str, Enum):
    ACI = "ACI"
    NDSI = "NDSI"
    BIO = "BIO"
    ADI = "ADI"
    AEI = "AEI"
    ENTROPY = "ENTROPY"
    TEMP_ENT = "TEMP_ENT"
    SPEC_ENT = "SPEC_ENT"
    MAE = "MAE"
    NP = "NP"
    SPECFLUX = "SPECFLUX"
    SPECPROP = "SPECPROP"
    MFCC = "MFCC"
    LOUDNESS = "LOUDNESS"
    SHARPNESS = "SHARPNESS"


def _key(name: Union[str, IndexName]) -> str:
    return name.value if isinstance(name, IndexName) else str(name)


@dataclass(frozen=True)
class IndexDefinition:
    """One registered index."""
    name: str
    compute_fn: ChannelFn
    required_params: tuple[str, ...] = ()
    fields: tuple[str, ...] = ("",)   # "" is the primary field
    per_channel: bool = True

    def _column(self, field: str, side: Optional[str]) -> str:
        parts = [self.name]
        if field:
            parts.append(field)
        if side:
            parts.append(side)
        return "_".join(parts)

    def columns(self) -> list[str]:
        """Output column names, in a stable order."""
        sides = ("left", "right") if self.per_channel else (None,)
        return [self._column(f, s) for f in self.fields for s in sides]

    def empty_result(self) -> dict[str, float]:
        return {c: math.nan for c in self.columns()}

    def compute(self, waveform: StereoWaveform, params: Mapping[str, object]) -> dict[str, float]:
        """Run on each channel (or once on the mixdown) and name the fields.

        Fields the compute function does not return come back as NaN; extra
        fields are ignored.
        """
        if self.per_channel:
            runs = [(side, self.compute_fn(x, waveform.sample_rate, params)) for side, x in waveform.channels()]
        else:
            runs = [(None, self.compute_fn(waveform.mixdown(), waveform.sample_rate, params))]

        out: dict[str, float] = {}
        for side, values in runs:
            for f in self.fields:
                out[self._column(f, side)] = values.get(f, math.nan)
        return out


@dataclass(frozen=True)
class IndexSpec:
    """A resolved index paired with its read-only parameter set."""
    definition: IndexDefinition
    params: Mapping[str, object]

    @property
    def name(self) -> str:
        return self.definition.name


class IndexRegistry:
    """Ordered mapping of index name to ``IndexDefinition``."""

    def __init__(self):
        self._definitions: dict[str, IndexDefinition] = {}

    def register(
        self,
        name: Union[str, IndexName],
        compute_fn: ChannelFn,
        required_params: Iterable[str] = (),
        fields: Iterable[str] = ("",),
        per_channel: bool = True,
    ) -> IndexDefinition:
        key = _key(name)
        if key in self._definitions:
            raise ValueError(f"Index already registered: {key}")
        definition = IndexDefinition(
            name=key,
            compute_fn=compute_fn,
            required_params=tuple(required_params),
            fields=tuple(fields),
            per_channel=per_channel,
        )
        self._definitions[key] = definition
        return definition

    def __contains__(self, name) -> bool:
        return _key(name) in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def names(self) -> list[str]:
        return list(self._definitions)

    def get(self, name: Union[str, IndexName]) -> IndexDefinition:
        return self._definitions[_key(name)]

    def missing(self) -> list[IndexName]:
        """Members of ``IndexName`` with no registered computation."""
        return [n for n in IndexName if n.value not in self._definitions]

    def unknown(self, names: Iterable[Union[str, IndexName]]) -> list[str]:
        return [_key(n) for n in names if _key(n) not in self._definitions]

    def resolve(self, names: Optional[Iterable[Union[str, IndexName]]] = None) -> list[IndexDefinition]:
        """Registered definitions matching ``names`` (all when None), in
        registration order. Unknown names are dropped."""
        if names is None:
            return list(self._definitions.values())
        wanted = {_key(n) for n in names}
        return [d for k, d in self._definitions.items() if k in wanted]

    def validate(self, names: Optional[Iterable[Union[str, IndexName]]] = None) -> list[str]:
        """Resolve ``names`` strictly, raising ``UnknownIndexError`` if any
        name is not registered. Returns the resolved names."""
        if names is not None:
            names = list(names)
            unknown = self.unknown(names)
            if unknown:
                raise UnknownIndexError(unknown, self.names())
        return [d.name for d in self.resolve(names)]

    def check_params(self, names: Iterable[str], params: Mapping[str, Mapping[str, object]]) -> None:
        """Raise if a requested index lacks any of its required parameters."""
        problems = []
        for d in self.resolve(names):
            have = params[d.name] if d.name in params else {}
            absent = [p for p in d.required_params if p not in have]
            if absent:
                problems.append(f"{d.name} (missing {', '.join(absent)})")
        if problems:
            raise PipelineValidationError(f"Incomplete index parameters: {'; '.join(problems)}")

    def specs(self, names: Optional[Iterable[str]], params: Mapping[str, Mapping[str, object]]) -> list[IndexSpec]:
        return [IndexSpec(d, params[d.name] if d.name in params else {}) for d in self.resolve(names)]


def default_registry() -> IndexRegistry:
    """Registry with every ``IndexName`` bound to its computation."""
    reg = IndexRegistry()
    reg.register(IndexName.ACI, acoustic.acoustic_complexity,
                 ("min_freq", "max_freq", "fft_w", "j"), fields=("", "bymin"))
    reg.register(IndexName.NDSI, acoustic.ndsi,
                 ("anthro_min", "anthro_max", "bio_min", "bio_max", "fft_w"))
    reg.register(IndexName.BIO, acoustic.bioacoustic_index, ("min_freq", "max_freq", "fft_w"))
    reg.register(IndexName.ADI, acoustic.acoustic_diversity, ("max_freq", "db_threshold", "freq_step"))
    reg.register(IndexName.AEI, acoustic.acoustic_evenness, ("max_freq", "db_threshold", "freq_step"))
    reg.register(IndexName.ENTROPY, acoustic.total_entropy, ("wl",))
    reg.register(IndexName.TEMP_ENT, acoustic.temporal_entropy)
    reg.register(IndexName.SPEC_ENT, acoustic.spectral_entropy, ("wl",))
    reg.register(IndexName.MAE, acoustic.median_amplitude_envelope)
    reg.register(IndexName.NP, acoustic.number_of_peaks, ("wl",))
    reg.register(IndexName.SPECFLUX, acoustic.spectral_flux, ("wl",))
    reg.register(IndexName.SPECPROP, acoustic.spectral_properties, ("wl",),
                 fields=("centroid", "skewness", "kurtosis", "sfm"))
    reg.register(IndexName.MFCC, acoustic.mfcc_mean,
                 ("fft_w", "ovlp", "ncoef", "min_freq", "max_freq", "nbands"))
    reg.register(IndexName.LOUDNESS, psychoacoustic.loudness, ("field_type",))
    reg.register(IndexName.SHARPNESS, psychoacoustic.sharpness, ("weighting", "field_type"))
    return reg
