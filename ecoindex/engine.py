"""Per-file index computation with per-index failure isolation."""

from __future__ import annotations

import math
import time
import warnings
from typing import Optional, Sequence

from ecoindex.audio import StereoWaveform
from ecoindex.logs import LogStreams
from ecoindex.registry import IndexSpec
from ecoindex.types import Outcome, Status

BASE_COLUMNS = ["filename", "duration", "status", "total_processing_time_sec"]


def record_columns(specs: Sequence[IndexSpec]) -> list[str]:
    """Canonical column order of a run's output table."""
    cols = list(BASE_COLUMNS)
    for spec in specs:
        cols.extend(spec.definition.columns())
        cols.append(f"time_{spec.name}")
    cols.append("error_message")
    return cols


def bad_audio_record(filename: str) -> dict:
    return {
        "filename": filename,
        "duration": math.nan,
        "status": Status.BAD_AUDIO.value,
        "total_processing_time_sec": math.nan,
    }


def error_record(filename: str, message: str) -> dict:
    return {
        "filename": filename,
        "duration": math.nan,
        "status": Status.ERROR.value,
        "total_processing_time_sec": math.nan,
        "error_message": message,
    }


class IndexComputationEngine:
    """Turns one loaded waveform into one flat result record.

    Args:
        specs: Resolved indices with their parameter sets, in output order.
        logs: Run log streams; index failures go to the index stream.
    """

    def __init__(self, specs: Sequence[IndexSpec], logs: LogStreams):
        self.specs = list(specs)
        self.logs = logs

    def _duration(self, filename: str, waveform: StereoWaveform) -> float:
        try:
            return waveform.duration
        except Exception as e:
            self.logs.index.error(f"Failed duration for {filename}: {e}")
            return math.nan

    def run_index(self, spec: IndexSpec, waveform: StereoWaveform, filename: str) -> tuple[Outcome[dict], float]:
        """Compute one index. Never raises; returns the outcome and wall time."""
        logger = self.logs.index
        start = time.perf_counter()
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                outcome = Outcome.success(spec.definition.compute(waveform, spec.params))
            except Exception as e:
                outcome = Outcome.failure(f"{type(e).__name__}: {e}")
        elapsed = time.perf_counter() - start

        for w in caught:
            logger.warning(f"Warning in {spec.name} for {filename}: {w.message}")
        if not outcome.ok:
            logger.error(f"Failed {spec.name} for {filename}: {outcome.error}")
        return outcome, elapsed

    def compute(
        self,
        filename: str,
        loaded: Outcome[StereoWaveform],
        started: Optional[float] = None,
    ) -> dict:
        """Build the record for one file.

        ``started`` is the ``time.perf_counter()`` value taken before the file
        was loaded, so the total includes decoding time.
        """
        if started is None:
            started = time.perf_counter()
        if not loaded.ok:
            self.logs.pipeline.warning(f"Invalid audio file, skipping: {filename} ({loaded.error})")
            return bad_audio_record(filename)

        try:
            waveform = loaded.value
            record = {"filename": filename, "duration": self._duration(filename, waveform)}
            failed = []
            for spec in self.specs:
                outcome, elapsed = self.run_index(spec, waveform, filename)
                if outcome.ok:
                    record.update(outcome.value)
                else:
                    record.update(spec.definition.empty_result())
                    failed.append(spec.name)
                record[f"time_{spec.name}"] = elapsed
            record["status"] = Status.OK.value
            record["total_processing_time_sec"] = round(time.perf_counter() - started, 2)
        except Exception as e:
            self.logs.pipeline.error(f"Error processing {filename}: {e}")
            return error_record(filename, f"{type(e).__name__}: {e}")

        if failed:
            self.logs.pipeline.info(f"Processed {filename} with failed indices: {', '.join(failed)}")
        else:
            self.logs.pipeline.info(f"Processed {filename}")
        return record
