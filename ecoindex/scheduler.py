"""Batch partitioning and concurrent per-file dispatch."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Optional, Sequence, TypeVar

import numpy as np
from joblib import Parallel, cpu_count, delayed

from ecoindex.audio import load_wav
from ecoindex.engine import IndexComputationEngine, error_record
from ecoindex.logs import LogStreams
from ecoindex.params import ParameterTable
from ecoindex.registry import IndexRegistry
from ecoindex.types import SchedulerError

T = TypeVar("T")


def default_n_jobs() -> int:
    return max(1, cpu_count() - 1)


def default_batch_size(n_jobs: int) -> int:
    """Two tasks per worker, so a slow file does not idle the rest of the pool."""
    return 2 * max(1, n_jobs)


def make_batches(files: Sequence[T], batch_size: int) -> list[list[T]]:
    """Split into consecutive batches; the last one may be smaller."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [list(files[i:i + batch_size]) for i in range(0, len(files), batch_size)]


def task_seed(seed: int, position: int) -> int:
    """Seed for the file at ``position`` in the run's file list.

    Depends only on the run seed and the file's position, so results are
    reproducible regardless of batch size or worker assignment.
    """
    return int(np.random.SeedSequence([seed, position]).generate_state(1)[0])


def process_file(
    path: Path,
    position: int,
    registry: IndexRegistry,
    names: list[str],
    params: ParameterTable,
    logs: LogStreams,
    seed: Optional[int] = None,
    max_duration_sec: Optional[float] = None,
) -> dict:
    """Load one file and compute its record.

    Worker entry point; must be top-level for pickling. Never raises: any
    error outside the engine's per-index boundary becomes an ``error`` record.
    """
    started = time.perf_counter()
    filename = Path(path).name
    try:
        if seed is not None:
            np.random.seed(task_seed(seed, position))
        engine = IndexComputationEngine(registry.specs(names, params), logs)
        loaded = load_wav(Path(path), logs.audio, max_duration_sec=max_duration_sec)
        return engine.compute(filename, loaded, started=started)
    except Exception as e:
        logs.pipeline.error(f"Error processing {filename}: {e}")
        return error_record(filename, f"{type(e).__name__}: {e}")


class BatchScheduler:
    """Runs batches of files on one worker pool kept alive for the whole run.

    Use as a context manager: the loky pool is started on enter and shut
    down on exit, and every ``run_batch`` call in between reuses it.
    """

    def __init__(
        self,
        registry: IndexRegistry,
        names: list[str],
        params: ParameterTable,
        logs: LogStreams,
        n_jobs: Optional[int] = None,
        batch_size: Optional[int] = None,
        seed: Optional[int] = None,
        max_duration_sec: Optional[float] = None,
    ):
        self.registry = registry
        self.names = list(names)
        self.params = params
        self.logs = logs
        self.n_jobs = n_jobs if n_jobs is not None else default_n_jobs()
        if self.n_jobs < 1:
            raise ValueError(f"n_jobs must be >= 1, got {self.n_jobs}")
        self.batch_size = batch_size if batch_size is not None else default_batch_size(self.n_jobs)
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        self.seed = seed
        self.max_duration_sec = max_duration_sec
        self._parallel: Optional[Parallel] = None

    def __enter__(self) -> "BatchScheduler":
        self._parallel = Parallel(n_jobs=self.n_jobs, backend="loky", prefer="processes", verbose=0)
        self._parallel.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._parallel is not None:
            self._parallel.__exit__(exc_type, exc, tb)
            self._parallel = None

    def batches(self, files: Sequence[T]) -> list[list[T]]:
        return make_batches(files, self.batch_size)

    def _task(self, path: Path, position: int) -> tuple:
        return (
            path,
            position,
            self.registry,
            self.names,
            self.params,
            self.logs,
            self.seed,
            self.max_duration_sec,
        )

    def run_batch(
        self,
        batch: Sequence[Path],
        start_position: int = 0,
        positions: Optional[Sequence[int]] = None,
    ) -> list[dict]:
        """Process one batch concurrently; one record per file, in any order.

        Each file's position in the run's full file list seeds its task.
        Positions are ``start_position, start_position + 1, ...`` unless
        ``positions`` gives them one per file (a resumed run's batches are
        not contiguous).
        """
        if self._parallel is None:
            raise RuntimeError("BatchScheduler.run_batch called outside its context manager")
        if positions is None:
            positions = range(start_position, start_position + len(batch))
        elif len(positions) != len(batch):
            raise ValueError(f"{len(positions)} positions for a batch of {len(batch)} files")

        tasks = [self._task(p, pos) for p, pos in zip(batch, positions)]
        try:
            records = list(self._parallel(delayed(process_file)(*t) for t in tasks))
        except Exception as batch_error:
            # Pool-level failure (e.g. a killed worker); the tasks themselves never raise
            self.logs.pipeline.error(
                f"Parallel batch failed: {batch_error!r}, falling back to serial for this batch"
            )
            records = [process_file(*t) for t in tasks]

        if len(records) != len(batch):
            raise SchedulerError(f"Batch of {len(batch)} files returned {len(records)} records")
        return records
