"""End-to-end run: validate inputs, process batches with checkpoints, merge.

State machine::

    INIT -> VALIDATING -> BATCHING -> MERGING -> DONE
                 \\            \\          \\
                  +------------+----------+--> FAILED

A batch is checkpointed before the next one starts, so a crash loses at
most the batch in flight. ``--merge-only`` re-runs the merge over whatever
checkpoints survived.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from importlib import metadata
from pathlib import Path
from typing import Optional

import pandas as pd
from tqdm import tqdm

from ecoindex.checkpoint import BATCH_COLUMN, CheckpointStore
from ecoindex.engine import record_columns
from ecoindex.logs import LogStreams
from ecoindex.params import ParameterTable, load_params
from ecoindex.registry import IndexRegistry, default_registry
from ecoindex.scheduler import BatchScheduler
from ecoindex.types import CheckpointError, PipelineValidationError

OUTPUT_FORMATS = ("parquet", "csv")


class PipelineState(str, Enum):
    INIT = "INIT"
    VALIDATING = "VALIDATING"
    BATCHING = "BATCHING"
    MERGING = "MERGING"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class PipelineConfig:
    """Configuration for the pipeline run."""
    directory: Path
    indices: Optional[list[str]] = None             # None = every registered index
    file_range: Optional[tuple[int, int]] = None    # 1-based, inclusive
    params_path: Optional[Path] = None
    output_dir: Path = Path("data/results")
    log_dir: Path = Path("data/log")
    n_jobs: Optional[int] = None
    batch_size: Optional[int] = None
    seed: Optional[int] = 42
    max_duration_sec: Optional[float] = None
    output_format: str = "parquet"
    resume: bool = False
    merge_only: bool = False
    show_progress: bool = True
    console: bool = False


def list_wav_files(directory: Path) -> list[Path]:
    """Sorted ``*.wav`` files directly inside ``directory``."""
    return sorted(p for p in Path(directory).iterdir() if p.is_file() and p.suffix.lower() == ".wav")


def apply_range(files: list[Path], file_range: Optional[tuple[int, int]]) -> list[Path]:
    if file_range is None:
        return files
    start, end = file_range
    if start < 1 or end > len(files) or start > end:
        raise PipelineValidationError(
            f"Invalid range {start},{end} for {len(files)} files: "
            "START must be >= 1, END must be <= total files, and START <= END."
        )
    return files[start - 1:end]


def _library_versions() -> dict[str, str]:
    versions = {}
    for dist in ("numpy", "scipy", "pandas", "pyarrow", "joblib", "mosqito"):
        try:
            versions[dist] = metadata.version(dist)
        except metadata.PackageNotFoundError:
            versions[dist] = "unknown"
    return versions


class PipelineCoordinator:
    """Drives one run from input directory to final artifact."""

    def __init__(
        self,
        config: PipelineConfig,
        registry: Optional[IndexRegistry] = None,
        logs: Optional[LogStreams] = None,
    ):
        if config.output_format not in OUTPUT_FORMATS:
            raise ValueError(f"output_format must be one of {OUTPUT_FORMATS}, got {config.output_format!r}")
        self.config = config
        self.registry = registry if registry is not None else default_registry()
        self.logs = logs if logs is not None else LogStreams(Path(config.log_dir), console=config.console)
        self.store = CheckpointStore(Path(config.output_dir))
        self.state = PipelineState.INIT
        self.files: list[Path] = []
        self.indices: list[str] = []
        self.params: Optional[ParameterTable] = None
        self.batch_size: Optional[int] = None
        self.final_path: Optional[Path] = None

    def _transition(self, state: PipelineState, detail: str = "") -> None:
        msg = f"{self.state.value} -> {state.value}"
        if detail:
            msg += f" ({detail})"
        if state is PipelineState.FAILED:
            self.logs.pipeline.error(msg)
        else:
            self.logs.pipeline.info(msg)
        self.state = state

    # --- VALIDATING ---

    def validate(self) -> None:
        """Resolve files, indices and parameters; raise before any audio is read."""
        self._transition(PipelineState.VALIDATING)
        cfg = self.config

        directory = Path(cfg.directory)
        if not directory.is_dir():
            raise PipelineValidationError(f"Directory does not exist: {directory}")
        files = list_wav_files(directory)
        if not files:
            raise PipelineValidationError(f"No .wav files found in {directory}")
        self.files = apply_range(files, cfg.file_range)

        self.indices = self.registry.validate(cfg.indices)
        self.params = load_params(cfg.params_path, known=self.registry.names())
        self.registry.check_params(self.indices, self.params)

        # temp files of writes killed mid-flight; never valid partitions
        partial = self.store.purge_partial()
        if partial:
            self.logs.pipeline.warning(f"Removed {len(partial)} incomplete checkpoint file(s)")

        existing = self.store.batches()
        if existing and not (cfg.resume or cfg.merge_only):
            raise PipelineValidationError(
                f"{self.store.results_dir} holds {len(existing)} checkpoint(s) from a previous run; "
                "use --resume to continue it or --merge-only to merge it"
            )

        self.logs.pipeline.info(
            f"Validated '{directory.name}': {len(self.files)} of {len(files)} files, "
            f"indices: {', '.join(self.indices)}"
        )

    # --- BATCHING ---

    def _checkpointed_files(self) -> set[str]:
        """Filenames already recorded in checkpoints from an interrupted run."""
        df = self.store.read_all()
        if df.empty:
            return set()
        return set(df["filename"].astype(str))

    def process_batches(self) -> list[int]:
        """Run every batch, checkpointing each before starting the next.

        On resume, files already present in a checkpoint are skipped and the
        rest are batched under new keys after the highest existing one, so a
        resumed run may use a different batch size.

        Returns the batch indices (1-based) written by this call.
        """
        cfg = self.config
        scheduler = BatchScheduler(
            registry=self.registry,
            names=self.indices,
            params=self.params,
            logs=self.logs,
            n_jobs=cfg.n_jobs,
            batch_size=cfg.batch_size,
            seed=cfg.seed,
            max_duration_sec=cfg.max_duration_sec,
        )
        self.batch_size = scheduler.batch_size

        # (position in the run's file list, path); positions seed the tasks
        pending = list(enumerate(self.files))
        first_key = 1
        if cfg.resume:
            done = self._checkpointed_files()
            existing = self.store.batches()
            if existing:
                first_key = existing[-1] + 1
            pending = [(pos, p) for pos, p in pending if p.name not in done]
            self.logs.pipeline.info(
                f"Resuming: {len(self.files) - len(pending)} files already checkpointed, "
                f"{len(pending)} remaining"
            )

        batches = scheduler.batches(pending)
        self._transition(
            PipelineState.BATCHING,
            f"{len(pending)} files, {len(batches)} batches of up to {scheduler.batch_size}, "
            f"{scheduler.n_jobs} workers",
        )

        written = []
        start = time.time()
        with scheduler:
            progress = tqdm(
                enumerate(batches, start=first_key),
                total=len(batches),
                desc="Processing batches",
                unit="batch",
                disable=not cfg.show_progress,
            )
            for batch_idx, batch in progress:
                positions = [pos for pos, _ in batch]
                paths = [p for _, p in batch]
                self.logs.pipeline.info(f"Processing batch {batch_idx}: {len(paths)} files")
                records = scheduler.run_batch(paths, positions=positions)
                self.store.write(batch_idx, records)
                written.append(batch_idx)

                n_bad = sum(1 for r in records if r["status"] != "ok")
                self.logs.pipeline.info(
                    f"Checkpointed batch {batch_idx}: {len(records)} records, {n_bad} not ok"
                )

        elapsed = time.time() - start
        self.logs.pipeline.info(f"All batches processed in {elapsed:.2f} seconds")
        return written

    # --- MERGING ---

    def _final_path(self) -> Path:
        cfg = self.config
        suffix = f"_{cfg.file_range[0]}-{cfg.file_range[1]}" if cfg.file_range else ""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        base = Path(cfg.directory).resolve().name
        return Path(cfg.output_dir) / f"indices_{base}{suffix}_{timestamp}.{cfg.output_format}"

    def _order_columns(self, df: pd.DataFrame) -> pd.DataFrame:
        canonical = record_columns(self.registry.specs(self.indices, self.params))
        cols = [c for c in canonical if c in df.columns]
        cols += [c for c in df.columns if c not in cols]
        return df[cols]

    def _provenance(self, n_rows: int, batches: list[int]) -> dict:
        cfg = self.config
        return {
            "directory": str(Path(cfg.directory).resolve()),
            "indices": self.indices,
            "range": list(cfg.file_range) if cfg.file_range else None,
            "params": self.params.to_dict() if self.params is not None else None,
            "params_file": str(cfg.params_path) if cfg.params_path else None,
            "seed": cfg.seed,
            "n_jobs": cfg.n_jobs,
            "batch_size": self.batch_size,
            "max_duration_seconds": cfg.max_duration_sec,
            "merged_batches": batches,
            "rows": n_rows,
            "libraries": _library_versions(),
            "created": datetime.now().isoformat(timespec="seconds"),
        }

    def merge(self) -> Path:
        """Merge all checkpoints into the final artifact, then delete them."""
        consumed = self.store.batches()
        self._transition(PipelineState.MERGING, f"{len(consumed)} checkpoints")
        if not consumed:
            raise CheckpointError(f"No checkpoints to merge in {self.store.results_dir}")

        df = self.store.read_all()
        dupes = df["filename"][df["filename"].duplicated()].unique().tolist()
        if dupes:
            raise CheckpointError(f"Checkpoints contain duplicate records for: {', '.join(map(str, dupes[:10]))}")
        if not self.config.merge_only and len(df) != len(self.files):
            raise CheckpointError(
                f"Checkpoints hold {len(df)} records for {len(self.files)} input files; "
                "keeping checkpoints for inspection"
            )

        df = df.drop(columns=[BATCH_COLUMN])
        df = df.sort_values("filename", kind="stable").reset_index(drop=True)
        df = self._order_columns(df)

        out_path = self._final_path()
        out_path.parent.mkdir(parents=True, exist_ok=True)
        if self.config.output_format == "parquet":
            df.to_parquet(out_path, index=False)
        else:
            df.to_csv(out_path, index=False)
        prov_path = out_path.with_suffix(out_path.suffix + ".provenance.json")
        prov_path.write_text(json.dumps(self._provenance(len(df), consumed), indent=2), encoding="utf-8")

        removed = self.store.cleanup(consumed)
        self.logs.pipeline.info(f"Removed {len(removed)} checkpoint partition(s)")
        self.logs.pipeline.info(f"Result saved to: {out_path} ({len(df)} rows)")
        self.final_path = out_path
        return out_path

    def run(self) -> Path:
        """Execute the whole run. Returns the final artifact path."""
        cfg = self.config
        requested = ", ".join(cfg.indices) if cfg.indices else "ALL"
        self.logs.pipeline.info(f"Starting pipeline on '{Path(cfg.directory).name}', indices: {requested}")
        try:
            self.validate()
            if not cfg.merge_only:
                self.process_batches()
            path = self.merge()
            self._transition(PipelineState.DONE, str(path))
            return path
        except Exception as e:
            self._transition(PipelineState.FAILED, f"{type(e).__name__}: {e}")
            raise
        finally:
            self.logs.close()
