"""Batch-keyed parquet checkpoints.

Each completed batch becomes one immutable partition file,
``batch=<NNNNN>.parquet``, in the results directory. Partitions are written
once, read back together for the final merge, then deleted.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Iterable, Sequence

import pandas as pd

from ecoindex.types import CheckpointError

logger = logging.getLogger(__name__)

BATCH_COLUMN = "batch"
_PARTITION_RE = re.compile(r"^batch=(\d+)\.parquet$")
_PARTIAL_RE = re.compile(r"^\.batch=\d+\..*\.tmp$")


class CheckpointStore:
    """Append-only store of per-batch result tables under ``results_dir``."""

    def __init__(self, results_dir: Path):
        self.results_dir = Path(results_dir)
        self._lock = threading.Lock()

    def partition_path(self, batch_index: int) -> Path:
        return self.results_dir / f"batch={batch_index:05d}.parquet"

    def batches(self) -> list[int]:
        """Batch indices with a partition on disk, ascending."""
        if not self.results_dir.is_dir():
            return []
        found = []
        for p in self.results_dir.iterdir():
            m = _PARTITION_RE.match(p.name)
            if m and p.is_file():
                found.append(int(m.group(1)))
        return sorted(found)

    def exists(self, batch_index: int) -> bool:
        return self.partition_path(batch_index).is_file()

    def write(self, batch_index: int, records: Sequence[dict]) -> Path:
        """Persist one batch's records as a new partition.

        The file appears atomically (temp file + rename), so a partition is
        either complete or absent. Writing an existing batch key raises
        ``CheckpointError``.
        """
        target = self.partition_path(batch_index)
        with self._lock:
            if target.exists():
                raise CheckpointError(f"Checkpoint for batch {batch_index} already exists: {target}")
            df = pd.DataFrame(list(records))
            df[BATCH_COLUMN] = batch_index

            self.results_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.results_dir, prefix=f".batch={batch_index:05d}.", suffix=".tmp")
            os.close(fd)
            try:
                df.to_parquet(tmp, index=False)
                os.replace(tmp, target)
            except Exception as e:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise CheckpointError(f"Failed to write checkpoint for batch {batch_index}: {e}") from e

        logger.debug(f"Wrote {target.name} ({len(df)} rows)")
        return target

    def read_all(self) -> pd.DataFrame:
        """Union of every partition on disk, with a ``batch`` column.

        Raises ``CheckpointError`` if any partition cannot be read; partial
        data is never returned.
        """
        frames = []
        for batch_index in self.batches():
            path = self.partition_path(batch_index)
            try:
                frames.append(pd.read_parquet(path))
            except Exception as e:
                raise CheckpointError(f"Corrupt checkpoint {path}: {e}") from e
        if not frames:
            return pd.DataFrame()
        return pd.concat(frames, ignore_index=True, sort=False)

    def purge_partial(self) -> list[str]:
        """Delete temp files left by writes that never completed.

        Returns the removed file names.
        """
        if not self.results_dir.is_dir():
            return []
        removed = []
        with self._lock:
            for p in sorted(self.results_dir.iterdir()):
                if _PARTIAL_RE.match(p.name) and p.is_file():
                    p.unlink()
                    removed.append(p.name)
        if removed:
            logger.warning(f"Removed {len(removed)} incomplete checkpoint file(s) from {self.results_dir}")
        return removed

    def cleanup(self, batch_indices: Iterable[int]) -> list[int]:
        """Delete the given partitions. Returns the indices actually removed."""
        removed = []
        with self._lock:
            for batch_index in batch_indices:
                path = self.partition_path(batch_index)
                if path.exists():
                    path.unlink()
                    removed.append(batch_index)
        return removed
