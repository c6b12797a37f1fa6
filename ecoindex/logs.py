"""Per-run log streams.

A run writes three append-only text logs: pipeline progress, audio loading
and index computation. ``LogStreams`` is a small picklable handle, so it can
be shipped to loky worker processes, where accessing a stream attaches the
file handler for that process on first use.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(process)d] %(message)s"

PIPELINE_LOG = "log_pipeline.txt"
AUDIO_LOG = "log_audio_load.txt"
INDEX_LOG = "log_index_calc.txt"

_HANDLER_MARK = "_ecoindex_logfile"


def _attach(name: str, logfile: Path, console: bool = False) -> logging.Logger:
    logger = logging.getLogger(name)
    current = [h for h in logger.handlers if getattr(h, _HANDLER_MARK, None) is not None]
    if any(getattr(h, _HANDLER_MARK) == str(logfile) for h in current):
        return logger
    # A worker reused by a later run may still hold the previous run's file
    for h in current:
        logger.removeHandler(h)
        h.close()

    logfile.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(logfile, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    setattr(handler, _HANDLER_MARK, str(logfile))
    logger.addHandler(handler)

    if console:
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        setattr(stream, _HANDLER_MARK, str(logfile))
        logger.addHandler(stream)

    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger


@dataclass(frozen=True)
class LogStreams:
    """Handles for the pipeline, audio-loading and index-computation logs."""

    log_dir: Path
    console: bool = False

    @property
    def pipeline(self) -> logging.Logger:
        return _attach("ecoindex.pipeline", Path(self.log_dir) / PIPELINE_LOG, self.console)

    @property
    def audio(self) -> logging.Logger:
        return _attach("ecoindex.audio", Path(self.log_dir) / AUDIO_LOG)

    @property
    def index(self) -> logging.Logger:
        return _attach("ecoindex.index", Path(self.log_dir) / INDEX_LOG)

    def close(self) -> None:
        """Detach and close this process's handlers for all three streams."""
        for name in ("ecoindex.pipeline", "ecoindex.audio", "ecoindex.index"):
            logger = logging.getLogger(name)
            for h in list(logger.handlers):
                if getattr(h, _HANDLER_MARK, None) is not None:
                    logger.removeHandler(h)
                    h.close()
