"""Compute ecoacoustic indices over a directory of stereo WAV recordings.

Input
-----
A flat directory of ``*.wav`` files (one recorder deployment, one day, ...).
Files are sorted by name; ``--range START,END`` selects a 1-based slice so a
cluster job array can split one directory across jobs.

Output
------
One row per input file, even when the file is unreadable:
- filename, duration, status (ok / bad_audio / error), total_processing_time_sec
- ``<INDEX>_left`` / ``<INDEX>_right`` (plus ``<INDEX>_<field>_<side>`` for
  multi-field indices) and ``time_<INDEX>`` per requested index
- error_message for files whose processing failed outright

Batches are checkpointed to ``<output-dir>/batch=NNNNN.parquet`` and merged
into ``indices_<dir>[_<start>-<end>]_<timestamp>.parquet`` at the end.

Usage Examples
--------------
# Full run, all indices
python scripts/compute_indices.py -d /data/site_A/20240923

# Selected indices on a slice of the directory, 8 workers
python scripts/compute_indices.py -d /data/site_A/20240923 -i ACI,NDSI,BIO -r 1,500 --n-jobs 8

# After a crash: finish the remaining batches, or just merge what exists
python scripts/compute_indices.py -d /data/site_A/20240923 --resume
python scripts/compute_indices.py -d /data/site_A/20240923 --merge-only
"""

import sys

from ecoindex.cli import main

if __name__ == "__main__":
    sys.exit(main())
