"""CLI entrypoint for ecoindex."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from ecoindex.pipeline import OUTPUT_FORMATS, PipelineConfig, PipelineCoordinator
from ecoindex.scheduler import default_n_jobs
from ecoindex.types import EcoIndexError

logger = logging.getLogger("ecoindex")


def _index_list(value: str) -> list[str]:
    names = [v.strip() for v in value.split(",")]
    if not names or any(not n for n in names):
        raise argparse.ArgumentTypeError(f"expected IDX1,IDX2,... got {value!r}")
    return names


def _file_range(value: str) -> tuple[int, int]:
    parts = [v.strip() for v in value.split(",")]
    try:
        start, end = (int(p) for p in parts)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected START,END (two integers), got {value!r}")
    return start, end


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        prog="ecoindex",
        description="Compute ecoacoustic indices over a directory of stereo WAV files, "
                    "in checkpointed batches.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # All indices, default parallelism
  %(prog)s -d /data/site_A/20240923

  # Two indices on files 1..200, 8 workers, fixed seed
  %(prog)s -d /data/site_A/20240923 -i ACI,NDSI -r 1,200 --n-jobs 8 --seed 7

  # Continue an interrupted run, or only merge its checkpoints
  %(prog)s -d /data/site_A/20240923 --resume
  %(prog)s -d /data/site_A/20240923 --merge-only
        """,
    )

    ap.add_argument("-d", "--directory", required=True, type=Path, help="Input directory of WAV files")
    ap.add_argument("-i", "--indices", type=_index_list, default=None, metavar="IDX1,IDX2,...",
                    help="Comma-separated list of indices to calculate (default: all)")
    ap.add_argument("-r", "--range", dest="file_range", type=_file_range, default=None, metavar="START,END",
                    help="1-based inclusive range of files (sorted by name) to process")
    ap.add_argument("--params", type=Path, default=None,
                    help="JSON file of per-index parameters, merged over the built-in defaults")

    ap.add_argument("--output-dir", type=Path, default=Path("data/results"),
                    help="Directory for checkpoints and the final result (default: data/results)")
    ap.add_argument("--log-dir", type=Path, default=Path("data/log"),
                    help="Directory for the pipeline, audio and index logs (default: data/log)")
    ap.add_argument("--format", dest="output_format", choices=OUTPUT_FORMATS, default="parquet",
                    help="Final artifact format (default: parquet)")

    # Performance options
    ap.add_argument("--n-jobs", type=int, default=None,
                    help=f"Number of parallel workers (default: {default_n_jobs()})")
    ap.add_argument("--batch-size", type=int, default=None,
                    help="Files per checkpointed batch (default: 2 x n-jobs)")
    ap.add_argument("--max-duration-seconds", type=float, default=None,
                    help="Limit analysis to the first N seconds of each file (default: full file)")
    ap.add_argument("--seed", type=int, default=42, help="RNG seed for reproducible output (default: 42)")

    # Recovery options
    ap.add_argument("--resume", action="store_true",
                    help="Continue an interrupted run: files already in a checkpoint are skipped, the rest are processed")
    ap.add_argument("--merge-only", action="store_true",
                    help="Skip processing; merge existing checkpoints into the final result")

    ap.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    ap.add_argument("-v", "--verbose", action="store_true", help="Verbose console logging")

    args = ap.parse_args(argv)
    if args.n_jobs is not None and args.n_jobs < 1:
        ap.error("--n-jobs must be >= 1")
    if args.batch_size is not None and args.batch_size < 1:
        ap.error("--batch-size must be >= 1")
    if args.resume and args.merge_only:
        ap.error("--resume and --merge-only are mutually exclusive")
    return args


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    return PipelineConfig(
        directory=args.directory,
        indices=args.indices,
        file_range=args.file_range,
        params_path=args.params,
        output_dir=args.output_dir,
        log_dir=args.log_dir,
        n_jobs=args.n_jobs,
        batch_size=args.batch_size,
        seed=args.seed,
        max_duration_sec=args.max_duration_seconds,
        output_format=args.output_format,
        resume=args.resume,
        merge_only=args.merge_only,
        show_progress=not args.no_progress,
        console=args.verbose,
    )


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(name)s %(levelname)s: %(message)s",
    )

    coordinator = PipelineCoordinator(config_from_args(args))
    try:
        out_path = coordinator.run()
    except EcoIndexError as e:
        logger.error(str(e))
        return 1
    logger.info(f"Result saved to: {out_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
