#!/usr/bin/env python3
"""
Extract GPS Telemetry Script

Writes the GPS telemetry of every GoPro MP4 in a directory to a JSON file
next to each video.

Usage:
    extract_gps_telemetry.py [DIRECTORY] [--write-catalog] [--threshold BYTES]
                             [--timeout SECONDS] [--verbose]

Examples:
    extract_gps_telemetry.py /media/gopro/DCIM/100GOPRO
    extract_gps_telemetry.py --write-catalog --verbose
"""

import argparse
import logging
import sys
from pathlib import Path

import rich.console
import rich.logging

from gopro_gps_batch.config import config
from gopro_gps_batch.exceptions import NoSourceFilesError
from gopro_gps_batch.models import FileStatus
from gopro_gps_batch.processing.batch import run_batch

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    log_format = "\\[[bold]%(name)s[/bold]] %(message)s"
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=log_format,
        datefmt="[%X]",
        handlers=[
            rich.logging.RichHandler(
                console=rich.console.Console(color_system="auto", stderr=True),
                show_level=True,
                show_path=False,
                enable_link_path=False,
                rich_tracebacks=True,
                tracebacks_show_locals=False,
                markup=True,
            )
        ],
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Extract GoPro GPS telemetry from every MP4 in a directory"
    )
    parser.add_argument(
        "directory",
        nargs="?",
        type=Path,
        default=Path.cwd(),
        help="Directory to scan (default: current directory)",
    )
    parser.add_argument(
        "--write-catalog",
        action="store_true",
        help="Write the stream catalog when a file has no GPS streams",
    )
    parser.add_argument(
        "--threshold",
        type=int,
        default=None,
        help="Size in bytes from which files are never loaded whole "
        f"(default: {config.OVERSIZE_THRESHOLD_BYTES})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Timeout in seconds for each ffprobe/ffmpeg call",
    )
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)

    overrides = {}
    if args.write_catalog:
        overrides["NO_GPS_POLICY"] = "catalog"
    if args.threshold is not None:
        overrides["OVERSIZE_THRESHOLD_BYTES"] = args.threshold
    if args.timeout is not None:
        overrides["SUBPROCESS_TIMEOUT_S"] = args.timeout
    settings = config.model_copy(update=overrides)

    try:
        report = run_batch(args.directory, settings=settings)
    except NoSourceFilesError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1

    counts = report.status_counts()
    logger.info(
        f"Summary: {counts[FileStatus.WRITTEN]} written, "
        f"{counts[FileStatus.NO_GPS] + counts[FileStatus.CATALOG_WRITTEN]} without GPS, "
        f"{counts[FileStatus.OVERSIZED_SKIP] + counts[FileStatus.OOM_SKIP]} skipped, "
        f"{counts[FileStatus.ERROR]} failed."
    )
    logger.info(
        f"Processed {report.files_processed} files in {report.elapsed_s:.2f}s"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
