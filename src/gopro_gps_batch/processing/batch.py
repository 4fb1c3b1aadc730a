"""
Batch GPS extraction — turn every GoPro MP4 in a directory into a sibling JSON file.

Per file the pipeline moves through these stages:

1. **Probe** — ``ffprobe`` locates the GPMF telemetry stream.
2. **Isolate** — ``ffmpeg`` copies that single stream into a small temporary
   container so the video and audio payloads never enter memory.
3. **Load** — the isolated container is read and its GPMF payloads pulled out.
   When probing or isolation fails, the full source file is read instead,
   unless it is at or above ``OVERSIZE_THRESHOLD_BYTES``; oversized files are
   skipped with a warning.  Memory exhaustion while loading is reported as
   its own warning.
4. **List** — the stream catalog is decoded and filtered for ``GPS*`` keys.
   With no GPS keys the file is skipped (or, with ``NO_GPS_POLICY="catalog"``,
   the catalog itself is written).
5. **Extract & write** — only the GPS streams are decoded and written as
   ``<stem>.json`` next to the source, replacing any earlier output.
6. **Cleanup** — the temporary container is removed on every exit path.

A failure in one file is logged and recorded in the :class:`BatchReport`;
it never stops the batch.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path

import pydantic

from gopro_gps_batch.config import GoProGPSConfig, config
from gopro_gps_batch.exceptions import (
    NoSourceFilesError,
    OutOfMemoryLoadError,
    OversizedFileError,
)
from gopro_gps_batch.models import (
    BatchReport,
    FileOutcome,
    FileStatus,
    PayloadSource,
)
from gopro_gps_batch.processing.commands import CommandRunner, SubprocessRunner
from gopro_gps_batch.processing.gpmf_decode import extract_streams, list_streams
from gopro_gps_batch.processing.isolate_stream import (
    isolate_telemetry_stream,
    remove_isolated_track,
)
from gopro_gps_batch.processing.load_payload import is_oversized, read_payload_source
from gopro_gps_batch.processing.locate_stream import locate_telemetry_stream
from gopro_gps_batch.processing.select_gps import select_gps_keys

logger = logging.getLogger(__name__)


def find_mp4_files(directory: Path) -> list[Path]:
    """Absolute paths of ``*.mp4`` files (any case) directly inside *directory*."""
    directory = Path(directory).resolve()
    return sorted(
        p for p in directory.iterdir() if p.is_file() and p.suffix.lower() == ".mp4"
    )


def output_path(mp4_path: Path, settings: GoProGPSConfig = config) -> Path:
    return mp4_path.with_suffix(settings.OUTPUT_SUFFIX)


def write_json(path: Path, model: pydantic.BaseModel) -> None:
    data = model.model_dump(mode="json", exclude_none=True)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")


def process_file(
    mp4_path: Path,
    runner: CommandRunner,
    settings: GoProGPSConfig = config,
) -> FileOutcome:
    """Run the extraction pipeline for one file; never raises."""
    logger.info("Processing %s", mp4_path)
    track_path: Path | None = None
    source: PayloadSource | None = None

    try:
        size_mb = mp4_path.stat().st_size / (1024 * 1024)
        oversized = is_oversized(mp4_path, settings.OVERSIZE_THRESHOLD_BYTES)

        stream_idx = locate_telemetry_stream(mp4_path, runner, settings)
        track_path = isolate_telemetry_stream(mp4_path, stream_idx, runner, settings)

        if track_path is not None:
            source = PayloadSource.ISOLATED
            payload = read_payload_source(track_path, settings.OOM_ERROR_PATTERNS)
        elif oversized:
            raise OversizedFileError(
                f"{mp4_path.name} is {size_mb:.0f} MiB and its telemetry track "
                "could not be isolated"
            )
        else:
            source = PayloadSource.FULL
            logger.debug("Falling back to full-file load (%.1f MiB)", size_mb)
            payload = read_payload_source(mp4_path, settings.OOM_ERROR_PATTERNS)

        logger.debug(
            "Loaded %d GPMF payloads (%.1f KiB) via %s path",
            len(payload.samples),
            payload.size / 1024,
            source,
        )

        catalog = list_streams(payload)
        gps_keys = select_gps_keys(catalog, settings.GPS_PREFIX)
        json_path = output_path(mp4_path, settings)

        if not gps_keys:
            logger.warning(
                "No GPS streams found for %s (streams: %s)",
                mp4_path,
                ", ".join(catalog.keys()) or "none",
            )
            if settings.NO_GPS_POLICY == "catalog":
                write_json(json_path, catalog)
                logger.info("Wrote stream catalog %s", json_path.name)
                return FileOutcome(
                    path=mp4_path,
                    status=FileStatus.CATALOG_WRITTEN,
                    output=json_path,
                    source=source,
                )
            return FileOutcome(path=mp4_path, status=FileStatus.NO_GPS, source=source)

        telemetry = extract_streams(payload, gps_keys)
        write_json(json_path, telemetry)
        logger.info(
            "Wrote %s  (%s, %d samples)",
            json_path.name,
            ", ".join(gps_keys),
            telemetry.sample_count(),
        )
        return FileOutcome(
            path=mp4_path, status=FileStatus.WRITTEN, output=json_path, source=source
        )

    except OversizedFileError as exc:
        logger.warning(
            "Skipping %s: %s; install ffmpeg/ffprobe or check the file",
            mp4_path,
            exc,
        )
        return FileOutcome(
            path=mp4_path, status=FileStatus.OVERSIZED_SKIP, message=str(exc)
        )
    except OutOfMemoryLoadError as exc:
        logger.warning(
            "Skipping %s: ran out of memory loading it (%s); make ffmpeg/ffprobe "
            "available so only the telemetry track is loaded, or lower "
            "GOPRO_GPS_OVERSIZE_THRESHOLD_BYTES",
            mp4_path,
            exc,
        )
        return FileOutcome(
            path=mp4_path, status=FileStatus.OOM_SKIP, source=source, message=str(exc)
        )
    except Exception as exc:
        logger.error(
            "Error processing %s: %s",
            mp4_path,
            exc,
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        return FileOutcome(
            path=mp4_path, status=FileStatus.ERROR, source=source, message=str(exc)
        )
    finally:
        remove_isolated_track(track_path)


def run_batch(
    directory: Path,
    runner: CommandRunner | None = None,
    settings: GoProGPSConfig = config,
) -> BatchReport:
    """Process every MP4 in *directory* sequentially.

    Raises :class:`NoSourceFilesError` when there is nothing to process.
    """
    t_total = time.monotonic()
    directory = Path(directory).resolve()

    files = find_mp4_files(directory)
    if not files:
        raise NoSourceFilesError(f"No MP4 files found in {directory}")
    logger.info("Found %d MP4 files in %s", len(files), directory)

    if runner is None:
        runner = SubprocessRunner(timeout=settings.SUBPROCESS_TIMEOUT_S)

    outcomes = [process_file(mp4_path, runner, settings) for mp4_path in files]

    return BatchReport(
        directory=directory,
        outcomes=outcomes,
        elapsed_s=time.monotonic() - t_total,
    )
