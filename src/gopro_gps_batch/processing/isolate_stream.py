"""Remux the telemetry track into a small temporary container with ``ffmpeg``."""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path

from gopro_gps_batch.config import GoProGPSConfig, config
from gopro_gps_batch.processing.commands import CommandRunner

logger = logging.getLogger(__name__)

ISOLATED_SUFFIX = ".gpmd.mov"


def isolated_track_path(mp4_path: Path, temp_dir: Path | None = None) -> Path:
    """Deterministic temporary path for the isolated track of *mp4_path*."""
    base = Path(temp_dir) if temp_dir is not None else Path(tempfile.gettempdir())
    return base / f"{mp4_path.stem}{ISOLATED_SUFFIX}"


def remux_command(
    mp4_path: Path, stream_idx: int, out_path: Path, ffmpeg: str = "ffmpeg"
) -> list[str]:
    return [
        ffmpeg,
        "-v",
        "error",
        "-y",
        "-i",
        str(mp4_path),
        "-map",
        f"0:{stream_idx}",
        "-c",
        "copy",
        "-f",
        "mov",
        str(out_path),
    ]


def remove_isolated_track(track_path: Path | None) -> None:
    """Delete *track_path* if it exists; failures are logged and ignored."""
    if track_path is None:
        return
    try:
        track_path.unlink(missing_ok=True)
    except OSError as exc:
        logger.debug("Could not remove %s: %s", track_path, exc)


def isolate_telemetry_stream(
    mp4_path: Path,
    stream_idx: int | None,
    runner: CommandRunner,
    settings: GoProGPSConfig = config,
) -> Path | None:
    """Copy stream *stream_idx* of *mp4_path* into a temporary container.

    Returns the path of the new file, or *None* when there is no stream to
    isolate or ``ffmpeg`` failed.  The caller owns the returned file.
    """
    if stream_idx is None:
        return None

    out_path = isolated_track_path(mp4_path, settings.TEMP_DIR)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    result = runner(remux_command(mp4_path, stream_idx, out_path, settings.FFMPEG))
    if not result.ok:
        logger.debug(
            "ffmpeg remux of stream %d failed for %s (exit %d): %s",
            stream_idx,
            mp4_path.name,
            result.returncode,
            result.stderr.strip(),
        )
        remove_isolated_track(out_path)
        return None

    if not out_path.is_file():
        logger.debug("ffmpeg reported success but %s is missing", out_path)
        return None

    logger.debug(
        "Isolated stream %d into %s (%.1f KiB)",
        stream_idx,
        out_path.name,
        out_path.stat().st_size / 1024,
    )
    return out_path
