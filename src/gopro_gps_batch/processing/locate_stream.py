"""Locate the GPMF telemetry track inside a GoPro container with ``ffprobe``."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from gopro_gps_batch.config import GoProGPSConfig, config
from gopro_gps_batch.models import ProbeResult, ProbeStream
from gopro_gps_batch.processing.commands import CommandRunner

logger = logging.getLogger(__name__)


def probe_command(mp4_path: Path, ffprobe: str = "ffprobe") -> list[str]:
    return [
        ffprobe,
        "-v",
        "error",
        "-show_entries",
        "stream=index,codec_name,codec_tag_string,codec_tag:stream_tags=handler_name",
        "-of",
        "json",
        str(mp4_path),
    ]


def probe_streams(
    mp4_path: Path,
    runner: CommandRunner,
    settings: GoProGPSConfig = config,
) -> ProbeResult | None:
    """Return per-stream metadata for *mp4_path*, or *None* if probing failed."""
    result = runner(probe_command(mp4_path, settings.FFPROBE))
    if not result.ok:
        logger.debug(
            "ffprobe failed on %s (exit %d): %s",
            mp4_path.name,
            result.returncode,
            result.stderr.strip(),
        )
        return None

    try:
        info = json.loads(result.stdout)
        streams = [
            ProbeStream(
                index=int(s["index"]),
                codec_name=s.get("codec_name"),
                codec_tag_string=s.get("codec_tag_string"),
                codec_tag=s.get("codec_tag"),
                handler_name=s.get("tags", {}).get("handler_name"),
            )
            for s in info.get("streams", [])
        ]
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        logger.debug("Unparsable ffprobe output for %s: %s", mp4_path.name, exc)
        return None

    return ProbeResult(streams=streams)


def _raw_codec_tag(codec: str) -> str:
    """``"gpmd"`` → ``"0x646d7067"`` (ffprobe prints tags little-endian)."""
    return hex(int.from_bytes(codec.encode("latin1"), "little"))


def find_telemetry_stream(
    probe: ProbeResult,
    codec: str = "gpmd",
    handler: str = "gopro met",
) -> int | None:
    """Return the index of the first stream that looks like GPMF telemetry."""
    codec = codec.lower()
    handler = handler.lower()
    raw_tag = _raw_codec_tag(codec)

    for s in probe.streams:
        if (s.codec_name or "").lower() == codec:
            return s.index
        if (s.codec_tag_string or "").lower() == codec:
            return s.index
        if (s.codec_tag or "").lower() == raw_tag:
            return s.index
        if handler and handler in (s.handler_name or "").lower():
            return s.index
    return None


def locate_telemetry_stream(
    mp4_path: Path,
    runner: CommandRunner,
    settings: GoProGPSConfig = config,
) -> int | None:
    probe = probe_streams(mp4_path, runner, settings)
    if probe is None:
        return None

    stream_idx = find_telemetry_stream(
        probe, settings.TELEMETRY_CODEC, settings.TELEMETRY_HANDLER
    )
    if stream_idx is None:
        logger.debug(
            "No telemetry stream among %d streams in %s",
            len(probe.streams),
            mp4_path.name,
        )
    else:
        logger.debug("Found gpmd metadata on stream index %d", stream_idx)
    return stream_idx
