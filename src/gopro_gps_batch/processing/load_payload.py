"""Size guard and full-file fallback loader."""

from __future__ import annotations

import errno
import logging
from pathlib import Path
from typing import Iterable

from gopro_gps_batch.exceptions import OutOfMemoryLoadError
from gopro_gps_batch.models import ExtractedPayload
from gopro_gps_batch.processing.gpmf_decode import extract_payload

logger = logging.getLogger(__name__)


def is_oversized(mp4_path: Path, threshold: int) -> bool:
    """True when *mp4_path* is too large to be read into memory in one piece."""
    return mp4_path.stat().st_size >= threshold


def is_out_of_memory(exc: BaseException, patterns: Iterable[str] = ()) -> bool:
    """Classify *exc* as memory exhaustion.

    ``MemoryError`` and ``ENOMEM`` always count; otherwise the message is
    matched case-insensitively against *patterns*.
    """
    if isinstance(exc, MemoryError):
        return True
    if isinstance(exc, OSError) and exc.errno == errno.ENOMEM:
        return True
    message = str(exc).lower()
    return any(p.lower() in message for p in patterns if p)


def load_full_file(mp4_path: Path, oom_patterns: Iterable[str] = ()) -> bytes:
    """Read all of *mp4_path* into memory.

    Raises :class:`OutOfMemoryLoadError` when the read fails for lack of
    memory; any other error propagates unchanged.
    """
    try:
        return mp4_path.read_bytes()
    except Exception as exc:
        if is_out_of_memory(exc, oom_patterns):
            raise OutOfMemoryLoadError(
                f"Out of memory while reading {mp4_path.name}: {exc}"
            ) from exc
        raise


def read_payload_source(mp4_path: Path, oom_patterns: Iterable[str] = ()) -> ExtractedPayload:
    """Load a container from disk and pull its GPMF payloads out.

    Allocation failures during extraction are classified like those of the
    read itself.
    """
    patterns = list(oom_patterns)
    data = load_full_file(mp4_path, patterns)
    logger.debug("Loaded %s (%.1f MiB)", mp4_path.name, len(data) / (1024 * 1024))
    try:
        return extract_payload(data)
    except MemoryError as exc:
        raise OutOfMemoryLoadError(
            f"Out of memory while extracting telemetry from {mp4_path.name}: {exc}"
        ) from exc
