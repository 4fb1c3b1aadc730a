"""Typed data passed between the extraction stages.

Probe output, isolated payload samples, the decoder's stream catalog and
telemetry result, and the per-file / per-batch outcomes reported by the
orchestrator.
"""

from __future__ import annotations

import pathlib
from collections import Counter
from enum import StrEnum

import pydantic

# ---------------------------------------------------------------------------
# Probe models
# ---------------------------------------------------------------------------


class ProbeStream(pydantic.BaseModel):
    """One stream entry as reported by ``ffprobe``."""

    index: int
    codec_name: str | None = None
    codec_tag_string: str | None = None
    codec_tag: str | None = None
    handler_name: str | None = None


class ProbeResult(pydantic.BaseModel):
    """Per-stream metadata of one container, in declaration order."""

    streams: list[ProbeStream] = pydantic.Field(default_factory=list)


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------


class PayloadSample(pydantic.BaseModel):
    """One GPMF payload (one container sample, usually ~1 s of telemetry)."""

    data: bytes
    cts: float
    """Composition time of the sample in seconds since recording start."""

    duration: float
    """Sample duration in seconds."""


class ExtractedPayload(pydantic.BaseModel):
    """Raw GPMF payloads pulled out of an MP4/MOV container."""

    timescale: int
    samples: list[PayloadSample] = pydantic.Field(default_factory=list)

    @property
    def size(self) -> int:
        return sum(len(s.data) for s in self.samples)


# ---------------------------------------------------------------------------
# Decoder models
# ---------------------------------------------------------------------------


def _check_fourcc(key: str) -> str:
    if len(key) != 4:
        raise ValueError(f"Stream key must be a 4-character FourCC, got {key!r}")
    return key


class DeviceStreams(pydantic.BaseModel):
    device_name: str | None = None
    streams: list[str] = pydantic.Field(default_factory=list)

    @pydantic.field_validator("streams")
    @classmethod
    def _unique_fourccs(cls, value: list[str]) -> list[str]:
        seen: dict[str, None] = {}
        for key in value:
            seen[_check_fourcc(key)] = None
        return list(seen)


class StreamCatalog(pydantic.BaseModel):
    """Device id → stream keys exposed by that device."""

    devices: dict[str, DeviceStreams] = pydantic.Field(default_factory=dict)

    def keys(self) -> list[str]:
        """All stream keys in first-seen order, without duplicates."""
        seen: dict[str, None] = {}
        for device in self.devices.values():
            for key in device.streams:
                seen.setdefault(key, None)
        return list(seen)


class TelemetrySample(pydantic.BaseModel):
    value: list[float]
    cts: float
    """Milliseconds since recording start."""

    date: str | None = None
    """ISO 8601 UTC timestamp, only for streams carrying ``GPSU``."""

    sticky: dict[str, float] | None = None


class StreamTelemetry(pydantic.BaseModel):
    name: str | None = None
    units: list[str] | None = None
    samples: list[TelemetrySample] = pydantic.Field(default_factory=list)


class DeviceTelemetry(pydantic.BaseModel):
    device_name: str | None = None
    streams: dict[str, StreamTelemetry] = pydantic.Field(default_factory=dict)


class TelemetryResult(pydantic.BaseModel):
    """Decoded telemetry restricted to the requested stream keys."""

    devices: dict[str, DeviceTelemetry] = pydantic.Field(default_factory=dict)

    def sample_count(self) -> int:
        return sum(
            len(stream.samples)
            for device in self.devices.values()
            for stream in device.streams.values()
        )


# ---------------------------------------------------------------------------
# Orchestrator outcomes
# ---------------------------------------------------------------------------


class FileStatus(StrEnum):
    WRITTEN = "written"
    CATALOG_WRITTEN = "catalog_written"
    NO_GPS = "no_gps"
    OVERSIZED_SKIP = "oversized_skip"
    OOM_SKIP = "oom_skip"
    ERROR = "error"


class PayloadSource(StrEnum):
    ISOLATED = "isolated"
    FULL = "full"


class FileOutcome(pydantic.BaseModel):
    path: pathlib.Path
    status: FileStatus
    output: pathlib.Path | None = None
    source: PayloadSource | None = None
    message: str | None = None


class BatchReport(pydantic.BaseModel):
    directory: pathlib.Path
    outcomes: list[FileOutcome] = pydantic.Field(default_factory=list)
    elapsed_s: float = 0.0

    @property
    def files_processed(self) -> int:
        return len(self.outcomes)

    def count(self, status: FileStatus) -> int:
        return self.status_counts().get(status, 0)

    def status_counts(self) -> Counter[FileStatus]:
        return Counter(outcome.status for outcome in self.outcomes)
