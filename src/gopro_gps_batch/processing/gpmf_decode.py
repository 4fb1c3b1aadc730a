"""
GPMF telemetry decoding — pull GPMF payloads out of an in-memory MP4/MOV and decode them.

#### Container layer

GoPro files carry telemetry in a ``meta`` track whose sample description is
``gpmd`` (handler name ``GoPro MET``).  The payload bytes of each sample are
located through the track's sample tables:

    moov > trak > mdia > mdhd                      (timescale)
                       > hdlr                      (handler type / name)
                       > minf > stbl > stsd        (sample format, e.g. gpmd)
                                     > stts        (sample durations)
                                     > stsc        (samples per chunk)
                                     > stsz        (sample sizes)
                                     > stco | co64 (chunk offsets)

The same code handles the full source file and the small container produced
by the remux step, since both are ordinary ISO BMFF files.

#### GPMF layer

Each payload is a KLV tree of ``DEVC > STRM`` containers.  A ``STRM`` holds
exactly one data FourCC (``GPS5``, ``ACCL``, ...) plus metadata such as
``SCAL`` (divisors), ``STNM`` (name), ``SIUN``/``UNIT`` (units), ``TYPE``
(layout of complex ``?`` samples) and, for GPS, the sticky values ``GPSU``,
``GPSF`` and ``GPSP``.

Two decoding modes are exposed:

- :func:`list_streams` — catalog of data FourCCs per device, values untouched.
- :func:`extract_streams` — scaled samples for an explicit set of FourCCs.
"""

from __future__ import annotations

import logging
import re
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator

import numpy as np

from gopro_gps_batch.exceptions import TelemetryDecodeError
from gopro_gps_batch.models import (
    DeviceStreams,
    DeviceTelemetry,
    ExtractedPayload,
    PayloadSample,
    StreamCatalog,
    StreamTelemetry,
    TelemetryResult,
    TelemetrySample,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# ISO BMFF box walking
# ---------------------------------------------------------------------------


def _iter_boxes(data: bytes, start: int, end: int) -> Iterator[tuple[bytes, int, int]]:
    """Yield ``(fourcc, data_offset, data_end)`` for sibling boxes in ``[start, end)``."""
    pos = start
    while pos + 8 <= end:
        size = struct.unpack_from(">I", data, pos)[0]
        fourcc = bytes(data[pos + 4 : pos + 8])
        if size == 1:  # 64-bit extended size
            if pos + 16 > end:
                break
            size = struct.unpack_from(">Q", data, pos + 8)[0]
            data_start = pos + 16
        elif size == 0:  # box runs to the end of its parent
            size = end - pos
            data_start = pos + 8
        else:
            data_start = pos + 8
        if size < data_start - pos:
            raise TelemetryDecodeError(f"Corrupt box {fourcc!r} at offset {pos}")
        box_end = min(pos + size, end)
        yield fourcc, data_start, box_end
        pos = pos + size


def _find_box(data: bytes, start: int, end: int, target: bytes) -> tuple[int, int] | None:
    for fourcc, box_start, box_end in _iter_boxes(data, start, end):
        if fourcc == target:
            return box_start, box_end
    return None


def _find_path(data: bytes, start: int, end: int, *path: bytes) -> tuple[int, int] | None:
    span: tuple[int, int] | None = (start, end)
    for fourcc in path:
        assert span is not None
        span = _find_box(data, span[0], span[1], fourcc)
        if span is None:
            return None
    return span


def _u32_table(data: bytes, offset: int, count: int, width: int = 1) -> np.ndarray:
    """Read *count* rows of *width* big-endian uint32 values."""
    nbytes = count * width * 4
    if offset + nbytes > len(data):
        raise TelemetryDecodeError("Sample table runs past the end of its box")
    arr = np.frombuffer(data, dtype=">u4", count=count * width, offset=offset)
    return arr.astype(np.int64).reshape(count, width)


@dataclass
class _Track:
    handler_type: str
    handler_name: str
    sample_format: str
    timescale: int
    stbl: tuple[int, int]


def _read_track(data: bytes, start: int, end: int) -> _Track | None:
    mdia = _find_box(data, start, end, b"mdia")
    if mdia is None:
        return None

    timescale = 1
    mdhd = _find_box(data, *mdia, b"mdhd")
    if mdhd is not None:
        version = data[mdhd[0]]
        ts_offset = mdhd[0] + (20 if version == 1 else 12)
        timescale = struct.unpack_from(">I", data, ts_offset)[0] or 1

    handler_type = ""
    handler_name = ""
    hdlr = _find_box(data, *mdia, b"hdlr")
    if hdlr is not None:
        handler_type = data[hdlr[0] + 8 : hdlr[0] + 12].decode("latin1")
        raw_name = bytes(data[hdlr[0] + 24 : hdlr[1]])
        # QuickTime writes a Pascal string, ISO BMFF a C string
        if raw_name and raw_name[0] < 0x20 and raw_name[0] == len(raw_name) - 1:
            raw_name = raw_name[1:]
        handler_name = raw_name.decode("latin1", errors="replace").strip("\x00 \t")

    stbl = _find_path(data, *mdia, b"minf", b"stbl")
    if stbl is None:
        return None

    sample_format = ""
    stsd = _find_box(data, *stbl, b"stsd")
    if stsd is not None and stsd[0] + 16 <= stsd[1]:
        sample_format = data[stsd[0] + 12 : stsd[0] + 16].decode("latin1")

    return _Track(handler_type, handler_name, sample_format, timescale, stbl)


def _pick_telemetry_track(tracks: list[_Track]) -> _Track | None:
    for track in tracks:
        if track.sample_format == "gpmd":
            return track
    for track in tracks:
        if "gopro met" in track.handler_name.lower():
            return track
    # A remuxed container holds just the telemetry track
    if len(tracks) == 1 and tracks[0].handler_type in ("meta", "data"):
        return tracks[0]
    return None


def _sample_offsets(data: bytes, stbl: tuple[int, int]) -> tuple[np.ndarray, np.ndarray]:
    """Return ``(offsets, sizes)`` of every sample in the track."""
    stsz = _find_box(data, *stbl, b"stsz")
    stsc = _find_box(data, *stbl, b"stsc")
    stco = _find_box(data, *stbl, b"stco")
    co64 = _find_box(data, *stbl, b"co64")
    if stsz is None or stsc is None or (stco is None and co64 is None):
        raise TelemetryDecodeError("Telemetry track is missing its sample tables")

    uniform_size, sample_count = struct.unpack_from(">II", data, stsz[0] + 4)
    if uniform_size:
        sizes = np.full(sample_count, uniform_size, dtype=np.int64)
    else:
        sizes = _u32_table(data, stsz[0] + 12, sample_count)[:, 0]

    if co64 is not None:
        chunk_count = struct.unpack_from(">I", data, co64[0] + 4)[0]
        if co64[0] + 8 + chunk_count * 8 > len(data):
            raise TelemetryDecodeError("Chunk offset table runs past the end of its box")
        chunk_offsets = np.frombuffer(
            data, dtype=">u8", count=chunk_count, offset=co64[0] + 8
        ).astype(np.int64)
    else:
        assert stco is not None
        chunk_count = struct.unpack_from(">I", data, stco[0] + 4)[0]
        chunk_offsets = _u32_table(data, stco[0] + 8, chunk_count)[:, 0]

    entry_count = struct.unpack_from(">I", data, stsc[0] + 4)[0]
    runs = _u32_table(data, stsc[0] + 8, entry_count, width=3)

    offsets = np.zeros(sample_count, dtype=np.int64)
    sample = 0
    for i, (first_chunk, per_chunk, _desc) in enumerate(runs):
        last_chunk = runs[i + 1][0] - 1 if i + 1 < len(runs) else chunk_count
        for chunk in range(int(first_chunk) - 1, int(last_chunk)):
            if chunk >= chunk_count:
                raise TelemetryDecodeError("Sample-to-chunk table references a missing chunk")
            pos = int(chunk_offsets[chunk])
            for _ in range(int(per_chunk)):
                if sample >= sample_count:
                    break
                offsets[sample] = pos
                pos += int(sizes[sample])
                sample += 1

    if sample != sample_count:
        raise TelemetryDecodeError(
            f"Sample-to-chunk table covers {sample} of {sample_count} samples"
        )
    return offsets, sizes


def _sample_times(
    data: bytes, stbl: tuple[int, int], sample_count: int, timescale: int
) -> tuple[np.ndarray, np.ndarray]:
    """Return ``(cts_s, duration_s)`` per sample from the ``stts`` table."""
    deltas = np.zeros(sample_count, dtype=np.int64)
    stts = _find_box(data, *stbl, b"stts")
    if stts is not None:
        entry_count = struct.unpack_from(">I", data, stts[0] + 4)[0]
        runs = _u32_table(data, stts[0] + 8, entry_count, width=2)
        counts = runs[:, 0]
        expanded = np.repeat(runs[:, 1], counts)[:sample_count]
        deltas[: len(expanded)] = expanded
    starts = np.concatenate(([0], np.cumsum(deltas)[:-1])) if sample_count else deltas
    return starts / timescale, deltas / timescale


def extract_payload(data: bytes) -> ExtractedPayload:
    """Pull every GPMF payload out of the container bytes in *data*."""
    moov = _find_box(data, 0, len(data), b"moov")
    if moov is None:
        raise TelemetryDecodeError("No moov box found")

    tracks: list[_Track] = []
    for fourcc, start, end in _iter_boxes(data, *moov):
        if fourcc != b"trak":
            continue
        track = _read_track(data, start, end)
        if track is not None:
            tracks.append(track)

    track = _pick_telemetry_track(tracks)
    if track is None:
        raise TelemetryDecodeError(
            f"No GPMF telemetry track among {len(tracks)} track(s)"
        )

    offsets, sizes = _sample_offsets(data, track.stbl)
    cts, durations = _sample_times(data, track.stbl, len(sizes), track.timescale)

    samples: list[PayloadSample] = []
    for offset, size, t, d in zip(offsets, sizes, cts, durations):
        end = int(offset) + int(size)
        if end > len(data):
            raise TelemetryDecodeError(
                f"Telemetry sample at offset {offset} runs past the end of the file"
            )
        samples.append(
            PayloadSample(data=bytes(data[int(offset) : end]), cts=float(t), duration=float(d))
        )

    logger.debug(
        "Extracted %d GPMF payloads (%.1f KiB, timescale %d)",
        len(samples),
        sum(int(s) for s in sizes) / 1024,
        track.timescale,
    )
    return ExtractedPayload(timescale=track.timescale, samples=samples)


# ---------------------------------------------------------------------------
# GPMF binary type → Python struct format character
# ---------------------------------------------------------------------------
_TYPE_FMT: dict[str, str] = {
    "b": "b",
    "B": "B",
    "s": "h",
    "S": "H",
    "l": "i",
    "L": "I",
    "j": "q",
    "J": "Q",
    "f": "f",
    "d": "d",
    "q": "i",  # Q15.16 fixed point
    "Q": "q",  # Q31.32 fixed point
}

_FIXED_POINT = {"q": 65536.0, "Q": 4294967296.0}

# Metadata KLV keys found alongside the data inside a STRM
_META_KEYS = {
    "TSMP",
    "STMP",
    "SCAL",
    "ORIN",
    "ORIO",
    "MTRX",
    "STNM",
    "SIUN",
    "UNIT",
    "TYPE",
    "DVNM",
    "DVID",
    "GPSU",
    "GPSF",
    "GPSP",
    "GPSA",
    "TMPC",
    "EMPT",
    "TICK",
    "TOCK",
    "RMRK",
    "QUAN",
}

_KLVItem = tuple[str, tuple[str, int, int] | None, "bytes | list"]


def _parse_klv(data: bytes) -> list[_KLVItem]:
    """Recursively parse GPMF KLV items.

    Returns a list of ``(fourcc, (type_char, sample_size, repeat) | None, payload)``
    where *payload* is ``bytes`` for leaf items or a nested ``list`` for containers.
    """
    pos = 0
    results: list[_KLVItem] = []
    length = len(data)
    while pos + 8 <= length:
        key = data[pos : pos + 4].decode("latin1", errors="replace")
        if key == "\x00\x00\x00\x00":
            break  # zero padding at the end of a payload
        type_char = chr(data[pos + 4])
        sample_size = data[pos + 5]
        repeat = struct.unpack(">H", data[pos + 6 : pos + 8])[0]
        data_len = sample_size * repeat
        if pos + 8 + data_len > length:
            raise TelemetryDecodeError(
                f"GPMF item {key!r} claims {data_len} bytes, {length - pos - 8} left"
            )
        total = 8 + data_len
        padding = (4 - (total % 4)) % 4
        payload = data[pos + 8 : pos + 8 + data_len]
        if type_char == "\x00":
            results.append((key, None, _parse_klv(payload)))
        else:
            results.append((key, (type_char, sample_size, repeat), payload))
        pos += total + padding
    return results


def _unpack_values(
    type_char: str, sample_size: int, repeat: int, data: bytes
) -> np.ndarray | None:
    """Unpack a leaf KLV item into an ndarray of shape ``(repeat, elems_per_sample)``."""
    fmt_char = _TYPE_FMT.get(type_char)
    if fmt_char is None:
        return None
    elem_size = struct.calcsize(">" + fmt_char)
    elems_per_sample = sample_size // elem_size
    total_elems = elems_per_sample * repeat
    nbytes = total_elems * elem_size
    if nbytes > len(data) or total_elems == 0:
        return None
    flat = struct.unpack(">" + fmt_char * total_elems, data[:nbytes])
    arr = np.array(flat, dtype=np.float64).reshape(repeat, elems_per_sample)
    if type_char in _FIXED_POINT:
        arr /= _FIXED_POINT[type_char]
    return arr


def _unpack_complex(type_spec: str, sample_size: int, repeat: int, data: bytes) -> np.ndarray | None:
    """Unpack ``?`` items whose per-element layout is given by a ``TYPE`` string."""
    if any(tc not in _TYPE_FMT for tc in type_spec):
        return None
    fmt = ">" + "".join(_TYPE_FMT[tc] for tc in type_spec)
    if struct.calcsize(fmt) != sample_size:
        return None
    rows = [struct.unpack_from(fmt, data, i * sample_size) for i in range(repeat)]
    if not rows:
        return None
    arr = np.array(rows, dtype=np.float64)
    for col, tc in enumerate(type_spec):
        if tc in _FIXED_POINT:
            arr[:, col] /= _FIXED_POINT[tc]
    return arr


def _decode_string(data: bytes, sample_size: int, repeat: int) -> str:
    return (
        data[: sample_size * repeat].decode("latin1", errors="replace").rstrip("\x00")
    )


def _decode_strings(data: bytes, sample_size: int, repeat: int) -> list[str]:
    return [
        data[i * sample_size : (i + 1) * sample_size]
        .decode("latin1", errors="replace")
        .rstrip("\x00")
        for i in range(repeat)
    ]


# ---------------------------------------------------------------------------
# GPSU parsing
# ---------------------------------------------------------------------------

_GPSU_RE = re.compile(r"^(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})\.(\d+)$")


def _parse_gpsu(gpsu: str) -> datetime | None:
    """Parse a GPMF ``GPSU`` string into a UTC :class:`datetime`.

    Format: ``YYMMDDHHMMSS.sss``  e.g. ``"250508104822.180"``
    """
    m = _GPSU_RE.match(gpsu)
    if m is None:
        return None
    yy, mo, dd, hh, mi, ss, frac = m.groups()
    microsecond = int(frac.ljust(6, "0")[:6])
    try:
        return datetime(
            2000 + int(yy),
            int(mo),
            int(dd),
            int(hh),
            int(mi),
            int(ss),
            microsecond,
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# DEVC / STRM walking
# ---------------------------------------------------------------------------


def _device_id(tc: str, ss: int, rp: int, data: bytes) -> str:
    if tc == "F":
        return data[:4].decode("latin1", errors="replace")
    vals = _unpack_values(tc, ss, rp, data)
    if vals is None or vals.size == 0:
        return "1"
    return str(int(vals.flat[0]))


def _iter_devices(payload: ExtractedPayload) -> Iterator[tuple[PayloadSample, str, str | None, list]]:
    """Yield ``(sample, device_id, device_name, strm_children)`` for every DEVC."""
    for sample in payload.samples:
        for key, info, children in _parse_klv(sample.data):
            if key != "DEVC" or info is not None:
                continue
            assert isinstance(children, list)
            device_id = "1"
            device_name: str | None = None
            for ckey, cinfo, cdata in children:
                if cinfo is None or not isinstance(cdata, bytes):
                    continue
                if ckey == "DVID":
                    device_id = _device_id(*cinfo, cdata)
                elif ckey == "DVNM":
                    device_name = _decode_string(cdata, cinfo[1], cinfo[2])
            for ckey, cinfo, cchildren in children:
                if ckey == "STRM" and cinfo is None:
                    yield sample, device_id, device_name, cchildren


def _data_key(strm: list) -> str | None:
    for skey, sinfo, _sdata in strm:
        if sinfo is not None and skey not in _META_KEYS:
            return skey
    return None


def list_streams(payload: ExtractedPayload) -> StreamCatalog:
    """Catalog the data FourCCs each device exposes, without decoding values."""
    devices: dict[str, DeviceStreams] = {}
    for _sample, device_id, device_name, strm in _iter_devices(payload):
        device = devices.setdefault(device_id, DeviceStreams(device_name=device_name))
        if device.device_name is None:
            device.device_name = device_name
        key = _data_key(strm)
        if key is not None and key not in device.streams:
            device.streams.append(key)

    # Re-validate the catalog built in place
    return StreamCatalog.model_validate(
        {"devices": {k: v.model_dump() for k, v in devices.items()}}
    )


@dataclass
class _StrmValues:
    key: str
    values: np.ndarray
    name: str | None = None
    units: list[str] | None = None
    gpsu: datetime | None = None
    sticky: dict[str, float] | None = None


def _decode_strm(strm: list, key: str) -> _StrmValues | None:
    scal: np.ndarray | None = None
    type_spec: str | None = None
    name: str | None = None
    units: list[str] | None = None
    gpsu: datetime | None = None
    sticky: dict[str, float] = {}
    data_item: tuple[str, int, int, bytes] | None = None

    for skey, sinfo, sdata in strm:
        if sinfo is None:
            continue  # skip nested containers
        tc, ss, rp = sinfo
        if skey == "SCAL":
            scal = _unpack_values(tc, ss, rp, sdata)
            if scal is not None:
                scal = scal.flatten()
        elif skey == "TYPE":
            type_spec = _decode_string(sdata, ss, rp)
        elif skey == "STNM":
            name = _decode_string(sdata, ss, rp)
        elif skey in ("SIUN", "UNIT") and units is None:
            units = _decode_strings(sdata, ss, rp)
        elif skey == "GPSU":
            gpsu = _parse_gpsu(_decode_string(sdata, ss, rp))
        elif skey == "GPSF":
            vals = _unpack_values(tc, ss, rp, sdata)
            if vals is not None and vals.size > 0:
                sticky["fix"] = float(vals.flat[0])
        elif skey == "GPSP":
            vals = _unpack_values(tc, ss, rp, sdata)
            if vals is not None and vals.size > 0:
                sticky["precision"] = float(vals.flat[0])
        elif skey == key:
            data_item = (tc, ss, rp, sdata)

    if data_item is None:
        return None
    tc, ss, rp, sdata = data_item
    if tc == "?":
        if type_spec is None:
            return None
        values = _unpack_complex(type_spec, ss, rp, sdata)
    else:
        values = _unpack_values(tc, ss, rp, sdata)
    if values is None:
        return None

    if scal is not None and scal.size > 0:
        scal = np.where(scal == 0, 1.0, scal)
        if scal.size == values.shape[1]:
            values = values / scal
        else:
            values = values / scal[0]

    return _StrmValues(
        key=key,
        values=values,
        name=name,
        units=units,
        gpsu=gpsu,
        sticky=sticky or None,
    )


def extract_streams(payload: ExtractedPayload, keys: Iterable[str]) -> TelemetryResult:
    """Decode only the streams named in *keys* into a :class:`TelemetryResult`."""
    wanted = set(keys)
    devices: dict[str, DeviceTelemetry] = {}

    for sample, device_id, device_name, strm in _iter_devices(payload):
        key = _data_key(strm)
        if key is None or key not in wanted:
            continue
        decoded = _decode_strm(strm, key)
        if decoded is None:
            logger.debug("Could not decode %s samples at %.3f s", key, sample.cts)
            continue

        device = devices.setdefault(device_id, DeviceTelemetry(device_name=device_name))
        stream = device.streams.setdefault(
            key, StreamTelemetry(name=decoded.name, units=decoded.units)
        )

        count = decoded.values.shape[0]
        step = sample.duration / count if count else 0.0
        for i, row in enumerate(decoded.values):
            offset = i * step
            date = None
            if decoded.gpsu is not None:
                date = (decoded.gpsu + timedelta(seconds=offset)).isoformat()
            stream.samples.append(
                TelemetrySample(
                    value=[float(v) for v in row],
                    cts=round((sample.cts + offset) * 1000.0, 3),
                    date=date,
                    sticky=decoded.sticky,
                )
            )

    # Drop streams that never produced a sample
    for device in devices.values():
        device.streams = {k: s for k, s in device.streams.items() if s.samples}
    return TelemetryResult(
        devices={k: d for k, d in devices.items() if d.streams}
    )
