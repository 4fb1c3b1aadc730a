"""Tests for GPMF payload extraction and decoding"""

import struct

import pytest
from helpers.mp4_builder import (
    build_mp4,
    devc,
    gps_mp4,
    imu_only_mp4,
    klv,
    nest,
    numbers,
    string,
)

from gopro_gps_batch.exceptions import TelemetryDecodeError
from gopro_gps_batch.models import ExtractedPayload, PayloadSample
from gopro_gps_batch.processing.gpmf_decode import (
    _parse_gpsu,
    extract_payload,
    extract_streams,
    list_streams,
)


def payload_of(*gpmf: bytes, duration: float = 1.0) -> ExtractedPayload:
    return ExtractedPayload(
        timescale=1000,
        samples=[
            PayloadSample(data=d, cts=i * duration, duration=duration)
            for i, d in enumerate(gpmf)
        ],
    )


class TestExtractPayload:
    """Test pulling GPMF samples out of the container"""

    def test_skips_video_track(self):
        payload = extract_payload(gps_mp4(seconds=3))

        assert payload.timescale == 1000
        assert len(payload.samples) == 3
        assert all(s.data.startswith(b"DEVC") for s in payload.samples)

    def test_sample_timing(self):
        payload = extract_payload(gps_mp4(seconds=3))
        assert [s.cts for s in payload.samples] == pytest.approx([0.0, 1.001, 2.002])
        assert all(s.duration == pytest.approx(1.001) for s in payload.samples)

    def test_isolated_container(self):
        payload = extract_payload(gps_mp4(seconds=2, with_video=False))
        assert len(payload.samples) == 2

    def test_matches_by_handler_name(self):
        data = build_mp4([devc()], sample_format=b"data", handler_name=b"GoPro MET")
        assert len(extract_payload(data).samples) == 1

    def test_no_moov(self):
        with pytest.raises(TelemetryDecodeError):
            extract_payload(b"\x00\x00\x00\x10ftypmp41\x00\x00\x00\x00")

    def test_no_telemetry_track(self):
        data = build_mp4([devc()], sample_format=b"avc1", handler_name=b"GoPro AVC")
        with pytest.raises(TelemetryDecodeError):
            extract_payload(data)

    def test_sample_past_end_of_file(self):
        data = bytearray(gps_mp4(seconds=2))
        # First chunk offset of the telemetry track (last stco in the file)
        first_offset = data.rindex(b"stco") + 12
        data[first_offset : first_offset + 4] = struct.pack(">I", len(data) + 100)
        with pytest.raises(TelemetryDecodeError):
            extract_payload(bytes(data))


class TestListStreams:
    """Test the stream catalog (list mode)"""

    def test_catalog(self):
        catalog = list_streams(extract_payload(gps_mp4()))

        assert list(catalog.devices) == ["1"]
        assert catalog.devices["1"].device_name == "HERO9 Black"
        assert catalog.devices["1"].streams == ["GPS5", "ACCL", "GYRO"]

    def test_no_gps(self):
        catalog = list_streams(extract_payload(imu_only_mp4()))
        assert catalog.keys() == ["ACCL", "GYRO"]

    def test_multiple_devices(self):
        accl = nest("STRM", numbers("ACCL", "s", "hhh", [(1, 2, 3)]))
        gyro = nest("STRM", numbers("GYRO", "s", "hhh", [(1, 2, 3)]))
        catalog = list_streams(payload_of(
            devc(accl, device_id=1, device_name="Camera"),
            devc(gyro, device_id=2, device_name="Sensor"),
        ))
        assert catalog.devices["1"].streams == ["ACCL"]
        assert catalog.devices["2"].device_name == "Sensor"
        assert catalog.keys() == ["ACCL", "GYRO"]

    def test_truncated_klv(self):
        broken = b"DEVC\x00\x04\x00\x10" + b"\x00" * 8
        with pytest.raises(TelemetryDecodeError):
            list_streams(payload_of(broken))


class TestExtractStreams:
    """Test decoding selected streams (extract mode)"""

    def test_only_requested_streams(self):
        result = extract_streams(extract_payload(gps_mp4()), ["GPS5"])
        assert list(result.devices["1"].streams) == ["GPS5"]

    def test_gps5_values(self):
        result = extract_streams(extract_payload(gps_mp4(seconds=2)), ["GPS5"])
        gps5 = result.devices["1"].streams["GPS5"]

        assert gps5.name.startswith("GPS")
        assert gps5.units == ["deg", "deg", "m", "m/s", "m/s"]
        assert len(gps5.samples) == 4

        first = gps5.samples[0]
        assert first.value == pytest.approx([52.27, 20.91, 120.5, 10.0, 10.5])
        assert first.cts == 0.0
        assert first.date == "2025-05-08T10:48:22.180000+00:00"
        assert first.sticky == {"fix": 3.0, "precision": 150.0}

    def test_samples_spread_over_payload_duration(self):
        result = extract_streams(extract_payload(gps_mp4(seconds=2)), ["GPS5"])
        samples = result.devices["1"].streams["GPS5"].samples

        assert [s.cts for s in samples] == pytest.approx([0.0, 500.5, 1001.0, 1501.5])
        assert samples[1].date == "2025-05-08T10:48:22.680500+00:00"
        assert samples[2].date == "2025-05-08T10:48:23.180000+00:00"

    def test_single_scal_applies_to_all_axes(self):
        result = extract_streams(extract_payload(gps_mp4()), ["ACCL"])
        accl = result.devices["1"].streams["ACCL"]
        assert accl.samples[0].value == pytest.approx([1.0, 0.0, -10.0])
        assert accl.units == ["m/s2"]
        assert accl.samples[0].date is None

    def test_complex_type(self):
        rows = [(522700000, 209100000, 120500, 10000, 10500, 9000, 1200, 150, 3)]
        strm = nest(
            "STRM",
            numbers("SCAL", "l", "i", [(s,) for s in (10_000_000, 10_000_000, 1000, 1000, 100, 1, 1000, 100, 1)]),
            string("TYPE", "lllllllSS"),
            klv("GPS9", "?", struct.calcsize(">iiiiiiiHH"), 1,
                b"".join(struct.pack(">iiiiiiiHH", *r) for r in rows)),
        )
        result = extract_streams(payload_of(devc(strm)), ["GPS9"])
        value = result.devices["1"].streams["GPS9"].samples[0].value

        assert value[:3] == pytest.approx([52.27, 20.91, 120.5])
        assert value[-1] == 3.0

    def test_missing_streams_are_omitted(self):
        result = extract_streams(extract_payload(imu_only_mp4()), ["GPS5"])
        assert result.devices == {}
        assert result.sample_count() == 0

    def test_deterministic(self):
        data = gps_mp4(seconds=3)
        a = extract_streams(extract_payload(data), ["GPS5"])
        b = extract_streams(extract_payload(data), ["GPS5"])
        assert a.model_dump_json() == b.model_dump_json()


class TestParseGpsu:
    def test_valid(self):
        dt = _parse_gpsu("250508104822.180")
        assert dt.isoformat() == "2025-05-08T10:48:22.180000+00:00"

    def test_invalid(self):
        assert _parse_gpsu("garbage") is None
        assert _parse_gpsu("251399104822.180") is None
