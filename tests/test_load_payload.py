"""Tests for the size guard and the full-file loader"""

import errno
from pathlib import Path

import pytest
from helpers.mp4_builder import gps_mp4

from gopro_gps_batch.exceptions import OutOfMemoryLoadError, TelemetryDecodeError
from gopro_gps_batch.processing import load_payload
from gopro_gps_batch.processing.load_payload import (
    is_oversized,
    is_out_of_memory,
    load_full_file,
    read_payload_source,
)

PATTERNS = ["out of memory", "cannot allocate memory"]


class TestSizeGuard:
    def test_threshold_is_inclusive(self, tmp_path):
        path = tmp_path / "a.mp4"
        path.write_bytes(b"x" * 100)

        assert is_oversized(path, 100)
        assert is_oversized(path, 99)
        assert not is_oversized(path, 101)

    def test_sparse_multi_gigabyte_file(self, tmp_path):
        path = tmp_path / "big.mp4"
        with open(path, "wb") as f:
            f.truncate(5_000_000_000)
        assert is_oversized(path, 4_000_000_000)


class TestOutOfMemoryClassification:
    def test_memory_error(self):
        assert is_out_of_memory(MemoryError())

    def test_enomem(self):
        assert is_out_of_memory(OSError(errno.ENOMEM, "Cannot allocate memory"))

    def test_message_patterns(self):
        assert is_out_of_memory(RuntimeError("CUDA Out Of Memory"), PATTERNS)
        assert not is_out_of_memory(RuntimeError("CUDA Out Of Memory"))

    def test_other_errors(self):
        assert not is_out_of_memory(FileNotFoundError("nope"), PATTERNS)
        assert not is_out_of_memory(ValueError("bad value"), PATTERNS)


class TestLoadFullFile:
    def test_reads_everything(self, tmp_path):
        path = tmp_path / "a.mp4"
        path.write_bytes(b"abc" * 10)
        assert load_full_file(path) == b"abc" * 10

    def test_memory_error_is_classified(self, tmp_path, monkeypatch):
        path = tmp_path / "a.mp4"
        path.write_bytes(b"abc")

        def boom(self):
            raise MemoryError()

        monkeypatch.setattr(Path, "read_bytes", boom)
        with pytest.raises(OutOfMemoryLoadError):
            load_full_file(path, PATTERNS)

    def test_pattern_matched_error_is_classified(self, tmp_path, monkeypatch):
        path = tmp_path / "a.mp4"
        path.write_bytes(b"abc")

        def boom(self):
            raise RuntimeError("Array buffer allocation failed")

        monkeypatch.setattr(Path, "read_bytes", boom)
        with pytest.raises(OutOfMemoryLoadError):
            load_full_file(path, ["array buffer allocation failed"])

    def test_other_errors_propagate(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_full_file(tmp_path / "missing.mp4", PATTERNS)


class TestReadPayloadSource:
    def test_extracts_payloads(self, tmp_path):
        path = tmp_path / "a.mp4"
        path.write_bytes(gps_mp4(seconds=3))
        payload = read_payload_source(path, PATTERNS)
        assert len(payload.samples) == 3

    def test_extraction_memory_error_is_classified(self, tmp_path, monkeypatch):
        path = tmp_path / "a.mp4"
        path.write_bytes(gps_mp4())

        def boom(data):
            raise MemoryError()

        monkeypatch.setattr(load_payload, "extract_payload", boom)
        with pytest.raises(OutOfMemoryLoadError):
            read_payload_source(path, PATTERNS)

    def test_not_a_container(self, tmp_path):
        path = tmp_path / "a.mp4"
        path.write_bytes(b"\x00" * 64)
        with pytest.raises(TelemetryDecodeError):
            read_payload_source(path, PATTERNS)
