"""
Pytest configuration file
"""

import sys
from pathlib import Path

import pytest

# Make the src/ layout and the test helpers importable without installation
tests_dir = Path(__file__).parent
sys.path.insert(0, str(tests_dir.parent / "src"))
sys.path.insert(0, str(tests_dir))

from helpers.fake_tools import GPMD_STREAM, VIDEO_STREAM, AUDIO_STREAM, FakeTools  # noqa: E402
from helpers.mp4_builder import gps_mp4, imu_only_mp4  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    """Configuration with an isolated temp directory"""
    from gopro_gps_batch.config import GoProGPSConfig

    return GoProGPSConfig(TEMP_DIR=tmp_path / "tmp")


@pytest.fixture
def tools():
    """Fake ffprobe/ffmpeg runner"""
    return FakeTools()


@pytest.fixture
def media_dir(tmp_path):
    directory = tmp_path / "media"
    directory.mkdir()
    return directory


@pytest.fixture
def gps_clip(media_dir, tools):
    """A clip whose telemetry track can be located and isolated"""
    path = media_dir / "clip1.mp4"
    path.write_bytes(gps_mp4())
    tools.add(
        path.name,
        streams=[VIDEO_STREAM, AUDIO_STREAM, GPMD_STREAM],
        isolated=gps_mp4(with_video=False),
    )
    return path


@pytest.fixture
def imu_clip(media_dir, tools):
    """A clip with telemetry but no GPS streams"""
    path = media_dir / "imu_only.MP4"
    path.write_bytes(imu_only_mp4())
    tools.add(
        path.name,
        streams=[VIDEO_STREAM, GPMD_STREAM],
        isolated=imu_only_mp4(with_video=False),
    )
    return path
