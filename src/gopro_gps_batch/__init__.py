"""Batch extraction of GPS telemetry from GoPro MP4 files."""

__version__ = "1.0.0"
