"""
GoPro GPS Batch Scripts Package

Command-line entry points for the GPS telemetry extractor.

Available scripts:
- extract_gps_telemetry: Write GPS telemetry JSON next to every MP4 in a directory
"""

__version__ = "1.0.0"
__all__ = ["extract_gps_telemetry"]
