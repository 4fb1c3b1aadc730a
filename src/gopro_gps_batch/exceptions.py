"""Custom exceptions for the GoPro GPS batch extractor"""


class GoProGPSError(Exception):
    """Base exception for the GoPro GPS batch extractor"""
    pass


class NoSourceFilesError(GoProGPSError):
    """Raised when the input directory holds no MP4 files"""
    pass


class OversizedFileError(GoProGPSError):
    """Raised when a file is too large to load into memory"""
    pass


class OutOfMemoryLoadError(GoProGPSError):
    """Raised when loading a file failed because memory ran out"""
    pass


class TelemetryDecodeError(GoProGPSError):
    """Raised when the telemetry track cannot be found or decoded"""
    pass
