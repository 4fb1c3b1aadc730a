import pathlib
import typing

import pydantic_settings


class GoProGPSConfig(pydantic_settings.BaseSettings):
    model_config = pydantic_settings.SettingsConfigDict(env_prefix="GOPRO_GPS_")

    # --- External tools ---
    FFPROBE: str = "ffprobe"
    FFMPEG: str = "ffmpeg"

    # Seconds; None waits for the tool indefinitely
    SUBPROCESS_TIMEOUT_S: float | None = None

    # --- Telemetry track matching ---
    TELEMETRY_CODEC: str = "gpmd"
    TELEMETRY_HANDLER: str = "gopro met"

    # Stream keys starting with this prefix (case-insensitive) are GPS data
    GPS_PREFIX: str = "GPS"

    # --- Memory safety ---
    # Units: bytes
    OVERSIZE_THRESHOLD_BYTES: int = 4_000_000_000

    # Lower-case substrings of error messages that indicate memory exhaustion
    OOM_ERROR_PATTERNS: list[str] = [
        "out of memory",
        "cannot allocate memory",
        "memory allocation failed",
        "array buffer allocation failed",
    ]

    # Isolated tracks land here; None means the platform temp directory
    TEMP_DIR: pathlib.Path | None = None

    # --- Output ---
    OUTPUT_SUFFIX: str = ".json"

    # "skip" writes nothing when no GPS stream exists, "catalog" writes the
    # stream catalog instead
    NO_GPS_POLICY: typing.Literal["skip", "catalog"] = "skip"


config = GoProGPSConfig()
