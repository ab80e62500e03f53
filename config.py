"""Server configuration loaded from a JSON file."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import json
import logging
import pathlib


log = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.json"

# Defaults give the fixed libx265/aac encoder invocation
_DEFAULT_FFMPEG = "ffmpeg"
_DEFAULT_VIDEO_CODEC = "libx265"
_DEFAULT_VIDEO_BITRATE = "1000k"
_DEFAULT_AUDIO_CODEC = "aac"
_DEFAULT_AUDIO_BITRATE = "128k"
_DEFAULT_CHUNK_SIZE = 16 * 1024
_DEFAULT_SHUTDOWN_TIMEOUT_SEC = 10.0

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConfigError(Exception):
    """Configuration file is missing, unreadable, or malformed."""


@dataclass(frozen=True, slots=True)
class Config:
    host: str
    port: int
    input_dir: pathlib.Path
    output_dir: pathlib.Path
    widths: frozenset[int]
    ffmpeg: str = _DEFAULT_FFMPEG
    video_codec: str = _DEFAULT_VIDEO_CODEC
    video_bitrate: str = _DEFAULT_VIDEO_BITRATE
    audio_codec: str = _DEFAULT_AUDIO_CODEC
    audio_bitrate: str = _DEFAULT_AUDIO_BITRATE
    chunk_size: int = _DEFAULT_CHUNK_SIZE
    shutdown_timeout: float = _DEFAULT_SHUTDOWN_TIMEOUT_SEC
    log_level: str = "INFO"


def _require(data: Mapping[str, Any], key: str) -> Any:
    if key not in data:
        raise ConfigError(f"Missing required key {key!r}")
    return data[key]


def _as_int(key: str, value: Any) -> int:
    # bool is an int subclass but never a meaningful port or width
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    return value


def _as_str(key: str, value: Any, allow_empty: bool = False) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string, got {value!r}")
    if not allow_empty and not value.strip():
        raise ConfigError(f"{key} must not be empty")
    return value


def _as_positive_number(key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{key} must be a positive number, got {value!r}")
    return float(value)


def _parse_widths(value: Any) -> frozenset[int]:
    if not isinstance(value, list) or not value:
        raise ConfigError(f"Widths must be a non-empty array of integers, got {value!r}")
    widths = set()
    for item in value:
        width = _as_int("Widths", item)
        if width <= 0:
            raise ConfigError(f"Widths entries must be positive, got {width}")
        widths.add(width)
    return frozenset(widths)


def parse_config(data: Any) -> Config:
    """Validate a decoded JSON document and build a Config.

    Host, Port, InputDir, OutputDir and Widths are required; encoder and
    runtime keys are optional and fall back to the defaults above.
    """
    if not isinstance(data, dict):
        raise ConfigError("Config must be a JSON object")

    port = _as_int("Port", _require(data, "Port"))
    if not 1 <= port <= 65535:
        raise ConfigError(f"Port must be in 1..65535, got {port}")

    chunk_size = _as_int("ChunkSize", data.get("ChunkSize", _DEFAULT_CHUNK_SIZE))
    if chunk_size <= 0:
        raise ConfigError(f"ChunkSize must be positive, got {chunk_size}")

    log_level = _as_str("LogLevel", data.get("LogLevel", "INFO")).upper()
    if log_level not in _LOG_LEVELS:
        raise ConfigError(f"LogLevel must be one of {sorted(_LOG_LEVELS)}, got {log_level!r}")

    return Config(
        host=_as_str("Host", _require(data, "Host"), allow_empty=True),
        port=port,
        input_dir=pathlib.Path(_as_str("InputDir", _require(data, "InputDir"))),
        output_dir=pathlib.Path(_as_str("OutputDir", _require(data, "OutputDir"))),
        widths=_parse_widths(_require(data, "Widths")),
        ffmpeg=_as_str("FFmpeg", data.get("FFmpeg", _DEFAULT_FFMPEG)),
        video_codec=_as_str("VideoCodec", data.get("VideoCodec", _DEFAULT_VIDEO_CODEC)),
        video_bitrate=_as_str("VideoBitrate", data.get("VideoBitrate", _DEFAULT_VIDEO_BITRATE)),
        audio_codec=_as_str("AudioCodec", data.get("AudioCodec", _DEFAULT_AUDIO_CODEC)),
        audio_bitrate=_as_str("AudioBitrate", data.get("AudioBitrate", _DEFAULT_AUDIO_BITRATE)),
        chunk_size=chunk_size,
        shutdown_timeout=_as_positive_number(
            "ShutdownTimeout", data.get("ShutdownTimeout", _DEFAULT_SHUTDOWN_TIMEOUT_SEC)
        ),
        log_level=log_level,
    )


def load_config(path: str | pathlib.Path) -> Config:
    """Read and validate the JSON config file. Raises ConfigError."""
    config_file = pathlib.Path(path)
    try:
        text = config_file.read_text()
    except OSError as e:
        raise ConfigError(f"Config file not found or unreadable: {config_file}: {e}") from e
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid config file {config_file}: {e}") from e
    config = parse_config(data)
    log.debug("Loaded config from %s: widths=%s", config_file, sorted(config.widths))
    return config
