"""FFmpeg command building for dual-output (disk + live pipe) transcodes."""

from __future__ import annotations

from dataclasses import dataclass

import shlex

from config import Config


# Live output goes to stdout as fragmented MP4 so it can be played as it arrives
LIVE_OUTPUT = "pipe:1"
_LIVE_MOVFLAGS = "isml+frag_keyframe"
_LIVE_FORMAT = "ismv"
_DISK_MOVFLAGS = "+faststart"


@dataclass(frozen=True, slots=True)
class EncoderSettings:
    executable: str = "ffmpeg"
    video_codec: str = "libx265"
    video_bitrate: str = "1000k"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"

    @classmethod
    def from_config(cls, config: Config) -> EncoderSettings:
        return cls(
            executable=config.ffmpeg,
            video_codec=config.video_codec,
            video_bitrate=config.video_bitrate,
            audio_codec=config.audio_codec,
            audio_bitrate=config.audio_bitrate,
        )


def _build_filter_graph(width: int) -> str:
    """Scale once (height -2 keeps aspect and an even size), then split in two."""
    return f"scale={width}:-2[mid];[mid]split=2[out1][out2]"


def _build_audio_args(settings: EncoderSettings) -> list[str]:
    # "?" makes the audio map optional so silent sources still transcode
    return ["-map", "0:a?", "-c:a", settings.audio_codec, "-b:a", settings.audio_bitrate]


def _build_video_args(settings: EncoderSettings, label: str) -> list[str]:
    return ["-map", f"[{label}]", "-c:v", settings.video_codec, "-b:v", settings.video_bitrate]


def build_dual_output_cmd(
    input_path: str,
    width: int,
    output_path: str,
    settings: EncoderSettings | None = None,
) -> list[str]:
    """Build ffmpeg command producing the cache artifact and the live stream.

    One decode pass feeds two encodes: output 1 is a faststart file at
    output_path, output 2 is fragmented ismv on stdout.
    """
    settings = settings or EncoderSettings()
    cmd = [
        settings.executable,
        "-hide_banner",
        "-loglevel",
        "error",
        "-nostdin",
        "-y",
        "-i",
        input_path,
        "-filter_complex",
        _build_filter_graph(width),
    ]

    # Output 1: cache artifact
    cmd.extend(_build_audio_args(settings))
    cmd.extend(_build_video_args(settings, "out1"))
    cmd.extend(["-movflags", _DISK_MOVFLAGS, output_path])

    # Output 2: live payload
    cmd.extend(_build_audio_args(settings))
    cmd.extend(_build_video_args(settings, "out2"))
    cmd.extend(["-movflags", _LIVE_MOVFLAGS, "-f", _LIVE_FORMAT, LIVE_OUTPUT])
    return cmd


def format_cmd(cmd: list[str]) -> str:
    """Render a command for logs so it can be pasted into a shell."""
    return shlex.join(cmd)
