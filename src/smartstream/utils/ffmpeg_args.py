"""FFmpeg argument builder for relay jobs.

Pure function from StreamConfig to an ordered argv plus the resolved
destination URL. No I/O; the same config always yields the same argv.

Command structure:
    1. Binary + global flags
    2. Input reliability flags, -i <input>
    3. Silent audio source (platforms that require audio, camera without)
    4. Video: pass-through copy or re-encode with quality hints
    5. Audio: AAC or -an
    6. Output: FLV muxer + reconnect flags
    7. Caller extras (de-duplicated, baseline wins)
    8. Destination URL (always last)

A config without a destination stops after step 2; that input-only argv is
what connectivity probes extend with their own null sink.

Logging Strategy:
    DEBUG - Dropped colliding extras, resolved destination
    WARN  - Stray positional tokens in extras
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from ..config.ffmpeg_defaults import (
    AUDIO_ENCODE_PARAMS,
    AUDIO_REQUIRED_PLATFORMS,
    DEFAULT_GOP_SECONDS,
    OUTPUT_FFMPEG_PARAMS,
    PLATFORM_ENDPOINTS,
    REENCODE_PRESET,
    SILENT_AUDIO_SOURCE,
    VIDEO_PASSTHROUGH_CODEC,
    get_baseline_params,
)
from ..exceptions import ConfigError
from ..models.stream import PlatformType, StreamConfig
from .strings import mask_output_url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FFmpegCommand:
    """Built command: argv for the launcher and the resolved destination."""

    argv: list[str]
    output_url: str | None


# ============================================================================
# Destination Resolution
# ============================================================================

def _platform_url(platform: PlatformType, stream_key: str | None, server_url: str | None) -> str:
    if platform is PlatformType.CUSTOM:
        if not server_url:
            raise ConfigError("Custom platform requires a server URL")
        if stream_key:
            return f"{server_url}/{stream_key}"
        return server_url

    if not stream_key:
        raise ConfigError(f"Stream key is required for platform '{platform.value}'")
    return f"{PLATFORM_ENDPOINTS[platform.value]}/{stream_key}"


def resolve_output_url(config: StreamConfig) -> str | None:
    """Resolve the destination URL of a config.

    Precedence: platform > youtube_stream_key > output_url > none.

    Raises:
        ConfigError: Named platform without a key, or custom without a server
    """
    if config.platform is not None:
        return _platform_url(
            config.platform.type,
            config.platform.stream_key,
            config.platform.server_url,
        )
    if config.youtube_stream_key:
        return _platform_url(PlatformType.YOUTUBE, config.youtube_stream_key, None)
    if config.output_url:
        return config.output_url
    return None


def _destination_platform(config: StreamConfig) -> str | None:
    if config.platform is not None:
        return config.platform.type.value
    if config.youtube_stream_key:
        return PlatformType.YOUTUBE.value
    return None


def needs_silent_audio(config: StreamConfig) -> bool:
    """True when the destination rejects video-only FLV and the camera has no audio."""
    return _destination_platform(config) in AUDIO_REQUIRED_PLATFORMS and not config.input_has_audio


# ============================================================================
# Extras De-duplication
# ============================================================================

def _is_flag(token: str) -> bool:
    # "-1" and "-0.5" are values, not flags
    return len(token) > 1 and token.startswith("-") and not token[1].isdigit() and token[1] != "."


def group_extra_args(extra_args: Sequence[str]) -> list[tuple[str, str | None]]:
    """Group raw tokens into (flag, value) pairs.

    A flag takes the following token as its value unless that token is
    itself a flag. Tokens that are neither flags nor values are dropped.
    """
    pairs: list[tuple[str, str | None]] = []
    i = 0
    while i < len(extra_args):
        token = extra_args[i]
        if not _is_flag(token):
            logger.warning(f"Dropping stray FFmpeg argument: {token!r}")
            i += 1
            continue
        if i + 1 < len(extra_args) and not _is_flag(extra_args[i + 1]):
            pairs.append((token, extra_args[i + 1]))
            i += 2
        else:
            pairs.append((token, None))
            i += 1
    return pairs


def merge_extra_args(baseline: Sequence[str], extra_args: Sequence[str]) -> list[str]:
    """Merge caller extras into a baseline argv.

    Extras whose flag already appears in the baseline are dropped. Among
    the remaining extras the last occurrence of a flag wins, placed where
    the flag first appeared.

    Returns:
        Flattened extras to append after the baseline
    """
    baseline_flags = {token for token in baseline if _is_flag(token)}
    merged: dict[str, str | None] = {}

    for flag, value in group_extra_args(extra_args):
        if flag in baseline_flags:
            logger.debug(f"Ignoring extra {flag}: baseline flag cannot be overridden")
            continue
        merged[flag] = value

    flattened: list[str] = []
    for flag, value in merged.items():
        flattened.append(flag)
        if value is not None:
            flattened.append(value)
    return flattened


# ============================================================================
# Command Building
# ============================================================================

def _video_params(config: StreamConfig) -> list[str]:
    if not config.reencodes_video:
        return ["-c:v", VIDEO_PASSTHROUGH_CODEC]

    params = ["-c:v", config.video_codec, "-preset", REENCODE_PRESET]
    if config.fps:
        params.extend(["-r", str(config.fps)])
    if config.resolution:
        params.extend(["-s", config.resolution])
    if config.bitrate:
        params.extend(["-b:v", config.bitrate, "-maxrate", config.bitrate, "-bufsize", _double_bitrate(config.bitrate)])
    params.extend(["-g", str((config.fps or 30) * DEFAULT_GOP_SECONDS)])
    return params


def _double_bitrate(bitrate: str) -> str:
    """Rate-control buffer of two seconds at the target bitrate."""
    suffix = bitrate[-1] if bitrate[-1].isalpha() else ""
    number = float(bitrate[:-1] if suffix else bitrate) * 2
    return f"{number:g}{suffix}"


def build_ffmpeg_command(config: StreamConfig, *, binary: str = "ffmpeg") -> FFmpegCommand:
    """Build the FFmpeg argv for a relay job.

    Args:
        config: Job configuration
        binary: Transcoder executable

    Returns:
        FFmpegCommand with argv and resolved destination (None for probes)

    Raises:
        ConfigError: Destination cannot be resolved

    Example:
        >>> cmd = build_ffmpeg_command(StreamConfig(
        ...     input_url="rtsp://cam/stream",
        ...     platform=PlatformTarget(type="twitch", stream_key="live_123"),
        ... ))
        >>> cmd.argv[-1]
        'rtmp://live.twitch.tv/app/live_123'
    """
    output_url = resolve_output_url(config)

    argv = [binary, *get_baseline_params(), "-i", config.effective_input_url]
    if output_url is None:
        logger.debug("No destination configured, building input-only command")
        return FFmpegCommand(argv=argv, output_url=None)

    silent_audio = needs_silent_audio(config)
    if silent_audio:
        argv.extend(["-f", "lavfi", "-i", SILENT_AUDIO_SOURCE])
        argv.extend(["-map", "0:v:0", "-map", "1:a:0"])

    argv.extend(_video_params(config))

    if silent_audio or config.input_has_audio:
        argv.extend(AUDIO_ENCODE_PARAMS)
    else:
        argv.append("-an")

    argv.extend(OUTPUT_FFMPEG_PARAMS)
    argv.extend(merge_extra_args(argv, config.extra_args))
    argv.append(output_url)

    logger.debug(f"Built FFmpeg command ({len(argv)} args) -> {mask_output_url(output_url)}")
    return FFmpegCommand(argv=argv, output_url=output_url)
