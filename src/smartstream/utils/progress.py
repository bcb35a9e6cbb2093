"""FFmpeg progress line parser.

FFmpeg's -stats output looks like:
    frame=  100 fps= 24 q=28.0 size=     512kB time=00:00:04.10 bitrate=1024.0kbits/s speed=1.02x

Each token is optional per line; absence means "no update", not zero.
Parsing never raises: a malformed value is treated as absent (numeric
fields) or as 0 (speed multiplier).

Note on Logging:
    Pure functions, no logging. The supervisor logs FFmpeg chatter.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Final

# ============================================================================
# Patterns
# ============================================================================

FRAME_PATTERN: Final[re.Pattern[str]] = re.compile(r'(?<![\w])frame=\s*(\S+)')
FPS_PATTERN: Final[re.Pattern[str]] = re.compile(r'(?<![\w])fps=\s*(\S+)')
SIZE_PATTERN: Final[re.Pattern[str]] = re.compile(r'(?<![\w])L?size=\s*(\S+)')
TIME_PATTERN: Final[re.Pattern[str]] = re.compile(r'(?<![\w])time=\s*(\S+)')
BITRATE_PATTERN: Final[re.Pattern[str]] = re.compile(r'(?<![\w])bitrate=\s*(\S+)')
SPEED_PATTERN: Final[re.Pattern[str]] = re.compile(r'(?<![\w])speed=\s*(\S*)')


@dataclass(frozen=True)
class MetricUpdate:
    """Fields recognized on a single progress line (None = not present)."""

    frame: int | None = None
    fps: float | None = None
    size: str | None = None
    time: str | None = None
    bitrate: str | None = None
    speed: str | None = None
    speed_multiplier: float | None = None


# ============================================================================
# Parsing
# ============================================================================

def parse_speed(value: str | None) -> float:
    """Parse an FFmpeg speed value ("1.5x") into a multiplier.

    Examples:
        >>> parse_speed("1.02x")
        1.02
        >>> parse_speed("N/A")
        0.0
        >>> parse_speed("xx")
        0.0
    """
    if not value:
        return 0.0
    text = value.strip().lower()
    if text.endswith("x"):
        text = text[:-1]
    try:
        speed = float(text)
    except ValueError:
        return 0.0
    if math.isnan(speed) or math.isinf(speed) or speed < 0:
        return 0.0
    return speed


def _parse_float(value: str) -> float | None:
    try:
        number = float(value)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _parse_int(value: str) -> int | None:
    try:
        return int(value)
    except ValueError:
        return None


def _search(pattern: re.Pattern[str], line: str) -> str | None:
    match = pattern.search(line)
    return match.group(1) if match else None


def parse_progress_line(line: str) -> MetricUpdate | None:
    """Parse one line of FFmpeg diagnostic output.

    Args:
        line: Decoded stderr line

    Returns:
        MetricUpdate, or None when the line carries no progress token
    """
    if not line or "=" not in line:
        return None

    raw_frame = _search(FRAME_PATTERN, line)
    raw_fps = _search(FPS_PATTERN, line)
    size = _search(SIZE_PATTERN, line)
    time = _search(TIME_PATTERN, line)
    bitrate = _search(BITRATE_PATTERN, line)
    speed = _search(SPEED_PATTERN, line)

    if all(token is None for token in (raw_frame, raw_fps, size, time, bitrate, speed)):
        return None

    return MetricUpdate(
        frame=_parse_int(raw_frame) if raw_frame is not None else None,
        fps=_parse_float(raw_fps) if raw_fps is not None else None,
        size=size,
        time=time,
        bitrate=bitrate,
        speed=speed,
        speed_multiplier=parse_speed(speed) if speed is not None else None,
    )
