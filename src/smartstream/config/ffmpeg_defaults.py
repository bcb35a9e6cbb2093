"""FFmpeg default parameter configuration.

Single source of truth for the flags every relay job is launched with and the
fixed ingest endpoints of the named streaming platforms.

Argv sections (in order):
    GLOBAL -> INPUT -> [silent audio] -> video -> audio -> OUTPUT -> extras -> URL
"""
from typing import Final

# ============================================================================
# Global / Input Parameters
# ============================================================================

GLOBAL_FFMPEG_PARAMS: Final[list[str]] = [
    '-hide_banner',
    '-nostdin',
    '-loglevel', 'warning',
    '-stats',
]
"""Process-wide flags. -stats keeps progress lines on stderr at warning level."""

INPUT_TIMEOUT_US: Final[int] = 10_000_000
"""Socket I/O timeout for the RTSP read (microseconds)."""

ANALYZE_DURATION_US: Final[int] = 5_000_000
"""Upper bound on input stream analysis (microseconds)."""

PROBE_SIZE_BYTES: Final[int] = 5_000_000
"""Upper bound on bytes read while probing the input."""

INPUT_FFMPEG_PARAMS: Final[list[str]] = [
    '-rtsp_transport', 'tcp',
    '-fflags', '+genpts',
    '-re',
    '-timeout', str(INPUT_TIMEOUT_US),
    '-analyzeduration', str(ANALYZE_DURATION_US),
    '-probesize', str(PROBE_SIZE_BYTES),
]
"""Input reliability flags applied before -i."""

# ============================================================================
# Audio / Video Parameters
# ============================================================================

SILENT_AUDIO_SOURCE: Final[str] = 'anullsrc=channel_layout=stereo:sample_rate=44100'
"""lavfi source used when the platform needs audio and the camera has none."""

AUDIO_ENCODE_PARAMS: Final[list[str]] = [
    '-c:a', 'aac',
    '-b:a', '128k',
    '-ar', '44100',
]
"""Audio encoding for synthesized or passed-through tracks."""

VIDEO_PASSTHROUGH_CODEC: Final[str] = 'copy'
"""Default video codec: no re-encode."""

REENCODE_PRESET: Final[str] = 'veryfast'
"""x264-style preset used when re-encoding is requested."""

DEFAULT_GOP_SECONDS: Final[int] = 2
"""Keyframe interval for re-encoded video, in seconds."""

# ============================================================================
# Output Parameters
# ============================================================================

OUTPUT_FFMPEG_PARAMS: Final[list[str]] = [
    '-f', 'flv',
    '-flvflags', 'no_duration_filesize',
    '-reconnect', '1',
    '-reconnect_streamed', '1',
    '-reconnect_delay_max', '5',
]
"""FLV muxer and bounded-backoff TCP reconnection on the output write."""

# ============================================================================
# Platforms
# ============================================================================

PLATFORM_ENDPOINTS: Final[dict[str, str]] = {
    'youtube': 'rtmp://a.rtmp.youtube.com/live2',
    'twitch': 'rtmp://live.twitch.tv/app',
}
"""Fixed RTMP ingest base per named platform (stream key is appended)."""

PLATFORM_WEB_ENDPOINTS: Final[dict[str, str]] = {
    'youtube': 'https://www.youtube.com',
    'twitch': 'https://www.twitch.tv',
}
"""HTTP endpoints used for reachability checks."""

AUDIO_REQUIRED_PLATFORMS: Final[frozenset[str]] = frozenset({'youtube', 'twitch'})
"""Platforms that reject video-only FLV."""

# ============================================================================
# Helper Functions
# ============================================================================

def get_baseline_params() -> list[str]:
    """Get the global and input flags shared by every argv."""
    return list(GLOBAL_FFMPEG_PARAMS) + list(INPUT_FFMPEG_PARAMS)


def get_ingest_host(platform: str) -> str | None:
    """Get the RTMP ingest hostname for a named platform.

    Args:
        platform: Platform name (youtube/twitch)

    Returns:
        Hostname, or None for unknown platforms
    """
    endpoint = PLATFORM_ENDPOINTS.get(platform)
    if endpoint is None:
        return None
    return endpoint.split('://', 1)[1].split('/', 1)[0].split(':', 1)[0]
