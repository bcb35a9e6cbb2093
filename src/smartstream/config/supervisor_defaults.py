"""Supervisor tunables.

Every numeric threshold used by the lifecycle controller and health monitor
lives here. The values were tuned empirically against consumer IP cameras and
should be read as policy defaults; override them through SMARTSTREAM_*
environment variables (see config_io.load_supervisor_settings).
"""
from typing import Final

from pydantic import BaseModel, Field

# ============================================================================
# Process Control
# ============================================================================

DEFAULT_FFMPEG_BINARY: Final[str] = "ffmpeg"
"""Transcoder executable (resolved through PATH)."""

KILL_GRACE_SECONDS: Final[float] = 5.0
"""SIGTERM to SIGKILL escalation window."""

START_TIMEOUT_SECONDS: Final[float] = 10.0
"""Maximum time a job may stay in Starting."""

START_SETTLE_SECONDS: Final[float] = 1.0
"""Alive this long without progress output counts as Running."""

RESTART_CLEANUP_DELAY_SECONDS: Final[float] = 2.0
"""Pause between stopping the old process and starting its replacement."""

# ============================================================================
# Autostart Recovery
# ============================================================================

BACKOFF_BASE_SECONDS: Final[float] = 1.0
"""First recovery delay; doubled per retry."""

BACKOFF_CAP_SECONDS: Final[float] = 30.0
"""Upper bound on the recovery delay."""

MAX_AUTOSTART_RETRIES: Final[int] = 5
"""Automatic recoveries allowed before tracking is abandoned."""

RECONCILE_INTERVAL_SECONDS: Final[float] = 60.0
"""Period of the reconciliation sweep."""

RECONCILE_STALE_SECONDS: Final[float] = 300.0
"""Tracked jobs idle this long without a retry are re-triggered."""

# ============================================================================
# Health Monitor
# ============================================================================

MONITOR_INTERVAL_SECONDS: Final[float] = 30.0
MONITOR_WARMUP_SECONDS: Final[float] = 60.0
LOW_FPS_THRESHOLD: Final[float] = 7.0
ABNORMAL_SPEED_THRESHOLD: Final[float] = 2.0
ABNORMAL_SPEED_TICKS: Final[int] = 2
EXTREME_SPEED_THRESHOLD: Final[float] = 5.0
STUCK_FRAME_TICKS: Final[int] = 3
STUCK_FRAME_SECONDS: Final[float] = 30.0
SEVERE_STUCK_MULTIPLIER: Final[float] = 4.0
NO_PROGRESS_SECONDS: Final[float] = 60.0
RESTART_COOLDOWN_SECONDS: Final[float] = 60.0

# ============================================================================
# Bookkeeping
# ============================================================================

FINISHED_HISTORY_SIZE: Final[int] = 100
"""Finished jobs kept for status lookups."""

RECENT_OUTPUT_LINES: Final[int] = 50
"""Non-progress stderr lines kept per job for error classification."""

ORPHAN_KILL_WAIT_SECONDS: Final[float] = 3.0
"""Wait after SIGTERM before killing orphaned transcoders."""

NETWORK_TEST_TIMEOUT_SECONDS: Final[float] = 5.0
"""Per-request timeout for platform reachability checks."""

INPUT_PROBE_TIMEOUT_SECONDS: Final[float] = 15.0
"""Overall timeout for a standalone input connectivity test."""


# ============================================================================
# Settings Model
# ============================================================================

class SupervisorSettings(BaseModel):
    """Resolved supervisor configuration.

    Constructed with defaults in tests; production values come from
    config_io.load_supervisor_settings().
    """

    ffmpeg_binary: str = Field(default=DEFAULT_FFMPEG_BINARY, min_length=1)

    kill_grace_seconds: float = Field(default=KILL_GRACE_SECONDS, ge=0)
    start_timeout_seconds: float = Field(default=START_TIMEOUT_SECONDS, gt=0)
    start_settle_seconds: float = Field(default=START_SETTLE_SECONDS, ge=0)
    restart_cleanup_delay_seconds: float = Field(default=RESTART_CLEANUP_DELAY_SECONDS, ge=0)

    backoff_base_seconds: float = Field(default=BACKOFF_BASE_SECONDS, ge=0)
    backoff_cap_seconds: float = Field(default=BACKOFF_CAP_SECONDS, ge=0)
    max_autostart_retries: int = Field(default=MAX_AUTOSTART_RETRIES, ge=0)
    reconcile_interval_seconds: float = Field(default=RECONCILE_INTERVAL_SECONDS, gt=0)
    reconcile_stale_seconds: float = Field(default=RECONCILE_STALE_SECONDS, ge=0)

    monitor_interval_seconds: float = Field(default=MONITOR_INTERVAL_SECONDS, gt=0)
    monitor_warmup_seconds: float = Field(default=MONITOR_WARMUP_SECONDS, ge=0)
    low_fps_threshold: float = Field(default=LOW_FPS_THRESHOLD, ge=0)
    abnormal_speed_threshold: float = Field(default=ABNORMAL_SPEED_THRESHOLD, gt=0)
    abnormal_speed_ticks: int = Field(default=ABNORMAL_SPEED_TICKS, ge=1)
    extreme_speed_threshold: float = Field(default=EXTREME_SPEED_THRESHOLD, gt=0)
    stuck_frame_ticks: int = Field(default=STUCK_FRAME_TICKS, ge=1)
    stuck_frame_seconds: float = Field(default=STUCK_FRAME_SECONDS, gt=0)
    severe_stuck_multiplier: float = Field(default=SEVERE_STUCK_MULTIPLIER, ge=1)
    no_progress_seconds: float = Field(default=NO_PROGRESS_SECONDS, gt=0)
    restart_cooldown_seconds: float = Field(default=RESTART_COOLDOWN_SECONDS, ge=0)

    finished_history_size: int = Field(default=FINISHED_HISTORY_SIZE, ge=0)
    recent_output_lines: int = Field(default=RECENT_OUTPUT_LINES, ge=1)
    orphan_kill_wait_seconds: float = Field(default=ORPHAN_KILL_WAIT_SECONDS, ge=0)
    network_test_timeout_seconds: float = Field(default=NETWORK_TEST_TIMEOUT_SECONDS, gt=0)
    input_probe_timeout_seconds: float = Field(default=INPUT_PROBE_TIMEOUT_SECONDS, gt=0)

    @property
    def severe_stuck_seconds(self) -> float:
        """Frame-stall duration that triggers an out-of-band restart."""
        return self.stuck_frame_seconds * self.severe_stuck_multiplier

    def backoff_delay(self, retry_count: int) -> float:
        """Recovery delay for the given retry count: min(base * 2^n, cap)."""
        return min(self.backoff_base_seconds * (2 ** retry_count), self.backoff_cap_seconds)
