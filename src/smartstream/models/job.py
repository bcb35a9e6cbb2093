"""Relay job state models.

The supervisor owns the mutable job records; everything here is either a
value carried inside a record (metrics, counters, tracking) or a snapshot
handed out to callers (JobStatus).

State machine:
    starting -> running -> stopping -> idle
    starting | running -> error
idle and error are terminal: recovery always creates a new job id.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

# ============================================================================
# Enums
# ============================================================================

class JobState(str, Enum):
    """Lifecycle state of a relay job."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    IDLE = "idle"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.IDLE, JobState.ERROR)

    @property
    def is_live(self) -> bool:
        return self in (JobState.STARTING, JobState.RUNNING)


class Verdict(str, Enum):
    """Health monitor classification of one tick."""

    HEALTHY = "healthy"
    WARN = "warn"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Condition that made the health monitor fail a job."""

    LOW_FPS = "low_fps"
    RUNAWAY_SPEED = "runaway_speed"
    STUCK_FRAME = "stuck_frame"
    NO_PROGRESS = "no_progress"


# ============================================================================
# Per-Job Values
# ============================================================================

class StreamMetrics(BaseModel):
    """Last observed transcoder progress.

    size/time/bitrate/speed are kept as FFmpeg reported them; fps and
    speed_multiplier are parsed numbers.
    """

    fps: float | None = None
    size: str | None = None
    time: str | None = None
    bitrate: str | None = None
    speed: str | None = None
    speed_multiplier: float = 0.0
    last_frame_number: int | None = None
    last_frame_observed_at: datetime | None = Field(
        default=None,
        description="Wall clock of the last frame-number change"
    )
    last_progress_at: datetime | None = None
    progress_lines: int = 0


class AnomalyCounters(BaseModel):
    """Consecutive-tick counters maintained by the health monitor."""

    consecutive_stuck_frame_checks: int = 0
    consecutive_abnormal_speed_checks: int = 0
    last_checked_frame: int | None = None


class AutostartTracking(BaseModel):
    """Recovery bookkeeping for jobs started by the fleet autostart sweep."""

    owner_id: str
    retry_count: int = 0
    last_retry_at: datetime | None = None


# ============================================================================
# Snapshots
# ============================================================================

class JobStatus(BaseModel):
    """Read-only snapshot of a relay job (credentials masked)."""

    id: str
    state: JobState
    pid: int | None = None
    input_url: str
    output_url: str | None = None
    metrics: StreamMetrics = Field(default_factory=StreamMetrics)
    counters: AnomalyCounters = Field(default_factory=AnomalyCounters)
    started_at: datetime
    ended_at: datetime | None = None
    last_restart_at: datetime | None = None
    error_message: str | None = None
    exit_code: int | None = None
    exit_signal: str | None = None
    is_autostart: bool = False
    autostart: AutostartTracking | None = None
    uptime_seconds: float = 0.0


@dataclass(frozen=True)
class Evaluation:
    """Outcome of HealthMonitor.evaluate.

    Attributes:
        verdict: healthy / warn / failed
        reason: Triggering condition for warn and failed verdicts
        counters: Updated anomaly counters to store on the job
        detail: Human-readable rationale
    """

    verdict: Verdict
    counters: AnomalyCounters
    reason: FailureReason | None = None
    detail: str = ""
