"""Health monitor for running relay jobs.

Detects jobs whose FFmpeg process is alive but no longer relaying:
- low fps after warm-up
- runaway speed (input buffer drained faster than real time)
- stuck frame counter (by tick count, or by wall clock)
- no progress at all since start

evaluate() is a pure function of a job snapshot and the current time. The
periodic tick loop (watch) only reads snapshots and hands evaluations back
to the supervisor; it never touches job records or restarts anything itself.

check_escalation() covers the out-of-band path: a severely stuck frame or an
extreme speed value is acted on from the progress callback without waiting
for the next tick.

Logging Strategy:
    DEBUG - Per-tick verdicts
    INFO  - Monitor start/stop per job
    ERROR - Unexpected tick failures
"""
from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Final

from .. import metrics
from ..config.supervisor_defaults import SupervisorSettings
from ..models.job import (
    AnomalyCounters,
    Evaluation,
    FailureReason,
    JobState,
    JobStatus,
    Verdict,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

SIZE_NUMBER_PATTERN: Final[re.Pattern[str]] = re.compile(r'^(\d+(?:\.\d+)?)')
"""Leading number of an FFmpeg size value ("512kB", "0KiB")."""

FAILURE_PRIORITY: Final[tuple[FailureReason, ...]] = (
    FailureReason.STUCK_FRAME,
    FailureReason.NO_PROGRESS,
    FailureReason.RUNAWAY_SPEED,
    FailureReason.LOW_FPS,
)
"""Reported reason when several conditions fail on the same tick."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _size_is_initial(size: str | None) -> bool:
    if size is None:
        return True
    match = SIZE_NUMBER_PATTERN.match(size.strip())
    if match is None:
        return True
    return float(match.group(1)) == 0.0


# ============================================================================
# Health Monitor
# ============================================================================

class HealthMonitor:
    """Liveness evaluator for relay jobs.

    Attributes:
        settings: Thresholds and tick interval
    """

    def __init__(
        self,
        settings: SupervisorSettings,
        clock: Callable[[], datetime] = _utcnow
    ) -> None:
        self.settings = settings
        self._clock = clock

    # ========================================================================
    # Pure Evaluation
    # ========================================================================

    def evaluate(self, job: JobStatus, now: datetime) -> Evaluation:
        """Classify a running job.

        Counters are derived from job.counters and returned updated; the
        input snapshot is not modified.

        Args:
            job: Snapshot of a running job
            now: Evaluation time

        Returns:
            Evaluation with verdict, triggering reason and new counters
        """
        s = self.settings
        counters = job.counters.model_copy()
        m = job.metrics
        running_for = (now - job.started_at).total_seconds()
        warmed_up = running_for >= s.monitor_warmup_seconds

        failures: dict[FailureReason, str] = {}
        warnings: dict[FailureReason, str] = {}

        # Stuck frame: tick counter, plus wall clock since the last change
        frame = m.last_frame_number
        if frame is not None:
            if counters.last_checked_frame is not None and frame == counters.last_checked_frame:
                counters.consecutive_stuck_frame_checks += 1
            else:
                counters.consecutive_stuck_frame_checks = 0
            counters.last_checked_frame = frame

            stuck_ticks = counters.consecutive_stuck_frame_checks
            stalled_for = (now - (m.last_frame_observed_at or job.started_at)).total_seconds()
            if stuck_ticks >= s.stuck_frame_ticks:
                failures[FailureReason.STUCK_FRAME] = (
                    f"frame {frame} unchanged for {stuck_ticks} consecutive checks"
                )
            elif stuck_ticks > 0 and stalled_for >= s.stuck_frame_seconds:
                failures[FailureReason.STUCK_FRAME] = (
                    f"frame {frame} unchanged for {stalled_for:.0f}s"
                )
            elif stuck_ticks > 0:
                warnings[FailureReason.STUCK_FRAME] = f"frame {frame} unchanged since last check"

        # No progress at all since start
        if (
            running_for >= s.no_progress_seconds
            and not m.fps
            and _size_is_initial(m.size)
        ):
            failures[FailureReason.NO_PROGRESS] = (
                f"no progress for {running_for:.0f}s (fps={m.fps or 0}, size={m.size or 'n/a'})"
            )

        # Runaway speed
        if m.speed_multiplier > s.abnormal_speed_threshold:
            counters.consecutive_abnormal_speed_checks += 1
            speed_detail = (
                f"speed {m.speed_multiplier:.2f}x above {s.abnormal_speed_threshold:.1f}x "
                f"({counters.consecutive_abnormal_speed_checks} consecutive checks)"
            )
            if counters.consecutive_abnormal_speed_checks >= s.abnormal_speed_ticks:
                failures[FailureReason.RUNAWAY_SPEED] = speed_detail
            else:
                warnings[FailureReason.RUNAWAY_SPEED] = speed_detail
        else:
            counters.consecutive_abnormal_speed_checks = 0

        # Low fps once there is meaningful data
        if warmed_up and m.fps is not None and m.fps < s.low_fps_threshold:
            failures[FailureReason.LOW_FPS] = (
                f"fps {m.fps:g} below {s.low_fps_threshold:g}"
            )

        for reason in FAILURE_PRIORITY:
            if reason in failures:
                return Evaluation(
                    verdict=Verdict.FAILED,
                    counters=counters,
                    reason=reason,
                    detail="; ".join(failures.values()),
                )
        for reason in FAILURE_PRIORITY:
            if reason in warnings:
                return Evaluation(
                    verdict=Verdict.WARN,
                    counters=counters,
                    reason=reason,
                    detail="; ".join(warnings.values()),
                )
        return Evaluation(verdict=Verdict.HEALTHY, counters=counters)

    def check_escalation(self, job: JobStatus, now: datetime) -> tuple[FailureReason, str] | None:
        """Out-of-band check run on every progress update.

        Returns:
            (reason, detail) for a severely stuck frame or extreme speed, else None
        """
        s = self.settings
        m = job.metrics

        if m.last_frame_number is not None:
            stalled_for = (now - (m.last_frame_observed_at or job.started_at)).total_seconds()
            if stalled_for >= s.severe_stuck_seconds:
                return (
                    FailureReason.STUCK_FRAME,
                    f"frame {m.last_frame_number} unchanged for {stalled_for:.0f}s (severe)",
                )

        warmed_up = (now - job.started_at).total_seconds() >= s.monitor_warmup_seconds
        if warmed_up and m.speed_multiplier >= s.extreme_speed_threshold:
            return (
                FailureReason.RUNAWAY_SPEED,
                f"speed {m.speed_multiplier:.2f}x at or above {s.extreme_speed_threshold:.1f}x (extreme)",
            )
        return None

    def cooldown_remaining(self, job: JobStatus, now: datetime) -> float:
        """Seconds until the job may be restarted by the monitor (0 when allowed)."""
        reference = job.last_restart_at or job.started_at
        elapsed = (now - reference).total_seconds()
        return max(0.0, self.settings.restart_cooldown_seconds - elapsed)

    # ========================================================================
    # Tick Loop
    # ========================================================================

    async def watch(
        self,
        job_id: str,
        get_snapshot: Callable[[str], JobStatus | None],
        apply: Callable[[str, Evaluation], None]
    ) -> None:
        """Evaluate a job every tick until it leaves the Running state.

        Args:
            job_id: Job to watch
            get_snapshot: Returns the job's current snapshot (None once gone)
            apply: Receives each evaluation; owns all state changes
        """
        logger.info(f"[{job_id}] Health monitor started (every {self.settings.monitor_interval_seconds:g}s)")
        try:
            while True:
                await asyncio.sleep(self.settings.monitor_interval_seconds)

                snapshot = get_snapshot(job_id)
                if snapshot is None or snapshot.state is not JobState.RUNNING:
                    break

                try:
                    evaluation = self.evaluate(snapshot, self._clock())
                except Exception as e:
                    logger.error(f"[{job_id}] Health evaluation failed: {e}", exc_info=True)
                    continue

                metrics.health_verdicts_total.labels(
                    verdict=evaluation.verdict.value,
                    reason=evaluation.reason.value if evaluation.reason else "none"
                ).inc()
                logger.debug(
                    f"[{job_id}] Health verdict: {evaluation.verdict.value}"
                    + (f" ({evaluation.detail})" if evaluation.detail else "")
                )
                apply(job_id, evaluation)
        except asyncio.CancelledError:
            logger.debug(f"[{job_id}] Health monitor cancelled")
            raise
        logger.info(f"[{job_id}] Health monitor stopped")
