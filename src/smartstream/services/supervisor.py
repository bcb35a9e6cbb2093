"""Lifecycle controller for FFmpeg relay jobs.

Owns the registry of jobs and every state transition:
- start: build argv, launch, wait (event, not polling) for Running
- stop: Stopping, SIGTERM then SIGKILL after the grace window
- restart: the single recovery entrypoint shared by the exit path, the
  health monitor and the reconciliation sweep
- autostart recovery: exponential backoff, abandonment after max retries
- reconciliation: periodic safety net for silently dropped recoveries

State machine per job id:
    starting -> running -> stopping -> idle
    starting | running -> error
idle and error are terminal; recovery always creates a new job id.

Registry layout:
    _jobs      jobs whose process has not exited yet
    _finished  bounded history of exited jobs (status lookups, restarts)
    _tracking  autostart recovery records keyed by job id

Background work (per running job: stderr reader, stdout drain, settle
timer, health monitor; fleet-wide: reconciliation, scheduled recoveries)
never mutates a job record except through this class.

Logging Strategy:
    DEBUG - FFmpeg chatter, progress-driven transitions
    INFO  - Job lifecycle, restarts with before/after ids
    WARN  - Degraded URI resolution, suppressed restarts, warn verdicts
    ERROR - Start failures, unexpected exits, health failures, abandonment
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Coroutine, Any

from .. import metrics
from ..config.supervisor_defaults import SupervisorSettings
from ..exceptions import (
    ConfigError,
    JobStartError,
    MonitorDetectedFailure,
    NotFoundError,
    ProcessExitError,
    ProcessLaunchError,
    StartTimeoutError,
    SupervisorError,
)
from ..models.job import (
    AnomalyCounters,
    AutostartTracking,
    Evaluation,
    JobState,
    JobStatus,
    StreamMetrics,
    Verdict,
)
from ..models.stream import CameraConfig, PlatformType, StreamConfig, StreamOverrides
from ..utils.error_classifier import CATEGORY_HINTS, ErrorCategory, classify_error, describe_exit
from ..utils.ffmpeg_args import build_ffmpeg_command
from ..utils.progress import MetricUpdate, parse_progress_line
from ..utils.rtsp import build_fallback_uri
from ..utils.strings import mask_output_url, mask_url_credentials
from .cameras import StreamUriResolverProtocol, build_camera_config, resolve_camera_target
from .health_monitor import HealthMonitor
from .launcher import ExitInfo, ProcessHandle, ProcessLauncher

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Job Record
# ============================================================================

@dataclass
class Job:
    """Mutable job record, owned by the Supervisor."""

    id: str
    config: StreamConfig
    argv: list[str]
    output_url: str | None
    started_at: datetime
    is_autostart: bool = False
    owner_id: str | None = None
    last_restart_at: datetime | None = None
    state: JobState = JobState.STARTING
    handle: ProcessHandle | None = None
    metrics: StreamMetrics = field(default_factory=StreamMetrics)
    counters: AnomalyCounters = field(default_factory=AnomalyCounters)
    ended_at: datetime | None = None
    error_message: str | None = None
    exit_code: int | None = None
    exit_signal: str | None = None
    recent_output: deque[str] = field(default_factory=deque)
    # Set once the start outcome is known (running, exited or stopping)
    start_settled: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: list[asyncio.Task] = field(default_factory=list)
    monitor_task: asyncio.Task | None = None


# ============================================================================
# Supervisor
# ============================================================================

class Supervisor:
    """Owns relay jobs and their FFmpeg processes.

    Attributes:
        settings: Supervisor tunables
        launcher: Spawns FFmpeg processes
        monitor: Health evaluator
        resolver: Camera stream-URI resolver (optional)
    """

    def __init__(
        self,
        settings: SupervisorSettings | None = None,
        launcher: ProcessLauncher | None = None,
        monitor: HealthMonitor | None = None,
        resolver: StreamUriResolverProtocol | None = None,
        clock: Callable[[], datetime] = _utcnow
    ) -> None:
        self.settings = settings or SupervisorSettings()
        self.launcher = launcher or ProcessLauncher()
        self.monitor = monitor or HealthMonitor(self.settings, clock=clock)
        self.resolver = resolver
        self._clock = clock

        self._jobs: dict[str, Job] = {}
        self._finished: OrderedDict[str, Job] = OrderedDict()
        self._tracking: dict[str, AutostartTracking] = {}
        self._restarting: set[str] = set()
        self._cancelled: set[str] = set()
        self._recovery_scheduled: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._reconcile_task: asyncio.Task | None = None
        self._closing = False

        logger.info("Supervisor initialized")

    # ========================================================================
    # Public Operations: Start / Stop
    # ========================================================================

    async def start(
        self,
        config: StreamConfig,
        *,
        is_autostart: bool = False,
        owner_id: str | None = None
    ) -> JobStatus:
        """Start a relay job and wait until it is Running.

        Args:
            config: Job configuration
            is_autostart: Subject the job to automatic recovery
            owner_id: Owning camera id for autostart tracking

        Returns:
            Status snapshot of the running job

        Raises:
            ConfigError: Invalid destination (registry untouched)
            ProcessLaunchError: FFmpeg could not be spawned
            StartTimeoutError: Not Running within the start timeout
            ProcessExitError: Process exited during start (carries final status)
        """
        return await self._start(config, is_autostart=is_autostart, owner_id=owner_id)

    async def _start(
        self,
        config: StreamConfig,
        *,
        is_autostart: bool,
        owner_id: str | None,
        last_restart_at: datetime | None = None,
        tracking: AutostartTracking | None = None
    ) -> JobStatus:
        if self._closing:
            raise JobStartError("Supervisor is shutting down")

        try:
            command = build_ffmpeg_command(config, binary=self.settings.ffmpeg_binary)
            if command.output_url is None:
                raise ConfigError("No destination configured")
        except ConfigError:
            metrics.job_starts_total.labels(result="config_error").inc()
            raise

        job = Job(
            id=self._new_job_id(),
            config=config,
            argv=command.argv,
            output_url=command.output_url,
            started_at=self._clock(),
            is_autostart=is_autostart,
            owner_id=owner_id,
            last_restart_at=last_restart_at,
            recent_output=deque(maxlen=self.settings.recent_output_lines),
        )

        async with self._lock:
            self._jobs[job.id] = job
            self._update_active_gauge()

        logger.info(
            f"[{job.id}] Starting stream: {mask_url_credentials(config.effective_input_url)} "
            f"-> {mask_output_url(command.output_url)}"
        )

        try:
            handle = await self.launcher.launch(command.argv)
        except ProcessLaunchError as e:
            e.job_id = job.id
            self._discard(job)
            metrics.job_starts_total.labels(result="launch_error").inc()
            logger.error(f"[{job.id}] Launch failed: {e}")
            raise

        job.handle = handle
        handle.add_exit_callback(lambda info: self._on_exit(job, info))
        job.tasks = [
            asyncio.create_task(self._consume_stderr(job, handle), name=f"{job.id}-stderr"),
            asyncio.create_task(self._drain_stdout(job, handle), name=f"{job.id}-stdout"),
            asyncio.create_task(self._settle(job), name=f"{job.id}-settle"),
        ]

        try:
            await asyncio.wait_for(job.start_settled.wait(), timeout=self.settings.start_timeout_seconds)
        except asyncio.TimeoutError:
            return await self._fail_start_timeout(job, handle)

        if job.state is JobState.RUNNING:
            if is_autostart:
                self._tracking[job.id] = tracking or AutostartTracking(
                    owner_id=owner_id or config.input_url
                )
            job.monitor_task = asyncio.create_task(
                self.monitor.watch(job.id, self._peek, self.apply_evaluation),
                name=f"{job.id}-monitor"
            )
            metrics.job_starts_total.labels(result="success").inc()
            logger.info(f"[{job.id}] Stream running (PID={handle.pid})")
            return self._snapshot(job)

        if job.state is JobState.ERROR:
            metrics.job_starts_total.labels(result="exited").inc()
            status = self._snapshot(job)
            logger.error(f"[{job.id}] Failed to start: {job.error_message}")
            raise ProcessExitError(
                job.id,
                job.exit_code,
                job.exit_signal,
                job.error_message or describe_exit(job.exit_code, job.exit_signal),
                status=status,
            )

        # Stopped by an operator before it came up
        metrics.job_starts_total.labels(result="stopped").inc()
        raise JobStartError(f"Job {job.id} was stopped during start", job.id)

    async def _fail_start_timeout(self, job: Job, handle: ProcessHandle) -> JobStatus:
        timeout = self.settings.start_timeout_seconds
        logger.error(f"[{job.id}] Not running after {timeout:.1f}s, killing process")
        metrics.job_starts_total.labels(result="timeout").inc()

        job.state = JobState.ERROR
        job.error_message = f"Start timeout after {timeout:.1f}s"
        job.ended_at = self._clock()
        self._cancel_tasks(job)

        handle.kill()
        try:
            await asyncio.wait_for(handle.wait(), timeout=self.settings.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"[{job.id}] PID {handle.pid} did not exit after SIGKILL")
            self._discard(job)

        raise StartTimeoutError(job.id, timeout)

    async def stop(self, job_id: str) -> None:
        """Stop a job: Stopping now, Idle once the process exits.

        Does not wait for the process; termination escalates to SIGKILL in
        the background. Stopping a finished job only drops its autostart
        tracking. Stopping a job that is being restarted cancels the
        replacement.

        Raises:
            NotFoundError: Unknown job id
        """
        async with self._lock:
            if job_id in self._restarting:
                self._cancelled.add(job_id)
                logger.info(f"[{job_id}] Stop requested during restart, replacement cancelled")

            job = self._jobs.get(job_id)
            if job is None:
                if job_id not in self._finished:
                    raise NotFoundError(job_id)
                self._drop_tracking(job_id, "stopped by operator")
                logger.info(f"[{job_id}] Already finished")
                return

            self._drop_tracking(job_id, "stopped by operator")
            if job.state is JobState.STOPPING or job.state.is_terminal:
                logger.debug(f"[{job_id}] Stop ignored in state {job.state.value}")
                return
            self._begin_stop(job)

    def _begin_stop(self, job: Job) -> None:
        logger.info(f"[{job.id}] Stopping stream (state={job.state.value})")
        job.state = JobState.STOPPING
        job.start_settled.set()
        self._cancel_tasks(job, readers=False)
        if job.handle is not None:
            job.handle.terminate(self.settings.kill_grace_seconds)

    # ========================================================================
    # Public Operations: Restart / Recovery
    # ========================================================================

    async def restart(
        self,
        job_id: str,
        *,
        reason: str = "manual",
        automatic: bool = False
    ) -> str | None:
        """Replace a job with a new one running the same config.

        The only entrypoint that changes autostart retry state: automatic
        restarts count an attempt (and abandon past the ceiling), a
        successful manual restart resets the count.

        Args:
            job_id: Job to replace
            reason: Trigger, logged and recorded in metrics
            automatic: Recovery attempt rather than operator request

        Returns:
            New job id; None when a restart of this job is already in
            flight or the automatic recovery was not applicable/abandoned

        Raises:
            NotFoundError: Unknown job id
            SupervisorError: Manual restart failed to start the new job
        """
        now = self._clock()
        async with self._lock:
            old = self._jobs.get(job_id) or self._finished.get(job_id)
            if old is None:
                raise NotFoundError(job_id)
            if job_id in self._restarting:
                logger.warning(f"[{job_id}] Restart already in progress, ignoring ({reason})")
                return None

            tracking = self._tracking.get(job_id)
            if automatic:
                if tracking is None:
                    logger.info(f"[{job_id}] Not autostart-tracked, skipping recovery ({reason})")
                    return None
                if tracking.retry_count >= self.settings.max_autostart_retries:
                    del self._tracking[job_id]
                    metrics.autostart_abandoned_total.inc()
                    logger.error(
                        f"[{job_id}] Giving up after {tracking.retry_count} recovery attempts; "
                        f"job left in {old.state.value} state"
                    )
                    return None
                tracking.retry_count += 1
                tracking.last_retry_at = now

            self._restarting.add(job_id)

        trigger = "automatic" if automatic else "manual"
        attempt = f", attempt {tracking.retry_count}/{self.settings.max_autostart_retries}" if automatic and tracking else ""
        logger.info(f"[{job_id}] Restarting ({trigger}, reason: {reason}{attempt})")

        reschedule = False
        try:
            await self._stop_and_wait(old)
            await asyncio.sleep(self.settings.restart_cleanup_delay_seconds)

            async with self._lock:
                if self._restart_cancelled(job_id, tracking):
                    metrics.job_restarts_total.labels(trigger=trigger, result="cancelled").inc()
                    logger.info(f"[{job_id}] Restart cancelled, job was stopped ({reason})")
                    return None

            carried = None
            if tracking is not None:
                carried = tracking.model_copy()
                if not automatic:
                    carried.retry_count = 0

            try:
                status = await self._start(
                    old.config,
                    is_autostart=old.is_autostart,
                    owner_id=old.owner_id,
                    last_restart_at=self._clock(),
                    tracking=carried,
                )
            except SupervisorError as e:
                metrics.job_restarts_total.labels(trigger=trigger, result="failure").inc()
                logger.error(f"[{job_id}] Restart failed: {e}")
                if automatic:
                    reschedule = True
                    return None
                raise

            self._tracking.pop(job_id, None)
            self._finished.pop(job_id, None)
            if job_id in self._cancelled:
                # Stopped while the replacement was coming up
                metrics.job_restarts_total.labels(trigger=trigger, result="cancelled").inc()
                logger.info(f"[{job_id}] Restart cancelled, stopping replacement {status.id}")
                await self.stop(status.id)
                return None

            metrics.job_restarts_total.labels(trigger=trigger, result="success").inc()
            logger.info(f"[{job_id}] Restarted as {status.id} (reason: {reason})")
            return status.id
        finally:
            self._restarting.discard(job_id)
            self._cancelled.discard(job_id)
            if reschedule:
                self._schedule_recovery(job_id, reason)

    def _restart_cancelled(self, job_id: str, tracking: AutostartTracking | None) -> bool:
        """A stop arrived mid-restart, or the tracking it started from was dropped."""
        if job_id in self._cancelled:
            return True
        return tracking is not None and self._tracking.get(job_id) is not tracking

    async def _stop_and_wait(self, job: Job) -> None:
        """Stop a job (if still alive) and wait for its process to exit."""
        if job.handle is None or job.handle.exit_info is not None:
            return
        if job.state.is_live:
            self._begin_stop(job)
        try:
            await asyncio.wait_for(job.handle.wait(), timeout=self.settings.kill_grace_seconds + 1.0)
        except asyncio.TimeoutError:
            logger.warning(f"[{job.id}] Old process still alive, continuing restart")

    def _schedule_recovery(self, job_id: str, reason: str) -> None:
        """Schedule restart(automatic=True) after the backoff delay."""
        if self._closing or job_id in self._recovery_scheduled or job_id in self._restarting:
            return
        tracking = self._tracking.get(job_id)
        if tracking is None:
            return

        delay = self.settings.backoff_delay(tracking.retry_count)
        self._recovery_scheduled.add(job_id)
        logger.info(
            f"[{job_id}] Recovery scheduled in {delay:.1f}s "
            f"(retry {tracking.retry_count}/{self.settings.max_autostart_retries}, reason: {reason})"
        )
        self._spawn(self._recover_after(job_id, delay, reason), name=f"{job_id}-recovery")

    async def _recover_after(self, job_id: str, delay: float, reason: str) -> None:
        try:
            await asyncio.sleep(delay)
        finally:
            self._recovery_scheduled.discard(job_id)
        try:
            await self.restart(job_id, reason=reason, automatic=True)
        except NotFoundError:
            logger.debug(f"[{job_id}] Recovery skipped, job already replaced")

    # ========================================================================
    # Public Operations: Health
    # ========================================================================

    def apply_evaluation(self, job_id: str, evaluation: Evaluation) -> None:
        """Store a monitor tick's counters and act on its verdict."""
        job = self._jobs.get(job_id)
        if job is None or job.state is not JobState.RUNNING:
            return

        job.counters = evaluation.counters
        if evaluation.verdict is Verdict.WARN:
            logger.warning(f"[{job_id}] Health warning: {evaluation.detail}")
        elif evaluation.verdict is Verdict.FAILED and evaluation.reason is not None:
            self.report_failure(job_id, MonitorDetectedFailure(job_id, evaluation.reason, evaluation.detail))

    def report_failure(self, job_id: str, failure: MonitorDetectedFailure) -> bool:
        """Fail a running job on behalf of the health monitor.

        Honors the restart cooldown. On failure the job moves to error, its
        process is killed, and recovery is scheduled if it is tracked.

        Returns:
            True if the job was failed, False if ignored
        """
        job = self._jobs.get(job_id)
        if job is None or job.state is not JobState.RUNNING:
            return False

        now = self._clock()
        remaining = self.monitor.cooldown_remaining(self._snapshot(job, now), now)
        if remaining > 0:
            logger.warning(
                f"[{job_id}] {failure.message}; restart suppressed by cooldown ({remaining:.0f}s left)"
            )
            return False

        logger.error(f"[{job_id}] {failure.message}")
        metrics.job_failures_total.labels(reason=failure.reason.value).inc()

        job.state = JobState.ERROR
        job.error_message = failure.message
        job.ended_at = now
        self._cancel_tasks(job, readers=False)
        if job.handle is not None:
            job.handle.kill()

        self._schedule_recovery(job_id, failure.reason.value)
        return True

    # ========================================================================
    # Public Operations: Queries
    # ========================================================================

    def get_status(self, job_id: str) -> JobStatus:
        """Snapshot of an active or recently finished job.

        Raises:
            NotFoundError: Unknown job id
        """
        job = self._jobs.get(job_id) or self._finished.get(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return self._snapshot(job)

    def list_statuses(self, include_finished: bool = False) -> list[JobStatus]:
        """Snapshots of all active jobs (and finished ones if requested)."""
        jobs = list(self._jobs.values())
        if include_finished:
            jobs.extend(self._finished.values())
        return [self._snapshot(job) for job in jobs]

    def get_recent_output(self, job_id: str) -> list[str]:
        """Recent non-progress stderr lines of a job.

        Raises:
            NotFoundError: Unknown job id
        """
        job = self._jobs.get(job_id) or self._finished.get(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return list(job.recent_output)

    def tracked_pids(self) -> dict[int, str]:
        """PID -> job id for every process the supervisor owns."""
        return {
            job.handle.pid: job.id
            for job in self._jobs.values()
            if job.handle is not None
        }

    def _peek(self, job_id: str) -> JobStatus | None:
        job = self._jobs.get(job_id)
        return self._snapshot(job) if job is not None else None

    # ========================================================================
    # Cameras
    # ========================================================================

    async def start_camera(
        self,
        camera: CameraConfig,
        *,
        platform: PlatformType | None = None,
        stream_key: str | None = None,
        server_url: str | None = None,
        overrides: StreamOverrides | None = None,
        is_autostart: bool = False
    ) -> JobStatus:
        """Start a job for a registered camera.

        The input URI comes from the resolver, or the deterministic fallback
        URI if resolution fails. The destination layers the request values
        over the camera defaults.
        """
        target = resolve_camera_target(camera, platform, stream_key, server_url)
        input_url = await self._resolve_input_url(camera)
        config = build_camera_config(input_url, target, overrides)
        return await self.start(config, is_autostart=is_autostart, owner_id=camera.hostname)

    async def _resolve_input_url(self, camera: CameraConfig) -> str:
        if self.resolver is not None:
            try:
                return await self.resolver.resolve_stream_uri(camera)
            except Exception as e:
                logger.warning(f"Stream URI resolution failed for {camera.hostname}, using fallback URI: {e}")
        else:
            logger.debug(f"No stream URI resolver, using fallback URI for {camera.hostname}")
        return build_fallback_uri(camera)

    async def start_autostart_cameras(self, cameras: list[CameraConfig]) -> list[str]:
        """Start every autostart camera; failures are logged, not raised.

        Returns:
            Ids of jobs that started
        """
        started = []
        for camera in cameras:
            if not camera.autostart:
                continue
            try:
                status = await self.start_camera(camera, is_autostart=True)
                started.append(status.id)
            except SupervisorError as e:
                logger.error(f"Autostart failed for camera {camera.hostname}: {e}")
        logger.info(f"Autostart: {len(started)} stream(s) started")
        return started

    # ========================================================================
    # Reconciliation
    # ========================================================================

    def reconcile(self) -> list[str]:
        """One reconciliation sweep.

        Re-triggers recovery for tracked jobs that are not running, have no
        restart in flight or scheduled, and whose last retry (or end) is
        older than the stale window.

        Returns:
            Job ids re-triggered
        """
        now = self._clock()
        triggered: list[str] = []

        for job_id, tracking in list(self._tracking.items()):
            job = self._jobs.get(job_id) or self._finished.get(job_id)
            if job is None:
                logger.warning(f"[{job_id}] Tracked job no longer known, dropping tracking")
                self._tracking.pop(job_id, None)
                continue
            if job.state in (JobState.STARTING, JobState.RUNNING, JobState.STOPPING):
                continue
            if job_id in self._restarting or job_id in self._recovery_scheduled:
                continue

            reference = tracking.last_retry_at or job.ended_at or job.started_at
            idle_for = (now - reference).total_seconds()
            if idle_for < self.settings.reconcile_stale_seconds:
                continue

            logger.warning(f"[{job_id}] Reconciliation: {job.state.value} for {idle_for:.0f}s, re-triggering recovery")
            self._spawn(self.restart(job_id, reason="reconcile", automatic=True), name=f"{job_id}-reconcile")
            triggered.append(job_id)

        return triggered

    def start_reconciliation(self) -> None:
        """Start the periodic reconciliation task (idempotent)."""
        if self._reconcile_task is None or self._reconcile_task.done():
            self._reconcile_task = asyncio.create_task(self._reconcile_loop(), name="reconcile")

    async def _reconcile_loop(self) -> None:
        interval = self.settings.reconcile_interval_seconds
        logger.info(f"Reconciliation started (every {interval:g}s)")
        while True:
            await asyncio.sleep(interval)
            try:
                triggered = self.reconcile()
                if triggered:
                    logger.info(f"Reconciliation re-triggered {len(triggered)} job(s)")
            except Exception as e:
                logger.error(f"Reconciliation sweep failed: {e}", exc_info=True)

    async def shutdown(self) -> None:
        """Stop reconciliation and recoveries, then stop every job."""
        self._closing = True

        if self._reconcile_task is not None:
            self._reconcile_task.cancel()
        for task in list(self._background):
            task.cancel()

        jobs = list(self._jobs.values())
        for job in jobs:
            if job.state.is_live:
                self._begin_stop(job)

        waits = [job.handle.wait() for job in jobs if job.handle is not None]
        if waits:
            logger.info(f"Waiting for {len(waits)} process(es) to exit")
            try:
                await asyncio.wait_for(
                    asyncio.gather(*waits, return_exceptions=True),
                    timeout=self.settings.kill_grace_seconds + 2.0
                )
            except asyncio.TimeoutError:
                logger.error("Processes still alive after shutdown grace window")
        logger.info("Supervisor shut down")

    # ========================================================================
    # Process Callbacks
    # ========================================================================

    def _on_exit(self, job: Job, info: ExitInfo) -> None:
        """Exit notification: the single place exits are classified."""
        job.exit_code = info.code
        job.exit_signal = info.signal_name
        if job.ended_at is None:
            job.ended_at = self._clock()

        if job.state is JobState.STOPPING:
            job.state = JobState.IDLE
            metrics.job_exits_total.labels(kind="intentional").inc()
            logger.info(f"[{job.id}] Stream stopped")

        elif job.state.is_live:
            was_running = job.state is JobState.RUNNING
            job.state = JobState.ERROR
            job.error_message = self._describe_failure(job, info)
            metrics.job_exits_total.labels(kind="unexpected").inc()
            logger.error(f"[{job.id}] {job.error_message}")
            if was_running:
                self._schedule_recovery(job.id, "process exited")

        else:
            # Already failed by the monitor or the start timeout
            logger.debug(f"[{job.id}] Exit after {job.state.value} ignored")

        job.start_settled.set()
        self._cancel_tasks(job, readers=False)
        self._retire(job)

    def _describe_failure(self, job: Job, info: ExitInfo) -> str:
        description = f"Process exited unexpectedly: {describe_exit(info.code, info.signal_name)}"
        category = classify_error("\n".join(job.recent_output))
        if category is not ErrorCategory.GENERIC:
            description += f" [{category.value}: {CATEGORY_HINTS[category]}]"
        if job.recent_output:
            description += f" - {job.recent_output[-1]}"
        return description

    async def _settle(self, job: Job) -> None:
        await asyncio.sleep(self.settings.start_settle_seconds)
        if job.state is JobState.STARTING and job.handle is not None and job.handle.exit_info is None:
            self._mark_running(job, "alive after settle window")

    def _mark_running(self, job: Job, why: str) -> None:
        if job.state is not JobState.STARTING:
            return
        job.state = JobState.RUNNING
        job.start_settled.set()
        logger.debug(f"[{job.id}] Running ({why})")

    async def _consume_stderr(self, job: Job, handle: ProcessHandle) -> None:
        try:
            async for line in handle.stderr_lines():
                update = parse_progress_line(line)
                if update is None:
                    job.recent_output.append(line)
                    self._log_ffmpeg_line(job.id, line)
                    continue
                self._apply_progress(job, update)
        except asyncio.CancelledError:
            logger.debug(f"[{job.id}] stderr reader cancelled")
            raise
        except Exception as e:
            logger.error(f"[{job.id}] stderr reader failed: {e}", exc_info=True)

    async def _drain_stdout(self, job: Job, handle: ProcessHandle) -> None:
        try:
            async for line in handle.stdout_lines():
                logger.debug(f"FFmpeg [{job.id}] stdout: {line}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{job.id}] stdout drain failed: {e}", exc_info=True)

    def _log_ffmpeg_line(self, job_id: str, message: str) -> None:
        msg_lower = message.lower()
        if 'error' in msg_lower or 'fatal' in msg_lower:
            logger.error(f"FFmpeg [{job_id}]: {message}")
        elif 'warning' in msg_lower:
            logger.warning(f"FFmpeg [{job_id}]: {message}")
        else:
            logger.debug(f"FFmpeg [{job_id}]: {message}")

    def _apply_progress(self, job: Job, update: MetricUpdate) -> None:
        """Fold a progress update into the job and run out-of-band checks."""
        now = self._clock()
        m = job.metrics

        if update.fps is not None:
            m.fps = update.fps
        if update.size is not None:
            m.size = update.size
        if update.time is not None:
            m.time = update.time
        if update.bitrate is not None:
            m.bitrate = update.bitrate
        if update.speed is not None:
            m.speed = update.speed
            m.speed_multiplier = update.speed_multiplier or 0.0
        if update.frame is not None and update.frame != m.last_frame_number:
            m.last_frame_number = update.frame
            m.last_frame_observed_at = now
        m.progress_lines += 1
        m.last_progress_at = now

        if job.state is JobState.STARTING:
            self._mark_running(job, "first progress update")
            return
        if job.state is not JobState.RUNNING:
            return

        snapshot = self._snapshot(job, now)
        if self.monitor.cooldown_remaining(snapshot, now) > 0:
            return
        escalation = self.monitor.check_escalation(snapshot, now)
        if escalation is not None:
            reason, detail = escalation
            self.report_failure(job.id, MonitorDetectedFailure(job.id, reason, detail))

    # ========================================================================
    # Internals
    # ========================================================================

    def _new_job_id(self) -> str:
        return f"job-{int(time.time() * 1000)}-{next(self._ids)}"

    def _snapshot(self, job: Job, now: datetime | None = None) -> JobStatus:
        now = now or self._clock()
        end = job.ended_at or now
        tracking = self._tracking.get(job.id)
        return JobStatus(
            id=job.id,
            state=job.state,
            pid=job.handle.pid if job.handle is not None else None,
            input_url=mask_url_credentials(job.config.effective_input_url),
            output_url=mask_output_url(job.output_url),
            metrics=job.metrics.model_copy(),
            counters=job.counters.model_copy(),
            started_at=job.started_at,
            ended_at=job.ended_at,
            last_restart_at=job.last_restart_at,
            error_message=job.error_message,
            exit_code=job.exit_code,
            exit_signal=job.exit_signal,
            is_autostart=job.is_autostart,
            autostart=tracking.model_copy() if tracking is not None else None,
            uptime_seconds=max(0.0, (end - job.started_at).total_seconds()),
        )

    def _cancel_tasks(self, job: Job, readers: bool = True) -> None:
        """Cancel a job's background tasks.

        Readers stop on EOF by themselves once the process exits; they are
        only cancelled when readers=True.
        """
        current = asyncio.current_task()
        for task in job.tasks:
            if task is current or task.done():
                continue
            if not readers and not task.get_name().endswith("-settle"):
                continue
            task.cancel()
        if job.monitor_task is not None and job.monitor_task is not current:
            job.monitor_task.cancel()

    def _retire(self, job: Job) -> None:
        """Move an exited job from the active registry to the history."""
        if self._jobs.pop(job.id, None) is None:
            return
        self._update_active_gauge()
        self._finished[job.id] = job
        self._finished.move_to_end(job.id)

        # Tracked jobs stay until their recovery resolves
        excess = len(self._finished) - self.settings.finished_history_size
        for old_id in list(self._finished):
            if excess <= 0:
                break
            if old_id in self._tracking or old_id in self._restarting:
                continue
            del self._finished[old_id]
            excess -= 1

    def _discard(self, job: Job) -> None:
        """Remove a job that never got a live process."""
        self._jobs.pop(job.id, None)
        self._update_active_gauge()

    def _drop_tracking(self, job_id: str, why: str) -> None:
        if self._tracking.pop(job_id, None) is not None:
            logger.info(f"[{job_id}] Autostart tracking removed ({why})")

    def _update_active_gauge(self) -> None:
        metrics.jobs_active.set(len(self._jobs))

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """Fire-and-forget task whose failure is logged, never lost."""
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc}", exc_info=exc)


logger.debug("Supervisor module loaded")
