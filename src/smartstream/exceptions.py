"""Domain exceptions raised by the stream supervision engine.

Hierarchy:
    SupervisorError
    ├── ConfigError              bad StreamConfig, never retried
    ├── NotFoundError            unknown job id
    ├── JobStartError            start did not reach Running
    │   ├── ProcessLaunchError   spawn failed (missing binary, EPERM)
    │   ├── StartTimeoutError    still Starting after the start window
    │   └── ProcessExitError     process died (start or runtime)
    └── MonitorDetectedFailure   health monitor verdict

ConfigError and NotFoundError surface synchronously to the caller.
ProcessExitError and MonitorDetectedFailure feed the autostart retry policy
when the job is autostart-tracked.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models.job import FailureReason, JobStatus


class SupervisorError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, job_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.job_id = job_id


class ConfigError(SupervisorError):
    """Malformed or incomplete stream configuration."""


class NotFoundError(SupervisorError):
    """Operation referenced an unknown job id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found", job_id)


class JobStartError(SupervisorError):
    """Job never reached the Running state."""


class ProcessLaunchError(JobStartError):
    """Transcoder subprocess could not be spawned."""


class StartTimeoutError(JobStartError):
    """Process did not reach Running within the start window."""

    def __init__(self, job_id: str, timeout: float) -> None:
        super().__init__(f"Job {job_id} did not start within {timeout:.1f}s", job_id)
        self.timeout = timeout


class ProcessExitError(JobStartError):
    """Unexpected termination of the transcoder process.

    Attributes:
        exit_code: Process exit code (None when killed by a signal)
        signal_name: Terminating signal name, e.g. "SIGKILL"
        description: Human-readable reason
        status: Final JobStatus snapshot when raised from start()
    """

    def __init__(
        self,
        job_id: str,
        exit_code: int | None,
        signal_name: str | None,
        description: str,
        status: JobStatus | None = None,
    ) -> None:
        super().__init__(description, job_id)
        self.exit_code = exit_code
        self.signal_name = signal_name
        self.description = description
        self.status = status


class MonitorDetectedFailure(SupervisorError):
    """Synthetic failure raised by the health monitor."""

    def __init__(self, job_id: str, reason: FailureReason, detail: str) -> None:
        super().__init__(f"Health check failed ({reason.value}): {detail}", job_id)
        self.reason = reason
        self.detail = detail
