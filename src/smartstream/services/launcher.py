"""FFmpeg subprocess launcher.

Spawns the transcoder with asyncio and wraps it in a ProcessHandle that
gives the supervisor:
- line iterators over stderr/stdout (carriage-return progress split into lines)
- a single exit notification per process (callbacks + awaitable wait())
- graceful-then-forceful termination (SIGTERM, SIGKILL after a grace window)

Launching never blocks past subprocess creation.

Logging Strategy:
    DEBUG - Spawn details, signal delivery, exit notification
    WARN  - Grace window expired, escalating to SIGKILL
    ERROR - Spawn failures, exit callback exceptions
"""
from __future__ import annotations

import asyncio
import logging
import re
import subprocess
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Final, Sequence

from ..exceptions import ProcessLaunchError
from ..utils.error_classifier import signal_to_name
from ..utils.strings import mask_command

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

READ_CHUNK_SIZE: Final[int] = 4096
"""Bytes read per pipe read."""

LINE_SPLIT_PATTERN: Final[re.Pattern[str]] = re.compile(r'[\r\n]+')
"""FFmpeg rewrites its progress line with \\r; treat it as a line break."""

DEFAULT_KILL_GRACE: Final[float] = 5.0
"""SIGTERM to SIGKILL escalation window."""


@dataclass(frozen=True)
class ExitInfo:
    """How a process ended: exit code, or terminating signal name."""

    code: int | None
    signal_name: str | None = None

    @classmethod
    def from_returncode(cls, returncode: int) -> ExitInfo:
        # asyncio reports death-by-signal as a negative return code
        if returncode < 0:
            return cls(code=None, signal_name=signal_to_name(-returncode))
        return cls(code=returncode)


ExitCallback = Callable[[ExitInfo], None]


# ============================================================================
# Process Handle
# ============================================================================

class ProcessHandle:
    """Ownership of one live transcoder process.

    Attributes:
        argv: Command the process was started with
    """

    def __init__(self, process: asyncio.subprocess.Process, argv: Sequence[str]) -> None:
        self._process = process
        self.argv = list(argv)
        self._exit_info: ExitInfo | None = None
        self._exited = asyncio.Event()
        self._callbacks: list[ExitCallback] = []
        self._escalation: asyncio.TimerHandle | None = None
        self._watcher = asyncio.create_task(self._watch_exit())

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def exit_info(self) -> ExitInfo | None:
        return self._exit_info

    # ========================================================================
    # Exit Notification
    # ========================================================================

    async def _watch_exit(self) -> None:
        returncode = await self._process.wait()
        info = ExitInfo.from_returncode(returncode)
        self._exit_info = info

        if self._escalation is not None:
            self._escalation.cancel()
            self._escalation = None

        logger.debug(f"Process {self.pid} exited: code={info.code}, signal={info.signal_name}")
        self._exited.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._invoke(callback, info)

    def _invoke(self, callback: ExitCallback, info: ExitInfo) -> None:
        try:
            callback(info)
        except Exception as e:
            logger.error(f"Exit callback failed for PID {self.pid}: {e}", exc_info=True)

    def add_exit_callback(self, callback: ExitCallback) -> None:
        """Register a callback invoked exactly once when the process exits.

        Called immediately if the process has already exited.
        """
        if self._exit_info is not None:
            self._invoke(callback, self._exit_info)
        else:
            self._callbacks.append(callback)

    async def wait(self) -> ExitInfo:
        """Wait for the process to exit."""
        await self._exited.wait()
        if self._exit_info is None:
            raise RuntimeError(f"Process {self.pid} signalled exit without exit info")
        return self._exit_info

    # ========================================================================
    # Termination
    # ========================================================================

    def terminate(self, grace: float = DEFAULT_KILL_GRACE) -> None:
        """Send SIGTERM and escalate to SIGKILL after `grace` seconds.

        Non-blocking. The escalation timer is cancelled by the exit watcher.
        """
        if self._exited.is_set():
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            return
        logger.debug(f"Sent SIGTERM to PID {self.pid} (grace {grace:.1f}s)")

        if self._escalation is None:
            loop = asyncio.get_running_loop()
            self._escalation = loop.call_later(grace, self._escalate, grace)

    def _escalate(self, grace: float) -> None:
        self._escalation = None
        if self._exited.is_set():
            return
        logger.warning(f"PID {self.pid} still alive {grace:.1f}s after SIGTERM, sending SIGKILL")
        self.kill()

    def kill(self) -> None:
        """Send SIGKILL immediately."""
        if self._exited.is_set():
            return
        try:
            self._process.kill()
            logger.debug(f"Sent SIGKILL to PID {self.pid}")
        except ProcessLookupError:
            pass

    # ========================================================================
    # Output Streams
    # ========================================================================

    def stderr_lines(self) -> AsyncIterator[str]:
        """Iterate decoded stderr lines until EOF."""
        return _iter_lines(self._process.stderr)

    def stdout_lines(self) -> AsyncIterator[str]:
        """Iterate decoded stdout lines until EOF."""
        return _iter_lines(self._process.stdout)


async def _iter_lines(stream: asyncio.StreamReader | None) -> AsyncIterator[str]:
    if stream is None:
        return

    pending = ""
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        pending += chunk.decode("utf-8", errors="replace")
        *lines, pending = LINE_SPLIT_PATTERN.split(pending)
        for line in lines:
            line = line.strip()
            if line:
                yield line

    pending = pending.strip()
    if pending:
        yield pending


# ============================================================================
# Launcher
# ============================================================================

class ProcessLauncher:
    """Spawns transcoder processes with piped stdout/stderr and no stdin."""

    async def launch(self, argv: Sequence[str]) -> ProcessHandle:
        """Start a subprocess.

        Raises:
            ProcessLaunchError: Binary missing or not executable
        """
        if not argv:
            raise ProcessLaunchError("Empty command")

        logger.debug(f"Launching: {mask_command(argv)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE
            )
        except OSError as e:
            logger.error(f"Failed to launch {argv[0]}: {e}")
            raise ProcessLaunchError(f"Failed to launch {argv[0]}: {e}") from e

        logger.debug(f"Launched PID={process.pid}")
        return ProcessHandle(process, argv)
