"""On-demand diagnostics for relay jobs and the transcoder fleet.

Nothing here is on the hot path or gates control flow:
- process inventory (psutil) cross-referenced against supervisor PIDs
- orphan cleanup (terminate, wait, kill survivors)
- platform connectivity self-test (DNS + HTTP reachability via aiohttp)
- per-job report: status, recent stderr, error category, FFmpeg build info
- standalone input connectivity probe

Blocking psutil calls run in a worker thread so the event loop keeps
serving progress updates while a scan is in flight.

Logging Strategy:
    DEBUG - Scan details, per-platform results
    INFO  - Cleanup results
    WARN  - Orphans found, unreachable platforms
    ERROR - Scan failures
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
import time
from typing import Any, Final, Iterable

import aiohttp
import psutil

from .. import metrics
from ..config.ffmpeg_defaults import PLATFORM_WEB_ENDPOINTS, get_ingest_host
from ..config.supervisor_defaults import SupervisorSettings
from ..utils.error_classifier import CATEGORY_HINTS, classify_error
from ..utils.rtsp import probe_input
from ..utils.strings import mask_command
from .supervisor import Supervisor

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

PROCESS_ATTRS: Final[list[str]] = ['pid', 'name', 'cmdline', 'create_time']
"""psutil attributes fetched per process."""

VERSION_TIMEOUT_SECONDS: Final[float] = 5.0
"""Timeout for `<binary> -version`."""

DEFAULT_PLATFORMS: Final[tuple[str, ...]] = tuple(PLATFORM_WEB_ENDPOINTS)


def _matches_binary(info: dict[str, Any], binary_name: str) -> bool:
    name = (info.get("name") or "").lower()
    if name == binary_name or name == f"{binary_name}.exe":
        return True
    cmdline = info.get("cmdline") or []
    if cmdline:
        argv0 = os.path.basename(cmdline[0]).lower()
        return argv0 == binary_name or argv0 == f"{binary_name}.exe"
    return False


# ============================================================================
# Diagnostics Collector
# ============================================================================

class DiagnosticsCollector:
    """Fleet and per-job diagnostics.

    Attributes:
        supervisor: Source of job status and tracked PIDs
        settings: Binary name and diagnostic timeouts
    """

    def __init__(self, supervisor: Supervisor, settings: SupervisorSettings | None = None) -> None:
        self.supervisor = supervisor
        self.settings = settings or supervisor.settings

    @property
    def binary_name(self) -> str:
        return os.path.basename(self.settings.ffmpeg_binary).lower()

    # ========================================================================
    # Process Inventory
    # ========================================================================

    def _scan_processes(self) -> list[psutil.Process]:
        binary = self.binary_name
        found = []
        for proc in psutil.process_iter(PROCESS_ATTRS):
            try:
                if _matches_binary(proc.info, binary):
                    found.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return found

    def _describe_process(self, proc: psutil.Process, tracked: dict[int, str], now: float) -> dict[str, Any] | None:
        try:
            with proc.oneshot():
                cpu = proc.cpu_percent(interval=None)
                rss = proc.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None

        create_time = proc.info.get("create_time") or now
        job_id = tracked.get(proc.pid)
        return {
            "pid": proc.pid,
            "cpu_percent": cpu,
            "memory_mb": round(rss / (1024 * 1024), 1),
            "uptime_seconds": max(0.0, round(now - create_time, 1)),
            "cmdline": mask_command(proc.info.get("cmdline") or []),
            "tracked": job_id is not None,
            "job_id": job_id,
        }

    def _collect_process_info(self) -> dict[str, Any]:
        tracked = self.supervisor.tracked_pids()
        now = time.time()
        processes = []
        for proc in self._scan_processes():
            entry = self._describe_process(proc, tracked, now)
            if entry is not None:
                processes.append(entry)

        tracked_count = sum(1 for p in processes if p["tracked"])
        orphaned = len(processes) - tracked_count
        metrics.update_process_counts(tracked_count, orphaned)
        if orphaned:
            logger.warning(f"Found {orphaned} orphaned {self.binary_name} process(es)")

        return {
            "processes": processes,
            "counts": {"total": len(processes), "tracked": tracked_count, "orphaned": orphaned},
            "jobs_active": len(tracked),
        }

    async def get_process_info(self) -> dict[str, Any]:
        """Enumerate transcoder processes and flag orphans.

        Returns:
            {"processes": [...], "counts": {total, tracked, orphaned}, "jobs_active"}
        """
        logger.debug(f"Scanning for {self.binary_name} processes")
        return await asyncio.to_thread(self._collect_process_info)

    # ========================================================================
    # Orphan Cleanup
    # ========================================================================

    def _cleanup(self) -> dict[str, int]:
        tracked = self.supervisor.tracked_pids()
        orphans = [proc for proc in self._scan_processes() if proc.pid not in tracked]
        if not orphans:
            return {"found": 0, "killed": 0, "failed": 0}

        logger.warning(f"Terminating {len(orphans)} orphaned process(es): {[p.pid for p in orphans]}")
        for proc in orphans:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                logger.warning(f"Cannot terminate PID {proc.pid}: {e}")

        gone, alive = psutil.wait_procs(orphans, timeout=self.settings.orphan_kill_wait_seconds)
        killed = len(gone)
        failed = 0
        for proc in alive:
            try:
                proc.kill()
                killed += 1
            except psutil.NoSuchProcess:
                killed += 1
            except psutil.AccessDenied as e:
                logger.error(f"Cannot kill PID {proc.pid}: {e}")
                failed += 1

        metrics.orphans_killed_total.inc(killed)
        return {"found": len(orphans), "killed": killed, "failed": failed}

    async def cleanup_orphaned_processes(self) -> dict[str, int]:
        """Terminate transcoder processes the supervisor does not own.

        Survivors of the wait window are killed.

        Returns:
            {"found", "killed", "failed"}
        """
        result = await asyncio.to_thread(self._cleanup)
        logger.info(
            f"Orphan cleanup: found={result['found']}, killed={result['killed']}, failed={result['failed']}"
        )
        return result

    # ========================================================================
    # Network Connectivity
    # ========================================================================

    async def _check_platform(self, session: aiohttp.ClientSession, platform: str) -> dict[str, Any]:
        result: dict[str, Any] = {
            "platform": platform,
            "dns": {"host": get_ingest_host(platform), "resolved": False, "addresses": [], "error": None},
            "http": {"url": PLATFORM_WEB_ENDPOINTS.get(platform), "reachable": False,
                     "status": None, "latency_ms": None, "error": None},
        }

        host = result["dns"]["host"]
        if host is None:
            result["dns"]["error"] = "Unknown platform"
            return result

        loop = asyncio.get_running_loop()
        try:
            infos = await asyncio.wait_for(
                loop.getaddrinfo(host, None),
                timeout=self.settings.network_test_timeout_seconds
            )
            result["dns"]["resolved"] = True
            result["dns"]["addresses"] = sorted({info[4][0] for info in infos})
        except (OSError, asyncio.TimeoutError) as e:
            result["dns"]["error"] = str(e) or type(e).__name__

        url = result["http"]["url"]
        started = time.monotonic()
        try:
            async with session.get(url, allow_redirects=False) as resp:
                result["http"]["status"] = resp.status
                result["http"]["reachable"] = True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            result["http"]["error"] = str(e) or type(e).__name__
        result["http"]["latency_ms"] = round((time.monotonic() - started) * 1000, 1)

        if not (result["dns"]["resolved"] and result["http"]["reachable"]):
            logger.warning(
                f"Connectivity to {platform} degraded: dns={result['dns']['error'] or 'ok'}, "
                f"http={result['http']['error'] or 'ok'}"
            )
        else:
            logger.debug(f"Connectivity to {platform}: {result['http']['latency_ms']}ms")
        return result

    async def test_network_connectivity(self, platforms: Iterable[str] | None = None) -> dict[str, Any]:
        """DNS and HTTP reachability self-test against streaming platforms.

        Args:
            platforms: Platform names (default: all named platforms)

        Returns:
            {platform: {"platform", "dns": {...}, "http": {...}}}
        """
        names = list(platforms) if platforms is not None else list(DEFAULT_PLATFORMS)
        timeout = aiohttp.ClientTimeout(total=self.settings.network_test_timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            results = await asyncio.gather(*(self._check_platform(session, name) for name in names))
        return {result["platform"]: result for result in results}

    # ========================================================================
    # FFmpeg Info
    # ========================================================================

    async def get_ffmpeg_info(self) -> dict[str, Any]:
        """Binary path and first line of `-version`."""
        binary = self.settings.ffmpeg_binary
        info: dict[str, Any] = {"binary": binary, "path": shutil.which(binary), "version": None, "error": None}

        try:
            process = await asyncio.create_subprocess_exec(
                binary, "-version",
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL
            )
        except OSError as e:
            info["error"] = str(e)
            return info

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=VERSION_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            info["error"] = "Timed out"
            return info

        lines = stdout.decode("utf-8", errors="replace").splitlines()
        info["version"] = lines[0].strip() if lines else None
        return info

    # ========================================================================
    # Job Report
    # ========================================================================

    async def get_job_diagnostics(self, job_id: str, include_network: bool = True) -> dict[str, Any]:
        """Everything an operator needs to understand one job.

        Raises:
            NotFoundError: Unknown job id
        """
        status = self.supervisor.get_status(job_id)
        recent_output = self.supervisor.get_recent_output(job_id)

        category = classify_error("\n".join(recent_output) + "\n" + (status.error_message or ""))
        report: dict[str, Any] = {
            "job": status.model_dump(mode="json"),
            "recent_output": recent_output,
            "error_category": category.value,
            "hint": CATEGORY_HINTS.get(category),
            "ffmpeg": await self.get_ffmpeg_info(),
        }
        if include_network:
            report["network"] = await self.test_network_connectivity()
        return report

    # ========================================================================
    # Input Probe
    # ========================================================================

    async def test_input_connection(
        self,
        url: str,
        username: str | None = None,
        password: str | None = None
    ) -> dict[str, Any]:
        """Standalone input connectivity probe (no job is created)."""
        return await probe_input(
            url,
            binary=self.settings.ffmpeg_binary,
            username=username,
            password=password,
            timeout_seconds=self.settings.input_probe_timeout_seconds,
        )
