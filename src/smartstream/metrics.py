"""Prometheus metrics for observability.

Provides metrics for:
- Relay job lifecycle (active count, starts, exits, restarts)
- Health monitor verdicts
- Autostart recovery abandonment
- Orphaned transcoder processes (diagnostics)
- System health (status checks)

Logging Strategy:
    INFO  - Module initialization
    ERROR - Metric generation failures
"""
from __future__ import annotations

import logging

from prometheus_client import (
    Counter,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

from . import __version__

logger = logging.getLogger(__name__)

# ============================================================================
# Application Info
# ============================================================================

app_info = Info("smartstream_app", "Application information")
app_info.info({
    "version": __version__,
    "name": "SmartStream",
    "description": "Supervised FFmpeg relay of IP camera streams"
})

# ============================================================================
# Job Lifecycle Metrics
# ============================================================================

jobs_active = Gauge("smartstream_jobs_active", "Jobs owning a live FFmpeg process")

job_starts_total = Counter(
    "smartstream_job_starts_total",
    "Job start attempts",
    ["result"]  # success, config_error, launch_error, timeout, exited, stopped
)

job_exits_total = Counter(
    "smartstream_job_exits_total",
    "FFmpeg process exits",
    ["kind"]  # intentional, unexpected
)

job_restarts_total = Counter(
    "smartstream_job_restarts_total",
    "Job restarts",
    ["trigger", "result"]  # manual/automatic, success/failure
)

job_failures_total = Counter(
    "smartstream_job_failures_total",
    "Monitor-detected job failures",
    ["reason"]
)

autostart_abandoned_total = Counter(
    "smartstream_autostart_abandoned_total",
    "Autostart jobs abandoned after exhausting retries"
)

# ============================================================================
# Health Monitor Metrics
# ============================================================================

health_verdicts_total = Counter(
    "smartstream_health_verdicts_total",
    "Health monitor verdicts",
    ["verdict", "reason"]
)

# ============================================================================
# Diagnostics Metrics
# ============================================================================

ffmpeg_processes = Gauge(
    "smartstream_ffmpeg_processes",
    "FFmpeg processes seen by the last diagnostics scan",
    ["tracked"]  # true, false
)

orphans_killed_total = Counter(
    "smartstream_orphans_killed_total",
    "Orphaned FFmpeg processes killed by cleanup"
)

# ============================================================================
# System Health Metrics
# ============================================================================

health_status = Gauge("smartstream_health_status", "Health status (1=healthy, 0.5=degraded, 0=unhealthy)")

health_checks_total = Counter(
    "smartstream_health_checks_total",
    "Health check requests",
    ["check_type", "status"]
)

# ============================================================================
# Metrics Export
# ============================================================================

def get_metrics() -> tuple[bytes, int, dict[str, str]]:
    """Generate Prometheus metrics in text format.

    Returns:
        (body, status_code, headers) for FastAPI Response
    """
    try:
        body = generate_latest(REGISTRY)
        return (body, 200, {"Content-Type": CONTENT_TYPE_LATEST})
    except Exception as e:
        logger.error(f"Metrics generation failed: {e}", exc_info=True)
        return (b"# Error\n", 500, {"Content-Type": "text/plain"})


# ============================================================================
# Helper Functions
# ============================================================================

def update_process_counts(tracked: int, orphaned: int) -> None:
    """Update diagnostics process gauges."""
    ffmpeg_processes.labels(tracked="true").set(tracked)
    ffmpeg_processes.labels(tracked="false").set(orphaned)


def update_health_status(status: str) -> None:
    """Update health status gauge.

    Args:
        status: "healthy" (1.0), "degraded" (0.5), "unhealthy" (0.0)
    """
    status_map = {"healthy": 1.0, "degraded": 0.5, "unhealthy": 0.0}
    health_status.set(status_map.get(status, 0.0))


logger.info("Prometheus metrics initialized")
