"""Health check and metrics endpoints for service monitoring.

Health Status Levels:
    - healthy: No job in error (or no jobs at all)
    - degraded: Some jobs in error but the supervisor is functional
    - unhealthy: Supervisor not initialized

Logging Strategy:
    DEBUG - Health check calls
    WARN  - Degraded status with failing jobs
    ERROR - Health check failures

Usage:
    >>> GET /health
    {
        "status": "healthy",
        "jobs": {"active": 2, "starting": 0, "running": 2, "stopping": 0, "idle": 0, "error": 0},
        "autostart_tracked": 1
    }

    >>> GET /health/live
    {"status": "alive"}
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Literal

from fastapi import APIRouter, Response, status

from .. import metrics
from ..models.job import JobState
from ..services import container

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

HealthStatus = Literal["healthy", "degraded", "unhealthy"]
ProbeStatus = Literal["alive"]


def calculate_health_status() -> tuple[HealthStatus, dict[str, Any]]:
    """Derive overall status from the supervisor's job states."""
    supervisor = container.supervisor
    if supervisor is None:
        logger.error("Supervisor not initialized - application startup may have failed")
        return "unhealthy", {}

    jobs = supervisor.list_statuses(include_finished=True)
    counts = {state.value: 0 for state in JobState}
    for job in jobs:
        counts[job.state.value] += 1

    active = [job for job in jobs if job.state.is_live or job.state is JobState.STOPPING]
    # Errored jobs still awaiting recovery
    failing = [job for job in jobs if job.state is JobState.ERROR and job.autostart is not None]

    details: dict[str, Any] = {
        "jobs": {"active": len(active), **counts},
        "autostart_tracked": sum(1 for job in jobs if job.autostart is not None),
    }
    if failing:
        details["errors"] = [f"{job.id}: {job.error_message}" for job in failing]
        return "degraded", details
    return "healthy", details


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(response: Response) -> Dict[str, Any]:
    """Service health derived from job states (503 when unhealthy)."""
    try:
        overall, details = calculate_health_status()
    except Exception as e:
        logger.error(f"Health check failed with exception: {e}", exc_info=True)
        overall, details = "unhealthy", {"errors": [str(e)]}

    metrics.update_health_status(overall)
    metrics.health_checks_total.labels(check_type="full", status=overall).inc()

    if overall == "degraded":
        logger.warning(f"Health check: degraded - {len(details.get('errors', []))} job(s) failing")
    elif overall == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        logger.debug("Health check: healthy")

    return {"status": overall, **details}


@router.get("/health/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> Dict[str, ProbeStatus]:
    """Liveness probe; does not inspect jobs."""
    metrics.health_checks_total.labels(check_type="live", status="alive").inc()
    return {"status": "alive"}


@router.get("/metrics")
async def prometheus_metrics() -> Response:
    """Prometheus text exposition."""
    body, status_code, headers = metrics.get_metrics()
    return Response(content=body, status_code=status_code, headers=headers)


logger.debug("Health check endpoints registered: /health, /health/live, /metrics")
