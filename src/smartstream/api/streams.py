"""REST API endpoints for relay jobs.

Thin glue over the Supervisor and DiagnosticsCollector. Engine exceptions
propagate to the handlers in api.errors, which map them to status codes.

Routes (prefix /api/streams):
    GET    ""                       list jobs
    POST   ""                       start job (camera hostname or explicit config)
    GET    /{job_id}                job status
    DELETE /{job_id}                stop job
    POST   /{job_id}/restart        manual restart
    GET    /{job_id}/stats          metrics + uptime
    GET    /{job_id}/diagnostics    job diagnostics
    POST   /test-rtsp               standalone input connectivity test
    GET    /debug/processes         fleet process diagnostics
    POST   /debug/cleanup           orphan cleanup

Logging Strategy:
    DEBUG - Listing, status reads
    INFO  - Job lifecycle requests
    WARN  - Unknown cameras
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, status

from ..models.job import JobStatus
from ..models.stream import InputTestRequest, StartStreamRequest
from ..services.cameras import CameraRegistry
from ..services.container import get_camera_registry, get_diagnostics, get_supervisor
from ..services.diagnostics import DiagnosticsCollector
from ..services.supervisor import Supervisor
from ..utils.strings import mask_url_credentials
from .errors import raise_not_found

logger = logging.getLogger(__name__)

router = APIRouter(tags=["streams"])

# ============================================================================
# Diagnostics Endpoints
# ============================================================================

@router.post("/test-rtsp")
async def test_rtsp(
    request: InputTestRequest,
    diagnostics: DiagnosticsCollector = Depends(get_diagnostics)
) -> dict[str, Any]:
    """Probe an input stream without creating a job."""
    logger.info(f"Testing input connection: {mask_url_credentials(request.url)}")
    return await diagnostics.test_input_connection(request.url, request.username, request.password)


@router.get("/debug/processes")
async def debug_processes(
    diagnostics: DiagnosticsCollector = Depends(get_diagnostics)
) -> dict[str, Any]:
    """Transcoder processes on the host, with tracked/orphaned counts."""
    return await diagnostics.get_process_info()


@router.post("/debug/cleanup")
async def debug_cleanup(
    diagnostics: DiagnosticsCollector = Depends(get_diagnostics)
) -> dict[str, int]:
    """Kill transcoder processes the supervisor does not own."""
    logger.info("Orphan cleanup requested")
    return await diagnostics.cleanup_orphaned_processes()


# ============================================================================
# Job Endpoints
# ============================================================================

@router.get("")
async def list_jobs(
    include_finished: bool = Query(False, description="Include recently finished jobs"),
    supervisor: Supervisor = Depends(get_supervisor)
) -> list[JobStatus]:
    """List jobs with masked URLs."""
    jobs = supervisor.list_statuses(include_finished=include_finished)
    logger.debug(f"Listed {len(jobs)} job(s)")
    return jobs


@router.post("", status_code=status.HTTP_201_CREATED)
async def start_job(
    request: StartStreamRequest,
    supervisor: Supervisor = Depends(get_supervisor),
    registry: CameraRegistry = Depends(get_camera_registry)
) -> JobStatus:
    """Start a job for a registered camera or an explicit config.

    Blocks until the job is running or the start fails.
    """
    if request.config is not None:
        logger.info("Starting job from explicit config")
        return await supervisor.start(request.config)

    camera = registry.get_camera(request.camera) if request.camera else None
    if camera is None:
        logger.warning(f"Start failed - unknown camera: {request.camera}")
        raise_not_found("camera", request.camera)

    logger.info(f"Starting job for camera {request.camera}")
    return await supervisor.start_camera(
        camera,
        platform=request.platform,
        stream_key=request.stream_key,
        server_url=request.server_url,
        overrides=request.overrides,
    )


@router.get("/{job_id}")
async def get_job(
    job_id: str,
    supervisor: Supervisor = Depends(get_supervisor)
) -> JobStatus:
    """Status snapshot of an active or recently finished job."""
    return supervisor.get_status(job_id)


@router.delete("/{job_id}")
async def stop_job(
    job_id: str,
    supervisor: Supervisor = Depends(get_supervisor)
) -> JobStatus:
    """Stop a job. Returns immediately; the process is terminated in the background."""
    logger.info(f"[{job_id}] Stop requested")
    await supervisor.stop(job_id)
    return supervisor.get_status(job_id)


@router.post("/{job_id}/restart")
async def restart_job(
    job_id: str,
    supervisor: Supervisor = Depends(get_supervisor)
) -> dict[str, Any]:
    """Manual restart. Resets autostart retries on success."""
    logger.info(f"[{job_id}] Restart requested")
    new_id = await supervisor.restart(job_id, reason="manual")
    if new_id is None:
        return {"restarted": False, "previous_job_id": job_id, "job_id": None,
                "message": "Restart already in progress"}
    return {"restarted": True, "previous_job_id": job_id, "job_id": new_id,
            "status": supervisor.get_status(new_id)}


@router.get("/{job_id}/stats")
async def get_job_stats(
    job_id: str,
    supervisor: Supervisor = Depends(get_supervisor)
) -> dict[str, Any]:
    """Transcoder metrics and uptime of a job."""
    job = supervisor.get_status(job_id)
    return {
        "job_id": job.id,
        "state": job.state,
        "uptime_seconds": job.uptime_seconds,
        "metrics": job.metrics,
        "counters": job.counters,
    }


@router.get("/{job_id}/diagnostics")
async def get_job_diagnostics(
    job_id: str,
    include_network: bool = Query(True, description="Run the platform connectivity test"),
    diagnostics: DiagnosticsCollector = Depends(get_diagnostics)
) -> dict[str, Any]:
    """Status, recent stderr, error category, FFmpeg info and connectivity."""
    return await diagnostics.get_job_diagnostics(job_id, include_network=include_network)


logger.debug("Stream endpoints registered")
