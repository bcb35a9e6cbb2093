"""FastAPI application entry point for SmartStream.

SmartStream: supervised FFmpeg relay of IP camera streams to YouTube,
Twitch or custom RTMP servers.

Architecture:
    - FastAPI async web framework
    - FFmpeg subprocesses, one per relay job
    - Singleton Supervisor owning every job and its process
    - YAML camera registry with autostart flags

Lifespan:
    startup   configure logging, create services, start reconciliation,
              start autostart cameras
    shutdown  stop every job (SIGTERM, SIGKILL after the grace window)

Logging Strategy:
    INFO  - Application lifecycle, config summary
    WARN  - Autostart failures, degraded startup
    ERROR - Unrecoverable errors with stack traces
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator
import logging
import os

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .api import health, streams
from .api.errors import (
    general_exception_handler,
    http_exception_handler,
    supervisor_exception_handler,
    validation_exception_handler,
)
from .config_io import load_supervisor_settings
from .exceptions import SupervisorError
from .logging_config import configure_logging
from .middleware.request_id import RequestIDMiddleware
from .services import container

logger = logging.getLogger(__name__)

# Setup logging before anything else
configure_logging()

# ============================================================================
# Application Lifespan Management
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup, running, shutdown."""
    logger.info("=" * 80)
    logger.info(f"SmartStream {__version__} starting...")
    logger.info("=" * 80)

    settings = load_supervisor_settings()
    supervisor = container.init_services(settings)
    supervisor.start_reconciliation()

    try:
        registry = container.camera_registry
        cameras = registry.autostart_cameras() if registry is not None else []
        if cameras:
            logger.info(f"Autostarting {len(cameras)} camera(s)")
            await supervisor.start_autostart_cameras(cameras)
        else:
            logger.info("No autostart cameras configured")
    except Exception as e:
        logger.error(f"Autostart sweep failed: {e}", exc_info=True)
        logger.warning("Continuing without autostart streams")

    logger.info("API documentation: /docs and /redoc")
    logger.info("SmartStream ready")

    yield

    logger.info("=" * 80)
    logger.info("SmartStream shutting down...")
    logger.info("=" * 80)

    try:
        await supervisor.shutdown()
    except Exception as e:
        logger.error(f"Shutdown error: {e}", exc_info=True)
    finally:
        container.reset_services()

    logger.info("SmartStream shutdown complete")


# ============================================================================
# FastAPI Application
# ============================================================================

app = FastAPI(
    title="SmartStream",
    description=(
        "Supervised FFmpeg relay of IP camera streams.\n\n"
        "Features:\n"
        "- RTSP to RTMP relay (YouTube, Twitch, custom servers)\n"
        "- Health monitoring with automatic recovery\n"
        "- Autostart on boot with backoff\n"
        "- Process and connectivity diagnostics"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# ============================================================================
# Exception Handlers
# ============================================================================

app.add_exception_handler(SupervisorError, supervisor_exception_handler)  # type: ignore
app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore
app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore
app.add_exception_handler(Exception, general_exception_handler)

# ============================================================================
# Middleware
# ============================================================================

app.add_middleware(RequestIDMiddleware)

# ============================================================================
# API Routers
# ============================================================================

app.include_router(health.router, tags=["health"])
app.include_router(streams.router, prefix="/api/streams", tags=["streams"])

# ============================================================================
# Configuration Summary
# ============================================================================

logger.info(f"Environment: {os.getenv('ENV', 'development')}")
logger.info(f"Log level: {os.getenv('LOG_LEVEL', 'INFO')}")
logger.info(f"Port: {os.getenv('APP_PORT', '8000')}")
