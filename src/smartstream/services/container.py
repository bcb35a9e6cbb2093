"""Service container for singleton instances.

Holds the process-wide service instances so API modules can depend on them
without importing main.py.
Pattern: main.py lifespan initializes services -> container stores them ->
API routes receive them through Depends(get_*)

The Supervisor must be a singleton: it owns the registry of running jobs,
and a second instance would see none of them.

Logging Strategy:
    DEBUG - Service dependency injection
    INFO  - Container initialization
    ERROR - Service not initialized (critical failure)
"""
from __future__ import annotations

import logging

from ..config.supervisor_defaults import SupervisorSettings
from ..config_io import ConfigStore
from .cameras import CameraRegistry, StreamUriResolver
from .diagnostics import DiagnosticsCollector
from .supervisor import Supervisor

logger = logging.getLogger(__name__)

# ============================================================================
# Global Singleton Instances
# ============================================================================

config_store: ConfigStore | None = None
camera_registry: CameraRegistry | None = None
supervisor: Supervisor | None = None
diagnostics: DiagnosticsCollector | None = None


def init_services(
    settings: SupervisorSettings,
    store: ConfigStore | None = None,
    resolver: StreamUriResolver | None = None
) -> Supervisor:
    """Create all singletons. Called once from the application lifespan."""
    global config_store, camera_registry, supervisor, diagnostics

    config_store = store or ConfigStore()
    camera_registry = CameraRegistry(config_store)
    supervisor = Supervisor(settings=settings, resolver=resolver or StreamUriResolver())
    diagnostics = DiagnosticsCollector(supervisor, settings)

    logger.info("Service container initialized")
    return supervisor


def reset_services() -> None:
    """Drop all singletons (tests and shutdown)."""
    global config_store, camera_registry, supervisor, diagnostics
    config_store = None
    camera_registry = None
    supervisor = None
    diagnostics = None


# ============================================================================
# Dependency Injection
# ============================================================================

def get_supervisor() -> Supervisor:
    """Get the Supervisor singleton for Depends().

    Raises:
        RuntimeError: If called before app startup
    """
    if supervisor is None:
        logger.error("Supervisor dependency requested before initialization")
        raise RuntimeError(
            "Supervisor not initialized. "
            "Application startup may have failed."
        )
    logger.debug("Injecting Supervisor singleton")
    return supervisor


def get_camera_registry() -> CameraRegistry:
    if camera_registry is None:
        logger.error("CameraRegistry dependency requested before initialization")
        raise RuntimeError("CameraRegistry not initialized")
    return camera_registry


def get_diagnostics() -> DiagnosticsCollector:
    if diagnostics is None:
        logger.error("DiagnosticsCollector dependency requested before initialization")
        raise RuntimeError("DiagnosticsCollector not initialized")
    return diagnostics


logger.debug("Service container module loaded")
