"""Thread-safe YAML key-path store with atomic writes, and settings loading.

Persistent storage for SmartStream collaborators (camera registry) using a
single YAML document addressed by slash-separated key paths:

    cams/192.168.1.100  ->  {"hostname": ..., "autostart": true, ...}

Features:
    - Thread-safe with RLock
    - Atomic writes (temp file + rename)
    - Auto-recovery from corruption
    - In-memory mode for CI/testing (CI_DRY_RUN=true)

Storage Modes:
    Production: $CONFIG_DIR/smartstream.yml (default /data)
    CI/Testing: In-memory dict (no disk I/O)

Supervisor tunables are read from SMARTSTREAM_* environment variables by
load_supervisor_settings(); invalid values are logged and ignored.

Logging Strategy:
    DEBUG - File operations, key access
    INFO  - Init, mode selection, settings overrides
    WARN  - Invalid formats, recovery, invalid env values
    ERROR - YAML parsing, I/O failures
"""
from __future__ import annotations

import copy
import io
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Final, Iterator

import yaml
from pydantic import ValidationError

from .config.supervisor_defaults import SupervisorSettings

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

CONFIG_DIR: Final[Path] = Path(os.getenv("CONFIG_DIR", "/data"))
CONFIG_PATH: Final[Path] = CONFIG_DIR / "smartstream.yml"

ENV_PREFIX: Final[str] = "SMARTSTREAM_"
"""Prefix of supervisor setting overrides, e.g. SMARTSTREAM_START_TIMEOUT_SECONDS."""

# CI/Testing: in-memory storage
_DRY_RUN_MODE: Final[bool] = os.getenv("CI_DRY_RUN", "").lower() in ("true", "1", "yes")


def _split_key(key: str) -> list[str]:
    parts = [part for part in key.strip("/").split("/") if part]
    if not parts:
        raise ValueError(f"Invalid config key: {key!r}")
    return parts


def _atomic_rename(src: str | Path, dst: str | Path) -> None:
    """Atomic rename (POSIX) or best-effort (Windows)."""
    src_path = Path(src)
    dst_path = Path(dst)

    if os.name == "nt":
        # Windows: remove target first (not atomic)
        if dst_path.exists():
            dst_path.unlink()

    src_path.rename(dst_path)


# ============================================================================
# Key-Path Store
# ============================================================================

class ConfigStore:
    """YAML document addressed by slash-separated key paths.

    Attributes:
        path: Backing file, or None in memory mode
    """

    def __init__(self, path: Path | None = CONFIG_PATH, *, in_memory: bool = _DRY_RUN_MODE) -> None:
        self.path = None if in_memory else path
        self._lock = threading.RLock()
        self._memory: dict[str, Any] = {}

        if self.path is None:
            logger.info("Config: DRY_RUN mode (in-memory)")
        else:
            logger.info(f"Config: Production mode ({self.path})")

    # ========================================================================
    # Whole-Document Access
    # ========================================================================

    def load(self) -> dict[str, Any]:
        """Load the document with auto-recovery.

        Returns:
            Document dict (empty when missing or corrupt)
        """
        with self._lock:
            if self.path is None:
                return copy.deepcopy(self._memory)

            if not self.path.exists():
                return {}

            try:
                with io.open(self.path, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                logger.error(f"YAML parsing error: {e}", exc_info=True)
                logger.warning("Reinitializing corrupted config")
                self.save({})
                return {}

            if not isinstance(data, dict):
                logger.warning("Invalid config format (expected dict), reinitializing")
                self.save({})
                return {}

            return data

    def save(self, data: dict[str, Any]) -> None:
        """Save the document with an atomic write.

        Raises:
            ValueError: Document is not a dict
            OSError: Write failure
        """
        if not isinstance(data, dict):
            raise ValueError("Config must be dict")

        with self._lock:
            if self.path is None:
                self._memory = copy.deepcopy(data)
                logger.debug("Saved config to memory")
                return

            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = None
            try:
                # Temp file in the same dir keeps the rename atomic
                fd, temp_path = tempfile.mkstemp(
                    dir=self.path.parent,
                    prefix=".smartstream_",
                    suffix=".yml.tmp"
                )
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    yaml.safe_dump(
                        data,
                        f,
                        default_flow_style=False,
                        sort_keys=True,
                        allow_unicode=True
                    )
                _atomic_rename(temp_path, self.path)
                logger.debug(f"Saved config: {self.path}")

            except Exception as e:
                logger.error(f"Config save failed: {e}", exc_info=True)
                if temp_path and os.path.exists(temp_path):
                    try:
                        os.remove(temp_path)
                    except OSError as cleanup_err:
                        logger.warning(f"Temp cleanup failed: {cleanup_err}")
                raise

    @contextmanager
    def atomic_update(self) -> Iterator[dict[str, Any]]:
        """Read-modify-write under the lock; changes are saved on exit.

        Usage:
            with store.atomic_update() as data:
                data.setdefault("cams", {})["10.0.0.5"] = {...}
        """
        with self._lock:
            data = self.load()
            yield data
            self.save(data)

    # ========================================================================
    # Key-Path Access
    # ========================================================================

    def get(self, key: str, default: Any = None) -> Any:
        """Get the value at a key path (default when absent)."""
        node: Any = self.load()
        for part in _split_key(key):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        """Set the value at a key path, creating intermediate maps."""
        parts = _split_key(key)
        with self.atomic_update() as data:
            node = data
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = {}
                    node[part] = child
                node = child
            node[parts[-1]] = value
        logger.debug(f"Config set: {key}")

    def delete(self, key: str) -> bool:
        """Delete the value at a key path.

        Returns:
            True if a value was removed
        """
        parts = _split_key(key)
        with self._lock:
            data = self.load()
            node: Any = data
            for part in parts[:-1]:
                if not isinstance(node, dict) or part not in node:
                    return False
                node = node[part]
            if not isinstance(node, dict) or parts[-1] not in node:
                return False
            del node[parts[-1]]
            self.save(data)
        logger.debug(f"Config delete: {key}")
        return True


# ============================================================================
# Supervisor Settings
# ============================================================================

def load_supervisor_settings(environ: dict[str, str] | None = None) -> SupervisorSettings:
    """Build SupervisorSettings from SMARTSTREAM_* environment overrides.

    Each override is validated on its own; an invalid value is logged and
    the default kept.

    Args:
        environ: Environment mapping (default: os.environ)
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    for name in SupervisorSettings.model_fields:
        env_name = f"{ENV_PREFIX}{name.upper()}"
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            SupervisorSettings(**{name: raw})
        except ValidationError as e:
            logger.warning(f"Invalid {env_name}={raw!r}, using default: {e.errors()[0]['msg']}")
            continue
        overrides[name] = raw
        logger.info(f"Setting override: {name}={raw}")

    return SupervisorSettings(**overrides)
