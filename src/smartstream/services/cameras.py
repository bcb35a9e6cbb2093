"""Camera collaborators: registry, stream-URI resolution, job config assembly.

Camera Registry:
    Cameras live in the key-path store under cams/<hostname>.

Stream-URI Resolution:
    Discovery clients come in two shapes: a standard one exposing
    get_stream_uri() and a legacy one exposing get_stream_uris(). The
    capability is negotiated once per connected client and cached with it,
    so URI lookups never re-probe the client.

        STANDARD     client.get_stream_uri()   -> uri | {"uri": ...} | [...]
        LEGACY       client.get_stream_uris()  -> [{"uri": ...}, ...]
        UNSUPPORTED  neither; resolution fails and the caller falls back

    The discovery wire protocol itself is out of scope: a `connect` factory
    producing client objects is injected.

Logging Strategy:
    DEBUG - Registry reads, negotiated capability
    INFO  - Client connections
    WARN  - Invalid registry entries, unsupported clients
"""
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from pydantic import ValidationError

from ..exceptions import ConfigError, SupervisorError
from ..models.stream import (
    CameraConfig,
    PlatformTarget,
    PlatformType,
    StreamConfig,
    StreamOverrides,
)

logger = logging.getLogger(__name__)

CAMERAS_KEY = "cams"


# ============================================================================
# Collaborator Protocols
# ============================================================================

class ConfigStoreProtocol(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...
    def set(self, key: str, value: Any) -> None: ...
    def delete(self, key: str) -> bool: ...


class CameraRegistryProtocol(Protocol):
    def get_camera(self, camera_id: str) -> CameraConfig | None: ...
    def list_cameras(self) -> list[CameraConfig]: ...


class StreamUriResolverProtocol(Protocol):
    async def resolve_stream_uri(self, camera: CameraConfig) -> str: ...
    async def test_connection(self, camera: CameraConfig) -> bool: ...


class UriResolutionError(SupervisorError):
    """Discovery could not produce a stream URI."""


# ============================================================================
# Camera Registry
# ============================================================================

class CameraRegistry:
    """Camera registry backed by the key-path config store."""

    def __init__(self, store: ConfigStoreProtocol) -> None:
        self._store = store

    def _parse(self, hostname: str, raw: Any) -> CameraConfig | None:
        if not isinstance(raw, dict):
            logger.warning(f"Ignoring invalid camera entry: {hostname}")
            return None
        try:
            return CameraConfig.model_validate({**raw, "hostname": hostname})
        except ValidationError as e:
            logger.warning(f"Ignoring invalid camera entry {hostname}: {e.error_count()} error(s)")
            return None

    def get_camera(self, camera_id: str) -> CameraConfig | None:
        raw = self._store.get(f"{CAMERAS_KEY}/{camera_id}")
        if raw is None:
            return None
        return self._parse(camera_id, raw)

    def list_cameras(self) -> list[CameraConfig]:
        entries = self._store.get(CAMERAS_KEY, {}) or {}
        if not isinstance(entries, dict):
            logger.warning(f"Invalid '{CAMERAS_KEY}' section (expected map)")
            return []
        cameras = [self._parse(hostname, raw) for hostname, raw in entries.items()]
        return [camera for camera in cameras if camera is not None]

    def save_camera(self, camera: CameraConfig) -> None:
        self._store.set(
            f"{CAMERAS_KEY}/{camera.hostname}",
            camera.model_dump(mode="json", exclude={"hostname"}, exclude_none=True),
        )
        logger.debug(f"Saved camera {camera.hostname}")

    def delete_camera(self, camera_id: str) -> bool:
        return self._store.delete(f"{CAMERAS_KEY}/{camera_id}")

    def autostart_cameras(self) -> list[CameraConfig]:
        """Cameras flagged to start streaming at boot."""
        return [camera for camera in self.list_cameras() if camera.autostart]


# ============================================================================
# Capability Negotiation
# ============================================================================

class UriCapability(str, Enum):
    """Stream-URI method a discovery client supports."""

    STANDARD = "standard"
    LEGACY = "legacy"
    UNSUPPORTED = "unsupported"


def negotiate_capability(client: Any) -> UriCapability:
    """Determine which stream-URI method a client exposes."""
    if callable(getattr(client, "get_stream_uri", None)):
        return UriCapability.STANDARD
    if callable(getattr(client, "get_stream_uris", None)):
        return UriCapability.LEGACY
    return UriCapability.UNSUPPORTED


def _extract_uri(result: Any) -> str | None:
    """Normalize the shapes discovery clients return into one URI."""
    if isinstance(result, str):
        return result or None
    if isinstance(result, dict):
        uri = result.get("uri")
        return uri if isinstance(uri, str) and uri else None
    if isinstance(result, (list, tuple)):
        for item in result:
            uri = _extract_uri(item)
            if uri:
                return uri
        return None
    uri = getattr(result, "uri", None)
    return uri if isinstance(uri, str) and uri else None


@dataclass(frozen=True)
class NegotiatedClient:
    """Discovery client paired with its capability, resolved once."""

    client: Any
    capability: UriCapability

    async def stream_uri(self) -> str:
        if self.capability is UriCapability.STANDARD:
            result = self.client.get_stream_uri()
        elif self.capability is UriCapability.LEGACY:
            result = self.client.get_stream_uris()
        else:
            raise UriResolutionError("Discovery client exposes no stream URI method")

        if inspect.isawaitable(result):
            result = await result

        uri = _extract_uri(result)
        if uri is None:
            raise UriResolutionError(f"Unexpected stream URI result: {type(result).__name__}")
        return uri


class StreamUriResolver:
    """Resolves camera stream URIs through discovery clients.

    Args:
        connect: Async factory returning a discovery client for a camera;
            None disables discovery (every lookup fails, callers fall back)
    """

    def __init__(self, connect: Callable[[CameraConfig], Awaitable[Any]] | None = None) -> None:
        self._connect = connect
        self._clients: dict[tuple[str, int], NegotiatedClient] = {}

    async def _client_for(self, camera: CameraConfig) -> NegotiatedClient:
        key = (camera.hostname, camera.port)
        negotiated = self._clients.get(key)
        if negotiated is not None:
            return negotiated

        if self._connect is None:
            raise UriResolutionError("No discovery client configured")

        logger.info(f"Connecting discovery client: {camera.hostname}:{camera.port}")
        client = await self._connect(camera)
        negotiated = NegotiatedClient(client=client, capability=negotiate_capability(client))
        if negotiated.capability is UriCapability.UNSUPPORTED:
            logger.warning(f"Discovery client for {camera.hostname} supports no stream URI method")
        else:
            logger.debug(f"Discovery client for {camera.hostname}: {negotiated.capability.value}")
        self._clients[key] = negotiated
        return negotiated

    def capability_of(self, camera: CameraConfig) -> UriCapability | None:
        """Cached capability for a camera (None before first connection)."""
        negotiated = self._clients.get((camera.hostname, camera.port))
        return negotiated.capability if negotiated else None

    async def resolve_stream_uri(self, camera: CameraConfig) -> str:
        negotiated = await self._client_for(camera)
        return await negotiated.stream_uri()

    async def test_connection(self, camera: CameraConfig) -> bool:
        try:
            negotiated = await self._client_for(camera)
        except Exception as e:
            logger.debug(f"Discovery connection to {camera.hostname} failed: {e}")
            return False
        return negotiated.capability is not UriCapability.UNSUPPORTED


# ============================================================================
# Job Configuration Assembly
# ============================================================================

def resolve_camera_target(
    camera: CameraConfig,
    platform: PlatformType | None = None,
    stream_key: str | None = None,
    server_url: str | None = None
) -> PlatformTarget:
    """Layer request values over camera defaults (request wins).

    Raises:
        ConfigError: No destination platform available
    """
    if platform is None:
        platform = camera.platform
    if platform is None and camera.youtube_stream_key:
        platform = PlatformType.YOUTUBE
    if platform is None:
        raise ConfigError(f"No destination platform configured for camera {camera.hostname}")

    key = stream_key or camera.stream_keys.get(platform)
    if key is None and platform is PlatformType.YOUTUBE:
        key = camera.youtube_stream_key

    return PlatformTarget(
        type=platform,
        stream_key=key,
        server_url=server_url or camera.server_url,
    )


def build_camera_config(
    input_url: str,
    target: PlatformTarget,
    overrides: StreamOverrides | None = None
) -> StreamConfig:
    """Assemble a StreamConfig for a camera job.

    Raises:
        ConfigError: Resulting configuration is invalid
    """
    values: dict[str, Any] = {"input_url": input_url, "platform": target}
    if overrides is not None:
        values.update(overrides.model_dump(exclude_none=True))
    try:
        return StreamConfig(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid stream configuration: {e.errors()[0]['msg']}") from e
