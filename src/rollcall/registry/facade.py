"""The registry entry point: one operation set over whichever store fits the host."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import RegistryConfig, default_config, update_config
from .base import RegistryBackend
from .event_registry import EventStoreRegistry
from .event_store import EventStore
from .file_registry import FileRegistry
from .http_registry import HttpRegistry
from .models import ServiceRecord

logger = logging.getLogger(__name__)


def _dir_writable(path: Path) -> bool:
    """Whether *path* is a writable directory or could be created as one."""
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate.is_dir() and os.access(candidate, os.W_OK | os.X_OK)
    return False


def detect_store_kind(config: RegistryConfig) -> str:
    """Pick the store for this host.

    An explicit ``store`` wins. Otherwise: the event store when one is
    configured, the snapshot file when its directory is writable, and the
    read-only HTTP client on hosts that cannot own the registry.
    """
    if config.store != "auto":
        return config.store
    if config.event_store_url:
        return "event"
    if _dir_writable(Path(config.registry_path).expanduser().parent):
        return "file"
    return "http"


def create_backend(config: RegistryConfig, kind: str,
                   store: Optional[EventStore] = None) -> RegistryBackend:
    if kind == "file":
        return FileRegistry(config)
    if kind == "http":
        return HttpRegistry(config)
    if kind == "event":
        return EventStoreRegistry(config, store=store)
    raise ValueError(f"Unknown registry store '{kind}'")


class ServiceRegistry:
    """Register, discover and health-check services.

    The backing store is chosen once, at construction::

        async with ServiceRegistry() as registry:
            await registry.register("api", port=8080, health_path="/health")
            record = await registry.discover("api")
    """

    def __init__(self, config: Optional[RegistryConfig] = None,
                 store: Optional[EventStore] = None):
        self.config = config or default_config()
        if store is not None and self.config.store == "auto":
            # An explicit event store implies the event registry
            self.kind = "event"
        else:
            self.kind = detect_store_kind(self.config)
        self.backend = create_backend(self.config, self.kind, store=store)
        logger.debug("Using %s registry", self.kind)

    def configure(self, **overrides) -> None:
        """Merge *overrides* into the config of this registry and its store.

        The store itself was chosen at construction and cannot be switched.
        """
        if "store" in overrides:
            raise ValueError("the record store is chosen at construction; create a new ServiceRegistry")
        self.config = update_config(self.config, **overrides)
        self.backend.configure(**overrides)

    async def register(self, name: str, port: int, process_id: Optional[int] = None,
                       health_path: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> ServiceRecord:
        return await self.backend.register(
            name, port, process_id=process_id, health_path=health_path, metadata=metadata,
        )

    async def discover(self, name: str, timeout: Optional[float] = None,
                       retries: Optional[int] = None,
                       include_health: bool = False) -> Optional[ServiceRecord]:
        return await self.backend.discover(
            name, timeout=timeout, retries=retries, include_health=include_health,
        )

    async def unregister(self, name: str) -> None:
        await self.backend.unregister(name)

    async def check_health(self, name: str, timeout: Optional[float] = None,
                           retries: Optional[int] = None) -> bool:
        return await self.backend.check_health(name, timeout=timeout, retries=retries)

    async def list_services(self) -> List[ServiceRecord]:
        return await self.backend.list_services()

    async def cleanup(self) -> List[str]:
        return await self.backend.cleanup()

    async def dispose(self) -> None:
        await self.backend.dispose()

    async def __aenter__(self) -> 'ServiceRegistry':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()


# ---------------------------------------------------------------------------
# One-shot helpers
#
# No register helper: a registration lives only as long as its registry
# (the event store removes presence on dispose).
# ---------------------------------------------------------------------------

async def discover(name: str, config: Optional[RegistryConfig] = None,
                   **options) -> Optional[ServiceRecord]:
    async with ServiceRegistry(config) as registry:
        return await registry.discover(name, **options)


async def unregister(name: str, config: Optional[RegistryConfig] = None) -> None:
    async with ServiceRegistry(config) as registry:
        await registry.unregister(name)


async def check_health(name: str, config: Optional[RegistryConfig] = None,
                       **options) -> bool:
    async with ServiceRegistry(config) as registry:
        return await registry.check_health(name, **options)


async def list_services(config: Optional[RegistryConfig] = None) -> List[ServiceRecord]:
    async with ServiceRegistry(config) as registry:
        return await registry.list_services()
