"""Event-store-backed registry with real-time presence and per-user namespaces.

Layout inside the store::

    {base}/users/{namespace}/services/{name}   ServiceRecord document
    {base}/users/{namespace}/presence/{name}   PresenceRecord document

The presence document is armed for removal on disconnect, so a crashed or
partitioned service loses its presence without anyone polling. A service
record is only trusted while its presence says ``online``; readers that find a
record without presence delete it.

If the store cannot be initialised, the instance falls back for good to an
embedded :class:`FileRegistry`. The decision is taken once, on first use.
"""

import asyncio
import logging
import os
import platform
import socket
import time
from typing import Any, Dict, List, Optional

from ..config import RegistryConfig
from ..heartbeat import HealthReporter
from .base import RegistryBackend
from .errors import ServiceNotFoundError, StoreUnavailableError
from .event_store import EventStore, RedisEventStore
from .file_registry import FileRegistry
from .liveness import probe_health_quiet
from .models import PresenceRecord, ServiceRecord, now_iso
from .namespace import NamespaceResolver
from .retry import retry_async

logger = logging.getLogger(__name__)


class EventStoreRegistry(RegistryBackend):
    """Registry on an event store, falling back to a snapshot file."""

    kind = "event"

    def __init__(self, config: Optional[RegistryConfig] = None,
                 store: Optional[EventStore] = None,
                 resolver: Optional[NamespaceResolver] = None,
                 fallback: Optional[FileRegistry] = None):
        super().__init__(config)
        self.store = store
        self.resolver = resolver or NamespaceResolver(
            override=self.config.namespace, user_id_path=self.config.user_id_path,
        )
        self.fallback = fallback or FileRegistry(self.config)
        self.namespace: Optional[str] = None
        self._ready: Optional[bool] = None
        self._init_lock = asyncio.Lock()
        self._reporters: Dict[str, HealthReporter] = {}
        self._disposed = False

    def configure(self, **overrides) -> None:
        super().configure(**overrides)
        self.fallback.configure(**overrides)

    def _config_changed(self, keys) -> None:
        if self._ready is None and keys & {"namespace", "user_id_path"}:
            self.resolver = NamespaceResolver(
                override=self.config.namespace, user_id_path=self.config.user_id_path,
            )

    # -- initialisation ---------------------------------------------------

    @property
    def using_fallback(self) -> bool:
        return self._ready is False

    async def _initialize(self) -> bool:
        """Connect once; remember the outcome for the life of this instance."""
        if self._ready is not None:
            return self._ready
        async with self._init_lock:
            if self._ready is not None:
                return self._ready
            try:
                self.namespace = await self.resolver.resolve()
                if self.store is None:
                    if not self.config.event_store_url:
                        raise StoreUnavailableError("no event_store_url configured")
                    self.store = RedisEventStore(
                        self.config.event_store_url,
                        presence_ttl=self.config.presence_ttl,
                        connect_timeout=self.config.health_check_timeout,
                    )
                await self.store.connect()
            except Exception as exc:
                # Auth failures, missing servers, restricted networks: all mean "use the file".
                logger.warning(
                    "Event store unavailable, falling back to file registry %s: %s",
                    self.fallback.path, exc,
                )
                self._ready = False
            else:
                logger.info("Event store registry ready for namespace '%s'", self.namespace)
                self._ready = True
        return self._ready

    def _base(self) -> str:
        return f"{self.config.event_store_base}/users/{self.namespace}"

    def service_path(self, name: str) -> str:
        return f"{self._base()}/services/{name}"

    def presence_path(self, name: str) -> str:
        return f"{self._base()}/presence/{name}"

    async def _store_call(self, operation, description: str, details: Dict[str, Any],
                          attempts: Optional[int] = None):
        """Run a store round trip with retries; exhaustion becomes StoreUnavailableError."""
        attempts = attempts or self._attempts(None)
        try:
            return await retry_async(
                operation,
                attempts=attempts,
                delay=self.config.retry_delay,
                retry_on=self.store.transient_errors,
                description=description,
            )
        except self.store.transient_errors as exc:
            raise StoreUnavailableError(
                f"Failed to {description} after {attempts} attempts: {exc}",
                cause=exc,
                details=details,
            ) from exc

    # -- operations -------------------------------------------------------

    async def register(self, name: str, port: int, process_id: Optional[int] = None,
                       health_path: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> ServiceRecord:
        if not await self._initialize():
            return await self.fallback.register(
                name, port, process_id=process_id, health_path=health_path, metadata=metadata,
            )

        if process_id is None:
            process_id = os.getpid()
        hostname = socket.gethostname()
        enriched = dict(metadata or {})
        enriched.update({
            "namespace": self.namespace,
            "hostname": hostname,
            "platform": platform.system().lower(),
            "pythonVersion": platform.python_version(),
            "sessionId": f"{self.namespace}-{int(time.time() * 1000)}",
        })
        record = ServiceRecord.create(
            name, port, process_id=process_id, health_path=health_path, metadata=enriched,
        )
        presence = PresenceRecord(
            online=True,
            last_seen=record.registered_at,
            process_id=record.process_id,
            namespace=self.namespace,
            hostname=hostname,
        )

        async def write():
            await self.store.set(self.service_path(name), record.to_dict())
            await self.store.on_disconnect_remove(self.presence_path(name))
            await self.store.set(self.presence_path(name), presence.to_dict())

        await self._store_call(
            write, f"register service '{name}'",
            {"name": name, "port": port, "process_id": process_id, "health_path": health_path},
        )
        await self._start_reporter(record)
        logger.info("Service '%s' registered with presence in namespace '%s'", name, self.namespace)
        return record

    async def discover(self, name: str, timeout: Optional[float] = None,
                       retries: Optional[int] = None,
                       include_health: bool = False) -> Optional[ServiceRecord]:
        if not await self._initialize():
            return await self.fallback.discover(
                name, timeout=timeout, retries=retries, include_health=include_health,
            )

        attempts = self._attempts(retries)
        data = await self._store_call(
            lambda: self.store.get(self.service_path(name)),
            f"discover service '{name}'", {"name": name}, attempts=attempts,
        )
        if data is None:
            return None
        if not await self._is_present(name, attempts):
            return None

        record = ServiceRecord.from_dict(data)
        if include_health and record.health_check_url:
            record = await self._fold_health(record, self._timeout(timeout))
            await self._record_health(name, record.is_healthy)
        return record

    async def _is_present(self, name: str, attempts: Optional[int] = None) -> bool:
        """Check presence, deleting the service record when it is gone."""
        data = await self._store_call(
            lambda: self.store.get(self.presence_path(name)),
            f"read presence of '{name}'", {"name": name}, attempts=attempts,
        )
        if data is not None and PresenceRecord.from_dict(data).online:
            return True
        logger.info("Service '%s' has no presence; removing its record", name)
        await self._store_call(
            lambda: self.store.remove(self.service_path(name)),
            f"remove stale service '{name}'", {"name": name},
        )
        return False

    async def unregister(self, name: str) -> None:
        if not await self._initialize():
            return await self.fallback.unregister(name)

        data = await self._store_call(
            lambda: self.store.get(self.service_path(name)),
            f"read service '{name}'", {"name": name},
        )
        if data is None:
            raise ServiceNotFoundError(name)

        async def remove():
            await self.store.remove(self.service_path(name))
            await self.store.remove(self.presence_path(name))

        await self._store_call(remove, f"unregister service '{name}'", {"name": name})
        reporter = self._reporters.pop(name, None)
        if reporter is not None:
            await reporter.stop()
        logger.info("Service '%s' unregistered from namespace '%s'", name, self.namespace)

    async def check_health(self, name: str, timeout: Optional[float] = None,
                           retries: Optional[int] = None) -> bool:
        if not await self._initialize():
            return await self.fallback.check_health(name, timeout=timeout, retries=retries)
        return await super().check_health(name, timeout=timeout, retries=retries)

    async def list_services(self) -> List[ServiceRecord]:
        if not await self._initialize():
            return await self.fallback.list_services()

        services_path = f"{self._base()}/services"
        entries = await self._store_call(
            lambda: self.store.children(services_path), "list services", {"path": services_path},
        )
        records = []
        for name, data in sorted(entries.items()):
            if await self._is_present(name):
                records.append(ServiceRecord.from_dict(data))
        return records

    async def cleanup(self) -> List[str]:
        try:
            if not await self._initialize():
                return await self.fallback.cleanup()
            services = await self.list_services()
        except Exception as exc:
            logger.warning("Registry cleanup failed: %s", exc)
            return []

        removed = []
        for record in services:
            if not record.health_check_url:
                continue
            try:
                if await probe_health_quiet(
                    record.health_check_url, self.config.cleanup_probe_timeout,
                ):
                    continue
                await self.unregister(record.name)
            except ServiceNotFoundError:
                logger.debug("Service '%s' was already unregistered", record.name)
                continue
            except Exception as exc:
                logger.warning("Cleanup of service '%s' failed: %s", record.name, exc)
                continue
            removed.append(record.name)
        return removed

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        reporters, self._reporters = self._reporters, {}
        for reporter in reporters.values():
            await reporter.stop()
        if self._ready and self.store is not None:
            await self.store.close()
        await self.fallback.dispose()

    # -- health -----------------------------------------------------------

    async def _record_health(self, name: str, healthy: bool) -> None:
        try:
            updated = await self._store_call(
                lambda: self.store.update(
                    self.service_path(name),
                    {"isHealthy": healthy, "lastHealthCheck": now_iso()},
                ),
                f"record health of '{name}'", {"name": name},
            )
        except StoreUnavailableError as exc:
            logger.warning("Could not persist health of '%s': %s", name, exc)
            return
        if not updated:
            # Unregistered elsewhere, or swept after its presence expired
            logger.info("Service '%s' is no longer registered; stopping its health updates", name)
            reporter = self._reporters.pop(name, None)
            if reporter is not None:
                reporter.cancel()

    async def _start_reporter(self, record: ServiceRecord) -> None:
        if not record.health_check_url or self.config.health_update_interval <= 0:
            return
        previous = self._reporters.pop(record.name, None)
        if previous is not None:
            await previous.stop()
        reporter = HealthReporter(
            record.name,
            record.health_check_url,
            interval=self.config.health_update_interval,
            timeout=self.config.health_check_timeout,
            report=lambda healthy, name=record.name: self._record_health(name, healthy),
        )
        reporter.start()
        self._reporters[record.name] = reporter
