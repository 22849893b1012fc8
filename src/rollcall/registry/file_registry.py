"""File-backed registry: one JSON snapshot document shared by local processes.

Every mutation is a full read-modify-write of the snapshot. There is no file
locking: two processes writing at the same moment can lose one update (the
last snapshot written wins). The file is replaced atomically, so readers never
see a half-written document.
"""

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import RegistryConfig
from .base import RegistryBackend
from .errors import ServiceNotFoundError, StoreUnavailableError
from .liveness import probe_health_quiet, process_alive_async
from .models import RegistrySnapshot, ServiceRecord, now_iso
from .retry import retry_async

logger = logging.getLogger(__name__)

# Failures reading, decoding or writing the snapshot
SNAPSHOT_ERRORS = (OSError, ValueError, KeyError, TypeError)


class FileRegistry(RegistryBackend):
    """Registry persisted as a single snapshot file."""

    kind = "file"

    def __init__(self, config: Optional[RegistryConfig] = None):
        super().__init__(config)
        self.path = Path(self.config.registry_path).expanduser()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._disposed = False

    def _config_changed(self, keys) -> None:
        self.path = Path(self.config.registry_path).expanduser()
        if "cleanup_interval" in keys and self._cleanup_task is not None:
            # Re-armed with the new interval on the next operation
            self._cleanup_task.cancel()
            self._cleanup_task = None

    # -- snapshot I/O -----------------------------------------------------

    def read_snapshot(self) -> RegistrySnapshot:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return RegistrySnapshot.empty()
        return RegistrySnapshot.from_dict(json.loads(text))

    def write_snapshot(self, snapshot: RegistrySnapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=self.path.stem + "_", suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot.to_dict(), f, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def snapshot_document(self) -> Dict[str, Any]:
        """The raw snapshot document, as served over HTTP."""
        return self.read_snapshot().to_dict()

    async def load_snapshot(self) -> RegistrySnapshot:
        return await asyncio.to_thread(self.read_snapshot)

    async def save_snapshot(self, snapshot: RegistrySnapshot) -> None:
        await asyncio.to_thread(self.write_snapshot, snapshot)

    async def _with_retries(self, operation, description: str, attempts: Optional[int] = None):
        return await retry_async(
            operation,
            attempts=attempts or self._attempts(None),
            delay=self.config.retry_delay,
            retry_on=SNAPSHOT_ERRORS,
            description=description,
        )

    # -- operations -------------------------------------------------------

    async def register(self, name: str, port: int, process_id: Optional[int] = None,
                       health_path: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> ServiceRecord:
        self._ensure_cleanup_timer()
        if process_id is None:
            process_id = os.getpid()
        record = ServiceRecord.create(
            name, port, process_id=process_id, health_path=health_path, metadata=metadata,
        )

        async def write():
            snapshot = await self.load_snapshot()
            snapshot.services[name] = record
            snapshot.touch()
            await self.save_snapshot(snapshot)

        try:
            await self._with_retries(write, f"register '{name}'")
        except SNAPSHOT_ERRORS as exc:
            raise StoreUnavailableError(
                f"Failed to register service '{name}': {exc}",
                cause=exc,
                details={"name": name, "port": port, "process_id": process_id,
                         "health_path": health_path, "path": str(self.path)},
            ) from exc

        logger.info("Registered service '%s' on port %d (%s)", name, record.port, self.path)
        return record

    async def discover(self, name: str, timeout: Optional[float] = None,
                       retries: Optional[int] = None,
                       include_health: bool = False) -> Optional[ServiceRecord]:
        self._ensure_cleanup_timer()
        attempts = self._attempts(retries)
        try:
            snapshot = await self._with_retries(
                self.load_snapshot, f"discover '{name}'", attempts=attempts,
            )
        except SNAPSHOT_ERRORS as exc:
            raise StoreUnavailableError(
                f"Failed to discover service '{name}' after {attempts} attempts: {exc}",
                cause=exc,
                details={"name": name, "path": str(self.path)},
            ) from exc

        record = snapshot.services.get(name)
        if record is None:
            return None

        if include_health and record.health_check_url:
            record = await self._fold_health(record, self._timeout(timeout))
            await self._record_health(name, record.is_healthy)
        return record

    async def unregister(self, name: str) -> None:
        async def remove():
            snapshot = await self.load_snapshot()
            if name not in snapshot.services:
                raise ServiceNotFoundError(name)
            del snapshot.services[name]
            snapshot.touch()
            await self.save_snapshot(snapshot)

        try:
            await self._with_retries(remove, f"unregister '{name}'")
        except SNAPSHOT_ERRORS as exc:
            raise StoreUnavailableError(
                f"Failed to unregister service '{name}': {exc}",
                cause=exc,
                details={"name": name, "path": str(self.path)},
            ) from exc
        logger.info("Unregistered service '%s'", name)

    async def list_services(self) -> List[ServiceRecord]:
        self._ensure_cleanup_timer()
        try:
            snapshot = await self._with_retries(self.load_snapshot, "list services")
        except SNAPSHOT_ERRORS as exc:
            raise StoreUnavailableError(
                f"Failed to list services: {exc}", cause=exc, details={"path": str(self.path)},
            ) from exc
        return list(snapshot.services.values())

    async def _record_health(self, name: str, healthy: bool) -> None:
        async def write():
            snapshot = await self.load_snapshot()
            record = snapshot.services.get(name)
            if record is None:
                return
            record.is_healthy = healthy
            record.last_health_check = now_iso()
            snapshot.touch()
            await self.save_snapshot(snapshot)

        try:
            await write()
        except SNAPSHOT_ERRORS as exc:
            # The probe result is still returned to the caller; only the cache is stale.
            logger.warning("Could not persist health of '%s': %s", name, exc)

    # -- staleness --------------------------------------------------------

    async def is_stale(self, record: ServiceRecord) -> bool:
        """True only when age, process probe and health probe all find no sign of life."""
        if record.age_seconds() <= self.config.service_timeout:
            return False
        if record.process_id is not None and await process_alive_async(record.process_id):
            return False
        if record.health_check_url and await probe_health_quiet(
            record.health_check_url, self.config.cleanup_probe_timeout,
        ):
            return False
        return True

    async def cleanup(self) -> List[str]:
        try:
            snapshot = await self.load_snapshot()
            stale = {}
            for name, record in snapshot.services.items():
                if await self.is_stale(record):
                    stale[name] = record.registered_at
            if not stale:
                return []

            # Probing takes a while; re-read so a service re-registered meanwhile survives.
            snapshot = await self.load_snapshot()
            removed = []
            for name, registered_at in stale.items():
                current = snapshot.services.get(name)
                if current is not None and current.registered_at == registered_at:
                    del snapshot.services[name]
                    removed.append(name)
            if removed:
                snapshot.touch()
                await self.save_snapshot(snapshot)
                logger.info("Cleanup removed stale services: %s", ", ".join(removed))
            return removed
        except Exception as exc:
            logger.warning("Registry cleanup failed: %s", exc)
            return []

    def _ensure_cleanup_timer(self) -> None:
        if self._disposed or self._cleanup_task is not None:
            return
        if self.config.cleanup_interval <= 0:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cleanup_task = loop.create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            await self.cleanup()

    async def dispose(self) -> None:
        self._disposed = True
        task, self._cleanup_task = self._cleanup_task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
