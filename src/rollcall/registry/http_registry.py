"""HTTP-backed registry: discovery-only client of a remote snapshot endpoint.

The endpoint (see :mod:`rollcall.server`) returns the same document the file
store keeps on disk. Lookups go through a short-lived cache, and the last good
snapshot is served when the endpoint cannot be reached.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp

from ..config import RegistryConfig
from .base import RegistryBackend
from .errors import StoreUnavailableError, UnsupportedOperationError
from .liveness import USER_AGENT, HealthProbeError, probe_health
from .models import RegistrySnapshot, ServiceRecord
from .retry import retry_async

logger = logging.getLogger(__name__)

_READ_ONLY_REASON = "services register themselves through a file or event store registry"


class HttpRegistry(RegistryBackend):
    """Read-only registry fed by ``GET registry_url``."""

    kind = "http"

    def __init__(self, config: Optional[RegistryConfig] = None):
        super().__init__(config)
        self.url = self.config.registry_url
        self._session: Optional[aiohttp.ClientSession] = None
        self._cache: Optional[RegistrySnapshot] = None
        self._cached_at = 0.0

    def _config_changed(self, keys) -> None:
        if self.config.registry_url != self.url:
            self.url = self.config.registry_url
            self._cache = None
            self._cached_at = 0.0

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                trust_env=False,
            )
        return self._session

    async def fetch_snapshot(self) -> RegistrySnapshot:
        """Return the registry snapshot, cached for ``cache_ttl`` seconds."""
        now = time.monotonic()
        if self._cache is not None and now - self._cached_at < self.config.cache_ttl:
            return self._cache

        try:
            timeout = aiohttp.ClientTimeout(total=self.config.health_check_timeout)
            async with self._get_session().get(self.url, timeout=timeout) as resp:
                if resp.status < 200 or resp.status >= 300:
                    raise aiohttp.ClientResponseError(
                        resp.request_info, resp.history,
                        status=resp.status, message=resp.reason or "",
                    )
                data = await resp.json(content_type=None)
            snapshot = RegistrySnapshot.from_dict(data)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError, TypeError) as exc:
            if self._cache is not None:
                logger.warning("Using stale registry data due to fetch error: %s", exc)
                return self._cache
            raise StoreUnavailableError(
                f"Failed to fetch registry from {self.url}: {exc!r}",
                cause=exc,
                details={"url": self.url},
            ) from exc

        self._cache = snapshot
        self._cached_at = now
        return snapshot

    async def register(self, name: str, port: int, process_id: Optional[int] = None,
                       health_path: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> ServiceRecord:
        raise UnsupportedOperationError("register", self.kind, _READ_ONLY_REASON)

    async def unregister(self, name: str) -> None:
        raise UnsupportedOperationError("unregister", self.kind, _READ_ONLY_REASON)

    async def discover(self, name: str, timeout: Optional[float] = None,
                       retries: Optional[int] = None,
                       include_health: bool = False) -> Optional[ServiceRecord]:
        attempts = self._attempts(retries)
        try:
            snapshot = await retry_async(
                self.fetch_snapshot,
                attempts=attempts,
                delay=self.config.retry_delay,
                retry_on=(StoreUnavailableError,),
                description=f"discover '{name}'",
            )
        except StoreUnavailableError as exc:
            raise StoreUnavailableError(
                f"Failed to discover service '{name}' after {attempts} attempts: {exc}",
                cause=exc.cause,
                details={"name": name, "url": self.url},
            ) from exc

        record = snapshot.services.get(name)
        if record is None:
            return None
        if include_health and record.health_check_url:
            # Folded into the returned copy only; this store is not ours to write.
            return await self._fold_health(record, self._timeout(timeout))
        return record

    async def list_services(self) -> List[ServiceRecord]:
        snapshot = await retry_async(
            self.fetch_snapshot,
            attempts=self._attempts(None),
            delay=self.config.retry_delay,
            retry_on=(StoreUnavailableError,),
            description="list services",
        )
        return list(snapshot.services.values())

    async def _probe(self, url: str, timeout: float) -> bool:
        """Best-effort probe: connection failures assume the service is up.

        From a restricted host a refused or filtered connection says nothing
        about the service itself. Timeouts are still failures.
        """
        try:
            return await probe_health(url, timeout, session=self._get_session())
        except HealthProbeError as exc:
            if exc.timed_out:
                raise
            logger.warning("Health probe %s could not connect, assuming service is running", url)
            return True

    async def cleanup(self) -> List[str]:
        # Cleanup belongs to whoever owns the registry; just drop the cache.
        self._cache = None
        self._cached_at = 0.0
        return []

    async def dispose(self) -> None:
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()
