"""Operation contract shared by every record store."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..config import RegistryConfig, update_config
from .errors import HealthCheckFailedError, ServiceNotFoundError
from .liveness import HealthProbeError, probe_health
from .models import ServiceRecord
from .retry import retry_async

logger = logging.getLogger(__name__)


class RegistryBackend(ABC):
    """A record store. ``kind`` tags the variant: file, http or event."""

    kind = ""

    def __init__(self, config: Optional[RegistryConfig] = None):
        self.config = config or RegistryConfig()

    def configure(self, **overrides) -> None:
        """Merge *overrides* into this registry's config.

        Unknown keys raise ValueError. Settings read only at connection time
        (event store URL, namespace) have no effect once the store is in use.
        """
        self.config = update_config(self.config, **overrides)
        self._config_changed(set(overrides))

    def _config_changed(self, keys) -> None:
        """Hook for stores that cache values derived from the config."""

    # -- contract ---------------------------------------------------------

    @abstractmethod
    async def register(self, name: str, port: int, process_id: Optional[int] = None,
                       health_path: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> ServiceRecord:
        """Create or overwrite the record for *name*; last write wins."""

    @abstractmethod
    async def discover(self, name: str, timeout: Optional[float] = None,
                       retries: Optional[int] = None,
                       include_health: bool = False) -> Optional[ServiceRecord]:
        """Return the record for *name*, or None when it is not registered."""

    @abstractmethod
    async def unregister(self, name: str) -> None:
        """Remove *name*; raises ServiceNotFoundError when it is not registered."""

    @abstractmethod
    async def list_services(self) -> List[ServiceRecord]:
        """All records visible to this registry."""

    @abstractmethod
    async def cleanup(self) -> List[str]:
        """Best-effort removal of dead services. Never raises."""

    @abstractmethod
    async def dispose(self) -> None:
        """Release timers and connections. Idempotent."""

    async def check_health(self, name: str, timeout: Optional[float] = None,
                           retries: Optional[int] = None) -> bool:
        """Probe the health endpoint of *name*.

        A registered service without a health path is healthy by presence
        alone. A probe that answers with a non-2xx status is ``False``; one that
        never gets an answer is retried and ends in HealthCheckFailedError.
        """
        record = await self.discover(name)
        if record is None:
            raise ServiceNotFoundError(name)
        if not record.health_check_url:
            return True

        url = record.health_check_url
        timeout = self._timeout(timeout)
        attempts = self._attempts(retries)
        try:
            healthy = await retry_async(
                lambda: self._probe(url, timeout),
                attempts=attempts,
                delay=self.config.retry_delay,
                retry_on=(HealthProbeError,),
                description=f"health check of '{name}'",
            )
        except HealthProbeError as exc:
            raise HealthCheckFailedError(name, attempts, cause=exc) from exc

        await self._record_health(name, healthy)
        return healthy

    # -- helpers ----------------------------------------------------------

    def _timeout(self, timeout: Optional[float]) -> float:
        return self.config.health_check_timeout if timeout is None else timeout

    def _attempts(self, retries: Optional[int]) -> int:
        retries = self.config.retry_attempts if retries is None else retries
        return max(0, retries) + 1

    async def _probe(self, url: str, timeout: float) -> bool:
        return await probe_health(url, timeout)

    async def _fold_health(self, record: ServiceRecord, timeout: float) -> ServiceRecord:
        """Probe once and return a copy of *record* carrying the result."""
        try:
            healthy = await self._probe(record.health_check_url, timeout)
        except HealthProbeError as exc:
            logger.debug("%s", exc)
            healthy = False
        return record.with_health(healthy)

    async def _record_health(self, name: str, healthy: bool) -> None:
        """Persist a probe result. Stores that cannot write leave this a no-op."""
