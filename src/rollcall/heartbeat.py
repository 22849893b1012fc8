"""Periodic health reporting.

``HealthReporter`` is the self-reporting loop a registered service runs: it
probes its own health endpoint and writes the result into its own record.
``run_heartbeat`` is the monitoring-side loop behind ``rollcall watch``.
"""

import asyncio
import contextlib
import logging
import sys
from typing import Awaitable, Callable, Dict, Iterable, Optional

from .registry.errors import RegistryError
from .registry.liveness import probe_health_quiet

logger = logging.getLogger(__name__)


def _label(healthy: Optional[bool]) -> str:
    if healthy is None:
        return "init"
    return "healthy" if healthy else "unhealthy"


class HealthReporter:
    """Re-probe one service's health endpoint every *interval* seconds."""

    def __init__(self, name: str, health_url: str, interval: float, timeout: float,
                 report: Callable[[bool], Awaitable[None]]):
        self.name = name
        self.health_url = health_url
        self.interval = interval
        self.timeout = timeout
        self.report = report
        self.last_status: Optional[bool] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running or self.interval <= 0:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> Optional[asyncio.Task]:
        """Request the loop to end without waiting; safe from inside the loop."""
        task, self._task = self._task, None
        if task is None or task.done():
            return None
        task.cancel()
        return task

    async def stop(self) -> None:
        task = self.cancel()
        if task is None or task is asyncio.current_task():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def run_once(self) -> bool:
        healthy = await probe_health_quiet(self.health_url, self.timeout)
        if healthy != self.last_status:
            logger.info("[heartbeat] %s: %s -> %s", self.name, _label(self.last_status), _label(healthy))
            self.last_status = healthy
        try:
            await self.report(healthy)
        except Exception as exc:
            logger.warning("[heartbeat] %s: failed to report health: %s", self.name, exc)
        return healthy

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()


async def run_heartbeat(registry, names: Iterable[str], interval: float = 30.0,
                        cycles: Optional[int] = None, out=None) -> Dict[str, Optional[bool]]:
    """Health-check *names* through *registry* every *interval* seconds.

    Prints a line on every status change. ``None`` marks a service that is not
    registered or could not be checked. Runs forever unless *cycles* is given.
    """
    out = out or sys.stderr
    names = list(names)
    last_statuses: Dict[str, Optional[bool]] = {}
    cycle = 0

    while True:
        cycle += 1
        for name in names:
            try:
                status: Optional[bool] = await registry.check_health(name)
            except RegistryError as exc:
                logger.debug("[heartbeat] %s: %s", name, exc)
                status = None

            if name not in last_statuses or status != last_statuses[name]:
                previous = last_statuses.get(name, "init")
                print(
                    f"[heartbeat] {name}: {_describe(previous)} -> {_describe(status)}",
                    file=out,
                )
                last_statuses[name] = status

        if cycles is not None and cycle >= cycles:
            return last_statuses
        await asyncio.sleep(interval)


def _describe(status) -> str:
    if status == "init":
        return "init"
    if status is None:
        return "unavailable"
    return _label(status)
