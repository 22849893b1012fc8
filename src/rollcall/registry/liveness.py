"""Liveness probes: HTTP health endpoints and process existence."""

import asyncio
import logging
from typing import Any, Optional

import aiohttp
import psutil

from .. import __version__
from .errors import RegistryError
from .models import valid_pid

logger = logging.getLogger(__name__)

USER_AGENT = f"rollcall/{__version__}"


class HealthProbeError(RegistryError):
    """The probe got no HTTP response at all (refused, unresolvable, timed out)."""

    code = "HEALTH_PROBE_ERROR"

    def __init__(self, url: str, cause: BaseException, timed_out: bool = False):
        kind = "timed out" if timed_out else f"failed: {cause!r}"
        super().__init__(f"Health probe {url} {kind}", {"url": url})
        self.url = url
        self.cause = cause
        self.timed_out = timed_out
        self.__cause__ = cause


def _client_session(timeout: float) -> aiohttp.ClientSession:
    # Probes target local services; never route them through HTTP(S)_PROXY.
    return aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=timeout),
        headers={"User-Agent": USER_AGENT},
        trust_env=False,
    )


async def probe_health(url: str, timeout: float,
                       session: Optional[aiohttp.ClientSession] = None) -> bool:
    """GET *url*; True on 2xx, False on any other status.

    Raises HealthProbeError when no response could be obtained.
    """
    owns_session = session is None
    if owns_session:
        session = _client_session(timeout)
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            return 200 <= resp.status < 300
    except asyncio.TimeoutError as exc:
        raise HealthProbeError(url, exc, timed_out=True) from exc
    except aiohttp.ClientError as exc:
        raise HealthProbeError(url, exc) from exc
    finally:
        if owns_session:
            await session.close()


async def probe_health_quiet(url: str, timeout: float,
                             session: Optional[aiohttp.ClientSession] = None) -> bool:
    """Like probe_health, but a missing response counts as unhealthy."""
    try:
        return await probe_health(url, timeout, session=session)
    except HealthProbeError as exc:
        logger.debug("%s", exc)
        return False


def process_alive(pid: Any) -> bool:
    """Whether *pid* names a live (non-zombie) process on this host."""
    pid = valid_pid(pid)
    if pid is None:
        return False
    try:
        if not psutil.pid_exists(pid):
            return False
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:  # includes ZombieProcess
        return False
    except psutil.AccessDenied:
        # Exists but is not ours to inspect
        return True


async def process_alive_async(pid: Any) -> bool:
    return await asyncio.to_thread(process_alive, pid)
