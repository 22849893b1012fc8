"""Event-driven key/value stores with disconnect-triggered removal.

A store holds JSON-compatible documents under slash-separated paths. The
capability the event-store registry relies on is
:meth:`EventStore.on_disconnect_remove`: once armed, the path is removed by the
store itself when this client goes away, whether it closes cleanly, crashes or
is partitioned.
"""

import asyncio
import contextlib
import copy
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set, Tuple, Type

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import StoreUnavailableError

logger = logging.getLogger(__name__)


class EventStore(ABC):
    """Async path-addressed document store."""

    # Exceptions a caller may retry
    transient_errors: Tuple[Type[BaseException], ...] = (OSError,)

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection; raise if the store cannot be used."""

    @abstractmethod
    async def get(self, path: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        ...

    @abstractmethod
    async def update(self, path: str, values: Dict[str, Any]) -> bool:
        """Shallow-merge *values* into the document at *path*.

        Returns False, writing nothing, when no document exists at *path*.
        """

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Remove *path* and everything below it."""

    @abstractmethod
    async def children(self, path: str) -> Dict[str, Any]:
        """Direct children of *path* as ``{key: document}``."""

    @abstractmethod
    async def on_disconnect_remove(self, path: str) -> None:
        """Arm removal of *path* for when this client disconnects."""

    @abstractmethod
    async def close(self) -> None:
        """Disconnect, firing every armed removal."""


# ---------------------------------------------------------------------------
# In-process store
# ---------------------------------------------------------------------------

class MemoryEventHub:
    """Shared backing data for any number of MemoryEventStore clients."""

    def __init__(self):
        self.data: Dict[str, Any] = {}


class MemoryEventStore(EventStore):
    """In-process event store; clients sharing a hub see each other's writes."""

    transient_errors = (ConnectionError,)

    def __init__(self, hub: Optional[MemoryEventHub] = None, available: bool = True):
        self.hub = hub or MemoryEventHub()
        self.available = available
        self.connected = False
        self._armed: Set[str] = set()

    def _check(self) -> None:
        if not self.connected:
            raise ConnectionError("memory event store is not connected")

    async def connect(self) -> None:
        if not self.available:
            raise ConnectionError("memory event store is unavailable")
        self.connected = True

    async def get(self, path: str) -> Optional[Any]:
        self._check()
        return copy.deepcopy(self.hub.data.get(path))

    async def set(self, path: str, value: Any) -> None:
        self._check()
        self.hub.data[path] = copy.deepcopy(value)

    async def update(self, path: str, values: Dict[str, Any]) -> bool:
        self._check()
        current = self.hub.data.get(path)
        if current is None:
            return False
        merged = dict(current) if isinstance(current, dict) else {}
        merged.update(copy.deepcopy(values))
        self.hub.data[path] = merged
        return True

    async def remove(self, path: str) -> None:
        self._check()
        self._remove(path)

    def _remove(self, path: str) -> None:
        prefix = path + "/"
        for key in [k for k in self.hub.data if k == path or k.startswith(prefix)]:
            del self.hub.data[key]

    async def children(self, path: str) -> Dict[str, Any]:
        self._check()
        prefix = path + "/"
        result = {}
        for key, value in self.hub.data.items():
            if key.startswith(prefix) and "/" not in key[len(prefix):]:
                result[key[len(prefix):]] = copy.deepcopy(value)
        return result

    async def on_disconnect_remove(self, path: str) -> None:
        self._check()
        self._armed.add(path)

    def disconnect(self) -> None:
        """Drop the connection abruptly, as a crash or partition would."""
        for path in self._armed:
            self._remove(path)
        self._armed.clear()
        self.connected = False

    async def close(self) -> None:
        self.disconnect()


# ---------------------------------------------------------------------------
# Redis store
# ---------------------------------------------------------------------------

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def _escape_glob(value: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", value)


class RedisEventStore(EventStore):
    """Event store on Redis.

    Redis has no server-side disconnect hook, so armed paths carry an expiry of
    ``presence_ttl`` that a keepalive task keeps pushing forward. When the
    process dies or loses the network the keepalive stops and the keys expire;
    a clean :meth:`close` deletes them immediately.
    """

    transient_errors = (RedisError, OSError)

    def __init__(self, url: str, presence_ttl: float = 30.0,
                 connect_timeout: float = 5.0, client=None):
        self.url = url
        self.presence_ttl = presence_ttl
        self.connect_timeout = connect_timeout
        self._client = client
        self._armed: Set[str] = set()
        self._keepalive_task: Optional[asyncio.Task] = None

    @property
    def _ttl_ms(self) -> int:
        return max(1, int(self.presence_ttl * 1000))

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.connect_timeout,
                socket_timeout=self.connect_timeout,
            )
        try:
            await self._client.ping()
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(
                f"Redis event store at {self.url} is unreachable: {exc}",
                cause=exc,
                details={"url": self.url},
            ) from exc
        logger.info("Connected to Redis event store at %s", self.url)

    async def get(self, path: str) -> Optional[Any]:
        raw = await self._client.get(path)
        return None if raw is None else json.loads(raw)

    async def set(self, path: str, value: Any) -> None:
        payload = json.dumps(value)
        if path in self._armed:
            await self._client.set(path, payload, px=self._ttl_ms)
        else:
            await self._client.set(path, payload)

    async def update(self, path: str, values: Dict[str, Any]) -> bool:
        current = await self.get(path)
        if current is None:
            return False
        merged = dict(current) if isinstance(current, dict) else {}
        merged.update(values)
        # xx: a key removed since the read stays removed
        written = await self._client.set(path, json.dumps(merged), keepttl=True, xx=True)
        return bool(written)

    async def remove(self, path: str) -> None:
        keys = [path]
        async for key in self._client.scan_iter(match=_escape_glob(path) + "/*"):
            keys.append(key)
        await self._client.delete(*keys)

    async def children(self, path: str) -> Dict[str, Any]:
        prefix = path + "/"
        keys = []
        async for key in self._client.scan_iter(match=_escape_glob(prefix) + "*"):
            if "/" not in key[len(prefix):]:
                keys.append(key)
        if not keys:
            return {}
        values = await self._client.mget(keys)
        return {
            key[len(prefix):]: json.loads(raw)
            for key, raw in zip(keys, values)
            if raw is not None
        }

    async def on_disconnect_remove(self, path: str) -> None:
        self._armed.add(path)
        await self._client.pexpire(path, self._ttl_ms)
        if self._keepalive_task is None or self._keepalive_task.done():
            self._keepalive_task = asyncio.get_running_loop().create_task(self._keepalive())

    async def _keepalive(self) -> None:
        interval = max(self.presence_ttl / 3.0, 0.1)
        while True:
            await asyncio.sleep(interval)
            for path in list(self._armed):
                try:
                    await self._client.pexpire(path, self._ttl_ms)
                except (RedisError, OSError) as exc:
                    logger.warning("Presence keepalive for %s failed: %s", path, exc)

    async def close(self) -> None:
        task, self._keepalive_task = self._keepalive_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._client is None:
            return
        try:
            if self._armed:
                await self._client.delete(*self._armed)
        except (RedisError, OSError) as exc:
            # The keys still expire on their own after presence_ttl
            logger.warning("Failed to remove presence keys on close: %s", exc)
        finally:
            self._armed.clear()
            client, self._client = self._client, None
            await client.aclose()
