"""
Shared fixtures for the rollcall test suite.

- ``config``: a file-store RegistryConfig rooted in tmp_path with fast retries
- ``health_server``: a local aiohttp server exposing health endpoints
- ``dead_pid``: the pid of a process that has already exited
"""

import asyncio
import subprocess
import sys
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from rollcall.config import RegistryConfig


@pytest.fixture
def config(tmp_path):
    """A config that never sleeps between retries and never starts timers."""
    return RegistryConfig(
        store="file",
        registry_path=str(tmp_path / "registry.json"),
        registry_url="http://127.0.0.1:9/registry",
        health_check_timeout=1.0,
        retry_attempts=1,
        retry_delay=0.0,
        cleanup_interval=0,
        service_timeout=300.0,
        cleanup_probe_timeout=0.5,
        health_update_interval=0,
        namespace="tester",
        user_id_path=str(tmp_path / "user-id"),
    )


class HealthApp:
    """Counts requests so tests can assert whether the network was touched."""

    def __init__(self):
        self.hits = 0
        self.user_agents = []
        self.app = web.Application()
        self.app.router.add_get("/health", self.healthy)
        self.app.router.add_get("/unhealthy", self.unhealthy)
        self.app.router.add_get("/slow", self.slow)

    async def healthy(self, request):
        self.hits += 1
        self.user_agents.append(request.headers.get("User-Agent"))
        return web.json_response({"status": "ok"})

    async def unhealthy(self, request):
        self.hits += 1
        return web.json_response({"status": "down"}, status=503)

    async def slow(self, request):
        self.hits += 1
        await asyncio.sleep(2)
        return web.json_response({"status": "late"})


@pytest_asyncio.fixture
async def health_server():
    health = HealthApp()
    server = TestServer(health.app, host="127.0.0.1")
    await server.start_server()
    server.health = health
    try:
        yield server
    finally:
        await server.close()


@pytest.fixture
def dead_pid():
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def age_record(registry, name: str, seconds: float) -> None:
    """Backdate a record in a FileRegistry snapshot by *seconds*."""
    snapshot = registry.read_snapshot()
    past = datetime.now(timezone.utc) - timedelta(seconds=seconds)
    snapshot.services[name].registered_at = past.isoformat()
    registry.write_snapshot(snapshot)


@pytest.fixture
def backdate():
    return age_record
