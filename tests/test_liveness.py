"""Tests for health probes, process probes and the retry helper."""

import os
from unittest.mock import AsyncMock

import pytest

import rollcall
from rollcall.registry.liveness import (
    HealthProbeError,
    probe_health,
    probe_health_quiet,
    process_alive,
)
from rollcall.registry.retry import retry_async


@pytest.mark.asyncio
async def test_probe_2xx_is_healthy(health_server):
    assert await probe_health(f"http://localhost:{health_server.port}/health", timeout=1.0)


@pytest.mark.asyncio
async def test_probe_non_2xx_is_unhealthy_not_an_error(health_server):
    assert await probe_health(f"http://localhost:{health_server.port}/unhealthy", timeout=1.0) is False


@pytest.mark.asyncio
async def test_probe_without_response_raises(unused_tcp_port):
    with pytest.raises(HealthProbeError) as info:
        await probe_health(f"http://127.0.0.1:{unused_tcp_port}/health", timeout=1.0)

    assert info.value.timed_out is False


@pytest.mark.asyncio
async def test_probe_timeout_is_flagged(health_server):
    with pytest.raises(HealthProbeError) as info:
        await probe_health(f"http://localhost:{health_server.port}/slow", timeout=0.2)

    assert info.value.timed_out is True


@pytest.mark.asyncio
async def test_quiet_probe_maps_errors_to_false(unused_tcp_port):
    assert await probe_health_quiet(f"http://127.0.0.1:{unused_tcp_port}/", timeout=0.5) is False


def test_process_alive_for_current_process():
    assert process_alive(os.getpid())


def test_process_alive_for_exited_process(dead_pid):
    assert not process_alive(dead_pid)


@pytest.mark.parametrize("pid", [None, 0, -1, "nope"])
def test_process_alive_rejects_invalid_pids(pid):
    assert not process_alive(pid)


@pytest.mark.asyncio
async def test_retry_returns_first_success():
    operation = AsyncMock(side_effect=[OSError("busy"), OSError("busy"), "ok"])

    result = await retry_async(operation, attempts=3, delay=0, retry_on=(OSError,))

    assert result == "ok"
    assert operation.await_count == 3


@pytest.mark.asyncio
async def test_retry_is_bounded_and_reraises_last_error():
    operation = AsyncMock(side_effect=OSError("down"))

    with pytest.raises(OSError, match="down"):
        await retry_async(operation, attempts=2, delay=0, retry_on=(OSError,))
    assert operation.await_count == 2


@pytest.mark.asyncio
async def test_retry_does_not_retry_other_errors():
    operation = AsyncMock(side_effect=KeyError("x"))

    with pytest.raises(KeyError):
        await retry_async(operation, attempts=5, delay=0, retry_on=(OSError,))
    assert operation.await_count == 1


@pytest.mark.asyncio
async def test_probe_identifies_itself(health_server):
    await probe_health(f"http://localhost:{health_server.port}/health", timeout=1.0)

    assert health_server.health.user_agents == [f"rollcall/{rollcall.__version__}"]
