"""Tests for the file-backed registry."""

import asyncio
import json
import os
from unittest.mock import AsyncMock, patch

import pytest

from rollcall.registry import (
    FileRegistry,
    HealthCheckFailedError,
    ServiceNotFoundError,
    StoreUnavailableError,
)


@pytest.fixture
def registry(config):
    return FileRegistry(config)


@pytest.mark.asyncio
async def test_discover_unknown_returns_none(registry):
    assert await registry.discover("never-registered") is None


@pytest.mark.asyncio
async def test_missing_file_is_an_empty_registry(registry):
    assert not registry.path.exists()
    assert await registry.list_services() == []


@pytest.mark.asyncio
async def test_unregister_unknown_raises_not_found(registry):
    with pytest.raises(ServiceNotFoundError):
        await registry.unregister("never-registered")


@pytest.mark.asyncio
async def test_register_discover_unregister_scenario(registry):
    await registry.register("svc-a", port=3000, process_id=1234, health_path="/health")

    record = await registry.discover("svc-a")
    assert record.port == 3000
    assert record.process_id == 1234
    assert record.health_check_url == "http://localhost:3000/health"
    assert record.status == "running"

    await registry.unregister("svc-a")
    assert await registry.discover("svc-a") is None
    with pytest.raises(ServiceNotFoundError):
        await registry.unregister("svc-a")


@pytest.mark.asyncio
async def test_round_trip_preserves_fields(registry):
    metadata = {"capabilities": ["chat"], "host": {"arch": "arm64"}}
    await registry.register("svc", port=4100, process_id=55, health_path="/ready", metadata=metadata)

    record = await registry.discover("svc")

    assert (record.port, record.process_id, record.health_path) == (4100, 55, "/ready")
    assert record.metadata == metadata
    assert record.registered_at


@pytest.mark.asyncio
async def test_register_defaults_to_current_process(registry):
    record = await registry.register("self", port=5000)

    assert record.process_id == os.getpid()


@pytest.mark.asyncio
async def test_last_register_wins(registry):
    await registry.register("svc", port=3000)
    await registry.register("svc", port=3001)

    assert (await registry.discover("svc")).port == 3001
    assert len(await registry.list_services()) == 1


@pytest.mark.asyncio
async def test_snapshot_document_on_disk(registry):
    await registry.register("svc", port=3000, health_path="/health")

    document = json.loads(registry.path.read_text())

    assert set(document) == {"services", "lastUpdated"}
    assert document["services"]["svc"]["healthCheckUrl"] == "http://localhost:3000/health"
    assert not list(registry.path.parent.glob("*.tmp"))


@pytest.mark.asyncio
async def test_corrupt_snapshot_is_store_unavailable(registry):
    registry.path.parent.mkdir(parents=True, exist_ok=True)
    registry.path.write_text("{not json")

    with pytest.raises(StoreUnavailableError) as info:
        await registry.discover("svc")
    assert isinstance(info.value.cause, ValueError)

    with pytest.raises(StoreUnavailableError):
        await registry.list_services()


@pytest.mark.asyncio
async def test_discover_retries_store_reads(registry):
    await registry.register("svc", port=3000)
    real_load = registry.load_snapshot
    load = AsyncMock(side_effect=[OSError("disk busy"), await real_load()])

    with patch.object(registry, "load_snapshot", load):
        record = await registry.discover("svc", retries=1)

    assert record.port == 3000
    assert load.await_count == 2


@pytest.mark.asyncio
async def test_check_health_without_path_needs_no_network(registry):
    await registry.register("quiet", port=3000)

    with patch("rollcall.registry.base.probe_health", new=AsyncMock()) as probe:
        assert await registry.check_health("quiet") is True
    probe.assert_not_called()


@pytest.mark.asyncio
async def test_check_health_unknown_raises_not_found(registry):
    with pytest.raises(ServiceNotFoundError):
        await registry.check_health("ghost")


@pytest.mark.asyncio
async def test_check_health_probes_and_persists(registry, health_server):
    await registry.register("up", port=health_server.port, health_path="/health")
    await registry.register("down", port=health_server.port, health_path="/unhealthy")

    assert await registry.check_health("up") is True
    assert await registry.check_health("down") is False

    snapshot = registry.read_snapshot()
    assert snapshot.services["down"].is_healthy is False
    assert snapshot.services["up"].is_healthy is True


@pytest.mark.asyncio
async def test_check_health_without_response_raises_after_retries(registry, unused_tcp_port):
    await registry.register("gone", port=unused_tcp_port, health_path="/health")

    with pytest.raises(HealthCheckFailedError) as info:
        await registry.check_health("gone", retries=2)
    assert info.value.attempts == 3


@pytest.mark.asyncio
async def test_discover_with_health_folds_result(registry, health_server):
    await registry.register("down", port=health_server.port, health_path="/unhealthy")

    record = await registry.discover("down", include_health=True)

    assert record.is_healthy is False
    assert registry.read_snapshot().services["down"].is_healthy is False


@pytest.mark.asyncio
async def test_discover_with_health_and_no_response_is_unhealthy(registry, unused_tcp_port):
    await registry.register("gone", port=unused_tcp_port, health_path="/health")

    record = await registry.discover("gone", include_health=True)

    assert record.is_healthy is False


# ---------------------------------------------------------------------------
# cleanup
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cleanup_removes_old_record_of_dead_process(registry, dead_pid, backdate):
    await registry.register("dead", port=3000, process_id=dead_pid)
    await registry.register("alive", port=3001, process_id=os.getpid())
    backdate(registry, "dead", 1000)
    backdate(registry, "alive", 1000)

    removed = await registry.cleanup()

    assert removed == ["dead"]
    assert await registry.discover("dead") is None
    assert await registry.discover("alive") is not None


@pytest.mark.asyncio
async def test_cleanup_keeps_young_records(registry, dead_pid):
    await registry.register("fresh", port=3000, process_id=dead_pid)

    assert await registry.cleanup() == []
    assert await registry.discover("fresh") is not None


@pytest.mark.asyncio
async def test_cleanup_keeps_dead_process_with_healthy_endpoint(registry, dead_pid, backdate, health_server):
    await registry.register("proxy", port=health_server.port, process_id=dead_pid, health_path="/health")
    backdate(registry, "proxy", 1000)

    assert await registry.cleanup() == []


@pytest.mark.asyncio
async def test_cleanup_removes_dead_process_with_failing_endpoint(registry, dead_pid, backdate, health_server):
    await registry.register("broken", port=health_server.port, process_id=dead_pid, health_path="/unhealthy")
    backdate(registry, "broken", 1000)

    assert await registry.cleanup() == ["broken"]


@pytest.mark.asyncio
async def test_cleanup_never_raises(registry):
    registry.path.parent.mkdir(parents=True, exist_ok=True)
    registry.path.write_text("[]")

    assert await registry.cleanup() == []


@pytest.mark.asyncio
async def test_cleanup_timer_runs_and_dispose_stops_it(config, dead_pid, backdate):
    config.cleanup_interval = 0.05
    registry = FileRegistry(config)
    await registry.register("dead", port=3000, process_id=dead_pid)
    backdate(registry, "dead", 1000)

    for _ in range(40):
        if "dead" not in registry.read_snapshot().services:
            break
        await asyncio.sleep(0.05)

    assert "dead" not in registry.read_snapshot().services
    await registry.dispose()
    await registry.dispose()
    assert registry._cleanup_task is None
