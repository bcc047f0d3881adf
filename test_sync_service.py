"""Tests for the sync service cycle, guard and health check"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import make_node
from services.sync.fleet import FleetReadResult
from services.sync.service import NO_NODES_MESSAGE, SyncService
from services.sync.store import StoreError


@pytest.fixture
def store():
    store = AsyncMock()
    store.upsert_nodes.return_value = 1
    store.probe.return_value = True
    return store


@pytest.fixture
def service(fake_client, fake_reader, store):
    return SyncService(fake_client, fake_reader, store)


async def test_successful_cycle(service, store):
    await service.run_cycle()

    status = service.get_status()
    assert status.last_sync is not None
    assert status.nodes_synced == 1
    assert status.errors == []
    assert status.is_running is False
    assert status.last_duration_ms is not None

    store.upsert_nodes.assert_awaited_once()
    snapshot = store.append_snapshot.await_args.args[0]
    assert snapshot.total_nodes == 1
    assert snapshot.recorded_at is not None


async def test_upsert_runs_before_snapshot_append(service, store):
    order = []
    store.upsert_nodes.side_effect = lambda nodes: order.append("upsert") or len(nodes)
    store.append_snapshot.side_effect = lambda snapshot: order.append("append")

    await service.run_cycle()

    assert order == ["upsert", "append"]


async def test_nodes_synced_is_upsert_count(service, store):
    store.upsert_nodes.return_value = 42
    await service.run_cycle()
    assert service.get_status().nodes_synced == 42


async def test_overlapping_cycle_is_skipped(service, fake_reader, store):
    release = asyncio.Event()

    async def slow_read():
        await release.wait()
        return FleetReadResult(nodes=[make_node()], raw_count=1)

    fake_reader.read_fleet.side_effect = slow_read

    first = asyncio.create_task(service.run_cycle())
    await asyncio.sleep(0)
    assert service.is_running

    await service.run_cycle()
    store.upsert_nodes.assert_not_awaited()

    release.set()
    await first

    assert fake_reader.read_fleet.await_count == 1
    assert store.upsert_nodes.await_count == 1
    assert service.is_running is False


async def test_empty_fleet_is_soft_failure(service, fake_reader, store):
    fake_reader.read_fleet.return_value = FleetReadResult(nodes=[], raw_count=0)

    await service.run_cycle()

    status = service.get_status()
    assert status.errors == [NO_NODES_MESSAGE]
    assert status.nodes_synced == 0
    assert status.last_sync is None
    store.upsert_nodes.assert_not_awaited()
    store.append_snapshot.assert_not_awaited()


async def test_persistence_error_is_recorded_and_raised(service, store):
    store.upsert_nodes.side_effect = StoreError("Node upsert failed: connection reset")

    with pytest.raises(StoreError):
        await service.run_cycle()

    status = service.get_status()
    assert status.errors == ["Node upsert failed: connection reset"]
    assert status.is_running is False
    store.append_snapshot.assert_not_awaited()


async def test_fleet_error_is_recorded_and_raised(service, fake_reader):
    fake_reader.read_fleet.side_effect = RuntimeError("all endpoints down")

    with pytest.raises(RuntimeError):
        await service.run_cycle()

    assert service.get_status().errors == ["all endpoints down"]
    assert service.is_running is False


async def test_errors_are_cleared_on_next_cycle(service, fake_reader):
    fake_reader.read_fleet.side_effect = [RuntimeError("boom"), FleetReadResult(nodes=[make_node()])]

    with pytest.raises(RuntimeError):
        await service.run_cycle()
    await service.run_cycle()

    assert service.get_status().errors == []


async def test_status_is_a_copy(service):
    status = service.get_status()
    status.errors.append("tampered")
    status.is_running = True

    fresh = service.get_status()
    assert fresh.errors == []
    assert fresh.is_running is False


async def test_snapshot_published_to_metrics_cache(fake_client, fake_reader, store):
    cache = AsyncMock()
    service = SyncService(fake_client, fake_reader, store, metrics_cache=cache)

    await service.run_cycle()

    cache.publish.assert_awaited_once()
    assert cache.publish.await_args.args[0].total_nodes == 1


async def test_upsert_replaces_rows_by_identity(fake_client, fake_reader, memory_store):
    service = SyncService(fake_client, fake_reader, memory_store)

    fake_reader.read_fleet.return_value = FleetReadResult(nodes=[make_node("ABC", uptime_seconds=10)])
    await service.run_cycle()
    fake_reader.read_fleet.return_value = FleetReadResult(nodes=[make_node("ABC", uptime_seconds=99)])
    await service.run_cycle()

    assert list(memory_store.rows) == ["ABC"]
    row = await memory_store.get_node("ABC")
    assert row["uptime_seconds"] == 99
    assert row["cpu_percent"] is None
    assert len(memory_store.snapshots) == 2


class TestHealthCheck:
    async def test_healthy(self, service):
        report = await service.health_check()
        assert report.healthy is True
        assert report.reason is None

    async def test_rpc_unreachable(self, service, fake_client, store):
        fake_client.health_check.return_value = False
        report = await service.health_check()
        assert report.healthy is False
        assert "pRPC" in report.reason
        store.probe.assert_not_awaited()

    async def test_database_probe_failed(self, service, store):
        store.probe.return_value = False
        report = await service.health_check()
        assert report.healthy is False
        assert report.reason == "database probe failed"

    async def test_never_raises(self, service, store):
        store.probe.side_effect = RuntimeError("pool closed")
        report = await service.health_check()
        assert report.healthy is False
        assert report.reason == "pool closed"
