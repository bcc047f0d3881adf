"""Tests for cadence selection and the scheduler lifecycle"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from shared.models import SyncStatus
from services.scheduler.main import (
    EveryNHours,
    EveryNMinutes,
    FixedPeriod,
    Scheduler,
    cadence_for_interval,
    describe_cadence,
    next_fire_time,
)


@pytest.mark.parametrize("seconds, cadence", [
    (30, FixedPeriod(30)),
    (60, EveryNMinutes(1)),
    (300, EveryNMinutes(5)),
    (90, EveryNMinutes(1)),
    (3600, EveryNHours(1)),
    (7200, EveryNHours(2)),
    (5400, EveryNHours(1)),
])
def test_cadence_for_interval(seconds, cadence):
    assert cadence_for_interval(seconds) == cadence


def test_describe_cadence():
    assert describe_cadence(FixedPeriod(30)) == "every 30s"
    assert describe_cadence(EveryNMinutes(5)) == "every 5 minute(s)"
    assert describe_cadence(EveryNHours(2)) == "every 2 hour(s)"


class TestNextFireTime:
    now = datetime(2024, 1, 1, 10, 7, 30, tzinfo=timezone.utc)

    def test_fixed_period(self):
        assert next_fire_time(FixedPeriod(30), self.now) == datetime(2024, 1, 1, 10, 8, 0, tzinfo=timezone.utc)

    def test_every_minute(self):
        assert next_fire_time(EveryNMinutes(1), self.now) == datetime(2024, 1, 1, 10, 8, tzinfo=timezone.utc)

    def test_every_five_minutes_aligns_to_wall_clock(self):
        assert next_fire_time(EveryNMinutes(5), self.now) == datetime(2024, 1, 1, 10, 10, tzinfo=timezone.utc)

    def test_on_the_tick_moves_to_next(self):
        tick = datetime(2024, 1, 1, 10, 10, tzinfo=timezone.utc)
        assert next_fire_time(EveryNMinutes(5), tick) == datetime(2024, 1, 1, 10, 15, tzinfo=timezone.utc)

    def test_every_two_hours(self):
        assert next_fire_time(EveryNHours(2), self.now) == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_hours_wrap_past_midnight(self):
        late = datetime(2024, 1, 1, 23, 30, tzinfo=timezone.utc)
        assert next_fire_time(EveryNHours(1), late) == datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def sync_service():
    service = MagicMock()
    service.run_cycle = AsyncMock()
    service.get_status.side_effect = lambda: SyncStatus()
    return service


async def settle():
    for _ in range(3):
        await asyncio.sleep(0)


class TestLifecycle:
    async def test_start_runs_initial_sync_and_arms_timer(self, sync_service):
        scheduler = Scheduler(sync_service, 60)
        scheduler.start()
        await settle()

        assert scheduler.is_started
        assert scheduler.scheduler_type == "cron"
        sync_service.run_cycle.assert_awaited_once()
        scheduler.stop()

    async def test_second_start_keeps_one_timer(self, sync_service):
        scheduler = Scheduler(sync_service, 60)
        scheduler.start()
        timer = scheduler._timer
        scheduler.start()
        await settle()

        assert scheduler._timer is timer
        assert sync_service.run_cycle.await_count == 1
        scheduler.stop()

    async def test_stop_is_idempotent(self, sync_service):
        scheduler = Scheduler(sync_service, 30)
        scheduler.stop()

        scheduler.start()
        scheduler.stop()
        scheduler.stop()

        assert not scheduler.is_started
        assert scheduler.get_status()["is_running"] is False

    async def test_timer_fires_cycles(self, sync_service):
        scheduler = Scheduler(sync_service, 1)
        scheduler.start()
        await asyncio.sleep(1.2)
        scheduler.stop()

        assert scheduler.scheduler_type == "interval"
        assert sync_service.run_cycle.await_count >= 2

    async def test_failed_cycle_keeps_timer_armed(self, sync_service):
        sync_service.run_cycle.side_effect = RuntimeError("pRPC down")
        scheduler = Scheduler(sync_service, 1)
        scheduler.start()
        await asyncio.sleep(1.2)

        assert scheduler.is_started
        assert not scheduler._timer.done()
        assert sync_service.run_cycle.await_count >= 2
        scheduler.stop()

    async def test_stop_does_not_cancel_running_cycle(self, sync_service):
        release = asyncio.Event()
        finished = []

        async def slow_cycle():
            await release.wait()
            finished.append(True)

        sync_service.run_cycle.side_effect = slow_cycle
        scheduler = Scheduler(sync_service, 60)
        scheduler.start()
        await settle()
        scheduler.stop()

        release.set()
        await settle()
        assert finished == [True]


class TestTriggerAndStatus:
    async def test_trigger_propagates_errors(self, sync_service):
        sync_service.run_cycle.side_effect = RuntimeError("database down")
        scheduler = Scheduler(sync_service, 60)

        with pytest.raises(RuntimeError):
            await scheduler.trigger_sync()

    async def test_trigger_works_without_timer(self, sync_service):
        scheduler = Scheduler(sync_service, 60)
        await scheduler.trigger_sync()
        sync_service.run_cycle.assert_awaited_once()
        assert not scheduler.is_started

    async def test_status_reports_next_sync(self, sync_service):
        scheduler = Scheduler(sync_service, 300)
        scheduler.start()
        await settle()

        status = scheduler.get_status()
        assert status["is_running"] is True
        assert status["interval_seconds"] == 300
        assert status["scheduler_type"] == "cron"
        assert status["cadence"] == "every 5 minute(s)"
        assert status["sync_status"].next_sync is not None
        assert status["sync_status"].next_sync.minute % 5 == 0
        scheduler.stop()
