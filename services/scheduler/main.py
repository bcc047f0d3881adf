#!/usr/bin/env python3
"""PodPulse scheduler - drives sync cycles on a fixed or cron-like cadence

Sub-minute intervals run on a plain fixed period. Whole minutes map to
"every N minutes" and whole hours to "every N hours", aligned on the wall
clock the way a crontab entry would be. Any other interval of a minute or
more falls back to once a minute.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Set, Union

from shared.models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FixedPeriod:
    seconds: int


@dataclass(frozen=True)
class EveryNMinutes:
    n: int


@dataclass(frozen=True)
class EveryNHours:
    n: int


Cadence = Union[FixedPeriod, EveryNMinutes, EveryNHours]


def cadence_for_interval(seconds: int) -> Cadence:
    if seconds < 60:
        return FixedPeriod(seconds)
    if seconds % 60 == 0:
        minutes = seconds // 60
        if minutes < 60:
            return EveryNMinutes(minutes)
        return EveryNHours(minutes // 60)
    return EveryNMinutes(1)


def describe_cadence(cadence: Cadence) -> str:
    if isinstance(cadence, FixedPeriod):
        return f"every {cadence.seconds}s"
    if isinstance(cadence, EveryNMinutes):
        return f"every {cadence.n} minute(s)"
    return f"every {cadence.n} hour(s)"


def next_fire_time(cadence: Cadence, now: datetime) -> datetime:
    """Next wall-clock tick strictly after now"""
    if isinstance(cadence, FixedPeriod):
        return now + timedelta(seconds=cadence.seconds)

    if isinstance(cadence, EveryNMinutes):
        candidate = now.replace(second=0, microsecond=0) + timedelta(minutes=1)
        while candidate.minute % cadence.n != 0:
            candidate += timedelta(minutes=1)
        return candidate

    candidate = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    while candidate.hour % cadence.n != 0:
        candidate += timedelta(hours=1)
    return candidate


class Scheduler:
    def __init__(self, sync_service, interval_seconds: int):
        self.sync_service = sync_service
        self.interval_seconds = interval_seconds
        self.cadence = cadence_for_interval(interval_seconds)
        self._timer: Optional[asyncio.Task] = None
        self._next_fire: Optional[datetime] = None
        self._cycles: Set[asyncio.Task] = set()

    @property
    def scheduler_type(self) -> str:
        return "interval" if isinstance(self.cadence, FixedPeriod) else "cron"

    @property
    def is_started(self) -> bool:
        return self._timer is not None

    def start(self):
        """Arm the timer, then run one sync right away"""
        if self._timer is not None:
            logger.warning("Scheduler already started")
            return

        logger.info(f"Starting scheduler with interval: {self.interval_seconds}s")
        self._timer = asyncio.create_task(self._run_timer())
        logger.info(f"Scheduler started ({self.scheduler_type}, {describe_cadence(self.cadence)})")

        self._spawn_cycle("Running initial sync")

    def stop(self):
        if self._timer is None:
            return
        self._timer.cancel()
        self._timer = None
        self._next_fire = None
        logger.info(f"{self.scheduler_type.capitalize()} scheduler stopped")

    async def _run_timer(self):
        while True:
            now = utcnow()
            self._next_fire = next_fire_time(self.cadence, now)
            await asyncio.sleep(max(0.0, (self._next_fire - now).total_seconds()))
            self._spawn_cycle("Timer triggered - starting sync")

    def _spawn_cycle(self, reason: str):
        # Cycles run as their own tasks so stop() never cancels one mid-flight
        task = asyncio.create_task(self._run_scheduled(reason))
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)

    async def _run_scheduled(self, reason: str):
        logger.info(f"{reason}...")
        try:
            await self.sync_service.run_cycle()
        except Exception as e:
            logger.error(f"Scheduled sync failed: {e}")

    async def trigger_sync(self):
        logger.info("Manual sync triggered")
        await self.sync_service.run_cycle()

    def get_status(self) -> Dict[str, Any]:
        sync_status = self.sync_service.get_status()
        sync_status.next_sync = self._next_fire
        return {
            "is_running": self.is_started,
            "sync_status": sync_status,
            "interval_seconds": self.interval_seconds,
            "scheduler_type": self.scheduler_type,
            "cadence": describe_cadence(self.cadence),
        }
