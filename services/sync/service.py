#!/usr/bin/env python3
"""PodPulse sync service - one fetch -> merge -> persist cycle at a time"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from services.sync.aggregator import compute_network_snapshot
from services.sync.store import NodeStore
from shared.models import SyncStatus, utcnow

logger = logging.getLogger(__name__)

NO_NODES_MESSAGE = "No nodes fetched from pRPC"


@dataclass
class HealthReport:
    healthy: bool
    reason: Optional[str] = None


class SyncService:
    def __init__(self, client, reader, store: NodeStore, metrics_cache=None):
        self.client = client
        self.reader = reader
        self.store = store
        self.metrics_cache = metrics_cache
        self._status = SyncStatus()

    def get_status(self) -> SyncStatus:
        return self._status.model_copy(deep=True)

    @property
    def is_running(self) -> bool:
        return self._status.is_running

    async def run_cycle(self):
        """Run one sync cycle, or return at once if one is already running.

        Errors are recorded on the status and re-raised to the caller; the
        service always returns to idle.
        """
        if self._status.is_running:
            logger.warning("Sync already in progress, skipping...")
            return

        self._status.is_running = True
        self._status.errors = []
        start_time = time.monotonic()

        try:
            logger.info("Starting pNode sync...")

            result = await self.reader.read_fleet()
            nodes = result.nodes
            self._status.duplicates_dropped = result.duplicates_dropped

            if not nodes:
                logger.warning(NO_NODES_MESSAGE)
                self._status.errors.append(NO_NODES_MESSAGE)
                return

            logger.info(f"Fetched {len(nodes)} nodes from pRPC")

            upserted_count = await self.store.upsert_nodes(nodes)

            snapshot = compute_network_snapshot(nodes, recorded_at=utcnow())
            await self.store.append_snapshot(snapshot)

            if self.metrics_cache is not None:
                await self.metrics_cache.publish(snapshot)

            duration_ms = int((time.monotonic() - start_time) * 1000)
            self._status.last_sync = utcnow()
            self._status.nodes_synced = upserted_count
            self._status.last_duration_ms = duration_ms

            logger.info(
                f"✅ Sync completed in {duration_ms}ms: {upserted_count} nodes synced, "
                f"{snapshot.online_nodes}/{snapshot.total_nodes} online"
            )
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"❌ Sync failed: {message}")
            self._status.errors.append(message)
            raise
        finally:
            self._status.is_running = False

    async def health_check(self) -> HealthReport:
        try:
            if not await self.client.health_check():
                logger.error("pRPC health check failed")
                return HealthReport(False, "pRPC endpoints unreachable")

            if not await self.store.probe():
                logger.error("Database health check failed")
                return HealthReport(False, "database probe failed")

            return HealthReport(True)
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return HealthReport(False, str(e) or type(e).__name__)
