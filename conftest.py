"""Shared fixtures for the PodPulse test suite"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from shared.models import NodeRecord, NodeStatus
from services.sync.fleet import FleetReadResult

NOW = 1_700_000_000.0


def make_pod(pubkey="PUBKEY1", address="1.2.3.4:9001", age=10, **extra):
    pod = {
        "address": address,
        "pubkey": pubkey,
        "version": "0.7.3",
        "last_seen_timestamp": NOW - age,
        "storage_committed": 1000,
        "storage_used": 250,
        "storage_usage_percent": 25.0,
        "uptime": 3600,
        "is_public": True,
        "rpc_port": 6000,
    }
    pod.update(extra)
    return pod


def make_node(pubkey="PUBKEY1", **overrides):
    fields = {
        "pubkey": pubkey,
        "gossip": "1.2.3.4:9001",
        "prpc": "1.2.3.4:6000",
        "version": "0.7.3",
        "status": NodeStatus.ONLINE,
        "last_seen": datetime.fromtimestamp(NOW, tz=timezone.utc),
        "storage_committed": 1000,
        "storage_used": 250,
        "storage_usage_percent": 25.0,
        "uptime_seconds": 3600,
    }
    fields.update(overrides)
    return NodeRecord(**fields)


class InMemoryStore:
    """Node store keeping rows by pubkey, like the pnodes table"""

    def __init__(self):
        self.rows = {}
        self.snapshots = []

    async def upsert_nodes(self, records):
        for record in records:
            self.rows[record.pubkey] = record.to_db_record()
        return len(records)

    async def append_snapshot(self, snapshot):
        self.snapshots.append(snapshot)

    async def get_node(self, pubkey):
        return self.rows.get(pubkey)

    async def probe(self):
        return True


@pytest.fixture
def fake_client():
    client = AsyncMock()
    client.get_version.return_value = "0.7.3"
    client.get_stats.return_value = {"stats": {"cpu_percent": 3.5}}
    client.get_pods.return_value = []
    client.get_pods_with_stats.return_value = []
    client.get_credits.return_value = {}
    client.health_check.return_value = True
    return client


@pytest.fixture
def fake_reader():
    reader = AsyncMock()
    reader.read_fleet.return_value = FleetReadResult(nodes=[make_node()], raw_count=1)
    return reader


@pytest.fixture
def memory_store():
    return InMemoryStore()
