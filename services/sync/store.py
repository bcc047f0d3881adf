#!/usr/bin/env python3
"""PodPulse storage - PostgreSQL node/snapshot tables and the Redis metrics cache"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Protocol

import asyncpg
from redis.exceptions import RedisError

from shared.models import NetworkSnapshot, NodeRecord

logger = logging.getLogger(__name__)

NODES_TABLE = "pnodes"
NETWORK_STATS_TABLE = "network_stats"

NODE_COLUMNS = [
    "node_id", "pubkey", "identity_source", "gossip", "prpc", "version",
    "status", "is_public", "region", "last_seen",
    "storage_committed", "storage_used", "storage_usage_percent",
    "uptime_seconds",
    "cpu_percent", "ram_used", "ram_total", "packets_received",
    "packets_sent", "active_streams",
    "total_bytes", "total_pages", "file_size", "metadata_last_updated",
    "credits",
]

SNAPSHOT_COLUMNS = [
    "total_nodes", "online_nodes",
    "total_storage_committed", "total_storage_used", "avg_storage_usage_percent",
    "avg_uptime_seconds", "avg_cpu_percent", "avg_ram_usage_percent",
    "total_active_streams", "total_credits", "network_version",
]

SCHEMA_SQL = f"""
    CREATE TABLE IF NOT EXISTS {NODES_TABLE} (
        pubkey TEXT PRIMARY KEY,
        node_id TEXT,
        identity_source TEXT NOT NULL DEFAULT 'reported',
        gossip TEXT NOT NULL,
        prpc TEXT NOT NULL,
        version TEXT,
        status TEXT NOT NULL,
        is_public BOOLEAN NOT NULL DEFAULT FALSE,
        region TEXT,
        last_seen TIMESTAMPTZ,
        storage_committed BIGINT NOT NULL DEFAULT 0,
        storage_used BIGINT NOT NULL DEFAULT 0,
        storage_usage_percent DOUBLE PRECISION,
        uptime_seconds BIGINT NOT NULL DEFAULT 0,
        cpu_percent DOUBLE PRECISION,
        ram_used BIGINT,
        ram_total BIGINT,
        packets_received BIGINT,
        packets_sent BIGINT,
        active_streams INTEGER,
        total_bytes BIGINT,
        total_pages BIGINT,
        file_size BIGINT,
        metadata_last_updated TIMESTAMPTZ,
        credits DOUBLE PRECISION,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS {NETWORK_STATS_TABLE} (
        id BIGSERIAL PRIMARY KEY,
        total_nodes INTEGER NOT NULL,
        online_nodes INTEGER NOT NULL,
        total_storage_committed BIGINT NOT NULL,
        total_storage_used BIGINT NOT NULL,
        avg_storage_usage_percent DOUBLE PRECISION NOT NULL,
        avg_uptime_seconds BIGINT NOT NULL,
        avg_cpu_percent DOUBLE PRECISION,
        avg_ram_usage_percent DOUBLE PRECISION,
        total_active_streams INTEGER,
        total_credits DOUBLE PRECISION,
        network_version TEXT,
        recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_{NETWORK_STATS_TABLE}_recorded_at
        ON {NETWORK_STATS_TABLE} (recorded_at DESC);
"""


def _placeholders(count: int, start: int = 1) -> str:
    return ", ".join(f"${i}" for i in range(start, start + count))


UPSERT_NODE_SQL = f"""
    INSERT INTO {NODES_TABLE} ({", ".join(NODE_COLUMNS)})
    VALUES ({_placeholders(len(NODE_COLUMNS))})
    ON CONFLICT (pubkey) DO UPDATE SET
        {", ".join(f"{c} = EXCLUDED.{c}" for c in NODE_COLUMNS if c != "pubkey")},
        updated_at = NOW()
"""

INSERT_SNAPSHOT_SQL = f"""
    INSERT INTO {NETWORK_STATS_TABLE} ({", ".join(SNAPSHOT_COLUMNS)}, recorded_at)
    VALUES ({_placeholders(len(SNAPSHOT_COLUMNS))}, COALESCE(${len(SNAPSHOT_COLUMNS) + 1}, NOW()))
"""

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class StoreError(Exception):
    """A persistence call failed; fatal to the sync cycle"""


class NodeStore(Protocol):
    """What the sync service needs from persistence"""

    async def upsert_nodes(self, records: List[NodeRecord]) -> int: ...

    async def append_snapshot(self, snapshot: NetworkSnapshot) -> None: ...

    async def probe(self) -> bool: ...


class PostgresStore:
    def __init__(self, pool, probe_timeout: float = 5.0):
        self.pool = pool
        self.probe_timeout = probe_timeout

    async def ensure_schema(self):
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info(f"✅ Schema ready ({NODES_TABLE}, {NETWORK_STATS_TABLE})")

    async def upsert_nodes(self, records: List[NodeRecord]) -> int:
        """Insert or replace rows keyed by pubkey, returns rows affected"""
        if not records:
            return 0

        rows = []
        for record in records:
            row = record.to_db_record()
            rows.append(tuple(row[c] for c in NODE_COLUMNS))

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(UPSERT_NODE_SQL, rows)
        except _DB_ERRORS as e:
            logger.error(f"Failed to upsert nodes: {e}")
            raise StoreError(f"Node upsert failed: {e}") from e

        logger.info(f"Upserted {len(rows)} nodes to {NODES_TABLE}")
        return len(rows)

    async def append_snapshot(self, snapshot: NetworkSnapshot):
        row = snapshot.to_db_record()
        values = [row[c] for c in SNAPSHOT_COLUMNS] + [row.get("recorded_at")]

        try:
            async with self.pool.acquire() as conn:
                await conn.execute(INSERT_SNAPSHOT_SQL, *values)
        except _DB_ERRORS as e:
            logger.error(f"Failed to record network stats: {e}")
            raise StoreError(f"Failed to record stats: {e}") from e

        logger.info(
            f"Recorded network stats: {snapshot.total_nodes} nodes, {snapshot.online_nodes} online"
        )

    async def get_node(self, pubkey: str) -> Optional[Dict[str, Any]]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT * FROM {NODES_TABLE} WHERE pubkey = $1", pubkey
                )
        except _DB_ERRORS as e:
            raise StoreError(f"Node lookup failed: {e}") from e
        return dict(row) if row else None

    async def probe(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval(f"SELECT 1 FROM {NODES_TABLE} LIMIT 1", timeout=self.probe_timeout)
            return True
        except _DB_ERRORS as e:
            logger.error(f"PostgreSQL probe failed: {e}")
            return False

    async def close(self):
        await self.pool.close()


class MetricsCache:
    """Latest network snapshot in Redis for the /metrics endpoint"""

    SNAPSHOT_KEY = "metrics:network"

    def __init__(self, redis_client):
        self.redis = redis_client

    async def publish(self, snapshot: NetworkSnapshot):
        try:
            await self.redis.set(self.SNAPSHOT_KEY, snapshot.model_dump_json())
            await self.redis.set("metrics:total_nodes", snapshot.total_nodes)
            await self.redis.set("metrics:online_nodes", snapshot.online_nodes)
        except RedisError as e:
            logger.error(f"Error caching network metrics: {e}")

    async def latest(self) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.redis.get(self.SNAPSHOT_KEY)
        except RedisError as e:
            logger.error(f"Error reading network metrics: {e}")
            return None
        return json.loads(raw) if raw else None

    async def close(self):
        await self.redis.aclose()
