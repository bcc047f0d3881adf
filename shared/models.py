"""Shared data models"""

from enum import Enum
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field


class NodeStatus(Enum):
    ONLINE = "online"
    SYNCING = "syncing"
    OFFLINE = "offline"


class IdentitySource(Enum):
    # pubkey reported by the pod itself
    REPORTED = "reported"
    # pubkey synthesized from the pod address, best effort only
    DERIVED = "derived"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeRecord(BaseModel):
    node_id: Optional[str] = None
    pubkey: str
    identity_source: IdentitySource = IdentitySource.REPORTED
    gossip: str
    prpc: str
    version: str

    status: NodeStatus
    is_public: bool = False
    region: Optional[str] = None
    last_seen: datetime

    # Storage (bytes)
    storage_committed: int = 0
    storage_used: int = 0
    storage_usage_percent: float = 0.0

    uptime_seconds: int = Field(default=0, ge=0)

    # Performance stats, only when get-pods-with-stats reports them
    cpu_percent: Optional[float] = None
    ram_used: Optional[int] = None
    ram_total: Optional[int] = None
    packets_received: Optional[int] = None
    packets_sent: Optional[int] = None
    active_streams: Optional[int] = None

    # Metadata
    total_bytes: Optional[int] = None
    total_pages: Optional[int] = None
    file_size: Optional[int] = None
    metadata_last_updated: Optional[datetime] = None

    credits: Optional[float] = None

    def to_db_record(self) -> Dict[str, Any]:
        """Row for the pnodes table, every column present"""
        return {
            "node_id": self.node_id,
            "pubkey": self.pubkey,
            "identity_source": self.identity_source.value,
            "gossip": self.gossip,
            "prpc": self.prpc,
            "version": self.version,
            "status": self.status.value,
            "is_public": self.is_public,
            "region": self.region,
            "last_seen": self.last_seen,
            "storage_committed": self.storage_committed,
            "storage_used": self.storage_used,
            "storage_usage_percent": self.storage_usage_percent,
            "uptime_seconds": self.uptime_seconds,
            "cpu_percent": self.cpu_percent,
            "ram_used": self.ram_used,
            "ram_total": self.ram_total,
            "packets_received": self.packets_received,
            "packets_sent": self.packets_sent,
            "active_streams": self.active_streams,
            "total_bytes": self.total_bytes,
            "total_pages": self.total_pages,
            "file_size": self.file_size,
            "metadata_last_updated": self.metadata_last_updated,
            "credits": self.credits,
        }


class NetworkSnapshot(BaseModel):
    total_nodes: int
    online_nodes: int

    total_storage_committed: int
    total_storage_used: int
    avg_storage_usage_percent: float

    avg_uptime_seconds: int
    avg_cpu_percent: Optional[float] = None
    avg_ram_usage_percent: Optional[float] = None
    total_active_streams: Optional[int] = None

    total_credits: Optional[float] = None

    network_version: str
    recorded_at: Optional[datetime] = None

    def to_db_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="python")


class SyncStatus(BaseModel):
    last_sync: Optional[datetime] = None
    next_sync: Optional[datetime] = None
    nodes_synced: int = 0
    errors: List[str] = Field(default_factory=list)
    is_running: bool = False
    last_duration_ms: Optional[int] = None
    duplicates_dropped: int = 0
