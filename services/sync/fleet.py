#!/usr/bin/env python3
"""PodPulse fleet reader - merges the four pRPC views of the fleet into NodeRecords"""

import asyncio
import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from shared.models import IdentitySource, NodeRecord, NodeStatus

logger = logging.getLogger(__name__)

# Just over the default 60s poll so a healthy pod never flaps between polls
ONLINE_THRESHOLD_SECONDS = 55
OFFLINE_THRESHOLD_SECONDS = 1800

DEFAULT_GOSSIP_PORT = "9001"
PRPC_PORT = 6000

_RELATIVE_RE = re.compile(r"^\s*(\d+)\s*(second|sec|minute|min|hour|day|week)s?\s+ago\s*$", re.IGNORECASE)
_UNIT_SECONDS = {
    "second": 1,
    "sec": 1,
    "minute": 60,
    "min": 60,
    "hour": 3600,
    "day": 86400,
    "week": 604800,
}


@dataclass
class FleetReadResult:
    nodes: List[NodeRecord] = field(default_factory=list)
    raw_count: int = 0
    duplicates_dropped: int = 0
    version: str = "unknown"


def classify_liveness(last_seen_ts: Optional[float], now: float) -> NodeStatus:
    """online below 55s, syncing below 30 minutes, offline after"""
    if last_seen_ts is None:
        return NodeStatus.OFFLINE

    diff = now - last_seen_ts
    if diff < ONLINE_THRESHOLD_SECONDS:
        return NodeStatus.ONLINE
    if diff < OFFLINE_THRESHOLD_SECONDS:
        return NodeStatus.SYNCING
    return NodeStatus.OFFLINE


def region_from_ip(ip: str) -> str:
    """Coarse region guess from the first octet, not a geolocation lookup"""
    if ip.startswith("192.168.") or ip.startswith("10.") or ip.startswith("172."):
        return "Local"

    try:
        first_octet = int(ip.split(".")[0])
    except ValueError:
        return "Unknown"

    if 1 <= first_octet <= 126:
        return "North America"
    if 128 <= first_octet <= 191:
        return "Europe"
    if 192 <= first_octet <= 223:
        return "Asia Pacific"
    return "Unknown"


def derive_identity(address: str) -> str:
    """Stable synthetic pubkey for pods that do not report one"""
    return hashlib.sha256(address.encode("utf-8")).hexdigest()[:44]


def split_address(address: str) -> Tuple[str, str]:
    ip, _, port = address.rpartition(":")
    if not ip:
        return address, DEFAULT_GOSSIP_PORT
    return ip, port or DEFAULT_GOSSIP_PORT


def parse_last_seen(value: Any, now: datetime) -> Optional[datetime]:
    """Parse an ISO-8601 or 'N units ago' string into an aware UTC datetime"""
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if text.lower() in ("now", "just now"):
        return now

    match = _RELATIVE_RE.match(text)
    if match:
        amount, unit = int(match.group(1)), match.group(2).lower()
        return now - timedelta(seconds=amount * _UNIT_SECONDS[unit])

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_datetime(ts: Optional[float]) -> Optional[datetime]:
    """Epoch seconds to UTC, None when missing or out of range"""
    if not ts:
        return None
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None


async def _gather_all(*coros) -> List[Any]:
    """Run coros concurrently; on the first failure cancel the rest before raising"""
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        pending = [t for t in tasks if not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    for task in tasks:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
    return [task.result() for task in tasks]


class FleetReader:
    def __init__(self, client, clock: Callable[[], float] = time.time):
        self.client = client
        self.clock = clock

    async def read_fleet(self) -> FleetReadResult:
        """Fetch, merge, classify and deduplicate the whole fleet.

        Any failure of the four pRPC calls fails the read; credits are best
        effort and come back empty on failure.
        """
        logger.info("Fetching nodes from pRPC using all 4 API methods + credits...")

        version, global_stats, pods, pods_with_stats, credits = await _gather_all(
            self.client.get_version(),
            self.client.get_stats(),
            self.client.get_pods(),
            self.client.get_pods_with_stats(),
            self.client.get_credits(),
        )

        logger.info(
            f"Fetched data from all pRPC methods + credits: version={version}, "
            f"global_stats={'yes' if global_stats else 'no'}, pods={len(pods)}, "
            f"pods_with_stats={len(pods_with_stats)}, credits={len(credits)}"
        )
        if global_stats:
            logger.debug(f"Global stats from get-stats: {global_stats}")

        by_pubkey, by_address = {}, {}
        for pod in pods:
            if pod.get("pubkey"):
                by_pubkey.setdefault(pod["pubkey"], pod)
            if pod.get("address"):
                by_address.setdefault(pod["address"], pod)

        now = self.clock()
        result = FleetReadResult(raw_count=len(pods_with_stats), version=version)
        seen = set()

        for pod in pods_with_stats:
            basic = by_pubkey.get(pod.get("pubkey")) or by_address.get(pod.get("address")) or {}
            node = self.build_node(pod, basic, version, credits, now)
            if node is None:
                continue

            if node.pubkey in seen:
                result.duplicates_dropped += 1
                logger.warning(f"Duplicate pubkey detected, skipping: {node.pubkey} ({node.gossip})")
                continue

            seen.add(node.pubkey)
            result.nodes.append(node)

        if result.duplicates_dropped:
            logger.warning(f"Removed {result.duplicates_dropped} duplicate nodes")

        logger.info(f"Processed {len(result.nodes)} unique nodes from {result.raw_count} pods")
        return result

    def build_node(
        self,
        pod: Dict[str, Any],
        basic: Dict[str, Any],
        version: str,
        credits: Dict[str, float],
        now: float,
    ) -> Optional[NodeRecord]:
        def pick(key):
            value = pod.get(key)
            return value if value is not None else basic.get(key)

        address = pick("address")
        if not address:
            logger.warning(f"Skipping pod without address: {pod}")
            return None

        ip, gossip_port = split_address(address)

        if pick("pubkey"):
            pubkey, identity_source = pick("pubkey"), IdentitySource.REPORTED
        else:
            pubkey, identity_source = derive_identity(address), IdentitySource.DERIVED

        now_dt = datetime.fromtimestamp(now, tz=timezone.utc)
        last_seen_ts = _as_float(pick("last_seen_timestamp"))
        last_seen = _as_datetime(last_seen_ts)
        if last_seen_ts and last_seen is None:
            logger.warning(f"Ignoring out-of-range last_seen_timestamp {last_seen_ts} for {address}")
        if last_seen is not None:
            status = classify_liveness(last_seen_ts, now)
        else:
            parsed = parse_last_seen(pick("last_seen"), now_dt)
            last_seen = parsed or now_dt
            status = classify_liveness(parsed.timestamp() if parsed else None, now)

        storage_committed = _as_int(pick("storage_committed")) or 0
        storage_used = _as_int(pick("storage_used")) or 0
        usage_percent = _as_float(pick("storage_usage_percent"))
        if usage_percent is None:
            usage_percent = storage_used / storage_committed * 100 if storage_committed > 0 else 0.0

        metadata_updated = _as_float(pick("metadata_last_updated"))

        node_id = pick("id")
        credit = credits.get(node_id) if node_id else None
        if credit is None:
            credit = credits.get(pubkey)

        return NodeRecord(
            node_id=node_id,
            pubkey=pubkey,
            identity_source=identity_source,
            gossip=f"{ip}:{gossip_port}",
            prpc=f"{ip}:{PRPC_PORT}",
            version=pick("version") or version,
            status=status,
            is_public=bool(pick("is_public")),
            region=region_from_ip(ip),
            last_seen=last_seen,
            storage_committed=storage_committed,
            storage_used=storage_used,
            storage_usage_percent=usage_percent,
            uptime_seconds=max(0, _as_int(pick("uptime")) or 0),
            cpu_percent=_as_float(pick("cpu_percent")),
            ram_used=_as_int(pick("ram_used")),
            ram_total=_as_int(pick("ram_total")),
            packets_received=_as_int(pick("packets_received")),
            packets_sent=_as_int(pick("packets_sent")),
            active_streams=_as_int(pick("active_streams")),
            total_bytes=_as_int(pick("total_bytes")),
            total_pages=_as_int(pick("total_pages")),
            file_size=_as_int(pick("file_size")),
            metadata_last_updated=_as_datetime(metadata_updated),
            credits=credit,
        )
