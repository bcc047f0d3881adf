#!/usr/bin/env python3
"""PodPulse aggregator - network-wide statistics over one fleet read"""

from datetime import datetime
from typing import List, Optional

from shared.models import NetworkSnapshot, NodeRecord, NodeStatus


def _mean(values: List[float]) -> Optional[float]:
    if not values:
        return None
    return sum(values) / len(values)


def compute_network_snapshot(nodes: List[NodeRecord], recorded_at: Optional[datetime] = None) -> NetworkSnapshot:
    total_nodes = len(nodes)
    online_nodes = sum(1 for n in nodes if n.status == NodeStatus.ONLINE)

    total_storage_committed = sum(n.storage_committed for n in nodes)
    total_storage_used = sum(n.storage_used for n in nodes)

    # Pods without a reported usage stay out of the denominator
    avg_storage_usage = _mean([n.storage_usage_percent for n in nodes if n.storage_usage_percent > 0]) or 0.0

    avg_uptime = sum(n.uptime_seconds for n in nodes) / total_nodes if total_nodes else 0

    avg_cpu = _mean([n.cpu_percent for n in nodes if n.cpu_percent is not None])
    avg_ram = _mean([n.ram_used / n.ram_total * 100 for n in nodes if n.ram_used and n.ram_total])

    total_active_streams = sum(n.active_streams or 0 for n in nodes)

    credited = [n.credits for n in nodes if n.credits is not None]

    return NetworkSnapshot(
        total_nodes=total_nodes,
        online_nodes=online_nodes,
        total_storage_committed=total_storage_committed,
        total_storage_used=total_storage_used,
        avg_storage_usage_percent=round(avg_storage_usage, 2),
        avg_uptime_seconds=int(round(avg_uptime)),
        avg_cpu_percent=round(avg_cpu, 2) if avg_cpu is not None else None,
        avg_ram_usage_percent=round(avg_ram, 2) if avg_ram is not None else None,
        total_active_streams=total_active_streams if total_active_streams > 0 else None,
        total_credits=sum(credited) if credited else None,
        network_version=nodes[0].version if nodes else "unknown",
        recorded_at=recorded_at,
    )
