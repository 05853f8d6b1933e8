"""
Metric Data Models.

Point-in-time snapshots and the batch payload sent to the ingestion API.
Snapshots are immutable once assembled; every pipeline stage serializes
them through the same ``to_dict`` so the wire form never drifts.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class BatchState(Enum):
    """Lifecycle states of a batch from collection to final disposition."""
    COLLECTED = "collected"
    SENDING = "sending"
    DELIVERED = "delivered"
    RATE_LIMITED = "rate_limited"
    RETRIES_EXHAUSTED = "retries_exhausted"
    BUFFERED = "buffered"
    DROPPED = "dropped"
    SKIPPED = "skipped"  # empty batch, never entered the lifecycle


@dataclass(frozen=True)
class DiskInfo:
    """Usage for a single mounted filesystem."""
    mount: str
    total: int
    used: int
    free: int
    fs: str = ""

    def to_dict(self) -> dict:
        data = {'mount': self.mount}
        if self.fs:
            data['fs'] = self.fs
        data.update(total=self.total, used=self.used, free=self.free)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "DiskInfo":
        return cls(
            mount=data['mount'],
            fs=data.get('fs') or "",
            total=int(data['total']),
            used=int(data['used']),
            free=int(data['free']),
        )


@dataclass(frozen=True)
class ProcessInfo:
    """Resource usage of a single process."""
    pid: int
    name: str
    cpu: float
    memory: float
    status: str

    def to_dict(self) -> dict:
        return {
            'pid': self.pid,
            'name': self.name,
            'cpu': self.cpu,
            'memory': self.memory,
            'status': self.status,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessInfo":
        return cls(
            pid=int(data['pid']),
            name=data['name'],
            cpu=float(data['cpu']),
            memory=float(data['memory']),
            status=data['status'],
        )


def format_timestamp(ts: datetime) -> str:
    """Format a datetime as RFC3339 UTC with a ``Z`` suffix."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC3339 UTC timestamp produced by ``format_timestamp``."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value).astimezone(timezone.utc)


@dataclass(frozen=True)
class Snapshot:
    """
    A single point-in-time collection of all system metrics.

    Fields a collector could not provide keep their zero/absent defaults.
    """
    timestamp: datetime
    cpu_overall: float = 0.0
    cpu_cores: tuple[float, ...] = ()
    ram_used: int = 0
    ram_total: int = 0
    disk_usage: tuple[DiskInfo, ...] = ()
    network_rx: int = 0
    network_tx: int = 0
    uptime_seconds: int = 0
    cpu_temp: Optional[float] = None
    gpu_temp: Optional[float] = None
    processes: tuple[ProcessInfo, ...] = ()
    os_name: Optional[str] = None
    os_version: Optional[str] = None

    def to_dict(self) -> dict:
        """Wire representation of the snapshot."""
        data = {
            'timestamp': format_timestamp(self.timestamp),
            'cpu_overall': self.cpu_overall,
            'cpu_cores': list(self.cpu_cores),
            'ram_used': self.ram_used,
            'ram_total': self.ram_total,
            'disk_usage': [d.to_dict() for d in self.disk_usage],
            'network_rx': self.network_rx,
            'network_tx': self.network_tx,
            'uptime_seconds': self.uptime_seconds,
            'cpu_temp': self.cpu_temp,
            'gpu_temp': self.gpu_temp,
            'processes': [p.to_dict() for p in self.processes],
        }
        if self.os_name is not None:
            data['os_name'] = self.os_name
        if self.os_version is not None:
            data['os_version'] = self.os_version
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Snapshot":
        """Rebuild a snapshot from its wire representation."""
        return cls(
            timestamp=parse_timestamp(data['timestamp']),
            cpu_overall=float(data.get('cpu_overall', 0.0)),
            cpu_cores=tuple(float(c) for c in data.get('cpu_cores') or ()),
            ram_used=int(data.get('ram_used', 0)),
            ram_total=int(data.get('ram_total', 0)),
            disk_usage=tuple(
                DiskInfo.from_dict(d) for d in data.get('disk_usage') or ()
            ),
            network_rx=int(data.get('network_rx', 0)),
            network_tx=int(data.get('network_tx', 0)),
            uptime_seconds=int(data.get('uptime_seconds', 0)),
            cpu_temp=data.get('cpu_temp'),
            gpu_temp=data.get('gpu_temp'),
            processes=tuple(
                ProcessInfo.from_dict(p) for p in data.get('processes') or ()
            ),
            os_name=data.get('os_name'),
            os_version=data.get('os_version'),
        )


@dataclass
class MetricBatch:
    """The payload sent to the API via POST /api/ingest."""
    machine_token: str
    metrics: list[Snapshot] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'machine_token': self.machine_token,
            'metrics': [s.to_dict() for s in self.metrics],
        }
