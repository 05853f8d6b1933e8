"""
Collector Registry.

Collectors are registered at startup; the scheduler asks the registry to
run every available collector concurrently under a per-cycle deadline.
Each collector returns a typed result that knows which snapshot fields
it fills in.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from ..models import DiskInfo, ProcessInfo

logger = logging.getLogger(__name__)


class CollectionTimeout(Exception):
    """A collector did not finish within the cycle deadline."""


class CollectorResult(ABC):
    """Base class for typed collector output."""

    @abstractmethod
    def snapshot_fields(self) -> dict:
        """Return the snapshot fields this result provides."""


@dataclass
class CPUResult(CollectorResult):
    overall: float
    cores: list[float] = field(default_factory=list)

    def snapshot_fields(self) -> dict:
        return {'cpu_overall': self.overall, 'cpu_cores': tuple(self.cores)}


@dataclass
class MemoryResult(CollectorResult):
    used: int
    total: int

    def snapshot_fields(self) -> dict:
        return {'ram_used': self.used, 'ram_total': self.total}


@dataclass
class DiskResult(CollectorResult):
    disks: list[DiskInfo] = field(default_factory=list)

    def snapshot_fields(self) -> dict:
        return {'disk_usage': tuple(self.disks)}


@dataclass
class NetworkResult(CollectorResult):
    rx: int
    tx: int

    def snapshot_fields(self) -> dict:
        return {'network_rx': self.rx, 'network_tx': self.tx}


@dataclass
class UptimeResult(CollectorResult):
    seconds: int

    def snapshot_fields(self) -> dict:
        return {'uptime_seconds': self.seconds}


@dataclass
class TemperatureResult(CollectorResult):
    """Temperatures in °C; None means no matching sensor was found."""
    cpu_temp: Optional[float] = None
    gpu_temp: Optional[float] = None

    def snapshot_fields(self) -> dict:
        return {'cpu_temp': self.cpu_temp, 'gpu_temp': self.gpu_temp}


@dataclass
class ProcessResult(CollectorResult):
    processes: list[ProcessInfo] = field(default_factory=list)

    def snapshot_fields(self) -> dict:
        return {'processes': tuple(self.processes)}


@dataclass
class OSInfoResult(CollectorResult):
    os_name: Optional[str] = None
    os_version: Optional[str] = None

    def snapshot_fields(self) -> dict:
        return {'os_name': self.os_name, 'os_version': self.os_version}


@dataclass
class CollectorOutcome:
    """What one collector produced during a cycle: a result or an error."""
    name: str
    result: Optional[CollectorResult] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.result is not None


class Collector(ABC):
    """Interface that all metric collectors implement."""

    name: str = ""

    def is_available(self) -> bool:
        """Check if this collector can run on the current platform."""
        return True

    @abstractmethod
    async def collect(self) -> CollectorResult:
        """Gather the metric data."""


class Registry:
    """Manages registered collectors and runs them concurrently."""

    def __init__(self):
        """Initialize the registry."""
        self._collectors: list[Collector] = []

    def register(self, collector: Collector) -> bool:
        """
        Add a collector if it is available on this platform.

        Returns True when the collector was registered.
        """
        if not collector.is_available():
            logger.warning(f"Collector not available, skipping: {collector.name}")
            return False

        self._collectors.append(collector)
        logger.info(f"Registered collector: {collector.name}")
        return True

    @property
    def collectors(self) -> list[Collector]:
        return list(self._collectors)

    async def collect_all(self, timeout: float) -> dict[str, CollectorOutcome]:
        """
        Run all collectors concurrently, each bounded by ``timeout``.

        A slow or failing collector yields an error outcome and never
        blocks or fails the others.
        """
        outcomes = await asyncio.gather(
            *(self._run_one(c, timeout) for c in self._collectors)
        )
        return {outcome.name: outcome for outcome in outcomes}

    async def _run_one(self, collector: Collector, timeout: float) -> CollectorOutcome:
        try:
            result = await asyncio.wait_for(collector.collect(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Collector {collector.name} timed out after {timeout:g}s")
            return CollectorOutcome(
                collector.name,
                error=CollectionTimeout(f"{collector.name} exceeded {timeout:g}s"),
            )
        except Exception as e:
            logger.error(f"Collection failed for {collector.name}: {e}")
            return CollectorOutcome(collector.name, error=e)

        return CollectorOutcome(collector.name, result=result)
