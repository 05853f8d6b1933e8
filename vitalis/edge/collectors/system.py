"""
System Metrics Collectors.

Collects CPU, memory, disk, network, uptime, temperature, process and
OS information using psutil. Blocking psutil calls run in the default
thread pool so the event loop keeps servicing timers.
"""

import asyncio
import platform
import time
from typing import Optional

import psutil

from ..models import DiskInfo, ProcessInfo
from .base import (
    Collector,
    CPUResult,
    DiskResult,
    MemoryResult,
    NetworkResult,
    OSInfoResult,
    ProcessResult,
    TemperatureResult,
    UptimeResult,
)

# Filesystems that never hold user data
PSEUDO_FS_TYPES = {
    'squashfs', 'tmpfs', 'devtmpfs', 'overlay', 'proc', 'sysfs', 'cgroup',
    'cgroup2', 'devfs', 'autofs', 'nsfs', 'tracefs', 'debugfs', 'fusectl',
}

CPU_SENSOR_KEYS = ('cpu', 'core', 'package', 'k10temp', 'coretemp', 'tctl')
GPU_SENSOR_KEYS = ('gpu', 'nvidia', 'amdgpu', 'radeon', 'nouveau')

# Readings above this are sensor glitches
MAX_SANE_TEMP = 150.0

STATUS_MAP = {
    psutil.STATUS_RUNNING: 'running',
    psutil.STATUS_SLEEPING: 'sleeping',
    psutil.STATUS_DISK_SLEEP: 'sleeping',
    psutil.STATUS_IDLE: 'idle',
    psutil.STATUS_STOPPED: 'stopped',
    psutil.STATUS_TRACING_STOP: 'stopped',
    psutil.STATUS_ZOMBIE: 'zombie',
    psutil.STATUS_DEAD: 'dead',
}


def clamp_percent(value: float) -> float:
    """Clamp a percentage into [0, 100]."""
    return max(0.0, min(100.0, float(value)))


async def _in_executor(func, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)


class CPUCollector(Collector):
    """Overall and per-core CPU utilization."""

    name = "cpu"

    async def collect(self) -> CPUResult:
        return await _in_executor(self._collect)

    def _collect(self) -> CPUResult:
        per_core = psutil.cpu_percent(interval=0.5, percpu=True)
        overall = sum(per_core) / len(per_core) if per_core else 0.0
        return CPUResult(
            overall=round(clamp_percent(overall), 2),
            cores=[round(clamp_percent(c), 2) for c in per_core],
        )


class MemoryCollector(Collector):
    name = "memory"

    async def collect(self) -> MemoryResult:
        mem = await _in_executor(psutil.virtual_memory)
        return MemoryResult(used=int(mem.used), total=int(mem.total))


class DiskCollector(Collector):
    """Usage for every real mounted filesystem."""

    name = "disk"

    async def collect(self) -> DiskResult:
        return await _in_executor(self._collect)

    def _collect(self) -> DiskResult:
        disks = []
        seen = set()

        for partition in psutil.disk_partitions(all=False):
            if partition.fstype in PSEUDO_FS_TYPES or partition.mountpoint in seen:
                continue
            seen.add(partition.mountpoint)

            try:
                usage = psutil.disk_usage(partition.mountpoint)
            except (PermissionError, OSError):
                continue

            disks.append(DiskInfo(
                mount=partition.mountpoint,
                fs=partition.fstype,
                total=int(usage.total),
                used=int(usage.used),
                free=int(usage.free),
            ))

        return DiskResult(disks=disks)


class NetworkCollector(Collector):
    """Total bytes received/transmitted across all interfaces."""

    name = "network"

    async def collect(self) -> NetworkResult:
        counters = await _in_executor(psutil.net_io_counters)
        if counters is None:
            return NetworkResult(rx=0, tx=0)
        return NetworkResult(rx=int(counters.bytes_recv), tx=int(counters.bytes_sent))


class UptimeCollector(Collector):
    name = "uptime"

    async def collect(self) -> UptimeResult:
        boot_time = await _in_executor(psutil.boot_time)
        return UptimeResult(seconds=max(0, int(time.time() - boot_time)))


class TemperatureCollector(Collector):
    """
    Hottest CPU and GPU sensor readings.

    Reports the maximum across all matching sensors so the snapshot shows
    the worst-case thermal state.
    """

    name = "temperature"

    def is_available(self) -> bool:
        return hasattr(psutil, 'sensors_temperatures')

    async def collect(self) -> TemperatureResult:
        return await _in_executor(self._collect)

    def _collect(self) -> TemperatureResult:
        try:
            sensors = psutil.sensors_temperatures()
        except (OSError, RuntimeError):
            return TemperatureResult()

        cpu_temp: Optional[float] = None
        gpu_temp: Optional[float] = None

        for chip, entries in (sensors or {}).items():
            for entry in entries:
                reading = entry.current
                if reading is None or reading <= 0 or reading > MAX_SANE_TEMP:
                    continue

                key = f"{chip} {entry.label}".lower()
                if any(k in key for k in GPU_SENSOR_KEYS):
                    gpu_temp = reading if gpu_temp is None else max(gpu_temp, reading)
                elif any(k in key for k in CPU_SENSOR_KEYS):
                    cpu_temp = reading if cpu_temp is None else max(cpu_temp, reading)

        return TemperatureResult(cpu_temp=cpu_temp, gpu_temp=gpu_temp)


class ProcessCollector(Collector):
    """Top processes by CPU usage."""

    name = "processes"

    def __init__(self, top_n: int = 10):
        """Initialize the process collector."""
        self.top_n = top_n

    async def collect(self) -> ProcessResult:
        return await _in_executor(self._collect)

    def _collect(self) -> ProcessResult:
        infos = []

        for proc in psutil.process_iter(['pid', 'name', 'cpu_percent', 'memory_percent', 'status']):
            info = proc.info
            cpu = info.get('cpu_percent') or 0.0
            infos.append(ProcessInfo(
                pid=int(info['pid']),
                name=(info.get('name') or '')[:255],
                cpu=round(clamp_percent(cpu / (psutil.cpu_count() or 1)), 2),
                memory=round(max(0.0, info.get('memory_percent') or 0.0), 2),
                status=STATUS_MAP.get(info.get('status'), 'unknown'),
            ))

        infos.sort(key=lambda p: p.cpu, reverse=True)
        return ProcessResult(processes=infos[:self.top_n])


class OSInfoCollector(Collector):
    """OS name and version; cached since they do not change at runtime."""

    name = "osinfo"

    def __init__(self):
        self._cached: Optional[OSInfoResult] = None

    async def collect(self) -> OSInfoResult:
        if self._cached is None:
            self._cached = await _in_executor(self._collect)
        return self._cached

    def _collect(self) -> OSInfoResult:
        system = platform.system()

        if system == "Linux":
            try:
                release = platform.freedesktop_os_release()
                return OSInfoResult(
                    os_name=release.get('NAME', 'Linux'),
                    os_version=release.get('VERSION_ID', platform.release()),
                )
            except OSError:
                return OSInfoResult(os_name="Linux", os_version=platform.release())

        if system == "Darwin":
            return OSInfoResult(os_name="macOS", os_version=platform.mac_ver()[0])

        if system == "Windows":
            return OSInfoResult(os_name=f"Windows {platform.release()}", os_version=platform.version())

        return OSInfoResult(os_name=system or None, os_version=platform.release() or None)


def default_collectors(top_processes: int = 10) -> list[Collector]:
    """The standard set of host collectors."""
    return [
        CPUCollector(),
        MemoryCollector(),
        DiskCollector(),
        NetworkCollector(),
        UptimeCollector(),
        TemperatureCollector(),
        ProcessCollector(top_n=top_processes),
        OSInfoCollector(),
    ]
