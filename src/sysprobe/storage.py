"""Block device I/O sampler."""

import logging
import math
import os
from dataclasses import replace
from pathlib import Path

from sysprobe.config import StoragePolicy
from sysprobe.errors import ParseFailure
from sysprobe.models import (
    DeviceDetails,
    DeviceMetrics,
    DeviceStatus,
    DiskCounters,
    QueueSummary,
)
from sysprobe.sampler import Sampler, counter_delta, ratio
from sysprobe.sources import ProcSource, read_value

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


def parse_diskstats(rows: list[list[str]], devices: set[str]) -> dict[str, DiskCounters]:
    """
    Parse /proc/diskstats rows for the given devices.

    Raises:
        ParseFailure: If a row for a tracked device has non-numeric counters.
    """
    stats: dict[str, DiskCounters] = {}
    for row in rows:
        if len(row) < 14 or row[2] not in devices:
            continue
        try:
            values = [int(v) for v in row[3:14]]
        except ValueError as exc:
            raise ParseFailure("/proc/diskstats", f"{row[2]}: {exc}") from exc
        stats[row[2]] = DiskCounters(row[2], *values)
    return stats


def parse_scheduler(line: str | None) -> str | None:
    """Extract the active scheduler from e.g. ``mq-deadline kyber [none]``."""
    if not line:
        return None
    start, end = line.find("["), line.find("]")
    if start == -1 or end <= start:
        return line.split()[0] if line.split() else None
    return line[start + 1 : end]


def device_status(queue_depth: int, is_hot: bool, policy: StoragePolicy) -> DeviceStatus:
    """Classify a device by queue depth, then by heat."""
    if queue_depth > policy.bottleneck_queue_depth:
        return DeviceStatus.BOTTLENECK
    if queue_depth > policy.warning_queue_depth:
        return DeviceStatus.WARNING
    return DeviceStatus.HOT if is_hot else DeviceStatus.NORMAL


def hot_count(device_count: int, fraction: float) -> int:
    """Number of devices in the hot set: the top fraction, rounded up, at least one."""
    if device_count == 0:
        return 0
    return min(device_count, max(1, math.ceil(device_count * fraction)))


class StorageSampler(Sampler):
    """
    Sampler for block device I/O counters.

    Devices are discovered once from /sys/block and filtered by name prefix.
    Rates are per-tick counts: with one-second ticks they equal per-second
    rates. Hot devices are chosen relative to each other every tick.
    """

    name = "storage"

    def __init__(
        self,
        policy: StoragePolicy | None = None,
        diskstats_path: str = "/proc/diskstats",
        sys_block_path: str = "/sys/block",
    ) -> None:
        """
        Initialize the StorageSampler and discover devices.

        Raises:
            SourceUnavailable: If the diskstats source cannot be opened.
        """
        super().__init__()
        self._policy = policy or StoragePolicy()
        self._source = ProcSource(diskstats_path)
        self._sys_block = Path(sys_block_path)
        self._devices: list[str] = []
        self._details: dict[str, DeviceDetails] = {}
        self._previous: dict[str, DiskCounters] = {}
        self._current: dict[str, DiskCounters] = {}
        self._metrics: dict[str, DeviceMetrics] = {}
        self._ready = False
        self.discover_devices()

    def discover_devices(self) -> list[str]:
        """
        Enumerate block devices whose name starts with an allowed prefix.

        Returns:
            The sorted list of discovered device names.
        """
        try:
            names = sorted(os.listdir(self._sys_block))
        except OSError as exc:
            logger.warning("Cannot list %s: %s", self._sys_block, exc)
            names = []
        self._devices = [n for n in names if n.startswith(self._policy.device_prefixes)]
        self._details = {name: self._read_details(name) for name in self._devices}
        logger.info("Discovered %d block devices: %s", len(self._devices), ", ".join(self._devices))
        return list(self._devices)

    def _read_details(self, device: str) -> DeviceDetails:
        queue = self._sys_block / device / "queue"
        nr_requests = read_value(queue / "nr_requests")
        return DeviceDetails(
            scheduler=parse_scheduler(read_value(queue / "scheduler")),
            max_queue_depth=int(nr_requests) if nr_requests and nr_requests.isdigit() else None,
        )

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def devices(self) -> list[str]:
        return list(self._devices)

    @property
    def details(self) -> dict[str, DeviceDetails]:
        return dict(self._details)

    def update(self) -> None:
        """Re-read device counters and recompute per-device performance."""
        current = parse_diskstats(self._source.read_current(), set(self._devices))
        self._previous, self._current = self._current, current
        if self._first_reading:
            self._first_reading = False
            return
        self._metrics = self._rank_hot_devices(self._calculate_performance())
        self._ready = True

    def _calculate_performance(self) -> dict[str, DeviceMetrics]:
        metrics: dict[str, DeviceMetrics] = {}
        sector_mb = self._policy.sector_size / BYTES_PER_MB
        for name, cur in self._current.items():
            prev = self._previous.get(name)
            if prev is None:
                continue
            reads = counter_delta(prev.reads, cur.reads)
            writes = counter_delta(prev.writes, cur.writes)
            read_mbps = counter_delta(prev.read_sectors, cur.read_sectors) * sector_mb
            write_mbps = counter_delta(prev.write_sectors, cur.write_sectors) * sector_mb
            metrics[name] = DeviceMetrics(
                device_name=name,
                read_iops=float(reads),
                write_iops=float(writes),
                total_iops=float(reads + writes),
                read_mbps=read_mbps,
                write_mbps=write_mbps,
                total_mbps=read_mbps + write_mbps,
                avg_latency=ratio(counter_delta(prev.io_time, cur.io_time), reads + writes),
                queue_depth=cur.io_in_progress,
                queue_utilization=ratio(cur.io_in_progress, self._policy.assumed_queue_depth, 100.0),
            )
        return metrics

    def _rank_hot_devices(self, metrics: dict[str, DeviceMetrics]) -> dict[str, DeviceMetrics]:
        ranked = sorted(metrics.values(), key=lambda m: m.total_iops, reverse=True)
        hot = {m.device_name for m in ranked[: hot_count(len(ranked), self._policy.hot_fraction)]}
        return {
            name: replace(
                m,
                is_hot_device=name in hot,
                status=device_status(m.queue_depth, name in hot, self._policy),
            )
            for name, m in metrics.items()
        }

    # Accessors

    def get_device_metrics(self) -> dict[str, DeviceMetrics]:
        """Get the per-device metrics of the last tick."""
        return dict(self._metrics)

    @property
    def total_iops(self) -> float | None:
        if not self._ready:
            return None
        return sum(m.total_iops for m in self._metrics.values())

    @property
    def total_throughput(self) -> float | None:
        """Get the combined throughput of all devices in MB per tick."""
        if not self._ready:
            return None
        return sum(m.total_mbps for m in self._metrics.values())

    @property
    def hot_device_count(self) -> int | None:
        if not self._ready:
            return None
        return sum(1 for m in self._metrics.values() if m.is_hot_device)

    @property
    def bottleneck_count(self) -> int | None:
        if not self._ready:
            return None
        return sum(1 for m in self._metrics.values() if m.status is DeviceStatus.BOTTLENECK)

    def hot_devices(self) -> list[DeviceMetrics]:
        """Get the hot devices, busiest first."""
        hot = [m for m in self._metrics.values() if m.is_hot_device]
        return sorted(hot, key=lambda m: m.total_iops, reverse=True)

    def queue_summary(self) -> QueueSummary | None:
        """Count devices per queue-depth band."""
        if not self._ready:
            return None
        statuses = [m.status for m in self._metrics.values()]
        bottleneck = statuses.count(DeviceStatus.BOTTLENECK)
        warning = statuses.count(DeviceStatus.WARNING)
        return QueueSummary(bottleneck, warning, len(statuses) - bottleneck - warning)

    def close(self) -> None:
        self._source.close()
