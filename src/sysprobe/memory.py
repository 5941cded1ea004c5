"""Memory accounting sampler."""

import logging

from sysprobe.config import MemoryPolicy
from sysprobe.errors import ParseFailure
from sysprobe.models import MemInfo, MemoryMetrics
from sysprobe.sampler import Sampler, ratio
from sysprobe.sources import ProcSource, parse_kv_rows

logger = logging.getLogger(__name__)

# /proc/meminfo key for each MemInfo field
MEMINFO_KEYS = {
    "mem_total": "MemTotal",
    "mem_free": "MemFree",
    "mem_available": "MemAvailable",
    "buffers": "Buffers",
    "cached": "Cached",
    "swap_cached": "SwapCached",
    "active": "Active",
    "inactive": "Inactive",
    "dirty": "Dirty",
    "writeback": "Writeback",
    "swap_total": "SwapTotal",
    "swap_free": "SwapFree",
}


def parse_meminfo(rows: list[list[str]]) -> MemInfo:
    """
    Parse /proc/meminfo rows.

    Raises:
        ParseFailure: If MemTotal is missing.
    """
    values = parse_kv_rows(rows)
    if "MemTotal" not in values:
        raise ParseFailure("/proc/meminfo", "MemTotal missing")
    return MemInfo(**{field: values.get(key, 0) for field, key in MEMINFO_KEYS.items()})


def derive_memory_metrics(info: MemInfo, policy: MemoryPolicy) -> MemoryMetrics | None:
    """
    Compute percentages and pressure flags from one snapshot.

    Returns:
        None when MemTotal is zero.
    """
    total = info.mem_total
    if total == 0:
        return None
    available_percent = 100.0 * info.mem_available / total
    total_cache = info.buffers + info.cached
    dirty_percent = 100.0 * info.dirty / total
    writeback_percent = 100.0 * info.writeback / total
    total_cache_percent = 100.0 * total_cache / total

    memory_pressure = available_percent < policy.pressure_available_percent
    storage_bottleneck = (
        dirty_percent > policy.dirty_percent
        or writeback_percent > policy.writeback_percent
        or (memory_pressure and total_cache_percent < policy.low_cache_percent)
    )
    return MemoryMetrics(
        memory_usage_percent=100.0 * max(total - info.mem_available, 0) / total,
        available_percent=available_percent,
        buffer_efficiency=ratio(info.buffers, total_cache, 100.0),
        cache_efficiency=ratio(info.cached, total_cache, 100.0),
        dirty_percent=dirty_percent,
        writeback_percent=writeback_percent,
        total_cache_percent=total_cache_percent,
        memory_pressure=memory_pressure,
        storage_bottleneck=storage_bottleneck,
        write_bottleneck=dirty_percent > policy.write_bottleneck_dirty_percent,
    )


class MemorySampler(Sampler):
    """
    Sampler for /proc/meminfo.

    Meminfo values are absolute quantities rather than counters, so every
    reading is self-contained: metrics are available from the first update.
    """

    name = "memory"

    def __init__(self, policy: MemoryPolicy | None = None, path: str = "/proc/meminfo") -> None:
        """
        Initialize the MemorySampler.

        Raises:
            SourceUnavailable: If the meminfo source cannot be opened.
        """
        super().__init__()
        self._policy = policy or MemoryPolicy()
        self._source = ProcSource(path)
        self._current = MemInfo()
        self._metrics: MemoryMetrics | None = None

    @property
    def ready(self) -> bool:
        return self._metrics is not None

    @property
    def current(self) -> MemInfo:
        return self._current

    @property
    def metrics(self) -> MemoryMetrics | None:
        return self._metrics

    def update(self) -> None:
        """Re-read meminfo and reclassify memory pressure."""
        self._current = parse_meminfo(self._source.read_current())
        self._first_reading = False
        self._metrics = derive_memory_metrics(self._current, self._policy)
        if self._metrics is None:
            logger.debug("MemTotal reported as zero; memory metrics unset")

    @property
    def memory_usage(self) -> float | None:
        return None if self._metrics is None else self._metrics.memory_usage_percent

    @property
    def available_memory(self) -> int:
        """Get available memory in kB."""
        return self._current.mem_available

    @property
    def memory_pressure(self) -> bool | None:
        return None if self._metrics is None else self._metrics.memory_pressure

    @property
    def storage_bottleneck(self) -> bool | None:
        return None if self._metrics is None else self._metrics.storage_bottleneck

    @property
    def write_bottleneck(self) -> bool | None:
        return None if self._metrics is None else self._metrics.write_bottleneck

    def close(self) -> None:
        self._source.close()
