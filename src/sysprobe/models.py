"""Data models for sysprobe.

Raw snapshots hold counters exactly as the kernel reported them. Metrics records
hold values derived from a pair of snapshots and only exist once a sampler has
seen two readings. Memory metrics are the exception: they come from a single
MemInfo.
"""

from dataclasses import dataclass, fields
from enum import Enum

CPU_BUCKETS = (
    "user",
    "nice",
    "system",
    "idle",
    "iowait",
    "irq",
    "softirq",
    "steal",
    "guest",
    "guest_nice",
)


# CPU


@dataclass(slots=True, frozen=True)
class CpuTimes:
    """Systemwide CPU time buckets in jiffies."""

    user: int = 0
    nice: int = 0
    system: int = 0
    idle: int = 0
    iowait: int = 0
    irq: int = 0
    softirq: int = 0
    steal: int = 0
    guest: int = 0
    guest_nice: int = 0

    def as_tuple(self) -> tuple[int, ...]:
        return tuple(getattr(self, name) for name in CPU_BUCKETS)


@dataclass(slots=True, frozen=True)
class CpuMetrics:
    """Share of the last tick spent in each bucket, in percent."""

    user_percent: float
    nice_percent: float
    system_percent: float
    idle_percent: float
    iowait_percent: float
    irq_percent: float
    softirq_percent: float
    steal_percent: float
    guest_percent: float
    guest_nice_percent: float

    @property
    def usage_percent(self) -> float:
        return 100.0 - self.idle_percent


class InterruptStatus(Enum):
    """Distribution of one interrupt source across CPUs."""

    STORM = "storm"
    UNBALANCED = "unbalanced"
    BALANCED = "balanced"


@dataclass(slots=True, frozen=True)
class InterruptStat:
    """Analysis of one row of the interrupt table."""

    name: str
    description: str
    counts: tuple[int, ...]
    total: int
    max_cpu: int
    max_count: int
    balance: float  # max_count / total
    status: InterruptStatus
    rate: int | None = None  # interrupts since the previous tick


# Memory


@dataclass(slots=True, frozen=True)
class MemInfo:
    """Absolute memory accounting, in kB."""

    mem_total: int = 0
    mem_free: int = 0
    mem_available: int = 0
    buffers: int = 0
    cached: int = 0
    swap_cached: int = 0
    active: int = 0
    inactive: int = 0
    dirty: int = 0
    writeback: int = 0
    swap_total: int = 0
    swap_free: int = 0


@dataclass(slots=True, frozen=True)
class MemoryMetrics:
    """Percentages and pressure flags derived from one MemInfo."""

    memory_usage_percent: float
    available_percent: float
    buffer_efficiency: float
    cache_efficiency: float
    dirty_percent: float
    writeback_percent: float
    total_cache_percent: float
    memory_pressure: bool
    storage_bottleneck: bool
    write_bottleneck: bool


# Storage


@dataclass(slots=True, frozen=True)
class DiskCounters:
    """One /proc/diskstats row."""

    device_name: str
    reads: int = 0
    read_merges: int = 0
    read_sectors: int = 0
    read_time: int = 0  # ms
    writes: int = 0
    write_merges: int = 0
    write_sectors: int = 0
    write_time: int = 0  # ms
    io_in_progress: int = 0
    io_time: int = 0  # ms
    weighted_io_time: int = 0  # ms


@dataclass(slots=True, frozen=True)
class DeviceDetails:
    """Static queue configuration discovered once per device."""

    scheduler: str | None = None
    max_queue_depth: int | None = None


class DeviceStatus(Enum):
    """Classification of a device for the current tick."""

    NORMAL = "normal"
    HOT = "hot"
    WARNING = "warning"
    BOTTLENECK = "bottleneck"


@dataclass(slots=True, frozen=True)
class DeviceMetrics:
    """Per-tick performance of one block device."""

    device_name: str
    read_iops: float
    write_iops: float
    total_iops: float
    read_mbps: float
    write_mbps: float
    total_mbps: float
    avg_latency: float  # ms per operation
    queue_depth: int
    queue_utilization: float  # percent of the assumed queue size
    is_hot_device: bool = False
    status: DeviceStatus = DeviceStatus.NORMAL


@dataclass(slots=True, frozen=True)
class QueueSummary:
    """Number of devices in each queue-depth band."""

    bottleneck: int
    warning: int
    normal: int


# NUMA / vmstat


@dataclass(slots=True, frozen=True)
class NumaNode:
    """A NUMA node with its memory usage for the current tick, in kB."""

    node_id: int
    cpu_cores: tuple[int, ...]
    mem_total: int = 0
    mem_free: int = 0
    synthetic: bool = False

    @property
    def mem_used(self) -> int:
        return max(self.mem_total - self.mem_free, 0)

    @property
    def usage_percent(self) -> float:
        if self.mem_total == 0:
            return 0.0
        return 100.0 * self.mem_used / self.mem_total


@dataclass(slots=True, frozen=True)
class VmstatCounters:
    """Reclaim, fault and swap counters from /proc/vmstat."""

    pgfault: int = 0
    pgmajfault: int = 0
    pgpgin: int = 0
    pgpgout: int = 0
    pswpin: int = 0
    pswpout: int = 0
    pgsteal: int = 0
    pgscan_kswapd: int = 0
    pgscan_direct: int = 0
    nr_dirty: int = 0
    nr_writeback: int = 0
    nr_unstable: int = 0
    nr_slab_reclaimable: int = 0
    nr_slab_unreclaimable: int = 0

    @classmethod
    def from_mapping(cls, values: dict[str, int]) -> "VmstatCounters":
        return cls(**{f.name: values.get(f.name, 0) for f in fields(cls)})


class Severity(Enum):
    """How far a reading is past its alarm thresholds."""

    NORMAL = "normal"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(slots=True, frozen=True)
class VmstatMetrics:
    """Per-tick reclaim activity and the pressure score derived from it."""

    page_fault_rate: int
    major_fault_rate: int
    swap_rate: int
    scan_rate: int
    memory_pressure: float  # pressure score
    is_swapping: bool
    is_memory_pressured: bool
    fault_severity: Severity = Severity.NORMAL
    major_fault_severity: Severity = Severity.NORMAL
    pressure_severity: Severity = Severity.NORMAL


# Hardware performance counters


@dataclass(slots=True, frozen=True)
class PerfCounts:
    """Cumulative hardware and software event counts."""

    cycles: int = 0
    instructions: int = 0
    cache_references: int = 0
    cache_misses: int = 0
    branch_instructions: int = 0
    branch_misses: int = 0
    context_switches: int = 0
    page_faults: int = 0


class Rating(Enum):
    """Quality grade of an efficiency ratio."""

    EXCELLENT = "excellent"
    GOOD = "good"
    WARNING = "warning"
    POOR = "poor"


@dataclass(slots=True, frozen=True)
class PerfMetrics:
    """Efficiency ratios over the last tick."""

    ipc: float
    cache_hit_rate: float
    branch_miss_rate: float
    context_switch_rate: int
    page_fault_rate: int
    is_cache_thrashing: bool
    is_branch_mispredicting: bool
    ipc_rating: Rating = Rating.POOR
    cache_rating: Rating = Rating.POOR
    branch_rating: Rating = Rating.POOR
    is_cpu_bound: bool = False  # low IPC
    is_memory_bound: bool = False  # low cache hit rate
    is_context_switching_heavy: bool = False
    is_page_faulting_heavy: bool = False


# Processes


@dataclass(slots=True, frozen=True)
class ProcessCounters:
    """Accounting for one process as read this tick."""

    pid: int
    name: str
    state: str
    utime: float  # seconds
    stime: float  # seconds
    num_threads: int
    rss: int  # bytes
    vsize: int  # bytes
    minflt: int = 0
    majflt: int = 0
    voluntary_ctxt_switches: int = 0
    nonvoluntary_ctxt_switches: int = 0
    rchar: int = 0
    wchar: int = 0
    syscr: int = 0
    syscw: int = 0
    read_bytes: int = 0
    write_bytes: int = 0


@dataclass(slots=True, frozen=True)
class ProcessMetrics:
    """Rates and intensity flags for one process over the last tick."""

    cpu_usage_percent: float  # 100 == one core fully busy
    memory_usage_mb: float
    cache_hit_rate: float
    io_efficiency: float  # bytes read from storage per read syscall
    cpu_efficiency: float  # user share of total CPU time
    context_switch_rate: int
    page_fault_rate: int
    is_cpu_intensive: bool
    is_memory_intensive: bool
    is_io_intensive: bool
    is_context_switching_heavy: bool
    is_page_faulting_heavy: bool


@dataclass(slots=True, frozen=True)
class ProcessRecord:
    """A tracked process: its latest counters and, after two ticks, its metrics."""

    counters: ProcessCounters
    metrics: ProcessMetrics | None = None

    @property
    def pid(self) -> int:
        return self.counters.pid

    @property
    def name(self) -> str:
        return self.counters.name


@dataclass(slots=True, frozen=True)
class ProcessPatternCounts:
    """How many tracked processes carry each intensity flag."""

    cpu_intensive: int = 0
    memory_intensive: int = 0
    io_intensive: int = 0
    context_switching_heavy: int = 0
    page_faulting_heavy: int = 0
