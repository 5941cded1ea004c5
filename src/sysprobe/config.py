"""Threshold policies and runtime configuration for sysprobe."""

import os
from dataclasses import dataclass, field, replace

DEFAULT_DEVICE_PREFIXES = ("nvme", "sd", "md", "gdg", "sxl", "vd", "xvd")
MIN_POLL_RATE = 0.1


@dataclass(slots=True, frozen=True)
class CpuPolicy:
    """Interrupt distribution thresholds."""

    storm_ratio: float = 0.8
    unbalanced_ratio: float = 0.5
    activity_floor: int = 10_000
    min_cpu_columns: int = 10


@dataclass(slots=True, frozen=True)
class MemoryPolicy:
    """Memory pressure thresholds, all in percent of MemTotal."""

    pressure_available_percent: float = 10.0
    dirty_percent: float = 2.0
    writeback_percent: float = 1.0
    low_cache_percent: float = 15.0
    write_bottleneck_dirty_percent: float = 5.0


@dataclass(slots=True, frozen=True)
class StoragePolicy:
    """Device selection and queue heuristics."""

    device_prefixes: tuple[str, ...] = DEFAULT_DEVICE_PREFIXES
    hot_fraction: float = 0.25
    assumed_queue_depth: int = 128
    bottleneck_queue_depth: int = 100
    warning_queue_depth: int = 50
    sector_size: int = 512


@dataclass(slots=True, frozen=True)
class NumaPolicy:
    """Pressure score contributions and the thresholds that trigger them."""

    dirty_pages: int = 1000
    dirty_points: float = 20.0
    writeback_pages: int = 500
    writeback_points: float = 15.0
    scan_pages: int = 1000
    scan_points: float = 25.0
    major_faults: int = 10
    major_fault_points: float = 30.0
    swap_points: float = 40.0
    pressure_threshold: float = 50.0
    imbalance_percent: float = 30.0
    # severity bands, per tick
    fault_warning: int = 5000
    fault_high: int = 10_000
    major_fault_critical: int = 100
    pressure_warning: float = 60.0
    pressure_critical: float = 80.0


@dataclass(slots=True, frozen=True)
class PerfPolicy:
    """Hardware counter classification thresholds."""

    cache_thrashing_hit_rate: float = 80.0
    branch_mispredict_rate: float = 5.0
    ipc_excellent: float = 2.0
    ipc_good: float = 1.5
    cpu_bound_ipc: float = 1.0
    cache_excellent: float = 95.0
    cache_good: float = 90.0
    memory_bound_hit_rate: float = 85.0
    branch_excellent: float = 2.0
    context_switches: int = 10_000  # per tick
    page_faults: int = 1000  # per tick
    window: float = 0.1  # seconds counted by each perf stat run


@dataclass(slots=True, frozen=True)
class ProcessPolicy:
    """Per-process intensity thresholds."""

    cpu_percent: float = 50.0
    memory_mb: float = 1000.0
    io_bytes_per_syscall: float = 1000.0
    context_switches: int = 1000
    page_faults: int = 100


@dataclass(slots=True, frozen=True)
class MonitorConfig:
    """
    Runtime configuration for a SystemMonitor.

    CPU, memory and storage sampling are always on; the remaining samplers are
    opt-in because they are either expensive (process scan) or need privileges
    (perf counters).
    """

    poll_rate: float = 2.0
    enable_perf: bool = False
    enable_numa: bool = False
    enable_process: bool = False
    top_n: int = 10
    cpu: CpuPolicy = field(default_factory=CpuPolicy)
    memory: MemoryPolicy = field(default_factory=MemoryPolicy)
    storage: StoragePolicy = field(default_factory=StoragePolicy)
    numa: NumaPolicy = field(default_factory=NumaPolicy)
    perf: PerfPolicy = field(default_factory=PerfPolicy)
    process: ProcessPolicy = field(default_factory=ProcessPolicy)

    def __post_init__(self) -> None:
        if self.poll_rate < MIN_POLL_RATE:
            object.__setattr__(self, "poll_rate", MIN_POLL_RATE)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides) -> "MonitorConfig":
        """
        Build a config from SYSPROBE_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ.
            **overrides: Field values that take precedence over the environment.
        """
        env = os.environ if environ is None else environ
        config = cls()
        interval = env.get("SYSPROBE_INTERVAL")
        if interval:
            config = replace(config, poll_rate=float(interval))
        prefixes = env.get("SYSPROBE_DEVICE_PREFIXES")
        if prefixes:
            names = tuple(p.strip() for p in prefixes.split(",") if p.strip())
            config = replace(config, storage=replace(config.storage, device_prefixes=names))
        return replace(config, **overrides) if overrides else config
