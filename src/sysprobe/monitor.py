"""Collection engine for sysprobe."""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from queue import Queue

from sysprobe.config import MonitorConfig
from sysprobe.cpu import CpuSampler
from sysprobe.errors import SampleError, SourceUnavailable
from sysprobe.memory import MemorySampler
from sysprobe.models import (
    CpuMetrics,
    DeviceMetrics,
    InterruptStat,
    MemInfo,
    MemoryMetrics,
    NumaNode,
    PerfMetrics,
    ProcessPatternCounts,
    ProcessRecord,
    QueueSummary,
    VmstatMetrics,
)
from sysprobe.numa import NumaSampler
from sysprobe.perf import PerfCounterSampler
from sysprobe.process import ProcessSampler
from sysprobe.sampler import Sampler
from sysprobe.storage import StorageSampler

logger = logging.getLogger(__name__)

CPU_HISTORY_LENGTH = 60


def open_perf_sampler(sampler: PerfCounterSampler) -> PerfCounterSampler:
    """Probe the counters up front so an unavailable source is logged at startup."""
    sampler.initialize()
    return sampler


@dataclass(slots=True, frozen=True)
class SystemSnapshot:
    """
    Everything collected in one tick.

    Fields of a sampler that is disabled, unavailable or not yet warmed up are
    None (or empty).
    """

    tick: int
    timestamp: float
    enabled: tuple[str, ...] = ()
    failures: tuple[str, ...] = ()
    cpu: CpuMetrics | None = None
    interrupts: tuple[InterruptStat, ...] = ()
    storm_count: int = 0
    meminfo: MemInfo | None = None
    memory: MemoryMetrics | None = None
    devices: tuple[DeviceMetrics, ...] = ()
    total_iops: float | None = None
    total_throughput: float | None = None
    hot_device_count: int | None = None
    queue_summary: QueueSummary | None = None
    numa_nodes: tuple[NumaNode, ...] = ()
    numa: VmstatMetrics | None = None
    numa_imbalance: float | None = None
    numa_imbalanced: bool | None = None
    perf_available: bool | None = None
    perf: PerfMetrics | None = None
    process_count: int | None = None
    top_cpu: tuple[ProcessRecord, ...] = ()
    top_memory: tuple[ProcessRecord, ...] = ()
    top_io: tuple[ProcessRecord, ...] = ()
    patterns: ProcessPatternCounts | None = None


class SystemMonitor:
    """
    Drives every enabled sampler once per tick and publishes a SystemSnapshot.

    In dashboard mode the loop runs in a daemon thread and pushes snapshots to
    a thread-safe Queue. In text mode run() drives it from the caller's thread.
    A sampler whose source cannot be opened is left out; a sampler that fails
    to update keeps its last good values and the tick goes on.
    """

    def __init__(
        self,
        update_queue: Queue[SystemSnapshot] | None = None,
        config: MonitorConfig | None = None,
        samplers: list[Sampler] | None = None,
    ) -> None:
        """
        Initialize the SystemMonitor.

        Args:
            update_queue: Thread-safe queue to push snapshots to.
            config: Runtime configuration. Defaults to MonitorConfig().
            samplers: Samplers to drive instead of the ones built from config.
        """
        self._config = config or MonitorConfig()
        self._queue = update_queue if update_queue is not None else Queue()
        self._poll_rate = self._config.poll_rate
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._cpu_history: deque[float] = deque(maxlen=CPU_HISTORY_LENGTH)
        self._tick = 0
        self._closed = False
        self._disabled: dict[str, str] = {}
        if samplers is None:
            samplers = self._build_samplers()
        self._samplers: dict[str, Sampler] = {s.name: s for s in samplers}

    def _build_samplers(self) -> list[Sampler]:
        config = self._config
        factories: list[tuple[str, Callable[[], Sampler]]] = [
            ("cpu", lambda: CpuSampler(config.cpu)),
            ("memory", lambda: MemorySampler(config.memory)),
            ("storage", lambda: StorageSampler(config.storage)),
        ]
        if config.enable_numa:
            factories.append(("numa", lambda: NumaSampler(config.numa)))
        if config.enable_perf:
            factories.append(("perf", lambda: open_perf_sampler(PerfCounterSampler(config.perf))))
        if config.enable_process:
            factories.append(("process", lambda: ProcessSampler(config.process)))

        samplers: list[Sampler] = []
        for name, factory in factories:
            try:
                sampler = factory()
            except SourceUnavailable as exc:
                logger.warning("Disabling %s sampler: %s", name, exc)
                self._disabled[name] = str(exc)
                continue
            samplers.append(sampler)
        return samplers

    @property
    def config(self) -> MonitorConfig:
        return self._config

    @property
    def queue(self) -> Queue[SystemSnapshot]:
        """Get the queue snapshots are pushed to by the monitor thread."""
        return self._queue

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate."""
        self._poll_rate = max(0.1, value)  # Minimum 0.1 seconds

    @property
    def enabled_samplers(self) -> list[str]:
        return list(self._samplers)

    @property
    def disabled_samplers(self) -> dict[str, str]:
        """Get the samplers left out at startup, with the reason."""
        return dict(self._disabled)

    def sampler(self, name: str) -> Sampler | None:
        return self._samplers.get(name)

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the monitoring thread."""
        if self.is_running:
            return
        if self._closed:
            raise RuntimeError("monitor has been stopped and its samplers closed")

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="SystemMonitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the monitoring thread and close every sampler.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.close()

    def close(self) -> None:
        """Release every counter source held by the samplers."""
        if self._closed:
            return
        self._closed = True
        for sampler in self._samplers.values():
            sampler.close()

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            try:
                self._queue.put(self.tick())
            except Exception:
                logger.exception("Unexpected error while sampling")

            # Wait for poll_rate seconds or until stop is requested
            self._stop_event.wait(timeout=self._poll_rate)

    def run(
        self,
        callback: Callable[[SystemSnapshot], None],
        stop_event: threading.Event | None = None,
        max_ticks: int | None = None,
    ) -> int:
        """
        Sample in the calling thread until stopped.

        Args:
            callback: Receives each snapshot.
            stop_event: Cancellation token checked before every tick. Defaults to
                the monitor's own stop event.
            max_ticks: Stop after this many ticks.

        Returns:
            The number of ticks taken.
        """
        event = stop_event or self._stop_event
        ticks = 0
        while not event.is_set():
            try:
                snapshot = self.tick()
            except Exception:
                logger.exception("Unexpected error while sampling")
            else:
                callback(snapshot)
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            event.wait(timeout=self._poll_rate)
        return ticks

    def tick(self) -> SystemSnapshot:
        """Update every sampler in order and build one snapshot."""
        failures: list[str] = []
        for name, sampler in self._samplers.items():
            try:
                sampler.update()
            except SampleError as exc:
                logger.warning("%s sampler update failed: %s", name, exc)
                failures.append(f"{name}: {exc}")
        self._tick += 1
        snapshot = self._collect_snapshot(tuple(failures))
        if snapshot.cpu is not None:
            self._cpu_history.append(snapshot.cpu.usage_percent)
        return snapshot

    def _collect_snapshot(self, failures: tuple[str, ...]) -> SystemSnapshot:
        values: dict = {
            "tick": self._tick,
            "timestamp": time.time(),
            "enabled": tuple(self._samplers),
            "failures": failures,
        }
        top_n = self._config.top_n

        cpu = self._samplers.get("cpu")
        if isinstance(cpu, CpuSampler):
            values.update(
                cpu=cpu.metrics,
                interrupts=tuple(cpu.top_interrupts(top_n)),
                storm_count=cpu.storm_count,
            )

        memory = self._samplers.get("memory")
        if isinstance(memory, MemorySampler):
            values.update(
                meminfo=memory.current if not memory.first_reading else None,
                memory=memory.metrics,
            )

        storage = self._samplers.get("storage")
        if isinstance(storage, StorageSampler):
            devices = storage.get_device_metrics()
            values.update(
                devices=tuple(devices[name] for name in sorted(devices)),
                total_iops=storage.total_iops,
                total_throughput=storage.total_throughput,
                hot_device_count=storage.hot_device_count,
                queue_summary=storage.queue_summary(),
            )

        numa = self._samplers.get("numa")
        if isinstance(numa, NumaSampler):
            values.update(
                numa_nodes=tuple(numa.nodes),
                numa=numa.metrics,
                numa_imbalance=numa.imbalance,
                numa_imbalanced=numa.is_imbalanced,
            )

        perf = self._samplers.get("perf")
        if isinstance(perf, PerfCounterSampler):
            values.update(perf_available=perf.available, perf=perf.metrics)

        process = self._samplers.get("process")
        if isinstance(process, ProcessSampler):
            values.update(
                process_count=process.process_count,
                top_cpu=tuple(process.top_cpu_processes(top_n)),
                top_memory=tuple(process.top_memory_processes(top_n)),
                top_io=tuple(process.top_io_processes(top_n)),
                patterns=process.pattern_counts() if process.ready else None,
            )

        return SystemSnapshot(**values)

    def get_cpu_history(self) -> list[float]:
        """Get the CPU usage history for sparkline rendering."""
        return list(self._cpu_history)
