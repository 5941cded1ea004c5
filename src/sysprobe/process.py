"""Per-process resource usage sampler."""

import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Protocol

import psutil

from sysprobe.config import ProcessPolicy
from sysprobe.errors import ParseFailure
from sysprobe.models import (
    ProcessCounters,
    ProcessMetrics,
    ProcessPatternCounts,
    ProcessRecord,
)
from sysprobe.sampler import Sampler, counter_delta, ratio

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


class ProcessTable(Protocol):
    """Enumerates processes and reads their accounting."""

    def pids(self) -> Iterable[int]: ...

    def read(self, pid: int) -> ProcessCounters: ...


def read_fault_counts(pid: int, proc_root: str | Path = "/proc") -> tuple[int, int]:
    """
    Read minor and major page fault counts from /proc/<pid>/stat.

    The command name may contain spaces and parentheses, so fields are counted
    from the last closing parenthesis.

    Raises:
        psutil.NoSuchProcess: If the process is gone.
        ParseFailure: If the stat line is malformed.
    """
    path = Path(proc_root) / str(pid) / "stat"
    try:
        text = path.read_text()
    except (FileNotFoundError, ProcessLookupError) as exc:
        raise psutil.NoSuchProcess(pid) from exc
    except OSError as exc:
        raise ParseFailure(str(path), str(exc)) from exc
    fields = text.rpartition(")")[2].split()
    try:
        return int(fields[7]), int(fields[9])
    except (IndexError, ValueError) as exc:
        raise ParseFailure(str(path), "truncated stat line") from exc


class PsutilProcessTable:
    """Process table backed by psutil."""

    def __init__(self, proc_root: str = "/proc") -> None:
        self._proc_root = proc_root

    def pids(self) -> Iterable[int]:
        return psutil.pids()

    def read(self, pid: int) -> ProcessCounters:
        """
        Read one process's counters.

        I/O counters that are access-denied read as zero.

        Raises:
            psutil.NoSuchProcess: If the process vanished or is a zombie.
            psutil.AccessDenied: If the basic accounting is not readable.
            ParseFailure: If the page fault counts are malformed.
        """
        proc = psutil.Process(pid)
        with proc.oneshot():
            name = proc.name()
            status = proc.status()
            if status == psutil.STATUS_ZOMBIE:
                raise psutil.ZombieProcess(pid, name)
            cpu = proc.cpu_times()
            num_threads = proc.num_threads()
            mem = proc.memory_info()
            ctx = proc.num_ctx_switches()
            try:
                io = proc.io_counters()
            except psutil.AccessDenied:
                io = None
        minflt, majflt = read_fault_counts(pid, self._proc_root)

        return ProcessCounters(
            pid=pid,
            name=name,
            state=status,
            utime=cpu.user,
            stime=cpu.system,
            num_threads=num_threads,
            rss=mem.rss,
            vsize=mem.vms,
            minflt=minflt,
            majflt=majflt,
            voluntary_ctxt_switches=ctx.voluntary,
            nonvoluntary_ctxt_switches=ctx.involuntary,
            rchar=getattr(io, "read_chars", 0),
            wchar=getattr(io, "write_chars", 0),
            syscr=getattr(io, "read_count", 0),
            syscw=getattr(io, "write_count", 0),
            read_bytes=getattr(io, "read_bytes", 0),
            write_bytes=getattr(io, "write_bytes", 0),
        )


class ProcessSampler(Sampler):
    """
    Sampler for per-process CPU, memory, I/O and scheduling behaviour.

    Every tick walks the whole process table. Processes that vanish or turn
    zombie mid-read are dropped; processes that cannot be read this tick keep
    their previous record. Anything no longer enumerated is pruned.
    """

    name = "process"

    def __init__(
        self,
        policy: ProcessPolicy | None = None,
        table: ProcessTable | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the ProcessSampler.

        Args:
            policy: Intensity thresholds.
            table: Process table to read. Defaults to psutil.
            clock: Monotonic clock used to measure the time between ticks.
        """
        super().__init__()
        self._policy = policy or ProcessPolicy()
        self._table = table if table is not None else PsutilProcessTable()
        self._clock = clock
        self._records: dict[int, ProcessRecord] = {}
        self._read_at: dict[int, float] = {}  # clock time of each record's counters
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def records(self) -> dict[int, ProcessRecord]:
        return dict(self._records)

    def update(self) -> None:
        """Re-read every process and recompute per-process metrics."""
        now = self._clock()
        records: dict[int, ProcessRecord] = {}
        read_at: dict[int, float] = {}
        skipped = 0

        for pid in self._table.pids():
            previous = self._records.get(pid)
            try:
                counters = self._table.read(pid)
            except psutil.NoSuchProcess:
                skipped += 1
                continue
            except (psutil.AccessDenied, ParseFailure) as exc:
                logger.debug("Skipping pid %d this tick: %s", pid, exc)
                if previous is not None:
                    records[pid] = previous
                    read_at[pid] = self._read_at[pid]
                continue

            metrics = None
            if previous is not None:
                elapsed = now - self._read_at[pid]
                metrics = self._calculate_metrics(previous.counters, counters, elapsed)
            records[pid] = ProcessRecord(counters, metrics)
            read_at[pid] = now

        if skipped:
            logger.debug("%d processes exited during the scan", skipped)
        self._records = records
        self._read_at = read_at
        if self._first_reading:
            self._first_reading = False
        else:
            self._ready = True

    def _calculate_metrics(
        self, prev: ProcessCounters, cur: ProcessCounters, elapsed: float
    ) -> ProcessMetrics:
        policy = self._policy
        cpu_seconds = max((cur.utime + cur.stime) - (prev.utime + prev.stime), 0.0)
        cpu_usage = ratio(cpu_seconds, elapsed, 100.0)
        memory_mb = cur.rss / BYTES_PER_MB

        rchar = counter_delta(prev.rchar, cur.rchar)
        read_bytes = counter_delta(prev.read_bytes, cur.read_bytes)
        io_efficiency = ratio(read_bytes, counter_delta(prev.syscr, cur.syscr))

        context_switches = counter_delta(
            prev.voluntary_ctxt_switches + prev.nonvoluntary_ctxt_switches,
            cur.voluntary_ctxt_switches + cur.nonvoluntary_ctxt_switches,
        )
        page_faults = counter_delta(prev.minflt + prev.majflt, cur.minflt + cur.majflt)

        return ProcessMetrics(
            cpu_usage_percent=cpu_usage,
            memory_usage_mb=memory_mb,
            cache_hit_rate=ratio(max(rchar - read_bytes, 0), rchar, 100.0),
            io_efficiency=io_efficiency,
            cpu_efficiency=ratio(cur.utime, cur.utime + cur.stime, 100.0),
            context_switch_rate=context_switches,
            page_fault_rate=page_faults,
            is_cpu_intensive=cpu_usage > policy.cpu_percent,
            is_memory_intensive=memory_mb > policy.memory_mb,
            is_io_intensive=io_efficiency > policy.io_bytes_per_syscall,
            is_context_switching_heavy=context_switches > policy.context_switches,
            is_page_faulting_heavy=page_faults > policy.page_faults,
        )

    # Accessors

    def _top(self, key: Callable[[ProcessMetrics], float], count: int) -> list[ProcessRecord]:
        ranked = [r for r in self._records.values() if r.metrics is not None]
        ranked.sort(key=lambda r: key(r.metrics), reverse=True)
        return ranked[:count]

    def top_cpu_processes(self, count: int = 5) -> list[ProcessRecord]:
        """Get the processes using the most CPU over the last tick."""
        return self._top(lambda m: m.cpu_usage_percent, count)

    def top_memory_processes(self, count: int = 5) -> list[ProcessRecord]:
        return self._top(lambda m: m.memory_usage_mb, count)

    def top_io_processes(self, count: int = 5) -> list[ProcessRecord]:
        """Get the processes reading the most bytes per read syscall."""
        return self._top(lambda m: m.io_efficiency, count)

    def get_process(self, pid: int) -> ProcessRecord | None:
        return self._records.get(pid)

    @property
    def process_count(self) -> int:
        return len(self._records)

    def pattern_counts(self) -> ProcessPatternCounts:
        """Count the tracked processes carrying each intensity flag."""
        metrics = [r.metrics for r in self._records.values() if r.metrics is not None]
        return ProcessPatternCounts(
            cpu_intensive=sum(m.is_cpu_intensive for m in metrics),
            memory_intensive=sum(m.is_memory_intensive for m in metrics),
            io_intensive=sum(m.is_io_intensive for m in metrics),
            context_switching_heavy=sum(m.is_context_switching_heavy for m in metrics),
            page_faulting_heavy=sum(m.is_page_faulting_heavy for m in metrics),
        )
