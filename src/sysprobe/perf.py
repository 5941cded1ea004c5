"""Hardware performance counter sampler."""

import logging
import shutil
import subprocess
import time
from collections.abc import Callable
from typing import Protocol

from sysprobe.config import PerfPolicy
from sysprobe.errors import ParseFailure, SourceUnavailable
from sysprobe.models import PerfCounts, PerfMetrics, Rating
from sysprobe.sampler import Sampler, counter_delta, ratio

logger = logging.getLogger(__name__)

# perf event name -> PerfCounts field
PERF_EVENTS = {
    "cycles": "cycles",
    "instructions": "instructions",
    "cache-references": "cache_references",
    "cache-misses": "cache_misses",
    "branch-instructions": "branch_instructions",
    "branch-misses": "branch_misses",
    "context-switches": "context_switches",
    "page-faults": "page_faults",
}


class PerfCounterSource(Protocol):
    """A source of cumulative event counts."""

    def open(self) -> None: ...

    def read_current(self) -> PerfCounts: ...

    def close(self) -> None: ...


def parse_perf_csv(output: str) -> dict[str, int]:
    """
    Parse ``perf stat -x ,`` output.

    Each line reads ``value,unit,event,...``. Events reported as
    ``<not counted>`` or ``<not supported>`` are left out.
    """
    counts: dict[str, int] = {}
    for line in output.splitlines():
        if not line or line.startswith("#"):
            continue
        fields = line.split(",")
        if len(fields) < 3:
            continue
        event = fields[2].split(":")[0]
        if event in PERF_EVENTS and fields[0].isdigit():
            counts[PERF_EVENTS[event]] = int(fields[0])
    return counts


def rate_ipc(ipc: float, policy: PerfPolicy) -> Rating:
    """Grade instruction throughput; anything below the good band is poor."""
    if ipc > policy.ipc_excellent:
        return Rating.EXCELLENT
    if ipc > policy.ipc_good:
        return Rating.GOOD
    return Rating.POOR


def rate_cache_hit_rate(hit_rate: float, policy: PerfPolicy) -> Rating:
    if hit_rate > policy.cache_excellent:
        return Rating.EXCELLENT
    if hit_rate > policy.cache_good:
        return Rating.GOOD
    if hit_rate > policy.cache_thrashing_hit_rate:
        return Rating.WARNING
    return Rating.POOR


def rate_branch_miss_rate(miss_rate: float, policy: PerfPolicy) -> Rating:
    if miss_rate < policy.branch_excellent:
        return Rating.EXCELLENT
    if miss_rate < policy.branch_mispredict_rate:
        return Rating.GOOD
    return Rating.POOR


class PerfStatSource:
    """
    Counter source that drives the ``perf stat`` tool.

    Each read counts all eight events systemwide over a short window. The
    window counts are scaled up to the wall-clock time since the previous read
    and added to running totals, so the source behaves like a set of monotonic
    counters that cover the whole interval between reads.
    """

    def __init__(
        self,
        window: float = 0.1,
        binary: str = "perf",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the source.

        Args:
            window: Seconds counted by each perf stat run.
            binary: Name or path of the perf executable.
            clock: Monotonic time source used to measure the interval between reads.
        """
        self._window = window
        self._binary = binary
        self._clock = clock
        self._read_at: float | None = None
        self._path: str | None = None
        self._totals = dict.fromkeys(PERF_EVENTS.values(), 0)

    def open(self) -> None:
        """
        Locate perf and check that every event can be counted.

        Raises:
            SourceUnavailable: If perf is missing, lacks privileges, or any
                event is unsupported on this host.
        """
        self._path = shutil.which(self._binary)
        if self._path is None:
            raise SourceUnavailable("perf", f"{self._binary} not found on PATH")
        try:
            self.read_current()
        except ParseFailure as exc:
            self._path = None
            raise SourceUnavailable("perf", exc.detail) from exc

    def _run(self) -> dict[str, int]:
        cmd = [
            self._path,
            "stat",
            "-x",
            ",",
            "-a",
            "-e",
            ",".join(PERF_EVENTS),
            "--",
            "sleep",
            str(self._window),
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self._window + 5)
        except (subprocess.TimeoutExpired, OSError) as exc:
            raise ParseFailure("perf stat", str(exc)) from exc
        if result.returncode != 0:
            lines = result.stderr.strip().splitlines()
            raise ParseFailure("perf stat", lines[-1] if lines else f"exit status {result.returncode}")
        return parse_perf_csv(result.stderr)

    def read_current(self) -> PerfCounts:
        """
        Count one window and return the accumulated totals.

        The window is extrapolated over the time elapsed since the previous
        read. The first read adds the window counts unscaled.

        Raises:
            ParseFailure: If perf failed or an event was not counted.
        """
        if self._path is None:
            raise ParseFailure("perf stat", "source not open")
        counts = self._run()
        missing = sorted(set(PERF_EVENTS.values()) - counts.keys())
        if missing:
            raise ParseFailure("perf stat", f"not counted: {', '.join(missing)}")
        now = self._clock()
        scale = 1.0
        if self._read_at is not None and self._window > 0:
            scale = max((now - self._read_at) / self._window, 1.0)
        self._read_at = now
        for name, value in counts.items():
            self._totals[name] += round(value * scale)
        return PerfCounts(**self._totals)

    def close(self) -> None:
        self._path = None
        self._read_at = None


class PerfCounterSampler(Sampler):
    """
    Sampler for CPU efficiency from hardware counters.

    Counters are often unavailable (no perf tool, virtual machines,
    unprivileged users). The sampler then stays in unavailable mode: every
    metric reads None and update() does nothing.
    """

    name = "perf"

    def __init__(self, policy: PerfPolicy | None = None, source: PerfCounterSource | None = None) -> None:
        super().__init__()
        self._policy = policy or PerfPolicy()
        self._source = source if source is not None else PerfStatSource(window=self._policy.window)
        self._initialized = False
        self._available = False
        self._previous = PerfCounts()
        self._current = PerfCounts()
        self._metrics: PerfMetrics | None = None

    def initialize(self) -> bool:
        """
        Open all counters.

        Returns:
            True if the counters are available. Failure is never raised.
        """
        if self._initialized:
            return self._available
        self._initialized = True
        try:
            self._source.open()
        except SourceUnavailable as exc:
            logger.warning("Hardware performance counters unavailable: %s", exc)
            self._available = False
        else:
            logger.info("Hardware performance counters initialized")
            self._available = True
        return self._available

    @property
    def available(self) -> bool:
        return self._available

    @property
    def ready(self) -> bool:
        return self._metrics is not None

    @property
    def metrics(self) -> PerfMetrics | None:
        return self._metrics

    def update(self) -> None:
        """Read all counters and recompute efficiency ratios."""
        if not self._initialized:
            self.initialize()
        if not self._available:
            return
        current = self._source.read_current()
        self._previous, self._current = self._current, current
        if self._first_reading:
            self._first_reading = False
            return
        self._metrics = self._calculate_metrics()

    def _calculate_metrics(self) -> PerfMetrics:
        prev, cur = self._previous, self._current
        cycles = counter_delta(prev.cycles, cur.cycles)
        instructions = counter_delta(prev.instructions, cur.instructions)
        refs = counter_delta(prev.cache_references, cur.cache_references)
        misses = min(counter_delta(prev.cache_misses, cur.cache_misses), refs)
        branches = counter_delta(prev.branch_instructions, cur.branch_instructions)
        branch_misses = counter_delta(prev.branch_misses, cur.branch_misses)

        policy = self._policy
        ipc = ratio(instructions, cycles)
        cache_hit_rate = ratio(refs - misses, refs, 100.0)
        branch_miss_rate = ratio(branch_misses, branches, 100.0)
        context_switches = counter_delta(prev.context_switches, cur.context_switches)
        page_faults = counter_delta(prev.page_faults, cur.page_faults)
        return PerfMetrics(
            ipc=ipc,
            cache_hit_rate=cache_hit_rate,
            branch_miss_rate=branch_miss_rate,
            context_switch_rate=context_switches,
            page_fault_rate=page_faults,
            is_cache_thrashing=cache_hit_rate < policy.cache_thrashing_hit_rate,
            is_branch_mispredicting=branch_miss_rate > policy.branch_mispredict_rate,
            ipc_rating=rate_ipc(ipc, policy),
            cache_rating=rate_cache_hit_rate(cache_hit_rate, policy),
            branch_rating=rate_branch_miss_rate(branch_miss_rate, policy),
            is_cpu_bound=ipc < policy.cpu_bound_ipc,
            is_memory_bound=cache_hit_rate < policy.memory_bound_hit_rate,
            is_context_switching_heavy=context_switches > policy.context_switches,
            is_page_faulting_heavy=page_faults > policy.page_faults,
        )

    @property
    def ipc(self) -> float | None:
        return None if self._metrics is None else self._metrics.ipc

    @property
    def cache_hit_rate(self) -> float | None:
        return None if self._metrics is None else self._metrics.cache_hit_rate

    @property
    def branch_miss_rate(self) -> float | None:
        return None if self._metrics is None else self._metrics.branch_miss_rate

    @property
    def is_cache_thrashing(self) -> bool | None:
        return None if self._metrics is None else self._metrics.is_cache_thrashing

    @property
    def is_branch_mispredicting(self) -> bool | None:
        return None if self._metrics is None else self._metrics.is_branch_mispredicting

    def close(self) -> None:
        self._source.close()
