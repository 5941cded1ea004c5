"""CPU time-bucket and interrupt distribution sampler."""

import logging
from types import MappingProxyType

from sysprobe.config import CpuPolicy
from sysprobe.errors import ParseFailure, SourceUnavailable
from sysprobe.models import (
    CPU_BUCKETS,
    CpuMetrics,
    CpuTimes,
    InterruptStat,
    InterruptStatus,
)
from sysprobe.sampler import Sampler, counter_delta
from sysprobe.sources import ProcSource

logger = logging.getLogger(__name__)

# Device class of well-known legacy IRQ lines and x86 architectural vectors.
IRQ_DESCRIPTIONS = MappingProxyType(
    {
        "0": "System timer",
        "1": "Keyboard controller",
        "2": "Cascade",
        "3": "Serial port (COM2)",
        "4": "Serial port (COM1)",
        "6": "Floppy controller",
        "7": "Parallel port",
        "8": "Real-time clock",
        "9": "ACPI",
        "12": "PS/2 mouse",
        "13": "FPU",
        "14": "Primary ATA",
        "15": "Secondary ATA",
        "NMI": "Non-maskable interrupts",
        "LOC": "Local timer interrupts",
        "SPU": "Spurious interrupts",
        "PMI": "Performance monitoring interrupts",
        "IWI": "IRQ work interrupts",
        "RTR": "APIC ICR read retries",
        "RES": "Rescheduling interrupts",
        "CAL": "Function call interrupts",
        "TLB": "TLB shootdowns",
        "TRM": "Thermal event interrupts",
        "THR": "Threshold APIC interrupts",
        "DFR": "Deferred error APIC interrupts",
        "MCE": "Machine check exceptions",
        "MCP": "Machine check polls",
        "HYP": "Hypervisor callback interrupts",
        "HRE": "Hyper-V reenlightenment interrupts",
        "HVS": "Hyper-V stimer0 interrupts",
        "PIN": "Posted-interrupt notification event",
        "NPI": "Nested posted-interrupt event",
        "PIW": "Posted-interrupt wakeup event",
        "IPI": "Inter-processor interrupts",
    }
)


def parse_cpu_line(rows: list[list[str]]) -> CpuTimes:
    """
    Parse the aggregate ``cpu`` line of /proc/stat.

    Kernels older than 2.6.33 omit the trailing guest buckets; missing buckets
    read as zero.

    Raises:
        ParseFailure: If the first line is not the aggregate cpu line.
    """
    if not rows or rows[0][0] != "cpu":
        raise ParseFailure("/proc/stat", "first line is not the aggregate cpu line")
    fields = rows[0][1 : len(CPU_BUCKETS) + 1]
    if len(fields) < 4:
        raise ParseFailure("/proc/stat", f"expected at least 4 buckets, got {len(fields)}")
    try:
        values = [int(v) for v in fields]
    except ValueError as exc:
        raise ParseFailure("/proc/stat", str(exc)) from exc
    values.extend([0] * (len(CPU_BUCKETS) - len(values)))
    return CpuTimes(*values)


def parse_interrupts(text: str, min_cpu_columns: int = 10) -> dict[str, tuple[tuple[int, ...], str]]:
    """
    Parse /proc/interrupts into per-IRQ CPU counts and description.

    A row needs at least ``min_cpu_columns`` per-CPU counts, or one per CPU on
    hosts with fewer CPUs. Summary rows such as ``ERR`` and ``MIS`` carry a
    single count and are dropped.
    """
    lines = text.splitlines()
    if not lines:
        return {}
    ncpu = len(lines[0].split())
    required = min(min_cpu_columns, ncpu)
    table: dict[str, tuple[tuple[int, ...], str]] = {}
    for line in lines[1:]:
        parts = line.split()
        if not parts or not parts[0].endswith(":"):
            continue
        counts: list[int] = []
        for token in parts[1 : ncpu + 1]:
            if not token.isdigit():
                break
            counts.append(int(token))
        if not counts or len(counts) < required:
            continue
        description = " ".join(parts[len(counts) + 1 :])
        table[parts[0][:-1]] = (tuple(counts), description)
    return table


def classify_interrupt(balance: float, policy: CpuPolicy) -> InterruptStatus:
    """Classify an interrupt source by the share taken by its busiest CPU."""
    if balance > policy.storm_ratio:
        return InterruptStatus.STORM
    if balance > policy.unbalanced_ratio:
        return InterruptStatus.UNBALANCED
    return InterruptStatus.BALANCED


def describe_irq(name: str, kernel_description: str = "") -> str:
    """Human-readable description of an IRQ, falling back to the kernel's text."""
    return IRQ_DESCRIPTIONS.get(name) or kernel_description or name


class CpuSampler(Sampler):
    """
    Sampler for systemwide CPU time and interrupt distribution.

    Percentages are computed from the jiffies spent in each bucket since the
    previous reading. If no jiffies elapsed the previous percentages stand.
    """

    name = "cpu"

    def __init__(
        self,
        policy: CpuPolicy | None = None,
        stat_path: str = "/proc/stat",
        interrupts_path: str = "/proc/interrupts",
    ) -> None:
        """
        Initialize the CpuSampler.

        Args:
            policy: Interrupt classification thresholds.
            stat_path: Path of the CPU time source.
            interrupts_path: Path of the interrupt table. Optional: without it the
                interrupt analysis stays empty.

        Raises:
            SourceUnavailable: If the CPU time source cannot be opened.
        """
        super().__init__()
        self._policy = policy or CpuPolicy()
        self._stat = ProcSource(stat_path)
        self._interrupts: ProcSource | None
        try:
            self._interrupts = ProcSource(interrupts_path)
        except SourceUnavailable as exc:
            logger.warning("Interrupt analysis disabled: %s", exc)
            self._interrupts = None
        self._previous = CpuTimes()
        self._current = CpuTimes()
        self._metrics: CpuMetrics | None = None
        self._irq_counts: dict[str, tuple[tuple[int, ...], str]] = {}
        self._previous_irq_counts: dict[str, tuple[tuple[int, ...], str]] = {}
        self._interrupt_stats: list[InterruptStat] = []

    @property
    def ready(self) -> bool:
        return self._metrics is not None

    @property
    def metrics(self) -> CpuMetrics | None:
        """Get the bucket percentages of the last tick, or None before two readings."""
        return self._metrics

    @property
    def current(self) -> CpuTimes:
        return self._current

    @property
    def previous(self) -> CpuTimes:
        return self._previous

    def update(self) -> None:
        """Re-read CPU times and the interrupt table."""
        current = parse_cpu_line(self._stat.read_current())
        self._previous, self._current = self._current, current
        if self._first_reading:
            self._first_reading = False
        else:
            self._calculate_percentages()
        self._update_interrupts()

    def _calculate_percentages(self) -> None:
        deltas = [
            counter_delta(p, c)
            for p, c in zip(self._previous.as_tuple(), self._current.as_tuple())
        ]
        total = sum(deltas)
        if total == 0:
            return
        self._metrics = CpuMetrics(
            *(100.0 * d / total for d in deltas),
        )

    def _update_interrupts(self) -> None:
        if self._interrupts is None:
            return
        try:
            text = self._interrupts.read_text()
        except ParseFailure as exc:
            logger.debug("Skipping interrupt analysis this tick: %s", exc)
            return
        table = parse_interrupts(text, self._policy.min_cpu_columns)
        self._previous_irq_counts, self._irq_counts = self._irq_counts, table
        self._interrupt_stats = self._analyze_interrupts()

    def _analyze_interrupts(self) -> list[InterruptStat]:
        stats: list[InterruptStat] = []
        for name, (counts, description) in self._irq_counts.items():
            total = sum(counts)
            if total == 0 or total < self._policy.activity_floor:
                continue
            max_count = max(counts)
            balance = max_count / total
            rate = None
            if name in self._previous_irq_counts:
                rate = counter_delta(sum(self._previous_irq_counts[name][0]), total)
            stats.append(
                InterruptStat(
                    name=name,
                    description=describe_irq(name, description),
                    counts=counts,
                    total=total,
                    max_cpu=counts.index(max_count),
                    max_count=max_count,
                    balance=balance,
                    status=classify_interrupt(balance, self._policy),
                    rate=rate,
                )
            )
        stats.sort(key=lambda s: (s.status is not InterruptStatus.STORM, -s.total))
        return stats

    # Accessors

    @property
    def cpu_usage(self) -> float | None:
        return None if self._metrics is None else self._metrics.usage_percent

    @property
    def user_usage(self) -> float | None:
        return None if self._metrics is None else self._metrics.user_percent

    @property
    def system_usage(self) -> float | None:
        return None if self._metrics is None else self._metrics.system_percent

    @property
    def iowait(self) -> float | None:
        return None if self._metrics is None else self._metrics.iowait_percent

    @property
    def hard_irq(self) -> float | None:
        return None if self._metrics is None else self._metrics.irq_percent

    @property
    def soft_irq(self) -> float | None:
        return None if self._metrics is None else self._metrics.softirq_percent

    @property
    def steal(self) -> float | None:
        return None if self._metrics is None else self._metrics.steal_percent

    def get_interrupt_counts(self) -> dict[str, tuple[int, ...]]:
        """Get the per-CPU counts of every parsed interrupt row."""
        return {name: counts for name, (counts, _) in self._irq_counts.items()}

    def top_interrupts(self, count: int = 10) -> list[InterruptStat]:
        """Get the analysed interrupts: storms first, then by total descending."""
        return self._interrupt_stats[:count]

    @property
    def storm_count(self) -> int:
        return sum(1 for s in self._interrupt_stats if s.status is InterruptStatus.STORM)

    def close(self) -> None:
        self._stat.close()
        if self._interrupts is not None:
            self._interrupts.close()
