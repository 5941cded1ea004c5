"""NUMA topology and systemwide memory reclaim sampler."""

import logging
import re
from pathlib import Path

import psutil

from sysprobe.config import NumaPolicy
from sysprobe.errors import ParseFailure, SourceUnavailable
from sysprobe.models import NumaNode, Severity, VmstatCounters, VmstatMetrics
from sysprobe.sampler import Sampler, counter_delta
from sysprobe.sources import ProcSource, parse_kv_rows, read_value

logger = logging.getLogger(__name__)

NODE_DIR_RE = re.compile(r"^node(\d+)$")


def grade(value: float, warning: float, alarm: float, alarm_level: Severity = Severity.CRITICAL) -> Severity:
    """Place a reading in its band: NORMAL, WARNING above warning, alarm_level above alarm."""
    if value > alarm:
        return alarm_level
    if value > warning:
        return Severity.WARNING
    return Severity.NORMAL


def parse_cpu_list(text: str | None) -> tuple[int, ...]:
    """
    Expand a kernel CPU list such as ``0-3,8-11`` into core ids.

    Malformed ranges are skipped.
    """
    cores: list[int] = []
    for part in (text or "").split(","):
        part = part.strip()
        if not part:
            continue
        start, _, end = part.partition("-")
        try:
            if end:
                cores.extend(range(int(start), int(end) + 1))
            else:
                cores.append(int(start))
        except ValueError:
            logger.debug("Ignoring malformed cpulist entry %r", part)
    return tuple(cores)


def parse_node_meminfo(rows: list[list[str]]) -> tuple[int, int]:
    """
    Extract MemTotal and MemFree in kB.

    Accepts both the per-node layout (``Node 0 MemTotal: 123 kB``) and the
    systemwide /proc/meminfo layout.

    Raises:
        ParseFailure: If MemTotal is missing.
    """
    values: dict[str, int] = {}
    for row in rows:
        if row[0] == "Node" and len(row) >= 4:
            row = row[2:]
        if len(row) >= 2 and row[1].isdigit():
            values[row[0].rstrip(":")] = int(row[1])
    if "MemTotal" not in values:
        raise ParseFailure("node meminfo", "MemTotal missing")
    return values["MemTotal"], values.get("MemFree", 0)


class NumaSampler(Sampler):
    """
    Sampler for NUMA node memory and the kernel's reclaim counters.

    Topology is discovered once. When the host exposes no NUMA nodes, a single
    synthetic node spanning every core stands in for it, backed by the
    systemwide meminfo.
    """

    name = "numa"

    def __init__(
        self,
        policy: NumaPolicy | None = None,
        vmstat_path: str = "/proc/vmstat",
        node_root: str = "/sys/devices/system/node",
        meminfo_path: str = "/proc/meminfo",
    ) -> None:
        """
        Initialize the NumaSampler and discover the topology.

        Raises:
            SourceUnavailable: If the vmstat source cannot be opened.
        """
        super().__init__()
        self._policy = policy or NumaPolicy()
        self._vmstat = ProcSource(vmstat_path)
        self._node_root = Path(node_root)
        self._meminfo_path = meminfo_path
        self._node_sources: dict[int, ProcSource] = {}
        self._nodes: dict[int, NumaNode] = {}
        self._previous = VmstatCounters()
        self._current = VmstatCounters()
        self._metrics: VmstatMetrics | None = None
        self.discover_topology()

    def discover_topology(self) -> dict[int, NumaNode]:
        """Find NUMA nodes and their CPU cores, falling back to one synthetic node."""
        self._close_node_sources()
        self._nodes = {}
        try:
            entries = sorted(self._node_root.iterdir())
        except OSError:
            entries = []
        for entry in entries:
            match = NODE_DIR_RE.match(entry.name)
            if not match:
                continue
            node_id = int(match.group(1))
            try:
                self._node_sources[node_id] = ProcSource(entry / "meminfo")
            except SourceUnavailable as exc:
                logger.debug("Skipping NUMA node %d: %s", node_id, exc)
                continue
            self._nodes[node_id] = NumaNode(
                node_id=node_id,
                cpu_cores=parse_cpu_list(read_value(entry / "cpulist")),
            )

        if not self._nodes:
            logger.info("NUMA topology not available, using a single synthetic node")
            cores = tuple(range(psutil.cpu_count(logical=True) or 1))
            self._node_sources[0] = ProcSource(self._meminfo_path)
            self._nodes[0] = NumaNode(node_id=0, cpu_cores=cores, synthetic=True)
        else:
            logger.info("Discovered %d NUMA nodes", len(self._nodes))
        self._refresh_nodes()
        return dict(self._nodes)

    @property
    def ready(self) -> bool:
        return self._metrics is not None

    @property
    def current(self) -> VmstatCounters:
        return self._current

    @property
    def metrics(self) -> VmstatMetrics | None:
        return self._metrics

    def update(self) -> None:
        """Re-read vmstat and per-node memory, then rescore memory pressure."""
        values = parse_kv_rows(self._vmstat.read_current())
        if not values:
            raise ParseFailure(str(self._vmstat.path), "no counters")
        current = VmstatCounters.from_mapping(values)
        self._refresh_nodes()
        self._previous, self._current = self._current, current
        if self._first_reading:
            self._first_reading = False
            return
        self._metrics = self._calculate_memory_pressure()

    def _refresh_nodes(self) -> None:
        for node_id, source in self._node_sources.items():
            try:
                total, free = parse_node_meminfo(source.read_current())
            except ParseFailure as exc:
                logger.debug("Keeping last reading of node %d: %s", node_id, exc)
                continue
            node = self._nodes[node_id]
            self._nodes[node_id] = NumaNode(
                node_id=node_id,
                cpu_cores=node.cpu_cores,
                mem_total=total,
                mem_free=free,
                synthetic=node.synthetic,
            )

    def _calculate_memory_pressure(self) -> VmstatMetrics:
        prev, cur, policy = self._previous, self._current, self._policy
        major_faults = counter_delta(prev.pgmajfault, cur.pgmajfault)
        swap_in = counter_delta(prev.pswpin, cur.pswpin)
        swap_out = counter_delta(prev.pswpout, cur.pswpout)
        scanned = counter_delta(prev.pgscan_kswapd, cur.pgscan_kswapd) + counter_delta(
            prev.pgscan_direct, cur.pgscan_direct
        )
        is_swapping = swap_in > 0 or swap_out > 0

        score = 0.0
        if cur.nr_dirty > policy.dirty_pages:
            score += policy.dirty_points
        if cur.nr_writeback > policy.writeback_pages:
            score += policy.writeback_points
        if scanned > policy.scan_pages:
            score += policy.scan_points
        if major_faults > policy.major_faults:
            score += policy.major_fault_points
        if is_swapping:
            score += policy.swap_points

        page_faults = counter_delta(prev.pgfault, cur.pgfault)
        return VmstatMetrics(
            page_fault_rate=page_faults,
            major_fault_rate=major_faults,
            swap_rate=swap_in + swap_out,
            scan_rate=scanned,
            memory_pressure=score,
            is_swapping=is_swapping,
            is_memory_pressured=score > policy.pressure_threshold,
            fault_severity=grade(page_faults, policy.fault_warning, policy.fault_high, Severity.HIGH),
            major_fault_severity=grade(major_faults, policy.major_faults, policy.major_fault_critical),
            pressure_severity=grade(score, policy.pressure_warning, policy.pressure_critical),
        )

    # Accessors

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> list[NumaNode]:
        return [self._nodes[i] for i in sorted(self._nodes)]

    @property
    def is_synthetic(self) -> bool:
        return any(node.synthetic for node in self._nodes.values())

    @property
    def total_memory_usage(self) -> float:
        """Get the mean memory usage across nodes, in percent."""
        if not self._nodes:
            return 0.0
        return sum(n.usage_percent for n in self._nodes.values()) / len(self._nodes)

    @property
    def imbalance(self) -> float:
        """Get the spread between the busiest and idlest node, in percentage points."""
        if len(self._nodes) < 2:
            return 0.0
        usage = [n.usage_percent for n in self._nodes.values()]
        return max(usage) - min(usage)

    @property
    def is_imbalanced(self) -> bool:
        return self.imbalance > self._policy.imbalance_percent

    @property
    def memory_pressure(self) -> float | None:
        return None if self._metrics is None else self._metrics.memory_pressure

    @property
    def is_memory_pressured(self) -> bool | None:
        return None if self._metrics is None else self._metrics.is_memory_pressured

    @property
    def is_swapping(self) -> bool | None:
        return None if self._metrics is None else self._metrics.is_swapping

    def _close_node_sources(self) -> None:
        for source in self._node_sources.values():
            source.close()
        self._node_sources = {}

    def close(self) -> None:
        self._vmstat.close()
        self._close_node_sources()
