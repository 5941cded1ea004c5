"""Plain-text rendering of snapshots for text mode."""

from datetime import datetime

from sysprobe.models import DeviceStatus, InterruptStatus, PerfMetrics
from sysprobe.monitor import SystemSnapshot

NA = "n/a"


def format_bytes(size: float) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{int(size):5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def format_value(value: float | None, fmt: str = ".1f", suffix: str = "") -> str:
    """Format a metric, or n/a when it has not been computed."""
    if value is None:
        return NA
    return f"{value:{fmt}}{suffix}"


def format_flag(value: bool | None, label: str) -> str:
    if value is None:
        return f"{label}: {NA}"
    return f"{label}: {'YES' if value else 'no'}"


def cpu_section(snapshot: SystemSnapshot) -> list[str]:
    cpu = snapshot.cpu
    if cpu is None:
        return ["CPU      warming up"]
    lines = [
        f"CPU      usage {cpu.usage_percent:5.1f}%  user {cpu.user_percent:5.1f}%  "
        f"system {cpu.system_percent:5.1f}%  iowait {cpu.iowait_percent:5.1f}%",
        f"         irq {cpu.irq_percent:5.1f}%  softirq {cpu.softirq_percent:5.1f}%  "
        f"steal {cpu.steal_percent:5.1f}%",
    ]
    for stat in snapshot.interrupts:
        marker = "!" if stat.status is InterruptStatus.STORM else " "
        lines.append(
            f"  {marker}IRQ {stat.name:>6} {stat.status.value:<10} "
            f"cpu{stat.max_cpu:<3} {stat.balance * 100:5.1f}%  {stat.description}"
        )
    return lines


def memory_section(snapshot: SystemSnapshot) -> list[str]:
    memory = snapshot.memory
    if memory is None:
        return ["Memory   n/a"]
    available = format_bytes(snapshot.meminfo.mem_available * 1024) if snapshot.meminfo else NA
    return [
        f"Memory   used {memory.memory_usage_percent:5.1f}%  available {available}  "
        f"dirty {memory.dirty_percent:.2f}%  writeback {memory.writeback_percent:.2f}%",
        "         "
        + "  ".join(
            [
                format_flag(memory.memory_pressure, "pressure"),
                format_flag(memory.storage_bottleneck, "storage bottleneck"),
                format_flag(memory.write_bottleneck, "write bottleneck"),
            ]
        ),
    ]


def storage_section(snapshot: SystemSnapshot) -> list[str]:
    if snapshot.total_iops is None:
        return ["Storage  warming up"]
    lines = [
        f"Storage  {snapshot.total_iops:.0f} IOPS  {snapshot.total_throughput:.2f} MB  "
        f"hot {snapshot.hot_device_count}"
    ]
    summary = snapshot.queue_summary
    if summary is not None:
        lines[0] += f"  queues: {summary.bottleneck} bottleneck, {summary.warning} warning"
    for dev in snapshot.devices:
        if dev.status is DeviceStatus.NORMAL and dev.total_iops == 0:
            continue
        lines.append(
            f"  {dev.device_name:<10} r {dev.read_iops:7.0f} w {dev.write_iops:7.0f}  "
            f"{dev.total_mbps:8.2f} MB  lat {dev.avg_latency:6.2f}ms  "
            f"qd {dev.queue_depth:<4} {dev.status.value}"
        )
    return lines


def numa_section(snapshot: SystemSnapshot) -> list[str]:
    if "numa" not in snapshot.enabled:
        return []
    lines = []
    for node in snapshot.numa_nodes:
        label = "synthetic" if node.synthetic else f"{len(node.cpu_cores)} cpus"
        lines.append(f"NUMA     node{node.node_id} ({label}) {node.usage_percent:5.1f}% used")
    vm = snapshot.numa
    if vm is None:
        pressure = NA
    else:
        pressure = f"{vm.memory_pressure:.0f} {vm.pressure_severity.value}"
        lines.append(
            f"         faults/tick {vm.page_fault_rate} {vm.fault_severity.value}  "
            f"major {vm.major_fault_rate} {vm.major_fault_severity.value}  swap/tick {vm.swap_rate}"
        )
    lines.append(
        f"         pressure score {pressure}  imbalance "
        f"{format_value(snapshot.numa_imbalance, '.1f', '%')}  "
        + format_flag(None if vm is None else vm.is_swapping, "swapping")
    )
    return lines


def perf_alerts(perf: PerfMetrics) -> list[str]:
    """Name every bottleneck the counters point at."""
    alerts = []
    if perf.is_cpu_bound:
        alerts.append("CPU bottleneck (low IPC)")
    if perf.is_memory_bound:
        alerts.append("memory bottleneck (cache misses)")
    if perf.is_branch_mispredicting:
        alerts.append("branch mispredictions")
    if perf.is_context_switching_heavy:
        alerts.append(f"high context switching ({perf.context_switch_rate}/tick)")
    if perf.is_page_faulting_heavy:
        alerts.append(f"high page fault rate ({perf.page_fault_rate}/tick)")
    return alerts


def perf_section(snapshot: SystemSnapshot) -> list[str]:
    if "perf" not in snapshot.enabled:
        return []
    if not snapshot.perf_available:
        return ["Perf     counters unavailable"]
    perf = snapshot.perf
    if perf is None:
        return ["Perf     warming up"]
    lines = [
        f"Perf     IPC {perf.ipc:.2f} {perf.ipc_rating.value}  "
        f"cache hit {perf.cache_hit_rate:5.1f}% {perf.cache_rating.value}  "
        f"branch miss {perf.branch_miss_rate:.2f}% {perf.branch_rating.value}  "
        + format_flag(perf.is_cache_thrashing, "thrashing")
    ]
    lines.extend(f"         bottleneck: {alert}" for alert in perf_alerts(perf))
    return lines


def process_section(snapshot: SystemSnapshot) -> list[str]:
    if "process" not in snapshot.enabled:
        return []
    lines = [f"Procs    {snapshot.process_count} tracked"]
    patterns = snapshot.patterns
    if patterns is not None:
        lines[0] += (
            f"  cpu-bound {patterns.cpu_intensive}  memory-heavy {patterns.memory_intensive}"
            f"  io-heavy {patterns.io_intensive}"
        )
    for record in snapshot.top_cpu:
        m = record.metrics
        lines.append(
            f"  {record.pid:>7} {record.name[:16]:<16} cpu {m.cpu_usage_percent:6.1f}%  "
            f"rss {m.memory_usage_mb:8.1f} MB  ctx {m.context_switch_rate:<6} pf {m.page_fault_rate}"
        )
    return lines


def render_text(snapshot: SystemSnapshot) -> str:
    """Render one snapshot as a multi-line report block."""
    stamp = datetime.fromtimestamp(snapshot.timestamp).strftime("%H:%M:%S")
    lines = [f"--- tick {snapshot.tick} at {stamp} ---"]
    lines += cpu_section(snapshot)
    lines += memory_section(snapshot)
    lines += storage_section(snapshot)
    lines += numa_section(snapshot)
    lines += perf_section(snapshot)
    lines += process_section(snapshot)
    for failure in snapshot.failures:
        lines.append(f"warning: {failure}")
    return "\n".join(lines)
