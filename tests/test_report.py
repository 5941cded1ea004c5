"""Tests for text mode rendering."""

from sysprobe.models import (
    CpuMetrics,
    DeviceMetrics,
    DeviceStatus,
    MemInfo,
    MemoryMetrics,
    PerfMetrics,
    QueueSummary,
    Rating,
    Severity,
    VmstatMetrics,
)
from sysprobe.monitor import SystemSnapshot
from sysprobe.report import format_bytes, format_flag, format_value, render_text


def cpu_metrics(user=20.0, idle=80.0):
    return CpuMetrics(user, 0.0, 0.0, idle, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)


def memory_metrics():
    return MemoryMetrics(
        memory_usage_percent=40.0,
        available_percent=60.0,
        buffer_efficiency=10.0,
        cache_efficiency=90.0,
        dirty_percent=0.5,
        writeback_percent=0.0,
        total_cache_percent=30.0,
        memory_pressure=False,
        storage_bottleneck=False,
        write_bottleneck=False,
    )


def device(name, iops, status=DeviceStatus.NORMAL):
    return DeviceMetrics(
        device_name=name,
        read_iops=iops,
        write_iops=0.0,
        total_iops=iops,
        read_mbps=1.0,
        write_mbps=0.0,
        total_mbps=1.0,
        avg_latency=0.5,
        queue_depth=3,
        queue_utilization=2.3,
        is_hot_device=status is DeviceStatus.HOT,
        status=status,
    )


def test_format_bytes():
    """Test format_bytes picks the unit."""
    assert "B" in format_bytes(500)
    assert "K" in format_bytes(2048)
    assert "M" in format_bytes(5242880)
    assert "G" in format_bytes(1073741824)


def test_format_value_missing():
    """Test unset metrics render as n/a."""
    assert format_value(None) == "n/a"
    assert format_value(12.345, ".2f", "%") == "12.35%"


def test_format_flag():
    """Test flags render their state."""
    assert format_flag(True, "pressure") == "pressure: YES"
    assert format_flag(None, "pressure") == "pressure: n/a"


class TestRenderText:
    """Tests for render_text."""

    def test_warming_up(self):
        """Test a first-tick snapshot shows placeholders instead of numbers."""
        text = render_text(SystemSnapshot(tick=1, timestamp=0.0, enabled=("cpu", "memory", "storage")))
        assert "tick 1" in text
        assert "CPU      warming up" in text
        assert "Memory   n/a" in text
        assert "Storage  warming up" in text

    def test_full_snapshot(self):
        """Test populated sections and busy devices appear."""
        snapshot = SystemSnapshot(
            tick=2,
            timestamp=0.0,
            enabled=("cpu", "memory", "storage"),
            cpu=cpu_metrics(),
            meminfo=MemInfo(mem_total=1024, mem_available=512),
            memory=memory_metrics(),
            devices=(device("nvme0n1", 300.0, DeviceStatus.HOT), device("sda", 0.0)),
            total_iops=300.0,
            total_throughput=2.0,
            hot_device_count=1,
            queue_summary=QueueSummary(0, 0, 2),
        )
        text = render_text(snapshot)
        assert "usage  20.0%" in text
        assert "used  40.0%" in text
        assert "300 IOPS" in text
        assert "nvme0n1" in text
        assert "sda" not in text

    def test_optional_sections_hidden_when_disabled(self):
        """Test disabled samplers contribute no lines."""
        text = render_text(SystemSnapshot(tick=1, timestamp=0.0, enabled=("cpu",)))
        assert "NUMA" not in text
        assert "Perf" not in text
        assert "Procs" not in text

    def test_perf_unavailable(self):
        """Test unavailable counters are reported."""
        snapshot = SystemSnapshot(tick=1, timestamp=0.0, enabled=("perf",), perf_available=False)
        assert "counters unavailable" in render_text(snapshot)

    def test_failures_listed(self):
        """Test sampler failures of the tick are appended."""
        snapshot = SystemSnapshot(tick=3, timestamp=0.0, failures=("storage: could not parse x: y",))
        assert "warning: storage: could not parse x: y" in render_text(snapshot)

    def test_perf_grades_and_bottlenecks(self):
        """Test ratings and every raised bottleneck are listed."""
        perf = PerfMetrics(
            ipc=0.8,
            cache_hit_rate=83.0,
            branch_miss_rate=1.0,
            context_switch_rate=12_000,
            page_fault_rate=10,
            is_cache_thrashing=False,
            is_branch_mispredicting=False,
            ipc_rating=Rating.POOR,
            cache_rating=Rating.WARNING,
            branch_rating=Rating.EXCELLENT,
            is_cpu_bound=True,
            is_memory_bound=True,
            is_context_switching_heavy=True,
        )
        snapshot = SystemSnapshot(tick=2, timestamp=0.0, enabled=("perf",), perf_available=True, perf=perf)
        text = render_text(snapshot)
        assert "IPC 0.80 poor" in text
        assert "83.0% warning" in text
        assert "1.00% excellent" in text
        assert "bottleneck: CPU bottleneck (low IPC)" in text
        assert "bottleneck: memory bottleneck (cache misses)" in text
        assert "high context switching (12000/tick)" in text
        assert "page fault rate" not in text

    def test_numa_severity(self):
        """Test fault and pressure grades appear in the NUMA section."""
        vm = VmstatMetrics(
            page_fault_rate=6000,
            major_fault_rate=120,
            swap_rate=4,
            scan_rate=0,
            memory_pressure=90.0,
            is_swapping=True,
            is_memory_pressured=True,
            fault_severity=Severity.WARNING,
            major_fault_severity=Severity.CRITICAL,
            pressure_severity=Severity.CRITICAL,
        )
        snapshot = SystemSnapshot(tick=2, timestamp=0.0, enabled=("numa",), numa=vm, numa_imbalance=0.0)
        text = render_text(snapshot)
        assert "faults/tick 6000 warning" in text
        assert "major 120 critical" in text
        assert "pressure score 90 critical" in text
