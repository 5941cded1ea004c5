"""Tests for sysprobe data models."""

import dataclasses

import pytest

from sysprobe.models import (
    CpuMetrics,
    CpuTimes,
    NumaNode,
    ProcessCounters,
    ProcessRecord,
    VmstatCounters,
)


def test_cpu_times_tuple_order():
    """Test CpuTimes flattens in /proc/stat column order."""
    times = CpuTimes(user=1, nice=2, system=3, idle=4, iowait=5)
    assert times.as_tuple() == (1, 2, 3, 4, 5, 0, 0, 0, 0, 0)


def test_cpu_usage_percent():
    """Test usage is everything but idle."""
    metrics = CpuMetrics(20.0, 0.0, 5.0, 70.0, 5.0, 0.0, 0.0, 0.0, 0.0, 0.0)
    assert metrics.usage_percent == pytest.approx(30.0)


def test_numa_node_usage():
    """Test NUMA node usage and the empty node case."""
    node = NumaNode(0, (0, 1), mem_total=1000, mem_free=250)
    assert node.mem_used == 750
    assert node.usage_percent == pytest.approx(75.0)
    assert NumaNode(1, ()).usage_percent == 0.0


def test_numa_node_free_above_total():
    """Test a racy free reading never yields negative usage."""
    assert NumaNode(0, (0,), mem_total=100, mem_free=120).mem_used == 0


def test_vmstat_from_mapping():
    """Test unknown keys are ignored and missing keys default to zero."""
    counters = VmstatCounters.from_mapping({"pgfault": 10, "pswpin": 2, "nr_foo": 99})
    assert counters.pgfault == 10
    assert counters.pswpin == 2
    assert counters.pgmajfault == 0


def test_process_record_identity():
    """Test ProcessRecord exposes the pid and name of its counters."""
    counters = ProcessCounters(42, "worker", "sleeping", 1.5, 0.5, 3, 4096, 8192)
    record = ProcessRecord(counters)
    assert record.pid == 42
    assert record.name == "worker"
    assert record.metrics is None


def test_records_are_frozen():
    """Test that counters and records are immutable."""
    counters = ProcessCounters(1, "init", "sleeping", 0.0, 0.0, 1, 0, 0)
    with pytest.raises(dataclasses.FrozenInstanceError):
        counters.pid = 2
    # Slots-based dataclasses don't have __dict__
    assert not hasattr(ProcessRecord(counters), "__dict__")
