"""Tests for the SystemMonitor class."""

import dataclasses
import sys
import threading
import time
from pathlib import Path
from queue import Queue

import pytest

from sysprobe.config import MonitorConfig
from sysprobe.cpu import CpuSampler
from sysprobe.errors import ParseFailure, SourceUnavailable
from sysprobe.memory import MemorySampler
from sysprobe.monitor import SystemMonitor, SystemSnapshot
from sysprobe.perf import PerfCounterSampler
from sysprobe.sampler import Sampler

on_linux = pytest.mark.skipif(
    not sys.platform.startswith("linux") or not Path("/proc/stat").exists(),
    reason="needs procfs",
)


class FakeSampler(Sampler):
    """Sampler recording calls, optionally failing every update."""

    def __init__(self, name, fail=False):
        super().__init__()
        self.name = name
        self.fail = fail
        self.updates = 0
        self.closed = False

    @property
    def ready(self):
        return self.updates > 1

    def update(self):
        self.updates += 1
        if self.fail:
            raise ParseFailure(self.name, "bad data")

    def close(self):
        self.closed = True


class UnavailablePerfSource:
    def __init__(self):
        self.open_calls = 0

    def open(self):
        self.open_calls += 1
        raise SourceUnavailable("perf", "not supported")

    def read_current(self):
        raise AssertionError("never read")

    def close(self):
        pass


def write_stat(path, busy, idle):
    path.write_text(f"cpu  {busy} 0 0 {idle} 0 0 0 0 0 0\n")


class TestSystemSnapshot:
    """Tests for SystemSnapshot dataclass."""

    def test_defaults(self):
        """Test a bare snapshot reports nothing collected."""
        snapshot = SystemSnapshot(tick=1, timestamp=0.0)
        assert snapshot.cpu is None
        assert snapshot.devices == ()
        assert snapshot.total_iops is None
        assert snapshot.perf_available is None

    def test_immutable(self):
        """Test snapshots cannot be modified once published."""
        snapshot = SystemSnapshot(tick=1, timestamp=0.0)
        with pytest.raises(dataclasses.FrozenInstanceError):
            snapshot.tick = 2
        # Slots-based dataclasses don't have __dict__
        assert not hasattr(snapshot, "__dict__")


class TestSystemMonitor:
    """Tests for SystemMonitor class."""

    def test_monitor_creation(self):
        """Test SystemMonitor can be instantiated with injected samplers."""
        monitor = SystemMonitor(samplers=[FakeSampler("cpu")])
        assert monitor.poll_rate == 2.0
        assert monitor.enabled_samplers == ["cpu"]
        assert not monitor.is_running

    def test_poll_rate_from_config(self):
        """Test the poll rate comes from the config."""
        monitor = SystemMonitor(config=MonitorConfig(poll_rate=0.5), samplers=[])
        assert monitor.poll_rate == 0.5

    def test_poll_rate_minimum(self):
        """Test poll rate has a minimum of 0.1 seconds."""
        monitor = SystemMonitor(samplers=[])
        monitor.poll_rate = 0.01
        assert monitor.poll_rate == 0.1

    def test_tick_updates_every_sampler(self):
        """Test one tick updates each sampler once, in order."""
        first, second = FakeSampler("a"), FakeSampler("b")
        monitor = SystemMonitor(samplers=[first, second])
        snapshot = monitor.tick()
        assert first.updates == 1
        assert second.updates == 1
        assert snapshot.tick == 1
        assert snapshot.enabled == ("a", "b")

    def test_failing_sampler_does_not_stop_tick(self):
        """Test a sampler failure is recorded and the others still update."""
        broken, healthy = FakeSampler("broken", fail=True), FakeSampler("healthy")
        monitor = SystemMonitor(samplers=[broken, healthy])
        snapshot = monitor.tick()
        assert healthy.updates == 1
        assert len(snapshot.failures) == 1
        assert snapshot.failures[0].startswith("broken:")

    def test_disabled_sampler(self, monkeypatch):
        """Test a sampler whose source is unavailable is left out."""

        def unavailable(*args, **kwargs):
            raise SourceUnavailable("/proc/diskstats", "No such file or directory")

        monkeypatch.setattr("sysprobe.monitor.StorageSampler", unavailable)
        monkeypatch.setattr("sysprobe.monitor.CpuSampler", lambda policy: FakeSampler("cpu"))
        monkeypatch.setattr("sysprobe.monitor.MemorySampler", lambda policy: FakeSampler("memory"))

        monitor = SystemMonitor(config=MonitorConfig())
        assert monitor.enabled_samplers == ["cpu", "memory"]
        assert "storage" in monitor.disabled_samplers
        assert "diskstats" in monitor.disabled_samplers["storage"]

    def test_optional_samplers_follow_config(self, monkeypatch):
        """Test NUMA, perf and process samplers are built only when enabled."""
        for name in ("CpuSampler", "MemorySampler", "StorageSampler", "NumaSampler", "ProcessSampler"):
            label = name.removesuffix("Sampler").lower()
            monkeypatch.setattr(f"sysprobe.monitor.{name}", lambda policy, label=label: FakeSampler(label))
        monkeypatch.setattr(
            "sysprobe.monitor.PerfCounterSampler",
            lambda policy: PerfCounterSampler(policy, source=UnavailablePerfSource()),
        )

        assert SystemMonitor(config=MonitorConfig()).enabled_samplers == ["cpu", "memory", "storage"]
        monitor = SystemMonitor(config=MonitorConfig(enable_numa=True, enable_perf=True, enable_process=True))
        assert monitor.enabled_samplers == ["cpu", "memory", "storage", "numa", "perf", "process"]

    def test_perf_probed_at_startup(self, monkeypatch):
        """Test the perf sampler opens its counters when the monitor is built."""
        source = UnavailablePerfSource()
        for name in ("CpuSampler", "MemorySampler", "StorageSampler"):
            label = name.removesuffix("Sampler").lower()
            monkeypatch.setattr(f"sysprobe.monitor.{name}", lambda policy, label=label: FakeSampler(label))
        monkeypatch.setattr(
            "sysprobe.monitor.PerfCounterSampler",
            lambda policy: PerfCounterSampler(policy, source=source),
        )

        monitor = SystemMonitor(config=MonitorConfig(enable_perf=True))
        assert source.open_calls == 1
        assert monitor.sampler("perf").available is False
        assert "perf" in monitor.enabled_samplers

    def test_unavailable_perf_in_snapshot(self):
        """Test unavailable counters are reported rather than raised."""
        perf = PerfCounterSampler(source=UnavailablePerfSource())
        perf.initialize()
        monitor = SystemMonitor(samplers=[perf])
        snapshot = monitor.tick()
        assert snapshot.perf_available is False
        assert snapshot.perf is None
        assert snapshot.failures == ()

    def test_cpu_history(self, tmp_path):
        """Test CPU usage is recorded once percentages exist."""
        stat = tmp_path / "stat"
        write_stat(stat, 100, 100)
        cpu = CpuSampler(stat_path=str(stat), interrupts_path=str(tmp_path / "none"))
        monitor = SystemMonitor(samplers=[cpu])

        monitor.tick()
        assert monitor.get_cpu_history() == []
        write_stat(stat, 150, 150)
        snapshot = monitor.tick()
        assert snapshot.cpu.usage_percent == pytest.approx(50.0)
        assert monitor.get_cpu_history() == [pytest.approx(50.0)]
        monitor.close()

    def test_cpu_history_bounded(self, tmp_path):
        """Test the CPU history keeps the last 60 entries."""
        stat = tmp_path / "stat"
        write_stat(stat, 0, 0)
        cpu = CpuSampler(stat_path=str(stat), interrupts_path=str(tmp_path / "none"))
        monitor = SystemMonitor(samplers=[cpu])
        for i in range(1, 80):
            write_stat(stat, i, i)
            monitor.tick()
        assert len(monitor.get_cpu_history()) == 60
        monitor.close()

    def test_stop_closes_samplers(self):
        """Test stopping the monitor closes every sampler."""
        sampler = FakeSampler("a")
        monitor = SystemMonitor(samplers=[sampler])
        monitor.stop()
        assert sampler.closed

    def test_start_after_stop_rejected(self):
        """Test a stopped monitor cannot be restarted."""
        monitor = SystemMonitor(samplers=[FakeSampler("a")])
        monitor.stop()
        with pytest.raises(RuntimeError):
            monitor.start()

    def test_thread_pushes_snapshots(self):
        """Test the background thread pushes snapshots onto the queue."""
        queue: Queue[SystemSnapshot] = Queue()
        monitor = SystemMonitor(queue, config=MonitorConfig(poll_rate=0.1), samplers=[FakeSampler("a")])
        monitor.start()
        try:
            assert monitor.is_running
            snapshot = queue.get(timeout=5.0)
            assert isinstance(snapshot, SystemSnapshot)
        finally:
            monitor.stop()
        assert not monitor.is_running

    def test_start_is_idempotent(self):
        """Test starting twice keeps a single thread."""
        monitor = SystemMonitor(config=MonitorConfig(poll_rate=0.1), samplers=[FakeSampler("a")])
        monitor.start()
        thread = monitor._thread
        monitor.start()
        assert monitor._thread is thread
        monitor.stop()

    def test_run_max_ticks(self):
        """Test run drives the loop in the calling thread."""
        monitor = SystemMonitor(config=MonitorConfig(poll_rate=0.1), samplers=[FakeSampler("a")])
        seen = []
        assert monitor.run(seen.append, max_ticks=3) == 3
        assert [s.tick for s in seen] == [1, 2, 3]

    def test_run_stops_on_event(self):
        """Test a set stop event ends run before the next tick."""
        monitor = SystemMonitor(config=MonitorConfig(poll_rate=0.1), samplers=[FakeSampler("a")])
        stop = threading.Event()
        seen = []

        def callback(snapshot):
            seen.append(snapshot)
            stop.set()

        assert monitor.run(callback, stop_event=stop) == 1
        assert len(seen) == 1


@on_linux
class TestLiveHost:
    """Ticks against the real /proc of the test host."""

    def test_default_samplers(self):
        """Test CPU and memory samplers start on any Linux host."""
        monitor = SystemMonitor(config=MonitorConfig(poll_rate=0.1))
        try:
            assert "cpu" in monitor.enabled_samplers
            assert "memory" in monitor.enabled_samplers
            first = monitor.tick()
            assert first.cpu is None
            assert first.memory is not None
            assert first.total_iops is None

            time.sleep(0.3)
            second = monitor.tick()
            assert second.failures == ()
            assert second.cpu is not None
            assert 0.0 <= second.cpu.usage_percent <= 100.0
            assert second.memory.memory_usage_percent + second.memory.available_percent == pytest.approx(100.0)
            if "storage" in second.enabled:
                assert second.total_iops is not None
        finally:
            monitor.stop()

    def test_all_samplers(self):
        """Test every optional sampler survives real ticks."""
        config = MonitorConfig(poll_rate=0.1, enable_numa=True, enable_process=True, top_n=3)
        monitor = SystemMonitor(config=config)
        try:
            monitor.tick()
            time.sleep(0.2)
            snapshot = monitor.tick()
            assert snapshot.numa_nodes
            assert snapshot.process_count > 0
            assert len(snapshot.top_cpu) <= 3
            assert snapshot.patterns is not None
        finally:
            monitor.stop()
