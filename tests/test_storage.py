"""Tests for the block device sampler."""

import pytest

from sysprobe.config import StoragePolicy
from sysprobe.errors import ParseFailure, SourceUnavailable
from sysprobe.models import DeviceStatus
from sysprobe.storage import (
    StorageSampler,
    device_status,
    hot_count,
    parse_diskstats,
    parse_scheduler,
)


def disk_line(name, reads=0, read_sectors=0, writes=0, write_sectors=0, in_progress=0, io_time=0):
    return (
        f" 259       0 {name} {reads} 0 {read_sectors} 0 {writes} 0 {write_sectors} 0 "
        f"{in_progress} {io_time} 0 0 0 0 0\n"
    )


def make_block_dir(root, devices):
    for name, scheduler, nr_requests in devices:
        queue = root / name / "queue"
        queue.mkdir(parents=True)
        if scheduler is not None:
            (queue / "scheduler").write_text(scheduler + "\n")
        if nr_requests is not None:
            (queue / "nr_requests").write_text(f"{nr_requests}\n")


@pytest.fixture
def block_root(tmp_path):
    root = tmp_path / "block"
    make_block_dir(
        root,
        [
            ("nvme0n1", "[none] mq-deadline", 1023),
            ("sda", "mq-deadline [bfq] none", 64),
            ("loop0", None, None),
            ("dm-0", None, None),
        ],
    )
    return root


@pytest.fixture
def diskstats(tmp_path):
    path = tmp_path / "diskstats"
    path.write_text(disk_line("nvme0n1") + disk_line("sda") + disk_line("loop0", reads=99))
    return path


@pytest.fixture
def sampler(block_root, diskstats):
    storage = StorageSampler(diskstats_path=str(diskstats), sys_block_path=str(block_root))
    yield storage
    storage.close()


class TestHelpers:
    """Tests for storage helper functions."""

    def test_parse_scheduler(self):
        """Test the bracketed scheduler is the active one."""
        assert parse_scheduler("mq-deadline kyber [none]") == "none"
        assert parse_scheduler("noop") == "noop"
        assert parse_scheduler(None) is None

    def test_hot_count(self):
        """Test a quarter of the devices, rounded up, at least one."""
        assert hot_count(0, 0.25) == 0
        assert hot_count(1, 0.25) == 1
        assert hot_count(4, 0.25) == 1
        assert hot_count(5, 0.25) == 2
        assert hot_count(8, 0.25) == 2

    def test_device_status(self):
        """Test queue depth bands outrank heat."""
        policy = StoragePolicy()
        assert device_status(101, False, policy) is DeviceStatus.BOTTLENECK
        assert device_status(100, True, policy) is DeviceStatus.WARNING
        assert device_status(50, True, policy) is DeviceStatus.HOT
        assert device_status(50, False, policy) is DeviceStatus.NORMAL

    def test_parse_diskstats_filters_devices(self):
        """Test only tracked devices with full rows are kept."""
        rows = [disk_line("sda", reads=5).split(), ["8", "0", "sdb", "1"], disk_line("sdc").split()]
        stats = parse_diskstats(rows, {"sda", "sdb"})
        assert list(stats) == ["sda"]
        assert stats["sda"].reads == 5

    def test_parse_diskstats_malformed(self):
        """Test non-numeric counters of a tracked device are malformed."""
        row = disk_line("sda").split()
        row[5] = "lots"
        with pytest.raises(ParseFailure):
            parse_diskstats([row], {"sda"})


class TestDiscovery:
    """Tests for device discovery."""

    def test_prefix_filter(self, sampler):
        """Test loop and device-mapper devices are not tracked."""
        assert sampler.devices == ["nvme0n1", "sda"]

    def test_details(self, sampler):
        """Test scheduler and queue size are read once per device."""
        details = sampler.details
        assert details["nvme0n1"].scheduler == "none"
        assert details["nvme0n1"].max_queue_depth == 1023
        assert details["sda"].scheduler == "bfq"

    def test_missing_block_root(self, tmp_path, diskstats):
        """Test a missing /sys/block leaves the device list empty."""
        storage = StorageSampler(diskstats_path=str(diskstats), sys_block_path=str(tmp_path / "none"))
        assert storage.devices == []
        storage.close()

    def test_missing_diskstats(self, tmp_path, block_root):
        """Test a missing diskstats source makes the sampler unavailable."""
        with pytest.raises(SourceUnavailable):
            StorageSampler(diskstats_path=str(tmp_path / "none"), sys_block_path=str(block_root))


class TestStorageSampler:
    """Tests for StorageSampler."""

    def test_first_reading_has_no_metrics(self, sampler):
        """Test the first update only stores a baseline."""
        sampler.update()
        assert not sampler.ready
        assert sampler.get_device_metrics() == {}
        assert sampler.total_iops is None
        assert sampler.hot_device_count is None
        assert sampler.queue_summary() is None

    def test_iops(self, sampler, diskstats):
        """Test 200 reads and 50 writes in a tick give 250 IOPS."""
        diskstats.write_text(disk_line("nvme0n1", reads=1000, writes=500) + disk_line("sda"))
        sampler.update()
        diskstats.write_text(disk_line("nvme0n1", reads=1200, writes=550) + disk_line("sda"))
        sampler.update()

        nvme = sampler.get_device_metrics()["nvme0n1"]
        assert nvme.read_iops == 200
        assert nvme.write_iops == 50
        assert nvme.total_iops == 250
        assert sampler.total_iops == 250

    def test_throughput(self, sampler, diskstats):
        """Test 2048 sectors of 512 bytes are one megabyte."""
        sampler.update()
        diskstats.write_text(disk_line("nvme0n1", read_sectors=2048, write_sectors=1024) + disk_line("sda"))
        sampler.update()

        nvme = sampler.get_device_metrics()["nvme0n1"]
        assert nvme.read_mbps == pytest.approx(1.0)
        assert nvme.write_mbps == pytest.approx(0.5)
        assert sampler.total_throughput == pytest.approx(1.5)

    def test_latency_and_queue(self, sampler, diskstats):
        """Test latency per operation and queue utilisation."""
        sampler.update()
        diskstats.write_text(disk_line("nvme0n1", reads=200, writes=50, in_progress=64, io_time=500) + disk_line("sda"))
        sampler.update()

        nvme = sampler.get_device_metrics()["nvme0n1"]
        assert nvme.avg_latency == pytest.approx(2.0)
        assert nvme.queue_depth == 64
        assert nvme.queue_utilization == pytest.approx(50.0)
        assert nvme.status is DeviceStatus.WARNING

    def test_idle_device_has_zero_latency(self, sampler):
        """Test a device without operations reports zero latency."""
        sampler.update()
        sampler.update()
        sda = sampler.get_device_metrics()["sda"]
        assert sda.avg_latency == 0.0
        assert sda.total_iops == 0

    def test_counter_reset(self, sampler, diskstats):
        """Test a counter going backwards gives zero rather than negative rates."""
        diskstats.write_text(disk_line("nvme0n1", reads=5000) + disk_line("sda"))
        sampler.update()
        diskstats.write_text(disk_line("nvme0n1", reads=10) + disk_line("sda"))
        sampler.update()
        assert sampler.get_device_metrics()["nvme0n1"].read_iops == 0

    def test_hot_device_selection(self, tmp_path):
        """Test only the busiest quarter of four devices is hot."""
        root = tmp_path / "block"
        names = ["nvme0n1", "nvme1n1", "sda", "sdb"]
        make_block_dir(root, [(name, None, None) for name in names])
        stats = tmp_path / "diskstats"
        stats.write_text("".join(disk_line(name) for name in names))
        storage = StorageSampler(diskstats_path=str(stats), sys_block_path=str(root))
        storage.update()
        stats.write_text("".join(disk_line(name, reads=n) for name, n in zip(names, [100, 90, 10, 5])))
        storage.update()

        assert storage.hot_device_count == 1
        hot = storage.hot_devices()
        assert [m.device_name for m in hot] == ["nvme0n1"]
        assert hot[0].status is DeviceStatus.HOT
        assert storage.get_device_metrics()["nvme1n1"].status is DeviceStatus.NORMAL
        storage.close()

    def test_bottleneck_count(self, sampler, diskstats):
        """Test deep queues are counted as bottlenecks."""
        sampler.update()
        diskstats.write_text(disk_line("nvme0n1", in_progress=120) + disk_line("sda", in_progress=60))
        sampler.update()

        assert sampler.bottleneck_count == 1
        summary = sampler.queue_summary()
        assert (summary.bottleneck, summary.warning, summary.normal) == (1, 1, 0)
        assert sampler.get_device_metrics()["nvme0n1"].status is DeviceStatus.BOTTLENECK

    def test_accessors_are_idempotent(self, sampler):
        """Test repeated accessor calls without an update agree."""
        sampler.update()
        sampler.update()
        assert sampler.get_device_metrics() == sampler.get_device_metrics()
        assert sampler.total_iops == sampler.total_iops
