"""sysprobe - Textual dashboard and command line entry point."""

import argparse
import logging
import signal
import sys
import tempfile
import threading
from pathlib import Path
from queue import Empty

from textual.app import App, ComposeResult
from textual.containers import Horizontal
from textual.css.query import NoMatches
from textual.widgets import DataTable, Footer, Sparkline, Static, TabbedContent, TabPane
from textual.widgets.data_table import RowDoesNotExist

from sysprobe.config import MonitorConfig
from sysprobe.monitor import SystemMonitor, SystemSnapshot
from sysprobe.report import (
    cpu_section,
    format_bytes,
    format_value,
    memory_section,
    numa_section,
    perf_section,
    process_section,
    render_text,
    storage_section,
)

__version__ = "0.5.0"

DEFAULT_LOG_FILE = Path(tempfile.gettempdir()) / "sysprobe.log"

logger = logging.getLogger(__name__)


def usage_bar(percent: float, colour: str, width: int = 20) -> str:
    """Render a percentage as a markup bar of fixed width."""
    filled = min(max(int(percent * width / 100), 0), width)
    return f"[{colour}]█[/{colour}]" * filled + "[dim]░[/dim]" * (width - filled)


class HeaderStats(Static):
    """Header widget showing CPU, memory and storage at a glance."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 4;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._snapshot: SystemSnapshot | None = None

    def compose(self) -> ComposeResult:
        yield Horizontal(
            Static(self._get_cpu_info(), id="cpu-info"),
            Static(self._get_mem_info(), id="mem-info"),
            Static(self._get_io_info(), id="io-info"),
        )

    def update_stats(self, snapshot: SystemSnapshot) -> None:
        """Update the statistics from a system snapshot."""
        self._snapshot = snapshot
        self.query_one("#cpu-info", Static).update(self._get_cpu_info())
        self.query_one("#mem-info", Static).update(self._get_mem_info())
        self.query_one("#io-info", Static).update(self._get_io_info())

    def _get_cpu_info(self) -> str:
        cpu = self._snapshot.cpu if self._snapshot else None
        if cpu is None:
            return "CPU: waiting for second sample..."
        return (
            f"CPU \\[{usage_bar(cpu.usage_percent, 'green')}] {cpu.usage_percent:5.1f}%\n"
            f"usr {cpu.user_percent:4.1f}%  sys {cpu.system_percent:4.1f}%  "
            f"wa {cpu.iowait_percent:4.1f}%"
        )

    def _get_mem_info(self) -> str:
        memory = self._snapshot.memory if self._snapshot else None
        if memory is None:
            return "Loading memory info..."
        flags = []
        if memory.memory_pressure:
            flags.append("[red]PRESSURE[/red]")
        if memory.write_bottleneck:
            flags.append("[yellow]WRITE BOTTLENECK[/yellow]")
        return (
            f"Mem \\[{usage_bar(memory.memory_usage_percent, 'cyan')}] "
            f"{memory.memory_usage_percent:5.1f}%\n"
            f"dirty {memory.dirty_percent:.2f}%  {' '.join(flags)}"
        )

    def _get_io_info(self) -> str:
        snapshot = self._snapshot
        if snapshot is None or snapshot.total_iops is None:
            return "Storage: waiting for second sample..."
        return (
            f"IO {snapshot.total_iops:8.0f} IOPS  {snapshot.total_throughput:8.2f} MB\n"
            f"hot devices {snapshot.hot_device_count}"
        )


class KeyedTable(DataTable):
    """
    DataTable whose rows are keyed by an identifier and kept across updates.

    Existing rows are refreshed in place with update_cell, so the cursor and
    scroll position survive every tick.
    """

    COLUMNS: tuple[tuple[str, str, int | None], ...] = ()
    SORT_COLUMN: str | None = None

    def __init__(self, *args, **kwargs) -> None:
        kwargs.setdefault("cursor_type", "row")
        super().__init__(*args, **kwargs)
        self._row_keys: set[str] = set()

    def on_mount(self) -> None:
        for label, key, width in self.COLUMNS:
            self.add_column(label, key=key, width=width)

    def sync_rows(self, rows: dict[str, tuple[str, ...]]) -> None:
        """Replace the table content with the given rows."""
        for key in self._row_keys - rows.keys():
            try:
                self.remove_row(key)
            except RowDoesNotExist:
                logger.debug("Row %s already removed", key)

        for key, cells in rows.items():
            if key in self._row_keys:
                for (_, column, _), value in zip(self.COLUMNS, cells):
                    self.update_cell(key, column, value)
            else:
                self.add_row(*cells, key=key)

        self._row_keys = set(rows)
        if self.SORT_COLUMN is not None and rows:
            self.sort(self.SORT_COLUMN, key=self.sort_value, reverse=True)

    @staticmethod
    def sort_value(cell: str) -> float:
        """Numeric value of a formatted cell in the sort column."""
        return float(cell)


class DeviceTable(KeyedTable):
    """Per-device storage performance."""

    COLUMNS = (
        ("DEVICE", "device", 10),
        ("R IOPS", "read_iops", 9),
        ("W IOPS", "write_iops", 9),
        ("R MB", "read_mb", 9),
        ("W MB", "write_mb", 9),
        ("LAT ms", "latency", 8),
        ("QD", "queue", 5),
        ("UTIL%", "util", 7),
        ("STATUS", "status", 11),
    )

    def update_devices(self, snapshot: SystemSnapshot) -> None:
        self.sync_rows(
            {
                dev.device_name: (
                    dev.device_name,
                    f"{dev.read_iops:9.0f}",
                    f"{dev.write_iops:9.0f}",
                    f"{dev.read_mbps:9.2f}",
                    f"{dev.write_mbps:9.2f}",
                    f"{dev.avg_latency:8.2f}",
                    str(dev.queue_depth),
                    f"{dev.queue_utilization:6.1f}",
                    dev.status.value.upper(),
                )
                for dev in snapshot.devices
            }
        )


class ProcessTable(KeyedTable):
    """The busiest processes by CPU."""

    COLUMNS = (
        ("PID", "pid", 8),
        ("NAME", "name", 16),
        ("CPU%", "cpu", 7),
        ("RES", "rss", 8),
        ("CTX/t", "ctx", 7),
        ("PF/t", "faults", 7),
        ("CACHE%", "cache", 7),
        ("FLAGS", "flags", None),
    )
    SORT_COLUMN = "cpu"

    def update_processes(self, snapshot: SystemSnapshot) -> None:
        rows = {}
        for record in snapshot.top_cpu:
            m = record.metrics
            flags = [
                label
                for label, on in (
                    ("CPU", m.is_cpu_intensive),
                    ("MEM", m.is_memory_intensive),
                    ("IO", m.is_io_intensive),
                    ("CTX", m.is_context_switching_heavy),
                    ("PF", m.is_page_faulting_heavy),
                )
                if on
            ]
            rows[str(record.pid)] = (
                str(record.pid),
                record.name[:16],
                f"{m.cpu_usage_percent:7.1f}",
                format_bytes(record.counters.rss),
                str(m.context_switch_rate),
                str(m.page_fault_rate),
                f"{m.cache_hit_rate:5.1f}",
                " ".join(flags),
            )
        self.sync_rows(rows)


class NumaTable(KeyedTable):
    """Memory usage per NUMA node."""

    COLUMNS = (
        ("NODE", "node", 6),
        ("CPUS", "cpus", 6),
        ("TOTAL", "total", 9),
        ("USED", "used", 9),
        ("USAGE%", "usage", 8),
    )

    def update_nodes(self, snapshot: SystemSnapshot) -> None:
        self.sync_rows(
            {
                str(node.node_id): (
                    f"{node.node_id}{'*' if node.synthetic else ''}",
                    str(len(node.cpu_cores)),
                    format_bytes(node.mem_total * 1024),
                    format_bytes(node.mem_used * 1024),
                    f"{node.usage_percent:6.1f}",
                )
                for node in snapshot.numa_nodes
            }
        )


class SysprobeApp(App):
    """Main sysprobe dashboard."""

    TITLE = "sysprobe"
    SUB_TITLE = "Storage-aware system monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
    }

    Horizontal {
        height: auto;
    }

    #cpu-info, #mem-info, #io-info {
        width: 1fr;
        padding-right: 2;
    }

    #cpu-sparkline {
        height: 3;
        margin: 0 1;
    }

    .summary {
        height: auto;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("1", "show_view('overview')", "Overview"),
        ("2", "show_view('storage')", "Storage"),
        ("3", "show_view('performance')", "Performance"),
        ("4", "show_view('processes')", "Processes"),
        ("5", "show_view('numa')", "NUMA"),
        ("q", "quit", "Quit"),
    ]

    def __init__(self, config: MonitorConfig | None = None, monitor: SystemMonitor | None = None) -> None:
        """
        Initialize the SysprobeApp.

        Args:
            config: Runtime configuration for a monitor built by the app.
            monitor: A ready-made monitor. Takes precedence over config.
        """
        super().__init__()
        self._monitor = monitor or SystemMonitor(config=config or MonitorConfig())
        self._last_snapshot: SystemSnapshot | None = None

    @property
    def monitor(self) -> SystemMonitor:
        return self._monitor

    @property
    def last_snapshot(self) -> SystemSnapshot | None:
        return self._last_snapshot

    def compose(self) -> ComposeResult:
        yield HeaderStats(id="header-stats")
        yield Sparkline([], summary_function=max, id="cpu-sparkline")
        with TabbedContent(initial="overview"):
            with TabPane("Overview", id="overview"):
                yield Static("Waiting for the first sample...", id="overview-body", markup=False)
            with TabPane("Storage", id="storage"):
                yield Static("", id="storage-summary", classes="summary", markup=False)
                yield DeviceTable(id="device-table")
            with TabPane("Performance", id="performance"):
                yield Static("", id="perf-body", markup=False)
            with TabPane("Processes", id="processes"):
                yield Static("", id="process-summary", classes="summary", markup=False)
                yield ProcessTable(id="process-table")
            with TabPane("NUMA", id="numa"):
                yield Static("", id="numa-summary", classes="summary", markup=False)
                yield NumaTable(id="numa-table")
        yield Footer()

    def on_mount(self) -> None:
        """Start the system monitor when the app is mounted."""
        self._monitor.start()
        # Set up a timer to poll the queue for updates
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Check the queue for system updates and refresh the UI."""
        # Drain the queue, only the most recent snapshot is shown
        snapshot = None
        while True:
            try:
                snapshot = self._monitor.queue.get_nowait()
            except Empty:
                break

        if snapshot is not None:
            self._update_ui(snapshot)

    def _update_ui(self, snapshot: SystemSnapshot) -> None:
        """Update the UI with the new system snapshot."""
        self._last_snapshot = snapshot
        try:
            self.query_one("#header-stats", HeaderStats).update_stats(snapshot)
            self.query_one("#cpu-sparkline", Sparkline).data = self._monitor.get_cpu_history()
            self.query_one("#overview-body", Static).update(
                "\n".join(cpu_section(snapshot) + memory_section(snapshot) + self._failure_lines(snapshot))
            )
            self._update_storage(snapshot)
            self._update_performance(snapshot)
            self._update_processes(snapshot)
            self._update_numa(snapshot)
        except NoMatches:
            logger.debug("Dashboard not fully mounted, skipping update")

    @staticmethod
    def _failure_lines(snapshot: SystemSnapshot) -> list[str]:
        return [f"warning: {failure}" for failure in snapshot.failures]

    def _update_storage(self, snapshot: SystemSnapshot) -> None:
        self.query_one("#storage-summary", Static).update(storage_section(snapshot)[0])
        self.query_one("#device-table", DeviceTable).update_devices(snapshot)

    def _update_performance(self, snapshot: SystemSnapshot) -> None:
        lines = perf_section(snapshot) or ["Hardware counters disabled (start with --perf)"]
        perf = snapshot.perf
        if perf is not None:
            lines += [
                f"context switches/tick {perf.context_switch_rate}",
                f"page faults/tick      {perf.page_fault_rate}",
            ]
        self.query_one("#perf-body", Static).update("\n".join(lines))

    def _update_processes(self, snapshot: SystemSnapshot) -> None:
        lines = process_section(snapshot)
        summary = lines[0] if lines else "Process sampling disabled (start with --process)"
        self.query_one("#process-summary", Static).update(summary)
        self.query_one("#process-table", ProcessTable).update_processes(snapshot)

    def _update_numa(self, snapshot: SystemSnapshot) -> None:
        # Node rows live in the table; keep the fault and pressure lines
        lines = [line.strip() for line in numa_section(snapshot) if not line.startswith("NUMA")]
        summary = "\n".join(lines) if lines else "NUMA sampling disabled (start with --numa)"
        if snapshot.numa_imbalanced:
            summary += f"  IMBALANCED ({format_value(snapshot.numa_imbalance, '.1f', '%')})"
        self.query_one("#numa-summary", Static).update(summary)
        self.query_one("#numa-table", NumaTable).update_nodes(snapshot)

    def action_show_view(self, view: str) -> None:
        """Switch the active tab."""
        self.query_one(TabbedContent).active = view

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.stop()
        self.exit()

    def on_unmount(self) -> None:
        self._monitor.stop()


def configure_logging(verbose: bool = False, log_file: Path | None = None) -> logging.Handler:
    """
    Send sysprobe's log records to stderr, or to a file while the dashboard owns the terminal.

    Handlers installed by an earlier call are replaced.

    Args:
        verbose: Log at DEBUG instead of WARNING.
        log_file: Write to this file instead of stderr.
    """
    fmt = logging.Formatter("%(asctime)s  %(levelname)-7s %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    if log_file is not None:
        handler: logging.Handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(fmt)
    root = logging.getLogger("sysprobe")
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    return handler


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="sysprobe",
        description="Storage-aware system monitor: CPU, interrupts, memory, block devices, "
        "NUMA, hardware counters and processes.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("-p", "--perf", action="store_true", help="sample hardware performance counters")
    p.add_argument("-n", "--numa", action="store_true", help="sample NUMA topology and reclaim activity")
    p.add_argument("-r", "--process", action="store_true", help="sample per-process resource usage")
    p.add_argument("-t", "--text", action="store_true", help="print a text report per tick instead of the dashboard")
    p.add_argument(
        "-i",
        "--interval",
        type=float,
        default=None,
        help="seconds between ticks (env SYSPROBE_INTERVAL, default 2.0)",
    )
    p.add_argument("--top", type=int, default=10, help="entries shown in ranked lists (default 10)")
    p.add_argument("-v", "--verbose", action="store_true", help="log debug messages")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> MonitorConfig:
    """Combine environment fallbacks with command line flags."""
    overrides = {
        "enable_perf": args.perf,
        "enable_numa": args.numa,
        "enable_process": args.process,
        "top_n": max(args.top, 1),
    }
    if args.interval is not None:
        overrides["poll_rate"] = args.interval
    return MonitorConfig.from_env(**overrides)


def run_text(monitor: SystemMonitor) -> int:
    """Print one report per tick until interrupted."""
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    try:
        monitor.run(lambda snapshot: print(render_text(snapshot), flush=True), stop_event=stop)
    except KeyboardInterrupt:
        stop.set()
    finally:
        monitor.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for the sysprobe command."""
    args = parse_args(argv)
    configure_logging(args.verbose, None if args.text else DEFAULT_LOG_FILE)
    try:
        config = build_config(args)
    except ValueError as exc:
        print(f"sysprobe: invalid configuration: {exc}", file=sys.stderr)
        return 2

    monitor = SystemMonitor(config=config)
    if not monitor.enabled_samplers:
        print("sysprobe: no sampler could be started", file=sys.stderr)
        for name, reason in monitor.disabled_samplers.items():
            print(f"  {name}: {reason}", file=sys.stderr)
        return 1

    if args.text:
        return run_text(monitor)
    SysprobeApp(monitor=monitor).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
