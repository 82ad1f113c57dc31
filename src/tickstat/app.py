"""tickstat - Textual console viewer."""

import logging
from enum import Enum

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.widgets import DataTable, Footer, Static

from tickstat.channel import LatestSnapshotChannel
from tickstat.config import SamplerSettings, configure_logging
from tickstat.errors import LoopFatal
from tickstat.models import MetricSnapshot, ProcessSnapshot
from tickstat.sampler import SystemSampler

logger = logging.getLogger(__name__)


class SortKey(Enum):
    """Sort keys for the process table."""

    CPU = "cpu"
    MEM = "mem"
    PID = "pid"
    USER = "user"


def format_bytes(size: float) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{int(size):5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def _bar(percent: float, color: str) -> str:
    length = min(int(percent / 5), 20)
    return f"[{color}]█[/{color}]" * length + "[dim]░[/dim]" * (20 - length)


class HeaderStats(Static):
    """Header widget showing CPU, memory, disk and network statistics."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 5;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize HeaderStats."""
        super().__init__(*args, **kwargs)
        self._snapshot: MetricSnapshot | None = None

    @property
    def snapshot(self) -> MetricSnapshot | None:
        """Snapshot currently shown."""
        return self._snapshot

    def compose(self) -> ComposeResult:
        """Compose the header stats layout."""
        yield Horizontal(
            Static(self._get_cpu_info(), id="cpu-info"),
            Static(self._get_system_info(), id="mem-info"),
        )

    def update_stats(self, snapshot: MetricSnapshot) -> None:
        """Update the statistics from a snapshot."""
        self._snapshot = snapshot
        try:
            self.query_one("#cpu-info", Static).update(self._get_cpu_info())
            self.query_one("#mem-info", Static).update(self._get_system_info())
        except Exception:
            pass  # Widget not mounted yet

    def _get_cpu_info(self) -> str:
        """Get CPU info display."""
        if self._snapshot is None or not self._snapshot.cpu.per_core_percent:
            return "Loading CPU info..."
        total = self._snapshot.cpu.usage_percent
        lines = [f"CPU   \\[{_bar(total, 'green')}] {total:5.1f}%"]
        for i, usage in enumerate(self._snapshot.cpu.per_core_percent):
            lines.append(f"CPU{i:<2} \\[{_bar(usage, 'green')}] {usage:5.1f}%")
        return "\n".join(lines)

    def _get_system_info(self) -> str:
        """Get memory, I/O and uptime display."""
        snapshot = self._snapshot
        if snapshot is None or snapshot.memory.total == 0:
            return "Loading memory info..."
        mem = snapshot.memory
        swap_percent = 100.0 * mem.swap_used / mem.swap_total if mem.swap_total else 0.0

        uptime = int(snapshot.uptime_seconds)
        days, rest = divmod(uptime, 86400)
        hours, rest = divmod(rest, 3600)
        minutes, seconds = divmod(rest, 60)
        uptime_str = f"{hours:02d}:{minutes:02d}:{seconds:02d}"
        if days > 0:
            uptime_str = f"{days} days, {uptime_str}"

        return (
            f"Mem\\[{_bar(mem.usage_percent, 'cyan')}] "
            f"{mem.used / 1024**3:.1f}G/{mem.total / 1024**3:.1f}G\n"
            f"Swp\\[{_bar(swap_percent, 'yellow')}] "
            f"{mem.swap_used / 1024**3:.1f}G/{mem.swap_total / 1024**3:.1f}G\n"
            f"Disk: R {format_bytes(snapshot.disk_read_rate)}/s "
            f"W {format_bytes(snapshot.disk_write_rate)}/s\n"
            f"Net:  R {format_bytes(snapshot.network_receive_rate)}/s "
            f"S {format_bytes(snapshot.network_send_rate)}/s\n"
            f"Tasks: {snapshot.process_count}, {snapshot.thread_count} thr  "
            f"Uptime: {uptime_str}"
        )


class ProcessTable(Container):
    """Container for the process data table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize ProcessTable."""
        super().__init__(*args, **kwargs)
        self._current_pids: set[int] = set()
        self._sort_key: SortKey = SortKey.CPU
        self._sort_reverse: bool = True

    @property
    def sort_key(self) -> SortKey:
        """Get current sort key."""
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        self._sort_reverse = self._sort_key in (SortKey.CPU, SortKey.MEM)
        return self._sort_key

    def compose(self) -> ComposeResult:
        """Compose the process table."""
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"

        table.add_column("PID", key="pid", width=8)
        table.add_column("USER", key="user", width=10)
        table.add_column("NI", key="nice", width=4)
        table.add_column("CPU%", key="cpu", width=8)
        table.add_column("MEM%", key="mem", width=8)
        table.add_column("RES", key="rss", width=8)
        table.add_column("READ/s", key="io_read", width=9)
        table.add_column("WRITE/s", key="io_write", width=9)
        table.add_column("Command", key="command")

    def selected_pid(self) -> int | None:
        """Pid of the row under the cursor."""
        table = self.query_one("#process-table", DataTable)
        if table.row_count == 0:
            return None
        try:
            row_key, _ = table.coordinate_to_cell_key(table.cursor_coordinate)
        except Exception:
            return None
        return int(row_key.value) if row_key.value is not None else None

    def update_processes(self, processes: tuple[ProcessSnapshot, ...]) -> None:
        """
        Update the process table with new data.

        Rows are keyed by pid; existing rows are updated cell by cell.
        """
        table = self.query_one("#process-table", DataTable)
        sorted_processes = self._sort_processes(processes)
        new_pids = {proc.pid for proc in sorted_processes}

        for pid in self._current_pids - new_pids:
            try:
                table.remove_row(str(pid))
            except Exception:
                pass  # Row may not exist

        for proc in sorted_processes:
            cells = self._cells(proc)
            row_key = str(proc.pid)
            try:
                if proc.pid in self._current_pids:
                    for column, value in cells.items():
                        table.update_cell(row_key, column, value)
                else:
                    table.add_row(*cells.values(), key=row_key)
            except Exception:
                pass  # Row changed underneath us

        self._current_pids = new_pids

    def _sort_processes(self, processes: tuple[ProcessSnapshot, ...]) -> list[ProcessSnapshot]:
        """Sort processes based on the current sort key."""
        key_func = {
            SortKey.CPU: lambda p: p.cpu_percent,
            SortKey.MEM: lambda p: p.memory_percent,
            SortKey.PID: lambda p: p.pid,
            SortKey.USER: lambda p: p.username.lower(),
        }
        return sorted(processes, key=key_func[self._sort_key], reverse=self._sort_reverse)

    @staticmethod
    def _cells(proc: ProcessSnapshot) -> dict[str, str]:
        return {
            "pid": str(proc.pid),
            "user": proc.username[:10],
            "nice": str(proc.nice),
            "cpu": f"{proc.cpu_percent:5.1f}",
            "mem": f"{proc.memory_percent:5.1f}",
            "rss": format_bytes(proc.memory_rss),
            "io_read": format_bytes(proc.io_read_rate),
            "io_write": format_bytes(proc.io_write_rate),
            "command": proc.command_line[:50],
        }


class TickstatApp(App):
    """Main tickstat application."""

    TITLE = "tickstat"
    SUB_TITLE = "Live System Telemetry"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
        min-height: 6;
    }

    Horizontal {
        height: auto;
    }

    #cpu-info {
        width: 1fr;
        padding-right: 2;
    }

    #mem-info {
        width: 1fr;
        padding-left: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
        ("k", "kill", "Kill"),
    ]

    def __init__(
        self,
        settings: SamplerSettings | None = None,
        sampler: SystemSampler | None = None,
    ) -> None:
        """Initialize the TickstatApp."""
        super().__init__()
        self._channel: LatestSnapshotChannel[MetricSnapshot] = LatestSnapshotChannel()
        self._errors: LatestSnapshotChannel[LoopFatal] = LatestSnapshotChannel()
        self._sampler = sampler or SystemSampler(settings)
        self._sampler.on_snapshot(self._channel)
        self._sampler.on_error(self._errors)

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield HeaderStats(id="header-stats")
        yield ProcessTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the sampler when the app is mounted."""
        self._sampler.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Show the newest snapshot, if one arrived since the last check."""
        error = self._errors.poll()
        if error is not None:
            self.notify(f"Monitoring stopped: {error}", severity="error")
        snapshot = self._channel.poll()
        if snapshot is not None:
            self._update_ui(snapshot)

    def _update_ui(self, snapshot: MetricSnapshot) -> None:
        """Update the UI with the new snapshot."""
        try:
            self.query_one("#header-stats", HeaderStats).update_stats(snapshot)
            self.query_one(ProcessTable).update_processes(snapshot.processes)
        except Exception:
            logger.debug("UI update failed", exc_info=True)

    def action_sort(self) -> None:
        """Handle sort action - cycle through sort keys."""
        new_sort_key = self.query_one(ProcessTable).cycle_sort()
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    def action_kill(self) -> None:
        """Kill the process under the cursor."""
        pid = self.query_one(ProcessTable).selected_pid()
        if pid is None:
            return
        if self._sampler.kill_entity(pid):
            self.notify(f"Killed {pid}")
        else:
            self.notify(f"Could not kill {pid}", severity="warning")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._sampler.stop()
        self.exit()


def main() -> None:
    """Entry point for the tickstat viewer."""
    settings = SamplerSettings()
    handler = logging.FileHandler(settings.log_file) if settings.log_file else logging.NullHandler()
    configure_logging(settings.log_level, handler)
    TickstatApp(settings).run()


if __name__ == "__main__":
    main()
