"""Tests for the tickstat console viewer."""

from datetime import datetime

import pytest

from fakes import fake_readers, proc
from tickstat.app import HeaderStats, ProcessTable, SortKey, TickstatApp, format_bytes
from tickstat.config import SamplerSettings
from tickstat.models import EMPTY_MEMORY, PROC, CpuSnapshot, MetricSnapshot, ProcessSnapshot
from tickstat.sampler import SamplerState, SystemSampler


@pytest.fixture
def readers():
    return fake_readers()


@pytest.fixture
def app(readers):
    settings = SamplerSettings(interval_ms=100, read_memory_topology=False)
    app = TickstatApp(sampler=SystemSampler(settings, readers=readers))
    yield app
    app._sampler.stop()


def _process(pid: int, cpu: float = 0.0, username: str = "user") -> ProcessSnapshot:
    return ProcessSnapshot(
        pid=pid,
        name=f"test{pid}",
        username=username,
        status="running",
        threads=1,
        nice=0,
        command_line=f"/bin/test{pid}",
        started_at=None,
        memory_rss=1024000,
        memory_percent=5.0,
        cpu_seconds=1.0,
        io_read_bytes=0,
        io_write_bytes=0,
        cpu_percent=cpu,
        io_read_rate=0.0,
        io_write_rate=0.0,
    )


def test_format_bytes_bytes():
    """Test format_bytes with byte values."""
    assert "B" in format_bytes(500)


def test_format_bytes_kilobytes():
    """Test format_bytes with kilobyte values."""
    assert "K" in format_bytes(2048)


def test_format_bytes_megabytes():
    """Test format_bytes with megabyte values."""
    assert "M" in format_bytes(5242880)


def test_format_bytes_gigabytes():
    """Test format_bytes with gigabyte values."""
    assert "G" in format_bytes(1073741824)


def test_format_bytes_fractional_rate():
    """Test format_bytes accepts fractional rates."""
    assert format_bytes(12.7).strip() == "12B"


class TestSortKey:
    """Tests for SortKey enum."""

    def test_sort_key_values(self):
        """Test SortKey enum has expected values."""
        assert SortKey.CPU.value == "cpu"
        assert SortKey.MEM.value == "mem"
        assert SortKey.PID.value == "pid"
        assert SortKey.USER.value == "user"

    def test_sort_key_members(self):
        """Test SortKey enum has all expected members."""
        assert list(SortKey) == [SortKey.CPU, SortKey.MEM, SortKey.PID, SortKey.USER]


@pytest.mark.asyncio
async def test_app_creation(app):
    """Test TickstatApp can be instantiated."""
    assert app.title == "tickstat"
    assert app.sub_title == "Live System Telemetry"
    assert app._sampler.state is SamplerState.IDLE


@pytest.mark.asyncio
async def test_app_compose(app):
    """Test TickstatApp composes correctly and starts sampling."""
    async with app.run_test() as pilot:
        assert pilot.app.query_one("#header-stats") is not None
        assert pilot.app.query_one("#process-table") is not None
        assert app._sampler.is_running


@pytest.mark.asyncio
async def test_app_quit_binding(app):
    """Test that 'q' stops the sampler."""
    async with app.run_test() as pilot:
        await pilot.press("q")
        assert app._sampler.state is SamplerState.CANCELLED


@pytest.mark.asyncio
async def test_app_sort_binding(app):
    """Test that F6 binding cycles sort key."""
    async with app.run_test() as pilot:
        process_table = pilot.app.query_one(ProcessTable)
        initial_sort = process_table.sort_key

        await pilot.press("f6")

        assert process_table.sort_key != initial_sort


@pytest.mark.asyncio
async def test_process_table_cycle_sort(app):
    """Test ProcessTable sort key cycling."""
    async with app.run_test() as pilot:
        process_table = pilot.app.query_one(ProcessTable)

        assert process_table.sort_key == SortKey.CPU
        assert process_table.cycle_sort() == SortKey.MEM
        assert process_table.cycle_sort() == SortKey.PID
        assert process_table.cycle_sort() == SortKey.USER
        assert process_table.cycle_sort() == SortKey.CPU


@pytest.mark.asyncio
async def test_process_table_update_and_remove(app, readers):
    """Test ProcessTable tracks rows by pid and drops vanished ones."""
    readers[PROC].value = {}
    async with app.run_test() as pilot:
        process_table = pilot.app.query_one(ProcessTable)
        process_table.update_processes((_process(100, 10.0), _process(200, 20.0)))
        assert process_table._current_pids == {100, 200}

        process_table.update_processes((_process(200, 25.0),))
        assert process_table._current_pids == {200}


@pytest.mark.asyncio
async def test_app_receives_updates_from_sampler(app, readers):
    """Test that published snapshots reach the header and the process table."""
    readers[PROC].value = {1: proc(1), 2: proc(2)}
    async with app.run_test() as pilot:
        await pilot.pause(1.5)

        process_table = pilot.app.query_one(ProcessTable)
        assert process_table._current_pids == {1, 2}
        header = pilot.app.query_one("#header-stats", HeaderStats)
        assert header.snapshot is not None
        assert header.snapshot.process_count == 2


@pytest.mark.asyncio
async def test_header_stats_update(app):
    """Test that header stats can be updated."""
    async with app.run_test() as pilot:
        header = pilot.app.query_one("#header-stats", HeaderStats)
        snapshot = MetricSnapshot(
            tick=1,
            taken_at=datetime.now(),
            cpu=CpuSnapshot(15.0, (10.0, 20.0), 2, 2, None),
            memory=EMPTY_MEMORY,
            disk_read_rate=0.0,
            disk_write_rate=0.0,
            network_receive_rate=0.0,
            network_send_rate=0.0,
            uptime_seconds=3600.0,
            process_count=0,
            thread_count=0,
            processes=(),
            disks=(),
            interfaces=(),
        )

        header.update_stats(snapshot)

        assert header.snapshot is snapshot
        assert "CPU1" in header._get_cpu_info()


@pytest.mark.asyncio
async def test_kill_binding_targets_selected_row(app, readers):
    """Test that 'k' asks the sampler to kill the process under the cursor."""
    readers[PROC].value = {4242: proc(4242)}
    killed = []

    def fake_kill(pid):
        killed.append(pid)
        return True

    app._sampler.kill_entity = fake_kill
    async with app.run_test() as pilot:
        await pilot.pause(1.5)
        await pilot.press("k")
        assert killed == [4242]


@pytest.mark.asyncio
async def test_sampler_failure_keeps_app_alive(app, readers):
    """Test a sampler that stops with an error does not take the viewer down."""
    readers[PROC].value = "not a process table"
    async with app.run_test() as pilot:
        await pilot.pause(1.0)
        assert app._sampler.state is SamplerState.FAILED
        assert pilot.app.query_one(ProcessTable) is not None
