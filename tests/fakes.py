"""Fake readers, clocks and counter records for deterministic tests."""

from collections.abc import Callable
from typing import Any

from tickstat.models import CPU, DISK, MEMORY, NET, PROC, CpuTicks, MemorySnapshot
from tickstat.readers import (
    SECTOR_SIZE,
    CpuReading,
    DiskCounters,
    InterfaceCounters,
    ProcessCounters,
    Reader,
)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeReader(Reader):
    """Returns whatever ``value`` holds, or raises ``error`` if set."""

    def __init__(self, category: str, value: Any = None) -> None:
        self.category = category
        self.value = value
        self.error: BaseException | None = None
        self.on_read: Callable[[], None] | None = None
        self.calls = 0

    def read(self) -> Any:
        self.calls += 1
        if self.on_read is not None:
            self.on_read()
        if self.error is not None:
            raise self.error
        return self.value


def cpu_reading(idle: float, total: float, cores: int = 2) -> CpuReading:
    """CPU reading with every core at the same share of the aggregate."""
    core = CpuTicks(idle=idle / cores, total=total / cores)
    return CpuReading(
        aggregate=CpuTicks(idle=idle, total=total),
        per_core=(core,) * cores,
        logical_cores=cores,
        physical_cores=cores,
        frequency_ghz=None,
    )


def memory(total: int = 8 * 1024**3, available: int = 6 * 1024**3) -> MemorySnapshot:
    used = total - available
    return MemorySnapshot(
        total=total,
        available=available,
        used=used,
        usage_percent=100.0 * used / total,
    )


def disk(
    name: str,
    read_sectors: int = 0,
    write_sectors: int = 0,
    busy_ms: int = 0,
    reads: int = 0,
    writes: int = 0,
    read_ms: int = 0,
    write_ms: int = 0,
) -> DiskCounters:
    return DiskCounters(
        name=name,
        read_bytes=read_sectors * SECTOR_SIZE,
        write_bytes=write_sectors * SECTOR_SIZE,
        read_count=reads,
        write_count=writes,
        read_time_ms=read_ms,
        write_time_ms=write_ms,
        busy_time_ms=busy_ms,
        model=name.upper(),
        kind="SSD",
    )


def nic(name: str, rx: int = 0, tx: int = 0, is_up: bool = True, link_speed: int = 0):
    return InterfaceCounters(
        name=name,
        bytes_received=rx,
        bytes_sent=tx,
        is_up=is_up,
        link_speed=link_speed,
    )


def proc(
    pid: int,
    cpu_seconds: float = 0.0,
    io_read: int = 0,
    io_write: int = 0,
    create_time: float = 1_700_000_000.0,
    threads: int = 1,
) -> ProcessCounters:
    return ProcessCounters(
        pid=pid,
        name=f"proc{pid}",
        username="tester",
        status="sleeping",
        threads=threads,
        nice=0,
        command_line=f"/bin/proc{pid}",
        create_time=create_time,
        memory_rss=4096,
        memory_percent=0.1,
        cpu_seconds=cpu_seconds,
        io_read_bytes=io_read,
        io_write_bytes=io_write,
    )


def fake_readers() -> dict[str, FakeReader]:
    """One fake reader per category, holding an idle, single-entity host."""
    return {
        CPU: FakeReader(CPU, cpu_reading(idle=100.0, total=1000.0)),
        MEMORY: FakeReader(MEMORY, memory()),
        DISK: FakeReader(DISK, {"sda": disk("sda")}),
        NET: FakeReader(NET, {"eth0": nic("eth0")}),
        PROC: FakeReader(PROC, {1: proc(1)}),
    }
