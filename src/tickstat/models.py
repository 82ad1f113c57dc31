"""Data models for tickstat."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")

CPU = "cpu"
MEMORY = "memory"
DISK = "disk"
NET = "net"
PROC = "proc"

CATEGORIES = (CPU, MEMORY, DISK, NET, PROC)


@dataclass(slots=True, frozen=True)
class CounterKey:
    """Identity of one stored counter, e.g. ``disk:sda/read_bytes``."""

    category: str
    entity: str
    counter: str = ""

    def __str__(self) -> str:
        base = f"{self.category}:{self.entity}"
        return f"{base}/{self.counter}" if self.counter else base


@dataclass(slots=True, frozen=True)
class Sample(Generic[T]):
    """Last observed absolute value of a counter."""

    value: T
    observed_at: float  # Monotonic seconds


@dataclass(slots=True, frozen=True)
class CpuTicks:
    """Idle and total time of one CPU (or all of them), in seconds."""

    idle: float
    total: float


class RateStatus(Enum):
    """How a rate was derived."""

    OK = "ok"
    FIRST_SAMPLE = "first_sample"
    CLOCK_ANOMALY = "clock_anomaly"
    COUNTER_REGRESSION = "counter_regression"


@dataclass(slots=True, frozen=True)
class Rate:
    """A rate or percentage derived from two samples."""

    value: float
    status: RateStatus = RateStatus.OK

    @property
    def meaningful(self) -> bool:
        """False when the value is a placeholder zero."""
        return self.status is RateStatus.OK


@dataclass(slots=True, frozen=True)
class ProcessSnapshot:
    """Immutable snapshot of a process state."""

    pid: int
    name: str
    username: str
    status: str
    threads: int
    nice: int
    command_line: str
    started_at: datetime | None
    memory_rss: int  # Bytes
    memory_percent: float
    cpu_seconds: float  # Cumulative user + system
    io_read_bytes: int
    io_write_bytes: int
    cpu_percent: float  # 0.0 - 100.0 of the whole machine
    io_read_rate: float  # Bytes/s
    io_write_rate: float
    cpu_history: tuple[float, ...] = ()


@dataclass(slots=True, frozen=True)
class DiskSnapshot:
    """Immutable snapshot of a whole block device."""

    name: str
    display_name: str
    model: str
    kind: str  # 'HDD', 'SSD', 'SSD (NVMe)' or 'Unknown'
    capacity: int
    used_space: int
    free_space: int
    is_system_disk: bool
    is_page_file: bool
    total_bytes_read: int
    total_bytes_written: int
    read_rate: float  # Bytes/s
    write_rate: float
    active_time_percent: float
    average_response_ms: float
    active_time_history: tuple[float, ...] = ()
    transfer_rate_history: tuple[float, ...] = ()


@dataclass(slots=True, frozen=True)
class InterfaceSnapshot:
    """Immutable snapshot of a network interface."""

    name: str
    display_name: str
    connection_type: str
    adapter_name: str
    is_up: bool
    link_speed: int  # Bytes/s, 0 when unknown
    mac_address: str
    ipv4_address: str
    ipv6_address: str
    total_bytes_received: int
    total_bytes_sent: int
    receive_rate: float  # Bytes/s
    send_rate: float
    throughput_history: tuple[float, ...] = ()
    send_history: tuple[float, ...] = ()
    receive_history: tuple[float, ...] = ()


@dataclass(slots=True, frozen=True)
class MemoryTopology:
    """Installed memory modules, as far as the host tells us."""

    slots_total: int | None = None
    slots_used: int | None = None
    speed_mhz: int | None = None
    form_factor: str = "Unknown"


UNKNOWN_TOPOLOGY = MemoryTopology()


@dataclass(slots=True, frozen=True)
class CpuSnapshot:
    """System-wide CPU figures for one tick."""

    usage_percent: float
    per_core_percent: tuple[float, ...]
    logical_cores: int
    physical_cores: int | None
    frequency_ghz: float | None


@dataclass(slots=True, frozen=True)
class MemorySnapshot:
    """Memory figures for one tick, all in bytes."""

    total: int
    available: int
    used: int
    usage_percent: float
    cached: int = 0
    committed: int = 0
    commit_limit: int = 0
    slab: int = 0
    page_tables: int = 0
    kernel_stack: int = 0
    swap_total: int = 0
    swap_used: int = 0
    topology: MemoryTopology = UNKNOWN_TOPOLOGY


EMPTY_CPU = CpuSnapshot(0.0, (), 0, None, None)
EMPTY_MEMORY = MemorySnapshot(0, 0, 0, 0.0)


@dataclass(slots=True, frozen=True)
class MetricSnapshot:
    """Everything one tick produced, handed to subscribers as-is."""

    tick: int
    taken_at: datetime
    cpu: CpuSnapshot
    memory: MemorySnapshot
    disk_read_rate: float
    disk_write_rate: float
    network_receive_rate: float
    network_send_rate: float
    uptime_seconds: float
    process_count: int
    thread_count: int
    processes: tuple[ProcessSnapshot, ...]
    disks: tuple[DiskSnapshot, ...]
    interfaces: tuple[InterfaceSnapshot, ...]
    cpu_history: tuple[float, ...] = ()
    memory_history: tuple[float, ...] = ()
    disk_history: tuple[float, ...] = ()
    network_history: tuple[float, ...] = ()
    failed_categories: frozenset[str] = field(default_factory=frozenset)

    def process(self, pid: int) -> ProcessSnapshot | None:
        """Look up a process by pid."""
        for proc in self.processes:
            if proc.pid == pid:
                return proc
        return None
