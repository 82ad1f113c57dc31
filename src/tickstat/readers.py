"""
Raw readers: absolute counter values for one category, read "right now".

Each reader returns plain counter records and never computes rates. A reader
either returns a complete result for its category or raises
``TransientReadFailure``; per-entity problems (a process exiting while it is
being read, a disk without a model file) only drop or default that entity.
"""

import logging
import os
import re
import shutil
import socket
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import psutil

from tickstat.errors import MalformedCounterData, TransientReadFailure
from tickstat.models import (
    CPU,
    DISK,
    MEMORY,
    NET,
    PROC,
    UNKNOWN_TOPOLOGY,
    CpuTicks,
    MemorySnapshot,
    MemoryTopology,
)

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512

# Fields of psutil.cpu_times() that add up to wall time on Linux. guest and
# guest_nice are already counted in user and nice.
_CPU_TIME_FIELDS = ("user", "nice", "system", "idle", "iowait", "irq", "softirq", "steal")
_CPU_IDLE_FIELDS = ("idle", "iowait")

_MEMINFO_FIELDS = {
    "Cached": "cached",
    "Committed_AS": "committed",
    "CommitLimit": "commit_limit",
    "Slab": "slab",
    "PageTables": "page_tables",
    "KernelStack": "kernel_stack",
}

_WHOLE_DISK = re.compile(
    r"^(?:(?:sd|vd|hd|xvd)[a-z]+|nvme\d+n\d+|mmcblk\d+)$",
)
_PARTITION = re.compile(
    r"^((?:sd|vd|hd|xvd)[a-z]+|nvme\d+n\d+|mmcblk\d+)(?:p?\d+)?$",
)


@dataclass(slots=True, frozen=True)
class CpuReading:
    """CPU tick counters for the whole machine and every logical core."""

    aggregate: CpuTicks
    per_core: tuple[CpuTicks, ...]
    logical_cores: int
    physical_cores: int | None
    frequency_ghz: float | None


@dataclass(slots=True, frozen=True)
class DiskCounters:
    """Cumulative I/O counters and metadata of one whole block device."""

    name: str
    read_bytes: int
    write_bytes: int
    read_count: int
    write_count: int
    read_time_ms: int
    write_time_ms: int
    busy_time_ms: int
    model: str = ""
    kind: str = "Unknown"
    capacity: int = 0
    used_space: int = 0
    free_space: int = 0
    is_system_disk: bool = False
    is_page_file: bool = False


@dataclass(slots=True, frozen=True)
class InterfaceCounters:
    """Cumulative octet counters and link state of one network interface."""

    name: str
    bytes_received: int
    bytes_sent: int
    is_up: bool = False
    link_speed: int = 0  # Bytes/s
    mac_address: str = ""
    ipv4_address: str = ""
    ipv6_address: str = ""


@dataclass(slots=True, frozen=True)
class ProcessCounters:
    """Cumulative counters and descriptive fields of one process."""

    pid: int
    name: str
    username: str
    status: str
    threads: int
    nice: int
    command_line: str
    create_time: float | None
    memory_rss: int
    memory_percent: float
    cpu_seconds: float
    io_read_bytes: int
    io_write_bytes: int

    @property
    def started_at(self) -> datetime | None:
        """Process start as a local datetime."""
        return datetime.fromtimestamp(self.create_time) if self.create_time else None


class Reader(ABC):
    """Reads the current absolute counters for one category."""

    category: str = ""

    @abstractmethod
    def read(self) -> Any:
        """
        Read the category.

        Raises:
            TransientReadFailure: The category is unreadable this tick.
        """


def cpu_ticks(times: Any) -> CpuTicks:
    """Fold a psutil scputimes tuple into idle and total seconds."""
    try:
        total = sum(getattr(times, name, 0.0) for name in _CPU_TIME_FIELDS)
        idle = sum(getattr(times, name, 0.0) for name in _CPU_IDLE_FIELDS)
    except TypeError as e:
        raise MalformedCounterData(CPU, f"non-numeric cpu times: {times!r}") from e
    return CpuTicks(idle=idle, total=total)


class CpuReader(Reader):
    """Aggregate and per-core CPU time counters."""

    category = CPU

    def read(self) -> CpuReading:
        try:
            aggregate = cpu_ticks(psutil.cpu_times())
            per_core = tuple(cpu_ticks(t) for t in psutil.cpu_times(percpu=True))
        except OSError as e:
            raise TransientReadFailure(CPU, str(e)) from e

        frequency = None
        try:
            freq = psutil.cpu_freq()
            if freq is not None and freq.current:
                frequency = freq.current / 1000.0
        except (OSError, NotImplementedError, AttributeError):
            pass  # Not every platform exposes a frequency

        return CpuReading(
            aggregate=aggregate,
            per_core=per_core,
            logical_cores=psutil.cpu_count() or len(per_core) or 1,
            physical_cores=psutil.cpu_count(logical=False),
            frequency_ghz=frequency,
        )


def parse_meminfo(text: str) -> dict[str, int]:
    """Parse /proc/meminfo into bytes per field name."""
    values: dict[str, int] = {}
    for line in text.splitlines():
        key, sep, rest = line.partition(":")
        if not sep:
            continue
        parts = rest.split()
        if not parts:
            continue
        try:
            number = int(parts[0])
        except ValueError:
            continue
        if len(parts) > 1 and parts[1].lower() == "kb":
            number *= 1024
        values[key.strip()] = number
    return values


def parse_dmidecode(text: str) -> MemoryTopology:
    """
    Summarise ``dmidecode -t memory`` output.

    Every "Memory Device" block is a slot; a slot is used when its size is
    neither "No Module Installed" nor "Unknown". The speed is the highest
    one reported in MHz or MT/s, the form factor the first known one.
    """
    slots_total = 0
    slots_used = 0
    max_speed = 0
    form_factor: str | None = None
    in_device = False

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            in_device = False
            continue
        if line.lower().startswith("memory device"):
            slots_total += 1
            in_device = True
            continue
        if not in_device:
            continue

        key, _, value = line.partition(":")
        key = key.strip().lower()
        value = value.strip()
        if key == "size":
            if not value.lower().startswith(("no module installed", "unknown")):
                slots_used += 1
        elif key in ("speed", "configured clock speed", "configured memory speed"):
            match = re.match(r"^(\d+)\s*(mhz|mt/s)$", value, re.IGNORECASE)
            if match:
                max_speed = max(max_speed, int(match.group(1)))
        elif key == "form factor":
            if value and value.lower() != "unknown" and form_factor is None:
                form_factor = value

    if slots_total == 0:
        return UNKNOWN_TOPOLOGY
    return MemoryTopology(
        slots_total=slots_total,
        slots_used=slots_used,
        speed_mhz=max_speed or None,
        form_factor=form_factor or "Unknown",
    )


def read_memory_topology(timeout: float = 2.0) -> MemoryTopology:
    """Ask dmidecode about memory modules; unknown if that is not possible."""
    executable = shutil.which("dmidecode")
    if executable is None:
        return UNKNOWN_TOPOLOGY
    try:
        result = subprocess.run(
            [executable, "-t", "memory"],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("dmidecode failed: %s", e)
        return UNKNOWN_TOPOLOGY
    if result.returncode != 0:
        logger.debug("dmidecode exited with %d", result.returncode)
        return UNKNOWN_TOPOLOGY
    return parse_dmidecode(result.stdout)


class MemoryReader(Reader):
    """
    Memory counters. These are absolute, so no rate is derived from them.

    Module topology comes from an external tool that may be missing or slow;
    it is fetched once on a background thread and reads as unknown until then.
    """

    category = MEMORY

    def __init__(
        self,
        read_topology: bool = True,
        meminfo_path: Path = Path("/proc/meminfo"),
    ) -> None:
        self._read_topology = read_topology
        self._meminfo_path = meminfo_path
        self._topology: MemoryTopology = UNKNOWN_TOPOLOGY
        self._topology_thread: threading.Thread | None = None

    def _fetch_topology(self) -> None:
        self._topology = read_memory_topology()

    def _ensure_topology(self) -> None:
        if not self._read_topology or self._topology_thread is not None:
            return
        self._topology_thread = threading.Thread(
            target=self._fetch_topology,
            daemon=True,
            name="MemoryTopology",
        )
        self._topology_thread.start()

    def _kernel_fields(self) -> dict[str, int]:
        try:
            meminfo = parse_meminfo(self._meminfo_path.read_text())
        except OSError:
            return {}
        return {
            attr: meminfo[field]
            for field, attr in _MEMINFO_FIELDS.items()
            if field in meminfo
        }

    def read(self) -> MemorySnapshot:
        self._ensure_topology()
        try:
            mem = psutil.virtual_memory()
            swap = psutil.swap_memory()
        except OSError as e:
            raise TransientReadFailure(MEMORY, str(e)) from e
        if not mem.total:
            raise MalformedCounterData(MEMORY, "total memory is zero")

        used = mem.total - mem.available
        extra = self._kernel_fields()
        extra.setdefault("cached", getattr(mem, "cached", 0))

        return MemorySnapshot(
            total=mem.total,
            available=mem.available,
            used=used,
            usage_percent=100.0 * used / mem.total,
            swap_total=swap.total,
            swap_used=swap.used,
            topology=self._topology,
            **extra,
        )


def is_whole_disk(name: str) -> bool:
    """True for whole block devices (sda, vdb, nvme0n1), false for partitions."""
    return bool(_WHOLE_DISK.match(name))


def parent_disk(device: str) -> str:
    """Whole-disk name of a device path: /dev/sda1 -> sda, /dev/nvme0n1p2 -> nvme0n1."""
    name = os.path.basename(device)
    match = _PARTITION.match(name)
    return match.group(1) if match else name


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text().strip()
    except OSError:
        return None


class DiskReader(Reader):
    """Per-device I/O counters of whole disks, plus best-effort metadata."""

    category = DISK

    def __init__(
        self,
        sys_block: Path = Path("/sys/block"),
        swaps_path: Path = Path("/proc/swaps"),
    ) -> None:
        self._sys_block = sys_block
        self._swaps_path = swaps_path

    def _kind(self, name: str) -> str:
        rotational = _read_text(self._sys_block / name / "queue" / "rotational")
        if rotational is None:
            return "Unknown"
        if name.startswith("nvme"):
            return "SSD (NVMe)"
        return "SSD" if rotational == "0" else "HDD"

    def _capacity(self, name: str) -> int:
        sectors = _read_text(self._sys_block / name / "size")
        try:
            return int(sectors) * SECTOR_SIZE if sectors else 0
        except ValueError:
            return 0

    def _swap_devices(self) -> list[str]:
        text = _read_text(self._swaps_path)
        if not text:
            return []
        return [line.split()[0] for line in text.splitlines()[1:] if line.split()]

    def _mounts(self) -> list[Any]:
        try:
            return psutil.disk_partitions(all=False)
        except OSError as e:
            logger.debug("Could not list partitions: %s", e)
            return []

    def _space(self, name: str, mounts: list[Any]) -> tuple[int, int, bool]:
        used = free = 0
        is_system = False
        counted: set[str] = set()
        for part in mounts:
            if parent_disk(part.device) != name:
                continue
            if part.mountpoint == "/":
                is_system = True
            # Bind mounts list the same partition again
            if part.device in counted:
                continue
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except OSError:
                continue
            counted.add(part.device)
            used += usage.used
            free += usage.free
        return used, free, is_system

    def read(self) -> dict[str, DiskCounters]:
        try:
            counters = psutil.disk_io_counters(perdisk=True, nowrap=False)
        except (OSError, RuntimeError) as e:
            raise TransientReadFailure(DISK, str(e)) from e
        if counters is None:
            raise TransientReadFailure(DISK, "no disk statistics available")

        mounts = self._mounts()
        swap_disks = {parent_disk(device) for device in self._swap_devices()}
        disks: dict[str, DiskCounters] = {}
        for name, io in counters.items():
            if not is_whole_disk(name):
                continue
            used, free, is_system = self._space(name, mounts)
            disks[name] = DiskCounters(
                name=name,
                read_bytes=io.read_bytes,
                write_bytes=io.write_bytes,
                read_count=io.read_count,
                write_count=io.write_count,
                read_time_ms=io.read_time,
                write_time_ms=io.write_time,
                busy_time_ms=getattr(io, "busy_time", 0),
                model=_read_text(self._sys_block / name / "device" / "model") or name.upper(),
                kind=self._kind(name),
                capacity=self._capacity(name),
                used_space=used,
                free_space=free,
                is_system_disk=is_system,
                is_page_file=name in swap_disks,
            )
        return disks


def classify_interface(name: str) -> tuple[str, str]:
    """Connection type and display name guessed from an interface name."""
    if name.startswith("wl") or "wifi" in name:
        return "Wi-Fi", "Wi-Fi"
    if name.startswith(("eth", "en", "em")):
        return "Ethernet", "Ethernet"
    if name.startswith(("docker", "br-", "veth")):
        return "Virtual", "Docker Network"
    if name.startswith(("virbr", "vnet")):
        return "Virtual", "Virtual Bridge"
    if name.startswith(("tun", "tap")):
        return "VPN", "VPN"
    return "Unknown", name


def _addresses(entries: list[Any]) -> tuple[str, str, str]:
    ipv4 = ipv6 = mac = ""
    for addr in entries:
        if addr.family == socket.AF_INET and not ipv4:
            ipv4 = addr.address
        elif addr.family == socket.AF_INET6 and not ipv6:
            ipv6 = addr.address.split("%")[0]
        elif addr.family == psutil.AF_LINK and not mac:
            mac = addr.address.upper()
    return ipv4, ipv6, mac


class NetworkReader(Reader):
    """Per-interface octet counters and link state."""

    category = NET

    def __init__(self, exclude_loopback: bool = True) -> None:
        self._exclude_loopback = exclude_loopback

    @staticmethod
    def _is_loopback(name: str, stats: Any) -> bool:
        if name == "lo":
            return True
        flags = getattr(stats, "flags", "") if stats is not None else ""
        return "loopback" in flags.split(",")

    def read(self) -> dict[str, InterfaceCounters]:
        try:
            counters = psutil.net_io_counters(pernic=True, nowrap=False)
        except OSError as e:
            raise TransientReadFailure(NET, str(e)) from e
        try:
            stats = psutil.net_if_stats()
        except OSError as e:
            logger.debug("Could not read interface stats: %s", e)
            stats = {}
        try:
            addrs = psutil.net_if_addrs()
        except OSError as e:
            logger.debug("Could not read interface addresses: %s", e)
            addrs = {}

        interfaces: dict[str, InterfaceCounters] = {}
        for name, io in counters.items():
            nic = stats.get(name)
            if self._exclude_loopback and self._is_loopback(name, nic):
                continue
            ipv4, ipv6, mac = _addresses(addrs.get(name, []))
            speed_mbps = nic.speed if nic is not None and nic.speed > 0 else 0
            interfaces[name] = InterfaceCounters(
                name=name,
                bytes_received=io.bytes_recv,
                bytes_sent=io.bytes_sent,
                is_up=bool(nic.isup) if nic is not None else False,
                link_speed=speed_mbps * 1_000_000 // 8,
                mac_address=mac,
                ipv4_address=ipv4,
                ipv6_address=ipv6,
            )
        return interfaces


_PROCESS_ATTRS = [
    "pid",
    "name",
    "username",
    "status",
    "num_threads",
    "nice",
    "cmdline",
    "create_time",
    "memory_info",
    "memory_percent",
    "cpu_times",
    "io_counters",
]


def process_counters(info: dict[str, Any]) -> ProcessCounters:
    """Build a ProcessCounters record from a ``Process.info`` dict."""
    cmdline = info.get("cmdline") or []
    name = info.get("name") or ""
    mem_info = info.get("memory_info")
    cpu_times = info.get("cpu_times")
    io = info.get("io_counters")
    return ProcessCounters(
        pid=info["pid"],
        name=name,
        username=info.get("username") or "",
        status=info.get("status") or "?",
        threads=info.get("num_threads") or 0,
        nice=info.get("nice") or 0,
        command_line=" ".join(cmdline) if cmdline else name,
        create_time=info.get("create_time"),
        memory_rss=mem_info.rss if mem_info else 0,
        memory_percent=info.get("memory_percent") or 0.0,
        cpu_seconds=(cpu_times.user + cpu_times.system) if cpu_times else 0.0,
        io_read_bytes=io.read_bytes if io else 0,
        io_write_bytes=io.write_bytes if io else 0,
    )


class ProcessReader(Reader):
    """
    Every running process with its CPU, memory and I/O counters.

    Processes come and go while the listing is walked; one that exits or
    refuses access simply does not appear in this tick's result.
    """

    category = PROC

    def read(self) -> dict[int, ProcessCounters]:
        processes: dict[int, ProcessCounters] = {}
        try:
            iterator = psutil.process_iter(attrs=_PROCESS_ATTRS, ad_value=None)
            for proc in iterator:
                try:
                    counters = process_counters(proc.info)
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                    continue
                except (KeyError, TypeError, AttributeError) as e:
                    logger.debug("Skipping malformed process %s: %s", proc.pid, e)
                    continue
                processes[counters.pid] = counters
        except OSError as e:
            raise TransientReadFailure(PROC, str(e)) from e
        return processes


def default_readers(
    exclude_loopback: bool = True,
    read_topology: bool = True,
) -> dict[str, Reader]:
    """One reader per category, reading the local host through psutil."""
    return {
        CPU: CpuReader(),
        MEMORY: MemoryReader(read_topology=read_topology),
        DISK: DiskReader(),
        NET: NetworkReader(exclude_loopback=exclude_loopback),
        PROC: ProcessReader(),
    }
