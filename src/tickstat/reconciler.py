"""
Entity reconciliation: merging each tick's readings into long-lived records.

A reconciler owns the tracked set for one category. Every tick it adds
entities that showed up, updates the ones that persist (appending to their
histories) and evicts the ones that are gone together with their stored
counters. Iteration order across entities is not part of the contract.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Generic, TypeVar

from tickstat.models import (
    CPU,
    DISK,
    NET,
    PROC,
    CounterKey,
    CpuSnapshot,
    DiskSnapshot,
    InterfaceSnapshot,
    ProcessSnapshot,
)
from tickstat.rates import average_response_ms, clamp_percent, compute_percent, cpu_busy_percent
from tickstat.readers import (
    CpuReading,
    DiskCounters,
    InterfaceCounters,
    ProcessCounters,
    classify_interface,
)
from tickstat.store import DEFAULT_HISTORY_CAPACITY, CounterStore, HistoryBuffer

logger = logging.getLogger(__name__)

R = TypeVar("R")  # Raw counters from a reader
S = TypeVar("S")  # Published snapshot record


@dataclass(slots=True)
class TrackedEntity(Generic[S]):
    """A tracked entity: its latest record and its accumulating histories."""

    entity_id: str
    record: S | None = None
    identity: Any = None
    histories: dict[str, HistoryBuffer] = field(default_factory=dict)


class EntityReconciler(ABC, Generic[R, S]):
    """
    Keeps the tracked set of one category in step with the reader output.

    Subclasses say how to identify an entity, which counters to advance and
    how to build the published record; the add/update/evict bookkeeping lives
    here.
    """

    category: str = ""
    history_names: tuple[str, ...] = ()

    def __init__(self, store: CounterStore, capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        self._store = store
        self._capacity = capacity
        self._tracked: dict[str, TrackedEntity[S]] = {}

    @property
    def tracked(self) -> Mapping[str, TrackedEntity[S]]:
        """Entities currently tracked, keyed by entity id."""
        return self._tracked

    def __len__(self) -> int:
        return len(self._tracked)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._tracked

    def records(self) -> tuple[S, ...]:
        """Latest record of every tracked entity."""
        return tuple(e.record for e in self._tracked.values() if e.record is not None)

    def key(self, entity_id: str, counter: str) -> CounterKey:
        """Counter key of one counter of one entity."""
        return CounterKey(self.category, entity_id, counter)

    @abstractmethod
    def entity_id(self, reading: R) -> str:
        """Stable identifier of the entity a reading belongs to."""

    def identity(self, reading: R) -> Any:
        """Extra identity that must match for history to carry over."""
        return None

    @abstractmethod
    def derive(self, entity_id: str, reading: R, now: float) -> dict[str, float]:
        """Advance the entity's counters and return its computed rates."""

    @abstractmethod
    def history_points(self, reading: R, rates: dict[str, float]) -> dict[str, float]:
        """Values to append to each history buffer this tick."""

    @abstractmethod
    def build(self, reading: R, rates: dict[str, float], entity: TrackedEntity[S]) -> S:
        """Assemble the immutable record published for this tick."""

    def _add(self, entity_id: str, identity: Any) -> TrackedEntity[S]:
        entity: TrackedEntity[S] = TrackedEntity(
            entity_id=entity_id,
            identity=identity,
            histories={name: HistoryBuffer(self._capacity) for name in self.history_names},
        )
        self._tracked[entity_id] = entity
        return entity

    def _evict(self, entity_id: str) -> None:
        del self._tracked[entity_id]
        self._store.drop(self.category, entity_id)
        logger.debug("Evicted %s:%s", self.category, entity_id)

    def reconcile(self, readings: Mapping[Any, R], now: float) -> tuple[S, ...]:
        """
        Merge one tick of readings into the tracked set.

        Args:
            readings: Reader output for this tick.
            now: Monotonic time the readings were taken at.

        Returns:
            The records of every entity present this tick.
        """
        current = {self.entity_id(reading): reading for reading in readings.values()}

        for entity_id in [eid for eid in self._tracked if eid not in current]:
            self._evict(entity_id)

        for entity_id, reading in current.items():
            identity = self.identity(reading)
            entity = self._tracked.get(entity_id)
            is_new = entity is None
            if entity is not None and entity.identity != identity:
                # Same identifier, different entity (e.g. a reused pid)
                self._evict(entity_id)
                is_new = True
            if is_new:
                entity = self._add(entity_id, identity)

            rates = self.derive(entity_id, reading, now)
            if not is_new:
                for name, value in self.history_points(reading, rates).items():
                    entity.histories[name].append(value)
            entity.record = self.build(reading, rates, entity)

        self._store.purge(self.category, current)
        return self.records()


class ProcessReconciler(EntityReconciler[ProcessCounters, ProcessSnapshot]):
    """Processes, keyed by pid and told apart by creation time."""

    category = PROC
    history_names = ("cpu",)

    def __init__(
        self,
        store: CounterStore,
        capacity: int = DEFAULT_HISTORY_CAPACITY,
        cpu_count: int = 1,
    ) -> None:
        super().__init__(store, capacity)
        self.cpu_count = cpu_count

    def entity_id(self, reading: ProcessCounters) -> str:
        return str(reading.pid)

    def identity(self, reading: ProcessCounters) -> Any:
        return reading.create_time

    def derive(self, entity_id: str, reading: ProcessCounters, now: float) -> dict[str, float]:
        cpu = self._store.advance(
            self.key(entity_id, "cpu_seconds"),
            reading.cpu_seconds,
            now,
            partial(compute_percent, capacity=max(1, self.cpu_count)),
        )
        io_read = self._store.advance(self.key(entity_id, "io_read"), reading.io_read_bytes, now)
        io_write = self._store.advance(self.key(entity_id, "io_write"), reading.io_write_bytes, now)
        return {"cpu": cpu.value, "io_read": io_read.value, "io_write": io_write.value}

    def history_points(self, reading: ProcessCounters, rates: dict[str, float]) -> dict[str, float]:
        return {"cpu": rates["cpu"]}

    def build(
        self,
        reading: ProcessCounters,
        rates: dict[str, float],
        entity: TrackedEntity[ProcessSnapshot],
    ) -> ProcessSnapshot:
        return ProcessSnapshot(
            pid=reading.pid,
            name=reading.name,
            username=reading.username,
            status=reading.status,
            threads=reading.threads,
            nice=reading.nice,
            command_line=reading.command_line,
            started_at=reading.started_at,
            memory_rss=reading.memory_rss,
            memory_percent=reading.memory_percent,
            cpu_seconds=reading.cpu_seconds,
            io_read_bytes=reading.io_read_bytes,
            io_write_bytes=reading.io_write_bytes,
            cpu_percent=rates["cpu"],
            io_read_rate=rates["io_read"],
            io_write_rate=rates["io_write"],
            cpu_history=entity.histories["cpu"].snapshot(),
        )


class DiskReconciler(EntityReconciler[DiskCounters, DiskSnapshot]):
    """Whole block devices, keyed by device name."""

    category = DISK
    history_names = ("active_time", "transfer_rate")

    def __init__(
        self,
        store: CounterStore,
        capacity: int = DEFAULT_HISTORY_CAPACITY,
        transfer_full_scale: float = 100_000_000,
    ) -> None:
        super().__init__(store, capacity)
        self.transfer_full_scale = transfer_full_scale
        self._display_names: dict[str, str] = {}

    def entity_id(self, reading: DiskCounters) -> str:
        return reading.name

    def derive(self, entity_id: str, reading: DiskCounters, now: float) -> dict[str, float]:
        io_time = reading.read_time_ms + reading.write_time_ms
        ops = reading.read_count + reading.write_count
        response = average_response_ms(
            self._store.get(self.key(entity_id, "io_time")),
            io_time,
            self._store.get(self.key(entity_id, "ops")),
            ops,
        )
        self._store.advance(self.key(entity_id, "io_time"), io_time, now)
        self._store.advance(self.key(entity_id, "ops"), ops, now)

        read = self._store.advance(self.key(entity_id, "read_bytes"), reading.read_bytes, now)
        write = self._store.advance(self.key(entity_id, "write_bytes"), reading.write_bytes, now)
        active = self._store.advance(
            self.key(entity_id, "busy_time"),
            reading.busy_time_ms,
            now,
            partial(compute_percent, capacity=1000.0),
        )
        return {
            "read": read.value,
            "write": write.value,
            "active_time": active.value,
            "response_ms": response,
        }

    def history_points(self, reading: DiskCounters, rates: dict[str, float]) -> dict[str, float]:
        transfer = 100.0 * (rates["read"] + rates["write"]) / self.transfer_full_scale
        return {
            "active_time": rates["active_time"],
            "transfer_rate": clamp_percent(transfer),
        }

    def build(
        self,
        reading: DiskCounters,
        rates: dict[str, float],
        entity: TrackedEntity[DiskSnapshot],
    ) -> DiskSnapshot:
        return DiskSnapshot(
            name=reading.name,
            display_name=self._display_name(reading.name),
            model=reading.model,
            kind=reading.kind,
            capacity=reading.capacity,
            used_space=reading.used_space,
            free_space=reading.free_space,
            is_system_disk=reading.is_system_disk,
            is_page_file=reading.is_page_file,
            total_bytes_read=reading.read_bytes,
            total_bytes_written=reading.write_bytes,
            read_rate=rates["read"],
            write_rate=rates["write"],
            active_time_percent=rates["active_time"],
            average_response_ms=rates["response_ms"],
            active_time_history=entity.histories["active_time"].snapshot(),
            transfer_rate_history=entity.histories["transfer_rate"].snapshot(),
        )

    def _display_name(self, name: str) -> str:
        # "Disk N" by order of first appearance, freed again on eviction
        if name not in self._display_names:
            used = set(self._display_names.values())
            index = 0
            while f"Disk {index}" in used:
                index += 1
            self._display_names[name] = f"Disk {index}"
        return self._display_names[name]

    def _evict(self, entity_id: str) -> None:
        super()._evict(entity_id)
        self._display_names.pop(entity_id, None)


_CONNECTION_ORDER = {"Ethernet": 0, "Wi-Fi": 1, "VPN": 2}


def interface_order(iface: InterfaceSnapshot) -> tuple[bool, int, str]:
    """Sort key: interfaces that are up first, then by connection type."""
    return (not iface.is_up, _CONNECTION_ORDER.get(iface.connection_type, 3), iface.name)


class InterfaceReconciler(EntityReconciler[InterfaceCounters, InterfaceSnapshot]):
    """Network interfaces, keyed by interface name."""

    category = NET
    history_names = ("throughput", "send", "receive")

    def __init__(
        self,
        store: CounterStore,
        capacity: int = DEFAULT_HISTORY_CAPACITY,
        default_link_speed: float = 125_000_000,
    ) -> None:
        super().__init__(store, capacity)
        self.default_link_speed = default_link_speed

    def entity_id(self, reading: InterfaceCounters) -> str:
        return reading.name

    def derive(self, entity_id: str, reading: InterfaceCounters, now: float) -> dict[str, float]:
        received = self._store.advance(self.key(entity_id, "rx"), reading.bytes_received, now)
        sent = self._store.advance(self.key(entity_id, "tx"), reading.bytes_sent, now)
        return {"receive": received.value, "send": sent.value}

    def history_points(
        self, reading: InterfaceCounters, rates: dict[str, float]
    ) -> dict[str, float]:
        full_scale = reading.link_speed or self.default_link_speed
        return {
            "throughput": clamp_percent(100.0 * (rates["send"] + rates["receive"]) / full_scale),
            "send": clamp_percent(100.0 * rates["send"] / full_scale),
            "receive": clamp_percent(100.0 * rates["receive"] / full_scale),
        }

    def build(
        self,
        reading: InterfaceCounters,
        rates: dict[str, float],
        entity: TrackedEntity[InterfaceSnapshot],
    ) -> InterfaceSnapshot:
        connection_type, display_name = classify_interface(reading.name)
        return InterfaceSnapshot(
            name=reading.name,
            display_name=display_name,
            connection_type=connection_type,
            adapter_name=f"{connection_type} Adapter",
            is_up=reading.is_up,
            link_speed=reading.link_speed,
            mac_address=reading.mac_address,
            ipv4_address=reading.ipv4_address,
            ipv6_address=reading.ipv6_address,
            total_bytes_received=reading.bytes_received,
            total_bytes_sent=reading.bytes_sent,
            receive_rate=rates["receive"],
            send_rate=rates["send"],
            throughput_history=entity.histories["throughput"].snapshot(),
            send_history=entity.histories["send"].snapshot(),
            receive_history=entity.histories["receive"].snapshot(),
        )

    def reconcile(
        self, readings: Mapping[Any, InterfaceCounters], now: float
    ) -> tuple[InterfaceSnapshot, ...]:
        return tuple(sorted(super().reconcile(readings, now), key=interface_order))


class CpuTracker:
    """Busy percentages of the whole machine and of each logical core."""

    category = CPU

    def __init__(self, store: CounterStore) -> None:
        self._store = store

    def update(self, reading: CpuReading, now: float) -> CpuSnapshot:
        """Advance the CPU counters and return this tick's figures."""
        usage = self._store.advance(
            CounterKey(CPU, "total"), reading.aggregate, now, cpu_busy_percent
        )
        cores = []
        for index, ticks in enumerate(reading.per_core):
            rate = self._store.advance(CounterKey(CPU, f"cpu{index}"), ticks, now, cpu_busy_percent)
            cores.append(rate.value)
        self._store.purge(
            CPU, ["total", *(f"cpu{index}" for index in range(len(reading.per_core)))]
        )
        return CpuSnapshot(
            usage_percent=usage.value,
            per_core_percent=tuple(cores),
            logical_cores=reading.logical_cores,
            physical_cores=reading.physical_cores,
            frequency_ghz=reading.frequency_ghz,
        )


class SystemHistory:
    """Machine-wide histories: CPU, memory, disk and network, in percent."""

    NAMES = ("cpu", "memory", "disk", "network")

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        self.buffers = {name: HistoryBuffer(capacity) for name in self.NAMES}

    def record(self, **values: float) -> None:
        """Append one point per named history; unnamed histories get 0."""
        unknown = set(values) - set(self.NAMES)
        if unknown:
            raise KeyError(f"unknown histories: {sorted(unknown)}")
        for name, buffer in self.buffers.items():
            buffer.append(clamp_percent(values.get(name, 0.0)))

    def snapshot(self, name: str) -> tuple[float, ...]:
        """Copy of one history."""
        return self.buffers[name].snapshot()
