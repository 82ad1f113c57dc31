"""Sampling engine for tickstat."""

import logging
import threading
import time
from collections.abc import Callable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any

import psutil

from tickstat import actions
from tickstat.actions import Priority
from tickstat.config import MIN_INTERVAL_MS, SamplerSettings
from tickstat.errors import AlreadyRunning, LoopFatal, SamplerStateError, TransientReadFailure
from tickstat.models import (
    CATEGORIES,
    CPU,
    DISK,
    EMPTY_CPU,
    EMPTY_MEMORY,
    MEMORY,
    NET,
    PROC,
    MetricSnapshot,
)
from tickstat.readers import Reader, default_readers
from tickstat.reconciler import (
    CpuTracker,
    DiskReconciler,
    InterfaceReconciler,
    ProcessReconciler,
    SystemHistory,
    interface_order,
)
from tickstat.store import CounterStore

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[MetricSnapshot], None]
ErrorCallback = Callable[[LoopFatal], None]


class SamplerState(Enum):
    """Lifecycle of a sampler. CANCELLED and FAILED are terminal."""

    IDLE = "idle"
    RUNNING = "running"  # Waiting for the next tick
    SAMPLING = "sampling"
    PUBLISHING = "publishing"
    CANCELLED = "cancelled"
    FAILED = "failed"


_ACTIVE = (SamplerState.RUNNING, SamplerState.SAMPLING, SamplerState.PUBLISHING)
_TERMINAL = (SamplerState.CANCELLED, SamplerState.FAILED)


def _boot_time() -> float:
    return psutil.boot_time()


class SystemSampler:
    """
    Periodic sampler turning host counters into snapshots of rates.

    Runs in a separate daemon thread. Each tick reads every category, merges
    the readings into the tracked entities and publishes one immutable
    ``MetricSnapshot`` to every subscriber. The counter store, the tracked
    entities and their histories belong to that thread alone.

    A reader that fails only costs its own category for that tick. The loop
    stops on its own only for ``LoopFatal``, which subscribers registered with
    ``on_error`` are told about.
    """

    def __init__(
        self,
        settings: SamplerSettings | None = None,
        readers: Mapping[str, Reader] | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        boot_time: Callable[[], float] = _boot_time,
    ) -> None:
        """
        Initialize the SystemSampler.

        Args:
            settings: Sampler configuration. Defaults to ``SamplerSettings()``.
            readers: Reader per category. Defaults to psutil-backed readers
                for the local host. Categories without a reader are skipped.
            clock: Monotonic clock used for rates and tick scheduling.
            wall_clock: Wall clock used for snapshot timestamps and uptime.
            boot_time: Host boot time as a wall-clock timestamp.
        """
        self._settings = settings or SamplerSettings()
        if readers is None:
            readers = default_readers(
                exclude_loopback=self._settings.exclude_loopback,
                read_topology=self._settings.read_memory_topology,
            )
        unknown = set(readers) - set(CATEGORIES)
        if unknown:
            raise ValueError(f"unknown categories: {sorted(unknown)}")
        self._readers = dict(readers)
        self._clock = clock
        self._wall_clock = wall_clock
        self._boot_time = boot_time

        capacity = self._settings.history_capacity
        self._store = CounterStore()
        self._cpu = CpuTracker(self._store)
        self._processes = ProcessReconciler(
            self._store, capacity, cpu_count=psutil.cpu_count() or 1
        )
        self._disks = DiskReconciler(
            self._store, capacity, transfer_full_scale=self._settings.disk_transfer_full_scale
        )
        self._interfaces = InterfaceReconciler(
            self._store, capacity, default_link_speed=self._settings.default_link_speed
        )
        self._history = SystemHistory(capacity)

        self._interval = self._settings.interval_ms / 1000.0
        self._tick = 0
        self._latest: MetricSnapshot | None = None
        self._fatal: LoopFatal | None = None

        self._subscribers: list[SnapshotCallback] = []
        self._error_subscribers: list[ErrorCallback] = []
        self._subscribers_lock = threading.Lock()

        self._state = SamplerState.IDLE
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> SamplerState:
        """Current lifecycle state."""
        return self._state

    @property
    def is_running(self) -> bool:
        """Check if the sampler thread is running."""
        return (
            self._state in _ACTIVE and self._thread is not None and self._thread.is_alive()
        )

    @property
    def interval_ms(self) -> int:
        """Get the current tick interval."""
        return round(self._interval * 1000)

    def set_interval_ms(self, value: int) -> None:
        """Set the tick interval; the next wait already uses it."""
        self._interval = max(MIN_INTERVAL_MS, int(value)) / 1000.0

    @property
    def store(self) -> CounterStore:
        """The counter store. Read it only while the sampler is not ticking."""
        return self._store

    @property
    def latest(self) -> MetricSnapshot | None:
        """Most recently published snapshot."""
        return self._latest

    @property
    def fatal_error(self) -> LoopFatal | None:
        """The error that stopped the loop, if any."""
        return self._fatal

    def tracked_ids(self, category: str) -> set[str]:
        """Entity ids currently tracked for a category."""
        reconciler = {PROC: self._processes, DISK: self._disks, NET: self._interfaces}[category]
        return set(reconciler.tracked)

    def on_snapshot(self, callback: SnapshotCallback) -> Callable[[], None]:
        """
        Call ``callback`` with every published snapshot, in tick order.

        The callback runs on the sampler thread and must not block; hand the
        snapshot to a ``LatestSnapshotChannel`` to consume it elsewhere.

        Returns:
            A function that removes the subscription.
        """
        with self._subscribers_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def on_error(self, callback: ErrorCallback) -> Callable[[], None]:
        """Call ``callback`` if the loop stops because of a LoopFatal."""
        with self._subscribers_lock:
            self._error_subscribers.append(callback)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if callback in self._error_subscribers:
                    self._error_subscribers.remove(callback)

        return unsubscribe

    def start(self) -> None:
        """
        Start the sampling thread.

        Raises:
            AlreadyRunning: The sampler is already running.
            SamplerStateError: The sampler was stopped or has failed.
        """
        with self._state_lock:
            if self._state in _ACTIVE:
                raise AlreadyRunning("sampler is already running")
            if self._state in _TERMINAL:
                raise SamplerStateError(f"sampler is {self._state.value}")
            self._state = SamplerState.RUNNING
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run,
                daemon=True,
                name="SystemSampler",
            )
            self._thread.start()
        logger.info("Sampler started, interval %d ms", self.interval_ms)

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the sampling thread.

        A tick in flight either finishes its merge or is abandoned before the
        merge starts. Stopping is terminal.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Sampler thread did not stop within %s s", timeout)
        self._thread = None
        with self._state_lock:
            if self._state is not SamplerState.FAILED:
                self._state = SamplerState.CANCELLED

    def _set_state(self, state: SamplerState) -> None:
        with self._state_lock:
            if self._state in _ACTIVE:
                self._state = state

    def _run(self) -> None:
        """Main loop running in the background thread."""
        while not self._stop_event.is_set():
            started = self._clock()
            self._set_state(SamplerState.SAMPLING)
            try:
                snapshot = self._run_tick()
            except LoopFatal as e:
                self._fail(e)
                return

            if snapshot is not None:
                self._set_state(SamplerState.PUBLISHING)
                self._publish(snapshot)
            self._set_state(SamplerState.RUNNING)

            # Measured from tick start so an overrun shortens the next wait
            elapsed = self._clock() - started
            self._stop_event.wait(timeout=max(0.0, self._interval - elapsed))

    def _fail(self, error: LoopFatal) -> None:
        logger.error("Sampler loop stopped: %s", error, exc_info=error)
        self._fatal = error
        with self._state_lock:
            self._state = SamplerState.FAILED
        with self._subscribers_lock:
            callbacks = list(self._error_subscribers)
        for callback in callbacks:
            try:
                callback(error)
            except Exception:
                logger.warning("Error subscriber %r raised", callback, exc_info=True)

    def _publish(self, snapshot: MetricSnapshot) -> None:
        with self._subscribers_lock:
            callbacks = list(self._subscribers)
        for callback in callbacks:
            try:
                callback(snapshot)
            except Exception:
                logger.warning("Snapshot subscriber %r raised", callback, exc_info=True)

    def sample_once(self) -> MetricSnapshot | None:
        """
        Run one tick without publishing it, outside the sampling thread.

        Returns:
            The snapshot, or None when a stop request arrived while reading.

        Raises:
            SamplerStateError: The sampling thread is running; it alone
                may touch the counters and tracked entities.
            LoopFatal: Internal state turned out inconsistent.
        """
        with self._state_lock:
            if self._state in _ACTIVE:
                raise SamplerStateError("sampler is running; ticks belong to its thread")
        return self._run_tick()

    def _run_tick(self) -> MetricSnapshot | None:
        now = self._clock()
        readings, failed = self._read_all()
        if self._stop_event.is_set():
            logger.debug("Stop requested, abandoning tick %d before merge", self._tick + 1)
            return None
        try:
            snapshot = self._merge(readings, failed, now)
            self._check_invariants()
        except LoopFatal:
            raise
        except Exception as e:
            raise LoopFatal(f"merge failed on tick {self._tick + 1}: {e!r}") from e
        self._tick = snapshot.tick
        self._latest = snapshot
        return snapshot

    def _read_all(self) -> tuple[dict[str, Any], frozenset[str]]:
        readings: dict[str, Any] = {}
        failed: set[str] = set()
        for category, reader in self._readers.items():
            try:
                readings[category] = reader.read()
            except TransientReadFailure as e:
                logger.warning("Skipping %s this tick: %s", category, e)
                failed.add(category)
            except Exception:
                logger.warning("Reader for %s raised", category, exc_info=True)
                failed.add(category)
        return readings, frozenset(failed)

    def _merge(
        self,
        readings: Mapping[str, Any],
        failed: frozenset[str],
        now: float,
    ) -> MetricSnapshot:
        previous = self._latest

        if CPU in readings:
            cpu = self._cpu.update(readings[CPU], now)
            self._processes.cpu_count = cpu.logical_cores or self._processes.cpu_count
        else:
            cpu = previous.cpu if previous else EMPTY_CPU

        if MEMORY in readings:
            memory = readings[MEMORY]
        else:
            memory = previous.memory if previous else EMPTY_MEMORY

        # A category that failed keeps last tick's entities and counters
        if PROC in readings:
            processes = self._processes.reconcile(readings[PROC], now)
        else:
            processes = self._processes.records()
        if DISK in readings:
            disks = self._disks.reconcile(readings[DISK], now)
        else:
            disks = self._disks.records()
        if NET in readings:
            interfaces = self._interfaces.reconcile(readings[NET], now)
        else:
            interfaces = tuple(sorted(self._interfaces.records(), key=interface_order))

        disk_read = sum(d.read_rate for d in disks)
        disk_write = sum(d.write_rate for d in disks)
        net_receive = sum(i.receive_rate for i in interfaces)
        net_send = sum(i.send_rate for i in interfaces)

        settings = self._settings
        self._history.record(
            cpu=cpu.usage_percent,
            memory=memory.usage_percent,
            disk=100.0 * (disk_read + disk_write) / settings.disk_transfer_full_scale,
            network=100.0 * (net_receive + net_send) / settings.network_full_scale,
        )

        wall = self._wall_clock()
        return MetricSnapshot(
            tick=self._tick + 1,
            taken_at=datetime.fromtimestamp(wall),
            cpu=cpu,
            memory=memory,
            disk_read_rate=disk_read,
            disk_write_rate=disk_write,
            network_receive_rate=net_receive,
            network_send_rate=net_send,
            uptime_seconds=self._uptime(wall),
            process_count=len(processes),
            thread_count=sum(p.threads for p in processes),
            processes=processes,
            disks=disks,
            interfaces=interfaces,
            cpu_history=self._history.snapshot("cpu"),
            memory_history=self._history.snapshot("memory"),
            disk_history=self._history.snapshot("disk"),
            network_history=self._history.snapshot("network"),
            failed_categories=failed,
        )

    def _uptime(self, wall: float) -> float:
        try:
            return max(0.0, wall - self._boot_time())
        except (OSError, RuntimeError):
            return 0.0

    def _check_invariants(self) -> None:
        for reconciler in (self._processes, self._disks, self._interfaces):
            stray = self._store.entities(reconciler.category) - set(reconciler.tracked)
            if stray:
                raise LoopFatal(
                    f"{reconciler.category} counters without a tracked entity: {sorted(stray)}"
                )

    def kill_entity(self, pid: int) -> bool:
        """Kill a process; the next tick sees it disappear."""
        return actions.kill_process(pid)

    def set_priority(self, pid: int, level: Priority | str | int) -> bool:
        """Renice a process."""
        return actions.set_priority(pid, level)
