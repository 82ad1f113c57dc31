"""Verification Test: Leak Test - state stays bounded under entity churn.

- Run many ticks in which processes, disks and interfaces come and go
- The counter store and the tracked sets never grow past what is present
"""

import random

from fakes import FakeClock, disk, fake_readers, nic, proc
from tickstat.config import SamplerSettings
from tickstat.models import DISK, NET, PROC
from tickstat.sampler import SystemSampler

# Counters stored per entity: cpu_seconds/io_read/io_write, rx/tx and
# io_time/ops/read_bytes/write_bytes/busy_time
PROC_COUNTERS = 3
NET_COUNTERS = 2
DISK_COUNTERS = 5


def _churn_sampler(seed: int = 7):
    rng = random.Random(seed)
    clock = FakeClock()
    readers = fake_readers()
    sampler = SystemSampler(
        SamplerSettings(history_capacity=8, read_memory_topology=False),
        readers=readers,
        clock=clock,
        wall_clock=lambda: 1_000.0,
        boot_time=lambda: 0.0,
    )

    def tick(index: int):
        pids = rng.sample(range(1, 10_000), rng.randint(0, 40))
        readers[PROC].value = {
            pid: proc(pid, cpu_seconds=index * 0.1, create_time=float(pid % 3)) for pid in pids
        }
        names = [f"sd{c}" for c in "abcdef" if rng.random() < 0.5]
        readers[DISK].value = {name: disk(name, read_sectors=index) for name in names}
        nics = [name for name in ("eth0", "wlan0", "tun0", "docker0") if rng.random() < 0.5]
        readers[NET].value = {name: nic(name, rx=index * 100) for name in nics}
        clock.advance(1.0)
        return sampler.sample_once()

    return sampler, tick


class TestLeak:
    """Leak test verification suite tests."""

    def test_store_bounded_by_present_entities(self):
        """Test the store holds exactly the counters of entities present this tick."""
        sampler, tick = _churn_sampler()

        for index in range(300):
            snapshot = tick(index)
            store = sampler.store

            assert store.entities(PROC) == {str(p.pid) for p in snapshot.processes}
            assert store.entities(DISK) == {d.name for d in snapshot.disks}
            assert store.entities(NET) == {i.name for i in snapshot.interfaces}

            expected = (
                PROC_COUNTERS * len(snapshot.processes)
                + DISK_COUNTERS * len(snapshot.disks)
                + NET_COUNTERS * len(snapshot.interfaces)
                + 1
                + len(snapshot.cpu.per_core_percent)
            )
            assert len(store) == expected

    def test_histories_never_exceed_capacity(self):
        """Test every published history stays at its configured capacity."""
        sampler, tick = _churn_sampler(seed=11)

        for index in range(100):
            snapshot = tick(index)
            assert len(snapshot.cpu_history) == 8
            assert len(snapshot.network_history) == 8
            for process in snapshot.processes:
                assert len(process.cpu_history) == 8
            for device in snapshot.disks:
                assert len(device.active_time_history) == 8
                assert len(device.transfer_rate_history) == 8
            for iface in snapshot.interfaces:
                assert len(iface.throughput_history) == 8

    def test_emptied_categories_leave_nothing(self):
        """Test that once everything disappears no per-entity state is left."""
        sampler, tick = _churn_sampler(seed=3)
        for index in range(50):
            tick(index)

        readers = sampler._readers
        readers[PROC].value = {}
        readers[DISK].value = {}
        readers[NET].value = {}
        snapshot = sampler.sample_once()

        assert snapshot.processes == ()
        assert sampler.tracked_ids(PROC) == set()
        assert sampler.tracked_ids(DISK) == set()
        assert sampler.tracked_ids(NET) == set()
        assert sampler.store.entities(PROC) == set()
        assert sampler.store.entities(DISK) == set()
        assert sampler.store.entities(NET) == set()
