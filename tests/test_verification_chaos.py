"""Verification Test: Chaos Monkey - processes dying while they are sampled.

- Randomly terminate dummy processes while the sampler is running
- The loop keeps publishing, and dead pids leave no counters behind
"""

import multiprocessing
import random
import time
from queue import Empty

import pytest

from tickstat.channel import LatestSnapshotChannel
from tickstat.config import SamplerSettings
from tickstat.models import PROC
from tickstat.sampler import SystemSampler


def dummy_worker(duration: float = 60.0) -> None:
    """A dummy worker process that sleeps for a given duration."""
    try:
        time.sleep(duration)
    except (KeyboardInterrupt, SystemExit):
        pass


def _sampler(interval_ms: int) -> SystemSampler:
    return SystemSampler(SamplerSettings(interval_ms=interval_ms, read_memory_topology=False))


class TestChaosMonkey:
    """Chaos Monkey verification suite tests."""

    def test_sampler_survives_process_termination(self):
        """
        Test that the sampler doesn't stop when processes die mid-tick.

        Terminated processes must disappear from the published records and
        from the counter store.
        """
        processes = []
        for _ in range(30):
            p = multiprocessing.Process(target=dummy_worker, args=(60.0,))
            p.start()
            processes.append(p)

        channel = LatestSnapshotChannel()
        sampler = _sampler(200)
        sampler.on_snapshot(channel)

        try:
            sampler.start()
            snapshot = channel.get(timeout=10.0)
            assert snapshot is not None

            victims = random.sample(processes, 15)
            for p in victims:
                p.terminate()
                time.sleep(0.02)
            for p in victims:
                p.join(timeout=2.0)

            snapshots_after_chaos = 0
            deadline = time.monotonic() + 5.0
            while time.monotonic() < deadline:
                try:
                    snapshot = channel.get(timeout=1.0)
                except Empty:
                    continue
                snapshots_after_chaos += 1

            assert snapshots_after_chaos >= 3, (
                f"Expected at least 3 snapshots after chaos, got {snapshots_after_chaos}"
            )
            assert sampler.is_running, "Sampler should still be running after chaos"

            published = {proc.pid for proc in snapshot.processes}
            for p in victims:
                assert p.pid not in published
        finally:
            sampler.stop()
            for p in processes:
                if p.is_alive():
                    p.terminate()
            for p in processes:
                p.join(timeout=1.0)

        stored = sampler.store.entities(PROC)
        assert stored == sampler.tracked_ids(PROC)
        for p in victims:
            assert str(p.pid) not in stored

    def test_rapid_process_creation_and_termination(self):
        """Test sampler stability during rapid process churn."""
        sampler = _sampler(100)
        channel = LatestSnapshotChannel()
        sampler.on_snapshot(channel)
        processes = []

        try:
            sampler.start()
            deadline = time.monotonic() + 3.0
            while time.monotonic() < deadline:
                p = multiprocessing.Process(target=dummy_worker, args=(0.2,))
                p.start()
                processes.append(p)
                if len(processes) > 5:
                    old = processes.pop(0)
                    if old.is_alive():
                        old.terminate()
                    old.join(timeout=1.0)
                time.sleep(0.05)

            assert sampler.is_running
            assert sampler.fatal_error is None
            channel.get(timeout=5.0)
        except Empty:
            pytest.fail("Sampler stopped publishing during process churn")
        finally:
            sampler.stop()
            for p in processes:
                if p.is_alive():
                    p.terminate()
                p.join(timeout=1.0)
