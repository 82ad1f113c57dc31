"""Tests for process actions."""

import subprocess
import sys

import psutil
import pytest

from tickstat.actions import Priority, kill_process, resolve_priority, set_priority


@pytest.fixture
def sleeper():
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    yield proc
    if proc.poll() is None:
        proc.kill()
    proc.wait(timeout=5)


def _unused_pid() -> int:
    pid = 4_000_000
    while psutil.pid_exists(pid):
        pid += 1
    return pid


class TestResolvePriority:
    """Tests for resolve_priority."""

    def test_mapping(self):
        """Test named priorities map to their nice values."""
        assert [int(p) for p in Priority] == [-20, -10, -5, 0, 5, 10]

    @pytest.mark.parametrize(
        ("level", "nice"),
        [
            (Priority.HIGH, -10),
            ("BelowNormal", 5),
            ("below_normal", 5),
            ("below-normal", 5),
            ("AboveNormal", -5),
            ("realtime", -20),
            ("Low", 10),
            (7, 7),
            (-20, -20),
            (19, 19),
        ],
    )
    def test_resolves(self, level, nice):
        """Test names, enum members and raw nice values are accepted."""
        assert resolve_priority(level) == nice

    @pytest.mark.parametrize("level", ["Turbo", 20, -21])
    def test_rejects(self, level):
        """Test unknown names and out-of-range values are rejected."""
        with pytest.raises(ValueError):
            resolve_priority(level)


class TestProcessActions:
    """Tests for kill_process and set_priority against real processes."""

    def test_kill(self, sleeper):
        """Test killing a child process."""
        assert kill_process(sleeper.pid)
        assert sleeper.wait(timeout=5) != 0

    def test_kill_missing_process(self):
        """Test killing a pid that does not exist reports failure."""
        assert kill_process(_unused_pid()) is False

    def test_lower_priority(self, sleeper):
        """Test lowering the priority of a child process."""
        assert set_priority(sleeper.pid, Priority.LOW)
        assert psutil.Process(sleeper.pid).nice() == 10

    def test_priority_of_missing_process(self):
        """Test renicing a pid that does not exist reports failure."""
        assert set_priority(_unused_pid(), "Normal") is False

    def test_priority_invalid_level(self, sleeper):
        """Test an unknown priority raises before touching the process."""
        with pytest.raises(ValueError):
            set_priority(sleeper.pid, "Turbo")
