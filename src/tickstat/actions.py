"""Side-effecting process actions: kill and renice.

These are best-effort and report success as a bool. They never touch sampler
state; a process killed mid-tick is simply missing from the next reading.
"""

import logging
from enum import IntEnum

import psutil

logger = logging.getLogger(__name__)


class Priority(IntEnum):
    """Named scheduling priorities and the nice value each maps to."""

    REALTIME = -20
    HIGH = -10
    ABOVE_NORMAL = -5
    NORMAL = 0
    BELOW_NORMAL = 5
    LOW = 10


def resolve_priority(level: Priority | str | int) -> int:
    """
    Turn a priority into a nice value.

    Accepts a ``Priority``, its name in any case ("BelowNormal",
    "below_normal"), or a nice value in [-20, 19].

    Raises:
        ValueError: Unknown name or out-of-range nice value.
    """
    if isinstance(level, Priority):
        return int(level)
    if isinstance(level, str):
        key = level.replace("-", "_").upper()
        if key not in Priority.__members__:
            # "BelowNormal" style names
            key = "".join(f"_{c}" if c.isupper() and i else c for i, c in enumerate(level)).upper()
        try:
            return int(Priority[key])
        except KeyError:
            raise ValueError(f"unknown priority: {level!r}") from None
    if not -20 <= level <= 19:
        raise ValueError(f"nice value out of range: {level}")
    return int(level)


def kill_process(pid: int) -> bool:
    """Kill a process. Returns False if it is gone or not ours to kill."""
    try:
        psutil.Process(pid).kill()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
        logger.warning("Could not kill %d: %s", pid, e)
        return False
    logger.info("Killed process %d", pid)
    return True


def set_priority(pid: int, level: Priority | str | int) -> bool:
    """
    Renice a process.

    Returns:
        True if the new nice value was applied.

    Raises:
        ValueError: ``level`` does not name a priority.
    """
    nice = resolve_priority(level)
    try:
        psutil.Process(pid).nice(nice)
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
        logger.warning("Could not set priority of %d to %d: %s", pid, nice, e)
        return False
    logger.info("Set nice value of process %d to %d", pid, nice)
    return True
