"""Per-entity counter baselines and fixed-size metric histories."""

import logging
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from tickstat.models import CounterKey, Rate, RateStatus, Sample
from tickstat.rates import compute_rate

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_CAPACITY = 60


class CounterStore:
    """
    Last observed sample per counter key.

    Owned by the sampler thread; there is no locking. Entries only go away
    through ``purge``, which the reconciler calls once per category per tick
    with the entities it still tracks, or ``drop`` for a single entity.
    """

    def __init__(self) -> None:
        self._samples: dict[CounterKey, Sample] = {}

    def __len__(self) -> int:
        return len(self._samples)

    def __contains__(self, key: object) -> bool:
        return key in self._samples

    def __iter__(self) -> Iterator[CounterKey]:
        return iter(list(self._samples))

    def get(self, key: CounterKey) -> Sample | None:
        """Return the stored sample for ``key``, if any."""
        return self._samples.get(key)

    def put(self, key: CounterKey, sample: Sample) -> None:
        """Replace the sample stored for ``key``."""
        self._samples[key] = sample

    def advance(
        self,
        key: CounterKey,
        value: Any,
        now: float,
        derive: Callable[[Sample | None, Any, float], Rate] = compute_rate,
    ) -> Rate:
        """
        Derive a rate from the stored baseline, then make ``value`` the baseline.

        Args:
            key: Counter to advance.
            value: Current absolute counter value.
            now: Current monotonic time in seconds.
            derive: Rate function taking (previous sample, value, now).

        Returns:
            The derived rate. Its status tells first samples and rebased
            counters apart from real zeros.
        """
        rate = derive(self._samples.get(key), value, now)
        if rate.status is RateStatus.COUNTER_REGRESSION:
            logger.debug("Counter %s went backwards, rebasing", key)
        self._samples[key] = Sample(value, now)
        return rate

    def entities(self, category: str) -> set[str]:
        """Entity identifiers with at least one stored counter in ``category``."""
        return {key.entity for key in self._samples if key.category == category}

    def purge(self, category: str, keep: Iterable[str]) -> list[CounterKey]:
        """
        Drop every counter of ``category`` whose entity is not in ``keep``.

        Returns:
            The removed keys.
        """
        survivors = set(keep)
        removed = [
            key
            for key in self._samples
            if key.category == category and key.entity not in survivors
        ]
        for key in removed:
            del self._samples[key]
        if removed:
            logger.debug("Purged %d %s counters", len(removed), category)
        return removed

    def drop(self, category: str, entity: str) -> list[CounterKey]:
        """Drop every counter of one entity."""
        removed = [
            key for key in self._samples if key.category == category and key.entity == entity
        ]
        for key in removed:
            del self._samples[key]
        return removed


class HistoryBuffer:
    """
    Fixed-capacity FIFO of floats, oldest first.

    Starts full of zeros so a graph has its full width from the first tick.
    """

    __slots__ = ("_values",)

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY, prefill: bool = True) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._values: deque[float] = deque([0.0] * capacity if prefill else (), maxlen=capacity)

    @property
    def capacity(self) -> int:
        """Maximum number of values kept."""
        return self._values.maxlen or 0

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[float]:
        return iter(self._values)

    def append(self, value: float) -> None:
        """Add the newest value, dropping the oldest once full."""
        self._values.append(float(value))

    @property
    def latest(self) -> float:
        """Most recent value (0.0 when empty)."""
        return self._values[-1] if self._values else 0.0

    def snapshot(self) -> tuple[float, ...]:
        """Immutable copy of the current contents."""
        return tuple(self._values)
