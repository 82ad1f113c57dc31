"""Latest-wins hand-off of snapshots to a consumer on another thread."""

import threading
from queue import Empty, Full, Queue
from typing import Generic, TypeVar

T = TypeVar("T")


class LatestSnapshotChannel(Generic[T]):
    """
    Single-slot channel: putting a value replaces any value not yet taken.

    A consumer slower than the sampler misses intermediate snapshots instead
    of building up a backlog. Instances are callable so they can be passed
    straight to ``SystemSampler.on_snapshot``.
    """

    def __init__(self) -> None:
        self._queue: Queue[T] = Queue(maxsize=1)
        self._lock = threading.Lock()
        self._dropped = 0

    @property
    def dropped(self) -> int:
        """How many values were replaced before anyone took them."""
        return self._dropped

    def put(self, item: T) -> None:
        """Offer a value, discarding the pending one if there is one."""
        with self._lock:
            try:
                self._queue.get_nowait()
                self._dropped += 1
            except Empty:
                pass
            try:
                self._queue.put_nowait(item)
            except Full:  # pragma: no cover - only this lock's holder puts
                pass

    __call__ = put

    def get(self, timeout: float | None = None) -> T:
        """
        Take the pending value, waiting up to ``timeout`` seconds.

        Raises:
            queue.Empty: Nothing arrived in time.
        """
        return self._queue.get(timeout=timeout)

    def poll(self) -> T | None:
        """Take the pending value if there is one, without waiting."""
        try:
            return self._queue.get_nowait()
        except Empty:
            return None
