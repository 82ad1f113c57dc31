"""Rate and percentage arithmetic over pairs of counter samples.

Every function here is pure: it takes the previous sample (or None), the
current absolute value and the current monotonic time, and returns a
``Rate``. The caller stores the current value as the next baseline no matter
which status came back; a regression therefore rebases the counter.
"""

from tickstat.models import CpuTicks, Rate, RateStatus, Sample


def clamp_percent(value: float) -> float:
    """Clamp a percentage into [0, 100]."""
    return min(100.0, max(0.0, value))


def _delta(prev: Sample | None, value: float, now: float) -> tuple[float, float] | Rate:
    """Return (delta, elapsed) or the zero Rate explaining why there is none."""
    if prev is None:
        return Rate(0.0, RateStatus.FIRST_SAMPLE)
    elapsed = now - prev.observed_at
    if elapsed <= 0:
        return Rate(0.0, RateStatus.CLOCK_ANOMALY)
    if value < prev.value:
        return Rate(0.0, RateStatus.COUNTER_REGRESSION)
    return value - prev.value, elapsed


def compute_rate(prev: Sample | None, value: float, now: float) -> Rate:
    """Change per second of a monotonically increasing counter."""
    result = _delta(prev, value, now)
    if isinstance(result, Rate):
        return result
    delta, elapsed = result
    return Rate(delta / elapsed)


def compute_percent(prev: Sample | None, value: float, now: float, capacity: float) -> Rate:
    """
    Change per second as a percentage of ``capacity`` units per second.

    Disk active time uses a capacity of 1000 (busy milliseconds per second);
    process CPU uses the number of logical CPUs (CPU seconds per second).
    """
    result = _delta(prev, value, now)
    if isinstance(result, Rate):
        return result
    delta, elapsed = result
    if capacity <= 0:
        return Rate(0.0)
    return Rate(clamp_percent(100.0 * delta / (elapsed * capacity)))


def cpu_busy_percent(prev: Sample | None, curr: CpuTicks, now: float) -> Rate:
    """Busy share of CPU time between two tick samples."""
    if prev is None:
        return Rate(0.0, RateStatus.FIRST_SAMPLE)
    if now - prev.observed_at <= 0:
        return Rate(0.0, RateStatus.CLOCK_ANOMALY)
    before: CpuTicks = prev.value
    if curr.total < before.total or curr.idle < before.idle:
        return Rate(0.0, RateStatus.COUNTER_REGRESSION)
    delta_total = curr.total - before.total
    if delta_total <= 0:
        return Rate(0.0)
    delta_idle = curr.idle - before.idle
    return Rate(clamp_percent(100.0 * (1.0 - delta_idle / delta_total)))


def average_response_ms(
    prev_time_ms: Sample | None,
    time_ms: float,
    prev_ops: Sample | None,
    ops: float,
) -> float:
    """Mean time per completed disk operation between two samples."""
    if prev_time_ms is None or prev_ops is None:
        return 0.0
    delta_time = time_ms - prev_time_ms.value
    delta_ops = ops - prev_ops.value
    if delta_time < 0 or delta_ops <= 0:
        return 0.0
    return delta_time / delta_ops
