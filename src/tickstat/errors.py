"""Exceptions raised inside tickstat."""


class TelemetryError(Exception):
    """Base class for tickstat errors."""


class TransientReadFailure(TelemetryError):
    """A category could not be read this tick."""

    def __init__(self, category: str, reason: str) -> None:
        super().__init__(f"{category}: {reason}")
        self.category = category
        self.reason = reason


class MalformedCounterData(TransientReadFailure):
    """Host data did not have the expected shape."""


class SamplerStateError(TelemetryError):
    """The sampler was asked to do something its state does not allow."""


class AlreadyRunning(SamplerStateError):
    """start() was called on a running sampler."""


class LoopFatal(TelemetryError):
    """Internal state is corrupted; the sampler loop has stopped."""
