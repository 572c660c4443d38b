"""Exception hierarchy for the remediation engine.

All engine exceptions inherit from MenderError. They are raised inside
components and converted into structured results at the public operation
boundary (probe report, supervisor result, monitor status, admin response),
so callers of those operations never see them.
"""

from __future__ import annotations


class MenderError(Exception):
    """Base exception for all remediation engine errors."""


class ConfigurationError(MenderError):
    """Raised when the engine configuration file cannot be read or validated."""


class UnknownMonitorError(MenderError):
    """Raised when a guardian operation names a monitor that is not registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown monitor: {name}")
        self.name = name


class IntervalTooShortError(MenderError):
    """Raised when a monitor interval below the safety floor is requested."""

    def __init__(self, requested: float, minimum: float) -> None:
        super().__init__(
            f"Interval {requested}s is below the minimum of {minimum}s"
        )
        self.requested = requested
        self.minimum = minimum


class InvalidIntervalError(MenderError, ValueError):
    """Raised when a monitor interval is not a finite, positive number of seconds."""

    def __init__(self, requested: float) -> None:
        super().__init__(f"Interval {requested}s is not a finite number of seconds")
        self.requested = requested


class MemoryPersistenceError(MenderError):
    """Raised when repair memory cannot be loaded from or flushed to disk."""


__all__ = [
    "ConfigurationError",
    "IntervalTooShortError",
    "InvalidIntervalError",
    "MemoryPersistenceError",
    "MenderError",
    "UnknownMonitorError",
]
