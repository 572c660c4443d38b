"""Monitor registration and status types."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

MonitorResult = dict[str, Any]
"""Opaque check payload; always carries a boolean ``healthy`` key."""


@dataclass(frozen=True)
class RepairAction:
    """One thing a repair did (or declined to do), recorded in the audit trail."""

    action: str
    details: dict[str, Any] = field(default_factory=dict)


CheckFn = Callable[[], Awaitable[MonitorResult]]
RepairFn = Callable[[MonitorResult], Awaitable[list[RepairAction]]]


@dataclass
class Monitor:
    """A named, independently scheduled health check with an optional repair."""

    name: str
    interval_seconds: float
    check: CheckFn
    repair: RepairFn | None = None
    description: str = ""


@dataclass
class MonitorStatus:
    """Live state of one registered monitor."""

    name: str
    interval_seconds: float
    last_checked: datetime | None = None
    last_result: MonitorResult | None = None
    checks: int = 0
    repairs: int = 0
    errors: int = 0

    @property
    def healthy(self) -> bool | None:
        """None until the first check has run."""
        if self.last_result is None:
            return None
        return bool(self.last_result.get("healthy", False))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
            "last_result": self.last_result,
            "healthy": self.healthy,
            "checks": self.checks,
            "repairs": self.repairs,
            "errors": self.errors,
        }


__all__ = ["CheckFn", "Monitor", "MonitorResult", "MonitorStatus", "RepairAction", "RepairFn"]
