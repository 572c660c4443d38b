"""Pydantic models for learned repairs."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

# A stored fix is only offered above this success rate
TRUST_THRESHOLD = 0.5
# ...and is retired once it falls below this rate after enough sightings
DEPRECATION_RATE = 0.3
DEPRECATION_MIN_OCCURRENCES = 3


def utc_now() -> datetime:
    return datetime.now(UTC)


class FixDescriptor(BaseModel):
    """The corrective action remembered for a failure signature."""

    model_config = ConfigDict(frozen=True)

    name: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    category: str = "unknown"
    description: str = ""
    source: Literal["pattern", "memory", "probe"] = "pattern"


class RepairMemoryEntry(BaseModel):
    """Outcome statistics for one (failure signature, fix) association.

    Entries are replaced wholesale on every update, never mutated in place,
    so a reader always sees a consistent set of counters.
    """

    model_config = ConfigDict(frozen=True)

    signature: str
    fix: FixDescriptor
    occurrences: int = Field(default=0, ge=0)
    successes: int = Field(default=0, ge=0)
    failures: int = Field(default=0, ge=0)
    success_rate: float = Field(default=0.0, ge=0.0)
    deprecated: bool = False
    first_seen: datetime = Field(default_factory=utc_now)
    last_seen: datetime = Field(default_factory=utc_now)

    @property
    def trusted(self) -> bool:
        """Whether ``lookup`` would return this entry's fix."""
        return not self.deprecated and self.success_rate > TRUST_THRESHOLD

    @staticmethod
    def rate(successes: int, occurrences: int) -> float:
        return successes / occurrences if occurrences > 0 else 0.0

    @staticmethod
    def should_deprecate(success_rate: float, occurrences: int) -> bool:
        return occurrences > DEPRECATION_MIN_OCCURRENCES and success_rate < DEPRECATION_RATE


class MemorySnapshot(BaseModel):
    """On-disk layout of repair memory."""

    version: int = 1
    entries: dict[str, RepairMemoryEntry] = Field(default_factory=dict)


__all__ = [
    "DEPRECATION_MIN_OCCURRENCES",
    "DEPRECATION_RATE",
    "FixDescriptor",
    "MemorySnapshot",
    "RepairMemoryEntry",
    "TRUST_THRESHOLD",
]
