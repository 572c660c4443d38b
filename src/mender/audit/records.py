"""Audit record type and the collaborator protocols that receive records."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol


class Phase(str, Enum):
    """Lifecycle phase an audit record belongs to."""

    PRE_BUILD = "pre_build"
    MID_BUILD = "mid_build"
    POST_BUILD = "post_build"
    DEPLOY = "deploy"


@dataclass(frozen=True)
class AuditRecord:
    """One append-only entry in the remediation audit trail."""

    phase: Phase
    action: str
    """Snake_case action name, e.g. ``new_fix_applied`` or ``escalated``."""

    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"repair_{uuid.uuid4().hex[:20]}")
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "phase": self.phase.value,
            "action": self.action,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditSink(Protocol):
    """Durable destination for audit records.

    ``append`` is fire-and-forget; the trail logs and discards any exception
    it raises.
    """

    def append(self, record: AuditRecord) -> None: ...


class Broadcaster(Protocol):
    """Notifies external subscribers of remediation events."""

    def publish(self, event_name: str, payload: dict[str, Any]) -> None: ...


__all__ = ["AuditRecord", "AuditSink", "Broadcaster", "Phase"]
