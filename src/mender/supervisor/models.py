"""State and result types for supervised builds."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

# Characters of build output kept in results and audit records
MAX_ERROR_CHARS = 4000


class SupervisorState(str, Enum):
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    ESCALATED = "escalated"


class AttemptOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ESCALATED = "escalated"


class EscalationReason(str, Enum):
    UNRECOGNIZED = "unrecognized"
    NO_CANDIDATES = "no_candidates"
    RETRIES_EXHAUSTED = "retries_exhausted"
    DEADLINE = "deadline"
    INTERNAL_ERROR = "internal_error"


@dataclass
class AppliedFix:
    """A fix the supervisor ran between two build attempts."""

    attempt: int
    signature: str
    fix: str
    source: str
    """``memory`` for a learned fix, ``pattern`` for a library candidate."""

    command: str | None = None
    command_succeeded: bool = False
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "signature": self.signature,
            "fix": self.fix,
            "source": self.source,
            "command": self.command,
            "command_succeeded": self.command_succeeded,
            "description": self.description,
        }


@dataclass
class BuildAttempt:
    """Mutable state of one supervisor run."""

    attempt_number: int = 0
    state: SupervisorState = SupervisorState.RUNNING
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    last_error: str | None = None
    fixes_applied: list[AppliedFix] = field(default_factory=list)
    skipped_fixes: list[str] = field(default_factory=list)
    """Candidates passed over because they cannot run here."""


@dataclass
class Escalation:
    """Hand-off to a human once automated repair is exhausted."""

    reason: EscalationReason
    raw_error: str
    fixes_tried: list[str]
    skipped_fixes: list[str]
    diagnosis: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason.value,
            "raw_error": self.raw_error,
            "fixes_tried": self.fixes_tried,
            "skipped_fixes": self.skipped_fixes,
            "diagnosis": self.diagnosis,
        }


@dataclass
class SupervisorResult:
    success: bool
    state: SupervisorState
    attempts: int
    fixes_applied: list[AppliedFix] = field(default_factory=list)
    last_error: str | None = None
    escalation: Escalation | None = None
    duration_seconds: float = 0.0

    @classmethod
    def from_attempt(
        cls,
        attempt: BuildAttempt,
        escalation: Escalation | None = None,
        duration_seconds: float = 0.0,
    ) -> SupervisorResult:
        return cls(
            success=attempt.outcome is AttemptOutcome.SUCCESS,
            state=attempt.state,
            attempts=attempt.attempt_number,
            fixes_applied=list(attempt.fixes_applied),
            last_error=attempt.last_error,
            escalation=escalation,
            duration_seconds=duration_seconds,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "state": self.state.value,
            "attempts": self.attempts,
            "fixes_applied": [f.to_dict() for f in self.fixes_applied],
            "last_error": self.last_error,
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class Diagnostician(Protocol):
    """Secondary analysis consulted once a build escalates."""

    async def diagnose(self, error: str, fixes_tried: list[str]) -> str | None: ...


__all__ = [
    "AppliedFix",
    "AttemptOutcome",
    "BuildAttempt",
    "Diagnostician",
    "Escalation",
    "EscalationReason",
    "MAX_ERROR_CHARS",
    "SupervisorResult",
    "SupervisorState",
]
