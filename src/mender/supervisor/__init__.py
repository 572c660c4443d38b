"""Build supervision: retry with automatic repair, escalation on exhaustion."""

from mender.supervisor.build import BuildSupervisor
from mender.supervisor.models import (
    AppliedFix,
    AttemptOutcome,
    BuildAttempt,
    Diagnostician,
    Escalation,
    EscalationReason,
    SupervisorResult,
    SupervisorState,
)

__all__ = [
    "AppliedFix",
    "AttemptOutcome",
    "BuildAttempt",
    "BuildSupervisor",
    "Diagnostician",
    "Escalation",
    "EscalationReason",
    "SupervisorResult",
    "SupervisorState",
]
