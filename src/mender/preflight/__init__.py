"""Pre-flight project health checks."""

from mender.preflight.checks import DEFAULT_CHECKS, Check, ProbeContext
from mender.preflight.models import (
    AutoFix,
    CheckResult,
    CheckSummary,
    Issue,
    ProbeReport,
    Severity,
)
from mender.preflight.prober import Prober

__all__ = [
    "AutoFix",
    "Check",
    "CheckResult",
    "CheckSummary",
    "DEFAULT_CHECKS",
    "Issue",
    "ProbeContext",
    "ProbeReport",
    "Prober",
    "Severity",
]
