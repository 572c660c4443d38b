"""Result types for pre-flight checks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

# Unresolved issues listed per check in a report
MAX_REPORTED_ISSUES = 5


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AutoFix:
    """An executable fix a check proposes for one of its issues."""

    name: str
    """Key into the executable fix catalog."""

    signature: str
    """Failure signature the outcome is recorded under in repair memory."""

    cwd: Path
    groups: tuple[str | None, ...] = ()


@dataclass
class Issue:
    """One problem found by a check."""

    severity: Severity
    message: str
    file: str | None = None
    fix: AutoFix | None = None
    auto_fixed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "message": self.message,
            "file": self.file,
            "fix": self.fix.name if self.fix else None,
            "auto_fixed": self.auto_fixed,
        }


@dataclass
class CheckResult:
    """Everything one check found."""

    issues: list[Issue] = field(default_factory=list)
    error: str | None = None
    """Set when the check itself failed; such a result carries no issues."""

    def add(
        self,
        severity: Severity,
        message: str,
        file: str | Path | None = None,
        fix: AutoFix | None = None,
    ) -> Issue:
        issue = Issue(severity, message, str(file) if file is not None else None, fix)
        self.issues.append(issue)
        return issue

    @property
    def auto_fixable(self) -> list[AutoFix]:
        """Distinct fixes proposed by this check's issues, in discovery order."""
        seen: list[AutoFix] = []
        for issue in self.issues:
            if issue.fix is not None and issue.fix not in seen:
                seen.append(issue.fix)
        return seen

    @property
    def unresolved(self) -> list[Issue]:
        return [i for i in self.issues if not i.auto_fixed]

    @classmethod
    def failed(cls, error: str) -> CheckResult:
        return cls(error=error)


@dataclass
class CheckSummary:
    """Per-check section of a ProbeReport."""

    name: str
    description: str
    issues: int
    fixed: int
    unresolved: int
    details: list[Issue] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def from_result(cls, name: str, description: str, result: CheckResult) -> CheckSummary:
        unresolved = result.unresolved
        return cls(
            name=name,
            description=description,
            issues=len(result.issues),
            fixed=len(result.issues) - len(unresolved),
            unresolved=len(unresolved),
            details=unresolved[:MAX_REPORTED_ISSUES],
            error=result.error,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "issues": self.issues,
            "fixed": self.fixed,
            "unresolved": self.unresolved,
            "details": [i.to_dict() for i in self.details],
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class ProbeReport:
    """Aggregated outcome of one pre-flight run."""

    project_root: str
    checks: list[CheckSummary] = field(default_factory=list)
    total_issues: int = 0
    auto_fixed: int = 0
    blocked: bool = False
    """True iff at least one critical issue is still unresolved."""

    duration_seconds: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    error: str | None = None

    @property
    def critical_issues(self) -> list[Issue]:
        return [
            issue
            for check in self.checks
            for issue in check.details
            if issue.severity is Severity.CRITICAL
        ]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "project_root": self.project_root,
            "timestamp": self.timestamp.isoformat(),
            "checks": [c.to_dict() for c in self.checks],
            "total_issues": self.total_issues,
            "auto_fixed": self.auto_fixed,
            "blocked": self.blocked,
            "duration_seconds": round(self.duration_seconds, 3),
        }
        if self.error is not None:
            data["error"] = self.error
        return data


__all__ = [
    "AutoFix",
    "CheckResult",
    "CheckSummary",
    "Issue",
    "MAX_REPORTED_ISSUES",
    "ProbeReport",
    "Severity",
]
