"""Data types for failure classification.

A FailurePattern pairs a regex with a category and its candidate fixes.
Fix descriptions are templates over the regex's captured groups
(``"Kill process on port {1}"``), so the whole pattern table is plain data.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

_PLACEHOLDER = re.compile(r"\{(\d+)\}")


class FailureCategory(str, Enum):
    """Broad family a failure belongs to."""

    TYPESCRIPT = "typescript"
    IMPORT = "import"
    MODULE = "module"
    REFERENCE = "reference"
    LINT = "lint"
    ESLINT = "eslint"
    REACT = "react"
    NEXTJS = "nextjs"
    TAILWIND = "tailwind"
    CSS = "css"
    BUNDLER = "bundler"
    DEPENDENCY = "dependency"
    NATIVE = "native"
    RUNTIME = "runtime"
    RESOURCE = "resource"
    NETWORK = "network"
    CONTAINER = "container"
    DATABASE = "database"
    AUTH = "auth"
    TLS = "tls"
    PROXY = "proxy"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class FixCandidate:
    """A named corrective action offered for a failure pattern."""

    name: str
    """Fix identifier; also the key into the executable fix catalog."""

    confidence: float
    """Prior belief in [0, 1] that this fix resolves the failure."""

    template: str
    """Description with ``{1}``, ``{2}``... placeholders for captured groups."""

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence for {self.name} must be in [0, 1], got {self.confidence}")

    def describe(self, groups: Sequence[str | None] = ()) -> str:
        """Render the description; missing or unmatched groups render as ``unknown``."""

        def _sub(m: re.Match[str]) -> str:
            index = int(m.group(1)) - 1
            if 0 <= index < len(groups) and groups[index] is not None:
                return str(groups[index])
            return "unknown"

        return _PLACEHOLDER.sub(_sub, self.template)


@dataclass(frozen=True)
class FailurePattern:
    """An immutable matcher in the pattern library."""

    id: str
    matcher: re.Pattern[str]
    category: FailureCategory
    candidate_fixes: tuple[FixCandidate, ...]

    @classmethod
    def build(
        cls,
        id: str,  # noqa: A002
        regex: str,
        category: FailureCategory,
        fixes: Iterable[tuple[str, float, str]],
        *,
        ignore_case: bool = False,
    ) -> FailurePattern:
        """Compile a pattern from ``(name, confidence, template)`` fix tuples."""
        flags = re.IGNORECASE if ignore_case else 0
        return cls(
            id=id,
            matcher=re.compile(regex, flags),
            category=category,
            candidate_fixes=tuple(FixCandidate(n, c, t) for n, c, t in fixes),
        )

    def ranked_fixes(self) -> tuple[FixCandidate, ...]:
        """Candidate fixes by descending confidence; ties keep declared order."""
        return tuple(sorted(self.candidate_fixes, key=lambda f: -f.confidence))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "regex": self.matcher.pattern,
            "category": self.category.value,
            "fixes": [
                {"name": f.name, "confidence": f.confidence, "template": f.template}
                for f in self.ranked_fixes()
            ],
        }


@dataclass(frozen=True)
class MatchResult:
    """Outcome of classifying a failure message.

    Unrecognized failures are an explicit value (``recognized`` is False,
    ``fixes`` is empty) rather than None or an exception.
    """

    message: str
    """The line or text that was classified."""

    signature: str
    """Normalizable text identifying this failure for repair memory."""

    pattern_id: str | None = None
    category: FailureCategory = FailureCategory.UNKNOWN
    groups: tuple[str | None, ...] = ()
    fixes: tuple[FixCandidate, ...] = ()
    """Candidate fixes, highest confidence first."""

    file: str | None = None
    line: int | None = None

    @property
    def recognized(self) -> bool:
        return self.pattern_id is not None

    @property
    def top_fix(self) -> FixCandidate | None:
        return self.fixes[0] if self.fixes else None

    def describe(self, fix: FixCandidate) -> str:
        return fix.describe(self.groups)

    @classmethod
    def unrecognized(cls, message: str) -> MatchResult:
        text = message.strip()
        return cls(message=text, signature=text[:200])

    def to_dict(self) -> dict[str, Any]:
        return {
            "recognized": self.recognized,
            "pattern_id": self.pattern_id,
            "category": self.category.value,
            "message": self.message,
            "signature": self.signature,
            "groups": list(self.groups),
            "fixes": [
                {"name": f.name, "confidence": f.confidence, "description": self.describe(f)}
                for f in self.fixes
            ],
            "file": self.file,
            "line": self.line,
        }


__all__ = ["FailureCategory", "FailurePattern", "FixCandidate", "MatchResult"]
