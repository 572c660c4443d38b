"""Ordered pattern library used to classify build and runtime failures.

Example:
    library = PatternLibrary()
    result = library.match("Error: listen EADDRINUSE: address already in use :::3000")
    result.pattern_id      # "port_in_use"
    result.groups          # ("3000",)
    result.top_fix.name    # "kill_process"
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

from mender.core.logging import get_logger
from mender.patterns.catalog import DEFAULT_PATTERNS
from mender.patterns.models import FailurePattern, MatchResult

_logger = get_logger("patterns")

# "src/app/page.tsx:42" style locations in compiler output
_LOCATION = re.compile(r"(?:^|\s|\()([\w./\\-]+\.(?:[cm]?[jt]sx?|py|css|scss)):(\d+)")


class PatternLibrary:
    """Static, ordered table of failure patterns.

    Patterns are evaluated in declared order and the first match wins.
    The table is fixed at construction.
    """

    def __init__(self, patterns: Iterable[FailurePattern] = DEFAULT_PATTERNS) -> None:
        self._patterns: tuple[FailurePattern, ...] = tuple(patterns)
        ids = [p.id for p in self._patterns]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise ValueError(f"Duplicate pattern ids: {sorted(duplicates)}")
        self._by_id = {p.id: p for p in self._patterns}

    def __len__(self) -> int:
        return len(self._patterns)

    def get(self, pattern_id: str) -> FailurePattern | None:
        return self._by_id.get(pattern_id)

    def match(self, message: str) -> MatchResult:
        """Classify a single failure message.

        Returns an unrecognized MatchResult when no pattern matches.
        """
        for pattern in self._patterns:
            m = pattern.matcher.search(message)
            if m is not None:
                return self._result(pattern, m, message)
        return MatchResult.unrecognized(message)

    def match_lines(self, text: str) -> MatchResult:
        """Classify a multi-line build log.

        Lines are scanned in order and the first line matching any pattern
        is classified. If nothing matches, the first meaningful line (longer
        than 10 characters) becomes the unrecognized signature.
        """
        lines = [line for line in text.splitlines() if line.strip()]
        for line in lines:
            for pattern in self._patterns:
                m = pattern.matcher.search(line)
                if m is not None:
                    return self._result(pattern, m, line)

        first = next((line for line in lines if len(line.strip()) > 10), None)
        if first is None:
            first = lines[0] if lines else text[:200]
        _logger.debug("patterns.unrecognized", line=first[:200])
        return MatchResult.unrecognized(first)

    def list_patterns(self) -> list[dict[str, Any]]:
        """Serializable view of every pattern, in match order."""
        return [p.to_dict() for p in self._patterns]

    @staticmethod
    def _result(pattern: FailurePattern, m: re.Match[str], line: str) -> MatchResult:
        location = _LOCATION.search(line)
        return MatchResult(
            message=line.strip(),
            signature=m.group(0),
            pattern_id=pattern.id,
            category=pattern.category,
            groups=m.groups(),
            fixes=pattern.ranked_fixes(),
            file=location.group(1) if location else None,
            line=int(location.group(2)) if location else None,
        )


__all__ = ["PatternLibrary"]
