"""Failure pattern library.

Classifies failure text against an ordered, curated table of regex
patterns, each carrying a category and confidence-ranked candidate fixes.
"""

from mender.patterns.catalog import DEFAULT_PATTERNS
from mender.patterns.library import PatternLibrary
from mender.patterns.models import FailureCategory, FailurePattern, FixCandidate, MatchResult

__all__ = [
    "DEFAULT_PATTERNS",
    "FailureCategory",
    "FailurePattern",
    "FixCandidate",
    "MatchResult",
    "PatternLibrary",
]
