"""Tests for mender.patterns: classification of build and runtime failures."""

from __future__ import annotations

import pytest

from mender.patterns import (
    DEFAULT_PATTERNS,
    FailureCategory,
    FailurePattern,
    FixCandidate,
    MatchResult,
    PatternLibrary,
)


class TestMatch:
    """Single-message classification."""

    def test_port_in_use_captures_port(self, library: PatternLibrary):
        result = library.match("Error: listen EADDRINUSE: address already in use :::3000")
        assert result.recognized
        assert result.pattern_id == "port_in_use"
        assert result.category is FailureCategory.RUNTIME
        assert result.groups == ("3000",)
        assert result.top_fix is not None
        assert result.top_fix.name == "kill_process"
        assert result.describe(result.top_fix) == "Kill process on port 3000"

    def test_missing_module(self, library: PatternLibrary):
        result = library.match("Error: Cannot find module 'lodash'")
        assert result.pattern_id == "missing_import"
        assert result.groups == ("lodash",)
        assert [f.name for f in result.fixes] == ["install_package", "fix_relative_path"]

    def test_native_version_mismatch(self, library: PatternLibrary):
        result = library.match(
            "Error: better-sqlite3 was compiled against a different Node.js version"
        )
        assert result.pattern_id == "better_sqlite3_error"
        assert result.category is FailureCategory.NATIVE
        assert result.top_fix is not None
        assert result.top_fix.name == "rebuild_sqlite"

    def test_fixes_ordered_by_confidence(self, library: PatternLibrary):
        result = library.match("Object is possibly 'undefined'.")
        assert result.pattern_id == "ts_object_possibly_null"
        confidences = [f.confidence for f in result.fixes]
        assert confidences == sorted(confidences, reverse=True)
        assert result.fixes[0].name == "add_null_check"

    def test_first_match_wins(self, library: PatternLibrary):
        # The lockfile pattern is declared before the generic ENOENT one
        result = library.match("npm ci: package-lock.json is out of sync with package.json")
        assert result.pattern_id == "npm_ci_lockfile_mismatch"

    def test_case_insensitive_pattern(self, library: PatternLibrary):
        result = library.match("Request Timed Out while fetching registry")
        assert result.pattern_id == "etimedout"

    def test_unrecognized_is_explicit_value(self, library: PatternLibrary):
        result = library.match("  flux capacitor overloaded during bundling  ")
        assert not result.recognized
        assert result.pattern_id is None
        assert result.category is FailureCategory.UNKNOWN
        assert result.fixes == ()
        assert result.top_fix is None
        assert result.signature == "flux capacitor overloaded during bundling"

    def test_location_extracted(self, library: PatternLibrary):
        result = library.match(
            "src/app/page.tsx:42 Type 'string' is not assignable to type 'number'"
        )
        assert result.pattern_id == "type_mismatch"
        assert result.file == "src/app/page.tsx"
        assert result.line == 42

    def test_unmatched_group_renders_unknown(self, library: PatternLibrary):
        result = library.match("connect ECONNREFUSED")
        assert result.pattern_id == "econnrefused"
        assert result.groups == (None,)
        assert result.describe(result.fixes[0]) == "Start service on port unknown"


class TestMatchLines:
    """Multi-line build log classification."""

    def test_first_matching_line_wins(self, library: PatternLibrary):
        log = "\n".join([
            "> app@1.0.0 build",
            "> next build",
            "",
            "Module not found: Can't resolve './Header'",
            "Error: listen EADDRINUSE: address already in use :::8080",
        ])
        result = library.match_lines(log)
        assert result.pattern_id == "module_not_found"
        assert result.message == "Module not found: Can't resolve './Header'"

    def test_unrecognized_uses_first_meaningful_line(self, library: PatternLibrary):
        log = "ok\n\nthe quantum flux is misaligned again\nanother line here"
        result = library.match_lines(log)
        assert not result.recognized
        assert result.signature == "the quantum flux is misaligned again"

    def test_empty_log(self, library: PatternLibrary):
        result = library.match_lines("")
        assert not result.recognized


class TestLibrary:
    def test_default_catalog_is_large_and_unique(self, library: PatternLibrary):
        assert len(library) == len(DEFAULT_PATTERNS)
        assert len(library) >= 80
        ids = [p["id"] for p in library.list_patterns()]
        assert len(ids) == len(set(ids))

    def test_duplicate_ids_rejected(self):
        pattern = FailurePattern.build("dup", r"x", FailureCategory.RUNTIME, [])
        with pytest.raises(ValueError, match="Duplicate"):
            PatternLibrary([pattern, pattern])

    def test_get_by_id(self, library: PatternLibrary):
        pattern = library.get("heap_overflow")
        assert pattern is not None
        assert pattern.category is FailureCategory.RESOURCE
        assert library.get("nope") is None

    def test_list_patterns_serializable(self, library: PatternLibrary):
        first = library.list_patterns()[0]
        assert set(first) == {"id", "regex", "category", "fixes"}
        assert isinstance(first["category"], str)

    def test_custom_library(self):
        pattern = FailurePattern.build(
            "gremlins", r"gremlins in (\w+)", FailureCategory.RUNTIME,
            [("feed_after_midnight", 0.1, "Do not feed {1}")],
        )
        library = PatternLibrary([pattern])
        result = library.match("found gremlins in router")
        assert result.describe(result.fixes[0]) == "Do not feed router"


class TestModels:
    def test_confidence_bounds(self):
        with pytest.raises(ValueError):
            FixCandidate("bad", 1.5, "x")

    def test_match_result_to_dict(self, library: PatternLibrary):
        data = library.match("Error: Cannot find module 'zod'").to_dict()
        assert data["recognized"] is True
        assert data["fixes"][0]["description"] == "Install missing package: zod"

    def test_unrecognized_signature_is_bounded(self):
        result = MatchResult.unrecognized("x" * 500)
        assert len(result.signature) == 200
