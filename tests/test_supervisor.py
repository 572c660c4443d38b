"""Tests for mender.supervisor: the classify-fix-retry loop and escalation."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from mender.audit.trail import AuditTrail
from mender.core.config import SupervisorConfig
from mender.execution.commands import Capability
from mender.memory.models import FixDescriptor
from mender.memory.store import RepairMemory
from mender.patterns.library import PatternLibrary
from mender.repair.fixes import FixRunner
from mender.supervisor import (
    BuildSupervisor,
    EscalationReason,
    SupervisorState,
)
from tests.helpers import FakeExecutor, audit_actions, failed, ok, timed_out

BUILD = "npm run build"
MISSING_MODULE = "Error: Cannot find module 'lodash'\n    at Module._resolveFilename"
SQLITE_MISMATCH = "Error: better-sqlite3 was compiled against a different Node.js version"
UNKNOWN = "the flux capacitor overloaded during bundling"


class _Diagnostician:
    def __init__(self, answer: str | None = "check the flux capacitor") -> None:
        self.answer = answer
        self.calls: list[tuple[str, list[str]]] = []

    async def diagnose(self, error: str, fixes_tried: list[str]) -> str | None:
        self.calls.append((error, fixes_tried))
        return self.answer


def _supervisor(
    executor: FakeExecutor,
    library: PatternLibrary,
    memory: RepairMemory,
    audit: AuditTrail,
    diagnostician=None,
    **config,
) -> BuildSupervisor:
    return BuildSupervisor(
        executor,
        library,
        memory,
        FixRunner(executor),
        audit,
        SupervisorConfig(**config),
        diagnostician,
    )


@pytest.fixture
def supervisor(executor, library, memory, audit) -> BuildSupervisor:
    return _supervisor(executor, library, memory, audit)


class TestSuccess:
    @pytest.mark.asyncio
    async def test_first_attempt(self, supervisor, executor, memory, audit, project):
        result = await supervisor.run_supervisor(BUILD, project)
        assert result.success
        assert result.state is SupervisorState.SUCCEEDED
        assert result.attempts == 1
        assert result.fixes_applied == []
        assert executor.calls == [BUILD]
        assert len(memory) == 0
        assert audit_actions(audit) == ["build_success"]

    @pytest.mark.asyncio
    async def test_default_command_from_config(self, executor, library, memory, audit, project):
        supervisor = _supervisor(executor, library, memory, audit, build_command="make all")
        await supervisor.run_supervisor(None, project)
        assert executor.calls == ["make all"]

    @pytest.mark.asyncio
    async def test_fix_then_success_learns(self, supervisor, executor, memory, audit, project):
        executor.script(BUILD, failed(MISSING_MODULE), ok())
        result = await supervisor.run_supervisor(BUILD, project)

        assert result.success
        assert result.attempts == 2
        assert executor.calls == [BUILD, "npm install lodash", BUILD]
        applied = result.fixes_applied[0]
        assert applied.fix == "install_package"
        assert applied.source == "pattern"
        assert applied.command_succeeded

        entry = memory.get("Cannot find module 'lodash'")
        assert entry is not None
        assert (entry.occurrences, entry.successes) == (1, 1)
        assert memory.lookup("Cannot find module 'lodash'").name == "install_package"
        assert audit_actions(audit) == ["new_fix_applied", "build_success"]

    @pytest.mark.asyncio
    async def test_success_recorded_exactly_once(self, supervisor, executor, memory, project):
        executor.script(BUILD, failed(MISSING_MODULE), ok())
        with patch.object(memory, "record_success", wraps=memory.record_success) as spy:
            await supervisor.run_supervisor(BUILD, project)
        spy.assert_called_once_with("Cannot find module 'lodash'")

    @pytest.mark.asyncio
    async def test_learned_fix_reused(self, supervisor, executor, memory, audit, project):
        memory.record(
            "Cannot find module 'lodash'",
            FixDescriptor(name="install_missing", confidence=0.9, source="pattern"),
        )
        memory.record_success("Cannot find module 'lodash'")
        executor.script(BUILD, failed(MISSING_MODULE), ok())

        result = await supervisor.run_supervisor(BUILD, project)
        assert result.success
        assert result.fixes_applied[0].fix == "install_missing"
        assert result.fixes_applied[0].source == "memory"
        assert "known_fix_applied" in audit_actions(audit)
        assert memory.get("Cannot find module 'lodash'").successes == 2


class TestEscalation:
    @pytest.mark.asyncio
    async def test_exhausts_after_exactly_three_attempts(
        self, supervisor, executor, memory, audit, project
    ):
        executor.script(BUILD, failed(SQLITE_MISMATCH))
        result = await supervisor.run_supervisor(BUILD, project)

        assert not result.success
        assert result.state is SupervisorState.ESCALATED
        assert result.attempts == 3
        assert executor.count(BUILD) == 3
        assert [f.fix for f in result.fixes_applied] == ["rebuild_sqlite", "reinstall_sqlite"]
        assert result.escalation is not None
        assert result.escalation.reason is EscalationReason.RETRIES_EXHAUSTED
        assert result.escalation.fixes_tried == ["rebuild_sqlite", "reinstall_sqlite"]
        assert SQLITE_MISMATCH in result.escalation.raw_error

        entry = memory.get("better-sqlite3 was compiled against")
        assert entry is not None
        assert entry.successes == 0
        assert entry.failures == 2
        assert audit_actions(audit)[-2:] == ["all_fixes_failed", "escalated"]

    @pytest.mark.asyncio
    async def test_max_retries_override(self, supervisor, executor, project):
        executor.script(BUILD, failed(SQLITE_MISMATCH))
        result = await supervisor.run_supervisor(BUILD, project, max_retries=1)
        assert result.attempts == 1
        assert executor.calls == [BUILD]
        assert result.escalation.reason is EscalationReason.RETRIES_EXHAUSTED

    @pytest.mark.asyncio
    async def test_unrecognized_escalates_immediately(self, supervisor, executor, project):
        executor.script(BUILD, failed(UNKNOWN))
        result = await supervisor.run_supervisor(BUILD, project)
        assert result.attempts == 1
        assert result.escalation.reason is EscalationReason.UNRECOGNIZED
        assert result.escalation.raw_error == UNKNOWN
        assert executor.calls == [BUILD]

    @pytest.mark.asyncio
    async def test_unrecognized_on_last_attempt(self, supervisor, executor, audit, project):
        executor.script(BUILD, failed(UNKNOWN))
        result = await supervisor.run_supervisor(BUILD, project, max_retries=1)
        assert result.escalation.reason is EscalationReason.UNRECOGNIZED
        assert "all_fixes_failed" not in audit_actions(audit)

    @pytest.mark.asyncio
    async def test_unrecognized_after_a_fix(self, supervisor, executor, memory, project):
        executor.script(BUILD, failed(MISSING_MODULE), failed(UNKNOWN))
        result = await supervisor.run_supervisor(BUILD, project, max_retries=2)
        assert result.attempts == 2
        assert [f.fix for f in result.fixes_applied] == ["install_package"]
        assert result.escalation.reason is EscalationReason.UNRECOGNIZED
        assert result.escalation.raw_error == UNKNOWN

    @pytest.mark.asyncio
    async def test_no_executable_candidate(self, library, memory, audit, project):
        executor = FakeExecutor(capabilities={Capability.NPM})
        executor.script(BUILD, failed("Error: listen EADDRINUSE: address already in use :::3000"))
        supervisor = _supervisor(executor, library, memory, audit)
        result = await supervisor.run_supervisor(BUILD, project)
        assert result.escalation.reason is EscalationReason.NO_CANDIDATES
        assert result.escalation.skipped_fixes == ["kill_process"]
        assert result.fixes_applied == []

    @pytest.mark.asyncio
    async def test_advice_only_pattern_escalates(self, supervisor, executor, project):
        executor.script(BUILD, failed("src/a.ts:3 Object is possibly 'null'."))
        result = await supervisor.run_supervisor(BUILD, project)
        assert result.escalation.reason is EscalationReason.NO_CANDIDATES
        assert "add_null_check" in result.escalation.skipped_fixes

    @pytest.mark.asyncio
    async def test_deadline(self, executor, library, memory, audit, project):
        supervisor = _supervisor(executor, library, memory, audit)
        executor.script(BUILD, failed(SQLITE_MISMATCH))
        result = await supervisor.run_supervisor(BUILD, project, deadline_seconds=0)
        assert result.escalation.reason is EscalationReason.DEADLINE
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_diagnosis_attached(self, executor, library, memory, audit, project):
        diagnostician = _Diagnostician()
        supervisor = _supervisor(executor, library, memory, audit, diagnostician)
        executor.script(BUILD, failed(UNKNOWN))
        result = await supervisor.run_supervisor(BUILD, project)
        assert result.escalation.diagnosis == "check the flux capacitor"
        assert diagnostician.calls == [(UNKNOWN, [])]

    @pytest.mark.asyncio
    async def test_failing_diagnostician_tolerated(self, executor, library, memory, audit, project):
        class Broken:
            async def diagnose(self, error: str, fixes_tried: list[str]) -> str | None:
                raise ConnectionError("model offline")

        supervisor = _supervisor(executor, library, memory, audit, Broken())
        executor.script(BUILD, failed(UNKNOWN))
        result = await supervisor.run_supervisor(BUILD, project)
        assert result.escalation is not None
        assert result.escalation.diagnosis is None

    @pytest.mark.asyncio
    async def test_internal_error_escalates(self, supervisor, executor, library, project):
        executor.script(BUILD, failed(MISSING_MODULE))
        with patch.object(library, "match_lines", side_effect=RuntimeError("regex engine on fire")):
            result = await supervisor.run_supervisor(BUILD, project)
        assert not result.success
        assert result.escalation.reason is EscalationReason.INTERNAL_ERROR


class TestRetryBehaviour:
    @pytest.mark.asyncio
    async def test_timeout_retried_without_fix(self, supervisor, executor, project):
        executor.script(BUILD, timed_out(), ok())
        result = await supervisor.run_supervisor(BUILD, project)
        assert result.success
        assert result.attempts == 2
        assert result.fixes_applied == []
        assert executor.calls == [BUILD, BUILD]

    @pytest.mark.asyncio
    async def test_failed_fix_command_counts_against_memory(
        self, supervisor, executor, memory, project
    ):
        executor.script(BUILD, failed(MISSING_MODULE), ok())
        executor.script("npm install lodash", failed("npm ERR! 404 Not Found"))
        result = await supervisor.run_supervisor(BUILD, project)
        assert not result.fixes_applied[0].command_succeeded
        entry = memory.get("Cannot find module 'lodash'")
        assert entry.failures == 1
        assert entry.successes == 0

    @pytest.mark.asyncio
    async def test_escalates_once_candidates_are_used_up(self, supervisor, executor, memory, project):
        executor.script(BUILD, failed(MISSING_MODULE), failed(MISSING_MODULE), ok())
        result = await supervisor.run_supervisor(BUILD, project)
        # fix_relative_path is advice only, so nothing new is left after install_package
        assert not result.success
        assert result.attempts == 2
        assert executor.count(BUILD) == 2
        assert result.escalation.reason is EscalationReason.NO_CANDIDATES
        assert result.escalation.skipped_fixes == ["fix_relative_path"]
        assert memory.get("Cannot find module 'lodash'").failures == 1

    @pytest.mark.asyncio
    async def test_result_serializable(self, supervisor, executor, project):
        executor.script(BUILD, failed(SQLITE_MISMATCH))
        data = (await supervisor.run_supervisor(BUILD, project)).to_dict()
        assert data["state"] == "escalated"
        assert data["escalation"]["reason"] == "retries_exhausted"
        assert len(data["fixes_applied"]) == 2

    @pytest.mark.asyncio
    async def test_concurrent_runs_are_independent(self, executor, library, memory, audit, tmp_path: Path):
        a = tmp_path / "a"
        b = tmp_path / "b"
        a.mkdir()
        b.mkdir()
        supervisor = _supervisor(executor, library, memory, audit)
        first, second = await asyncio.gather(
            supervisor.run_supervisor(BUILD, a),
            supervisor.run_supervisor(BUILD, b),
        )
        assert first.success and second.success


class TestMemoryWrites:
    @pytest.mark.asyncio
    async def test_memory_flushes_off_the_event_loop(self, supervisor, executor, memory, project):
        loop_thread = threading.get_ident()
        flush_threads: list[int] = []
        original_flush = memory.flush

        def flush() -> None:
            flush_threads.append(threading.get_ident())
            original_flush()

        executor.script(BUILD, failed(MISSING_MODULE), ok())
        with patch.object(memory, "flush", side_effect=flush):
            result = await supervisor.run_supervisor(BUILD, project)

        assert result.success
        assert len(flush_threads) == 2
        assert loop_thread not in flush_threads
        assert memory.get("Cannot find module 'lodash'").successes == 1
