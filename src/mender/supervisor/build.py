"""Supervised build with classify-fix-retry and escalation.

A run executes the build up to ``max_retries`` times. After a failed
attempt the error is classified (learned fix first, then pattern library
candidates by confidence), one fix is applied, and the build is retried.
The run escalates when the error is unrecognized, when no untried
executable candidate remains, when the deadline passes, or when the last
attempt fails. A build timeout is treated as transient and retried without
a fix.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

from mender.audit.records import Phase
from mender.audit.trail import AuditTrail
from mender.core.config import SupervisorConfig
from mender.core.logging import get_logger, phase_context, with_context
from mender.execution.commands import CommandExecutor
from mender.execution.task_utils import run_in_thread
from mender.memory.models import FixDescriptor
from mender.memory.store import RepairMemory
from mender.patterns.library import PatternLibrary
from mender.patterns.models import MatchResult
from mender.repair.fixes import FixRunner
from mender.supervisor.models import (
    MAX_ERROR_CHARS,
    AppliedFix,
    AttemptOutcome,
    BuildAttempt,
    Diagnostician,
    Escalation,
    EscalationReason,
    SupervisorResult,
    SupervisorState,
)

_logger = get_logger("supervisor")

_DIAGNOSIS_TIMEOUT_SECONDS = 60.0


class BuildSupervisor:
    """Wraps build invocations in the repair loop."""

    def __init__(
        self,
        executor: CommandExecutor,
        library: PatternLibrary,
        memory: RepairMemory,
        fixes: FixRunner,
        audit: AuditTrail,
        config: SupervisorConfig | None = None,
        diagnostician: Diagnostician | None = None,
    ) -> None:
        self._executor = executor
        self._library = library
        self._memory = memory
        self._fixes = fixes
        self._audit = audit
        self._config = config or SupervisorConfig()
        self._diagnostician = diagnostician

    async def run_supervisor(
        self,
        build_command: str | None,
        project_root: Path,
        max_retries: int | None = None,
        deadline_seconds: float | None = None,
    ) -> SupervisorResult:
        """Build ``project_root`` with automatic repair.

        Args:
            build_command: Shell command; the configured default when None.
            project_root: Working directory for the build and its fixes.
            max_retries: Maximum build attempts (default from config).
            deadline_seconds: Optional wall-clock budget for the whole run.

        Never raises; an internal fault escalates the run.
        """
        command = build_command or self._config.build_command
        limit = max_retries if max_retries is not None else self._config.max_retries
        started = time.monotonic()
        deadline = started + deadline_seconds if deadline_seconds is not None else None
        ctx = phase_context(Phase.MID_BUILD.value, str(project_root))

        with with_context(ctx):
            attempt = BuildAttempt()
            try:
                escalation = await self._run(command, Path(project_root), max(1, limit), deadline, attempt)
            except Exception as e:
                _logger.exception("supervisor.internal_error", error=str(e))
                attempt.last_error = attempt.last_error or str(e)
                escalation = await self._escalate(attempt, EscalationReason.INTERNAL_ERROR)
            return SupervisorResult.from_attempt(attempt, escalation, time.monotonic() - started)

    async def _run(
        self,
        command: str,
        project_root: Path,
        limit: int,
        deadline: float | None,
        attempt: BuildAttempt,
    ) -> Escalation | None:
        tried: dict[str, set[str]] = {}
        # fixes applied this run whose outcome is not yet recorded, by signature
        pending: dict[str, str] = {}

        for number in range(1, limit + 1):
            timeout = self._config.build_timeout_seconds
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return await self._escalate(attempt, EscalationReason.DEADLINE)
                timeout = min(timeout, remaining)

            attempt.attempt_number = number
            attempt.state = SupervisorState.RUNNING if number == 1 else SupervisorState.RETRYING
            _logger.info("supervisor.build_started", attempt=number, max_retries=limit)
            result = await self._executor.execute(command, timeout, cwd=project_root)

            if result.ok:
                attempt.state = SupervisorState.SUCCEEDED
                attempt.outcome = AttemptOutcome.SUCCESS
                if number > 1:
                    for signature in pending:
                        await run_in_thread(self._memory.record_success, signature)
                await self._audit.alog(Phase.MID_BUILD, "build_success", {
                    "attempt": number,
                    "fixes_applied": [f.fix for f in attempt.fixes_applied],
                })
                _logger.info("supervisor.build_succeeded", attempt=number)
                return None

            attempt.last_error = result.output[-MAX_ERROR_CHARS:] or f"exit code {result.exit_code}"

            if result.timed_out:
                _logger.warning("supervisor.build_timed_out", attempt=number, timeout_seconds=timeout)
                continue

            match = self._library.match_lines(result.output)
            signature = match.signature
            if signature in pending:
                await run_in_thread(self._memory.record_failure, signature)
                del pending[signature]
                _logger.info("supervisor.fix_did_not_help", signature=signature, attempt=number)

            # Nothing to try for an unknown error, whichever attempt this is
            if not match.recognized and self._memory.lookup(signature) is None:
                return await self._escalate(attempt, EscalationReason.UNRECOGNIZED)

            if number == limit:
                break

            fix, source = self._select_fix(match, tried.setdefault(signature, set()), attempt)
            if fix is None:
                return await self._escalate(attempt, EscalationReason.NO_CANDIDATES)

            tried[signature].add(fix.name)
            applied = await self._apply(fix, source, match, project_root, number)
            attempt.fixes_applied.append(applied)
            if applied.command_succeeded:
                pending[signature] = fix.name
            else:
                await run_in_thread(self._memory.record_failure, signature)

        await self._audit.alog(Phase.MID_BUILD, "all_fixes_failed", {
            "attempts": attempt.attempt_number,
            "fixes_applied": [f.fix for f in attempt.fixes_applied],
        })
        return await self._escalate(attempt, EscalationReason.RETRIES_EXHAUSTED)

    def _select_fix(
        self,
        match: MatchResult,
        tried: set[str],
        attempt: BuildAttempt,
    ) -> tuple[FixDescriptor | None, str | None]:
        """Pick the next fix for ``match``.

        Returns the fix and its source (``memory`` or ``pattern``); the fix
        is None when nothing is left, and the source is None as well when
        nothing was ever offered.
        """
        offered = False
        known = self._memory.lookup(match.signature)
        if known is not None:
            offered = True
            if known.name not in tried:
                if self._fixes.is_executable(known.name, match.groups):
                    return known, "memory"
                self._skip(attempt, known.name)

        for candidate in match.fixes:
            offered = True
            if candidate.name in tried:
                continue
            if not self._fixes.is_executable(candidate.name, match.groups):
                self._skip(attempt, candidate.name)
                continue
            return FixDescriptor(
                name=candidate.name,
                confidence=candidate.confidence,
                category=match.category.value,
                description=match.describe(candidate),
                source="pattern",
            ), "pattern"
        return None, "pattern" if offered else None

    @staticmethod
    def _skip(attempt: BuildAttempt, name: str) -> None:
        if name not in attempt.skipped_fixes:
            attempt.skipped_fixes.append(name)

    async def _apply(
        self,
        fix: FixDescriptor,
        source: str | None,
        match: MatchResult,
        project_root: Path,
        number: int,
    ) -> AppliedFix:
        outcome = await self._fixes.apply(fix.name, project_root, match.groups)
        await run_in_thread(self._memory.record, match.signature, fix)
        applied = AppliedFix(
            attempt=number,
            signature=match.signature,
            fix=fix.name,
            source=source or "pattern",
            command=outcome.command,
            command_succeeded=outcome.succeeded,
            description=fix.description,
        )
        action = "known_fix_applied" if source == "memory" else "new_fix_applied"
        await self._audit.alog(Phase.MID_BUILD, action, {
            "pattern": match.pattern_id,
            "category": match.category.value,
            "file": match.file,
            "line": match.line,
            **applied.to_dict(),
        })
        _logger.info(
            "supervisor.fix_applied",
            fix=fix.name,
            source=applied.source,
            attempt=number,
            command_succeeded=applied.command_succeeded,
        )
        return applied

    async def _escalate(self, attempt: BuildAttempt, reason: EscalationReason) -> Escalation:
        attempt.state = SupervisorState.ESCALATED
        attempt.outcome = AttemptOutcome.ESCALATED
        escalation = Escalation(
            reason=reason,
            raw_error=attempt.last_error or "",
            fixes_tried=[f.fix for f in attempt.fixes_applied],
            skipped_fixes=list(attempt.skipped_fixes),
        )
        if self._diagnostician is not None:
            try:
                escalation.diagnosis = await asyncio.wait_for(
                    self._diagnostician.diagnose(escalation.raw_error, escalation.fixes_tried),
                    timeout=_DIAGNOSIS_TIMEOUT_SECONDS,
                )
            except Exception as e:
                _logger.warning("supervisor.diagnosis_failed", error=str(e))
        await self._audit.alog(Phase.MID_BUILD, "escalated", {
            "attempts": attempt.attempt_number,
            **escalation.to_dict(),
        })
        _logger.warning(
            "supervisor.escalated",
            reason=reason.value,
            attempts=attempt.attempt_number,
            fixes_tried=escalation.fixes_tried,
        )
        return escalation


__all__ = ["BuildSupervisor"]
