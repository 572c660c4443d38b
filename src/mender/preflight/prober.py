"""Pre-build health scan.

The prober runs every check concurrently, applies the non-destructive
fixes the checks propose, and reports whether the build should be blocked.
Fixes run one at a time after all checks have joined, so two checks never
race each other into the same package directory.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Iterable
from pathlib import Path

from mender.audit.records import Phase
from mender.audit.trail import AuditTrail
from mender.core.config import ProbeConfig
from mender.core.logging import get_logger, phase_context, with_context
from mender.execution.commands import CommandExecutor
from mender.execution.task_utils import run_in_thread
from mender.memory.models import FixDescriptor
from mender.memory.store import RepairMemory
from mender.preflight.checks import DEFAULT_CHECKS, Check, ProbeContext
from mender.preflight.models import AutoFix, CheckResult, CheckSummary, ProbeReport, Severity
from mender.repair.fixes import FixRunner

_logger = get_logger("prober")


class Prober:
    """Runs the pre-flight check battery against a project."""

    def __init__(
        self,
        executor: CommandExecutor,
        fixes: FixRunner,
        memory: RepairMemory,
        audit: AuditTrail,
        config: ProbeConfig | None = None,
        checks: Iterable[Check] = DEFAULT_CHECKS,
    ) -> None:
        self._executor = executor
        self._fixes = fixes
        self._memory = memory
        self._audit = audit
        self._config = config or ProbeConfig()
        self._checks = tuple(checks)

    @property
    def checks(self) -> tuple[Check, ...]:
        return self._checks

    async def run_probe(self, project_root: Path) -> ProbeReport:
        """Scan ``project_root``. Never raises; internal faults land in ``report.error``."""
        started = time.monotonic()
        ctx = phase_context(Phase.PRE_BUILD.value, str(project_root))
        with with_context(ctx):
            try:
                report = await self._probe(Path(project_root))
            except Exception as e:
                _logger.exception("prober.failed", error=str(e))
                report = ProbeReport(project_root=str(project_root), error=str(e))
            report.duration_seconds = time.monotonic() - started
            await self._audit.alog(Phase.PRE_BUILD, "prober_complete", {
                "total_issues": report.total_issues,
                "auto_fixed": report.auto_fixed,
                "blocked": report.blocked,
                "duration_seconds": round(report.duration_seconds, 3),
            })
            _logger.info(
                "prober.complete",
                total_issues=report.total_issues,
                auto_fixed=report.auto_fixed,
                blocked=report.blocked,
            )
            return report

    async def _probe(self, project_root: Path) -> ProbeReport:
        ctx = ProbeContext(project_root=project_root, config=self._config, executor=self._executor)
        results = await asyncio.gather(*(self._run_isolated(check, ctx) for check in self._checks))

        auto_fixed = 0
        for result in results:
            auto_fixed += await self._apply_fixes(result)

        report = ProbeReport(project_root=str(project_root), auto_fixed=auto_fixed)
        for check, result in zip(self._checks, results, strict=True):
            report.checks.append(CheckSummary.from_result(check.name, check.description, result))
            report.total_issues += len(result.issues)
            if any(i.severity is Severity.CRITICAL for i in result.unresolved):
                report.blocked = True
        return report

    async def _run_isolated(self, check: Check, ctx: ProbeContext) -> CheckResult:
        """Run one check; any exception or timeout becomes an empty result with an error note."""
        try:
            if inspect.iscoroutinefunction(check.func):
                outcome = check.func(ctx)
            else:
                outcome = asyncio.to_thread(check.func, ctx)
            return await asyncio.wait_for(outcome, timeout=self._config.check_timeout_seconds)
        except TimeoutError:
            _logger.warning("prober.check_timed_out", check=check.name)
            return CheckResult.failed(f"check timed out after {self._config.check_timeout_seconds}s")
        except Exception as e:
            _logger.warning("prober.check_failed", check=check.name, error=str(e), exc_info=True)
            return CheckResult.failed(f"check raised {type(e).__name__}: {e}")

    async def _apply_fixes(self, result: CheckResult) -> int:
        """Apply each proposed non-destructive fix once; returns issues resolved."""
        resolved = 0
        for fix in result.auto_fixable:
            if self._fixes.is_destructive(fix.name) or not self._fixes.is_executable(fix.name, fix.groups):
                continue
            succeeded = await self._apply_one(fix)
            if not succeeded:
                continue
            for issue in result.issues:
                if issue.fix == fix and not issue.auto_fixed:
                    issue.auto_fixed = True
                    resolved += 1
        return resolved

    async def _apply_one(self, fix: AutoFix) -> bool:
        outcome = await self._fixes.apply(fix.name, fix.cwd, fix.groups, allow_destructive=False)
        if not outcome.executed:
            return False
        await run_in_thread(
            self._memory.record,
            fix.signature,
            FixDescriptor(
                name=fix.name,
                confidence=1.0,
                category="dependency",
                description=outcome.command or fix.name,
                source="probe",
            ),
        )
        if outcome.succeeded:
            await run_in_thread(self._memory.record_success, fix.signature)
        else:
            await run_in_thread(self._memory.record_failure, fix.signature)
        await self._audit.alog(Phase.PRE_BUILD, "auto_fix_applied", {
            "signature": fix.signature,
            **outcome.to_dict(),
        })
        return outcome.succeeded


__all__ = ["Prober"]
