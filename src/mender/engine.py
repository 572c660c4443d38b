"""Remediation engine: one object owning every component.

``RemediationEngine.from_config`` builds the pattern library, repair
memory, fix runner, audit trail, prober, supervisor and guardian once and
wires them together; nothing in the package keeps module-level state.
``run_full_deploy`` chains the three phases: a blocked probe stops the
deploy before building, a failed build stops it before starting the
guardian.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from mender.audit.event_bus import EventBus
from mender.audit.records import AuditSink, Broadcaster, Phase
from mender.audit.sinks import JsonlAuditSink
from mender.audit.trail import AuditTrail
from mender.core.config import MenderConfig
from mender.core.logging import RemediationContext, get_logger, with_context
from mender.execution.commands import CommandExecutor, ShellCommandExecutor
from mender.execution.task_utils import run_in_thread
from mender.guardian.guardian import Guardian
from mender.guardian.monitors import build_default_monitors
from mender.memory.store import RepairMemory
from mender.patterns.library import PatternLibrary
from mender.preflight.models import ProbeReport
from mender.preflight.prober import Prober
from mender.repair.fixes import FixRunner
from mender.supervisor.build import BuildSupervisor
from mender.supervisor.models import Diagnostician, SupervisorResult

_logger = get_logger("engine")


@dataclass
class MaturityCounters:
    """Running totals across every operation of one engine."""

    total_repairs: int = 0
    """Probes that auto-fixed something plus builds that succeeded after a fix."""

    total_escalations: int = 0
    probes_run: int = 0
    builds_run: int = 0
    deploys_run: int = 0
    last_pre_build: datetime | None = None
    last_mid_build: datetime | None = None
    last_deploy: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "total_repairs": self.total_repairs,
            "total_escalations": self.total_escalations,
            "probes_run": self.probes_run,
            "builds_run": self.builds_run,
            "deploys_run": self.deploys_run,
            "last_pre_build": iso(self.last_pre_build),
            "last_mid_build": iso(self.last_mid_build),
            "last_deploy": iso(self.last_deploy),
        }


@dataclass
class DeployResult:
    """Aggregated outcome of ``run_full_deploy``."""

    success: bool
    stage: str
    """Last stage reached: ``probe``, ``build`` or ``guardian``."""

    probe: ProbeReport | None = None
    build: SupervisorResult | None = None
    start_ok: bool | None = None
    """Start command outcome; None when no start command ran."""

    guardian_monitors: list[str] = field(default_factory=list)
    message: str = ""
    error: str | None = None
    duration_seconds: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "stage": self.stage,
            "message": self.message,
            "probe": self.probe.to_dict() if self.probe else None,
            "build": self.build.to_dict() if self.build else None,
            "start_ok": self.start_ok,
            "guardian_monitors": self.guardian_monitors,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
            "timestamp": self.timestamp.isoformat(),
        }


class RemediationEngine:
    """Composes prober, supervisor and guardian into a deploy pipeline."""

    def __init__(
        self,
        config: MenderConfig,
        executor: CommandExecutor,
        library: PatternLibrary,
        memory: RepairMemory,
        fixes: FixRunner,
        audit: AuditTrail,
        prober: Prober,
        supervisor: BuildSupervisor,
        guardian: Guardian,
        event_bus: EventBus | None = None,
    ) -> None:
        self.config = config
        self.executor = executor
        self.library = library
        self.memory = memory
        self.fixes = fixes
        self.audit = audit
        self.prober = prober
        self.supervisor = supervisor
        self.guardian = guardian
        self.event_bus = event_bus
        self.counters = MaturityCounters()
        self._started_at = time.monotonic()

    @classmethod
    def from_config(
        cls,
        config: MenderConfig | None = None,
        *,
        executor: CommandExecutor | None = None,
        diagnostician: Diagnostician | None = None,
        broadcaster: Broadcaster | None = None,
        sinks: list[AuditSink] | None = None,
        with_default_monitors: bool = True,
    ) -> RemediationEngine:
        """Build a fully wired engine.

        When no broadcaster is given an EventBus is created; call ``start``
        to begin delivering its events.

        Raises:
            MemoryPersistenceError: The repair memory file exists but is corrupt.
        """
        config = config or MenderConfig()
        executor = executor or ShellCommandExecutor()

        memory = RepairMemory(config.memory.path)
        loaded = memory.load()
        _logger.info("engine.memory_loaded", entries=loaded, path=str(config.memory.path))

        event_bus: EventBus | None = None
        if broadcaster is None:
            event_bus = EventBus(max_queue_size=config.audit.broadcast_queue_size)
            broadcaster = event_bus
        audit_sinks: list[AuditSink] = list(sinks or [])
        if config.audit.jsonl_path is not None:
            audit_sinks.append(JsonlAuditSink(config.audit.jsonl_path))
        audit = AuditTrail(audit_sinks, broadcaster, history_size=config.audit.history_size)

        library = PatternLibrary()
        fixes = FixRunner(executor, timeout_seconds=config.supervisor.fix_timeout_seconds)
        prober = Prober(executor, fixes, memory, audit, config.probe)
        supervisor = BuildSupervisor(
            executor, library, memory, fixes, audit, config.supervisor, diagnostician
        )
        guardian = Guardian(
            audit,
            check_timeout_seconds=config.guardian.check_timeout_seconds,
            min_interval_seconds=config.guardian.min_interval_seconds,
        )
        if with_default_monitors:
            guardian.register_all(build_default_monitors(config, executor, memory))

        return cls(
            config, executor, library, memory, fixes, audit, prober, supervisor, guardian, event_bus
        )

    async def start(self) -> None:
        if self.event_bus is not None:
            await self.event_bus.start()

    async def shutdown(self) -> None:
        """Stop the guardian and the event bus, then flush repair memory."""
        await self.guardian.stop()
        if self.event_bus is not None:
            await self.event_bus.shutdown()
        await run_in_thread(self.memory.flush)
        _logger.info("engine.shutdown")

    # ─── Phases ───────────────────────────────────────────────────────

    async def run_probe(self, project_root: Path | None = None) -> ProbeReport:
        report = await self.prober.run_probe(self._root(project_root))
        self.counters.probes_run += 1
        self.counters.last_pre_build = datetime.now(UTC)
        if report.auto_fixed > 0:
            self.counters.total_repairs += 1
        return report

    async def run_build(
        self,
        build_command: str | None = None,
        project_root: Path | None = None,
        *,
        max_retries: int | None = None,
        deadline_seconds: float | None = None,
    ) -> SupervisorResult:
        result = await self.supervisor.run_supervisor(
            build_command,
            self._root(project_root),
            max_retries=max_retries,
            deadline_seconds=deadline_seconds,
        )
        self.counters.builds_run += 1
        self.counters.last_mid_build = datetime.now(UTC)
        if result.success and result.fixes_applied:
            self.counters.total_repairs += 1
        if result.escalation is not None:
            self.counters.total_escalations += 1
        return result

    async def run_full_deploy(
        self,
        project_root: Path | None = None,
        build_command: str | None = None,
        start_command: str | None = None,
    ) -> DeployResult:
        """Probe, build with repair, start, then hand over to the guardian.

        ``start_command`` falls back to the configured one. Never raises.
        """
        root = self._root(project_root)
        started = time.monotonic()
        self.counters.deploys_run += 1
        self.counters.last_deploy = datetime.now(UTC)
        ctx = RemediationContext(phase=Phase.DEPLOY.value, project_root=str(root))
        with with_context(ctx):
            try:
                result = await self._deploy(root, build_command, start_command)
            except Exception as e:
                _logger.exception("engine.deploy_failed", error=str(e))
                result = DeployResult(success=False, stage="probe", message="internal error", error=str(e))
            result.duration_seconds = time.monotonic() - started
            return result

    async def _deploy(
        self,
        root: Path,
        build_command: str | None,
        start_command: str | None,
    ) -> DeployResult:
        probe = await self.run_probe(root)
        if probe.blocked:
            await self.audit.alog(Phase.DEPLOY, "prober_blocked", {
                "total_issues": probe.total_issues,
                "critical": [i.message for i in probe.critical_issues],
            })
            _logger.warning("engine.deploy_blocked", total_issues=probe.total_issues)
            return DeployResult(
                success=False,
                stage="probe",
                probe=probe,
                message="pre-build scan found unresolved critical issues",
            )

        build = await self.run_build(build_command, root)
        if not build.success:
            return DeployResult(
                success=False,
                stage="build",
                probe=probe,
                build=build,
                message="build failed after repair attempts",
            )

        start_ok: bool | None = None
        command = start_command or self.config.supervisor.start_command
        if command:
            res = await self.executor.execute(
                command, self.config.supervisor.start_timeout_seconds, cwd=root
            )
            start_ok = res.ok
            if not res.ok:
                _logger.warning("engine.start_command_failed", command=command, exit_code=res.exit_code)
                await self.audit.alog(Phase.DEPLOY, "start_command_failed", {
                    "command": command,
                    "exit_code": res.exit_code,
                    "timed_out": res.timed_out,
                    "output": res.output[-1000:],
                })

        await self.guardian.start()
        await self.audit.alog(Phase.DEPLOY, "full_deploy_success", {
            "probe_issues": probe.total_issues,
            "build_attempts": build.attempts,
            "guardian_monitors": len(self.guardian.monitor_names),
        })
        _logger.info("engine.deploy_succeeded", build_attempts=build.attempts)
        return DeployResult(
            success=True,
            stage="guardian",
            probe=probe,
            build=build,
            start_ok=start_ok,
            guardian_monitors=self.guardian.monitor_names,
            message="deployed",
        )

    # ─── Reporting ────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        statuses = self.guardian.statuses()
        checked = [s["last_checked"] for s in statuses.values() if s["last_checked"]]
        return {
            "counters": self.counters.to_dict(),
            "last_guardian_check": max(checked) if checked else None,
            "guardian_running": self.guardian.running,
            "monitors": len(statuses),
            "memory_entries": len(self.memory),
            "patterns": len(self.library),
            "uptime_seconds": round(time.monotonic() - self._started_at, 1),
        }

    def _root(self, project_root: Path | None) -> Path:
        return Path(project_root) if project_root is not None else self.config.project_root


__all__ = ["DeployResult", "MaturityCounters", "RemediationEngine"]
