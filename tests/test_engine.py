"""Tests for mender.engine.RemediationEngine: wiring, deploy pipeline and counters."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from mender.audit.records import Phase
from mender.audit.sinks import InMemoryAuditSink
from mender.core.config import AuditConfig, MenderConfig
from mender.core.errors import MemoryPersistenceError
from mender.core.logging import get_current_context
from mender.engine import RemediationEngine
from mender.guardian import Monitor, MonitorResult
from mender.memory import FixDescriptor
from tests.helpers import FakeExecutor, audit_actions, failed, ok, write_package

BUILD = "npm run build"
START = "docker compose up -d"
MISSING_MODULE = "Error: Cannot find module 'lodash'"
SQLITE_MISMATCH = "Error: better-sqlite3 was compiled against a different Node.js version"


class _Recorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        self.events.append((event_name, payload))


async def _healthy() -> MonitorResult:
    return {"healthy": True}


class _ContextExecutor(FakeExecutor):
    """Records the active phase and run id of every command."""

    def __init__(self) -> None:
        super().__init__()
        self.contexts: dict[str, tuple[str, str]] = {}

    async def execute(self, command, timeout_seconds, cwd=None, requires=()):
        ctx = get_current_context()
        if ctx is not None:
            self.contexts[command] = (ctx.phase, ctx.run_id)
        return await super().execute(command, timeout_seconds, cwd, requires)


def _engine(config: MenderConfig, executor: FakeExecutor, **kwargs) -> RemediationEngine:
    kwargs.setdefault("with_default_monitors", False)
    return RemediationEngine.from_config(config, executor=executor, **kwargs)


# ─── Construction ─────────────────────────────────────────────────────


class TestFromConfig:
    def test_wires_default_monitors(self, config: MenderConfig, executor: FakeExecutor):
        engine = RemediationEngine.from_config(config, executor=executor)
        assert engine.guardian.monitor_names == list(config.guardian.intervals)
        assert engine.guardian.min_interval_seconds == config.guardian.min_interval_seconds
        assert engine.event_bus is not None
        assert engine.audit.broadcaster is engine.event_bus

    def test_external_broadcaster_replaces_event_bus(self, config, executor):
        recorder = _Recorder()
        engine = _engine(config, executor, broadcaster=recorder)
        assert engine.event_bus is None
        engine.audit.log(Phase.DEPLOY, "manual_note")
        assert recorder.events[0][0] == "repair:logged"
        assert recorder.events[0][1]["action"] == "manual_note"

    def test_loads_existing_memory(self, config: MenderConfig, executor: FakeExecutor):
        first = _engine(config, executor)
        first.memory.record(
            "Cannot find module 'lodash'",
            FixDescriptor(name="install_package", confidence=0.9, source="pattern"),
        )
        first.memory.flush()
        second = _engine(config, executor)
        assert len(second.memory) == 1

    def test_corrupt_memory_raises(self, config: MenderConfig, executor: FakeExecutor):
        config.memory.path.parent.mkdir(parents=True, exist_ok=True)
        config.memory.path.write_text("{not json")
        with pytest.raises(MemoryPersistenceError):
            _engine(config, executor)

    def test_jsonl_sink_and_extra_sinks(self, config: MenderConfig, executor, tmp_path: Path):
        config.audit = AuditConfig(jsonl_path=tmp_path / "audit" / "repairs.jsonl")
        extra = InMemoryAuditSink()
        engine = _engine(config, executor, sinks=[extra])
        engine.audit.log(Phase.DEPLOY, "manual_note", {"by": "test"})
        lines = (tmp_path / "audit" / "repairs.jsonl").read_text().splitlines()
        assert json.loads(lines[0])["action"] == "manual_note"
        assert [r.action for r in extra.recent(5)] == ["manual_note"]

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, config: MenderConfig, executor: FakeExecutor):
        engine = _engine(config, executor)
        await engine.start()
        assert engine.event_bus.running
        await engine.shutdown()
        assert not engine.event_bus.running
        assert not engine.guardian.running


# ─── Full deploy ──────────────────────────────────────────────────────


class TestFullDeploy:
    @pytest.mark.asyncio
    async def test_success_hands_over_to_guardian(self, config, executor, project: Path):
        engine = _engine(config, executor)
        engine.guardian.register(Monitor("noop", 60.0, check=_healthy))
        try:
            result = await engine.run_full_deploy(build_command=BUILD)
            assert result.success
            assert result.stage == "guardian"
            assert result.start_ok is True
            assert result.guardian_monitors == ["noop"]
            assert engine.guardian.running
            assert executor.calls[-2:] == [BUILD, START]
            assert executor.cwds[-1] == project
            actions = audit_actions(engine.audit)
            assert actions[-2:] == ["guardian_started", "full_deploy_success"]
        finally:
            await engine.shutdown()

    @pytest.mark.asyncio
    async def test_blocked_probe_stops_before_build(self, config, project: Path):
        executor = FakeExecutor(capabilities=())
        write_package(project, lock=False)
        engine = _engine(config, executor)

        result = await engine.run_full_deploy(build_command=BUILD)
        assert not result.success
        assert result.stage == "probe"
        assert result.probe is not None and result.probe.blocked
        assert result.build is None
        assert BUILD not in executor.calls
        assert not engine.guardian.running
        record = engine.audit.recent(1)[0]
        assert record.action == "prober_blocked"
        assert record.phase is Phase.DEPLOY
        assert record.details["total_issues"] >= 1

    @pytest.mark.asyncio
    async def test_failed_build_stops_before_guardian(self, config, executor):
        executor.script(BUILD, failed(SQLITE_MISMATCH))
        engine = _engine(config, executor)

        result = await engine.run_full_deploy(build_command=BUILD)
        assert not result.success
        assert result.stage == "build"
        assert result.build.escalation is not None
        assert START not in executor.calls
        assert not engine.guardian.running
        assert engine.counters.total_escalations == 1

    @pytest.mark.asyncio
    async def test_start_command_failure_audited(self, config, executor):
        executor.script(START, failed("no configuration file provided"))
        engine = _engine(config, executor)
        try:
            result = await engine.run_full_deploy(build_command=BUILD)
            assert result.success
            assert result.start_ok is False
            assert "start_command_failed" in audit_actions(engine.audit)
        finally:
            await engine.shutdown()

    @pytest.mark.asyncio
    async def test_explicit_start_command(self, config, executor):
        engine = _engine(config, executor)
        try:
            await engine.run_full_deploy(build_command=BUILD, start_command="node server.js")
            assert executor.calls[-1] == "node server.js"
        finally:
            await engine.shutdown()

    @pytest.mark.asyncio
    async def test_internal_error_reported(self, config, executor):
        engine = _engine(config, executor)
        with patch.object(engine.prober, "run_probe", side_effect=RuntimeError("disk vanished")):
            result = await engine.run_full_deploy(build_command=BUILD)
        assert not result.success
        assert result.stage == "probe"
        assert result.error == "disk vanished"

    @pytest.mark.asyncio
    async def test_one_run_id_across_phases(self, config, project: Path):
        executor = _ContextExecutor()
        engine = _engine(config, executor)
        seen: list[tuple[str, str]] = []

        async def check() -> MonitorResult:
            ctx = get_current_context()
            seen.append((ctx.phase, ctx.run_id))
            return {"healthy": True}

        engine.guardian.register(Monitor("ctx", 0.01, check=check))
        try:
            result = await engine.run_full_deploy(build_command=BUILD)
            await asyncio.sleep(0.05)
        finally:
            await engine.shutdown()

        assert result.success
        build_phase, run_id = executor.contexts[BUILD]
        assert build_phase == Phase.MID_BUILD.value
        assert executor.contexts[START] == (Phase.DEPLOY.value, run_id)
        assert seen and set(seen) == {(Phase.POST_BUILD.value, run_id)}
        pre_build = [v for c, v in executor.contexts.items() if c not in (BUILD, START)]
        assert all(v == (Phase.PRE_BUILD.value, run_id) for v in pre_build)

    @pytest.mark.asyncio
    async def test_separate_deploys_get_separate_run_ids(self, config):
        executor = _ContextExecutor()
        engine = _engine(config, executor)
        run_ids = []
        try:
            for _ in range(2):
                await engine.run_full_deploy(build_command=BUILD)
                run_ids.append(executor.contexts[BUILD][1])
        finally:
            await engine.shutdown()
        assert run_ids[0] != run_ids[1]

    @pytest.mark.asyncio
    async def test_result_serializable(self, config, executor):
        engine = _engine(config, executor)
        try:
            data = (await engine.run_full_deploy(build_command=BUILD)).to_dict()
        finally:
            await engine.shutdown()
        assert data["stage"] == "guardian"
        assert data["probe"]["blocked"] is False
        assert data["build"]["state"] == "succeeded"
        json.dumps(data)


# ─── Counters and status ──────────────────────────────────────────────


class TestCounters:
    @pytest.mark.asyncio
    async def test_build_after_fix_counts_as_repair(self, config, executor):
        engine = _engine(config, executor)
        executor.script(BUILD, failed(MISSING_MODULE), ok())
        await engine.run_build(BUILD)
        assert engine.counters.builds_run == 1
        assert engine.counters.total_repairs == 1
        assert engine.counters.last_mid_build is not None

    @pytest.mark.asyncio
    async def test_probe_auto_fix_counts_as_repair(self, config, executor, project: Path):
        write_package(project, lock=False)
        engine = _engine(config, executor)
        report = await engine.run_probe()
        assert report.auto_fixed == 1
        assert engine.counters.probes_run == 1
        assert engine.counters.total_repairs == 1

    @pytest.mark.asyncio
    async def test_clean_build_is_not_a_repair(self, config, executor):
        engine = _engine(config, executor)
        await engine.run_build(BUILD)
        assert engine.counters.total_repairs == 0
        assert engine.counters.total_escalations == 0

    @pytest.mark.asyncio
    async def test_status(self, config, executor):
        engine = _engine(config, executor)
        engine.guardian.register(Monitor("noop", 60.0, check=_healthy))
        assert engine.status()["last_guardian_check"] is None
        await engine.guardian.run_check("noop")

        status = engine.status()
        assert set(status) == {
            "counters", "last_guardian_check", "guardian_running", "monitors",
            "memory_entries", "patterns", "uptime_seconds",
        }
        assert status["monitors"] == 1
        assert status["last_guardian_check"] is not None
        assert status["guardian_running"] is False
        assert status["patterns"] == len(engine.library)
        assert status["counters"]["deploys_run"] == 0
