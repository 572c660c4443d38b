"""Tests for the built-in guardian monitors and their bounded repairs."""

from __future__ import annotations

import os
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest

from mender.core.config import DEFAULT_MONITOR_INTERVALS, MenderConfig
from mender.execution.commands import Capability
from mender.guardian.monitors import (
    CertificateMonitor,
    ContainerMonitor,
    DiskSpaceMonitor,
    EndpointMonitor,
    EventLoopLagMonitor,
    LockfileDriftMonitor,
    MemoryConsistencyMonitor,
    ProcessMemoryMonitor,
    _restart_count,
    build_default_monitors,
)
from mender.memory import FixDescriptor, RepairMemory, signature_key
from tests.helpers import FakeExecutor, failed, ok


def _age(path: Path, days: float) -> None:
    then = time.time() - days * 86400
    os.utime(path, (then, then))


# ─── Process memory ───────────────────────────────────────────────────


class TestProcessMemory:
    @pytest.mark.asyncio
    async def test_within_limits(self):
        result = await ProcessMemoryMonitor(1e9, 101.0).check()
        assert result["healthy"] is True
        assert result["rss_mb"] > 0
        assert "system_percent" in result

    @pytest.mark.asyncio
    async def test_over_process_limit(self):
        monitor = ProcessMemoryMonitor(0.001, 101.0)
        result = await monitor.check()
        assert result["healthy"] is False
        actions = await monitor.repair(result)
        assert [a.action for a in actions] == ["memory_pressure_gc"]
        assert actions[0].details["collected_objects"] >= 0


# ─── Disk space ───────────────────────────────────────────────────────


class TestDiskSpace:
    def _monitor(self, executor: FakeExecutor, tmp_path: Path, **kwargs) -> DiskSpaceMonitor:
        defaults = dict(unhealthy_percent=85.0, warning_percent=75.0, prune_percent=90.0)
        defaults.update(kwargs)
        return DiskSpaceMonitor(executor, tmp_path, **defaults)

    @pytest.mark.asyncio
    async def test_check_reports_usage(self, executor, tmp_path: Path):
        result = await self._monitor(executor, tmp_path, unhealthy_percent=100.0).check()
        assert result["healthy"] is True
        assert 0 <= result["used_percent"] <= 100
        assert result["free_gb"] >= 0

    @pytest.mark.asyncio
    async def test_tiny_threshold_is_unhealthy(self, executor, tmp_path: Path):
        result = await self._monitor(
            executor, tmp_path, unhealthy_percent=0.0001, warning_percent=0.0001
        ).check()
        assert result["healthy"] is False
        assert result["warning"] is True

    @pytest.mark.asyncio
    async def test_removes_only_old_logs(self, executor, tmp_path: Path):
        logs = tmp_path / "logs"
        logs.mkdir()
        old = logs / "mender.log.1"
        old.write_text("old")
        _age(old, 10)
        fresh = logs / "mender.log"
        fresh.write_text("fresh")
        monitor = DiskSpaceMonitor(executor, tmp_path, 85.0, 75.0, 90.0, log_dir=logs)

        actions = await monitor.repair({"healthy": False, "used_percent": 86.0, "critical": False})
        assert [a.action for a in actions] == ["old_logs_removed"]
        assert actions[0].details == {"files": 1}
        assert not old.exists()
        assert fresh.exists()
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_prunes_when_critical(self, executor, tmp_path: Path):
        monitor = self._monitor(executor, tmp_path)
        actions = await monitor.repair({"healthy": False, "used_percent": 95.0, "critical": True})
        assert [a.action for a in actions] == ["docker_prune"]
        assert actions[0].details["ok"] is True
        assert executor.calls == ["docker system prune -f"]

    @pytest.mark.asyncio
    async def test_prune_skipped_without_docker(self, tmp_path: Path):
        executor = FakeExecutor(capabilities={Capability.NPM})
        monitor = self._monitor(executor, tmp_path)
        actions = await monitor.repair({"healthy": False, "used_percent": 95.0, "critical": True})
        assert [a.action for a in actions] == ["docker_prune_skipped"]
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_nothing_safe_to_remove(self, executor, tmp_path: Path):
        monitor = self._monitor(executor, tmp_path)
        actions = await monitor.repair({"healthy": False, "used_percent": 86.0, "critical": False})
        assert [a.action for a in actions] == ["disk_pressure"]


# ─── Endpoints ────────────────────────────────────────────────────────


class TestEndpoints:
    @staticmethod
    def _transport(codes: dict[str, int], down: set[str] = frozenset()) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path in down:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(codes.get(request.url.path, 404))

        return httpx.MockTransport(handler)

    @pytest.mark.asyncio
    async def test_all_healthy(self):
        monitor = EndpointMonitor(
            "http://service.test",
            ["/health", "/ready"],
            2.0,
            transport=self._transport({"/health": 200, "/ready": 204}),
        )
        result = await monitor.check()
        assert result["healthy"] is True
        assert [e["status_code"] for e in result["endpoints"]] == [200, 204]

    @pytest.mark.asyncio
    async def test_client_errors_count_as_reachable(self):
        monitor = EndpointMonitor(
            "http://service.test", ["/missing"], 2.0, transport=self._transport({})
        )
        result = await monitor.check()
        assert result["healthy"] is True
        assert result["endpoints"][0]["status_code"] == 404

    @pytest.mark.asyncio
    async def test_server_error_and_connection_failure(self):
        monitor = EndpointMonitor(
            "http://service.test",
            ["/health", "/ready"],
            2.0,
            transport=self._transport({"/health": 503}, down={"/ready"}),
        )
        result = await monitor.check()
        assert result["healthy"] is False
        health, ready = result["endpoints"]
        assert health["status_code"] == 503
        assert "connection refused" in ready["error"]

        actions = await monitor.repair(result)
        assert [a.action for a in actions] == ["endpoint_unreachable"]
        assert [e["endpoint"] for e in actions[0].details["endpoints"]] == ["/health", "/ready"]


# ─── Containers ───────────────────────────────────────────────────────


class TestContainers:
    PS = "docker ps"

    def test_restart_count_parsing(self):
        assert _restart_count("Restarting (7) 3 seconds ago") == 7
        assert _restart_count("Up 2 hours (healthy)") == 0
        assert _restart_count("Exited (1) 2 minutes ago") == 0

    @pytest.mark.asyncio
    async def test_parses_and_filters_by_prefix(self, executor: FakeExecutor):
        executor.script(self.PS, ok(
            "app-web|Up 2 hours (healthy)|running\n"
            "app-api|Up 5 minutes (unhealthy)|running\n"
            "other-db|Up 1 hour|running\n"
            "garbage line\n"
        ))
        result = await ContainerMonitor(executor, prefix="app-").check()
        assert [c["name"] for c in result["containers"]] == ["app-web", "app-api"]
        assert result["healthy"] is False
        assert result["unhealthy_count"] == 1

    @pytest.mark.asyncio
    async def test_restarting_container_unhealthy(self, executor: FakeExecutor):
        executor.script(self.PS, ok("worker|Restarting (2) 3 seconds ago|restarting\n"))
        result = await ContainerMonitor(executor).check()
        assert result["containers"][0]["healthy"] is False
        assert result["containers"][0]["restart_count"] == 2

    @pytest.mark.asyncio
    async def test_docker_unavailable_is_healthy(self):
        executor = FakeExecutor(capabilities=())
        result = await ContainerMonitor(executor).check()
        assert result["healthy"] is True
        assert "not available" in result["note"]

    @pytest.mark.asyncio
    async def test_docker_failure_is_unhealthy(self, executor: FakeExecutor):
        executor.script(self.PS, failed("Cannot connect to the Docker daemon"))
        result = await ContainerMonitor(executor).check()
        assert result["healthy"] is False
        assert "Docker daemon" in result["error"]

    @pytest.mark.asyncio
    async def test_restarts_unhealthy_container(self, executor: FakeExecutor):
        executor.script(self.PS, ok("api|Up 5 minutes (unhealthy)|running\n"))
        monitor = ContainerMonitor(executor)
        actions = await monitor.repair(await monitor.check())
        assert [a.action for a in actions] == ["container_restarted"]
        assert executor.calls[-1] == "docker restart api"

    @pytest.mark.asyncio
    async def test_restart_loop_left_alone(self, executor: FakeExecutor):
        executor.script(self.PS, ok("worker|Restarting (9) 1 second ago|restarting\n"))
        monitor = ContainerMonitor(executor, restart_loop_threshold=5)
        actions = await monitor.repair(await monitor.check())
        assert [a.action for a in actions] == ["container_restart_loop"]
        assert executor.count("docker restart") == 0

    @pytest.mark.asyncio
    async def test_restarts_rate_limited(self, executor: FakeExecutor):
        executor.script(self.PS, ok("api|Up 1 minute (unhealthy)|running\n"))
        monitor = ContainerMonitor(executor, restarts_per_hour=2)
        result = await monitor.check()
        seen = []
        for _ in range(3):
            seen.extend(a.action for a in await monitor.repair(result))
        assert seen == ["container_restarted", "container_restarted", "container_restart_limited"]
        assert executor.count("docker restart") == 2


# ─── Certificates ─────────────────────────────────────────────────────


class TestCertificates:
    @staticmethod
    def _enddate(days: int) -> str:
        when = datetime.now(UTC) + timedelta(days=days, hours=1)
        return f"notAfter={when.strftime('%b %d %H:%M:%S %Y')} GMT\n"

    @staticmethod
    def _monitor(executor: FakeExecutor, cert_dir: Path) -> CertificateMonitor:
        return CertificateMonitor(executor, cert_dir, 7, 30, 3, "certbot renew")

    @staticmethod
    def _cert(cert_dir: Path, domain: str) -> None:
        (cert_dir / domain).mkdir(parents=True)
        (cert_dir / domain / "fullchain.pem").write_text("-----BEGIN CERTIFICATE-----\n")

    @pytest.mark.asyncio
    async def test_no_certificates(self, executor, tmp_path: Path):
        result = await self._monitor(executor, tmp_path / "certs").check()
        assert result["healthy"] is True
        assert result["certs"] == []

    @pytest.mark.asyncio
    async def test_healthy_certificate(self, executor, tmp_path: Path):
        self._cert(tmp_path, "example.com")
        executor.script("openssl", ok(self._enddate(60)))
        result = await self._monitor(executor, tmp_path).check()
        assert result["healthy"] is True
        assert result["min_days_left"] == 60
        assert result["warning"] is False

    @pytest.mark.asyncio
    async def test_critical_certificate_renewed(self, executor, tmp_path: Path):
        self._cert(tmp_path, "example.com")
        executor.script("openssl", ok(self._enddate(1)))
        monitor = self._monitor(executor, tmp_path)
        result = await monitor.check()
        assert result["healthy"] is False
        assert result["critical"] is True
        actions = await monitor.repair(result)
        assert [a.action for a in actions] == ["certificate_renewal"]
        assert executor.calls[-1] == "certbot renew"

    @pytest.mark.asyncio
    async def test_unhealthy_but_not_critical_only_warns(self, executor, tmp_path: Path):
        self._cert(tmp_path, "example.com")
        executor.script("openssl", ok(self._enddate(5)))
        monitor = self._monitor(executor, tmp_path)
        result = await monitor.check()
        assert result["healthy"] is False
        actions = await monitor.repair(result)
        assert [a.action for a in actions] == ["certificate_expiry_warning"]
        assert executor.count("certbot") == 0


# ─── Memory consistency ───────────────────────────────────────────────


class TestMemoryConsistency:
    @pytest.mark.asyncio
    async def test_drift_reconciled(self, memory: RepairMemory):
        sig = "Cannot find module 'lodash'"
        entry = memory.record(sig, FixDescriptor(name="install_package", confidence=0.9, source="pattern"))
        monitor = MemoryConsistencyMonitor(memory)
        assert (await monitor.check())["healthy"] is True

        memory._entries[signature_key(sig)] = entry.model_copy(update={"success_rate": 0.75})
        result = await monitor.check()
        assert result["healthy"] is False
        assert result["problem_count"] == 1

        actions = await monitor.repair(result)
        assert actions[0].action == "memory_reconciled"
        assert actions[0].details["entries_changed"] == 1
        assert (await monitor.check())["healthy"] is True


# ─── Event loop ───────────────────────────────────────────────────────


class TestEventLoopLag:
    @pytest.mark.asyncio
    async def test_idle_loop_is_healthy(self):
        result = await EventLoopLagMonitor(1000.0, 2000.0).check()
        assert result["healthy"] is True
        assert result["lag_ms"] >= 0

    @pytest.mark.asyncio
    async def test_repair_escalates_with_severity(self):
        monitor = EventLoopLagMonitor(100.0, 200.0)
        warning = await monitor.repair({"healthy": False, "lag_ms": 150.0, "critical": False})
        critical = await monitor.repair({"healthy": False, "lag_ms": 250.0, "critical": True})
        assert warning[0].action == "event_loop_warning"
        assert critical[0].action == "event_loop_critical"


# ─── Lockfile drift ───────────────────────────────────────────────────


class TestLockfileDrift:
    @staticmethod
    def _pair(root: Path, rel: str, package_age_days: float, lock_age_days: float) -> None:
        d = root / rel
        d.mkdir(parents=True, exist_ok=True)
        (d / "package.json").write_text("{}")
        (d / "package-lock.json").write_text("{}")
        _age(d / "package.json", package_age_days)
        _age(d / "package-lock.json", lock_age_days)

    @pytest.mark.asyncio
    async def test_detects_package_edited_after_lock(self, tmp_path: Path):
        self._pair(tmp_path, ".", package_age_days=2, lock_age_days=1)
        self._pair(tmp_path, "server", package_age_days=1, lock_age_days=2)
        monitor = LockfileDriftMonitor(tmp_path, [".", "server", "frontend"])
        result = await monitor.check()
        assert result["healthy"] is False
        assert [(c["dir"], c["drift"]) for c in result["checks"]] == [(".", False), ("server", True)]

        actions = await monitor.repair(result)
        assert [a.details["dir"] for a in actions] == ["server"]
        assert actions[0].action == "lockfile_drift_detected"

    @pytest.mark.asyncio
    async def test_missing_files_ignored(self, tmp_path: Path):
        result = await LockfileDriftMonitor(tmp_path, ["frontend"]).check()
        assert result == {"healthy": True, "checks": []}


# ─── Default set ──────────────────────────────────────────────────────


class TestDefaultMonitors:
    def test_names_and_intervals(self, config: MenderConfig, executor, memory):
        monitors = build_default_monitors(config, executor, memory)
        assert [m.name for m in monitors] == list(DEFAULT_MONITOR_INTERVALS)
        for monitor in monitors:
            assert monitor.interval_seconds == DEFAULT_MONITOR_INTERVALS[monitor.name]
            assert monitor.repair is not None
            assert monitor.description

    def test_interval_override(self, config: MenderConfig, executor, memory):
        config.guardian.intervals["disk_space"] = 42.0
        monitors = {m.name: m for m in build_default_monitors(config, executor, memory)}
        assert monitors["disk_space"].interval_seconds == 42.0
