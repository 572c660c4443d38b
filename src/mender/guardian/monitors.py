"""Built-in runtime monitors.

Each monitor is a small class with an async ``check`` returning a result
dict (always with ``healthy``) and an async ``repair`` returning the
RepairActions it took. Repairs are bounded: they collect
garbage, prune caches, restart a container a limited number of times per
hour, or renew a certificate. Anything larger is recorded for a human.
"""

from __future__ import annotations

import asyncio
import gc
import shlex
import shutil
import time
from collections import defaultdict, deque
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
import psutil

from mender.core.config import MenderConfig
from mender.execution.commands import Capability, CommandExecutor
from mender.execution.task_utils import run_in_thread
from mender.guardian.models import Monitor, MonitorResult, RepairAction
from mender.memory.store import RepairMemory
from mender.preflight.checks import certificate_days_left, certificate_domains

_MB = 1024 * 1024
_HOUR = 3600.0


class ProcessMemoryMonitor:
    """RSS of this process and overall system memory pressure."""

    def __init__(self, max_process_mb: float, system_percent_limit: float) -> None:
        self._max_process_mb = max_process_mb
        self._system_limit = system_percent_limit

    async def check(self) -> MonitorResult:
        rss_mb = psutil.Process().memory_info().rss / _MB
        system_percent = psutil.virtual_memory().percent
        return {
            "healthy": rss_mb < self._max_process_mb and system_percent < self._system_limit,
            "rss_mb": round(rss_mb, 1),
            "system_percent": system_percent,
            "max_process_mb": self._max_process_mb,
        }

    async def repair(self, result: MonitorResult) -> list[RepairAction]:
        before = psutil.Process().memory_info().rss / _MB
        collected = gc.collect()
        after = psutil.Process().memory_info().rss / _MB
        return [RepairAction("memory_pressure_gc", {
            "collected_objects": collected,
            "rss_before_mb": round(before, 1),
            "rss_after_mb": round(after, 1),
            "system_percent": result.get("system_percent"),
        })]


class DiskSpaceMonitor:
    """Usage of one filesystem; under pressure removes old logs and prunes containers."""

    def __init__(
        self,
        executor: CommandExecutor,
        path: Path,
        unhealthy_percent: float,
        warning_percent: float,
        prune_percent: float,
        log_dir: Path | None = None,
        log_retention_days: int = 3,
    ) -> None:
        self._executor = executor
        self._path = path
        self._unhealthy = unhealthy_percent
        self._warning = warning_percent
        self._prune = prune_percent
        self._log_dir = log_dir
        self._retention_seconds = log_retention_days * 86400

    async def check(self) -> MonitorResult:
        usage = shutil.disk_usage(self._path)
        percent = usage.used / usage.total * 100 if usage.total else 0.0
        return {
            "healthy": percent < self._unhealthy,
            "used_percent": round(percent, 1),
            "free_gb": round(usage.free / (1024 * _MB), 2),
            "warning": percent >= self._warning,
            "critical": percent >= self._prune,
        }

    async def repair(self, result: MonitorResult) -> list[RepairAction]:
        actions: list[RepairAction] = []
        removed = self._remove_old_logs()
        if removed:
            actions.append(RepairAction("old_logs_removed", {"files": removed}))
        if result.get("critical"):
            res = await self._executor.execute(
                "docker system prune -f",
                120.0,
                requires=(Capability.DOCKER,),
            )
            action = "docker_prune_skipped" if res.skipped else "docker_prune"
            actions.append(RepairAction(action, {
                "used_percent": result.get("used_percent"),
                "ok": res.ok,
            }))
        if not actions:
            actions.append(RepairAction("disk_pressure", {
                "used_percent": result.get("used_percent"),
                "message": "nothing safe to remove",
            }))
        return actions

    def _remove_old_logs(self) -> int:
        if self._log_dir is None or not self._log_dir.is_dir():
            return 0
        cutoff = time.time() - self._retention_seconds
        removed = 0
        for log_file in self._log_dir.glob("*.log*"):
            try:
                if log_file.is_file() and log_file.stat().st_mtime < cutoff:
                    log_file.unlink()
                    removed += 1
            except OSError:
                continue
        return removed


class EndpointMonitor:
    """HTTP reachability of the running service."""

    def __init__(
        self,
        base_url: str,
        endpoints: list[str],
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._endpoints = endpoints
        self._timeout = timeout_seconds
        self._transport = transport

    async def check(self) -> MonitorResult:
        results: list[dict[str, Any]] = []
        async with httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout, transport=self._transport
        ) as client:
            for endpoint in self._endpoints:
                started = time.monotonic()
                try:
                    response = await client.get(endpoint)
                except httpx.HTTPError as e:
                    results.append({"endpoint": endpoint, "healthy": False, "error": str(e) or type(e).__name__})
                    continue
                results.append({
                    "endpoint": endpoint,
                    "healthy": response.status_code < 500,
                    "status_code": response.status_code,
                    "latency_ms": round((time.monotonic() - started) * 1000, 1),
                })
        return {
            "healthy": all(r["healthy"] for r in results),
            "endpoints": results,
        }

    async def repair(self, result: MonitorResult) -> list[RepairAction]:
        failing = [r for r in result.get("endpoints", []) if not r.get("healthy")]
        return [RepairAction("endpoint_unreachable", {
            "base_url": self._base_url,
            "endpoints": failing,
        })]


class ContainerMonitor:
    """Container health via ``docker ps``, with rate-limited restarts."""

    _FORMAT = "'{{.Names}}|{{.Status}}|{{.State}}'"

    def __init__(
        self,
        executor: CommandExecutor,
        prefix: str = "",
        restart_loop_threshold: int = 5,
        restarts_per_hour: int = 3,
    ) -> None:
        self._executor = executor
        self._prefix = prefix
        self._loop_threshold = restart_loop_threshold
        self._restarts_per_hour = restarts_per_hour
        self._restarts: dict[str, deque[float]] = defaultdict(deque)

    async def check(self) -> MonitorResult:
        res = await self._executor.execute(
            f"docker ps --format {self._FORMAT}",
            10.0,
            requires=(Capability.DOCKER,),
        )
        if res.skipped:
            return {"healthy": True, "containers": [], "note": "container runtime not available"}
        if not res.ok:
            return {"healthy": False, "containers": [], "error": res.output[:500]}

        containers = []
        for line in res.stdout.splitlines():
            parts = line.strip().strip("'").split("|")
            if len(parts) != 3 or not parts[0].startswith(self._prefix):
                continue
            name, status, state = parts
            restart_count = _restart_count(status)
            unhealthy = state == "unhealthy" or "unhealthy" in status
            restarting = state == "restarting" or restart_count > 3
            containers.append({
                "name": name,
                "status": status,
                "state": state,
                "restart_count": restart_count,
                "healthy": not (unhealthy or restarting),
            })
        return {
            "healthy": all(c["healthy"] for c in containers),
            "containers": containers,
            "unhealthy_count": sum(1 for c in containers if not c["healthy"]),
        }

    async def repair(self, result: MonitorResult) -> list[RepairAction]:
        actions: list[RepairAction] = []
        for container in result.get("containers", []):
            if container["healthy"]:
                continue
            name = container["name"]
            if container["restart_count"] > self._loop_threshold:
                actions.append(RepairAction("container_restart_loop", {
                    "container": name,
                    "restart_count": container["restart_count"],
                    "message": "restart loop, manual intervention needed",
                }))
                continue
            if not self._restart_allowed(name):
                actions.append(RepairAction("container_restart_limited", {
                    "container": name,
                    "restarts_last_hour": len(self._restarts[name]),
                }))
                continue
            res = await self._executor.execute(
                f"docker restart {shlex.quote(name)}",
                60.0,
                requires=(Capability.DOCKER,),
            )
            self._restarts[name].append(time.monotonic())
            actions.append(RepairAction("container_restarted", {
                "container": name,
                "ok": res.ok,
                "state": container["state"],
            }))
        return actions

    def _restart_allowed(self, name: str) -> bool:
        history = self._restarts[name]
        now = time.monotonic()
        while history and now - history[0] > _HOUR:
            history.popleft()
        return len(history) < self._restarts_per_hour


def _restart_count(status: str) -> int:
    # "Restarting (1) 5 seconds ago"
    if "(" not in status:
        return 0
    inner = status.split("(", 1)[1].split(")", 1)[0]
    return int(inner) if inner.isdigit() and status.startswith("Restarting") else 0


class CertificateMonitor:
    """Days until the earliest TLS certificate expiry; renews when critical."""

    def __init__(
        self,
        executor: CommandExecutor,
        cert_dir: Path,
        unhealthy_days: int,
        warning_days: int,
        critical_days: int,
        renew_command: str | None,
    ) -> None:
        self._executor = executor
        self._cert_dir = cert_dir
        self._unhealthy_days = unhealthy_days
        self._warning_days = warning_days
        self._critical_days = critical_days
        self._renew_command = renew_command

    async def check(self) -> MonitorResult:
        certs = []
        for domain_dir in certificate_domains(self._cert_dir):
            cert = domain_dir / "fullchain.pem"
            if not cert.exists():
                continue
            days = await certificate_days_left(self._executor, cert)
            if days is not None:
                certs.append({"domain": domain_dir.name, "days_left": days})
        if not certs:
            return {"healthy": True, "certs": [], "note": "no readable certificates"}
        min_days = min(c["days_left"] for c in certs)
        return {
            "healthy": min_days > self._unhealthy_days,
            "certs": certs,
            "min_days_left": min_days,
            "warning": min_days < self._warning_days,
            "critical": min_days < self._critical_days,
        }

    async def repair(self, result: MonitorResult) -> list[RepairAction]:
        if result.get("critical") and self._renew_command:
            res = await self._executor.execute(self._renew_command, 120.0)
            return [RepairAction("certificate_renewal", {
                "min_days_left": result.get("min_days_left"),
                "ok": res.ok,
                "output": res.output[-500:],
            })]
        return [RepairAction("certificate_expiry_warning", {
            "min_days_left": result.get("min_days_left"),
        })]


class MemoryConsistencyMonitor:
    """Repair memory's derived fields agree with its counters."""

    def __init__(self, memory: RepairMemory) -> None:
        self._memory = memory

    async def check(self) -> MonitorResult:
        problems = self._memory.verify()
        return {
            "healthy": not problems,
            "entries": len(self._memory),
            "problems": problems[:20],
            "problem_count": len(problems),
        }

    async def repair(self, result: MonitorResult) -> list[RepairAction]:
        changed = await run_in_thread(self._memory.reconcile)
        return [RepairAction("memory_reconciled", {
            "problems": result.get("problem_count", 0),
            "entries_changed": changed,
        })]


class EventLoopLagMonitor:
    """Scheduling delay of the asyncio loop the guardian runs on."""

    def __init__(self, unhealthy_ms: float, critical_ms: float) -> None:
        self._unhealthy_ms = unhealthy_ms
        self._critical_ms = critical_ms

    async def check(self) -> MonitorResult:
        started = time.perf_counter()
        await asyncio.sleep(0)
        lag_ms = (time.perf_counter() - started) * 1000
        return {
            "healthy": lag_ms < self._unhealthy_ms,
            "lag_ms": round(lag_ms, 2),
            "critical": lag_ms > self._critical_ms,
        }

    async def repair(self, result: MonitorResult) -> list[RepairAction]:
        if result.get("critical"):
            collected = gc.collect()
            return [RepairAction("event_loop_critical", {
                "lag_ms": result.get("lag_ms"),
                "collected_objects": collected,
            })]
        return [RepairAction("event_loop_warning", {"lag_ms": result.get("lag_ms")})]


class LockfileDriftMonitor:
    """package.json edited after its lockfile in any watched directory."""

    def __init__(self, project_root: Path, dirs: list[str]) -> None:
        self._project_root = project_root
        self._dirs = dirs

    async def check(self) -> MonitorResult:
        checks = []
        for rel in self._dirs:
            pkg = self._project_root / rel / "package.json"
            lock = self._project_root / rel / "package-lock.json"
            if not pkg.is_file() or not lock.is_file():
                continue
            pkg_mtime = pkg.stat().st_mtime
            lock_mtime = lock.stat().st_mtime
            checks.append({
                "dir": rel,
                "drift": pkg_mtime > lock_mtime,
                "package_modified": datetime.fromtimestamp(pkg_mtime, UTC).isoformat(),
                "lockfile_modified": datetime.fromtimestamp(lock_mtime, UTC).isoformat(),
            })
        return {
            "healthy": not any(c["drift"] for c in checks),
            "checks": checks,
        }

    async def repair(self, result: MonitorResult) -> list[RepairAction]:
        return [
            RepairAction("lockfile_drift_detected", {
                "dir": c["dir"],
                "package_modified": c["package_modified"],
                "lockfile_modified": c["lockfile_modified"],
            })
            for c in result.get("checks", [])
            if c["drift"]
        ]


def build_default_monitors(
    config: MenderConfig,
    executor: CommandExecutor,
    memory: RepairMemory,
    project_root: Path | None = None,
) -> list[Monitor]:
    """The standard monitor set, wired from configuration."""
    g = config.guardian
    root = project_root or config.project_root

    def interval(name: str) -> float:
        return g.intervals.get(name, 60.0)

    pairs: list[tuple[str, str, Any]] = [
        ("process_memory", "Process and system memory pressure",
         ProcessMemoryMonitor(g.max_process_memory_mb, g.system_memory_percent_limit)),
        ("memory_consistency", "Repair memory internal consistency",
         MemoryConsistencyMonitor(memory)),
        ("disk_space", "Filesystem usage",
         DiskSpaceMonitor(
             executor,
             g.disk_path,
             g.disk_unhealthy_percent,
             g.disk_warning_percent,
             g.disk_prune_percent,
             g.log_dir,
             g.log_retention_days,
         )),
        ("endpoint_health", "Service endpoints respond",
         EndpointMonitor(g.endpoint_base_url, g.endpoints, g.endpoint_timeout_seconds)),
        ("container_health", "Containers are running and healthy",
         ContainerMonitor(
             executor,
             g.container_prefix,
             g.container_restart_loop_threshold,
             g.container_restarts_per_hour,
         )),
        ("event_loop_lag", "Event loop responsiveness",
         EventLoopLagMonitor(g.event_loop_lag_unhealthy_ms, g.event_loop_lag_critical_ms)),
        ("certificate_expiry", "TLS certificate lifetime",
         CertificateMonitor(
             executor,
             config.probe.cert_dir,
             g.cert_unhealthy_days,
             config.probe.cert_warning_days,
             g.cert_critical_days,
             g.cert_renew_command,
         )),
        ("lockfile_drift", "Lockfiles newer than their package.json",
         LockfileDriftMonitor(root, g.lockfile_dirs)),
    ]
    return [
        Monitor(name, interval(name), check=impl.check, repair=impl.repair, description=description)
        for name, description, impl in pairs
    ]


__all__ = [
    "CertificateMonitor",
    "ContainerMonitor",
    "DiskSpaceMonitor",
    "EndpointMonitor",
    "EventLoopLagMonitor",
    "LockfileDriftMonitor",
    "MemoryConsistencyMonitor",
    "ProcessMemoryMonitor",
    "build_default_monitors",
]
