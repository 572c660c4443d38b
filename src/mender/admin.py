"""Administrative surface over a running engine.

Every method returns a plain dict with an ``ok`` flag and never raises,
so it can back an HTTP route or an operator console directly. Monitors
can be slowed down or sped up (never below the interval floor) but not
disabled or removed.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from mender.core.errors import MenderError, UnknownMonitorError
from mender.core.logging import get_logger
from mender.engine import RemediationEngine

_logger = get_logger("admin")

_DEFAULT_HISTORY = 20

CommandHandler = Callable[[str | None, dict[str, Any]], Awaitable[dict[str, Any]]]


class AdminSurface:
    """Structured queries and commands for operators."""

    def __init__(self, engine: RemediationEngine) -> None:
        self._engine = engine

    def status(self) -> dict[str, Any]:
        try:
            return {
                "ok": True,
                **self._engine.status(),
                "memory": _stats_summary(self._engine.memory.stats()),
                "guardian": self._engine.guardian.statuses(),
            }
        except Exception as e:
            return _failure("status", e)

    def memory_stats(self) -> dict[str, Any]:
        try:
            return {"ok": True, **self._engine.memory.stats()}
        except Exception as e:
            return _failure("memory_stats", e)

    def memory_entries(self) -> dict[str, Any]:
        try:
            entries = [e.model_dump(mode="json") for e in self._engine.memory.entries()]
            return {"ok": True, "count": len(entries), "entries": entries}
        except Exception as e:
            return _failure("memory_entries", e)

    def patterns(self) -> dict[str, Any]:
        try:
            patterns = self._engine.library.list_patterns()
            return {"ok": True, "count": len(patterns), "patterns": patterns}
        except Exception as e:
            return _failure("patterns", e)

    def history(self, n: int = _DEFAULT_HISTORY) -> dict[str, Any]:
        try:
            records = [r.to_dict() for r in self._engine.audit.recent(max(1, int(n)))]
            return {"ok": True, "count": len(records), "records": records}
        except Exception as e:
            return _failure("history", e)

    def guardian_status(self) -> dict[str, Any]:
        try:
            return {
                "ok": True,
                "running": self._engine.guardian.running,
                "monitors": self._engine.guardian.statuses(),
            }
        except Exception as e:
            return _failure("guardian_status", e)

    async def run_monitor(self, name: str) -> dict[str, Any]:
        try:
            status = await self._engine.guardian.run_check(name)
            return {"ok": True, "monitor": status.to_dict()}
        except UnknownMonitorError as e:
            return {"ok": False, "error": str(e)}
        except Exception as e:
            return _failure("run_monitor", e)

    async def run_all_monitors(self) -> dict[str, Any]:
        try:
            return {"ok": True, "monitors": await self._engine.guardian.run_all_monitors()}
        except Exception as e:
            return _failure("run_all_monitors", e)

    def set_monitor_interval(self, name: str, seconds: Any) -> dict[str, Any]:
        """Change a monitor's interval; the floor is the guardian's minimum interval."""
        if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
            return {"ok": False, "error": "interval must be a number of seconds"}
        try:
            previous = self._engine.guardian.set_interval(name, float(seconds))
        except MenderError as e:
            return {"ok": False, "error": str(e)}
        except Exception as e:
            return _failure("set_monitor_interval", e)
        _logger.info("admin.interval_changed", monitor=name, interval=seconds)
        return {"ok": True, "monitor": name, "previous_interval": previous, "interval": float(seconds)}

    async def run_prober(self, project_root: str | Path | None = None) -> dict[str, Any]:
        try:
            report = await self._engine.run_probe(Path(project_root) if project_root else None)
            return {"ok": report.error is None, "report": report.to_dict()}
        except Exception as e:
            return _failure("run_prober", e)

    @property
    def commands(self) -> list[str]:
        return list(self._command_table())

    async def handle(
        self,
        action: str,
        target: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Dispatch an operator command by name."""
        handler = self._command_table().get(action)
        if handler is None:
            return {"ok": False, "error": f"Unknown command: {action}"}
        try:
            return await handler(target, data or {})
        except (TypeError, ValueError) as e:
            return {"ok": False, "error": f"Invalid arguments for {action}: {e}"}
        except Exception as e:
            return _failure(action, e)

    def _command_table(self) -> dict[str, CommandHandler]:
        return {
            "status": self._cmd_status,
            "memory": self._cmd_memory,
            "memory-entries": self._cmd_memory_entries,
            "history": self._cmd_history,
            "patterns": self._cmd_patterns,
            "guardian-status": self._cmd_guardian_status,
            "run-monitor": self._cmd_run_monitor,
            "run-all-monitors": self._cmd_run_all_monitors,
            "threshold": self._cmd_threshold,
            "run-prober": self._cmd_run_prober,
        }

    async def _cmd_status(self, target: str | None, data: dict[str, Any]) -> dict[str, Any]:
        return self.status()

    async def _cmd_memory(self, target: str | None, data: dict[str, Any]) -> dict[str, Any]:
        return self.memory_stats()

    async def _cmd_memory_entries(self, target: str | None, data: dict[str, Any]) -> dict[str, Any]:
        return self.memory_entries()

    async def _cmd_history(self, target: str | None, data: dict[str, Any]) -> dict[str, Any]:
        return self.history(int(target) if target else _DEFAULT_HISTORY)

    async def _cmd_patterns(self, target: str | None, data: dict[str, Any]) -> dict[str, Any]:
        return self.patterns()

    async def _cmd_guardian_status(self, target: str | None, data: dict[str, Any]) -> dict[str, Any]:
        return self.guardian_status()

    async def _cmd_run_monitor(self, target: str | None, data: dict[str, Any]) -> dict[str, Any]:
        if not target:
            return {"ok": False, "error": "target (monitor name) required"}
        return await self.run_monitor(target)

    async def _cmd_run_all_monitors(self, target: str | None, data: dict[str, Any]) -> dict[str, Any]:
        return await self.run_all_monitors()

    async def _cmd_threshold(self, target: str | None, data: dict[str, Any]) -> dict[str, Any]:
        if not target or "value" not in data:
            return {"ok": False, "error": "target (monitor name) and data.value required"}
        return self.set_monitor_interval(target, data["value"])

    async def _cmd_run_prober(self, target: str | None, data: dict[str, Any]) -> dict[str, Any]:
        return await self.run_prober(data.get("project_root") or target)


def _stats_summary(stats: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in stats.items() if k != "top_patterns"}


def _failure(operation: str, exc: Exception) -> dict[str, Any]:
    _logger.exception("admin.operation_failed", operation=operation, error=str(exc))
    return {"ok": False, "error": f"{type(exc).__name__}: {exc}"}


__all__ = ["AdminSurface"]
