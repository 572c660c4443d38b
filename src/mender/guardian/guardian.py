"""Runtime guardian: independently scheduled health monitors.

Each registered monitor gets its own asyncio task that sleeps one interval,
runs the check under a timeout, caches the result and, when the result is
unhealthy, runs the monitor's repair once. A failing check or repair is
caught at the tick boundary and recorded as an unhealthy result, so one
misbehaving monitor never takes down the others.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from mender.audit.records import Phase
from mender.audit.trail import AuditTrail
from mender.core.errors import (
    IntervalTooShortError,
    InvalidIntervalError,
    UnknownMonitorError,
)
from mender.core.logging import get_logger, phase_context, with_context
from mender.execution.task_utils import spawn_logged
from mender.guardian.models import Monitor, MonitorResult, MonitorStatus

_logger = get_logger("guardian")


class Guardian:
    """Scheduler for named monitors.

    Usage::

        guardian = Guardian(audit)
        guardian.register(Monitor("disk_space", 600, check=disk.check, repair=disk.repair))
        await guardian.start()
        ...
        await guardian.stop()
    """

    def __init__(
        self,
        audit: AuditTrail,
        *,
        check_timeout_seconds: float = 30.0,
        min_interval_seconds: float = 10.0,
    ) -> None:
        self._audit = audit
        self._check_timeout = check_timeout_seconds
        self._min_interval = min_interval_seconds
        self._monitors: dict[str, Monitor] = {}
        self._statuses: dict[str, MonitorStatus] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._wakeups: dict[str, asyncio.Event] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def min_interval_seconds(self) -> float:
        return self._min_interval

    @property
    def monitor_names(self) -> list[str]:
        return list(self._monitors)

    def register(self, monitor: Monitor) -> None:
        """Add a monitor. Registering while running schedules it immediately."""
        if monitor.name in self._monitors:
            raise ValueError(f"Monitor '{monitor.name}' is already registered")
        if not math.isfinite(monitor.interval_seconds) or monitor.interval_seconds <= 0:
            raise ValueError(f"Monitor '{monitor.name}' needs a positive, finite interval")
        self._monitors[monitor.name] = monitor
        self._statuses[monitor.name] = MonitorStatus(monitor.name, monitor.interval_seconds)
        if self._running:
            self._schedule(monitor.name)

    def register_all(self, monitors: Iterable[Monitor]) -> None:
        for monitor in monitors:
            self.register(monitor)

    async def start(self) -> None:
        """Schedule every monitor. Statuses start fresh. No-op when running."""
        if self._running:
            return
        self._running = True
        for name, monitor in self._monitors.items():
            self._statuses[name] = MonitorStatus(name, monitor.interval_seconds)
            self._schedule(name)
        await self._audit.alog(
            Phase.POST_BUILD, "guardian_started", {"monitors": list(self._monitors)}
        )
        _logger.info("guardian.started", monitors=len(self._monitors))

    async def stop(self) -> None:
        """Cancel and await every monitor task; no check runs after this returns."""
        was_running = self._running
        self._running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if was_running:
            await self._audit.alog(
                Phase.POST_BUILD, "guardian_stopped", {"monitors": list(self._monitors)}
            )
            _logger.info("guardian.stopped", monitors=len(tasks))

    def statuses(self) -> dict[str, dict[str, Any]]:
        return {name: status.to_dict() for name, status in self._statuses.items()}

    def status(self, name: str) -> MonitorStatus:
        if name not in self._statuses:
            raise UnknownMonitorError(name)
        return self._statuses[name]

    def interval(self, name: str) -> float:
        return self.status(name).interval_seconds

    def set_interval(self, name: str, seconds: float) -> float:
        """Change a monitor's interval; a running monitor reschedules from now.

        Raises:
            UnknownMonitorError: No monitor named ``name``.
            InvalidIntervalError: ``seconds`` is NaN or infinite.
            IntervalTooShortError: ``seconds`` is below the minimum interval.
        """
        if name not in self._monitors:
            raise UnknownMonitorError(name)
        if not math.isfinite(seconds):
            raise InvalidIntervalError(seconds)
        if seconds < self._min_interval:
            raise IntervalTooShortError(seconds, self._min_interval)
        previous = self._monitors[name].interval_seconds
        self._monitors[name].interval_seconds = seconds
        self._statuses[name].interval_seconds = seconds
        wake = self._wakeups.get(name)
        if wake is not None:
            wake.set()
        _logger.info("guardian.interval_changed", monitor=name, previous=previous, interval=seconds)
        return previous

    async def run_check(self, name: str) -> MonitorStatus:
        """Run one monitor now, including its repair when unhealthy."""
        if name not in self._monitors:
            raise UnknownMonitorError(name)
        await self._tick(name)
        return self._statuses[name]

    async def run_all_monitors(self) -> dict[str, MonitorResult | None]:
        """One sweep of every monitor, in registration order."""
        results: dict[str, MonitorResult | None] = {}
        for name in list(self._monitors):
            status = await self.run_check(name)
            results[name] = status.last_result
        return results

    # ─── Scheduling ───────────────────────────────────────────────────

    def _schedule(self, name: str) -> None:
        self._wakeups[name] = asyncio.Event()
        self._tasks[name] = spawn_logged(
            self._loop(name),
            name=f"guardian-{name}",
            logger=_logger,
            event="guardian.monitor_loop_died",
        )

    async def _loop(self, name: str) -> None:
        ctx = phase_context(Phase.POST_BUILD.value)
        with with_context(ctx):
            while self._running:
                if await self._wait_interval(name) and self._running:
                    await self._tick(name)

    async def _wait_interval(self, name: str) -> bool:
        """Sleep one interval. False when woken early by an interval change."""
        wake = self._wakeups[name]
        wake.clear()
        try:
            await asyncio.wait_for(wake.wait(), timeout=self._monitors[name].interval_seconds)
        except TimeoutError:
            return True
        return False

    async def _tick(self, name: str) -> None:
        monitor = self._monitors[name]
        status = self._statuses[name]
        check_failed = False
        try:
            result = await asyncio.wait_for(monitor.check(), timeout=self._check_timeout)
            result = dict(result)
            result["healthy"] = bool(result.get("healthy", False))
        except TimeoutError:
            check_failed = True
            status.errors += 1
            result = {"healthy": False, "error": f"check timed out after {self._check_timeout}s"}
            _logger.warning("guardian.check_timed_out", monitor=name)
        except Exception as e:
            check_failed = True
            status.errors += 1
            result = {"healthy": False, "error": f"{type(e).__name__}: {e}"}
            _logger.warning("guardian.check_failed", monitor=name, error=str(e), exc_info=True)

        status.last_checked = datetime.now(UTC)
        status.last_result = result
        status.checks += 1

        if result["healthy"] or check_failed or monitor.repair is None:
            return
        try:
            actions = await monitor.repair(result)
        except Exception as e:
            status.errors += 1
            status.last_result = {**result, "repair_error": f"{type(e).__name__}: {e}"}
            _logger.warning("guardian.repair_failed", monitor=name, error=str(e), exc_info=True)
            return
        status.repairs += 1
        for action in actions or ():
            await self._audit.alog(
                Phase.POST_BUILD, action.action, {"monitor": name, **action.details}
            )
        _logger.info(
            "guardian.repaired",
            monitor=name,
            actions=[a.action for a in actions or ()],
        )


__all__ = ["Guardian"]
