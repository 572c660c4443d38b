"""Fan-out of audit records to sinks and the broadcast channel."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from mender.audit.records import AuditRecord, AuditSink, Broadcaster, Phase
from mender.audit.sinks import InMemoryAuditSink
from mender.core.logging import get_logger
from mender.execution.task_utils import run_in_thread

_logger = get_logger("audit")

BROADCAST_EVENT = "repair:logged"


class AuditTrail:
    """Records every remediation action.

    Each record goes to the bounded in-memory history (which backs history
    queries), to every configured sink, and to the broadcaster when one is
    set. Sink and broadcaster failures are logged and otherwise ignored so
    that auditing can never fail a remediation.

    Async callers use ``alog`` so that file-backed sinks write from a worker
    thread instead of the event loop.
    """

    def __init__(
        self,
        sinks: Iterable[AuditSink] = (),
        broadcaster: Broadcaster | None = None,
        history_size: int = 500,
    ) -> None:
        self._history = InMemoryAuditSink(max_records=history_size)
        self._sinks: list[AuditSink] = list(sinks)
        self._broadcaster = broadcaster

    @property
    def broadcaster(self) -> Broadcaster | None:
        return self._broadcaster

    def log(self, phase: Phase, action: str, details: dict[str, Any] | None = None) -> AuditRecord:
        record = AuditRecord(phase=phase, action=action, details=dict(details or {}))
        self._history.append(record)
        self._write_sinks(record)
        self._publish(record)
        return record

    async def alog(
        self,
        phase: Phase,
        action: str,
        details: dict[str, Any] | None = None,
    ) -> AuditRecord:
        record = AuditRecord(phase=phase, action=action, details=dict(details or {}))
        self._history.append(record)
        if self._sinks:
            await run_in_thread(self._write_sinks, record)
        self._publish(record)
        return record

    def recent(self, n: int = 20) -> list[AuditRecord]:
        return self._history.recent(n)

    def _write_sinks(self, record: AuditRecord) -> None:
        for sink in self._sinks:
            try:
                sink.append(record)
            except Exception:
                _logger.warning(
                    "audit.sink_failed",
                    sink=type(sink).__name__,
                    action=record.action,
                    exc_info=True,
                )

    def _publish(self, record: AuditRecord) -> None:
        if self._broadcaster is not None:
            try:
                self._broadcaster.publish(BROADCAST_EVENT, {
                    "id": record.id,
                    "phase": record.phase.value,
                    "action": record.action,
                    "timestamp": record.timestamp.isoformat(),
                })
            except Exception:
                _logger.warning("audit.broadcast_failed", action=record.action, exc_info=True)
        _logger.debug("audit.recorded", phase=record.phase.value, action=record.action)


__all__ = ["AuditTrail", "BROADCAST_EVENT"]
