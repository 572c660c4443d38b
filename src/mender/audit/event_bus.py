"""Async pub/sub bus for remediation events.

The default Broadcaster. ``publish`` never blocks and never raises: events
are queued and a background drain loop hands them to subscribers. Each
subscriber keeps a bounded deque of recent events, and a subscriber that
keeps raising is disabled rather than slowing everyone else down.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from mender.core.logging import get_logger
from mender.execution.task_utils import spawn_logged

_logger = get_logger("event_bus")

RemediationEvent = dict[str, Any]
EventFilter = Callable[[RemediationEvent], bool] | None
EventCallback = Callable[[RemediationEvent], Any]

_MAX_CONSECUTIVE_FAILURES = 10


class EventBus:
    """Bounded-queue pub/sub bus.

    Usage::

        bus = EventBus(max_queue_size=1000)
        await bus.start()
        sub_id = bus.subscribe(on_event, event_filter=lambda e: e["event"].startswith("repair:"))
        bus.publish("repair:logged", {"action": "escalated"})
        await bus.shutdown()
    """

    def __init__(self, *, max_queue_size: int = 1000) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: dict[str, _Subscriber] = {}
        self._pending: asyncio.Queue[RemediationEvent] = asyncio.Queue(maxsize=max_queue_size)
        self._drain_task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._drain_task = spawn_logged(
            self._drain_loop(),
            name="event-bus-drain",
            logger=_logger,
            event="event_bus.drain_died",
        )

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        """Queue an event. Dropped (with a warning) when stopped or full."""
        if not self._running:
            return
        event: RemediationEvent = {
            "event": event_name,
            "payload": payload,
            "timestamp": datetime.now(UTC).isoformat(),
        }
        try:
            self._pending.put_nowait(event)
        except asyncio.QueueFull:
            _logger.warning("event_bus.queue_full", event_type=event_name)

    def subscribe(self, callback: EventCallback, *, event_filter: EventFilter = None) -> str:
        """Register a sync or async callback. Returns the subscription id."""
        sub_id = str(uuid.uuid4())
        self._subscribers[sub_id] = _Subscriber(
            callback=callback,
            event_filter=event_filter,
            queue=deque(maxlen=self._max_queue_size),
        )
        _logger.debug("event_bus.subscribed", sub_id=sub_id)
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        return self._subscribers.pop(sub_id, None) is not None

    def recent(self, sub_id: str) -> list[RemediationEvent]:
        """Events delivered to a subscriber, oldest first."""
        sub = self._subscribers.get(sub_id)
        return list(sub.queue) if sub is not None else []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def shutdown(self) -> None:
        """Stop the drain loop, then deliver whatever is still queued."""
        self._running = False
        if self._drain_task is not None:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None

        while not self._pending.empty():
            await self._distribute(self._pending.get_nowait())

        _logger.debug("event_bus.shutdown", subscribers=len(self._subscribers))

    async def _drain_loop(self) -> None:
        while self._running:
            event = await self._pending.get()
            await self._distribute(event)

    async def _distribute(self, event: RemediationEvent) -> None:
        for sub_id, sub in list(self._subscribers.items()):
            if sub.consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
                continue
            try:
                if sub.event_filter is not None and not sub.event_filter(event):
                    continue
            except Exception:
                _logger.warning(
                    "event_bus.filter_error",
                    subscriber_id=sub_id,
                    event_type=event.get("event"),
                    exc_info=True,
                )
                continue
            sub.queue.append(event)
            try:
                result = sub.callback(event)
                if asyncio.iscoroutine(result):
                    await result
                sub.consecutive_failures = 0
            except Exception:
                sub.consecutive_failures += 1
                _logger.warning(
                    "event_bus.subscriber_error",
                    subscriber_id=sub_id,
                    event_type=event.get("event"),
                    consecutive_failures=sub.consecutive_failures,
                    exc_info=True,
                )
                if sub.consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
                    _logger.error("event_bus.subscriber_disabled", subscriber_id=sub_id)


class _Subscriber:
    __slots__ = ("callback", "event_filter", "queue", "consecutive_failures")

    def __init__(
        self,
        callback: EventCallback,
        event_filter: EventFilter,
        queue: deque[RemediationEvent],
    ) -> None:
        self.callback = callback
        self.event_filter = event_filter
        self.queue = queue
        self.consecutive_failures: int = 0


__all__ = ["EventBus", "RemediationEvent"]
