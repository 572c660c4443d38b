"""Helpers for asyncio.Task lifecycle.

Every background task the engine owns (guardian monitor loops, the
broadcast drain loop) is created through ``spawn_logged`` so that a task
dying with an exception is always logged instead of disappearing silently.
Blocking file writes made from async code go through ``run_in_thread``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


def log_task_exception(
    task: asyncio.Task[Any],
    logger: Any,
    event: str,
    *,
    level: str = "error",
) -> BaseException | None:
    """Log the exception a completed task ended with, if any.

    Returns:
        The exception, or None if the task finished normally or was cancelled.
    """
    if task.cancelled():
        return None
    exc = task.exception()
    if exc is not None:
        log_fn = getattr(logger, level, logger.error)
        log_fn(event, error=str(exc), task_name=task.get_name())
    return exc


def spawn_logged(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str,
    logger: Any,
    event: str,
) -> asyncio.Task[Any]:
    """Create a named task whose unexpected failure is logged under ``event``."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(lambda t: log_task_exception(t, logger, event))
    return task


async def run_in_thread(func: Callable[..., T], /, *args: Any) -> T:
    """Run blocking ``func(*args)`` in a worker thread.

    If the caller is cancelled, the thread is still waited for before
    ``CancelledError`` propagates, so the call has finished when the
    caller unwinds.
    """
    future = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        await asyncio.wait({future})
        raise


__all__ = ["log_task_exception", "run_in_thread", "spawn_logged"]
