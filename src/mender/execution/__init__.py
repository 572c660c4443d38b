"""Command execution and task helpers."""

from mender.execution.commands import (
    Capability,
    CommandExecutor,
    CommandResult,
    ShellCommandExecutor,
)
from mender.execution.task_utils import log_task_exception, run_in_thread, spawn_logged

__all__ = [
    "Capability",
    "CommandExecutor",
    "CommandResult",
    "ShellCommandExecutor",
    "log_task_exception",
    "run_in_thread",
    "spawn_logged",
]
