"""Capability-checked shell command execution.

Every build, fix and health check the engine runs goes through a
``CommandExecutor``. Commands always carry a timeout; expiry kills the
process and yields a failed result instead of stalling the caller, and a
cancelled caller takes its command down with it. Commands
may declare the capabilities they need (a container runtime, npm, openssl);
when one is unavailable the command is not run and a ``skipped`` result is
returned, so checks degrade to no-ops on hosts without that tooling.

Security: commands come from the engine's own fix catalog and from the
operator's configuration, not from untrusted runtime input, and run
through the shell.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
import time
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from mender.core.logging import get_logger

_logger = get_logger("execution")

# Output kept per stream; build logs can be very large
_MAX_OUTPUT_CHARS = 200_000


class Capability(str, Enum):
    """External tooling a command may depend on."""

    DOCKER = "docker"
    NPM = "npm"
    NPX = "npx"
    OPENSSL = "openssl"
    FUSER = "fuser"


@dataclass
class CommandResult:
    """Outcome of one command execution."""

    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    """Process exit code; None when the process never ran or was killed."""

    timed_out: bool = False
    skipped: bool = False
    """True when a required capability was unavailable and nothing ran."""

    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        """Whether the command ran to completion with exit code 0."""
        return self.exit_code == 0 and not self.timed_out and not self.skipped

    @property
    def output(self) -> str:
        """stderr followed by stdout, the order build tools usually report errors in."""
        if self.stderr and self.stdout:
            return f"{self.stderr}\n{self.stdout}"
        return self.stderr or self.stdout

    @classmethod
    def skipped_for(cls, command: str, capability: Capability) -> CommandResult:
        return cls(
            command=command,
            stderr=f"{capability.value} not available",
            skipped=True,
        )


class CommandExecutor(Protocol):
    """Runs shell commands on behalf of the engine."""

    def available(self, capability: Capability) -> bool:
        """Whether ``capability`` is present on this host."""
        ...

    async def execute(
        self,
        command: str,
        timeout_seconds: float,
        cwd: Path | None = None,
        requires: Iterable[Capability] = (),
    ) -> CommandResult:
        """Run ``command`` and return its result. Never raises for command failures."""
        ...


def _probe_capability(capability: Capability) -> bool:
    if capability is Capability.DOCKER:
        if shutil.which("docker") is None:
            return False
        return bool(os.environ.get("DOCKER_HOST")) or Path("/var/run/docker.sock").exists()
    return shutil.which(capability.value) is not None


class ShellCommandExecutor:
    """CommandExecutor backed by ``asyncio.create_subprocess_shell``.

    Capability availability is probed once per capability and cached for
    the lifetime of the executor.
    """

    def __init__(self, env: dict[str, str] | None = None) -> None:
        self._env = env
        self._capabilities: dict[Capability, bool] = {}

    def available(self, capability: Capability) -> bool:
        if capability not in self._capabilities:
            present = _probe_capability(capability)
            self._capabilities[capability] = present
            _logger.debug("execution.capability_probed", capability=capability.value, available=present)
        return self._capabilities[capability]

    async def execute(
        self,
        command: str,
        timeout_seconds: float,
        cwd: Path | None = None,
        requires: Iterable[Capability] = (),
    ) -> CommandResult:
        for capability in requires:
            if not self.available(capability):
                _logger.info(
                    "execution.skipped_missing_capability",
                    command=command,
                    capability=capability.value,
                )
                return CommandResult.skipped_for(command, capability)

        started = time.monotonic()
        env = {**os.environ, **self._env} if self._env else os.environ.copy()
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            _logger.warning("execution.spawn_failed", command=command, error=str(e))
            return CommandResult(command=command, stderr=str(e))

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout_seconds,
            )
        except TimeoutError:
            _kill_group(process)
            await process.wait()
            _logger.warning("execution.timed_out", command=command, timeout_seconds=timeout_seconds)
            return CommandResult(
                command=command,
                stderr=f"Timeout after {timeout_seconds}s",
                timed_out=True,
                duration_seconds=time.monotonic() - started,
            )
        except BaseException:
            # Cancellation must not leave the command running on its own
            if process.returncode is None:
                _kill_group(process)
                _logger.warning("execution.killed_on_abort", command=command, pid=process.pid)
                await asyncio.shield(process.wait())
            raise

        result = CommandResult(
            command=command,
            stdout=_decode(stdout_bytes),
            stderr=_decode(stderr_bytes),
            exit_code=process.returncode,
            duration_seconds=time.monotonic() - started,
        )
        _logger.debug(
            "execution.completed",
            command=command,
            exit_code=result.exit_code,
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result


def _kill_group(process: asyncio.subprocess.Process) -> None:
    # The shell runs in its own session, so its children share its pgid
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _decode(data: bytes | None) -> str:
    if not data:
        return ""
    text = data.decode("utf-8", errors="replace")
    return text[-_MAX_OUTPUT_CHARS:]


__all__ = ["Capability", "CommandExecutor", "CommandResult", "ShellCommandExecutor"]
