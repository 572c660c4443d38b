"""Executable fix catalog.

Most fix candidates in the pattern library are advice for a human ("add a
null check"). The few that can be carried out mechanically are listed here
as shell command templates. ``{1}``, ``{2}``... are replaced with the
shell-quoted captured groups of the failure match; commands run in the
project root.

A fix is *executable* only if it is in this catalog, every group it needs
was captured, and every capability it requires is available on this host.
Destructive fixes (deleting files, killing processes, pruning containers)
are never applied by the pre-flight prober.
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from mender.core.logging import get_logger
from mender.execution.commands import Capability, CommandExecutor, CommandResult

_logger = get_logger("repair.fixes")

_GROUP_REF = re.compile(r"\{(\d+)\}")


@dataclass(frozen=True)
class FixAction:
    """How to carry out one named fix."""

    command: str
    requires: tuple[Capability, ...] = ()
    destructive: bool = False

    @property
    def groups_needed(self) -> set[int]:
        return {int(g) for g in _GROUP_REF.findall(self.command)}


_NPM = (Capability.NPM,)
_DOCKER = (Capability.DOCKER,)

DEFAULT_FIX_ACTIONS: Mapping[str, FixAction] = {
    "regenerate_lockfile": FixAction("npm install --package-lock-only", _NPM),
    "run_npm_install_first": FixAction("npm install --package-lock-only", _NPM),
    "install_deps": FixAction("npm install", _NPM),
    "reinstall_deps": FixAction("npm install", _NPM),
    "install_legacy_peer_deps": FixAction("npm install --legacy-peer-deps", _NPM),
    "install_force": FixAction("npm install --force", _NPM, destructive=True),
    "delete_and_reinstall": FixAction(
        "rm -rf node_modules package-lock.json && npm install", _NPM, destructive=True
    ),
    "npm_audit_fix": FixAction("npm audit fix", _NPM),
    "install_package": FixAction("npm install {1}", _NPM),
    "install_missing": FixAction("npm install {1}", _NPM),
    "rebuild_native": FixAction("npm rebuild", _NPM),
    "rebuild_sqlite": FixAction("npm rebuild better-sqlite3", _NPM),
    "reinstall_sqlite": FixAction(
        "npm uninstall better-sqlite3 && npm install better-sqlite3", _NPM
    ),
    "reinstall_sharp": FixAction("npm install --platform=linux --arch=x64 sharp", _NPM),
    "kill_process": FixAction("fuser -k {1}/tcp || true", (Capability.FUSER,), destructive=True),
    "create_directory": FixAction("mkdir -p {1}"),
    "fix_permissions": FixAction("chmod -R u+rwX {1}"),
    "docker_prune": FixAction(
        "docker system prune -f && docker builder prune -f", _DOCKER, destructive=True
    ),
    "clear_docker_cache": FixAction("docker builder prune -f", _DOCKER, destructive=True),
    "clean_old_images": FixAction("docker image prune -f", _DOCKER, destructive=True),
    "recreate_network": FixAction("docker network prune -f", _DOCKER, destructive=True),
}


@dataclass
class FixOutcome:
    """Result of trying to apply one fix."""

    fix_name: str
    executed: bool
    """Whether a command was actually run."""

    command: str | None = None
    result: CommandResult | None = None
    reason: str | None = None
    """Why nothing ran, when ``executed`` is False."""

    @property
    def succeeded(self) -> bool:
        return self.executed and self.result is not None and self.result.ok

    def to_dict(self) -> dict[str, object]:
        return {
            "fix": self.fix_name,
            "executed": self.executed,
            "succeeded": self.succeeded,
            "command": self.command,
            "exit_code": self.result.exit_code if self.result else None,
            "timed_out": self.result.timed_out if self.result else False,
            "reason": self.reason,
        }


class FixRunner:
    """Turns fix names into commands and runs them through a CommandExecutor."""

    def __init__(
        self,
        executor: CommandExecutor,
        timeout_seconds: float = 120.0,
        actions: Mapping[str, FixAction] = DEFAULT_FIX_ACTIONS,
    ) -> None:
        self._executor = executor
        self._timeout = timeout_seconds
        self._actions = dict(actions)

    def action_for(self, fix_name: str) -> FixAction | None:
        """The catalogue entry for ``fix_name``; None for advice-only fixes."""
        return self._actions.get(fix_name)

    def is_destructive(self, fix_name: str) -> bool:
        action = self.action_for(fix_name)
        return action is not None and action.destructive

    def is_executable(self, fix_name: str, groups: Sequence[str | None] = ()) -> bool:
        return self._unavailable_reason(fix_name, groups) is None

    def render(self, fix_name: str, groups: Sequence[str | None] = ()) -> str | None:
        """The shell command for ``fix_name``, or None if it cannot be built."""
        action = self.action_for(fix_name)
        if action is None:
            return None

        def _sub(m: re.Match[str]) -> str:
            value = groups[int(m.group(1)) - 1]
            return shlex.quote(str(value))

        try:
            return _GROUP_REF.sub(_sub, action.command)
        except IndexError:
            return None

    async def apply(
        self,
        fix_name: str,
        project_root: Path,
        groups: Sequence[str | None] = (),
        *,
        allow_destructive: bool = True,
    ) -> FixOutcome:
        """Run the fix. Never raises; failures are reported in the outcome."""
        reason = self._unavailable_reason(fix_name, groups)
        if reason is None and not allow_destructive and self.is_destructive(fix_name):
            reason = "destructive fix not allowed here"
        if reason is not None:
            return FixOutcome(fix_name=fix_name, executed=False, reason=reason)

        action = self.action_for(fix_name)
        assert action is not None
        command = self.render(fix_name, groups)
        if command is None:
            return FixOutcome(fix_name=fix_name, executed=False, reason="missing match group")
        try:
            result = await self._executor.execute(
                command,
                self._timeout,
                cwd=project_root,
                requires=action.requires,
            )
        except Exception as e:
            _logger.exception("fixes.execution_error", fix=fix_name, command=command)
            return FixOutcome(fix_name=fix_name, executed=False, command=command, reason=str(e))

        if result.skipped:
            return FixOutcome(
                fix_name=fix_name, executed=False, command=command, result=result,
                reason=result.stderr or "capability unavailable",
            )
        _logger.info(
            "fixes.applied",
            fix=fix_name,
            command=command,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
        )
        return FixOutcome(fix_name=fix_name, executed=True, command=command, result=result)

    def _unavailable_reason(self, fix_name: str, groups: Sequence[str | None]) -> str | None:
        action = self.action_for(fix_name)
        if action is None:
            return "no executable action"
        for index in action.groups_needed:
            if index > len(groups) or groups[index - 1] is None:
                return "missing match group"
        for capability in action.requires:
            if not self._executor.available(capability):
                return f"{capability.value} not available"
        return None


__all__ = ["DEFAULT_FIX_ACTIONS", "FixAction", "FixOutcome", "FixRunner"]
