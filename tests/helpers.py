"""Shared test helpers for mender tests."""

from __future__ import annotations

import json
from collections import deque
from collections.abc import Iterable
from dataclasses import replace
from pathlib import Path
from typing import Any

from mender.audit.trail import AuditTrail
from mender.execution.commands import Capability, CommandResult

ALL_CAPABILITIES = frozenset(Capability)


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(command="", stdout=stdout, exit_code=0)


def failed(output: str, exit_code: int = 1) -> CommandResult:
    return CommandResult(command="", stderr=output, exit_code=exit_code)


def timed_out() -> CommandResult:
    return CommandResult(command="", stderr="Timeout", timed_out=True)


class FakeExecutor:
    """Scripted CommandExecutor that records every command it runs.

    ``script(fragment, *results)`` makes commands containing ``fragment``
    return ``results`` in order; the last result repeats once the others
    are used up. Unscripted commands succeed with empty output.
    """

    def __init__(self, capabilities: Iterable[Capability] = ALL_CAPABILITIES) -> None:
        self.capabilities = set(capabilities)
        self.calls: list[str] = []
        self.cwds: list[Path | None] = []
        self._scripts: list[tuple[str, deque[CommandResult]]] = []

    def script(self, fragment: str, *results: CommandResult) -> FakeExecutor:
        self._scripts.append((fragment, deque(results)))
        return self

    def available(self, capability: Capability) -> bool:
        return capability in self.capabilities

    async def execute(
        self,
        command: str,
        timeout_seconds: float,
        cwd: Path | None = None,
        requires: Iterable[Capability] = (),
    ) -> CommandResult:
        for capability in requires:
            if not self.available(capability):
                return CommandResult.skipped_for(command, capability)
        self.calls.append(command)
        self.cwds.append(cwd)
        for fragment, queue in self._scripts:
            if fragment in command and queue:
                result = queue.popleft() if len(queue) > 1 else queue[0]
                return replace(result, command=command)
        return CommandResult(command=command, exit_code=0)

    def count(self, fragment: str) -> int:
        return sum(1 for c in self.calls if fragment in c)


def audit_actions(audit: AuditTrail, n: int = 500) -> list[str]:
    return [r.action for r in audit.recent(n)]


def write_json(path: Path, data: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def write_package(
    pkg_dir: Path,
    deps: dict[str, str] | None = None,
    *,
    name: str = "app",
    lock: bool = True,
    installed: bool = True,
) -> Path:
    """Create a package.json (and by default a matching lockfile and node_modules)."""
    deps = deps if deps is not None else {"express": "^4.18.0"}
    write_json(pkg_dir / "package.json", {"name": name, "dependencies": deps})
    if lock:
        write_json(pkg_dir / "package-lock.json", {
            "name": name,
            "lockfileVersion": 3,
            "packages": {
                "": {"name": name, "dependencies": deps},
                **{f"node_modules/{d}": {"version": "1.0.0"} for d in deps},
            },
        })
    if installed:
        for dep in deps:
            (pkg_dir / "node_modules" / dep).mkdir(parents=True, exist_ok=True)
    return pkg_dir
