"""The pre-flight check battery.

Each check inspects one aspect of project health and returns a
CheckResult. Checks are plain functions over a ProbeContext; file-scanning
checks are synchronous (the prober runs them in a worker thread) and
checks that shell out are coroutines that go through the CommandExecutor.
A check that has nothing to look at (no package.json, no compose file)
returns an empty result rather than an issue.
"""

from __future__ import annotations

import json
import os
import re
import shlex
from collections import Counter, defaultdict
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from mender.core.config import ProbeConfig
from mender.execution.commands import Capability, CommandExecutor
from mender.preflight.models import AutoFix, CheckResult, Severity

CheckFunc = Callable[["ProbeContext"], CheckResult | Awaitable[CheckResult]]

_SOURCE_SUFFIXES = (".js", ".mjs", ".cjs", ".jsx", ".ts", ".tsx")
_SKIP_DIRS = {"node_modules", "dist", "build", ".next", "coverage"}
_RESOLVE_SUFFIXES = ("", ".js", ".mjs", ".cjs", ".jsx", ".ts", ".tsx", ".json")
_INDEX_FILES = ("index.js", "index.mjs", "index.ts", "index.tsx")
_COMPOSE_FILES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")
_LOCAL_HOSTS = {"localhost", "127.0.0.1", "0.0.0.0", "[::1]"}

_RELATIVE_IMPORT = re.compile(
    r"""(?:\bfrom\s+|\brequire\(\s*|\bimport\s*\(\s*|\bimport\s+)['"](\.\.?/[^'"]+)['"]"""
)
_ENV_REF = re.compile(r"process\.env\.([A-Z_][A-Z0-9_]*)")
_ENV_LINE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=")
_PROXY_PASS = re.compile(r"proxy_pass\s+https?://([^:/\s;]+)")
_TS_ERROR = re.compile(r"error (TS\d+)")
_TS_LOCATION = re.compile(r"^(?P<file>[^\s(]+)\((?P<line>\d+),\d+\)")
_PEER_PROBLEM = re.compile(r"peer dep|ERESOLVE|missing|invalid", re.IGNORECASE)
_NOT_AFTER = re.compile(r"notAfter=(.+)")


@dataclass
class ProbeContext:
    """Inputs shared by every check in one probe run."""

    project_root: Path
    config: ProbeConfig
    executor: CommandExecutor

    def package_dirs(self) -> Iterator[Path]:
        """Configured package directories that hold a package.json."""
        seen: set[Path] = set()
        for rel in self.config.package_dirs:
            path = (self.project_root / rel).resolve()
            if path not in seen and (path / "package.json").is_file():
                seen.add(path)
                yield path

    def label(self, path: Path) -> str:
        try:
            rel = path.resolve().relative_to(self.project_root.resolve())
        except ValueError:
            return str(path)
        return str(rel) if str(rel) != "." else "."

    def source_files(self) -> Iterator[Path]:
        for rel in self.config.source_dirs:
            base = self.project_root / rel
            if base.is_dir():
                yield from _walk_sources(base)


@dataclass(frozen=True)
class Check:
    name: str
    description: str
    func: CheckFunc


def _walk_sources(base: Path) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames[:] = [d for d in dirnames if d not in _SKIP_DIRS and not d.startswith(".")]
        for filename in sorted(filenames):
            if filename.endswith(_SOURCE_SUFFIXES):
                yield Path(dirpath) / filename


def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def _declared_deps(pkg: dict[str, Any], *, optional: bool = False) -> dict[str, str]:
    deps: dict[str, str] = {}
    sections = ["dependencies", "devDependencies"]
    if optional:
        sections.append("optionalDependencies")
    for section in sections:
        deps.update(pkg.get(section) or {})
    return deps


def _env_file_vars(path: Path) -> set[str]:
    if not path.is_file():
        return set()
    names = set()
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        m = _ENV_LINE.match(line)
        if m:
            names.add(m.group(1))
    return names


# ─── Dependency checks ────────────────────────────────────────────────


def check_lockfile_sync(ctx: ProbeContext) -> CheckResult:
    result = CheckResult()
    for pkg_dir in ctx.package_dirs():
        label = ctx.label(pkg_dir)
        pkg_path = pkg_dir / "package.json"
        lock_path = pkg_dir / "package-lock.json"
        regenerate = AutoFix("regenerate_lockfile", f"lockfile_stale:{label}", pkg_dir)

        if not lock_path.is_file():
            result.add(
                Severity.CRITICAL,
                f"{label}: package-lock.json missing, a clean install will fail",
                pkg_path,
                AutoFix("regenerate_lockfile", f"lockfile_missing:{label}", pkg_dir),
            )
            continue

        pkg = _read_json(pkg_path)
        try:
            lock = _read_json(lock_path)
        except ValueError:
            result.add(Severity.CRITICAL, f"{label}: package-lock.json is not valid JSON", lock_path, regenerate)
            continue

        version = lock.get("lockfileVersion")
        if isinstance(version, int) and version < 2:
            result.add(
                Severity.WARNING,
                f"{label}: lockfile version {version} is outdated",
                lock_path,
            )
        if lock.get("name") and pkg.get("name") and lock["name"] != pkg["name"]:
            result.add(
                Severity.CRITICAL,
                f"{label}: lockfile name '{lock['name']}' does not match package.json name '{pkg['name']}'",
                lock_path,
                regenerate,
            )

        packages = lock.get("packages") or {}
        root_entry = packages.get("") or {}
        locked = {
            **(root_entry.get("dependencies") or {}),
            **(root_entry.get("devDependencies") or {}),
            **(root_entry.get("optionalDependencies") or {}),
            **(lock.get("dependencies") or {}),
        }
        drift = [
            dep
            for dep in _declared_deps(pkg, optional=True)
            if dep not in locked and f"node_modules/{dep}" not in packages
        ]
        for dep in drift[:3]:
            result.add(
                Severity.WARNING,
                f"{label}: dependency '{dep}' is in package.json but not in the lockfile",
                lock_path,
            )
        if len(drift) > ctx.config.lockfile_drift_critical:
            result.add(
                Severity.CRITICAL,
                f"{label}: {len(drift)} dependencies missing from lockfile, lockfile is stale",
                lock_path,
                regenerate,
            )
    return result


def check_installed_dependencies(ctx: ProbeContext) -> CheckResult:
    result = CheckResult()
    for pkg_dir in ctx.package_dirs():
        label = ctx.label(pkg_dir)
        pkg_path = pkg_dir / "package.json"
        deps = _declared_deps(_read_json(pkg_path))
        modules = pkg_dir / "node_modules"
        if not deps:
            continue
        if not modules.is_dir():
            result.add(
                Severity.CRITICAL,
                f"{label}: node_modules missing, dependencies are not installed",
                pkg_path,
                AutoFix("install_deps", f"node_modules_missing:{label}", pkg_dir),
            )
            continue
        for dep in list(deps)[: ctx.config.dependency_spot_check_limit]:
            if not (modules / dep).exists():
                result.add(
                    Severity.WARNING,
                    f"{label}: dependency '{dep}' is declared but not installed",
                    pkg_path,
                )
    return result


def check_native_binaries(ctx: ProbeContext) -> CheckResult:
    result = CheckResult()
    for pkg_dir in ctx.package_dirs():
        label = ctx.label(pkg_dir)
        modules = pkg_dir / "node_modules"
        sqlite = modules / "better-sqlite3"
        if sqlite.is_dir():
            binding = sqlite / "build" / "Release" / "better_sqlite3.node"
            if not binding.exists() and not (sqlite / "prebuilds").exists():
                result.add(
                    Severity.CRITICAL,
                    f"{label}: better-sqlite3 native binary missing, needs rebuild",
                    sqlite,
                    AutoFix("rebuild_sqlite", f"sqlite_native_missing:{label}", pkg_dir),
                )
        sharp = modules / "sharp"
        if sharp.is_dir():
            if not (sharp / "build" / "Release").exists() and not (modules / "@img").is_dir():
                result.add(
                    Severity.WARNING,
                    f"{label}: sharp has no platform binary installed",
                    sharp,
                    AutoFix("reinstall_sharp", f"sharp_native_missing:{label}", pkg_dir),
                )
    return result


async def check_peer_dependencies(ctx: ProbeContext) -> CheckResult:
    result = CheckResult()
    for pkg_dir in ctx.package_dirs():
        if not (pkg_dir / "node_modules").is_dir():
            continue
        label = ctx.label(pkg_dir)
        ls = await ctx.executor.execute(
            "npm ls --depth=0",
            ctx.config.peer_dependency_timeout_seconds,
            cwd=pkg_dir,
            requires=(Capability.NPM,),
        )
        if ls.ok or ls.skipped:
            continue
        if ls.timed_out:
            result.add(Severity.INFO, f"{label}: npm ls timed out, peer dependencies not checked")
            continue
        problems = [line.strip() for line in ls.output.splitlines() if _PEER_PROBLEM.search(line)]
        if problems:
            result.add(
                Severity.WARNING,
                f"{label}: {len(problems)} peer dependency problem(s)",
                pkg_dir / "package.json",
            )
            for line in problems[:3]:
                result.add(Severity.INFO, f"{label}: {line[:150]}")
    return result


# ─── Source checks ────────────────────────────────────────────────────


def _resolves(target: Path) -> bool:
    candidates = [Path(f"{target}{suffix}") for suffix in _RESOLVE_SUFFIXES]
    candidates += [target / index for index in _INDEX_FILES]
    # TypeScript ESM code imports "./x.js" that is compiled from x.ts
    if target.suffix in (".js", ".jsx", ".mjs"):
        stem = target.with_suffix("")
        candidates += [Path(f"{stem}{s}") for s in (".ts", ".tsx", ".mts")]
    return any(c.exists() for c in candidates)


def check_import_integrity(ctx: ProbeContext) -> CheckResult:
    result = CheckResult()
    for source in ctx.source_files():
        text = source.read_text(encoding="utf-8", errors="replace")
        for m in _RELATIVE_IMPORT.finditer(text):
            spec = m.group(1)
            if not _resolves(source.parent / spec):
                line = text.count("\n", 0, m.start()) + 1
                result.add(
                    Severity.CRITICAL,
                    f"Import '{spec}' does not resolve to a file",
                    f"{ctx.label(source)}:{line}",
                )

    for pkg_dir in ctx.package_dirs():
        tsconfig = pkg_dir / "tsconfig.json"
        if not tsconfig.is_file():
            continue
        try:
            data = _read_json(tsconfig)
        except ValueError:
            result.add(Severity.INFO, "tsconfig.json is not plain JSON, path aliases not checked", tsconfig)
            continue
        options = data.get("compilerOptions") or {}
        base = pkg_dir / options.get("baseUrl", ".")
        for alias, targets in (options.get("paths") or {}).items():
            for target in targets:
                clean = target.replace("/*", "").replace("*", "")
                if not (base / clean).exists():
                    result.add(
                        Severity.WARNING,
                        f"Path alias '{alias}' maps to '{clean}' which does not exist",
                        tsconfig,
                    )
    return result


def check_env_completeness(ctx: ProbeContext) -> CheckResult:
    result = CheckResult()
    env_path = ctx.project_root / ctx.config.env_file
    defined = _env_file_vars(env_path)
    reported: set[str] = set()
    for source in ctx.source_files():
        lines = source.read_text(encoding="utf-8", errors="replace").splitlines()
        for lineno, line in enumerate(lines, start=1):
            for m in _ENV_REF.finditer(line):
                name = m.group(1)
                if name in defined or name in reported:
                    continue
                if "||" in line or "??" in line:
                    continue
                reported.add(name)
                result.add(
                    Severity.WARNING,
                    f"process.env.{name} is referenced without a fallback and is not set in {ctx.config.env_file}",
                    f"{ctx.label(source)}:{lineno}",
                )
    return result


def check_namespace_collisions(ctx: ProbeContext) -> CheckResult:
    result = CheckResult()
    obj = ctx.config.namespace_object
    assignment = re.compile(rf"\b{re.escape(obj)}\.([A-Za-z_]\w*)\s*=(?!=)")
    owners: dict[str, set[str]] = defaultdict(set)
    for source in ctx.source_files():
        text = source.read_text(encoding="utf-8", errors="replace")
        for m in assignment.finditer(text):
            owners[m.group(1)].add(ctx.label(source))
    for key, files in sorted(owners.items()):
        if len(files) > 1:
            result.add(
                Severity.WARNING,
                f"{obj}.{key} is assigned in multiple files: {', '.join(sorted(files))}",
            )
    return result


async def check_typed_compilation(ctx: ProbeContext) -> CheckResult:
    result = CheckResult()
    for pkg_dir in ctx.package_dirs():
        tsconfig = pkg_dir / "tsconfig.json"
        if not tsconfig.is_file() or not (pkg_dir / "node_modules").is_dir():
            continue
        label = ctx.label(pkg_dir)
        tsc = await ctx.executor.execute(
            ctx.config.typecheck_command,
            ctx.config.typecheck_timeout_seconds,
            cwd=pkg_dir,
            requires=(Capability.NPX,),
        )
        if tsc.ok or tsc.skipped:
            continue
        if tsc.timed_out:
            result.add(Severity.WARNING, f"{label}: type check timed out", tsconfig)
            continue
        error_lines = [line.strip() for line in tsc.output.splitlines() if _TS_ERROR.search(line)]
        if not error_lines:
            continue
        codes = Counter(_TS_ERROR.search(line).group(1) for line in error_lines)  # type: ignore[union-attr]
        summary = ", ".join(f"{code}:{n}" for code, n in codes.most_common())
        result.add(
            Severity.CRITICAL,
            f"{label}: {len(error_lines)} TypeScript error(s) ({summary})",
            tsconfig,
        )
        for line in error_lines[:5]:
            loc = _TS_LOCATION.match(line)
            file = f"{label}/{loc.group('file')}:{loc.group('line')}" if loc else None
            result.add(Severity.WARNING, line[:200], file)
    return result


# ─── Deployment checks ────────────────────────────────────────────────


def load_compose(project_root: Path) -> tuple[Path, dict[str, Any]] | None:
    """Find and parse the compose file. Raises yaml.YAMLError on bad YAML."""
    for name in _COMPOSE_FILES:
        path = project_root / name
        if path.is_file():
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            return path, data if isinstance(data, dict) else {}
    return None


def _host_port(mapping: Any) -> str | None:
    if isinstance(mapping, dict):
        published = mapping.get("published")
        return str(published) if published is not None else None
    parts = str(mapping).split("/")[0].split(":")
    return parts[-2] if len(parts) >= 2 else None


def check_compose_config(ctx: ProbeContext) -> CheckResult:
    result = CheckResult()
    try:
        found = load_compose(ctx.project_root)
    except yaml.YAMLError as e:
        result.add(Severity.CRITICAL, f"Compose file is not valid YAML: {e}")
        return result
    if found is None:
        return result
    path, data = found
    services = data.get("services") or {}
    if not services:
        result.add(Severity.WARNING, "Compose file defines no services", path)
        return result

    port_owner: dict[str, str] = {}
    for name, service in services.items():
        service = service or {}
        for mapping in service.get("ports") or []:
            port = _host_port(mapping)
            if port is None:
                continue
            if port in port_owner:
                result.add(
                    Severity.CRITICAL,
                    f"Host port {port} is mapped by both '{port_owner[port]}' and '{name}'",
                    path,
                )
            else:
                port_owner[port] = name

        build = service.get("build")
        context = build.get("context", ".") if isinstance(build, dict) else build
        if context and not str(context).startswith(("http://", "https://", "git@")):
            if not (path.parent / str(context)).is_dir():
                result.add(
                    Severity.CRITICAL,
                    f"Service '{name}' build context '{context}' does not exist",
                    path,
                )

        depends = service.get("depends_on") or []
        for dep in depends if isinstance(depends, list) else list(depends):
            if dep not in services:
                result.add(
                    Severity.CRITICAL,
                    f"Service '{name}' depends on undefined service '{dep}'",
                    path,
                )
    return result


def check_proxy_upstreams(ctx: ProbeContext) -> CheckResult:
    result = CheckResult()
    nginx_dir = ctx.project_root / "nginx"
    if not nginx_dir.is_dir():
        return result
    main_conf = nginx_dir / "nginx.conf"
    if not main_conf.is_file():
        result.add(Severity.CRITICAL, "nginx/nginx.conf missing, the proxy will fail to start", nginx_dir)
        return result
    try:
        found = load_compose(ctx.project_root)
    except yaml.YAMLError:
        # reported by the compose check
        return result
    if found is None:
        return result
    services = set((found[1].get("services") or {}).keys())
    confs = [main_conf, *sorted((nginx_dir / "conf.d").glob("*.conf"))]
    for conf in confs:
        for m in _PROXY_PASS.finditer(conf.read_text(encoding="utf-8", errors="replace")):
            upstream = m.group(1)
            if upstream not in services and upstream not in _LOCAL_HOSTS:
                result.add(
                    Severity.WARNING,
                    f"proxy_pass references '{upstream}' which is not a compose service",
                    conf,
                )
    return result


async def certificate_days_left(
    executor: CommandExecutor,
    cert_path: Path,
    timeout_seconds: float = 10.0,
) -> int | None:
    """Whole days until ``cert_path`` expires (negative once expired).

    Returns None when openssl is unavailable or the date cannot be read.
    """
    res = await executor.execute(
        f"openssl x509 -enddate -noout -in {shlex.quote(str(cert_path))}",
        timeout_seconds,
        requires=(Capability.OPENSSL,),
    )
    if not res.ok:
        return None
    m = _NOT_AFTER.search(res.stdout)
    if m is None:
        return None
    try:
        expiry = datetime.strptime(m.group(1).strip(), "%b %d %H:%M:%S %Y %Z")
    except ValueError:
        return None
    delta = expiry.replace(tzinfo=UTC) - datetime.now(UTC)
    return delta.days


def certificate_domains(cert_dir: Path) -> list[Path]:
    if not cert_dir.is_dir():
        return []
    return sorted(p for p in cert_dir.iterdir() if p.is_dir() and p.name != "README")


async def check_certificate_expiry(ctx: ProbeContext) -> CheckResult:
    result = CheckResult()
    for domain_dir in certificate_domains(ctx.config.cert_dir):
        domain = domain_dir.name
        cert = domain_dir / "fullchain.pem"
        if not cert.exists():
            result.add(Severity.CRITICAL, f"TLS certificate missing for {domain}", domain_dir)
            continue
        days = await certificate_days_left(ctx.executor, cert)
        if days is None:
            continue
        if days < 0:
            result.add(Severity.CRITICAL, f"TLS certificate for {domain} expired {-days} days ago", cert)
        elif days < ctx.config.cert_warning_days:
            result.add(Severity.WARNING, f"TLS certificate for {domain} expires in {days} days", cert)
    return result


DEFAULT_CHECKS: tuple[Check, ...] = (
    Check("lockfile_sync", "package.json and package-lock.json agree", check_lockfile_sync),
    Check("installed_dependencies", "Declared dependencies are installed", check_installed_dependencies),
    Check("import_integrity", "Relative imports and path aliases resolve", check_import_integrity),
    Check("env_completeness", "Referenced environment variables are defined", check_env_completeness),
    Check("namespace_collisions", "Shared namespace keys are owned by one file", check_namespace_collisions),
    Check("compose_config", "Compose file is valid and consistent", check_compose_config),
    Check("proxy_upstreams", "Reverse proxy upstreams are compose services", check_proxy_upstreams),
    Check("certificate_expiry", "TLS certificates are present and not expiring", check_certificate_expiry),
    Check("native_binaries", "Native modules have compiled binaries", check_native_binaries),
    Check("peer_dependencies", "No peer dependency conflicts", check_peer_dependencies),
    Check("typed_compilation", "TypeScript compiles without errors", check_typed_compilation),
)


__all__ = [
    "Check",
    "DEFAULT_CHECKS",
    "ProbeContext",
    "certificate_days_left",
    "certificate_domains",
    "load_compose",
]
