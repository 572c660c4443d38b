"""Structured logging for the remediation engine.

Every component logs through structlog with a bound ``component`` name and
dotted snake_case event names (``"supervisor.fix_applied"``). While a
``RemediationContext`` is active, its run id and phase are merged into every
entry so that one deploy can be followed across prober, supervisor and
guardian output.

Example usage:
    from mender.core.logging import RemediationContext, get_logger, with_context

    configure_logging(level="DEBUG", format="console")
    logger = get_logger("supervisor")

    with with_context(RemediationContext(phase="mid_build")):
        logger.info("supervisor.attempt_started", attempt=1)
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Field names whose values are never written to logs
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "token",
    "secret",
    "password",
    "credential",
    "authorization",
    "bearer",
})


class CompressingRotatingFileHandler(RotatingFileHandler):
    """Rotating file handler that gzips rotated files.

    ``mender.log.1`` becomes ``mender.log.1.gz``; older archives are shifted
    up and anything beyond ``backupCount`` is removed.
    """

    def __init__(
        self,
        filename: str | Path,
        maxBytes: int = 0,
        backupCount: int = 0,
        encoding: str | None = None,
        compress_level: int = 9,
    ) -> None:
        self.compress_level = compress_level
        super().__init__(
            filename,
            maxBytes=maxBytes,
            backupCount=backupCount,
            encoding=encoding,
        )

    def doRollover(self) -> None:
        if self.stream:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]

        for i in range(self.backupCount - 1, 0, -1):
            src = f"{self.baseFilename}.{i}.gz"
            dst = f"{self.baseFilename}.{i + 1}.gz"
            if os.path.exists(src):
                if os.path.exists(dst):
                    os.remove(dst)
                os.rename(src, dst)

        if os.path.exists(self.baseFilename):
            compressed_path = f"{self.baseFilename}.1.gz"
            try:
                with (
                    open(self.baseFilename, "rb") as f_in,
                    gzip.open(compressed_path, "wb", compresslevel=self.compress_level) as f_out,
                ):
                    shutil.copyfileobj(f_in, f_out)
                os.remove(self.baseFilename)
            except OSError:
                # Keep an uncompressed backup rather than losing the file
                if os.path.exists(compressed_path):
                    os.remove(compressed_path)
                os.replace(self.baseFilename, f"{self.baseFilename}.1")

        stale = f"{self.baseFilename}.{self.backupCount + 1}.gz"
        if os.path.exists(stale):
            os.remove(stale)

        self.stream = self._open()


@dataclass(frozen=True)
class RemediationContext:
    """Correlation identifiers merged into log entries inside ``with_context``.

    Attributes:
        phase: Remediation phase (``pre_build``, ``mid_build``, ``post_build``, ``deploy``).
        run_id: Unique id for one engine operation, generated when omitted.
        project_root: Project being remediated, if any.
    """

    phase: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    project_root: str | None = None

    def with_phase(self, phase: str) -> RemediationContext:
        """Return a copy of this context for another phase of the same run."""
        return RemediationContext(phase=phase, run_id=self.run_id, project_root=self.project_root)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"phase": self.phase, "run_id": self.run_id}
        if self.project_root is not None:
            result["project_root"] = self.project_root
        return result


_current_context: ContextVar[RemediationContext | None] = ContextVar(
    "mender_context", default=None
)


def get_current_context() -> RemediationContext | None:
    """Return the active RemediationContext, or None outside a context block."""
    return _current_context.get()


@contextmanager
def with_context(ctx: RemediationContext) -> Iterator[RemediationContext]:
    """Activate ``ctx`` for the duration of the block.

    Uses a ContextVar, so concurrently running asyncio tasks each keep
    their own context.
    """
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def phase_context(phase: str, project_root: str | None = None) -> RemediationContext:
    """Context for ``phase`` that continues the active run, or starts a new one.

    Inside an active context the run id carries over, so a deploy keeps one
    run id through its prober, supervisor and guardian phases.
    """
    current = get_current_context()
    if current is None:
        return RemediationContext(phase=phase, project_root=project_root)
    ctx = current.with_phase(phase)
    if project_root is not None and project_root != ctx.project_root:
        ctx = RemediationContext(phase=phase, run_id=ctx.run_id, project_root=project_root)
    return ctx


def _redact(key: str, value: Any) -> Any:
    key_lower = key.lower()
    if any(pattern in key_lower for pattern in SENSITIVE_PATTERNS):
        return "[REDACTED]"
    return value


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that redacts sensitive fields, one level deep."""
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            sanitized[key] = {k: _redact(k, v) for k, v in value.items()}
        else:
            sanitized[key] = _redact(key, value)
    return sanitized


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that merges the active RemediationContext.

    Explicitly logged keys take precedence over context keys.
    """
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            event_dict.setdefault(key, value)
    return event_dict


class MenderLogger:
    """Component-bound wrapper around a structlog logger.

    The underlying structlog logger is fetched on every call, so loggers
    created at import time still honor a later ``configure_logging()``.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    def bind(self, **context: Any) -> MenderLogger:
        """Return a new logger with additional bound context."""
        return MenderLogger(**{**self._context, **context})

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log at error level with the active exception's traceback."""
        self._get_logger().exception(event, **kw)


def _build_processors(renderer: Processor, include_timestamps: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
        _add_context,
    ]
    if include_timestamps:
        processors.append(_add_timestamp)
    processors.extend([
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ])
    return processors


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    format: Literal["json", "console", "both"] = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 50,
    backup_count: int = 5,
    include_timestamps: bool = True,
) -> None:
    """Configure structured logging for the engine.

    Call once at startup, before the engine is built.

    Args:
        level: Minimum log level to capture.
        format: ``console`` for human-readable stderr output, ``json`` for
            structured output (to ``file_path`` if given, stdout otherwise),
            ``both`` for console on stderr plus JSON to ``file_path``.
        file_path: Log file; required when ``format="both"``.
        max_file_size_mb: Size at which the log file is rotated and gzipped.
        backup_count: Number of rotated files to keep.
        include_timestamps: Whether to add ISO8601 UTC timestamps.

    Raises:
        ValueError: If ``format="both"`` without a ``file_path``.
    """
    if format == "both" and file_path is None:
        raise ValueError("file_path is required when format='both'")

    log_level = getattr(logging, level)
    handlers: list[logging.Handler] = []

    if format in ("console", "both"):
        handlers.append(logging.StreamHandler(sys.stderr))

    if format in ("json", "both"):
        if file_path is not None:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(
                CompressingRotatingFileHandler(
                    file_path,
                    maxBytes=max_file_size_mb * 1024 * 1024,
                    backupCount=backup_count,
                    encoding="utf-8",
                )
            )
        else:
            handlers.append(logging.StreamHandler(sys.stdout))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    if format == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    # cache_logger_on_first_use=False so loggers created at import time
    # pick up this configuration
    structlog.configure(
        processors=_build_processors(renderer, include_timestamps),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> MenderLogger:
    """Get a logger bound to ``component`` (e.g. ``"guardian"``, ``"prober"``)."""
    return MenderLogger(component, **initial_context)


__all__ = [
    "CompressingRotatingFileHandler",
    "MenderLogger",
    "RemediationContext",
    "SENSITIVE_PATTERNS",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "phase_context",
    "with_context",
]
