"""Configuration models for the remediation engine.

Pydantic v2 models for every component, loaded from an optional YAML file.
A missing file yields the defaults, which reproduce the engine's stock
behavior: three build attempts, a 15 minute build timeout, a 10 second
monitor interval floor, and the built-in monitor cadence.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from mender.core.errors import ConfigurationError
from mender.core.logging import get_logger

_logger = get_logger("config")

DEFAULT_MONITOR_INTERVALS: dict[str, float] = {
    "process_memory": 30.0,
    "memory_consistency": 60.0,
    "disk_space": 600.0,
    "endpoint_health": 60.0,
    "container_health": 120.0,
    "event_loop_lag": 15.0,
    "certificate_expiry": 3600.0,
    "lockfile_drift": 600.0,
}


class MemoryConfig(BaseModel):
    """Repair memory persistence."""

    path: Path | None = Field(
        default=Path("~/.mender/repair_memory.json"),
        description="JSON file backing repair memory. None keeps memory in-process only.",
    )

    @field_validator("path")
    @classmethod
    def _expand_user(cls, v: Path | None) -> Path | None:
        return v.expanduser() if v is not None else None


class AuditConfig(BaseModel):
    """Audit trail retention."""

    history_size: int = Field(
        default=500,
        ge=1,
        description="Number of audit records kept in memory for history queries",
    )
    jsonl_path: Path | None = Field(
        default=None,
        description="Optional JSON-lines file that receives every audit record",
    )
    broadcast_queue_size: int = Field(
        default=1000,
        ge=10,
        description="Maximum buffered events per broadcast subscriber before drop-oldest",
    )


class SupervisorConfig(BaseModel):
    """Build supervision and retry policy."""

    max_retries: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Maximum number of build attempts per supervisor run",
    )
    build_timeout_seconds: float = Field(
        default=900.0,
        gt=0,
        description="Timeout for a single build attempt",
    )
    fix_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for a single fix command",
    )
    build_command: str = Field(
        default="docker compose build --no-cache",
        description="Build command used when the caller does not supply one",
    )
    start_command: str | None = Field(
        default="docker compose up -d",
        description="Start command issued after a successful build; None skips it",
    )
    start_timeout_seconds: float = Field(default=60.0, gt=0)


class ProbeConfig(BaseModel):
    """Pre-flight check inputs and thresholds."""

    package_dirs: list[str] = Field(
        default_factory=lambda: [".", "server", "frontend"],
        description="Directories (relative to the project root) holding a package.json",
    )
    source_dirs: list[str] = Field(
        default_factory=lambda: ["src", "server"],
        description="Directories scanned for relative imports and env references",
    )
    env_file: str = Field(default=".env", description="Environment file consulted for env references")
    namespace_object: str = Field(
        default="STATE",
        description="Shared object whose attribute assignments are checked for collisions",
    )
    lockfile_drift_critical: int = Field(
        default=5,
        ge=0,
        description="Number of dependencies missing from a lockfile above which drift is critical",
    )
    dependency_spot_check_limit: int = Field(default=20, ge=1)
    typecheck_command: str = Field(default="npx tsc --noEmit")
    typecheck_timeout_seconds: float = Field(default=120.0, gt=0)
    peer_dependency_timeout_seconds: float = Field(default=60.0, gt=0)
    cert_dir: Path = Field(default=Path("/etc/letsencrypt/live"))
    cert_warning_days: int = Field(default=14, ge=1)
    check_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Upper bound on a single check, including any commands it runs",
    )


class GuardianConfig(BaseModel):
    """Runtime guardian scheduling and monitor thresholds."""

    min_interval_seconds: float = Field(
        default=10.0,
        gt=0,
        allow_inf_nan=False,
        description="Floor for interval changes made through the admin surface",
    )
    check_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound on a single monitor check",
    )
    intervals: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_MONITOR_INTERVALS),
        description="Per-monitor tick interval in seconds",
    )
    max_process_memory_mb: float = Field(default=2048.0, gt=0)
    system_memory_percent_limit: float = Field(default=90.0, gt=0, le=100)
    endpoint_base_url: str = Field(default="http://localhost:3000")
    endpoints: list[str] = Field(default_factory=lambda: ["/health", "/ready"])
    endpoint_timeout_seconds: float = Field(default=5.0, gt=0)
    disk_path: Path = Field(default=Path("/"))
    disk_unhealthy_percent: float = Field(default=85.0, gt=0, le=100)
    disk_warning_percent: float = Field(default=75.0, gt=0, le=100)
    disk_prune_percent: float = Field(default=90.0, gt=0, le=100)
    log_dir: Path | None = Field(
        default=None,
        description="Directory whose old *.log files are removed under disk pressure",
    )
    log_retention_days: int = Field(default=3, ge=1)
    container_prefix: str = Field(
        default="",
        description="Only containers whose name starts with this prefix are monitored",
    )
    container_restart_loop_threshold: int = Field(default=5, ge=1)
    container_restarts_per_hour: int = Field(default=3, ge=0)
    cert_unhealthy_days: int = Field(default=7, ge=0)
    cert_critical_days: int = Field(default=3, ge=0)
    cert_renew_command: str | None = Field(default="certbot renew")
    event_loop_lag_unhealthy_ms: float = Field(default=100.0, gt=0)
    event_loop_lag_critical_ms: float = Field(default=200.0, gt=0)
    lockfile_dirs: list[str] = Field(default_factory=lambda: [".", "server", "frontend"])

    @model_validator(mode="after")
    def _check_thresholds(self) -> GuardianConfig:
        if self.disk_warning_percent > self.disk_unhealthy_percent:
            raise ValueError("disk_warning_percent must not exceed disk_unhealthy_percent")
        for name, interval in self.intervals.items():
            if not math.isfinite(interval) or interval <= 0:
                raise ValueError(f"interval for monitor '{name}' must be a positive number of seconds")
        return self


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "console", "both"] = "console"
    file_path: Path | None = None


class MenderConfig(BaseModel):
    """Top-level engine configuration."""

    project_root: Path = Field(
        default=Path("."),
        description="Default project root for deploys and lockfile monitoring",
    )
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    guardian: GuardianConfig = Field(default_factory=GuardianConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_file: Path | None) -> MenderConfig:
    """Load MenderConfig from a YAML file, or return defaults.

    Raises:
        ConfigurationError: If the file exists but is not valid YAML or
            does not validate.
    """
    if config_file is None or not config_file.exists():
        return MenderConfig()
    try:
        with open(config_file) as f:
            data = yaml.safe_load(f) or {}
        config = MenderConfig.model_validate(data)
    except (yaml.YAMLError, ValidationError) as e:
        raise ConfigurationError(f"Invalid configuration in {config_file}: {e}") from e
    _logger.info("config.loaded", path=str(config_file))
    return config


__all__ = [
    "AuditConfig",
    "DEFAULT_MONITOR_INTERVALS",
    "GuardianConfig",
    "LoggingConfig",
    "MemoryConfig",
    "MenderConfig",
    "ProbeConfig",
    "SupervisorConfig",
    "load_config",
]
