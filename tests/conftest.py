"""Pytest fixtures for mender tests."""

from __future__ import annotations

import logging
from collections.abc import Generator
from pathlib import Path

import pytest
import structlog

from mender.audit.trail import AuditTrail
from mender.core.config import GuardianConfig, MemoryConfig, MenderConfig, ProbeConfig
from mender.memory.store import RepairMemory
from mender.patterns.library import PatternLibrary
from mender.repair.fixes import FixRunner
from tests.helpers import FakeExecutor


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset structlog and root handlers around each test."""
    structlog.reset_defaults()
    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level

    yield

    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """An empty project root."""
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def audit() -> AuditTrail:
    return AuditTrail()


@pytest.fixture
def memory(tmp_path: Path) -> RepairMemory:
    return RepairMemory(tmp_path / "memory" / "repair_memory.json")


@pytest.fixture
def library() -> PatternLibrary:
    return PatternLibrary()


@pytest.fixture
def fixes(executor: FakeExecutor) -> FixRunner:
    return FixRunner(executor, timeout_seconds=5.0)


@pytest.fixture
def probe_config(tmp_path: Path) -> ProbeConfig:
    """Probe config that never looks outside the test's temp dir."""
    return ProbeConfig(cert_dir=tmp_path / "certs")


@pytest.fixture
def config(tmp_path: Path, project: Path, probe_config: ProbeConfig) -> MenderConfig:
    return MenderConfig(
        project_root=project,
        memory=MemoryConfig(path=tmp_path / "memory" / "repair_memory.json"),
        probe=probe_config,
        guardian=GuardianConfig(disk_path=tmp_path),
    )
