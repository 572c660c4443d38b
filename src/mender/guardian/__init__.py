"""Runtime guardian: scheduled health monitors with bounded repairs."""

from mender.guardian.guardian import Guardian
from mender.guardian.models import Monitor, MonitorResult, MonitorStatus, RepairAction
from mender.guardian.monitors import build_default_monitors

__all__ = [
    "Guardian",
    "Monitor",
    "MonitorResult",
    "MonitorStatus",
    "RepairAction",
    "build_default_monitors",
]
