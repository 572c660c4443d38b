"""Mender: self-remediation for build and deploy pipelines.

Three phases share one pattern library, one repair memory and one audit
trail: a pre-flight prober that scans a project before building, a build
supervisor that retries failed builds with learned fixes, and a runtime
guardian that keeps health monitors running after deploy.
"""

from mender.admin import AdminSurface
from mender.core.config import MenderConfig, load_config
from mender.engine import DeployResult, RemediationEngine

__version__ = "0.1.0"

__all__ = [
    "AdminSurface",
    "DeployResult",
    "MenderConfig",
    "RemediationEngine",
    "__version__",
    "load_config",
]
