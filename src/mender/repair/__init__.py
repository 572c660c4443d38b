"""Executable fixes shared by the prober and the build supervisor."""

from mender.repair.fixes import DEFAULT_FIX_ACTIONS, FixAction, FixOutcome, FixRunner

__all__ = ["DEFAULT_FIX_ACTIONS", "FixAction", "FixOutcome", "FixRunner"]
