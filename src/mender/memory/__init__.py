"""Learned repair memory."""

from mender.memory.models import (
    DEPRECATION_MIN_OCCURRENCES,
    DEPRECATION_RATE,
    TRUST_THRESHOLD,
    FixDescriptor,
    MemorySnapshot,
    RepairMemoryEntry,
)
from mender.memory.store import RepairMemory, normalize_signature, signature_key

__all__ = [
    "DEPRECATION_MIN_OCCURRENCES",
    "DEPRECATION_RATE",
    "FixDescriptor",
    "MemorySnapshot",
    "RepairMemory",
    "RepairMemoryEntry",
    "TRUST_THRESHOLD",
    "normalize_signature",
    "signature_key",
]
