"""Persistent repair memory.

Maps failure signatures to the fix tried for them, with outcome counters.
Consulted before the pattern library so that fixes proven in the past are
reused; fixes that keep failing are deprecated (kept, never deleted) and
stop being offered.

Concurrency: mutations of one entry are serialized by a per-signature
``threading.Lock``; entries themselves are immutable and replaced with an
atomic dict assignment, so ``lookup`` reads without locking. Every
mutation is flushed to disk (write-through) under a separate flush lock.
"""

from __future__ import annotations

import hashlib
import json
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from mender.core.errors import MemoryPersistenceError
from mender.core.logging import get_logger
from mender.memory.models import (
    FixDescriptor,
    MemorySnapshot,
    RepairMemoryEntry,
    utc_now,
)

_logger = get_logger("memory")


def normalize_signature(signature: str) -> str:
    """Collapse whitespace so cosmetic differences map to one entry."""
    return " ".join(signature.split())


def signature_key(signature: str) -> str:
    """Stable storage key: first 16 hex chars of sha256 of the normalized signature."""
    digest = hashlib.sha256(normalize_signature(signature).encode("utf-8")).hexdigest()
    return digest[:16]


class RepairMemory:
    """Learned signature-to-fix registry with write-through JSON persistence.

    Args:
        path: Backing JSON file. ``None`` keeps memory in-process only.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._entries: dict[str, RepairMemoryEntry] = {}
        self._key_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._flush_lock = threading.Lock()

    @property
    def path(self) -> Path | None:
        return self._path

    def __len__(self) -> int:
        return len(self._entries)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    # ─── Mutations ────────────────────────────────────────────────────

    def record(self, signature: str, fix: FixDescriptor) -> RepairMemoryEntry:
        """Count one attempted repair of ``signature``.

        The first call creates the entry with ``fix``; later calls keep the
        originally stored fix and only bump ``occurrences``.
        """
        key = signature_key(signature)
        with self._lock_for(key):
            existing = self._entries.get(key)
            now = utc_now()
            if existing is None:
                entry = RepairMemoryEntry(
                    signature=normalize_signature(signature),
                    fix=fix,
                    occurrences=1,
                    first_seen=now,
                    last_seen=now,
                )
                _logger.info("memory.entry_created", key=key, fix=fix.name)
            else:
                occurrences = existing.occurrences + 1
                entry = existing.model_copy(update={
                    "occurrences": occurrences,
                    "success_rate": RepairMemoryEntry.rate(existing.successes, occurrences),
                    "last_seen": now,
                })
            self._entries[key] = entry
        self.flush()
        return entry

    def record_success(self, signature: str) -> RepairMemoryEntry | None:
        """Count a successful repair. Unknown signatures are ignored."""
        key = signature_key(signature)
        with self._lock_for(key):
            existing = self._entries.get(key)
            if existing is None:
                return None
            successes = existing.successes + 1
            entry = existing.model_copy(update={
                "successes": successes,
                "success_rate": RepairMemoryEntry.rate(successes, existing.occurrences),
            })
            self._entries[key] = entry
        _logger.info("memory.success_recorded", key=key, success_rate=round(entry.success_rate, 3))
        self.flush()
        return entry

    def record_failure(self, signature: str) -> RepairMemoryEntry | None:
        """Count a failed repair, deprecating the fix once it proves unreliable.

        Unknown signatures are ignored.
        """
        key = signature_key(signature)
        with self._lock_for(key):
            existing = self._entries.get(key)
            if existing is None:
                return None
            rate = RepairMemoryEntry.rate(existing.successes, existing.occurrences)
            deprecated = existing.deprecated or RepairMemoryEntry.should_deprecate(
                rate, existing.occurrences
            )
            entry = existing.model_copy(update={
                "failures": existing.failures + 1,
                "success_rate": rate,
                "deprecated": deprecated,
            })
            self._entries[key] = entry
        if deprecated and not existing.deprecated:
            _logger.warning(
                "memory.fix_deprecated",
                key=key,
                fix=entry.fix.name,
                success_rate=round(rate, 3),
                occurrences=entry.occurrences,
            )
        self.flush()
        return entry

    # ─── Queries ──────────────────────────────────────────────────────

    def lookup(self, signature: str) -> FixDescriptor | None:
        """Return the stored fix if it is trusted (not deprecated, success rate > 0.5)."""
        entry = self._entries.get(signature_key(signature))
        if entry is not None and entry.trusted:
            return entry.fix
        return None

    def get(self, signature: str) -> RepairMemoryEntry | None:
        return self._entries.get(signature_key(signature))

    def entries(self) -> list[RepairMemoryEntry]:
        return list(self._entries.values())

    def stats(self) -> dict[str, Any]:
        """Aggregate statistics for the administrative surface."""
        entries = self.entries()
        total = len(entries)
        top = sorted(entries, key=lambda e: e.occurrences, reverse=True)[:10]
        return {
            "total_patterns": total,
            "total_repairs": sum(e.successes for e in entries),
            "avg_success_rate": (sum(e.success_rate for e in entries) / total) if total else 0.0,
            "top_patterns": [e.model_dump(mode="json") for e in top],
            "deprecated_fixes": sum(1 for e in entries if e.deprecated),
        }

    # ─── Consistency ──────────────────────────────────────────────────

    def verify(self) -> list[dict[str, Any]]:
        """Report entries whose stored fields disagree with their counters or key."""
        problems: list[dict[str, Any]] = []
        for key, entry in list(self._entries.items()):
            expected_rate = RepairMemoryEntry.rate(entry.successes, entry.occurrences)
            if abs(entry.success_rate - expected_rate) > 1e-9:
                problems.append({
                    "key": key,
                    "problem": "success_rate_drift",
                    "stored": entry.success_rate,
                    "expected": expected_rate,
                })
            if signature_key(entry.signature) != key:
                problems.append({"key": key, "problem": "key_mismatch"})
            if entry.last_seen < entry.first_seen:
                problems.append({"key": key, "problem": "timestamps_inverted"})
        return problems

    def reconcile(self) -> int:
        """Recompute derived fields and re-key misfiled entries.

        Returns:
            Number of entries changed.
        """
        changed = 0
        for key, entry in list(self._entries.items()):
            with self._lock_for(key):
                current = self._entries.get(key)
                if current is None:
                    continue
                expected_rate = RepairMemoryEntry.rate(current.successes, current.occurrences)
                fixed = current.model_copy(update={
                    "success_rate": expected_rate,
                    "last_seen": max(current.first_seen, current.last_seen),
                })
                correct_key = signature_key(current.signature)
                if fixed == current and correct_key == key:
                    continue
                if correct_key != key:
                    del self._entries[key]
                    other = self._entries.get(correct_key)
                    self._entries[correct_key] = fixed if other is None else _merge_entries(other, fixed)
                else:
                    self._entries[key] = fixed
                changed += 1
        if changed:
            _logger.info("memory.reconciled", changed=changed)
            self.flush()
        return changed

    # ─── Persistence ──────────────────────────────────────────────────

    def load(self) -> int:
        """Merge the backing file into memory.

        A missing file is not an error. Entries already in memory keep their
        statistics: counters are merged by taking the larger value per key.

        Returns:
            Number of entries read from disk.

        Raises:
            MemoryPersistenceError: If the file exists but cannot be parsed.
        """
        if self._path is None or not self._path.exists():
            return 0
        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
            snapshot = MemorySnapshot.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise MemoryPersistenceError(f"Cannot load repair memory from {self._path}: {e}") from e
        self.merge(snapshot.entries)
        _logger.info("memory.loaded", path=str(self._path), entries=len(snapshot.entries))
        return len(snapshot.entries)

    def merge(self, entries: Mapping[str, RepairMemoryEntry]) -> None:
        """Merge externally loaded entries without losing local statistics."""
        for key, incoming in entries.items():
            with self._lock_for(key):
                existing = self._entries.get(key)
                self._entries[key] = incoming if existing is None else _merge_entries(existing, incoming)

    def flush(self) -> None:
        """Atomically write all entries to the backing file (temp file + rename).

        Write errors are logged, not raised; the in-memory state stays
        authoritative and the next mutation retries the write.
        """
        if self._path is None:
            return
        with self._flush_lock:
            snapshot = MemorySnapshot(entries=dict(self._entries))
            temp_file = self._path.with_suffix(self._path.suffix + ".tmp")
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with open(temp_file, "w", encoding="utf-8") as f:
                    json.dump(snapshot.model_dump(mode="json"), f, indent=2)
                temp_file.replace(self._path)
            except OSError as e:
                _logger.error("memory.flush_failed", path=str(self._path), error=str(e))


def _merge_entries(a: RepairMemoryEntry, b: RepairMemoryEntry) -> RepairMemoryEntry:
    """Combine two views of the same signature; ``a`` keeps its stored fix."""
    occurrences = max(a.occurrences, b.occurrences)
    successes = max(a.successes, b.successes)
    return a.model_copy(update={
        "occurrences": occurrences,
        "successes": successes,
        "failures": max(a.failures, b.failures),
        "success_rate": RepairMemoryEntry.rate(successes, occurrences),
        "deprecated": a.deprecated or b.deprecated,
        "first_seen": min(a.first_seen, b.first_seen),
        "last_seen": max(a.last_seen, b.last_seen),
    })


__all__ = ["RepairMemory", "normalize_signature", "signature_key"]
