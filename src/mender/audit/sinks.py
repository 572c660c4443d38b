"""Built-in audit sinks."""

from __future__ import annotations

import json
import threading
from collections import deque
from pathlib import Path

from mender.audit.records import AuditRecord


class InMemoryAuditSink:
    """Bounded in-process history; oldest records are dropped first."""

    def __init__(self, max_records: int = 500) -> None:
        self._records: deque[AuditRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    def recent(self, n: int = 20) -> list[AuditRecord]:
        """The last ``n`` records, oldest first."""
        if n <= 0:
            return []
        with self._lock:
            return list(self._records)[-n:]

    def __len__(self) -> int:
        return len(self._records)


class JsonlAuditSink:
    """Appends each record as one JSON line to a file."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        line = json.dumps(record.to_dict(), default=str)
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(line + "\n")


__all__ = ["InMemoryAuditSink", "JsonlAuditSink"]
