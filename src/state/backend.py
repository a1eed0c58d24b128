from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol, Tuple

from .models import ProgressRecord


class OptimisticLockError(Exception):
    """Raised when an ETag precondition fails during a conditional write."""


class RecordBackend(Protocol):
    """
    Persistence for one `ProgressRecord` per identity.

    - `load(identity)` returns `(record, etag)`, or `(None, None)` when absent.
    - `save(identity, record, if_match=...)` returns the new ETag. With `if_match=None`
      the write only succeeds if no record exists yet; otherwise the stored ETag
      must equal `if_match`. Either precondition failing raises `OptimisticLockError`.
    """

    def load(self, identity: str) -> Tuple[Optional[ProgressRecord], Optional[str]]:
        ...

    def save(self, identity: str, record: ProgressRecord, *, if_match: Optional[str]) -> str:
        ...


class MemoryRecordBackend:
    """In-process backend holding the JSON encoding of each record. Used for tests and local runs."""

    def __init__(self) -> None:
        self._items: Dict[str, Tuple[str, str]] = {}
        self._version = 0
        self._lock = threading.Lock()

    def load(self, identity: str) -> Tuple[Optional[ProgressRecord], Optional[str]]:
        with self._lock:
            item = self._items.get(identity)
        if item is None:
            return (None, None)
        payload, etag = item
        return (ProgressRecord.model_validate_json(payload), etag)

    def save(self, identity: str, record: ProgressRecord, *, if_match: Optional[str]) -> str:
        payload = record.model_dump_json()
        with self._lock:
            current = self._items.get(identity)
            current_etag = current[1] if current else None
            if current_etag != if_match:
                raise OptimisticLockError(f"ETag mismatch for {identity!r}")
            self._version += 1
            etag = f'"v{self._version}"'
            self._items[identity] = (payload, etag)
            return etag

    def identities(self) -> list[str]:
        with self._lock:
            return sorted(self._items)
