from __future__ import annotations

import logging
import threading
import weakref
from typing import Optional, Tuple

from common.errors import InvalidLocation, TransientError, Unauthorized

from .backend import OptimisticLockError, RecordBackend
from .models import DEFAULT_TOTAL_LOCATIONS, ProgressRecord, identity_tag


logger = logging.getLogger(__name__)


class ProgressStore:
    """
    Authoritative progress store: one `ProgressRecord` per identity.

    - `write()` is idempotent and validates the sequence number against
      `total_locations` before touching the record.
    - Read-modify-write for one identity happens under a per-identity lock, so
      concurrent writes in this process never interleave. Writers in other
      processes are handled by the backend's ETag compare-and-swap; a lost race
      re-runs the whole step (at most `max_cas_attempts` times).
    - Different identities never contend on the same lock, and locks for idle
      identities are released, so memory stays bounded in long-lived processes.
    """

    def __init__(
        self,
        backend: RecordBackend,
        *,
        total_locations: int = DEFAULT_TOTAL_LOCATIONS,
        max_cas_attempts: int = 5,
    ) -> None:
        if total_locations < 1:
            raise ValueError("total_locations must be >= 1")
        if max_cas_attempts < 1:
            raise ValueError("max_cas_attempts must be >= 1")
        self._backend = backend
        self._total = total_locations
        self._max_cas = max_cas_attempts
        # Held weakly: a lock lives only while some caller is using it
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    @property
    def total_locations(self) -> int:
        return self._total

    def _lock_for(self, identity: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(identity)
            if lock is None:
                lock = threading.Lock()
                self._locks[identity] = lock
            return lock

    @staticmethod
    def _check_identity(identity: str) -> None:
        if not identity or not isinstance(identity, str):
            raise Unauthorized("Missing caller identity")

    def _load_or_create(self, identity: str) -> Tuple[ProgressRecord, Optional[str]]:
        record, etag = self._backend.load(identity)
        if record is not None:
            return (record, etag)
        record = ProgressRecord.empty(self._total)
        try:
            etag = self._backend.save(identity, record, if_match=None)
        except OptimisticLockError:
            # Created concurrently by another process; use theirs
            existing, etag = self._backend.load(identity)
            if existing is None:
                raise TransientError("Progress record vanished during creation")
            return (existing, etag)
        logger.debug("Created empty progress record for %s", identity_tag(identity))
        return (record, etag)

    def read(self, identity: str) -> ProgressRecord:
        self._check_identity(identity)
        with self._lock_for(identity):
            record, _ = self._load_or_create(identity)
            return record

    def write(self, identity: str, sequence_number: int) -> ProgressRecord:
        self._check_identity(identity)
        if isinstance(sequence_number, bool) or not isinstance(sequence_number, int):
            raise InvalidLocation(sequence_number, self._total)
        if not 1 <= sequence_number <= self._total:
            raise InvalidLocation(sequence_number, self._total)

        with self._lock_for(identity):
            for attempt in range(1, self._max_cas + 1):
                record, etag = self._load_or_create(identity)
                if record.contains(sequence_number):
                    return record
                updated = record.with_completion(sequence_number)
                try:
                    self._backend.save(identity, updated, if_match=etag)
                except OptimisticLockError:
                    logger.debug(
                        "Concurrent update of %s, retrying (%d/%d)", identity_tag(identity), attempt, self._max_cas
                    )
                    continue
                logger.info(
                    "Recorded location %d for %s (%s)",
                    sequence_number,
                    identity_tag(identity),
                    updated.progress_text(),
                )
                return updated

        raise TransientError(
            f"Could not record location {sequence_number}: record kept changing concurrently",
            maybe_applied=False,
        )


__all__ = ["ProgressStore"]
