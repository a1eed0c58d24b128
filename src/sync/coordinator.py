"""
Optimistic completion and reconciliation of quest progress.

A completion moves through explicit states recorded on the cached entry:

    pending -> optimistic -> confirmed
    pending -> optimistic -> unsynced (queued for `reconcile`)

The local cache is updated before any network traffic so the UI reflects the
user's action immediately; the authoritative store is then written through the
retry executor and, when the response is inconclusive, verified by read-back.
Completions are monotonic, so every merge is a union in which the server's set
always wins and locally pending locations are carried along until applied.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from common.errors import (
    InvalidLocation,
    SyncDeferred,
    TransientError,
    VerificationMismatch,
)
from common.retry import BackoffPolicy, RetryExecutor
from state.local_cache import LocalCache
from state.models import (
    DEFAULT_TOTAL_LOCATIONS,
    CacheEntry,
    ProgressRecord,
    SyncStatus,
    identity_tag,
    merge_locations,
)


logger = logging.getLogger(__name__)

DEFAULT_VERIFY_BACKOFF = BackoffPolicy(base=0.3, cap=1.2)


class ProgressSource(Protocol):
    """The authoritative store contract, local (`ProgressStore`) or remote (`HttpProgressStore`)."""

    def read(self, identity: str) -> ProgressRecord:
        ...

    def write(self, identity: str, sequence_number: int) -> ProgressRecord:
        ...


class CompletionStatus(str, Enum):
    CONFIRMED = "confirmed"
    UNSYNCED = "unsynced"


@dataclass(frozen=True)
class CompletionOutcome:
    status: CompletionStatus
    sequence_number: int
    entry: Optional[CacheEntry]
    attempts: int = 0
    deferred: Optional[SyncDeferred] = None
    duplicate: bool = False

    @property
    def confirmed(self) -> bool:
        return self.status is CompletionStatus.CONFIRMED


class ReconcileStatus(str, Enum):
    NOOP = "noop"
    SYNCED = "synced"
    PARTIAL = "partial"


@dataclass(frozen=True)
class ReconcileOutcome:
    status: ReconcileStatus
    entry: Optional[CacheEntry]
    replayed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    dropped: List[int] = field(default_factory=list)
    error: Optional[BaseException] = None


class SyncCoordinator:
    """
    Orchestrates optimistic update, server write, verification and reconciliation.

    - `submit()` runs a completion on a background thread and returns its future.
      A second submit for the same identity and location while the first is in
      flight returns the same future. Futures are already running when returned,
      so they cannot be cancelled; the attempt always reaches confirmed or unsynced.
    - `complete()` is `submit()` plus waiting for the outcome.
    - `reconcile()` replays cached locations the server lacks.
    - Every cache mutation goes through `LocalCache.update` (whole-entry replace
      under the cache lock), so overlapping completions and reconciliation
      never lose each other's changes.
    """

    def __init__(
        self,
        store: ProgressSource,
        cache: LocalCache,
        *,
        executor: Optional[RetryExecutor] = None,
        total_locations: int = DEFAULT_TOTAL_LOCATIONS,
        write_attempts: int = 3,
        verify_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
        verify_backoff: Optional[BackoffPolicy] = None,
        max_workers: int = 4,
    ) -> None:
        self._store = store
        self._cache = cache
        self._executor = executor or RetryExecutor()
        self._total = total_locations
        self._write_attempts = write_attempts
        self._verify_attempts = verify_attempts
        self._backoff = backoff or BackoffPolicy()
        self._verify_backoff = verify_backoff or DEFAULT_VERIFY_BACKOFF
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="progress-sync")
        self._inflight: Dict[Tuple[str, int], Future] = {}
        self._inflight_lock = threading.Lock()

    def close(self) -> None:
        """Wait for in-flight completions, then stop the worker threads."""
        self._pool.shutdown(wait=True)

    def __enter__(self) -> "SyncCoordinator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Completion ---------------
    def submit(self, identity: str, sequence_number: int) -> "Future[CompletionOutcome]":
        key = (identity, sequence_number)
        with self._inflight_lock:
            fut = self._inflight.get(key)
            if fut is not None:
                logger.debug("Coalescing duplicate completion of location %d", sequence_number)
                return fut
            fut = Future()
            fut.set_running_or_notify_cancel()
            self._inflight[key] = fut
        try:
            self._pool.submit(self._run, key, fut)
        except RuntimeError:
            with self._inflight_lock:
                self._inflight.pop(key, None)
            raise
        return fut

    def complete(
        self, identity: str, sequence_number: int, *, timeout: Optional[float] = None
    ) -> CompletionOutcome:
        return self.submit(identity, sequence_number).result(timeout=timeout)

    def in_flight(self, identity: str, sequence_number: int) -> bool:
        with self._inflight_lock:
            return (identity, sequence_number) in self._inflight

    def _run(self, key: Tuple[str, int], fut: "Future[CompletionOutcome]") -> None:
        identity, sequence_number = key
        try:
            outcome = self._complete(identity, sequence_number)
        except BaseException as exc:
            with self._inflight_lock:
                self._inflight.pop(key, None)
            fut.set_exception(exc)
        else:
            with self._inflight_lock:
                self._inflight.pop(key, None)
            fut.set_result(outcome)

    def _complete(self, identity: str, sequence_number: int) -> CompletionOutcome:
        cached = self._cache.get(identity)
        if cached is not None and cached.synced and cached.contains(sequence_number):
            logger.debug("Location %d already confirmed; nothing to send", sequence_number)
            return CompletionOutcome(
                status=CompletionStatus.CONFIRMED,
                sequence_number=sequence_number,
                entry=cached,
                duplicate=True,
            )

        prior = self._apply_optimistic(identity, sequence_number)
        added = prior is None or not prior.contains(sequence_number)

        maybe_applied = False

        def _write() -> ProgressRecord:
            nonlocal maybe_applied
            try:
                return self._store.write(identity, sequence_number)
            except TransientError as exc:
                maybe_applied = maybe_applied or exc.maybe_applied
                raise
            except (TimeoutError, ConnectionError):
                maybe_applied = True
                raise

        result = self._executor.run(_write, self._write_attempts, self._backoff)

        if result.ok:
            record = result.unwrap()
            if record.contains(sequence_number):
                return self._confirm(identity, sequence_number, record, result.attempts)

            logger.warning(
                "Write of location %d reported success without applying it; verifying", sequence_number
            )
            verify = self._executor.run(
                lambda: self._read_expecting(identity, sequence_number),
                self._verify_attempts,
                self._verify_backoff,
            )
            attempts = result.attempts + verify.attempts
            if verify.ok:
                return self._confirm(identity, sequence_number, verify.unwrap(), attempts)
            if not verify.retryable:
                # The write may have landed; keep the user's intent queued
                self._cache.mark_unsynced(identity, attempts=attempts)
                raise verify.error  # type: ignore[misc]
            return self._defer(
                identity,
                sequence_number,
                reason="verification",
                attempts=attempts,
                error=verify.error,
                maybe_applied=True,
            )

        if result.retryable:
            return self._defer(
                identity,
                sequence_number,
                reason="network",
                attempts=result.attempts,
                error=result.error,
                maybe_applied=maybe_applied,
            )

        logger.warning("Completion of location %d rejected: %s", sequence_number, result.error)
        if added:
            self._rollback(identity, sequence_number, prior)
        raise result.error  # type: ignore[misc]

    def _apply_optimistic(self, identity: str, sequence_number: int) -> Optional[CacheEntry]:
        """Add the location to the cached entry; returns the entry as it was before."""
        seen: Dict[str, Optional[CacheEntry]] = {}

        def _apply(current: Optional[CacheEntry]) -> Optional[CacheEntry]:
            seen["prior"] = current
            if current is not None and current.contains(sequence_number):
                return current
            base = current or CacheEntry.from_record(
                ProgressRecord.empty(self._total), status=SyncStatus.PENDING
            )
            return base.with_completion(sequence_number).evolve(status=SyncStatus.OPTIMISTIC, attempts=0)

        entry = self._cache.update(identity, _apply)
        if entry is not None:
            logger.debug(
                "Optimistic progress for %s: %s", identity_tag(identity), entry.progress_text()
            )
        return seen.get("prior")

    def _read_expecting(self, identity: str, sequence_number: int) -> ProgressRecord:
        record = self._store.read(identity)
        if not record.contains(sequence_number):
            raise VerificationMismatch(sequence_number)
        return record

    def _confirm(
        self, identity: str, sequence_number: int, record: ProgressRecord, attempts: int
    ) -> CompletionOutcome:
        entry = self._adopt(identity, record)
        logger.info(
            "Location %d confirmed for %s (%s)",
            sequence_number,
            identity_tag(identity),
            record.progress_text(),
        )
        return CompletionOutcome(
            status=CompletionStatus.CONFIRMED,
            sequence_number=sequence_number,
            entry=entry,
            attempts=attempts,
        )

    def _defer(
        self,
        identity: str,
        sequence_number: int,
        *,
        reason: str,
        attempts: int,
        error: Optional[BaseException],
        maybe_applied: bool,
    ) -> CompletionOutcome:
        entry = self._cache.mark_unsynced(identity, attempts=attempts)
        if maybe_applied:
            msg = f"Location {sequence_number} may not have been recorded; it will be retried"
        else:
            msg = f"Location {sequence_number} saved locally; it will sync when connection is restored"
        deferred = SyncDeferred(
            msg, reason=reason, attempts=attempts, maybe_applied=maybe_applied, cause=error
        )
        logger.warning("%s (%d attempts, last error: %s)", msg, attempts, error)
        return CompletionOutcome(
            status=CompletionStatus.UNSYNCED,
            sequence_number=sequence_number,
            entry=entry,
            attempts=attempts,
            deferred=deferred,
        )

    def _rollback(self, identity: str, sequence_number: int, prior: Optional[CacheEntry]) -> None:
        def _undo(current: Optional[CacheEntry]) -> Optional[CacheEntry]:
            if current is None or not current.contains(sequence_number):
                return current
            remaining = [n for n in current.completed_locations if n != sequence_number]
            if prior is None:
                if not remaining:
                    return None
            elif set(remaining) == set(prior.completed_locations):
                return prior
            return current.evolve(
                completed_locations=remaining,
                last_completed_location=remaining[-1] if remaining else 0,
            )

        self._cache.update(identity, _undo)
        logger.info("Rolled back optimistic completion of location %d", sequence_number)

    def _adopt(
        self, identity: str, record: ProgressRecord, *, drop: Iterable[int] = ()
    ) -> Optional[CacheEntry]:
        """Make the authoritative record the cached entry, keeping locations still pending locally."""
        dropped = set(drop)

        def _merge(current: Optional[CacheEntry]) -> Optional[CacheEntry]:
            extra: List[int] = []
            last = record.last_completed_location
            if current is not None:
                extra = [n for n in current.completed_locations if not record.contains(n) and n not in dropped]
                if current.last_completed_location in extra:
                    last = current.last_completed_location
            # A confirmed entry only holds server-acknowledged locations, so anything
            # it has beyond `record` comes from a newer response, not pending work
            pending = extra if current is not None and not current.synced else []
            status = SyncStatus.UNSYNCED if pending else SyncStatus.CONFIRMED
            attempts = current.attempts if (pending and current is not None) else 0
            return CacheEntry(
                completed_locations=merge_locations(record.completed_locations, extra),
                last_completed_location=last,
                total_locations=record.total_locations,
                status=status,
                attempts=attempts,
            )

        return self._cache.update(identity, _merge)

    # --------------- Reconciliation ---------------
    def reconcile(self, identity: str) -> ReconcileOutcome:
        """
        Replay locally known but unconfirmed completions against the authoritative store.

        Safe to call any number of times: it only issues idempotent writes. Network
        failures leave the entry unsynced for the next opportunity; authorization
        and other terminal errors are raised.
        """
        entry = self._cache.get(identity)
        if entry is None or entry.synced:
            return ReconcileOutcome(status=ReconcileStatus.NOOP, entry=entry)

        server_res = self._executor.run(lambda: self._store.read(identity), self._write_attempts, self._backoff)
        if not server_res.ok:
            if not server_res.retryable:
                raise server_res.error  # type: ignore[misc]
            logger.warning("Reconcile postponed, progress service unavailable: %s", server_res.error)
            return ReconcileOutcome(
                status=ReconcileStatus.PARTIAL,
                entry=entry,
                failed=list(entry.completed_locations),
                error=server_res.error,
            )

        server = server_res.unwrap()
        missing = [n for n in entry.completed_locations if not server.contains(n)]
        replayed: List[int] = []
        failed: List[int] = []
        dropped: List[int] = []
        last_error: Optional[BaseException] = None

        for n in missing:
            res = self._executor.run(lambda n=n: self._store.write(identity, n), self._write_attempts, self._backoff)
            if res.ok:
                record = res.unwrap()
                if record.contains(n):
                    replayed.append(n)
                    server = record
                else:
                    failed.append(n)
                    last_error = VerificationMismatch(n)
            elif res.retryable:
                failed.append(n)
                last_error = res.error
            elif isinstance(res.error, InvalidLocation):
                # Can never be applied; keeping it would block reconciliation forever
                logger.error("Dropping cached location %d rejected by the server: %s", n, res.error)
                dropped.append(n)
            else:
                raise res.error  # type: ignore[misc]

        settled = self._adopt(identity, server, drop=dropped)
        status = ReconcileStatus.SYNCED if settled is not None and settled.synced else ReconcileStatus.PARTIAL
        if status is ReconcileStatus.SYNCED:
            logger.info(
                "Reconciled %d location(s) for %s (%s)",
                len(replayed),
                identity_tag(identity),
                server.progress_text(),
            )
        else:
            logger.warning("Reconcile incomplete; %d location(s) still pending", len(failed))
        return ReconcileOutcome(
            status=status,
            entry=settled,
            replayed=replayed,
            failed=failed,
            dropped=dropped,
            error=last_error,
        )

    # --------------- Reads ---------------
    def get_progress(self, identity: str) -> CacheEntry:
        """
        Current progress, preferring the authoritative store.

        Pending work is reconciled first. When the store cannot be reached the
        cached entry is returned as-is (or an empty one if nothing is cached).
        """
        self.reconcile(identity)

        res = self._executor.run(lambda: self._store.read(identity), self._write_attempts, self._backoff)
        if res.ok:
            entry = self._adopt(identity, res.unwrap())
            if entry is not None:
                return entry
        elif not res.retryable:
            raise res.error  # type: ignore[misc]
        else:
            logger.warning("Progress service unreachable, serving cached progress: %s", res.error)

        cached = self._cache.get(identity)
        if cached is not None:
            return cached
        return CacheEntry.from_record(ProgressRecord.empty(self._total), status=SyncStatus.PENDING)

    def cached_progress(self, identity: str) -> Optional[CacheEntry]:
        return self._cache.get(identity)

    def clear(self, identity: str) -> None:
        """Drop local state for `identity` (log-out); the authoritative record is untouched."""
        self._cache.delete(identity)


__all__ = [
    "CompletionOutcome",
    "CompletionStatus",
    "ProgressSource",
    "ReconcileOutcome",
    "ReconcileStatus",
    "SyncCoordinator",
]
