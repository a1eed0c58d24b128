from __future__ import annotations

import logging
import re
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from common.config import ClientSettings
from common.errors import InvalidLocation, ProgressSyncError, Unauthorized
from common.progress_client import HttpProgressStore
from common.retry import BackoffPolicy, RetryExecutor
from state.local_cache import CACHE_FILE_NAME, LocalCache
from state.models import CacheEntry, StageFlags, SyncStatus

from .coordinator import CompletionOutcome, ReconcileOutcome, ReconcileStatus, SyncCoordinator


logger = logging.getLogger(__name__)

LocationId = Union[int, str]
IdentityProvider = Callable[[], Optional[str]]
LocationResolver = Callable[[LocationId], int]

_LOCATION_RE = re.compile(r"^\s*location_(\d+)\s*$", re.IGNORECASE)

MSG_CONFIRMED = "Progress saved."
MSG_PENDING = "Saving your progress. This can take a moment."
MSG_SAVED_LOCALLY = "Saved on this device. It will sync when the connection is restored."
MSG_OUTCOME_UNKNOWN = "Couldn't confirm with the server yet. We'll keep trying automatically."
MSG_INVALID_LOCATION = "Location not found. The story locations may not be initialized yet."
MSG_UNAUTHORIZED = "Authentication required. Please log in again."


def resolve_sequence_number(location_id: LocationId) -> int:
    """Map `3`, `"3"` or `"location_3"` to sequence number 3."""
    if isinstance(location_id, bool):
        raise InvalidLocation(0)
    if isinstance(location_id, int):
        return location_id
    s = str(location_id).strip()
    m = _LOCATION_RE.match(s)
    if m:
        return int(m.group(1))
    if s.isdigit():
        return int(s)
    raise InvalidLocation(0)


class QuestActionError(Exception):
    """A completion that genuinely did not happen; `message` is safe to show the user."""

    def __init__(self, message: str, *, requires_reauth: bool = False, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.requires_reauth = requires_reauth
        self.cause = cause


@dataclass(frozen=True)
class ProgressView:
    completed: int
    total: int
    stage_flags: StageFlags
    state: str  # "confirmed" | "pending" | "queued"
    last_completed_location: int

    @property
    def text(self) -> str:
        return f"{self.completed}/{self.total}"

    @classmethod
    def from_entry(cls, entry: CacheEntry) -> "ProgressView":
        if entry.synced:
            state = "confirmed"
        elif entry.status is SyncStatus.UNSYNCED:
            state = "queued"
        else:
            state = "pending"
        return cls(
            completed=entry.completed_count,
            total=entry.total_locations,
            stage_flags=entry.stage_flags,
            state=state,
            last_completed_location=entry.last_completed_location,
        )


@dataclass(frozen=True)
class CompletionView:
    """Result of a completion; `queued` and `pending` are success with a caveat, never an error dialog."""

    state: str  # "confirmed" | "queued" | "pending"
    message: str
    progress: Optional[ProgressView]
    attempts: int = 0


def _present_outcome(outcome: CompletionOutcome) -> CompletionView:
    progress = ProgressView.from_entry(outcome.entry) if outcome.entry is not None else None
    if outcome.confirmed:
        return CompletionView(state="confirmed", message=MSG_CONFIRMED, progress=progress, attempts=outcome.attempts)
    deferred = outcome.deferred
    msg = MSG_OUTCOME_UNKNOWN if deferred is not None and deferred.maybe_applied else MSG_SAVED_LOCALLY
    return CompletionView(state="queued", message=msg, progress=progress, attempts=outcome.attempts)


def _to_action_error(exc: ProgressSyncError) -> QuestActionError:
    if isinstance(exc, Unauthorized):
        return QuestActionError(MSG_UNAUTHORIZED, requires_reauth=True, cause=exc)
    if isinstance(exc, InvalidLocation):
        return QuestActionError(MSG_INVALID_LOCATION, cause=exc)
    return QuestActionError(f"Failed to update progress: {exc}", cause=exc)


class QuestCompletionAPI:
    """
    The surface the UI calls. Holds no progress state of its own.

    - `identity_provider` supplies the caller identity for every call.
    - `resolver` turns the UI's location id into a sequence number.
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        identity_provider: IdentityProvider,
        *,
        resolver: LocationResolver = resolve_sequence_number,
    ) -> None:
        self._coordinator = coordinator
        self._identity_provider = identity_provider
        self._resolver = resolver
        self._owned_store: Optional[HttpProgressStore] = None

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        identity_provider: IdentityProvider,
        *,
        resolver: LocationResolver = resolve_sequence_number,
    ) -> "QuestCompletionAPI":
        store = HttpProgressStore(settings.api_base_url, timeout=settings.request_timeout)
        cache_path = Path(settings.cache_dir) / CACHE_FILE_NAME if settings.cache_dir else None
        coordinator = SyncCoordinator(
            store,
            LocalCache(cache_path),
            executor=RetryExecutor(),
            total_locations=settings.total_locations,
            write_attempts=settings.write_attempts,
            verify_attempts=settings.verify_attempts,
            backoff=BackoffPolicy(base=settings.backoff_base, cap=max(settings.backoff_cap, settings.backoff_base)),
        )
        api = cls(coordinator, identity_provider, resolver=resolver)
        api._owned_store = store
        return api

    def _identity(self) -> str:
        identity = self._identity_provider()
        if not identity:
            raise QuestActionError(MSG_UNAUTHORIZED, requires_reauth=True)
        return identity

    def _sequence(self, location_id: LocationId) -> int:
        try:
            return self._resolver(location_id)
        except InvalidLocation as exc:
            raise _to_action_error(exc) from exc

    def complete_async(self, location_id: LocationId) -> "Future[CompletionOutcome]":
        """Start a completion in the background; the UI may stop waiting at any time."""
        return self._coordinator.submit(self._identity(), self._sequence(location_id))

    def complete(self, location_id: LocationId, *, timeout: Optional[float] = None) -> CompletionView:
        """
        Complete a location and wait up to `timeout` seconds for the outcome.

        If the wait runs out the attempt carries on in the background and the
        cached progress is returned with state "pending".
        """
        identity = self._identity()
        fut = self._coordinator.submit(identity, self._sequence(location_id))
        try:
            outcome = fut.result(timeout=timeout)
        except ProgressSyncError as exc:
            logger.warning("Completion of %r failed: %s", location_id, exc)
            raise _to_action_error(exc) from exc
        except FutureTimeoutError:
            logger.info("Stopped waiting for completion of %r; it continues in the background", location_id)
            entry = self._coordinator.cached_progress(identity)
            progress = ProgressView.from_entry(entry) if entry is not None else None
            return CompletionView(state="pending", message=MSG_PENDING, progress=progress)
        return _present_outcome(outcome)

    def get_progress(self) -> ProgressView:
        try:
            entry = self._coordinator.get_progress(self._identity())
        except ProgressSyncError as exc:
            raise _to_action_error(exc) from exc
        return ProgressView.from_entry(entry)

    def reconcile(self) -> Optional[ProgressView]:
        try:
            outcome: ReconcileOutcome = self._coordinator.reconcile(self._identity())
        except ProgressSyncError as exc:
            raise _to_action_error(exc) from exc
        if outcome.status is not ReconcileStatus.NOOP:
            logger.info("Reconcile finished: %s", outcome.status.value)
        return ProgressView.from_entry(outcome.entry) if outcome.entry is not None else None

    def clear_local_state(self) -> None:
        self._coordinator.clear(self._identity())

    def close(self) -> None:
        self._coordinator.close()
        if self._owned_store is not None:
            self._owned_store.close()


__all__ = [
    "CompletionView",
    "ProgressView",
    "QuestActionError",
    "QuestCompletionAPI",
    "resolve_sequence_number",
]
