from __future__ import annotations

from typing import Optional, Union


class ProgressSyncError(RuntimeError):
    """Base error for progress synchronisation."""


class InvalidLocation(ProgressSyncError):
    """Sequence number outside `[1, total_locations]`. Never retried."""

    def __init__(self, sequence_number: Union[int, str], total_locations: Optional[int] = None) -> None:
        self.sequence_number = sequence_number
        self.total_locations = total_locations
        if total_locations is None:
            msg = f"Invalid location sequence number: {sequence_number}"
        else:
            msg = f"Invalid location sequence number: {sequence_number} (expected 1..{total_locations})"
        super().__init__(msg)


class Unauthorized(ProgressSyncError):
    """Caller identity was missing or rejected."""


class TransientError(ProgressSyncError):
    """
    Timeout, connectivity or overload; safe to retry.

    `maybe_applied` is True when the request may have reached the server before
    failing (e.g. a read timeout on a write), False when it provably did not.
    """

    def __init__(self, message: str, *, maybe_applied: bool = True) -> None:
        super().__init__(message)
        self.maybe_applied = maybe_applied


class VerificationMismatch(TransientError):
    """A write reported success but the location is not visible on read-back."""

    def __init__(self, sequence_number: int) -> None:
        super().__init__(
            f"Location {sequence_number} not found in authoritative record after write",
            maybe_applied=True,
        )
        self.sequence_number = sequence_number


class CacheError(ProgressSyncError):
    """The local cache could not be persisted."""


class SyncDeferred(ProgressSyncError):
    """
    Non-fatal outcome attached to a queued completion (never raised by the coordinator).

    - `reason`: "network" when write attempts were exhausted, "verification" when the
      write appeared to succeed but could not be read back.
    - `attempts`: network attempts spent before giving up.
    - `maybe_applied`: False means "saved locally, will sync"; True means the
      server may already hold the completion and the outcome is unknown.
    """

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        attempts: int,
        maybe_applied: bool,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.attempts = attempts
        self.maybe_applied = maybe_applied
        self.cause = cause


__all__ = [
    "ProgressSyncError",
    "InvalidLocation",
    "Unauthorized",
    "TransientError",
    "VerificationMismatch",
    "CacheError",
    "SyncDeferred",
]
