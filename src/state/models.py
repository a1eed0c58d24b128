from __future__ import annotations

import hashlib
import time
from enum import Enum
from typing import Any, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_serializer, field_validator


DEFAULT_TOTAL_LOCATIONS = 3


def now_ms() -> int:
    return int(time.time() * 1000)


def identity_tag(identity: str) -> str:
    """Short stable fingerprint of an identity for log lines; identities can be credentials."""
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:10]


def merge_locations(primary: Iterable[int], extra: Iterable[int]) -> List[int]:
    """Union preserving order: everything in `primary`, then unseen items of `extra`."""
    out: List[int] = []
    seen: set[int] = set()
    for n in list(primary) + list(extra):
        if n not in seen:
            seen.add(n)
            out.append(n)
    return out


class StageFlags(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage1: bool = False
    stage2: bool = False
    stage3: bool = False

    @classmethod
    def for_count(cls, completed: int) -> "StageFlags":
        return cls(stage1=completed >= 1, stage2=completed >= 2, stage3=completed >= 3)


class ProgressRecord(BaseModel):
    """
    Authoritative quest progress for one identity.

    Fields
    - completed_locations: unique sequence numbers in completion order.
    - last_completed_location: most recent sequence number written (0 if none).
    - total_locations: trail length; configuration, never changed by progress logic.

    `stage_flags` is computed from `completed_locations` on every access and is
    only ever emitted on dump; a persisted value is ignored on load.

    JSON encoding writes every integer as a decimal string so identifiers round-trip
    exactly through text storage; validation accepts both strings and numbers.
    """

    model_config = ConfigDict(frozen=True)

    completed_locations: List[int] = Field(default_factory=list)
    last_completed_location: int = Field(default=0, ge=0)
    total_locations: int = Field(default=DEFAULT_TOTAL_LOCATIONS, ge=1)

    @field_validator("completed_locations")
    @classmethod
    def _unique_in_order(cls, v: List[int]) -> List[int]:
        return merge_locations(v, [])

    @computed_field  # type: ignore[prop-decorator]
    @property
    def stage_flags(self) -> StageFlags:
        return StageFlags.for_count(len(self.completed_locations))

    @field_serializer("completed_locations", when_used="json")
    def _dump_locations(self, v: List[int]) -> List[str]:
        return [str(n) for n in v]

    @field_serializer("last_completed_location", "total_locations", when_used="json")
    def _dump_int(self, v: int) -> str:
        return str(v)

    @classmethod
    def empty(cls, total_locations: int = DEFAULT_TOTAL_LOCATIONS) -> "ProgressRecord":
        return cls(total_locations=total_locations)

    def contains(self, sequence_number: int) -> bool:
        return sequence_number in self.completed_locations

    def with_completion(self, sequence_number: int) -> "ProgressRecord":
        """Return a copy with `sequence_number` completed; `self` if it already is."""
        if self.contains(sequence_number):
            return self
        return self.model_copy(
            update={
                "completed_locations": [*self.completed_locations, sequence_number],
                "last_completed_location": sequence_number,
            }
        )

    @property
    def completed_count(self) -> int:
        return len(self.completed_locations)

    def progress_text(self) -> str:
        return f"{self.completed_count}/{self.total_locations}"


class SyncStatus(str, Enum):
    PENDING = "pending"
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"
    UNSYNCED = "unsynced"


class CacheEntry(ProgressRecord):
    """
    Client-side mirror of a `ProgressRecord` with explicit sync state.

    - status: tagged sync state; `synced` is derived (`status == confirmed`).
    - attempts: network attempts spent on the last unsuccessful sync.
    - updated_at: epoch milliseconds of the last local change.
    """

    status: SyncStatus = SyncStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    updated_at: int = Field(default_factory=now_ms)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def synced(self) -> bool:
        return self.status is SyncStatus.CONFIRMED

    @field_serializer("attempts", "updated_at", when_used="json")
    def _dump_meta_int(self, v: int) -> str:
        return str(v)

    @classmethod
    def from_record(
        cls,
        record: ProgressRecord,
        *,
        status: SyncStatus,
        attempts: int = 0,
        updated_at: Optional[int] = None,
    ) -> "CacheEntry":
        return cls(
            completed_locations=list(record.completed_locations),
            last_completed_location=record.last_completed_location,
            total_locations=record.total_locations,
            status=status,
            attempts=attempts,
            updated_at=updated_at if updated_at is not None else now_ms(),
        )

    def to_record(self) -> ProgressRecord:
        return ProgressRecord(
            completed_locations=list(self.completed_locations),
            last_completed_location=self.last_completed_location,
            total_locations=self.total_locations,
        )

    def evolve(self, **changes: Any) -> "CacheEntry":
        """Whole-entry copy with `changes` applied and a fresh `updated_at`."""
        changes.setdefault("updated_at", now_ms())
        return self.model_copy(update=changes)


__all__ = [
    "CacheEntry",
    "DEFAULT_TOTAL_LOCATIONS",
    "ProgressRecord",
    "StageFlags",
    "SyncStatus",
    "identity_tag",
    "merge_locations",
    "now_ms",
]
