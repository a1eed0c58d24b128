from __future__ import annotations

import os
import sys
import threading
from typing import List, Optional

import pytest

# Ensure `src/` is importable as top-level for `common.*` / `state.*` / `sync.*` imports
ROOT = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
SRC_PATH = os.path.join(ROOT, "src")
if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

from common.errors import TransientError  # noqa: E402
from common.retry import RetryExecutor  # noqa: E402
from state.authority import ProgressStore  # noqa: E402
from state.backend import MemoryRecordBackend  # noqa: E402
from state.local_cache import LocalCache  # noqa: E402
from state.models import ProgressRecord  # noqa: E402
from sync.coordinator import SyncCoordinator  # noqa: E402


class FlakyStore:
    """
    Wraps an authoritative store with switchable failure modes.

    - offline: every call raises TransientError (request never sent).
    - reject: exception raised by every write (e.g. Unauthorized).
    - drop_writes: writes are acknowledged with the current record but not applied.
    - stale_responses: writes are applied but answered with the pre-write record.
    - gate: when set, writes block until the event is set.
    """

    def __init__(self, inner: ProgressStore) -> None:
        self.inner = inner
        self.offline = False
        self.reject: Optional[Exception] = None
        self.drop_writes = False
        self.stale_responses = False
        self.gate: Optional[threading.Event] = None
        self.write_calls: List[int] = []
        self.read_calls = 0

    def read(self, identity: str) -> ProgressRecord:
        self.read_calls += 1
        if self.offline:
            raise TransientError("offline", maybe_applied=False)
        return self.inner.read(identity)

    def write(self, identity: str, sequence_number: int) -> ProgressRecord:
        self.write_calls.append(sequence_number)
        if self.gate is not None:
            self.gate.wait(timeout=5.0)
        if self.offline:
            raise TransientError("offline", maybe_applied=False)
        if self.reject is not None:
            raise self.reject
        if self.drop_writes:
            return self.inner.read(identity)
        if self.stale_responses:
            before = self.inner.read(identity)
            self.inner.write(identity, sequence_number)
            return before
        return self.inner.write(identity, sequence_number)


@pytest.fixture
def no_sleep_executor() -> RetryExecutor:
    return RetryExecutor(sleep=lambda _seconds: None)


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "cache" / "progress_cache.json"


@pytest.fixture
def cache(cache_path) -> LocalCache:
    return LocalCache(cache_path)


@pytest.fixture
def authority() -> ProgressStore:
    return ProgressStore(MemoryRecordBackend(), total_locations=3)


@pytest.fixture
def flaky_store(authority) -> FlakyStore:
    return FlakyStore(authority)


@pytest.fixture
def coordinator(flaky_store, cache, no_sleep_executor):
    coord = SyncCoordinator(flaky_store, cache, executor=no_sleep_executor, total_locations=3)
    yield coord
    coord.close()
