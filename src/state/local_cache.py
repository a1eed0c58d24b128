from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from common.errors import CacheError

from .models import CacheEntry, SyncStatus


logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR_ENV = "QUEST_CACHE_DIR"
CACHE_FILE_NAME = "progress_cache.json"
CACHE_FORMAT_VERSION = 1


def _default_cache_file() -> Path:
    # Prefer explicit env var, else project-local .cache folder
    base = os.environ.get(DEFAULT_CACHE_DIR_ENV)
    if base:
        return Path(base) / CACHE_FILE_NAME
    return Path(".cache") / CACHE_FILE_NAME


def _key(identity: str) -> str:
    # Identities may be credentials; never write them to disk verbatim
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()


class LocalCache:
    """
    Durable client-side mirror of progress, one `CacheEntry` per identity.

    - Backed by a single JSON file:
      {"version": 1, "entries": {sha256(identity): entry}}
    - Every change rewrites the file through a temp file and an atomic rename,
      so a crash leaves either the old or the new file, never a torn one.
    - Entries are replaced whole; fields are never merged.
    - Integers are stored as decimal strings (see `ProgressRecord`).
    - A corrupt or unreadable file is logged and treated as empty. Failing to
      persist raises `CacheError` and leaves the in-memory view unchanged.
    """

    def __init__(self, path: Optional[os.PathLike[str] | str] = None) -> None:
        self._path = Path(path) if path else _default_cache_file()
        self._data: Dict[str, CacheEntry] = {}
        self._loaded = False
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError):
            logger.warning("Ignoring unreadable progress cache at %s", self._path, exc_info=True)
            return

        entries = raw.get("entries") if isinstance(raw, dict) else None
        if not isinstance(entries, dict):
            logger.warning("Ignoring progress cache with unexpected layout at %s", self._path)
            return
        for k, v in entries.items():
            try:
                self._data[str(k)] = CacheEntry.model_validate(v)
            except ValidationError:
                logger.warning("Dropping invalid cache entry %s", str(k)[:10])

    def _save(self, data: Dict[str, CacheEntry]) -> None:
        payload: Dict[str, Any] = {
            "version": CACHE_FORMAT_VERSION,
            "entries": {k: v.model_dump(mode="json") for k, v in data.items()},
        }
        tmp_name: Optional[str] = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".progress-", suffix=".tmp", dir=self._path.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
            tmp_name = None
        except OSError as ex:
            raise CacheError(f"Failed to persist progress cache to {self._path}") from ex
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.debug("Could not remove temp cache file %s", tmp_name)

    def get(self, identity: str) -> Optional[CacheEntry]:
        with self._lock:
            self._ensure_loaded()
            return self._data.get(_key(identity))

    def put(self, identity: str, entry: CacheEntry) -> None:
        with self._lock:
            self._ensure_loaded()
            data = dict(self._data)
            data[_key(identity)] = entry
            self._save(data)
            self._data = data

    def update(
        self,
        identity: str,
        fn: Callable[[Optional[CacheEntry]], Optional[CacheEntry]],
    ) -> Optional[CacheEntry]:
        """
        Atomically replace the entry for `identity` with `fn(current)`.

        Returning `None` removes the entry; returning `current` itself is a no-op.
        `fn` runs under the cache lock and must not call back into the cache.
        """
        with self._lock:
            self._ensure_loaded()
            k = _key(identity)
            current = self._data.get(k)
            new = fn(current)
            if new is current:
                return current
            data = dict(self._data)
            if new is None:
                data.pop(k, None)
            else:
                data[k] = new
            self._save(data)
            self._data = data
            return new

    def mark_unsynced(self, identity: str, *, attempts: Optional[int] = None) -> Optional[CacheEntry]:
        def _mark(current: Optional[CacheEntry]) -> Optional[CacheEntry]:
            if current is None:
                return None
            changes: Dict[str, Any] = {"status": SyncStatus.UNSYNCED}
            if attempts is not None:
                changes["attempts"] = attempts
            return current.evolve(**changes)

        entry = self.update(identity, _mark)
        if entry is not None:
            logger.warning("Progress marked as unsynced (%d locations)", entry.completed_count)
        return entry

    def has_unsynced(self, identity: str) -> bool:
        entry = self.get(identity)
        return entry is not None and not entry.synced

    def delete(self, identity: str) -> None:
        """Forget local state for `identity` (log-out). The server record is untouched."""
        self.update(identity, lambda _current: None)


__all__ = ["LocalCache", "DEFAULT_CACHE_DIR_ENV"]
