"""
Progress state: models, the authoritative store and the client-side cache.

`ProgressRecord` is the server's one-record-per-identity schema; `CacheEntry`
mirrors it on the client with explicit sync state. Both encode integers as
decimal strings in JSON.
"""

from .models import CacheEntry, ProgressRecord, SyncStatus

__all__ = ["CacheEntry", "ProgressRecord", "SyncStatus"]
