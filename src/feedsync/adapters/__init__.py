"""Persistence adapters for feedsync (async only)."""

from contextlib import suppress

from feedsync.adapters.base import AsyncStorageAdapter, Record
from feedsync.adapters.memory import AsyncMemoryAdapter

# Optional adapters - only available when dependencies are installed
with suppress(ImportError):
    from feedsync.adapters.redis import AsyncRedisAdapter

__all__ = [
    "AsyncMemoryAdapter",
    "AsyncRedisAdapter",
    "AsyncStorageAdapter",
    "Record",
]
