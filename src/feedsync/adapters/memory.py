"""In-memory storage adapter (async only)."""

import asyncio
import copy
from collections import OrderedDict

from feedsync.adapters.base import Record


class AsyncMemoryAdapter:
    """Async in-memory storage adapter with optional LRU eviction."""

    def __init__(self, max_items: int | None = None) -> None:
        self._records: OrderedDict[str, Record] = OrderedDict()
        self._max_items = max_items
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Record | None:
        """Get a record by key."""
        async with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            self._records.move_to_end(key)  # LRU touch
            return copy.deepcopy(record)

    async def set(self, key: str, record: Record) -> None:
        """Store a copy of the record."""
        async with self._lock:
            self._records[key] = copy.deepcopy(record)
            self._records.move_to_end(key)
            if self._max_items and len(self._records) > self._max_items:
                self._records.popitem(last=False)

    async def delete(self, key: str) -> None:
        """Delete a record."""
        async with self._lock:
            self._records.pop(key, None)

    async def keys(self) -> list[str]:
        """List stored keys, least recently used first."""
        async with self._lock:
            return list(self._records)

    async def clear(self) -> None:
        """Clear all records."""
        async with self._lock:
            self._records.clear()

    async def disconnect(self) -> None:
        """Disconnect from the storage backend (no-op for memory)."""
        pass
