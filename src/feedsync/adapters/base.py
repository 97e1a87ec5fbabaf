"""Base adapter protocol for cache persistence backends."""

from typing import Any, Protocol, runtime_checkable

# JSON-serialisable record: {"value": ..., "last_confirmed_at": int}
# stored under serialize_identity(identity)
Record = dict[str, Any]


@runtime_checkable
class AsyncStorageAdapter(Protocol):
    """Async storage adapter interface used to persist and rehydrate a cache."""

    async def get(self, key: str) -> Record | None:
        """Get a persisted record by key."""
        ...

    async def set(self, key: str, record: Record) -> None:
        """Store a record."""
        ...

    async def delete(self, key: str) -> None:
        """Delete a record."""
        ...

    async def keys(self) -> list[str]:
        """List every stored key."""
        ...

    async def clear(self) -> None:
        """Clear all stored records."""
        ...

    async def disconnect(self) -> None:
        """Disconnect from the storage backend."""
        ...
