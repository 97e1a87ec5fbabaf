"""Redis storage adapter."""

from __future__ import annotations

import json

from redis.asyncio import Redis

from feedsync.adapters.base import Record


class AsyncRedisAdapter:
    """Async Redis storage adapter."""

    def __init__(
        self,
        client: Redis,
        *,
        prefix: str = "feedsync",
        ttl_ms: int | None = None,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._ttl_ms = ttl_ms

    def _cache_key(self, key: str) -> str:
        """Generate full Redis key for persisted records."""
        return f"{self._prefix}:cache:{key}"

    async def get(self, key: str) -> Record | None:
        """Get a record by key."""
        data = await self._client.get(self._cache_key(key))
        if data is None:
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        record: Record = json.loads(data)
        return record

    async def set(self, key: str, record: Record) -> None:
        """Store a record, expiring it after ttl_ms when configured."""
        await self._client.set(
            self._cache_key(key),
            json.dumps(record),
            px=self._ttl_ms,
        )

    async def delete(self, key: str) -> None:
        """Delete a record."""
        await self._client.delete(self._cache_key(key))

    async def keys(self) -> list[str]:
        """List every stored key (without the Redis prefix)."""
        head = f"{self._prefix}:cache:"
        found: list[str] = []
        async for raw in self._client.scan_iter(match=f"{head}*", count=100):
            name = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            found.append(name[len(head) :])
        return found

    async def clear(self) -> None:
        """Clear all persisted records under this prefix."""
        # Use SCAN to find and delete all cache keys
        cursor: int = 0
        pattern = f"{self._prefix}:cache:*"
        while True:
            result = await self._client.scan(cursor, match=pattern, count=100)
            cursor = result[0]
            keys = result[1]
            if keys:
                await self._client.delete(*keys)
            if cursor == 0:
                break

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        await self._client.aclose()
