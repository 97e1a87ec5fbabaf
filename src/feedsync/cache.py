"""QueryCache - the normalized query cache.

Provides:
- read(), write(), invalidate(), subscribe(): the synchronous cache contract
- fetch(), refetch(): query functions with coalescing and stale-time checks
- begin_mutation(), end_mutation(): in-flight optimistic writer tracking
- persist(), restore(): save and rehydrate entries through a storage adapter

All synchronous methods run to completion without yielding to the event
loop; suspension only happens inside query functions.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from typing import Any

from feedsync.adapters.base import AsyncStorageAdapter, Record
from feedsync.duration import Duration, parse_duration
from feedsync.identities import (
    deserialize_identity,
    is_identity_prefix,
    make_identity,
    serialize_identity,
)
from feedsync.types import CacheEntry, Feed, QueryIdentity

logger = logging.getLogger(__name__)

Subscriber = Callable[[QueryIdentity, CacheEntry[Any]], None]
QueryFn = Callable[[], Awaitable[Any]]
Unsubscribe = Callable[[], None]

_FEED_MARKER = "__feed__"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _check_identity(identity: QueryIdentity) -> QueryIdentity:
    if not isinstance(identity, tuple):
        raise TypeError(f"Expected a QueryIdentity tuple, got {type(identity)}")
    return make_identity(*identity)


def _encode_value(value: Any) -> Any:
    if isinstance(value, Feed):
        return {
            _FEED_MARKER: {
                "pages": [list(page) for page in value.pages],
                "cursor": value.cursor,
                "has_more": value.has_more,
            }
        }
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict) and _FEED_MARKER in value:
        data = value[_FEED_MARKER]
        return Feed(
            pages=tuple(tuple(page) for page in data["pages"]),
            cursor=data["cursor"],
            has_more=data["has_more"],
        )
    return value


class QueryCache:
    """Keyed store of query values with confirmation metadata.

    Usage:
        cache = QueryCache(stale_time="5m")
        unsubscribe = cache.subscribe(identity, on_change)
        cache.write(identity, [p1, p2], confirmed=True)
        cache.read(identity)  # CacheEntry(value=[p1, p2], is_stale=False, ...)
    """

    def __init__(self, *, stale_time: Duration = "5m") -> None:
        self._stale_time = parse_duration(stale_time)
        self._entries: dict[QueryIdentity, CacheEntry[Any]] = {}
        self._subscribers: dict[QueryIdentity, list[Subscriber]] = {}
        self._query_fns: dict[QueryIdentity, QueryFn] = {}
        self._in_flight: dict[QueryIdentity, asyncio.Task[Any]] = {}
        self._refetch_tasks: dict[QueryIdentity, asyncio.Task[None]] = {}
        self._held: dict[QueryIdentity, None] | None = None

    # -------------------------------------------------------------------------
    # Synchronous contract
    # -------------------------------------------------------------------------

    def read(self, identity: QueryIdentity) -> CacheEntry[Any] | None:
        """Return the entry for identity, or None on a cache miss.

        A confirmed entry older than stale_time is reported stale.
        """
        entry = self._entries.get(identity)
        if entry is None:
            return None
        if (
            not entry.is_stale
            and entry.last_confirmed_at is not None
            and _now_ms() - entry.last_confirmed_at > self._stale_time
        ):
            return replace(entry, is_stale=True)
        return entry

    def write(
        self, identity: QueryIdentity, value: Any, *, confirmed: bool
    ) -> CacheEntry[Any]:
        """Replace the value for identity and notify subscribers.

        Confirmed writes refresh last_confirmed_at and clear the stale flag;
        optimistic writes leave confirmation metadata untouched.
        """
        identity = _check_identity(identity)
        previous = self._entries.get(identity)
        if confirmed:
            entry: CacheEntry[Any] = CacheEntry(
                value=value,
                last_confirmed_at=_now_ms(),
                is_stale=False,
                inflight_mutation_count=(
                    previous.inflight_mutation_count if previous else 0
                ),
            )
        elif previous is not None:
            entry = replace(previous, value=value)
        else:
            entry = CacheEntry(value=value)

        self._entries[identity] = entry
        logger.debug("write %s (confirmed=%s)", identity, confirmed)
        self._changed(identity, entry)
        return entry

    def invalidate(self, identity: QueryIdentity) -> CacheEntry[Any]:
        """Mark identity stale, keeping its value, and schedule a refetch.

        The refetch only runs when the identity has subscribers and a
        registered query function.
        """
        identity = _check_identity(identity)
        previous = self._entries.get(identity)
        if previous is not None:
            entry = replace(previous, is_stale=True)
        else:
            entry = CacheEntry(value=None, is_stale=True)

        self._entries[identity] = entry
        logger.debug("invalidate %s", identity)
        if self._subscribers.get(identity) and identity in self._query_fns:
            self._schedule_refetch(identity)
        self._changed(identity, entry)
        return entry

    def subscribe(self, identity: QueryIdentity, callback: Subscriber) -> Unsubscribe:
        """Call callback(identity, entry) on every write or invalidate of identity.

        Returns a function that removes this registration.
        """
        identity = _check_identity(identity)
        callbacks = self._subscribers.setdefault(identity, [])
        callbacks.append(callback)

        def unsubscribe() -> None:
            current = self._subscribers.get(identity)
            if current is None:
                return
            for i, registered in enumerate(current):
                if registered is callback:
                    del current[i]
                    break
            if not current:
                del self._subscribers[identity]

        return unsubscribe

    def has_subscribers(self, identity: QueryIdentity) -> bool:
        return bool(self._subscribers.get(identity))

    def find(self, prefix: QueryIdentity) -> list[QueryIdentity]:
        """List known identities under prefix, in insertion order."""
        return [i for i in self._entries if is_identity_prefix(prefix, i)]

    def invalidate_matching(self, prefix: QueryIdentity) -> list[QueryIdentity]:
        """Invalidate every known identity under prefix.

        Usage:
            cache.invalidate_matching(("post-list",))  # all feeds
        """
        matched = self.find(prefix)
        for identity in matched:
            self.invalidate(identity)
        return matched

    def evict(self, identity: QueryIdentity) -> CacheEntry[Any] | None:
        """Remove an entry without notifying subscribers."""
        self._cancel_refetch(identity)
        return self._entries.pop(identity, None)

    def entries(self) -> dict[QueryIdentity, CacheEntry[Any]]:
        """Shallow copy of every stored entry."""
        return dict(self._entries)

    def clear(self) -> None:
        """Drop all entries; subscriptions and query functions are kept."""
        for identity in list(self._refetch_tasks):
            self._cancel_refetch(identity)
        self._entries.clear()

    @contextmanager
    def hold_notifications(self) -> Iterator[None]:
        """Defer subscriber callbacks until the block exits.

        Every identity written or invalidated inside the block is notified
        once, with its final entry, after all of the block's changes are
        stored. Subscriber exceptions are raised only after every callback
        has run. Nested blocks flush with the outermost one.

        Usage:
            with cache.hold_notifications():
                cache.write(a, 1, confirmed=True)
                cache.invalidate(b)
        """
        if self._held is not None:
            yield
            return
        touched: dict[QueryIdentity, None] = {}
        self._held = touched
        completed = False
        try:
            yield
            completed = True
        finally:
            self._held = None
            error = self._flush(touched)
            if error is not None:
                if completed:
                    raise error
                logger.warning("subscriber failed while unwinding", exc_info=error)

    # -------------------------------------------------------------------------
    # Mutation tracking
    # -------------------------------------------------------------------------

    def begin_mutation(self, identity: QueryIdentity) -> None:
        """Count an optimistic writer and cancel any background refetch."""
        identity = _check_identity(identity)
        self._cancel_refetch(identity)
        entry = self._entries.get(identity) or CacheEntry(value=None)
        self._entries[identity] = replace(
            entry, inflight_mutation_count=entry.inflight_mutation_count + 1
        )

    def end_mutation(self, identity: QueryIdentity) -> None:
        """Release an optimistic writer counted by begin_mutation."""
        entry = self._entries.get(identity)
        if entry is None:
            return
        self._entries[identity] = replace(
            entry, inflight_mutation_count=max(0, entry.inflight_mutation_count - 1)
        )

    # -------------------------------------------------------------------------
    # Query functions
    # -------------------------------------------------------------------------

    def set_query_fn(self, identity: QueryIdentity, fn: QueryFn) -> None:
        """Register the function used to refetch identity."""
        self._query_fns[_check_identity(identity)] = fn

    async def fetch(self, identity: QueryIdentity, fn: QueryFn) -> Any:
        """Return the cached value if fresh, otherwise fetch and confirm it.

        Concurrent fetches of one identity share a single call to fn.
        """
        identity = _check_identity(identity)
        self._query_fns[identity] = fn
        entry = self.read(identity)
        if (
            entry is not None
            and entry.last_confirmed_at is not None
            and not entry.is_stale
        ):
            return entry.value
        return await self._coalesce(identity, fn)

    async def refetch(self, identity: QueryIdentity) -> Any:
        """Re-run the registered query function for identity."""
        fn = self._query_fns.get(identity)
        if fn is None:
            raise LookupError(f"No query function registered for {identity!r}")
        return await self._coalesce(identity, fn)

    async def close(self) -> None:
        """Cancel scheduled refetches and wait for them to finish."""
        tasks = list(self._refetch_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def persist(self, adapter: AsyncStorageAdapter) -> int:
        """Save every confirmed entry with no optimistic writers in flight."""
        saved = 0
        for identity, entry in list(self._entries.items()):
            if (
                entry.value is None
                or entry.last_confirmed_at is None
                or entry.inflight_mutation_count
            ):
                continue
            record: Record = {
                "value": _encode_value(entry.value),
                "last_confirmed_at": entry.last_confirmed_at,
            }
            await adapter.set(serialize_identity(identity), record)
            saved += 1
        logger.debug("persisted %d entries", saved)
        return saved

    async def restore(self, adapter: AsyncStorageAdapter) -> int:
        """Rehydrate persisted entries as stale; live entries take precedence."""
        restored = 0
        for key in await adapter.keys():
            record = await adapter.get(key)
            if record is None:
                continue
            identity = deserialize_identity(key)
            if identity in self._entries:
                continue
            self._entries[identity] = CacheEntry(
                value=_decode_value(record["value"]),
                last_confirmed_at=record.get("last_confirmed_at"),
                is_stale=True,
            )
            restored += 1
        logger.debug("restored %d entries", restored)
        return restored

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _changed(self, identity: QueryIdentity, entry: CacheEntry[Any]) -> None:
        if self._held is not None:
            self._held[identity] = None
        else:
            self._notify(identity, entry)

    def _notify(self, identity: QueryIdentity, entry: CacheEntry[Any]) -> None:
        """Call every subscriber, then raise the first exception any of them raised."""
        error: Exception | None = None
        # Subscribers may unsubscribe while being notified
        for callback in list(self._subscribers.get(identity, ())):
            try:
                callback(identity, entry)
            except Exception as exc:
                if error is not None:
                    logger.warning("subscriber of %s failed", identity, exc_info=exc)
                else:
                    error = exc
        if error is not None:
            raise error

    def _flush(self, identities: dict[QueryIdentity, None]) -> Exception | None:
        error: Exception | None = None
        for identity in identities:
            entry = self._entries.get(identity)
            if entry is None:
                continue
            try:
                self._notify(identity, entry)
            except Exception as exc:
                if error is not None:
                    logger.warning("subscriber of %s failed", identity, exc_info=exc)
                else:
                    error = exc
        return error

    def _schedule_refetch(self, identity: QueryIdentity) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        existing = self._refetch_tasks.get(identity)
        if existing is not None and not existing.done():
            return
        logger.debug("scheduling refetch of %s", identity)
        task = loop.create_task(self._background_refetch(identity))
        self._refetch_tasks[identity] = task

        def done(t: asyncio.Task[None], key: QueryIdentity = identity) -> None:
            if self._refetch_tasks.get(key) is t:
                del self._refetch_tasks[key]

        task.add_done_callback(done)

    def _cancel_refetch(self, identity: QueryIdentity) -> None:
        task = self._refetch_tasks.pop(identity, None)
        if task is not None and not task.done():
            logger.debug("cancelling refetch of %s", identity)
            task.cancel()

    async def _background_refetch(self, identity: QueryIdentity) -> None:
        try:
            await self.refetch(identity)
        except Exception:
            logger.warning("background refetch of %s failed", identity, exc_info=True)

    async def _run_query(self, identity: QueryIdentity, fn: QueryFn) -> Any:
        value = await fn()
        entry = self._entries.get(identity)
        if entry is not None and entry.inflight_mutation_count > 0:
            # A pending optimistic patch would be erased; stay stale instead
            logger.debug("discarding fetched %s: mutation in flight", identity)
            return value
        self.write(identity, value, confirmed=True)
        return value

    async def _coalesce(self, identity: QueryIdentity, fn: QueryFn) -> Any:
        """Coalesce concurrent fetches for the same identity."""
        task = self._in_flight.get(identity)
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._run_query(identity, fn))
            self._in_flight[identity] = task

            def done(t: asyncio.Task[Any], key: QueryIdentity = identity) -> None:
                if self._in_flight.get(key) is t:
                    del self._in_flight[key]

            task.add_done_callback(done)
        # A cancelled caller must not cancel the fetch other callers share
        return await asyncio.shield(task)


__all__ = ["QueryCache", "QueryFn", "Subscriber", "Unsubscribe"]
