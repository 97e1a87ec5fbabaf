"""Feed accumulator for infinite-scroll sequences."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from feedsync.cache import QueryCache
from feedsync.types import Feed, Page, QueryIdentity

logger = logging.getLogger(__name__)

ItemKey = Callable[[Any], Any]
FetchPage = Callable[[Any], Awaitable[Page[Any]]]


def item_id(item: Any) -> Any:
    """Default item key: the "id" field of a mapping payload."""
    return item.get("id") if isinstance(item, dict) else getattr(item, "id", None)


def patch_feed_item(
    feed: Feed[Any],
    target_id: Any,
    patch_fn: Callable[[Any], Any],
    *,
    key: ItemKey = item_id,
) -> Feed[Any]:
    """Return feed with patch_fn applied to every item whose key is target_id.

    Pages without a match are reused as-is, so untouched items keep their
    object identity. Returns the same feed object when nothing matched.
    """
    changed = False
    pages: list[tuple[Any, ...]] = []
    for page in feed.pages:
        if any(key(item) == target_id for item in page):
            page = tuple(
                patch_fn(item) if key(item) == target_id else item for item in page
            )
            changed = True
        pages.append(page)
    if not changed:
        return feed
    return Feed(pages=tuple(pages), cursor=feed.cursor, has_more=feed.has_more)


class FeedAccumulator:
    """Merges server pages into one ordered sequence stored in a QueryCache.

    Usage:
        feeds = FeedAccumulator(cache)
        feeds.append_page(identity, page1_items, "cursor-2")
        feeds.patch_item(identity, "p1", toggle_like)
    """

    def __init__(self, cache: QueryCache, *, key: ItemKey = item_id) -> None:
        self._cache = cache
        self._key = key
        self._locks: dict[QueryIdentity, asyncio.Lock] = {}
        self._generations: dict[QueryIdentity, int] = {}

    def get(self, identity: QueryIdentity) -> Feed[Any] | None:
        entry = self._cache.read(identity)
        if entry is None or not isinstance(entry.value, Feed):
            return None
        return entry.value

    def append_page(
        self,
        identity: QueryIdentity,
        items: Iterable[Any],
        continuation_cursor: Any | None = None,
    ) -> Feed[Any]:
        """Append items to the sequence and replace its cursor.

        An absent continuation cursor marks the sequence exhausted; appending
        to an exhausted sequence is a no-op until reset().
        """
        feed = self.get(identity) or Feed()
        if not feed.has_more:
            logger.debug("append to exhausted feed %s ignored", identity)
            return feed

        page = tuple(items)
        pages = feed.pages + (page,) if page else feed.pages
        updated = Feed(
            pages=pages,
            cursor=continuation_cursor,
            has_more=continuation_cursor is not None,
        )
        self._cache.write(identity, updated, confirmed=True)
        return updated

    def patch_item(
        self,
        identity: QueryIdentity,
        target_id: Any,
        patch_fn: Callable[[Any], Any],
        *,
        confirmed: bool = False,
    ) -> Feed[Any] | None:
        """Apply patch_fn to the matching item wherever it sits in the feed.

        Returns the updated feed, or None if identity holds no feed. Nothing
        is written when no item matches.
        """
        feed = self.get(identity)
        if feed is None:
            return None
        updated = patch_feed_item(feed, target_id, patch_fn, key=self._key)
        if updated is not feed:
            self._cache.write(identity, updated, confirmed=confirmed)
        return updated

    def reset(self, identity: QueryIdentity) -> None:
        """Clear the accumulated pages and cursor.

        A page fetch already in flight for identity is discarded when it lands.
        """
        self._generations[identity] = self._generations.get(identity, 0) + 1
        self._cache.evict(identity)
        self._cache.write(identity, Feed(), confirmed=False)

    async def fetch_next_page(
        self,
        identity: QueryIdentity,
        fetch_page: FetchPage,
        *,
        initial_cursor: Any | None = None,
    ) -> Feed[Any] | None:
        """Fetch and append the page after the stored cursor.

        Returns None without calling fetch_page when the feed is exhausted.
        Also registers a query function that reloads every loaded page,
        so invalidating the feed refreshes it in place.

        Calls for one identity run one at a time, so each requests the cursor
        left by the previous one. Returns None, discarding the page, when
        reset() ran while it was being fetched.
        """
        lock = self._locks.setdefault(identity, asyncio.Lock())
        async with lock:
            feed = self.get(identity)
            if feed is not None and not feed.has_more:
                return None
            if feed is not None and feed.cursor is not None:
                cursor = feed.cursor
            else:
                cursor = initial_cursor

            async def reload() -> Feed[Any]:
                return await self._reload(identity, fetch_page, initial_cursor)

            self._cache.set_query_fn(identity, reload)
            generation = self._generations.get(identity, 0)
            page = await fetch_page(cursor)
            if self._generations.get(identity, 0) != generation:
                logger.debug("dropping page fetched before reset of %s", identity)
                return None
            return self.append_page(identity, page.items, page.next_cursor)

    async def _reload(
        self,
        identity: QueryIdentity,
        fetch_page: FetchPage,
        initial_cursor: Any | None,
    ) -> Feed[Any]:
        loaded = self.get(identity)
        wanted = max(1, len(loaded.pages)) if loaded is not None else 1
        pages: list[tuple[Any, ...]] = []
        cursor = initial_cursor
        for _ in range(wanted):
            page = await fetch_page(cursor)
            if page.items:
                pages.append(tuple(page.items))
            cursor = page.next_cursor
            if cursor is None:
                break
        return Feed(pages=tuple(pages), cursor=cursor, has_more=cursor is not None)


__all__ = ["FeedAccumulator", "item_id", "patch_feed_item"]
