"""QueryClient - the cache context object shared by an application."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from types import TracebackType
from typing import Any

from feedsync import operations
from feedsync.adapters.base import AsyncStorageAdapter
from feedsync.cache import QueryCache
from feedsync.duration import Duration, parse_duration
from feedsync.feed import FeedAccumulator
from feedsync.mutations import (
    MutationExecutor,
    MutationHandle,
    MutationSpec,
    PendingMutation,
)
from feedsync.operations import Send, SendFlag
from feedsync.types import Err, QueryIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """Tunable behaviour of a QueryClient."""

    stale_time: Duration = "5m"
    comment_match_window: Duration = "2m"

    def __post_init__(self) -> None:
        # Fail at construction rather than on first use
        parse_duration(self.stale_time)
        parse_duration(self.comment_match_window)


class QueryClient:
    """Created once at application start and closed at shutdown.

    Usage:
        async with QueryClient(on_unauthorized=redirect_to_login) as client:
            await client.feeds.fetch_next_page(blog_keys["post_list"](), backend.get_posts)
            handle = client.toggle_like("p1", send=partial(backend.set_like, "p1"))
            result = await handle
    """

    def __init__(
        self,
        *,
        config: ClientConfig | None = None,
        on_unauthorized: Callable[[PendingMutation, Err], None] | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._match_window_ms = parse_duration(self._config.comment_match_window)
        self.cache = QueryCache(stale_time=self._config.stale_time)
        self.feeds = FeedAccumulator(self.cache)
        self.executor = MutationExecutor(self.cache, on_unauthorized=on_unauthorized)

    @property
    def config(self) -> ClientConfig:
        return self._config

    def execute(self, spec: MutationSpec[Any]) -> MutationHandle[Any]:
        """Run any mutation spec, including hand-built ones."""
        return self.executor.execute(spec)

    # -------------------------------------------------------------------------
    # Blog mutations
    # -------------------------------------------------------------------------

    def toggle_like(
        self,
        post_id: Any,
        *,
        send: SendFlag,
        targets: Iterable[QueryIdentity] | None = None,
    ) -> MutationHandle[Any]:
        """Toggle the viewer's like on every cached copy of the post."""
        if targets is None:
            targets = operations.post_targets(self.cache, post_id)
        return self.execute(
            operations.toggle_like(self.cache, post_id, send=send, targets=targets)
        )

    def toggle_save(
        self,
        post_id: Any,
        *,
        send: SendFlag,
        targets: Iterable[QueryIdentity] | None = None,
    ) -> MutationHandle[Any]:
        if targets is None:
            targets = operations.post_targets(self.cache, post_id)
        return self.execute(
            operations.toggle_save(self.cache, post_id, send=send, targets=targets)
        )

    def create_comment(
        self,
        post_id: Any,
        *,
        content: str,
        author_id: Any,
        send: Send,
        parent_id: Any | None = None,
        author: Mapping[str, Any] | None = None,
    ) -> MutationHandle[Any]:
        return self.execute(
            operations.create_comment(
                post_id,
                content=content,
                author_id=author_id,
                send=send,
                parent_id=parent_id,
                author=author,
                match_window_ms=self._match_window_ms,
            )
        )

    def update_comment(
        self, post_id: Any, comment_id: Any, *, content: str, send: Send
    ) -> MutationHandle[Any]:
        return self.execute(
            operations.update_comment(post_id, comment_id, content=content, send=send)
        )

    def delete_comment(
        self, post_id: Any, comment_id: Any, *, send: Send
    ) -> MutationHandle[Any]:
        return self.execute(operations.delete_comment(post_id, comment_id, send=send))

    def update_profile(
        self, profile_id: Any, fields: Mapping[str, Any], *, send: Send
    ) -> MutationHandle[Any]:
        return self.execute(operations.update_profile(profile_id, fields, send=send))

    def update_post(
        self,
        post_id: Any,
        fields: Mapping[str, Any],
        *,
        send: Send,
        targets: Iterable[QueryIdentity] | None = None,
    ) -> MutationHandle[Any]:
        if targets is None:
            targets = operations.post_targets(self.cache, post_id)
        return self.execute(
            operations.update_post(
                self.cache, post_id, fields, send=send, targets=targets
            )
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def persist(self, adapter: AsyncStorageAdapter) -> int:
        return await self.cache.persist(adapter)

    async def restore(self, adapter: AsyncStorageAdapter) -> int:
        return await self.cache.restore(adapter)

    async def close(self) -> None:
        """Roll back in-flight mutations and stop background refetches."""
        pending = len(self.executor.pending)
        await self.executor.close()
        await self.cache.close()
        if pending:
            logger.info("closed query client with %d mutations cancelled", pending)

    async def __aenter__(self) -> QueryClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


__all__ = ["ClientConfig", "QueryClient"]
