"""Tests for QueryClient."""

import pytest

from feedsync import (
    AsyncMemoryAdapter,
    ClientConfig,
    Err,
    FailureReason,
    Feed,
    Ok,
    Page,
    QueryClient,
    blog_keys,
)

POSTS = blog_keys["post_list"]()
DETAIL = blog_keys["post_detail"]("p1")
COMMENTS = blog_keys["comments"]("p1")


class TestClientConfig:
    """Tests for configuration validation."""

    def test_defaults(self) -> None:
        config = ClientConfig()
        assert config.stale_time == "5m"
        assert config.comment_match_window == "2m"

    def test_invalid_duration_rejected(self) -> None:
        with pytest.raises(ValueError, match="Invalid duration"):
            ClientConfig(stale_time="soon")

    def test_stale_time_reaches_cache(self, monkeypatch: pytest.MonkeyPatch) -> None:
        now = [0]
        monkeypatch.setattr("feedsync.cache._now_ms", lambda: now[0])
        client = QueryClient(config=ClientConfig(stale_time="10s"))
        client.cache.write(DETAIL, {}, confirmed=True)

        now[0] = 10_001
        assert client.cache.read(DETAIL).is_stale is True


class TestQueryClient:
    """Tests for the client facade."""

    async def test_toggle_like_targets_cached_feeds(
        self, client: QueryClient, gate, post: dict
    ) -> None:
        async def fetch_page(cursor):
            return Page(items=(post,), next_cursor=None)

        await client.feeds.fetch_next_page(POSTS, fetch_page)

        handle = client.toggle_like("p1", send=gate)
        assert client.feeds.get(POSTS).items[0]["is_liked"] is True

        gate.resolve(Ok({"is_liked": True, "likes_count": 4}))
        await handle

        assert client.feeds.get(POSTS).items[0]["likes_count"] == 4
        assert gate.calls == [(True,)]

    async def test_toggle_save_failure_rolls_back(
        self, client: QueryClient, gate, post: dict
    ) -> None:
        client.cache.write(DETAIL, post, confirmed=True)

        handle = client.toggle_save("p1", send=gate)
        gate.resolve(Err(FailureReason.UNAUTHORIZED))
        await handle

        assert handle.requires_auth is True
        assert client.cache.read(DETAIL).value == post

    async def test_create_comment_uses_configured_window(self, gate) -> None:
        async with QueryClient(config=ClientConfig(comment_match_window=0)) as client:
            client.cache.write(COMMENTS, [], confirmed=True)
            handle = client.create_comment(
                "p1", content="hi", author_id="u1", send=gate
            )
            gate.resolve(
                Ok(
                    {
                        "id": "c1",
                        "content": "hi",
                        "author_id": "u1",
                        "created_at": "2000-01-01T00:00:00+00:00",
                    }
                )
            )
            await handle

            comments = client.cache.read(COMMENTS).value
            # Outside the window: the server record is added beside the twin
            assert [c.get("_optimistic", False) for c in comments] == [True, False]

    async def test_comment_edit_and_delete(self, client: QueryClient, make_gate) -> None:
        client.cache.write(COMMENTS, [{"id": "c1", "content": "a"}], confirmed=True)
        edit, remove = make_gate(), make_gate()

        updated = client.update_comment("p1", "c1", content="b", send=edit)
        edit.resolve(Ok({"id": "c1", "content": "b"}))
        await updated
        deleted = client.delete_comment("p1", "c1", send=remove)
        remove.resolve(Ok(None))
        await deleted

        assert client.cache.read(COMMENTS).value == []

    async def test_update_profile_and_post(
        self, client: QueryClient, make_gate, post: dict
    ) -> None:
        profile = blog_keys["profile"]("u1")
        client.cache.write(profile, {"id": "u1", "bio": ""}, confirmed=True)
        client.cache.write(DETAIL, post, confirmed=True)
        profile_call, post_call = make_gate(), make_gate()

        first = client.update_profile("u1", {"bio": "hello"}, send=profile_call)
        second = client.update_post("p1", {"title": "T"}, send=post_call)
        profile_call.resolve(Ok({"id": "u1", "bio": "hello"}))
        post_call.resolve(Ok({"id": "p1", "title": "T"}))
        await first
        await second

        assert client.cache.read(profile).value == {"id": "u1", "bio": "hello"}
        assert client.cache.read(DETAIL).value["title"] == "T"

    async def test_close_rolls_back_pending_mutations(self, gate, post: dict) -> None:
        client = QueryClient()
        client.cache.write(DETAIL, post, confirmed=True)
        handle = client.toggle_like("p1", send=gate)
        assert client.cache.read(DETAIL).value["likes_count"] == 4

        await client.close()

        result = await handle
        assert result.reason is FailureReason.CANCELLED
        assert client.cache.read(DETAIL).value == post

    async def test_unauthorized_callback(self, gate, post: dict) -> None:
        signals = []
        async with QueryClient(
            on_unauthorized=lambda pending, err: signals.append(pending.kind)
        ) as client:
            client.cache.write(DETAIL, post, confirmed=True)
            handle = client.toggle_like("p1", send=gate)
            gate.resolve(Err(FailureReason.UNAUTHORIZED))
            await handle

        assert [kind.value for kind in signals] == ["toggle-like"]

    async def test_persist_restore(
        self, client: QueryClient, async_adapter: AsyncMemoryAdapter
    ) -> None:
        client.feeds.append_page(POSTS, [{"id": "p1"}], 2)
        assert await client.persist(async_adapter) == 1

        async with QueryClient() as fresh:
            assert await fresh.restore(async_adapter) == 1
            restored = fresh.cache.read(POSTS)
            assert isinstance(restored.value, Feed)
            assert restored.is_stale is True
