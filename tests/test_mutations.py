"""Tests for the mutation executor and reconciliation policy."""

import asyncio

import pytest

from feedsync import (
    Err,
    FailureReason,
    Feed,
    MutationExecutor,
    MutationSpec,
    MutationStatus,
    Ok,
    QueryCache,
    ValidationError,
    blog_keys,
    operations,
)

POSTS = blog_keys["post_list"]()
DETAIL = blog_keys["post_detail"]("p1")
COMMENTS = blog_keys["comments"]("p1")


def _bump(values: dict) -> dict:
    return {
        identity: {**value, "likes_count": value["likes_count"] + 1}
        for identity, value in values.items()
    }


def _spec(gate, **kwargs) -> MutationSpec:
    kwargs.setdefault("targets", (DETAIL,))
    kwargs.setdefault("optimistic_patch", _bump)
    return MutationSpec(network_call=gate, **kwargs)


class TestOptimisticVisibility:
    """Optimistic values are readable before the call settles."""

    async def test_patch_visible_immediately(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)

        handle = executor.execute(_spec(gate))

        entry = cache.read(DETAIL)
        assert entry.value["likes_count"] == 4
        assert entry.inflight_mutation_count == 1
        assert handle.status is MutationStatus.PENDING
        assert executor.pending == [handle.pending]

        gate.resolve(Ok({}))
        await handle
        assert executor.pending == []

    async def test_success_confirms_current_values(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)

        handle = executor.execute(_spec(gate))
        gate.resolve(Ok({"id": "p1"}))
        result = await handle

        assert result == Ok({"id": "p1"})
        assert handle.status is MutationStatus.SUCCEEDED
        entry = cache.read(DETAIL)
        assert entry.value["likes_count"] == 4
        assert entry.inflight_mutation_count == 0
        # Settlement always invalidates its targets
        assert entry.is_stale is True

    async def test_plain_return_value_is_success(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)

        handle = executor.execute(_spec(gate))
        gate.resolve({"id": "p1"})

        assert await handle.unwrap() == {"id": "p1"}

    async def test_reconcile_receives_result_and_current_values(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)
        seen = []

        def reconcile(result: Ok, values: dict) -> dict:
            seen.append((result.value, values[DETAIL]["likes_count"]))
            return {DETAIL: {**values[DETAIL], "likes_count": result.value}}

        handle = executor.execute(_spec(gate, on_reconcile=reconcile))
        gate.resolve(Ok(10))
        await handle

        assert seen == [(10, 4)]
        assert cache.read(DETAIL).value["likes_count"] == 10

    async def test_patch_outside_targets_is_rejected(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)

        with pytest.raises(ValueError, match="non-target"):
            executor.execute(
                _spec(gate, optimistic_patch=lambda values: {POSTS: []})
            )

        assert cache.read(DETAIL).value == post
        assert cache.read(DETAIL).inflight_mutation_count == 0
        assert executor.pending == []


class TestRollback:
    """Failed mutations restore the snapshot exactly."""

    @pytest.mark.parametrize("reason", list(FailureReason))
    async def test_every_failure_reason_rolls_back(
        self,
        cache: QueryCache,
        executor: MutationExecutor,
        gate,
        post: dict,
        reason: FailureReason,
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)

        handle = executor.execute(_spec(gate))
        gate.resolve(Err(reason, "nope"))
        result = await handle

        assert result == Err(reason, "nope")
        assert handle.status is MutationStatus.FAILED
        assert cache.read(DETAIL).value == post

    async def test_raised_exception_is_network_failure(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)

        handle = executor.execute(_spec(gate))
        gate.resolve(ConnectionError("connection reset"))
        result = await handle

        assert result == Err(FailureReason.NETWORK, "connection reset")
        assert cache.read(DETAIL).value == post

    async def test_raised_mutation_error_keeps_reason(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)

        handle = executor.execute(_spec(gate))
        gate.resolve(ValidationError("title required"))

        with pytest.raises(ValidationError, match="title required"):
            await handle.unwrap()
        assert cache.read(DETAIL).value == post

    async def test_snapshot_is_isolated_from_patch(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)

        def mutate_in_place(values: dict) -> dict:
            values[DETAIL]["likes_count"] = 99
            return {DETAIL: values[DETAIL]}

        handle = executor.execute(_spec(gate, optimistic_patch=mutate_in_place))
        gate.resolve(Err(FailureReason.CONFLICT))
        await handle

        assert cache.read(DETAIL).value["likes_count"] == 3

    async def test_missed_target_rolls_back_to_empty(
        self, cache: QueryCache, executor: MutationExecutor, gate
    ) -> None:
        handle = executor.execute(
            _spec(gate, optimistic_patch=lambda values: {DETAIL: {"id": "p1"}})
        )
        assert cache.read(DETAIL).value == {"id": "p1"}

        gate.resolve(Err(FailureReason.NETWORK))
        await handle

        entry = cache.read(DETAIL)
        assert entry.value is None
        assert entry.last_confirmed_at is None
        assert entry.inflight_mutation_count == 0

    async def test_missed_target_keeps_other_writers_counted(
        self, cache: QueryCache, executor: MutationExecutor, make_gate
    ) -> None:
        first_gate, second_gate = make_gate(), make_gate()
        calls = []

        async def fetch_detail() -> dict:
            calls.append(1)
            return {"id": "p1", "title": "server"}

        cache.set_query_fn(DETAIL, fetch_detail)
        first = executor.execute(
            _spec(first_gate, optimistic_patch=lambda values: {DETAIL: {"id": "p1"}})
        )
        second = executor.execute(
            _spec(
                second_gate,
                optimistic_patch=lambda values: {DETAIL: {"id": "p1", "title": "mine"}},
            )
        )

        first_gate.resolve(Err(FailureReason.NETWORK))
        await first

        assert cache.read(DETAIL).inflight_mutation_count == 1
        await cache.refetch(DETAIL)
        assert calls == [1]
        assert cache.read(DETAIL).last_confirmed_at is None

        second_gate.resolve(Ok({}))
        await second
        assert cache.read(DETAIL).inflight_mutation_count == 0

    async def test_cancel_before_send_rolls_back(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)

        handle = executor.execute(_spec(gate))
        assert handle.cancel() is True
        result = await handle

        assert result.reason is FailureReason.CANCELLED
        assert gate.calls == []
        assert cache.read(DETAIL).value == post

    async def test_cancel_in_flight_rolls_back(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)

        handle = executor.execute(_spec(gate))
        await asyncio.sleep(0)
        assert gate.calls == [()]
        handle.cancel()
        result = await handle

        assert result.reason is FailureReason.CANCELLED
        assert cache.read(DETAIL).value == post
        assert cache.read(DETAIL).inflight_mutation_count == 0

    async def test_close_rolls_back_pending(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)
        handle = executor.execute(_spec(gate))

        await executor.close()

        assert handle.done()
        assert cache.read(DETAIL).value == post


class TestHooks:
    """Lifecycle hooks and the authentication signal."""

    async def test_hooks_fire_in_order_on_success(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)
        events = []

        handle = executor.execute(
            _spec(
                gate,
                before_send=lambda pending: events.append(("before", pending.status)),
                on_success=lambda value: events.append(("success", value)),
                on_error=lambda err: events.append(("error", err)),
                on_settled=lambda result: events.append(("settled", result)),
            )
        )
        gate.resolve(Ok("done"))
        await handle

        assert events == [
            ("before", MutationStatus.PENDING),
            ("success", "done"),
            ("settled", Ok("done")),
        ]

    async def test_unauthorized_signals_sign_in(
        self, cache: QueryCache, gate, post: dict
    ) -> None:
        signals = []
        executor = MutationExecutor(
            cache, on_unauthorized=lambda pending, err: signals.append(err.reason)
        )
        cache.write(DETAIL, post, confirmed=True)

        handle = executor.execute(_spec(gate))
        gate.resolve(Err(FailureReason.UNAUTHORIZED, "Authentication required"))
        await handle

        assert signals == [FailureReason.UNAUTHORIZED]
        assert handle.requires_auth is True
        assert cache.read(DETAIL).value == post
        assert len(gate.calls) == 1

    async def test_other_failures_do_not_require_auth(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)

        handle = executor.execute(_spec(gate))
        gate.resolve(Err(FailureReason.VALIDATION))
        await handle

        assert handle.requires_auth is False

    async def test_failing_reconcile_still_settles(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)

        def reconcile(result: Ok, values: dict) -> dict:
            raise KeyError("likes")

        handle = executor.execute(_spec(gate, on_reconcile=reconcile))
        gate.resolve(Ok({}))

        with pytest.raises(KeyError):
            await handle
        entry = cache.read(DETAIL)
        assert entry.inflight_mutation_count == 0
        assert entry.is_stale is True
        assert handle.pending.settled is True


class TestSubscriberFailures:
    """A raising subscriber never leaves the cache half-settled."""

    async def test_settlement_completes_before_subscriber_error(
        self, cache: QueryCache, executor: MutationExecutor, gate
    ) -> None:
        other = blog_keys["post_detail"]("p2")
        cache.write(DETAIL, 1, confirmed=True)
        cache.write(other, 1, confirmed=True)

        def on_change(identity, entry) -> None:
            if entry.value == 1:
                raise RuntimeError("render failed")

        cache.subscribe(DETAIL, on_change)
        handle = executor.execute(
            _spec(
                gate,
                targets=(DETAIL, other),
                optimistic_patch=lambda values: {DETAIL: 2, other: 2},
            )
        )
        gate.resolve(Err(FailureReason.NETWORK))

        with pytest.raises(RuntimeError, match="render failed"):
            await handle
        for identity in (DETAIL, other):
            entry = cache.read(identity)
            assert entry.value == 1
            assert entry.is_stale is True
            assert entry.inflight_mutation_count == 0
        assert handle.pending.settled is True

    async def test_failed_optimistic_write_is_unwound(
        self, cache: QueryCache, executor: MutationExecutor, gate
    ) -> None:
        cache.write(DETAIL, 1, confirmed=True)

        def on_change(identity, entry) -> None:
            if entry.value == 2:
                raise RuntimeError("render failed")

        cache.subscribe(DETAIL, on_change)

        with pytest.raises(RuntimeError, match="render failed"):
            executor.execute(
                _spec(gate, optimistic_patch=lambda values: {DETAIL: 2})
            )

        entry = cache.read(DETAIL)
        assert entry.value == 1
        assert entry.inflight_mutation_count == 0
        assert entry.is_stale is True
        assert executor.pending == []
        assert gate.calls == []


class TestConcurrentMutations:
    """Overlapping mutations on shared identities."""

    async def test_toggle_twice_returns_to_original(
        self, cache: QueryCache, executor: MutationExecutor, make_gate, post: dict
    ) -> None:
        cache.write(DETAIL, post, confirmed=True)
        first_gate, second_gate = make_gate(), make_gate()

        first = executor.execute(
            operations.toggle_like(cache, "p1", send=first_gate, targets=[DETAIL])
        )
        assert cache.read(DETAIL).value["likes_count"] == 4
        second = executor.execute(
            operations.toggle_like(cache, "p1", send=second_gate, targets=[DETAIL])
        )
        assert cache.read(DETAIL).value["likes_count"] == 3

        first_gate.resolve(Ok({"is_liked": True, "likes_count": 4}))
        await first
        # The pending unlike is still what readers see
        pending_value = cache.read(DETAIL).value
        assert pending_value["is_liked"] is False
        assert pending_value["likes_count"] == 3
        second_gate.resolve(Ok({"is_liked": False, "likes_count": 3}))
        await second

        value = cache.read(DETAIL).value
        assert value["is_liked"] is False
        assert value["likes_count"] == 3
        assert first_gate.calls == [(True,)]
        assert second_gate.calls == [(False,)]

    async def test_like_failure_restores_feed_copy(
        self, cache: QueryCache, executor: MutationExecutor, gate, post: dict
    ) -> None:
        feed = Feed(pages=((post, {"id": "p2", "likes_count": 0}),), cursor=2)
        cache.write(POSTS, feed, confirmed=True)
        targets = operations.post_targets(cache, "p1")

        handle = executor.execute(
            operations.toggle_like(cache, "p1", send=gate, targets=targets)
        )
        optimistic = cache.read(POSTS).value.items[0]
        assert optimistic["is_liked"] is True
        assert optimistic["likes_count"] == 4

        gate.resolve(Err(FailureReason.NETWORK, "offline"))
        await handle

        restored = cache.read(POSTS).value
        assert restored.items == feed.items
        assert restored.cursor == 2
        assert cache.read(DETAIL).value is None

    async def test_identical_comments_reconcile_in_order(
        self, cache: QueryCache, executor: MutationExecutor, make_gate
    ) -> None:
        cache.write(COMMENTS, [{"id": "c1", "content": "first"}], confirmed=True)
        first_gate, second_gate = make_gate(), make_gate()

        first = executor.execute(
            operations.create_comment(
                "p1", content="same", author_id="u1", send=first_gate
            )
        )
        second = executor.execute(
            operations.create_comment(
                "p1", content="same", author_id="u1", send=second_gate
            )
        )
        optimistic = cache.read(COMMENTS).value
        assert [c.get("_optimistic", False) for c in optimistic] == [False, True, True]

        def confirmed(comment_id: str, twin: dict) -> Ok:
            return Ok(
                {
                    "id": comment_id,
                    "content": "same",
                    "author_id": "u1",
                    "created_at": twin["created_at"],
                }
            )

        first_gate.resolve(confirmed("c100", optimistic[1]))
        await first
        second_gate.resolve(confirmed("c101", optimistic[2]))
        await second

        comments = cache.read(COMMENTS).value
        assert [c["id"] for c in comments] == ["c1", "c100", "c101"]
        assert not any(c.get("_optimistic") for c in comments)

    async def test_late_failure_restores_its_own_snapshot(
        self, cache: QueryCache, executor: MutationExecutor, make_gate
    ) -> None:
        cache.write(COMMENTS, [], confirmed=True)
        first_gate, second_gate = make_gate(), make_gate()

        first = executor.execute(
            operations.create_comment("p1", content="a", author_id="u1", send=first_gate)
        )
        second = executor.execute(
            operations.create_comment("p1", content="b", author_id="u1", send=second_gate)
        )

        second_gate.resolve(Ok({"id": "c2", "content": "b", "author_id": "u1"}))
        await second
        first_gate.resolve(Err(FailureReason.VALIDATION))
        await first

        # The refetch triggered by invalidation restores the sibling comment
        entry = cache.read(COMMENTS)
        assert entry.value == []
        assert entry.is_stale is True
        assert entry.inflight_mutation_count == 0
