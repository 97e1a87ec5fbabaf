"""Mutation builders for the blog domain.

Each builder returns a MutationSpec pairing an optimistic patch with the
reconciliation that replaces it by the server's answer. Hooks can be
attached afterwards with dataclasses.replace(spec, on_success=...).

Usage:
    spec = toggle_like(cache, "p1", send=backend.set_like, targets=targets)
    handle = executor.execute(spec)
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

from feedsync import patches
from feedsync.cache import QueryCache
from feedsync.feed import patch_feed_item
from feedsync.identities import (
    POST_LISTS,
    SAVED_POST_LISTS,
    blog_keys,
)
from feedsync.mutations import MutationSpec, Values
from feedsync.types import Feed, MutationKind, Ok, QueryIdentity, Result

Send = Callable[[], Awaitable[Result[Any]]]
SendFlag = Callable[[bool], Awaitable[Result[Any]]]
PostPatch = Callable[[Mapping[str, Any]], Any]


def post_targets(cache: QueryCache, post_id: Any) -> tuple[QueryIdentity, ...]:
    """Every cached identity that may hold a copy of the post."""
    return (
        *cache.find(POST_LISTS),
        blog_keys["post_detail"](post_id),
        *cache.find(SAVED_POST_LISTS),
    )


def _patch_post(value: Any, post_id: Any, fn: PostPatch) -> Any:
    if isinstance(value, Feed):
        return patch_feed_item(value, post_id, fn)
    if isinstance(value, Mapping):
        return fn(value) if value.get("id") == post_id else value
    if isinstance(value, list):
        return [
            fn(item) if isinstance(item, Mapping) and item.get("id") == post_id else item
            for item in value
        ]
    return value


def _patch_targets(
    values: Values, post_id: Any, fn: PostPatch, *, include_unchanged: bool = False
) -> Values:
    patched: Values = {}
    for identity, value in values.items():
        if value is None:
            continue
        updated = _patch_post(value, post_id, fn)
        if include_unchanged or updated is not value:
            patched[identity] = updated
    return patched


def _find_post(values: Iterable[Any], post_id: Any) -> Mapping[str, Any] | None:
    for value in values:
        if isinstance(value, Feed):
            items: Iterable[Any] = value.items
        elif isinstance(value, Mapping):
            items = (value,)
        elif isinstance(value, list):
            items = value
        else:
            continue
        for item in items:
            if isinstance(item, Mapping) and item.get("id") == post_id:
                return item
    return None


def _without_pending_writers(cache: QueryCache, values: Values) -> Values:
    """Drop targets another optimistic writer still holds.

    Their settlement-time invalidation brings the server state back instead.
    """
    kept: Values = {}
    for identity, value in values.items():
        entry = cache.read(identity)
        if entry is not None and entry.inflight_mutation_count > 0:
            continue
        kept[identity] = value
    return kept


def _current_values(
    cache: QueryCache, targets: Iterable[QueryIdentity]
) -> list[Any]:
    values = []
    for identity in targets:
        entry = cache.read(identity)
        if entry is not None:
            values.append(entry.value)
    return values


def _flag_fields(
    value: Any, field: str, aliases: tuple[str, ...], count_field: str | None
) -> dict[str, Any]:
    """Extract the viewer flag (and count) the server echoed back."""
    if isinstance(value, bool):
        return {field: value}
    if not isinstance(value, Mapping):
        return {}
    fields: dict[str, Any] = {}
    for name in (field, *aliases):
        if name in value:
            fields[field] = bool(value[name])
            break
    if count_field is not None and count_field in value:
        fields[count_field] = value[count_field]
    return fields


def _apply_like_fields(post: Mapping[str, Any], fields: Mapping[str, Any]) -> dict[str, Any]:
    merged = {**post, **fields}
    liked = fields.get(patches.LIKED_FIELD)
    if (
        liked is not None
        and patches.LIKES_COUNT_FIELD not in fields
        and liked != bool(post.get(patches.LIKED_FIELD))
    ):
        count = post.get(patches.LIKES_COUNT_FIELD) or 0
        merged[patches.LIKES_COUNT_FIELD] = count + 1 if liked else count - 1
    return merged


# -----------------------------------------------------------------------------
# Post interactions
# -----------------------------------------------------------------------------


def toggle_like(
    cache: QueryCache,
    post_id: Any,
    *,
    send: SendFlag,
    targets: Iterable[QueryIdentity],
) -> MutationSpec[Any]:
    """Like the post if the viewer has not liked it yet, otherwise unlike it.

    The direction is read from the latest cached value, so a second toggle
    issued before the first settles undoes the first optimistic patch.
    send receives the desired liked state.
    """
    targets = tuple(targets)
    current = _find_post(_current_values(cache, targets), post_id)
    like = not bool(current.get(patches.LIKED_FIELD)) if current else True

    def flip(post: Mapping[str, Any]) -> Any:
        if bool(post.get(patches.LIKED_FIELD)) == like:
            return post
        return patches.toggle_like(post)

    def optimistic(values: Values) -> Values:
        return _patch_targets(values, post_id, flip)

    def reconcile(result: Ok[Any], values: Values) -> Values:
        fields = _flag_fields(
            result.value, patches.LIKED_FIELD, ("liked",), patches.LIKES_COUNT_FIELD
        )
        return _patch_targets(
            _without_pending_writers(cache, values),
            post_id,
            lambda post: _apply_like_fields(post, fields),
            include_unchanged=True,
        )

    return MutationSpec(
        network_call=lambda: send(like),
        targets=targets,
        optimistic_patch=optimistic,
        on_reconcile=reconcile,
        kind=MutationKind.TOGGLE_LIKE,
        invalidates=(POST_LISTS,),
    )


def toggle_save(
    cache: QueryCache,
    post_id: Any,
    *,
    send: SendFlag,
    targets: Iterable[QueryIdentity],
) -> MutationSpec[Any]:
    """Save or unsave the post for the viewer; counts are untouched."""
    targets = tuple(targets)
    current = _find_post(_current_values(cache, targets), post_id)
    save = not bool(current.get(patches.SAVED_FIELD)) if current else True

    def flip(post: Mapping[str, Any]) -> Any:
        if bool(post.get(patches.SAVED_FIELD)) == save:
            return post
        return patches.toggle_save(post)

    def optimistic(values: Values) -> Values:
        return _patch_targets(values, post_id, flip)

    def reconcile(result: Ok[Any], values: Values) -> Values:
        fields = _flag_fields(
            result.value, patches.SAVED_FIELD, ("saved", "favorited"), None
        )
        return _patch_targets(
            _without_pending_writers(cache, values),
            post_id,
            lambda post: {**post, **fields},
            include_unchanged=True,
        )

    return MutationSpec(
        network_call=lambda: send(save),
        targets=targets,
        optimistic_patch=optimistic,
        on_reconcile=reconcile,
        kind=MutationKind.TOGGLE_SAVE,
        invalidates=(POST_LISTS, SAVED_POST_LISTS),
    )


# -----------------------------------------------------------------------------
# Comments
# -----------------------------------------------------------------------------


def create_comment(
    post_id: Any,
    *,
    content: str,
    author_id: Any,
    send: Send,
    parent_id: Any | None = None,
    author: Mapping[str, Any] | None = None,
    match_window_ms: int = 120_000,
) -> MutationSpec[Any]:
    """Append a provisional comment, swapped for the server record on success."""
    target = blog_keys["comments"](post_id)
    temp_id = patches.new_temp_id()

    def optimistic(values: Values) -> Values:
        record = patches.build_optimistic_comment(
            content=content,
            author_id=author_id,
            post_id=post_id,
            parent_id=parent_id,
            author=author,
            temp_id=temp_id,
        )
        return {target: patches.create_comment(values[target], record)}

    def reconcile(result: Ok[Any], values: Values) -> Values:
        if not isinstance(result.value, Mapping):
            return {}
        return {
            target: patches.reconcile_comment(
                values[target], result.value, window_ms=match_window_ms
            )
        }

    return MutationSpec(
        network_call=send,
        targets=(target,),
        optimistic_patch=optimistic,
        on_reconcile=reconcile,
        kind=MutationKind.CREATE_COMMENT,
        invalidates=(blog_keys["post_detail"](post_id),),
    )


def update_comment(
    post_id: Any, comment_id: Any, *, content: str, send: Send
) -> MutationSpec[Any]:
    target = blog_keys["comments"](post_id)

    def optimistic(values: Values) -> Values:
        if values[target] is None:
            return {}
        return {target: patches.update_comment(values[target], comment_id, content)}

    def reconcile(result: Ok[Any], values: Values) -> Values:
        confirmed = result.value
        if not isinstance(confirmed, Mapping) or values[target] is None:
            return {}
        return {
            target: [
                {**c, **confirmed} if c.get("id") == comment_id else c
                for c in values[target]
            ]
        }

    return MutationSpec(
        network_call=send,
        targets=(target,),
        optimistic_patch=optimistic,
        on_reconcile=reconcile,
        kind=MutationKind.UPDATE_COMMENT,
    )


def delete_comment(post_id: Any, comment_id: Any, *, send: Send) -> MutationSpec[Any]:
    target = blog_keys["comments"](post_id)

    def optimistic(values: Values) -> Values:
        if values[target] is None:
            return {}
        return {target: patches.delete_comment(values[target], comment_id)}

    def reconcile(result: Ok[Any], values: Values) -> Values:
        if values[target] is None:
            return {}
        return {target: patches.delete_comment(values[target], comment_id)}

    return MutationSpec(
        network_call=send,
        targets=(target,),
        optimistic_patch=optimistic,
        on_reconcile=reconcile,
        kind=MutationKind.DELETE_COMMENT,
        invalidates=(blog_keys["post_detail"](post_id),),
    )


# -----------------------------------------------------------------------------
# Profiles and posts
# -----------------------------------------------------------------------------


def update_profile(
    profile_id: Any, fields: Mapping[str, Any], *, send: Send
) -> MutationSpec[Any]:
    """Merge submitted fields over the cached profile; the server copy wins."""
    target = blog_keys["profile"](profile_id)

    def optimistic(values: Values) -> Values:
        return {target: patches.update_profile(values[target], fields)}

    def reconcile(result: Ok[Any], values: Values) -> Values:
        if isinstance(result.value, Mapping):
            return {target: dict(result.value)}
        return {target: values[target]}

    return MutationSpec(
        network_call=send,
        targets=(target,),
        optimistic_patch=optimistic,
        on_reconcile=reconcile,
        kind=MutationKind.UPDATE_PROFILE,
    )


def update_post(
    cache: QueryCache,
    post_id: Any,
    fields: Mapping[str, Any],
    *,
    send: Send,
    targets: Iterable[QueryIdentity],
) -> MutationSpec[Any]:
    """Merge submitted fields over every cached copy of the post."""
    targets = tuple(targets)

    def optimistic(values: Values) -> Values:
        return _patch_targets(
            values, post_id, lambda post: patches.update_post(post, fields)
        )

    def reconcile(result: Ok[Any], values: Values) -> Values:
        confirmed = result.value if isinstance(result.value, Mapping) else {}
        return _patch_targets(
            _without_pending_writers(cache, values),
            post_id,
            lambda post: patches.merge_fields(post, confirmed),
            include_unchanged=True,
        )

    return MutationSpec(
        network_call=send,
        targets=targets,
        optimistic_patch=optimistic,
        on_reconcile=reconcile,
        kind=MutationKind.UPDATE_POST,
        invalidates=(POST_LISTS,),
    )


def create_post(*, send: Send) -> MutationSpec[Any]:
    """No optimistic patch; every feed is invalidated once the post exists."""
    return MutationSpec(
        network_call=send,
        kind=MutationKind.CREATE_POST,
        invalidates=(POST_LISTS,),
    )


def delete_post(post_id: Any, *, send: Send) -> MutationSpec[Any]:
    return MutationSpec(
        network_call=send,
        kind=MutationKind.DELETE_POST,
        invalidates=(
            POST_LISTS,
            SAVED_POST_LISTS,
            blog_keys["post_detail"](post_id),
        ),
    )


def add_post_tags(post_id: Any, *, send: Send) -> MutationSpec[Any]:
    return MutationSpec(
        network_call=send,
        kind=MutationKind.ADD_POST_TAGS,
        invalidates=(blog_keys["post_tags"](post_id), POST_LISTS),
    )


__all__ = [
    "add_post_tags",
    "create_comment",
    "create_post",
    "delete_comment",
    "delete_post",
    "post_targets",
    "toggle_like",
    "toggle_save",
    "update_comment",
    "update_post",
    "update_profile",
]
