"""Optimistic patch functions.

Every function here is pure: it takes the previous value (a post, comment
list, or profile payload) plus the mutation input and returns a new value
without modifying its arguments.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

LIKED_FIELD = "is_liked"
LIKES_COUNT_FIELD = "likes_count"
SAVED_FIELD = "is_saved"
OPTIMISTIC_FLAG = "_optimistic"
TEMP_ID_PREFIX = "temp-"

Record = dict[str, Any]


def new_temp_id() -> str:
    """Temporary identifier for a record the server has not issued yet."""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(TEMP_ID_PREFIX)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        stamp = value
    elif isinstance(value, str):
        try:
            stamp = datetime.fromisoformat(value)
        except ValueError:
            return None
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        stamp = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        return None
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp


# -----------------------------------------------------------------------------
# Posts
# -----------------------------------------------------------------------------


def toggle_like(post: Mapping[str, Any]) -> Record:
    """Flip the viewer's like flag and move the like count by one."""
    liked = bool(post.get(LIKED_FIELD))
    count = post.get(LIKES_COUNT_FIELD) or 0
    return {
        **post,
        LIKED_FIELD: not liked,
        LIKES_COUNT_FIELD: count - 1 if liked else count + 1,
    }


def toggle_save(post: Mapping[str, Any]) -> Record:
    """Flip the viewer's saved flag; counts are untouched."""
    return {**post, SAVED_FIELD: not bool(post.get(SAVED_FIELD))}


def merge_fields(
    previous: Mapping[str, Any] | None, fields: Mapping[str, Any]
) -> Record:
    """Partial update: submitted fields win, everything else is kept."""
    return {**(previous or {}), **fields}


def update_profile(
    profile: Mapping[str, Any] | None, fields: Mapping[str, Any]
) -> Record:
    return merge_fields(profile, fields)


def update_post(post: Mapping[str, Any] | None, fields: Mapping[str, Any]) -> Record:
    return merge_fields(post, fields)


# -----------------------------------------------------------------------------
# Comments
# -----------------------------------------------------------------------------


def build_optimistic_comment(
    *,
    content: str,
    author_id: Any,
    post_id: Any,
    parent_id: Any | None = None,
    author: Mapping[str, Any] | None = None,
    temp_id: str | None = None,
    now: datetime | None = None,
) -> Record:
    """Provisional comment record flagged as unconfirmed."""
    stamp = (now or _utcnow()).isoformat()
    return {
        "id": temp_id or new_temp_id(),
        "content": content,
        "author_id": author_id,
        "post_id": post_id,
        "parent_id": parent_id,
        "created_at": stamp,
        "updated_at": stamp,
        "author": dict(author) if author else {"id": author_id, "username": "You"},
        OPTIMISTIC_FLAG: True,
    }


def create_comment(
    comments: Sequence[Mapping[str, Any]] | None, comment: Mapping[str, Any]
) -> list[Any]:
    """Insert comment at the end of its parent's replies.

    Top-level comments, and replies whose parent is not in the list, go to
    the end of the list.
    """
    result = list(comments or ())
    parent_id = comment.get("parent_id")
    if parent_id is None:
        result.append(comment)
        return result

    position = None
    for index, existing in enumerate(result):
        if existing.get("id") == parent_id or existing.get("parent_id") == parent_id:
            position = index + 1
    if position is None:
        result.append(comment)
    else:
        result.insert(position, comment)
    return result


def update_comment(
    comments: Sequence[Mapping[str, Any]] | None, comment_id: Any, content: str
) -> list[Any]:
    """Replace the content of the matching comment; other fields are kept."""
    return [
        {**c, "content": content} if c.get("id") == comment_id else c
        for c in comments or ()
    ]


def delete_comment(
    comments: Sequence[Mapping[str, Any]] | None, comment_id: Any
) -> list[Any]:
    return [c for c in comments or () if c.get("id") != comment_id]


def reconcile_comment(
    comments: Sequence[Mapping[str, Any]] | None,
    confirmed: Mapping[str, Any],
    *,
    window_ms: int,
) -> list[Any]:
    """Swap the optimistic twin of a server-confirmed comment in place.

    The twin is the unconfirmed record with the same content and author whose
    created_at is closest to the server's (within window_ms). Identifiers are
    never compared, since the optimistic record only has a temporary one.
    With no twin, an existing record with the server id is replaced, or the
    confirmed record is appended.
    """
    result = list(comments or ())
    server_time = _to_datetime(confirmed.get("created_at"))

    best: int | None = None
    best_distance: float | None = None
    for index, existing in enumerate(result):
        if not existing.get(OPTIMISTIC_FLAG):
            continue
        if existing.get("content") != confirmed.get("content"):
            continue
        if existing.get("author_id") != confirmed.get("author_id"):
            continue
        local_time = _to_datetime(existing.get("created_at"))
        if server_time is None or local_time is None:
            distance = 0.0
        else:
            distance = abs((server_time - local_time).total_seconds() * 1000)
        if distance > window_ms:
            continue
        if best_distance is None or distance < best_distance:
            best, best_distance = index, distance

    if best is not None:
        result[best] = dict(confirmed)
        return result

    for index, existing in enumerate(result):
        if existing.get("id") == confirmed.get("id"):
            result[index] = dict(confirmed)
            return result

    result.append(dict(confirmed))
    return result


__all__ = [
    "LIKED_FIELD",
    "LIKES_COUNT_FIELD",
    "OPTIMISTIC_FLAG",
    "SAVED_FIELD",
    "build_optimistic_comment",
    "create_comment",
    "delete_comment",
    "is_temp_id",
    "merge_fields",
    "new_temp_id",
    "reconcile_comment",
    "toggle_like",
    "toggle_save",
    "update_comment",
    "update_post",
    "update_profile",
]
