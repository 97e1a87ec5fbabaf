"""Query identity factories and utilities."""

import json
from collections.abc import Callable, Hashable
from typing import Any

from feedsync.types import QueryIdentity


def make_identity(*parts: Any) -> QueryIdentity:
    """Build a QueryIdentity, rejecting unhashable parameters."""
    if not parts:
        raise TypeError("Query identity needs at least an entity kind")
    if not isinstance(parts[0], str):
        raise TypeError(f"Entity kind must be a string, got {type(parts[0])}")
    for part in parts:
        if not isinstance(part, Hashable):
            raise TypeError(f"Identity parameter {part!r} is not hashable")
    return QueryIdentity(parts)


def define_identities(
    definitions: dict[str, Callable[..., tuple[Any, ...]]],
) -> dict[str, Callable[..., QueryIdentity]]:
    """
    Define all query identities in a centralized location.

    Example:
        keys = define_identities({
            "post_detail": lambda id: ("post-detail", id),
            "comments": lambda post_id: ("comment-list-for-post", post_id),
        })

        keys["post_detail"]("p1")  # ("post-detail", "p1")
    """
    result: dict[str, Callable[..., QueryIdentity]] = {}
    for name, fn in definitions.items():

        def make(*args: Any, _fn: Callable[..., tuple[Any, ...]] = fn) -> QueryIdentity:
            return make_identity(*_fn(*args))

        result[name] = make
    return result


blog_keys = define_identities(
    {
        "post_list": lambda filters="": ("post-list", filters),
        "post_detail": lambda id: ("post-detail", id),
        "post_by_slug": lambda slug: ("post-by-slug", slug),
        "comments": lambda post_id: ("comment-list-for-post", post_id),
        "saved_posts": lambda: ("saved-post-list",),
        "profile": lambda id: ("profile", id),
        "tags": lambda: ("tag-list",),
        "post_tags": lambda post_id: ("post-tags", post_id),
    }
)

# Prefixes matching every identity of a kind
POST_LISTS = QueryIdentity(("post-list",))
SAVED_POST_LISTS = QueryIdentity(("saved-post-list",))


def serialize_identity(identity: QueryIdentity) -> str:
    """Storage key for identity.

    Keys are compact JSON arrays, so parameter types survive a round trip:
    ("post-detail", 7) -> '["post-detail",7]'.
    """
    return json.dumps(list(identity), separators=(",", ":"), ensure_ascii=False)


def deserialize_identity(serialized: str) -> QueryIdentity:
    """Parse a storage key produced by serialize_identity.

    Raises ValueError for keys that are not a JSON array of identity parts.
    """
    try:
        parts = json.loads(serialized)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid identity key: {serialized!r}") from exc
    if not isinstance(parts, list):
        raise ValueError(f"Invalid identity key: {serialized!r}")
    try:
        return make_identity(*parts)
    except TypeError as exc:
        raise ValueError(f"Invalid identity key: {serialized!r}") from exc


def is_identity_prefix(prefix: QueryIdentity, identity: QueryIdentity) -> bool:
    """True when identity equals prefix or extends it (grouped invalidation)."""
    return identity[: len(prefix)] == prefix
