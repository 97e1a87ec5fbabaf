"""feedsync - Optimistic mutation cache for blog and social feeds."""

import logging
from contextlib import suppress

# Adapters (async only)
from feedsync.adapters import AsyncMemoryAdapter, AsyncStorageAdapter

# Cache, feeds and mutations
from feedsync.cache import QueryCache
from feedsync.client import ClientConfig, QueryClient

# Duration parsing
from feedsync.duration import Duration, parse_duration
from feedsync.errors import (
    ConflictError,
    MutationCancelled,
    MutationError,
    NetworkError,
    UnauthorizedError,
    ValidationError,
)
from feedsync.feed import FeedAccumulator
from feedsync.identities import (
    blog_keys,
    define_identities,
    is_identity_prefix,
    make_identity,
)
from feedsync.mutations import (
    MutationExecutor,
    MutationHandle,
    MutationSpec,
    PendingMutation,
)
from feedsync.transport import BlogBackend

# Core types
from feedsync.types import (
    CacheEntry,
    Err,
    FailureReason,
    Feed,
    MutationKind,
    MutationStatus,
    Ok,
    Page,
    QueryIdentity,
    Result,
)

# Optional adapter imports - only available when dependencies are installed
with suppress(ImportError):
    from feedsync.adapters import AsyncRedisAdapter

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "AsyncMemoryAdapter",
    "AsyncRedisAdapter",
    "AsyncStorageAdapter",
    "BlogBackend",
    "CacheEntry",
    "ClientConfig",
    "ConflictError",
    "Duration",
    "Err",
    "FailureReason",
    "Feed",
    "FeedAccumulator",
    "MutationCancelled",
    "MutationError",
    "MutationExecutor",
    "MutationHandle",
    "MutationKind",
    "MutationSpec",
    "MutationStatus",
    "NetworkError",
    "Ok",
    "Page",
    "PendingMutation",
    "QueryCache",
    "QueryClient",
    "QueryIdentity",
    "Result",
    "UnauthorizedError",
    "ValidationError",
    "blog_keys",
    "define_identities",
    "is_identity_prefix",
    "make_identity",
    "parse_duration",
]
