"""Core types for the feedsync optimistic cache."""

from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Generic,
    NewType,
    TypeVar,
    Union,
)

T = TypeVar("T")

# Branded identity type - compile-time enforcement only
if TYPE_CHECKING:
    QueryIdentity = NewType("QueryIdentity", tuple[Any, ...])
else:
    QueryIdentity = tuple


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """A cached query value with confirmation metadata."""

    value: T | None
    last_confirmed_at: int | None = None  # Unix timestamp ms, None if never confirmed
    is_stale: bool = False
    inflight_mutation_count: int = 0


class FailureReason(str, Enum):
    """Why a mutation did not succeed."""

    NETWORK = "network"
    UNAUTHORIZED = "unauthorized"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    CANCELLED = "cancelled"


class MutationStatus(str, Enum):
    """Lifecycle state of a pending mutation."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class MutationKind(str, Enum):
    """Closed set of mutation variants understood by feedsync.operations."""

    TOGGLE_LIKE = "toggle-like"
    TOGGLE_SAVE = "toggle-save"
    CREATE_COMMENT = "create-comment"
    UPDATE_COMMENT = "update-comment"
    DELETE_COMMENT = "delete-comment"
    UPDATE_PROFILE = "update-profile"
    UPDATE_POST = "update-post"
    CREATE_POST = "create-post"
    DELETE_POST = "delete-post"
    ADD_POST_TAGS = "add-post-tags"
    CUSTOM = "custom"


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful backend outcome."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Err:
    """Failed backend outcome with a discriminated reason."""

    reason: FailureReason
    message: str = ""

    @property
    def ok(self) -> bool:
        return False

    @property
    def requires_auth(self) -> bool:
        """True when the caller must sign in before retrying."""
        return self.reason is FailureReason.UNAUTHORIZED


Result = Union[Ok[T], Err]


@dataclass(frozen=True, slots=True)
class Page(Generic[T]):
    """One page of a paginated backend response."""

    items: tuple[T, ...]
    next_cursor: Any | None = None


@dataclass(frozen=True, slots=True)
class Feed(Generic[T]):
    """Accumulated pages of an infinite-scroll sequence."""

    pages: tuple[tuple[T, ...], ...] = ()
    cursor: Any | None = None
    has_more: bool = True

    @property
    def items(self) -> list[T]:
        """All items across pages, in server order."""
        return [item for page in self.pages for item in page]

    def __len__(self) -> int:
        return sum(len(page) for page in self.pages)


@dataclass(slots=True)
class Snapshot:
    """Pre-mutation values of a mutation's targets."""

    values: dict[QueryIdentity, Any] = field(default_factory=dict)
    missing: set[QueryIdentity] = field(default_factory=set)
