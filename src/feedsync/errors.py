"""Mutation failure taxonomy."""

from feedsync.types import Err, FailureReason


class MutationError(Exception):
    """Base class for backend failures surfaced by a mutation."""

    reason: FailureReason = FailureReason.NETWORK

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def to_result(self) -> Err:
        """Convert to the Err outcome consumed by the reconciliation policy."""
        return Err(self.reason, self.message)


class NetworkError(MutationError):
    """Transport failure."""

    reason = FailureReason.NETWORK


class UnauthorizedError(MutationError):
    """The caller must (re-)authenticate; never retried automatically."""

    reason = FailureReason.UNAUTHORIZED


class ValidationError(MutationError):
    """Input rejected by the backend."""

    reason = FailureReason.VALIDATION


class ConflictError(MutationError):
    """Resource concurrently modified or deleted server-side."""

    reason = FailureReason.CONFLICT


class MutationCancelled(MutationError):
    """Mutation torn down before the backend answered."""

    reason = FailureReason.CANCELLED


_ERRORS_BY_REASON: dict[FailureReason, type[MutationError]] = {
    FailureReason.NETWORK: NetworkError,
    FailureReason.UNAUTHORIZED: UnauthorizedError,
    FailureReason.VALIDATION: ValidationError,
    FailureReason.CONFLICT: ConflictError,
    FailureReason.CANCELLED: MutationCancelled,
}


def error_for(err: Err) -> MutationError:
    """Build the exception matching a failed outcome."""
    return _ERRORS_BY_REASON[err.reason](err.message)


def failure_from_exception(exc: Exception) -> Err:
    """Map an exception raised by a network call to an Err.

    MutationError subclasses keep their reason; anything else is a
    transport failure.
    """
    if isinstance(exc, MutationError):
        return exc.to_result()
    return Err(FailureReason.NETWORK, str(exc) or type(exc).__name__)


__all__ = [
    "ConflictError",
    "MutationCancelled",
    "MutationError",
    "NetworkError",
    "UnauthorizedError",
    "ValidationError",
    "error_for",
    "failure_from_exception",
]
