"""Mutation executor and reconciliation policy.

A mutation runs in two phases:
- execute(): synchronously snapshots its targets, writes the optimistic
  patch and starts the network call as a task.
- settlement: when the call task finishes (success, error or cancellation)
  the cache is corrected in one synchronous step, then every target is
  invalidated so the next read prefers fresh server data.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Generator
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from feedsync.cache import QueryCache
from feedsync.errors import error_for, failure_from_exception
from feedsync.types import (
    Err,
    FailureReason,
    MutationKind,
    MutationStatus,
    Ok,
    QueryIdentity,
    Result,
    Snapshot,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Values = dict[QueryIdentity, Any]
OptimisticPatch = Callable[[Values], Values]
Reconcile = Callable[[Ok[Any], Values], Values]


@dataclass(frozen=True, slots=True)
class MutationSpec(Generic[T]):
    """Everything the executor needs to run one mutation.

    network_call: performs the backend write; returns Ok/Err or raises.
    targets: identities patched optimistically and rolled back on failure.
    optimistic_patch: current target values -> provisional values.
    on_reconcile: server result + current target values -> confirmed values.
    invalidates: extra identity prefixes invalidated after settlement.
    """

    network_call: Callable[[], Awaitable[Result[T]]]
    targets: tuple[QueryIdentity, ...] = ()
    optimistic_patch: OptimisticPatch | None = None
    on_reconcile: Reconcile | None = None
    kind: MutationKind = MutationKind.CUSTOM
    invalidates: tuple[QueryIdentity, ...] = ()
    before_send: Callable[[PendingMutation], None] | None = None
    on_success: Callable[[T], None] | None = None
    on_error: Callable[[Err], None] | None = None
    on_settled: Callable[[Result[T]], None] | None = None


@dataclass(slots=True)
class PendingMutation:
    """State of one in-flight mutation."""

    id: str
    kind: MutationKind
    targets: tuple[QueryIdentity, ...]
    snapshot: Snapshot
    optimistic_values: Values = field(default_factory=dict)
    status: MutationStatus = MutationStatus.PENDING
    result: Ok[Any] | Err | None = None
    started_at: int = 0
    settled: bool = False


class MutationHandle(Generic[T]):
    """Awaitable outcome of an executed mutation.

    Usage:
        handle = executor.execute(spec)
        result = await handle           # Ok(value) or Err(reason, message)
        value = await handle.unwrap()   # raises the matching MutationError
    """

    __slots__ = ("_call", "_outcome", "_pending")

    def __init__(
        self,
        pending: PendingMutation,
        call: asyncio.Task[Result[T]],
        outcome: asyncio.Future[Result[T]],
    ) -> None:
        self._pending = pending
        self._call = call
        self._outcome = outcome

    def __await__(self) -> Generator[Any, None, Result[T]]:
        return self._outcome.__await__()

    @property
    def id(self) -> str:
        return self._pending.id

    @property
    def pending(self) -> PendingMutation:
        return self._pending

    @property
    def status(self) -> MutationStatus:
        return self._pending.status

    @property
    def result(self) -> Result[T] | None:
        """The outcome once settled, else None."""
        return self._pending.result

    @property
    def requires_auth(self) -> bool:
        """True when the mutation failed because the user must sign in."""
        result = self._pending.result
        return isinstance(result, Err) and result.requires_auth

    def done(self) -> bool:
        return self._outcome.done()

    def cancel(self) -> bool:
        """Cancel the network call; the cache is still rolled back."""
        return self._call.cancel()

    async def unwrap(self) -> T:
        result = await self
        if isinstance(result, Err):
            raise error_for(result)
        return result.value


class MutationExecutor:
    """Runs mutations against a QueryCache with optimistic updates.

    Args:
        cache: The cache every mutation reads and writes.
        on_unauthorized: Called once per mutation that failed because the
            user must sign in. Never triggers a retry.
    """

    def __init__(
        self,
        cache: QueryCache,
        *,
        on_unauthorized: Callable[[PendingMutation, Err], None] | None = None,
    ) -> None:
        self._cache = cache
        self._on_unauthorized = on_unauthorized
        self._in_flight: dict[
            str, tuple[PendingMutation, asyncio.Task[Any], asyncio.Future[Any]]
        ] = {}

    @property
    def pending(self) -> list[PendingMutation]:
        """Mutations that have not settled, in start order."""
        return [pending for pending, _, _ in self._in_flight.values()]

    def execute(self, spec: MutationSpec[T]) -> MutationHandle[T]:
        """Apply the optimistic patch now and start the network call.

        Must be called from a running event loop. Readers observe the
        optimistic values as soon as this returns.
        """
        loop = asyncio.get_running_loop()
        targets = tuple(dict.fromkeys(spec.targets))

        current: Values = {}
        snapshot = Snapshot()
        for identity in targets:
            entry = self._cache.read(identity)
            if entry is None or (
                entry.value is None and entry.last_confirmed_at is None
            ):
                snapshot.missing.add(identity)
                current[identity] = None
            else:
                current[identity] = entry.value
            snapshot.values[identity] = copy.deepcopy(current[identity])

        optimistic = spec.optimistic_patch(current) if spec.optimistic_patch else {}
        unknown = set(optimistic) - set(targets)
        if unknown:
            raise ValueError(f"Optimistic patch wrote non-target identities: {unknown}")

        pending = PendingMutation(
            id=uuid.uuid4().hex,
            kind=spec.kind,
            targets=targets,
            snapshot=snapshot,
            optimistic_values=optimistic,
            started_at=int(time.time() * 1000),
        )
        for identity in targets:
            self._cache.begin_mutation(identity)
        try:
            with self._cache.hold_notifications():
                for identity, value in optimistic.items():
                    self._cache.write(identity, value, confirmed=False)
        except Exception:
            logger.warning(
                "mutation %s (%s) failed to apply; rolling back",
                pending.id,
                spec.kind.value,
                exc_info=True,
            )
            pending.status = MutationStatus.FAILED
            with self._cache.hold_notifications():
                for identity in targets:
                    self._cache.end_mutation(identity)
                self._rollback(pending)
                for identity in targets:
                    self._cache.invalidate(identity)
            pending.settled = True
            raise
        logger.debug(
            "mutation %s (%s) started on %d targets",
            pending.id,
            spec.kind.value,
            len(targets),
        )

        outcome: asyncio.Future[Result[T]] = loop.create_future()
        call = loop.create_task(self._send(spec))
        self._in_flight[pending.id] = (pending, call, outcome)
        call.add_done_callback(
            lambda task: self._on_call_done(pending, spec, task, outcome)
        )
        # The call task has not started yet; it first runs when we yield
        if spec.before_send is not None:
            spec.before_send(pending)
        return MutationHandle(pending, call, outcome)

    async def close(self) -> None:
        """Cancel every in-flight mutation and wait for rollback."""
        in_flight = list(self._in_flight.values())
        for _, call, _ in in_flight:
            call.cancel()
        if in_flight:
            await asyncio.gather(
                *(outcome for _, _, outcome in in_flight), return_exceptions=True
            )

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _send(self, spec: MutationSpec[T]) -> Result[T]:
        try:
            result = await spec.network_call()
        except Exception as exc:
            logger.debug("network call raised %s", type(exc).__name__, exc_info=True)
            return failure_from_exception(exc)
        if isinstance(result, (Ok, Err)):
            return result
        return Ok(result)

    def _on_call_done(
        self,
        pending: PendingMutation,
        spec: MutationSpec[T],
        call: asyncio.Task[Result[T]],
        outcome: asyncio.Future[Result[T]],
    ) -> None:
        self._in_flight.pop(pending.id, None)

        result: Result[T]
        if call.cancelled():
            result = Err(FailureReason.CANCELLED, "Mutation cancelled")
        else:
            result = call.result()

        try:
            self._settle(pending, spec, result)
            self._run_hooks(pending, spec, result)
        except Exception as exc:
            if not outcome.done():
                outcome.set_exception(exc)
            return
        if not outcome.done():
            outcome.set_result(result)

    def _settle(
        self, pending: PendingMutation, spec: MutationSpec[T], result: Result[T]
    ) -> None:
        # Subscribers see the settled state only after every target is
        # corrected and invalidated
        with self._cache.hold_notifications():
            self._apply_settlement(pending, spec, result)

    def _apply_settlement(
        self, pending: PendingMutation, spec: MutationSpec[T], result: Result[T]
    ) -> None:
        for identity in pending.targets:
            self._cache.end_mutation(identity)
        pending.result = result
        try:
            if isinstance(result, Ok):
                pending.status = MutationStatus.SUCCEEDED
                self._confirm(pending, spec, result)
                logger.info("mutation %s (%s) succeeded", pending.id, spec.kind.value)
            else:
                pending.status = MutationStatus.FAILED
                self._rollback(pending)
                logger.warning(
                    "mutation %s (%s) failed: %s %s",
                    pending.id,
                    spec.kind.value,
                    result.reason.value,
                    result.message,
                )
        finally:
            # Invalidation is the backstop against overlapping optimistic
            # patches, so it runs even if on_reconcile raised.
            for identity in pending.targets:
                self._cache.invalidate(identity)
            for prefix in spec.invalidates:
                self._cache.invalidate_matching(prefix)
            pending.settled = True

    def _confirm(
        self, pending: PendingMutation, spec: MutationSpec[T], result: Ok[T]
    ) -> None:
        current: Values = {}
        for identity in pending.targets:
            entry = self._cache.read(identity)
            current[identity] = entry.value if entry is not None else None
        corrected = spec.on_reconcile(result, current) if spec.on_reconcile else current
        for identity in pending.targets:
            if identity in corrected:
                self._cache.write(identity, corrected[identity], confirmed=True)

    def _rollback(self, pending: PendingMutation) -> None:
        for identity in pending.targets:
            if identity in pending.snapshot.missing:
                # Keep the entry: other mutations may still count on it
                self._cache.write(identity, None, confirmed=False)
            else:
                self._cache.write(
                    identity, pending.snapshot.values[identity], confirmed=True
                )

    def _run_hooks(
        self, pending: PendingMutation, spec: MutationSpec[T], result: Result[T]
    ) -> None:
        if isinstance(result, Ok):
            if spec.on_success is not None:
                spec.on_success(result.value)
        else:
            if result.requires_auth and self._on_unauthorized is not None:
                self._on_unauthorized(pending, result)
            if spec.on_error is not None:
                spec.on_error(result)
        if spec.on_settled is not None:
            spec.on_settled(result)


__all__ = [
    "MutationExecutor",
    "MutationHandle",
    "MutationSpec",
    "PendingMutation",
]
