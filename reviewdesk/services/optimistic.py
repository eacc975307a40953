"""
Two-phase optimistic updates.

apply() changes what the screen shows and returns a handle; the handle is then
either committed with the server's copy or rolled back to the pre-attempt value.
"""
from __future__ import annotations

import copy
import itertools
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

from reviewdesk.services.errors import ConflictError, ErrorCode

T = TypeVar("T")

_handle_ids = itertools.count(1)


@dataclass(frozen=True)
class PendingChange(Generic[T]):
    handle_id: int
    snapshot: T
    draft: T


class OptimisticValue(Generic[T]):
    """A committed value plus the optimistic changes layered over it."""

    def __init__(self, committed: T):
        self._committed = committed
        self._value = committed
        self._pending: Dict[int, PendingChange[T]] = {}

    @property
    def value(self) -> T:
        """What the user sees, including unconfirmed changes."""
        return self._value

    @property
    def committed(self) -> T:
        """Last server-confirmed value."""
        return self._committed

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def apply(self, mutator: Callable[[T], T]) -> PendingChange[T]:
        snapshot = self._value
        draft = mutator(copy.deepcopy(snapshot))
        change = PendingChange(handle_id=next(_handle_ids), snapshot=snapshot, draft=draft)
        self._pending[change.handle_id] = change
        self._value = draft
        return change

    def commit(self, change: PendingChange[T], server_value: Optional[T] = None) -> T:
        self._take(change)
        confirmed = server_value if server_value is not None else change.draft
        self._committed = confirmed
        self._value = confirmed
        return confirmed

    def rollback(self, change: PendingChange[T]) -> T:
        self._take(change)
        self._value = change.snapshot
        return self._value

    def reset(self, committed: T) -> None:
        """Replace everything with a freshly loaded value."""
        self._pending.clear()
        self._committed = committed
        self._value = committed

    def _take(self, change: PendingChange[T]) -> None:
        if self._pending.pop(change.handle_id, None) is None:
            raise ConflictError(
                "Optimistic change is no longer pending",
                code=ErrorCode.STALE_UPDATE,
                context={"handle_id": change.handle_id},
            )
