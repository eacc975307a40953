"""
Review Queue

Sequential review over sibling records: which items are pending for the
acting role, where the current item sits, and where the reviewer goes after
acting on it.

- Pure queue functions (filter_pending, position_of, advance)
- ReviewQueue value object for the detail screen's previous/next arrows
- ReviewNavigator for sibling fetches and the auto-advance contract,
  including the invoice/voucher fallback before "all done"
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import List, Optional, Sequence, Tuple

from reviewdesk.core.models import (
    CA_ROLES,
    CLOSURE_REQUESTED,
    EntityKind,
    EntityRef,
    NavigationTarget,
    OPEN,
    PENDING_CA_APPROVAL,
    PENDING_MASTER_ADMIN_APPROVAL,
    Role,
    Scope,
)
from reviewdesk.integrations.base import ReviewBackend
from reviewdesk.services.api_cache import ApiCache
from reviewdesk.services.entity_resolver import normalize_refs
from reviewdesk.services.errors import ReviewDeskError
from reviewdesk.services.logging import log_error

logger = logging.getLogger(__name__)

WORK_ITEM_OPEN_STATUSES = frozenset({OPEN, CLOSURE_REQUESTED})

FALLBACK_KIND = {
    EntityKind.INVOICE: EntityKind.VOUCHER,
    EntityKind.VOUCHER: EntityKind.INVOICE,
}


def pending_status_for_role(role: Role) -> Optional[str]:
    """The finance status a role reviews, or None when the role has no review queue."""
    if role in CA_ROLES:
        return PENDING_CA_APPROVAL
    if role == Role.CLIENT_MASTER_ADMIN:
        return PENDING_MASTER_ADMIN_APPROVAL
    return None


def is_pending_for(ref: EntityRef, role: Role) -> bool:
    if ref.is_deleted:
        return False
    if ref.kind in (EntityKind.NOTICE, EntityKind.TASK):
        return ref.status in WORK_ITEM_OPEN_STATUSES
    target = pending_status_for_role(role)
    return target is not None and ref.status == target


def filter_pending(items: Sequence[EntityRef], role: Role) -> List[EntityRef]:
    return [ref for ref in items if is_pending_for(ref, role)]


def position_of(items: Sequence[EntityRef], current_id: Optional[str]) -> int:
    if current_id is None:
        return -1
    current = str(current_id)
    for index, ref in enumerate(items):
        if str(ref.id) == current:
            return index
    return -1


def advance(items: Sequence[EntityRef], index: int, step: int = 1) -> Optional[EntityRef]:
    """Item at index+step of the pre-action list, or None when out of range."""
    if index < 0:
        return None
    target = index + step
    if 0 <= target < len(items):
        return items[target]
    return None


QueueSignature = Tuple[Tuple[str, str, bool], ...]


def _signature(items: Sequence[EntityRef]) -> QueueSignature:
    return tuple((str(ref.id), ref.status, ref.is_deleted) for ref in items)


@lru_cache(maxsize=256)
def _pending_layout(
    signature: QueueSignature,
    kinds: Tuple[EntityKind, ...],
    role: Role,
    current_id: Optional[str],
) -> Tuple[Tuple[int, ...], int]:
    positions = []
    for offset, ((item_id, status, is_deleted), kind) in enumerate(zip(signature, kinds)):
        if is_pending_for(EntityRef(id=item_id, kind=kind, status=status, is_deleted=is_deleted), role):
            positions.append(offset)
    current_index = -1
    if current_id is not None:
        for index, offset in enumerate(positions):
            if signature[offset][0] == current_id:
                current_index = index
                break
    return tuple(positions), current_index


@dataclass(frozen=True)
class ReviewQueue:
    items: Tuple[EntityRef, ...]
    role: Role
    current_id: Optional[str] = None
    current_index: int = -1

    @classmethod
    def build(cls, items: Sequence[EntityRef], role: Role, current_id: Optional[str] = None) -> "ReviewQueue":
        items = list(items)
        current = str(current_id) if current_id is not None else None
        positions, current_index = _pending_layout(
            _signature(items), tuple(ref.kind for ref in items), role, current
        )
        return cls(
            items=tuple(items[offset] for offset in positions),
            role=role,
            current_id=current,
            current_index=current_index,
        )

    @classmethod
    def empty(cls, role: Role) -> "ReviewQueue":
        return cls(items=(), role=role)

    @property
    def has_navigation(self) -> bool:
        return len(self.items) > 1

    def neighbour(self, step: int) -> Optional[EntityRef]:
        return advance(self.items, self.current_index, step)

    def __len__(self) -> int:
        return len(self.items)

    def to_dict(self):
        return {
            "items": [ref.to_dict() for ref in self.items],
            "current_index": self.current_index,
            "has_navigation": self.has_navigation,
        }


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _newest_first(refs: List[EntityRef]) -> List[EntityRef]:
    return sorted(refs, key=lambda ref: ref.created_at or _EPOCH, reverse=True)


class ReviewNavigator:
    """Sibling lists (read-through cached) and the post-action navigation decision."""

    SIBLINGS_ENDPOINT = "siblings"

    def __init__(self, backend: ReviewBackend, cache: Optional[ApiCache] = None):
        self.backend = backend
        self.cache = cache if cache is not None else ApiCache()

    async def sibling_refs(
        self,
        kind: EntityKind,
        scope: Scope,
        role: Role,
        use_cache: bool = True,
    ) -> List[EntityRef]:
        refs: List[EntityRef] = []
        for concrete in scope.expand():
            params = {"kind": kind.value, "entity_id": concrete.entity_id, "role": role.value}
            payloads = self.cache.get(self.SIBLINGS_ENDPOINT, params) if use_cache else None
            if payloads is None:
                payloads = await self.backend.fetch_sibling_list(kind, concrete, role)
                self.cache.set(self.SIBLINGS_ENDPOINT, params, payloads)
            refs.extend(normalize_refs(kind, payloads))
        if scope.is_all:
            refs = _newest_first(refs)
        return refs

    def invalidate(self) -> int:
        return self.cache.invalidate(self.SIBLINGS_ENDPOINT)

    async def queue_for(
        self,
        kind: EntityKind,
        scope: Scope,
        role: Role,
        current_id: Optional[str] = None,
        use_cache: bool = True,
    ) -> ReviewQueue:
        refs = await self.sibling_refs(kind, scope, role, use_cache=use_cache)
        return ReviewQueue.build(refs, role, current_id)

    async def next_after_action(
        self,
        kind: EntityKind,
        pre_action_queue: ReviewQueue,
        current_id: str,
        role: Role,
        scope: Scope,
    ) -> NavigationTarget:
        """
        Where to go after acting on current_id.

        The next item comes from the queue as it was before the action. If the
        acted-on item was not in that queue, the queue is rebuilt from a fresh
        sibling list instead. An exhausted invoice queue falls back to
        vouchers for the same scope (and vice versa) before reporting all done.
        """
        items = pre_action_queue.items
        index = position_of(items, current_id)
        if index >= 0:
            next_ref = advance(items, index)
            if next_ref is not None:
                return NavigationTarget.to(next_ref)
        else:
            fresh = await self._pending_or_empty(kind, scope, role)
            remaining = [ref for ref in fresh if ref.id != str(current_id)]
            if remaining:
                return NavigationTarget.to(remaining[0])

        fallback = FALLBACK_KIND.get(kind)
        if fallback is not None:
            candidates = await self._pending_or_empty(fallback, scope, role)
            if candidates:
                logger.info(f"No pending {kind.value}s left; moving on to {fallback.value}s")
                return NavigationTarget.to(candidates[0], is_fallback=True)
        return NavigationTarget.done()

    async def _pending_or_empty(self, kind: EntityKind, scope: Scope, role: Role) -> List[EntityRef]:
        try:
            refs = await self.sibling_refs(kind, scope, role, use_cache=False)
        except ReviewDeskError as e:
            log_error(
                "queue_fetch_failed",
                f"Could not load {kind.value} queue; treating it as empty",
                context={"kind": kind.value, "entity_id": scope.entity_id},
                exception=e,
                level=logging.WARNING,
            )
            return []
        return filter_pending(refs, role)
