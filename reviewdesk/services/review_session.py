"""
Review Session

Everything one detail screen owns for the record it displays: the entity,
its review queue, and (for notices and tasks) the comment thread, read
receipts, collaborators and realtime room membership.

Each open/switch bumps a generation counter. Async work captures the
generation it started under and drops its result when the session has moved
on, so a late response never lands on a different record.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Union

from reviewdesk.core.config import ReviewDeskConfig, get_config
from reviewdesk.core.models import (
    Action,
    Actor,
    Comment,
    EntityKind,
    EntityRef,
    NavigationTarget,
    ReadReceipt,
    ReviewableEntity,
    Scope,
)
from reviewdesk.integrations.base import Attachment, ReviewBackend
from reviewdesk.integrations.realtime import (
    COMMENT_READ_RECEIPT,
    NEW_COMMENT,
    RealtimeChannel,
    room_for,
)
from reviewdesk.services.api_cache import ApiCache
from reviewdesk.services.collaborators import CollaboratorRegistry
from reviewdesk.services.comment_stream import CommentStream, DayGroup, group_for_display
from reviewdesk.services.entity_resolver import EntityResolver, status_label
from reviewdesk.services.errors import (
    ReviewDeskError,
    TransitionInProgressError,
    ValidationError,
)
from reviewdesk.services.logging import log_error
from reviewdesk.services.optimistic import OptimisticValue
from reviewdesk.services.read_receipts import ReadReceiptTracker
from reviewdesk.services.review_queue import ReviewNavigator, ReviewQueue
from reviewdesk.services.status_machine import StatusMachine

logger = logging.getLogger(__name__)

THREAD_KINDS = (EntityKind.NOTICE, EntityKind.TASK)


@dataclass
class ActionOutcome:
    """Result of act(): the server's copy and where the reviewer goes next."""
    entity: ReviewableEntity
    next_target: NavigationTarget
    queue: Optional[ReviewQueue] = None
    stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity.to_dict(),
            "next_target": self.next_target.to_dict(),
            "queue": self.queue.to_dict() if self.queue is not None else None,
            "stale": self.stale,
        }


class ReviewSession:

    def __init__(
        self,
        kind: EntityKind,
        entity_id: str,
        actor: Actor,
        scope: Scope,
        backend: ReviewBackend,
        channel: Optional[RealtimeChannel] = None,
        config: Optional[ReviewDeskConfig] = None,
        cache: Optional[ApiCache] = None,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.kind = EntityKind(kind)
        self.entity_id = str(entity_id)
        self.actor = actor
        self.scope = scope
        self.backend = backend
        self.channel = channel
        self.config = config or get_config()
        self.cache = cache if cache is not None else ApiCache(ttl_seconds=self.config.api_cache_ttl_seconds)

        self.resolver = EntityResolver(backend, self.cache)
        self.machine = StatusMachine(backend, self.resolver)
        self.navigator = ReviewNavigator(backend, self.cache)
        self.collaborators = CollaboratorRegistry(self.kind, backend, self.resolver, scope)

        self.queue = ReviewQueue.empty(actor.role)
        self.comments: Optional[CommentStream] = None
        self.receipts: Optional[ReadReceiptTracker] = None
        self.is_status_updating = False
        self.closed = False

        self._entity: Optional[OptimisticValue[ReviewableEntity]] = None
        self._generation = 0
        self._room: Optional[str] = None

    # ==================== STATE ====================

    @property
    def generation(self) -> int:
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return not self.closed and generation == self._generation

    @property
    def entity(self) -> Optional[ReviewableEntity]:
        """What the screen shows, including an unconfirmed status change."""
        return self._entity.value if self._entity is not None else None

    @property
    def committed_entity(self) -> Optional[ReviewableEntity]:
        return self._entity.committed if self._entity is not None else None

    @property
    def has_thread(self) -> bool:
        return self.kind in THREAD_KINDS

    def allowed_actions(self) -> List[Action]:
        if self._entity is None or self.is_status_updating:
            return []
        return self.machine.allowed_actions(self._entity.committed, self.actor)

    def _require_entity(self) -> ReviewableEntity:
        if self._entity is None:
            raise ValidationError(f"No {self.kind.value} is open in this session")
        return self._entity.committed

    def _require_thread(self):
        if self.comments is None or self.receipts is None:
            raise ValidationError(f"A {self.kind.value} has no comment thread")
        return self.comments, self.receipts

    def to_dict(self) -> Dict[str, Any]:
        entity = self.entity
        return {
            "session_id": self.session_id,
            "kind": self.kind.value,
            "entity_id": self.entity_id,
            "entity": entity.to_dict() if entity else None,
            "status_label": status_label(self.kind, entity.status) if entity else None,
            "allowed_actions": [a.value for a in self.allowed_actions()],
            "queue": self.queue.to_dict(),
            "is_status_updating": self.is_status_updating,
            "collaborators": self.collaborators.members(self.entity_id),
            "comment_count": len(self.comments) if self.comments is not None else 0,
            "scope": self.scope.to_dict(),
        }

    # ==================== LIFETIME ====================

    async def open(self, initial: Optional[Dict[str, Any]] = None) -> Optional[ReviewableEntity]:
        """Load the record, its queue and, for notices and tasks, the thread."""
        generation = self._generation
        entity = await self.resolver.resolve(self.kind, self.entity_id, self.scope, initial=initial)
        if not self._is_current(generation):
            logger.debug(f"Dropping load of {self.kind.value} {self.entity_id}: session moved on")
            return None

        self._entity = OptimisticValue(entity)
        self.collaborators.load(entity.id, entity.collaborators)
        await self._refresh_queue(generation)

        if self.has_thread:
            await self._open_thread(generation)
        return entity

    async def _refresh_queue(self, generation: int, use_cache: bool = True) -> None:
        try:
            queue = await self.navigator.queue_for(
                self.kind, self.scope, self.actor.role, self.entity_id, use_cache=use_cache
            )
        except ReviewDeskError as e:
            log_error(
                "queue_fetch_failed",
                f"Could not load the {self.kind.value} queue",
                context={"kind": self.kind.value, "entity_id": self.scope.entity_id},
                exception=e,
                level=logging.WARNING,
            )
            queue = ReviewQueue.empty(self.actor.role)
        if self._is_current(generation):
            self.queue = queue

    async def _open_thread(self, generation: int) -> None:
        comments = CommentStream(
            self.kind,
            self.entity_id,
            self.actor.user_id,
            self.backend,
            poll_interval=self.config.comment_poll_interval_seconds,
            scope=self.scope,
        )
        receipts = ReadReceiptTracker(
            self.kind,
            self.entity_id,
            self.actor.user_id,
            self.backend,
            dwell_seconds=self.config.read_receipt_dwell_seconds,
            scope=self.scope,
        )
        comments.subscribe(receipts.track)
        comments.subscribe_refresh(receipts.track)
        self.comments, self.receipts = comments, receipts

        await comments.load()
        if not self._is_current(generation):
            await comments.stop()
            return
        comments.start_polling()

        if self.channel is not None:
            self._room = room_for(self.kind, self.entity_id)
            self.channel.on(NEW_COMMENT, self._on_new_comment, room=self._room)
            self.channel.on(COMMENT_READ_RECEIPT, self._on_read_receipt, room=self._room)
            await self.channel.join(self._room)

    def _on_new_comment(self, payload: Dict[str, Any]) -> None:
        if self.comments is not None and not self.closed:
            self.comments.on_push(payload)

    def _on_read_receipt(self, payload: Dict[str, Any]) -> None:
        if self.receipts is not None and not self.closed:
            self.receipts.on_push(payload)

    async def _teardown(self) -> None:
        self._generation += 1
        if self.comments is not None:
            await self.comments.stop()
        if self.receipts is not None:
            self.receipts.close()
        if self.channel is not None and self._room is not None:
            self.channel.off(NEW_COMMENT, self._on_new_comment, room=self._room)
            self.channel.off(COMMENT_READ_RECEIPT, self._on_read_receipt, room=self._room)
            await self.channel.leave(self._room)
        self._room = None
        self.comments = None
        self.receipts = None
        self.is_status_updating = False

    async def switch_to(
        self,
        entity_id: str,
        kind: Optional[Union[EntityKind, str]] = None,
        initial: Optional[Dict[str, Any]] = None,
    ) -> Optional[ReviewableEntity]:
        """Show another record in this session (queue navigation or fallback)."""
        await self._teardown()
        new_kind = EntityKind(kind) if kind is not None else self.kind
        if new_kind != self.kind:
            self.kind = new_kind
            self.collaborators = CollaboratorRegistry(self.kind, self.backend, self.resolver, self.scope)
        self.entity_id = str(entity_id)
        self._entity = None
        self.queue = ReviewQueue.empty(self.actor.role)
        return await self.open(initial)

    async def close(self) -> None:
        await self._teardown()
        self.closed = True
        logger.debug(f"Closed review session {self.session_id}")

    # ==================== ACTIONS ====================

    async def act(
        self,
        action: Union[Action, str],
        remarks: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> ActionOutcome:
        """
        Apply a review action.

        The status is shown optimistically, then replaced by the server's copy
        or rolled back if the transition fails. The next target is computed
        from the queue as it stood before the action.
        """
        entity = self._require_entity()
        if self.is_status_updating:
            raise TransitionInProgressError(self.kind.value, entity.id)
        rule = self.machine.plan(entity, action, self.actor, remarks)

        generation = self._generation
        optimistic = self._entity
        pre_action_queue = self.queue
        change = optimistic.apply(lambda e: replace(e, status=rule.to_status))

        self.is_status_updating = True
        try:
            updated = await self.machine.transition(
                entity, rule.action, self.actor, self.scope, remarks=remarks, extra=extra
            )
        except BaseException:
            # Cancellation must not leave the optimistic status on screen.
            optimistic.rollback(change)
            raise
        finally:
            if self._is_current(generation):
                self.is_status_updating = False

        optimistic.commit(change, updated)
        self.navigator.invalidate()
        if not self._is_current(generation):
            return ActionOutcome(entity=updated, next_target=NavigationTarget.done(), stale=True)

        next_target = await self.navigator.next_after_action(
            self.kind, pre_action_queue, entity.id, self.actor.role, self.scope
        )
        await self._refresh_queue(generation, use_cache=False)
        return ActionOutcome(entity=updated, next_target=next_target, queue=self.queue)

    def navigate(self, step: int) -> Optional[EntityRef]:
        """Neighbour in the current queue for the previous/next arrows."""
        return self.queue.neighbour(step)

    async def follow(self, target: NavigationTarget) -> Optional[ReviewableEntity]:
        """Switch to a navigation target; all-done targets leave the session as is."""
        if target.all_done or target.ref is None:
            return None
        return await self.switch_to(target.ref.id, kind=target.kind)

    # ==================== THREAD ====================

    def grouped_comments(self) -> List[DayGroup]:
        comments, _ = self._require_thread()
        return group_for_display(comments.ordered(), tz=self.config.viewer_timezone)

    async def send_comment(self, message: str, attachment: Optional[Attachment] = None) -> Comment:
        comments, _ = self._require_thread()
        return await comments.send(message, attachment)

    async def observe_visible(self, comment_ids: Iterable[str]) -> List[str]:
        _, receipts = self._require_thread()
        return await receipts.observe_visible(comment_ids)

    async def receipt_details(self, comment_id: str) -> List[ReadReceipt]:
        _, receipts = self._require_thread()
        return await receipts.receipt_details(comment_id)

    async def add_collaborator(self, user_id: Optional[str]) -> List[str]:
        entity = self._require_entity()
        return await self.collaborators.add(entity.id, user_id)

    async def remove_collaborator(self, user_id: str) -> bool:
        entity = self._require_entity()
        return await self.collaborators.remove(entity.id, user_id)
