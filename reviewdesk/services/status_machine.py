"""
Status Machine

Validates and executes review actions on invoices, vouchers, notices and tasks
against the role-indexed transition table.

plan() is pure and runs every local check (deletion, closure conflicts, role
gates, rejection remarks) before anything touches the network. transition()
persists through the backend and returns the server's canonical copy; the
caller's entity object is never modified.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from reviewdesk.core.models import (
    Action,
    Actor,
    CLOSURE_ACTIONS,
    ReviewableEntity,
    Role,
    Scope,
)
from reviewdesk.core.transitions import DEFAULT_TABLE, Transition, TransitionTable
from reviewdesk.integrations.base import ReviewBackend
from reviewdesk.services.entity_resolver import EntityResolver, normalize_entity
from reviewdesk.services.errors import (
    ConflictError,
    ErrorCode,
    NotPermittedError,
    TransitionError,
    TransitionInProgressError,
    ValidationError,
)
from reviewdesk.services.logging import log_transition

logger = logging.getLogger(__name__)


def effective_roles(entity: ReviewableEntity, actor: Actor) -> List[Role]:
    """Directory role first, then the relational roles the actor holds on this record."""
    roles = [actor.role]
    if entity.created_by and actor.user_id == entity.created_by:
        roles.append(Role.CREATOR)
    if entity.assigned_to and actor.user_id == entity.assigned_to:
        roles.append(Role.ASSIGNEE)
    return roles


def _coerce_action(action: Union[Action, str]) -> Action:
    try:
        return Action(action)
    except ValueError:
        raise ValidationError(f"Unknown action '{action}'", context={"action": str(action)})


class StatusMachine:
    """Executes transitions; at most one in flight per record."""

    def __init__(
        self,
        backend: ReviewBackend,
        resolver: Optional[EntityResolver] = None,
        table: TransitionTable = DEFAULT_TABLE,
    ):
        self.backend = backend
        self.resolver = resolver or EntityResolver(backend)
        self.table = table
        self._in_flight: Set[Tuple[str, str]] = set()

    def plan(
        self,
        entity: ReviewableEntity,
        action: Union[Action, str],
        actor: Actor,
        remarks: Optional[str] = None,
    ) -> Transition:
        """Resolve the transition for this actor, or raise without side effects."""
        action = _coerce_action(action)
        context = {"kind": entity.kind.value, "id": entity.id, "status": entity.status, "action": action.value}

        if entity.is_deleted:
            raise NotPermittedError(f"{entity.kind.value} {entity.id} has been deleted", context=context)

        pending_closure = entity.pending_closure_request()
        if action == Action.REQUEST_CLOSE and pending_closure is not None:
            raise ConflictError(
                "A closure request is already pending",
                code=ErrorCode.CLOSURE_PENDING,
                context={**context, "closure_request_id": pending_closure.id},
            )
        if action in (Action.APPROVE_CLOSE, Action.REJECT_CLOSE) and pending_closure is None:
            raise ConflictError(
                "There is no pending closure request to resolve",
                code=ErrorCode.CLOSURE_RESOLVED,
                context=context,
            )

        if entity.is_terminal:
            raise NotPermittedError(
                f"{entity.kind.value} {entity.id} is already {entity.status}", context=context
            )

        rule = None
        roles = effective_roles(entity, actor)
        for role in roles:
            rule = self.table.lookup(entity.kind, entity.status, role, action)
            if rule:
                break
        if rule is None:
            raise NotPermittedError(
                f"{actor.role.value} cannot {action.value} a {entity.kind.value} in status {entity.status}",
                context={**context, "roles": [r.value for r in roles]},
            )

        if rule.requires_remarks and not (remarks or "").strip():
            raise ValidationError(
                "Remarks are required to reject",
                code=ErrorCode.MISSING_REMARKS,
                context=context,
            )
        return rule

    def allowed_actions(self, entity: ReviewableEntity, actor: Actor) -> List[Action]:
        """Actions plan() would accept, given remarks where they are required."""
        allowed = []
        for action in Action:
            try:
                self.plan(entity, action, actor, remarks="-")
            except TransitionError:
                continue
            allowed.append(action)
        return allowed

    def is_in_flight(self, entity: ReviewableEntity) -> bool:
        return (entity.kind.value, entity.id) in self._in_flight

    async def transition(
        self,
        entity: ReviewableEntity,
        action: Union[Action, str],
        actor: Actor,
        scope: Scope,
        remarks: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> ReviewableEntity:
        key = (entity.kind.value, entity.id)
        if key in self._in_flight:
            raise TransitionInProgressError(entity.kind.value, entity.id)

        rule = self.plan(entity, action, actor, remarks)

        self._in_flight.add(key)
        try:
            payload = await self._persist(entity, rule, scope, remarks, extra)
        finally:
            self._in_flight.discard(key)

        updated = normalize_entity(entity.kind, payload, scope=scope)
        self.resolver.remember(updated, scope)
        log_transition(
            entity.kind.value,
            entity.id,
            rule.action.value,
            entity.status,
            updated.status,
            actor_id=actor.user_id,
        )
        return updated

    async def _persist(
        self,
        entity: ReviewableEntity,
        rule: Transition,
        scope: Scope,
        remarks: Optional[str],
        extra: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        clean_remarks = (remarks or "").strip()

        if rule.action in CLOSURE_ACTIONS:
            if rule.action == Action.REQUEST_CLOSE:
                await self.backend.request_closure(entity.kind, entity.id, scope, reason=clean_remarks)
            elif rule.action == Action.APPROVE_CLOSE:
                await self.backend.approve_closure(entity.kind, entity.id, scope)
            else:
                await self.backend.reject_closure(entity.kind, entity.id, scope, reason=clean_remarks)
            # Closure endpoints answer with the request, not the parent
            return await self.backend.fetch_entity(entity.kind, entity.id, scope)

        body: Dict[str, Any] = dict(extra or {})
        body["status"] = rule.to_status
        if rule.requires_remarks:
            body["status_remarks"] = clean_remarks
        if rule.action == Action.TAG:
            body.setdefault("is_ready", True)

        result = await self.backend.update_entity_status(entity.kind, entity.id, scope, body)
        if isinstance(result, dict) and result.get("id") is not None:
            return result
        logger.debug(f"No body from status update of {entity.kind.value} {entity.id}; refetching")
        return await self.backend.fetch_entity(entity.kind, entity.id, scope)
