"""
Collaborator Registry

Collaborator membership for notices and tasks. Nothing is applied
optimistically: the local set changes only after the server confirms, and
then it is refreshed from the parent record. Both operations are safe to
retry (adding a member twice is a recoverable conflict, removing a
non-member is a no-op).
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from reviewdesk.core.models import Collaborator, EntityKind, Scope
from reviewdesk.integrations.base import ReviewBackend
from reviewdesk.services.entity_resolver import EntityResolver
from reviewdesk.services.errors import (
    AlreadyExistsError,
    ConflictError,
    ErrorCode,
    NotFoundError,
    ReviewDeskError,
    ValidationError,
)
from reviewdesk.services.logging import log_error

logger = logging.getLogger(__name__)


class CollaboratorRegistry:

    def __init__(
        self,
        kind: EntityKind,
        backend: ReviewBackend,
        resolver: Optional[EntityResolver] = None,
        scope: Optional[Scope] = None,
    ):
        self.kind = kind
        self.backend = backend
        self.resolver = resolver or EntityResolver(backend)
        self.scope = scope
        self._members: Dict[str, List[str]] = {}

    def load(self, parent_id: str, user_ids: Iterable[str]) -> None:
        members: List[str] = []
        for user_id in user_ids:
            if str(user_id) not in members:
                members.append(str(user_id))
        self._members[str(parent_id)] = members

    def members(self, parent_id: str) -> List[str]:
        return list(self._members.get(str(parent_id), []))

    def collaborators(self, parent_id: str) -> List[Collaborator]:
        return [Collaborator(parent_id=str(parent_id), user_id=u) for u in self.members(parent_id)]

    def is_member(self, parent_id: str, user_id: str) -> bool:
        return str(user_id) in self._members.get(str(parent_id), [])

    async def add(self, parent_id: str, user_id: Optional[str]) -> List[str]:
        parent_id = str(parent_id)
        if user_id is None or not str(user_id).strip():
            raise ValidationError("No collaborator selected", code=ErrorCode.MISSING_COLLABORATOR)
        user_id = str(user_id).strip()
        if self.is_member(parent_id, user_id):
            raise AlreadyExistsError(
                f"User {user_id} is already a collaborator",
                context={"kind": self.kind.value, "parent_id": parent_id, "user_id": user_id},
            )

        try:
            await self.backend.add_collaborator(self.kind, parent_id, user_id, scope=self.scope)
        except ConflictError:
            logger.info(f"Server reports {user_id} already on {self.kind.value} {parent_id}; refreshing")
            await self.refresh(parent_id)
            raise

        self._members.setdefault(parent_id, []).append(user_id)
        await self.refresh(parent_id)
        return self.members(parent_id)

    async def remove(self, parent_id: str, user_id: str) -> bool:
        """Returns False when the user was not a collaborator (nothing is sent)."""
        parent_id = str(parent_id)
        user_id = str(user_id)
        if not self.is_member(parent_id, user_id):
            return False

        try:
            await self.backend.remove_collaborator(self.kind, parent_id, user_id, scope=self.scope)
        except NotFoundError:
            logger.info(f"Collaborator {user_id} already gone from {self.kind.value} {parent_id}")

        self._members[parent_id] = [u for u in self._members.get(parent_id, []) if u != user_id]
        await self.refresh(parent_id)
        return True

    async def refresh(self, parent_id: str) -> None:
        """Reload membership from the parent record; keeps the local set when that fails."""
        if self.scope is None:
            return
        try:
            entity = await self.resolver.resolve(self.kind, parent_id, self.scope, use_cache=False)
        except ReviewDeskError as e:
            log_error(
                "collaborator_refresh_failed",
                f"Could not refresh collaborators for {self.kind.value} {parent_id}",
                context={"kind": self.kind.value, "parent_id": parent_id},
                exception=e,
                level=logging.WARNING,
            )
            return
        if "collaborators" not in entity.raw:
            return
        self.load(parent_id, entity.collaborators)
