"""Backend interface consumed by the review engine."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from reviewdesk.core.models import EntityKind, Role, Scope


@dataclass(frozen=True)
class Attachment:
    """A file sent alongside a comment."""
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class ReviewBackend(ABC):
    """
    Opaque services the engine calls. Implementations return raw payloads
    (dicts as the server sends them); the engine normalizes them.

    Errors are raised as ReviewDeskError subclasses: NotFoundError,
    ConflictError, NotPermittedError, ValidationError, TransientNetworkError.
    """

    @abstractmethod
    async def fetch_entity(self, kind: EntityKind, entity_id: str, scope: Scope) -> Dict[str, Any]:
        """Fetch the authoritative record."""

    @abstractmethod
    async def update_entity_status(
        self,
        kind: EntityKind,
        entity_id: str,
        scope: Scope,
        payload: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Persist {status, status_remarks?, ...}; returns the updated record when the server sends one."""

    @abstractmethod
    async def fetch_sibling_list(self, kind: EntityKind, scope: Scope, role: Role) -> List[Dict[str, Any]]:
        """List records of one kind for a single concrete scope, as visible to role."""

    @abstractmethod
    async def fetch_comments(
        self, kind: EntityKind, parent_id: str, *, scope: Optional[Scope] = None
    ) -> List[Dict[str, Any]]:
        """Full comment list of a thread."""

    @abstractmethod
    async def send_comment(
        self,
        kind: EntityKind,
        parent_id: str,
        message: str,
        attachment: Optional[Attachment] = None,
        *,
        scope: Optional[Scope] = None,
    ) -> Dict[str, Any]:
        """Post a comment; returns the stored comment."""

    @abstractmethod
    async def fetch_read_receipts(
        self, kind: EntityKind, parent_id: str, comment_id: str, *, scope: Optional[Scope] = None
    ) -> List[Dict[str, Any]]:
        """Full receipt details for one comment."""

    @abstractmethod
    async def mark_comment_read(
        self, kind: EntityKind, parent_id: str, comment_id: str, *, scope: Optional[Scope] = None
    ) -> None:
        """Record that the calling user read a comment."""

    @abstractmethod
    async def add_collaborator(
        self, kind: EntityKind, parent_id: str, user_id: str, *, scope: Optional[Scope] = None
    ) -> None:
        """Add a collaborator to a notice or task."""

    @abstractmethod
    async def remove_collaborator(
        self, kind: EntityKind, parent_id: str, user_id: str, *, scope: Optional[Scope] = None
    ) -> None:
        """Remove a collaborator from a notice or task."""

    @abstractmethod
    async def request_closure(
        self, kind: EntityKind, parent_id: str, scope: Scope, reason: str = ""
    ) -> Optional[Dict[str, Any]]:
        """Open a closure request."""

    @abstractmethod
    async def approve_closure(self, kind: EntityKind, parent_id: str, scope: Scope) -> Optional[Dict[str, Any]]:
        """Approve the pending closure request."""

    @abstractmethod
    async def reject_closure(
        self, kind: EntityKind, parent_id: str, scope: Scope, reason: str
    ) -> Optional[Dict[str, Any]]:
        """Reject the pending closure request."""
