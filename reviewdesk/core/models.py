"""
Review Desk Core Data Models

Canonical shapes for everything the review engine touches: reviewable records
(invoices, vouchers, notices, tasks), closure requests, comments and read receipts.
Server payloads are normalized into these by the EntityResolver and the comment/receipt
parsers below; nothing else in the engine reads raw payloads.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple
from dataclasses import dataclass, field, asdict


class EntityKind(str, Enum):
    """Kinds of record that go through review."""
    INVOICE = "invoice"
    VOUCHER = "voucher"
    NOTICE = "notice"
    TASK = "task"


class Role(str, Enum):
    """Actor roles. CREATOR and ASSIGNEE are derived per record, never stored on a user."""
    CA_ACCOUNTANT = "CA_ACCOUNTANT"
    CA_TEAM = "CA_TEAM"
    CLIENT_MASTER_ADMIN = "CLIENT_MASTER_ADMIN"
    CLIENT_USER = "CLIENT_USER"
    CREATOR = "CREATOR"
    ASSIGNEE = "ASSIGNEE"


CA_ROLES = frozenset({Role.CA_ACCOUNTANT, Role.CA_TEAM})
CLIENT_ROLES = frozenset({Role.CLIENT_MASTER_ADMIN, Role.CLIENT_USER})


class Action(str, Enum):
    """Closed set of review actions."""
    APPROVE = "approve"
    REJECT = "reject"
    TAG = "tag"
    REQUEST_CLOSE = "request_close"
    APPROVE_CLOSE = "approve_close"
    REJECT_CLOSE = "reject_close"
    RESUBMIT = "resubmit"


CLOSURE_ACTIONS = frozenset({Action.REQUEST_CLOSE, Action.APPROVE_CLOSE, Action.REJECT_CLOSE})


class ClosureStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# Status vocabularies
PENDING_MASTER_ADMIN_APPROVAL = "pending_master_admin_approval"
REJECTED_BY_MASTER_ADMIN = "rejected_by_master_admin"
PENDING_CA_APPROVAL = "pending_ca_approval"
REJECTED_BY_CA = "rejected_by_ca"
VERIFIED = "verified"

OPEN = "open"
CLOSURE_REQUESTED = "closure_requested"
CLOSED = "closed"

DELETED = "deleted"

FINANCE_STATUSES = frozenset({
    PENDING_MASTER_ADMIN_APPROVAL,
    REJECTED_BY_MASTER_ADMIN,
    PENDING_CA_APPROVAL,
    REJECTED_BY_CA,
    VERIFIED,
})

WORK_ITEM_STATUSES = frozenset({OPEN, CLOSURE_REQUESTED, CLOSED})

STATUSES_BY_KIND: Dict[EntityKind, frozenset] = {
    EntityKind.INVOICE: FINANCE_STATUSES,
    EntityKind.VOUCHER: FINANCE_STATUSES,
    EntityKind.NOTICE: WORK_ITEM_STATUSES,
    EntityKind.TASK: WORK_ITEM_STATUSES,
}

TERMINAL_STATUSES = frozenset({VERIFIED, CLOSED, DELETED})
REJECTION_STATUSES = frozenset({REJECTED_BY_MASTER_ADMIN, REJECTED_BY_CA})


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an API timestamp. Naive values are UTC, as the finance API emits them."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value).strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Actor:
    """The user acting on a screen."""
    user_id: str
    role: Role

    def __post_init__(self):
        object.__setattr__(self, "user_id", str(self.user_id))
        object.__setattr__(self, "role", Role(self.role))


@dataclass(frozen=True)
class Scope:
    """
    Ownership scope threaded through every backend call.

    entity_id == "all" is the multi-entity CA view; entity_ids then lists
    the concrete entities to expand into.
    """
    entity_id: str
    agency_id: Optional[str] = None
    entity_ids: Tuple[str, ...] = ()

    ALL = "all"

    def __post_init__(self):
        object.__setattr__(self, "entity_id", str(self.entity_id))
        object.__setattr__(self, "entity_ids", tuple(str(e) for e in self.entity_ids))

    @property
    def is_all(self) -> bool:
        return self.entity_id == self.ALL

    def expand(self) -> List["Scope"]:
        """Concrete single-entity scopes."""
        if not self.is_all:
            return [self]
        return [Scope(entity_id=e, agency_id=self.agency_id) for e in self.entity_ids]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "agency_id": self.agency_id,
            "entity_ids": list(self.entity_ids),
        }


@dataclass
class ClosureRequest:
    """Proposal by an assignee to close a task or notice."""
    id: str
    parent_id: str
    requested_by: str
    reason: str = ""
    status: ClosureStatus = ClosureStatus.PENDING
    resolved_by: Optional[str] = None
    resolution_remarks: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == ClosureStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = _iso(self.created_at)
        return data


@dataclass
class ReviewableEntity:
    """An invoice, voucher, notice or task in canonical form."""
    id: str
    kind: EntityKind
    status: str
    status_remarks: Optional[str] = None
    entity_id: Optional[str] = None
    organisation_id: Optional[str] = None
    created_by: Optional[str] = None
    assigned_to: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_deleted: bool = False
    collaborators: List[str] = field(default_factory=list)
    closure_requests: List[ClosureRequest] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.is_deleted or self.status in TERMINAL_STATUSES

    @property
    def is_rejected(self) -> bool:
        return self.status in REJECTION_STATUSES

    def pending_closure_request(self) -> Optional[ClosureRequest]:
        for request in self.closure_requests:
            if request.is_pending:
                return request
        return None

    def ref(self) -> "EntityRef":
        return EntityRef(
            id=self.id,
            kind=self.kind,
            status=self.status,
            is_deleted=self.is_deleted,
            created_at=self.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status,
            "status_remarks": self.status_remarks,
            "entity_id": self.entity_id,
            "organisation_id": self.organisation_id,
            "created_by": self.created_by,
            "assigned_to": self.assigned_to,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "is_deleted": self.is_deleted,
            "collaborators": list(self.collaborators),
            "closure_requests": [c.to_dict() for c in self.closure_requests],
        }


@dataclass(frozen=True)
class EntityRef:
    """List-item projection of a record, enough to build a review queue."""
    id: str
    kind: EntityKind
    status: str
    is_deleted: bool = False
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status,
            "is_deleted": self.is_deleted,
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class ReadReceipt:
    """One user's read of one comment."""
    comment_id: str
    user_id: str
    read_at: Optional[datetime] = None
    user_name: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.comment_id, self.user_id)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], comment_id: Optional[str] = None) -> "ReadReceipt":
        user = payload.get("user") if isinstance(payload.get("user"), dict) else {}
        return cls(
            comment_id=str(payload.get("comment_id") or comment_id),
            user_id=str(payload.get("user_id") or user.get("id")),
            read_at=parse_timestamp(payload.get("read_at") or payload.get("created_at")),
            user_name=payload.get("user_name") or user.get("name"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "comment_id": self.comment_id,
            "user_id": self.user_id,
            "read_at": _iso(self.read_at),
            "user_name": self.user_name,
        }


@dataclass(frozen=True)
class Comment:
    """A message in a notice or task discussion thread."""
    id: str
    parent_id: str
    user_id: str
    message: str = ""
    created_at: Optional[datetime] = None
    attachment_url: Optional[str] = None
    user_name: Optional[str] = None
    read_receipts: Tuple[ReadReceipt, ...] = ()

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], parent_id: Optional[str] = None) -> "Comment":
        comment_id = str(payload["id"])
        user = payload.get("user") if isinstance(payload.get("user"), dict) else {}
        receipts = tuple(
            ReadReceipt.from_payload(r, comment_id=comment_id)
            for r in (payload.get("read_receipts") or payload.get("reads") or [])
            if isinstance(r, dict)
        )
        parent = (
            payload.get("parent_id")
            or payload.get("notice_id")
            or payload.get("task_id")
            or parent_id
        )
        return cls(
            id=comment_id,
            parent_id=str(parent) if parent is not None else "",
            user_id=str(payload.get("user_id") or user.get("id")),
            message=payload.get("message") or "",
            created_at=parse_timestamp(payload.get("created_at")),
            attachment_url=payload.get("attachment_url") or payload.get("file_url"),
            user_name=payload.get("user_name") or user.get("name"),
            read_receipts=receipts,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "message": self.message,
            "attachment_url": self.attachment_url,
            "created_at": _iso(self.created_at),
            "read_receipts": [r.to_dict() for r in self.read_receipts],
        }


@dataclass(frozen=True)
class Collaborator:
    parent_id: str
    user_id: str


@dataclass(frozen=True)
class NavigationTarget:
    """Where a reviewer goes next: another record, or the terminal all-done state."""
    kind: Optional[EntityKind] = None
    ref: Optional[EntityRef] = None
    all_done: bool = False
    is_fallback: bool = False

    @classmethod
    def done(cls) -> "NavigationTarget":
        return cls(all_done=True)

    @classmethod
    def to(cls, ref: EntityRef, is_fallback: bool = False) -> "NavigationTarget":
        return cls(kind=ref.kind, ref=ref, is_fallback=is_fallback)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value if self.kind else None,
            "ref": self.ref.to_dict() if self.ref else None,
            "all_done": self.all_done,
            "is_fallback": self.is_fallback,
        }
