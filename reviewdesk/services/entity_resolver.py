"""
Entity Resolver

Loads the authoritative record for a detail screen and normalizes the shapes
the finance and task APIs return (list items, full objects, legacy statuses)
into one ReviewableEntity.

Missing records follow an explicit per-resource policy: reviewable records are
STRICT (a 404 is a hard failure), profile-like resources are CREATE_ON_MISSING
(a 404 means "not created yet" and resolves to None).
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from reviewdesk.core.models import (
    CLOSED,
    CLOSURE_REQUESTED,
    ClosureRequest,
    ClosureStatus,
    DELETED,
    EntityKind,
    EntityRef,
    OPEN,
    PENDING_CA_APPROVAL,
    PENDING_MASTER_ADMIN_APPROVAL,
    REJECTED_BY_CA,
    REJECTED_BY_MASTER_ADMIN,
    REJECTION_STATUSES,
    ReviewableEntity,
    STATUSES_BY_KIND,
    Scope,
    VERIFIED,
    parse_timestamp,
)
from reviewdesk.integrations.base import ReviewBackend
from reviewdesk.services.api_cache import ApiCache
from reviewdesk.services.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class MissingRecordPolicy(str, Enum):
    STRICT = "strict"
    CREATE_ON_MISSING = "create_on_missing"


MISSING_RECORD_POLICY: Dict[str, MissingRecordPolicy] = {
    EntityKind.INVOICE.value: MissingRecordPolicy.STRICT,
    EntityKind.VOUCHER.value: MissingRecordPolicy.STRICT,
    EntityKind.NOTICE.value: MissingRecordPolicy.STRICT,
    EntityKind.TASK.value: MissingRecordPolicy.STRICT,
    "company_profile": MissingRecordPolicy.CREATE_ON_MISSING,
    "organisation_profile": MissingRecordPolicy.CREATE_ON_MISSING,
}


def missing_record_policy(resource: Union[str, EntityKind]) -> MissingRecordPolicy:
    name = resource.value if isinstance(resource, EntityKind) else str(resource)
    return MISSING_RECORD_POLICY.get(name, MissingRecordPolicy.STRICT)


LEGACY_FINANCE_STATUSES = {
    "created": PENDING_MASTER_ADMIN_APPROVAL,
    "pending_approval": PENDING_MASTER_ADMIN_APPROVAL,
    "rejected_by_admin": REJECTED_BY_MASTER_ADMIN,
    "approved": PENDING_CA_APPROVAL,
    "rejected": REJECTED_BY_CA,
}

LEGACY_WORK_ITEM_STATUSES = {
    "todo": OPEN,
    "to_do": OPEN,
    "in_progress": OPEN,
    "pending": OPEN,
    "completed": CLOSED,
    "done": CLOSED,
}

STATUS_LABELS = {
    PENDING_MASTER_ADMIN_APPROVAL: "Pending Client Approval",
    REJECTED_BY_MASTER_ADMIN: "Rejected by Client",
    PENDING_CA_APPROVAL: "Pending Verification",
    REJECTED_BY_CA: "Rejected",
    VERIFIED: "Verified",
    OPEN: "Open",
    CLOSURE_REQUESTED: "Closure Requested",
    CLOSED: "Closed",
    DELETED: "Deleted",
}


def status_label(kind: EntityKind, status: Optional[str]) -> str:
    """Human label for a status, as the portal badges show it."""
    if not status:
        return "Unknown"
    if kind == EntityKind.VOUCHER and status == PENDING_CA_APPROVAL:
        return "Pending Audit"
    if status in STATUS_LABELS:
        return STATUS_LABELS[status]
    return status.replace("_", " ").title()


def normalize_status(kind: EntityKind, raw_status: Any) -> str:
    """Map a server status (current or legacy) onto the kind's vocabulary."""
    if kind in (EntityKind.INVOICE, EntityKind.VOUCHER):
        if not raw_status:
            return PENDING_MASTER_ADMIN_APPROVAL
        status = str(raw_status).strip().lower()
        status = LEGACY_FINANCE_STATUSES.get(status, status)
    else:
        if not raw_status:
            return OPEN
        status = str(raw_status).strip().lower().replace(" ", "_").replace("-", "_")
        status = LEGACY_WORK_ITEM_STATUSES.get(status, status)

    if status == DELETED:
        return status
    if status not in STATUSES_BY_KIND[kind]:
        raise ValidationError(
            f"Unknown {kind.value} status '{raw_status}'",
            context={"kind": kind.value, "status": str(raw_status)},
        )
    return status


def _id_of(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        inner = value.get("id") or value.get("user_id")
        return str(inner) if inner is not None else None
    return str(value)


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def _normalize_closure_status(raw: Any) -> ClosureStatus:
    value = str(raw or "pending").strip().lower()
    if value in ("approved", "accepted"):
        return ClosureStatus.APPROVED
    if value in ("rejected", "declined"):
        return ClosureStatus.REJECTED
    return ClosureStatus.PENDING


def normalize_closure_request(payload: Dict[str, Any], parent_id: str) -> ClosureRequest:
    return ClosureRequest(
        id=str(_first(payload, "id") or f"{parent_id}-closure"),
        parent_id=str(_first(payload, "parent_id", "notice_id", "task_id") or parent_id),
        requested_by=_id_of(_first(payload, "requested_by", "requested_by_id", "user_id")) or "",
        reason=payload.get("reason") or "",
        status=_normalize_closure_status(payload.get("status")),
        resolved_by=_id_of(_first(payload, "resolved_by", "resolved_by_id")),
        resolution_remarks=_first(payload, "resolution_remarks", "rejection_reason", "remarks"),
        created_at=parse_timestamp(_first(payload, "created_at", "requested_at")),
    )


def _collaborator_ids(raw: Any) -> List[str]:
    ids: List[str] = []
    for item in raw or []:
        user_id = _id_of(item.get("user_id") or item.get("id")) if isinstance(item, dict) else _id_of(item)
        if user_id and user_id not in ids:
            ids.append(user_id)
    return ids


def normalize_entity(
    kind: EntityKind,
    payload: Dict[str, Any],
    scope: Optional[Scope] = None,
    initial: Optional[Dict[str, Any]] = None,
) -> ReviewableEntity:
    """Build the canonical entity from a full payload, optionally backfilled from a list item."""
    merged: Dict[str, Any] = {**(initial or {}), **(payload or {})}
    if merged.get("id") is None:
        raise ValidationError(f"{kind.value} payload has no id", context={"kind": kind.value})
    entity_pk = str(merged["id"])

    status = normalize_status(kind, merged.get("status"))
    is_deleted = bool(merged.get("is_deleted")) or status == DELETED

    closure_payloads = merged.get("closure_requests")
    if closure_payloads is None and isinstance(merged.get("closure_request"), dict):
        closure_payloads = [merged["closure_request"]]
    closure_requests = [
        normalize_closure_request(c, entity_pk) for c in (closure_payloads or []) if isinstance(c, dict)
    ]

    if kind in (EntityKind.NOTICE, EntityKind.TASK):
        has_pending = any(c.is_pending for c in closure_requests)
        if has_pending and status == OPEN:
            status = CLOSURE_REQUESTED
        elif status == CLOSURE_REQUESTED and not has_pending:
            closure_requests.append(ClosureRequest(
                id=f"{entity_pk}-closure",
                parent_id=entity_pk,
                requested_by=_id_of(_first(merged, "assigned_to", "assignee_id", "assignee")) or "",
            ))

    beneficiary = merged.get("beneficiary") if isinstance(merged.get("beneficiary"), dict) else {}
    entity_id = _first(merged, "entity_id")
    if entity_id is None and scope is not None and not scope.is_all:
        entity_id = scope.entity_id

    remarks = merged.get("status_remarks")
    return ReviewableEntity(
        id=entity_pk,
        kind=kind,
        status=status,
        status_remarks=remarks if status in REJECTION_STATUSES else None,
        entity_id=str(entity_id) if entity_id is not None else None,
        organisation_id=_id_of(
            _first(merged, "organisation_id", "organization_id") or beneficiary.get("organization_id")
        ),
        created_by=_id_of(_first(merged, "created_by", "created_by_id", "creator")),
        assigned_to=_id_of(_first(merged, "assigned_to", "assignee_id", "assignee", "beneficiary_id")),
        created_at=parse_timestamp(_first(merged, "created_at", "created_date", "date")),
        updated_at=parse_timestamp(_first(merged, "updated_at", "updated_date")),
        is_deleted=is_deleted,
        collaborators=_collaborator_ids(merged.get("collaborators")),
        closure_requests=closure_requests,
        raw=merged,
    )


def normalize_ref(kind: EntityKind, payload: Dict[str, Any]) -> EntityRef:
    """List-item projection; tolerant of statuses the queue does not care about."""
    try:
        status = normalize_status(kind, payload.get("status"))
    except ValidationError:
        status = str(payload.get("status"))
    return EntityRef(
        id=str(payload["id"]),
        kind=kind,
        status=status,
        is_deleted=bool(payload.get("is_deleted")) or status == DELETED,
        created_at=parse_timestamp(_first(payload, "created_at", "created_date", "date")),
    )


def normalize_refs(kind: EntityKind, payloads: Iterable[Dict[str, Any]]) -> List[EntityRef]:
    refs = []
    for payload in payloads or []:
        if isinstance(payload, dict) and payload.get("id") is not None:
            refs.append(normalize_ref(kind, payload))
    return refs


class EntityResolver:
    """Fetches and normalizes records, with a read-through cache keyed by id."""

    ENDPOINT = "entity"

    def __init__(self, backend: ReviewBackend, cache: Optional[ApiCache] = None):
        self.backend = backend
        self.cache = cache if cache is not None else ApiCache()

    @classmethod
    def cache_params(cls, kind: EntityKind, entity_id: str, scope: Scope) -> Dict[str, Any]:
        return {"kind": kind.value, "id": str(entity_id), "entity_id": scope.entity_id}

    async def fetch_with_policy(
        self,
        resource: Union[str, EntityKind],
        resource_id: str,
        loader: Callable[[], Awaitable[Dict[str, Any]]],
    ) -> Optional[Dict[str, Any]]:
        """Run loader; a NotFound is None for CREATE_ON_MISSING resources and re-raised otherwise."""
        try:
            return await loader()
        except NotFoundError:
            if missing_record_policy(resource) == MissingRecordPolicy.CREATE_ON_MISSING:
                logger.info(f"{resource} {resource_id} not created yet")
                return None
            raise

    async def resolve(
        self,
        kind: EntityKind,
        entity_id: str,
        scope: Scope,
        initial: Optional[Dict[str, Any]] = None,
        use_cache: bool = True,
    ) -> ReviewableEntity:
        params = self.cache_params(kind, entity_id, scope)
        payload = self.cache.get(self.ENDPOINT, params) if use_cache else None
        if payload is None:
            payload = await self.fetch_with_policy(
                kind, entity_id, lambda: self.backend.fetch_entity(kind, str(entity_id), scope)
            )
            if payload is None:
                raise NotFoundError(kind.value, str(entity_id))
            self.cache.set(self.ENDPOINT, params, payload)
        return normalize_entity(kind, payload, scope=scope, initial=initial)

    def remember(self, entity: ReviewableEntity, scope: Scope) -> None:
        """Store a server-confirmed copy so the next resolve does not refetch it."""
        self.cache.set(self.ENDPOINT, self.cache_params(entity.kind, entity.id, scope), entity.raw)

    def forget(self, kind: EntityKind, entity_id: str, scope: Scope) -> None:
        self.cache.invalidate(self.ENDPOINT, self.cache_params(kind, entity_id, scope))
