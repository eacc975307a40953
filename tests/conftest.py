import itertools
from collections import Counter
from typing import Any, Dict, List, Optional

import pytest

from reviewdesk.core.config import ReviewDeskConfig
from reviewdesk.core.models import EntityKind, Scope
from reviewdesk.integrations.base import Attachment, ReviewBackend
from reviewdesk.services.errors import ConflictError, NotFoundError


class FakeBackend(ReviewBackend):
    """In-memory finance/task services with call counters and injectable failures."""

    def __init__(self, user_id: str = "u-me"):
        self.user_id = user_id
        self.entities: Dict[tuple, Dict[str, Any]] = {}
        self.comments: Dict[tuple, List[Dict[str, Any]]] = {}
        self.receipts: Dict[str, List[Dict[str, Any]]] = {}
        self.calls = Counter()
        self.scopes: Dict[str, Any] = {}
        self.status_payloads: List[Dict[str, Any]] = []
        self.sent: List[Dict[str, Any]] = []
        self.update_returns_body = True
        self._failures: Dict[str, List[Exception]] = {}
        self._ids = itertools.count(1)

    # -- setup helpers --

    def add(self, kind: EntityKind, entity_id: str, status: str, scope_entity: str = "e1", **fields):
        payload = {"id": entity_id, "status": status, "entity_id": scope_entity, **fields}
        self.entities[(kind, entity_id)] = payload
        return payload

    def add_comment(self, kind: EntityKind, parent_id: str, comment_id: str, user_id: str, **fields):
        payload = {"id": comment_id, "user_id": user_id, "message": f"message {comment_id}", **fields}
        self.comments.setdefault((kind, parent_id), []).append(payload)
        return payload

    def fail(self, method: str, error: Exception, times: int = 1):
        self._failures.setdefault(method, []).extend([error] * times)

    def _call(self, method: str, scope=None):
        self.calls[method] += 1
        if scope is not None:
            self.scopes[method] = scope
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def _get(self, kind: EntityKind, entity_id: str) -> Dict[str, Any]:
        payload = self.entities.get((kind, str(entity_id)))
        if payload is None:
            raise NotFoundError(kind.value, str(entity_id))
        return payload

    # -- records --

    async def fetch_entity(self, kind, entity_id, scope):
        self._call("fetch_entity")
        return dict(self._get(kind, entity_id))

    async def update_entity_status(self, kind, entity_id, scope, payload):
        self._call("update_entity_status")
        record = self._get(kind, entity_id)
        self.status_payloads.append(dict(payload))
        record.update(payload)
        record["updated_by_name"] = "Server Name"
        return dict(record) if self.update_returns_body else None

    async def fetch_sibling_list(self, kind, scope, role):
        self._call("fetch_sibling_list")
        return [
            dict(p) for (k, _id), p in self.entities.items()
            if k == kind and p.get("entity_id") == scope.entity_id
        ]

    # -- comments --

    async def fetch_comments(self, kind, parent_id, *, scope=None):
        self._call("fetch_comments", scope)
        return [dict(c) for c in self.comments.get((kind, str(parent_id)), [])]

    async def send_comment(self, kind, parent_id, message, attachment: Optional[Attachment] = None, *, scope=None):
        self._call("send_comment", scope)
        payload = {
            "id": f"c-new-{next(self._ids)}",
            "user_id": self.user_id,
            "message": message,
            "created_at": "2026-01-31T10:00:00",
        }
        if attachment is not None:
            payload["attachment_url"] = f"https://files.example/{attachment.filename}"
        self.comments.setdefault((kind, str(parent_id)), []).append(payload)
        self.sent.append(payload)
        return dict(payload)

    async def fetch_read_receipts(self, kind, parent_id, comment_id, *, scope=None):
        self._call("fetch_read_receipts", scope)
        return [dict(r) for r in self.receipts.get(str(comment_id), [])]

    async def mark_comment_read(self, kind, parent_id, comment_id, *, scope=None):
        self._call("mark_comment_read", scope)
        self.receipts.setdefault(str(comment_id), []).append(
            {"user_id": self.user_id, "read_at": "2026-01-31T10:05:00Z"}
        )

    # -- collaborators --

    async def add_collaborator(self, kind, parent_id, user_id, *, scope=None):
        self._call("add_collaborator", scope)
        record = self._get(kind, parent_id)
        members = record.setdefault("collaborators", [])
        if user_id in members:
            raise ConflictError("User is already a collaborator")
        members.append(user_id)

    async def remove_collaborator(self, kind, parent_id, user_id, *, scope=None):
        self._call("remove_collaborator", scope)
        record = self._get(kind, parent_id)
        members = record.setdefault("collaborators", [])
        if user_id not in members:
            raise NotFoundError("collaborator", user_id)
        members.remove(user_id)

    # -- closure --

    async def request_closure(self, kind, parent_id, scope, reason=""):
        self._call("request_closure")
        record = self._get(kind, parent_id)
        request = {
            "id": f"cr-{next(self._ids)}",
            "status": "pending",
            "requested_by": record.get("assigned_to"),
            "reason": reason,
        }
        record.setdefault("closure_requests", []).append(request)
        record["status"] = "closure_requested"
        return dict(request)

    def _resolve_closure(self, kind, parent_id, outcome, status, remarks=None):
        record = self._get(kind, parent_id)
        for request in record.get("closure_requests", []):
            if request["status"] == "pending":
                request["status"] = outcome
                request["resolved_by"] = record.get("created_by")
                request["resolution_remarks"] = remarks
                record["status"] = status
                return dict(request)
        raise ConflictError("Closure request already resolved")

    async def approve_closure(self, kind, parent_id, scope):
        self._call("approve_closure")
        return self._resolve_closure(kind, parent_id, "approved", "closed")

    async def reject_closure(self, kind, parent_id, scope, reason):
        self._call("reject_closure")
        return self._resolve_closure(kind, parent_id, "rejected", "open", reason)


@pytest.fixture()
def backend():
    return FakeBackend()


@pytest.fixture()
def scope():
    return Scope(entity_id="e1", agency_id="ag-1")


@pytest.fixture()
def config():
    return ReviewDeskConfig(
        finance_api_url="http://finance.test",
        task_api_url="http://tasks.test",
        finance_socket_url="http://finance.test",
        task_socket_url="http://tasks.test",
        comment_poll_interval_seconds=3600,
        read_receipt_dwell_seconds=1.0,
    )
