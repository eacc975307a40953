"""
REST client for the portal's finance and task services.

Invoices, vouchers and notices live on the finance service; tasks live on
the task service, which also expects an x-agency-id header. Error bodies
carry a JSON "detail" that is surfaced on the raised ReviewDeskError.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from reviewdesk.core.config import ReviewDeskConfig, get_config
from reviewdesk.core.models import CA_ROLES, EntityKind, Role, Scope
from reviewdesk.integrations.base import Attachment, ReviewBackend
from reviewdesk.services.errors import (
    ConflictError,
    NotFoundError,
    NotPermittedError,
    TransientNetworkError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PLURAL = {
    EntityKind.INVOICE: "invoices",
    EntityKind.VOUCHER: "vouchers",
    EntityKind.NOTICE: "notices",
    EntityKind.TASK: "tasks",
}


def extract_detail(response: httpx.Response) -> str:
    """The error message the portal shows: JSON detail, else the body, else the status."""
    text = response.text
    try:
        body = json.loads(text) if text else {}
    except ValueError:
        body = {"detail": text}
    detail = body.get("detail") if isinstance(body, dict) else None
    if detail is None:
        return text or f"HTTP error! status: {response.status_code}"
    return detail if isinstance(detail, str) else json.dumps(detail)


class FinanceAPIClient(ReviewBackend):
    """ReviewBackend over httpx."""

    def __init__(
        self,
        token: Optional[str] = None,
        config: Optional[ReviewDeskConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        agency_id: Optional[str] = None,
    ):
        self.token = token
        self.agency_id = agency_id
        self.config = config or get_config()
        self._transport = transport

    # ==================== URLS ====================

    def _base_url(self, kind: EntityKind) -> str:
        if kind == EntityKind.TASK:
            return self.config.task_api_url.rstrip("/")
        return self.config.finance_api_url.rstrip("/")

    def _record_url(self, kind: EntityKind, record_id: str, suffix: str = "") -> str:
        if kind == EntityKind.TASK:
            path = f"/tasks/{record_id}"
        else:
            path = f"/api/{PLURAL[kind]}/{record_id}"
        return f"{self._base_url(kind)}{path}{suffix}"

    def _update_url(self, kind: EntityKind, record_id: str) -> str:
        if kind in (EntityKind.INVOICE, EntityKind.VOUCHER):
            return f"{self._base_url(kind)}/finance/{PLURAL[kind]}/{record_id}"
        return self._record_url(kind, record_id)

    def _list_url(self, kind: EntityKind, role: Role) -> str:
        base = self._base_url(kind)
        if kind in (EntityKind.INVOICE, EntityKind.VOUCHER):
            if role in CA_ROLES:
                return f"{base}/api/ca_team/{PLURAL[kind]}"
            return f"{base}/finance/{PLURAL[kind]}/"
        if kind == EntityKind.TASK:
            return f"{base}/tasks/"
        return f"{base}/api/notices/"

    def _headers(self, scope: Optional[Scope] = None, json_body: bool = False) -> Dict[str, str]:
        headers = {"accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if json_body:
            headers["Content-Type"] = "application/json"
        agency_id = scope.agency_id if scope is not None and scope.agency_id else self.agency_id
        if agency_id:
            headers["x-agency-id"] = str(agency_id)
        return headers

    @staticmethod
    def _scope_params(scope: Optional[Scope]) -> Dict[str, str]:
        if scope is None or scope.is_all:
            return {}
        return {"entity_id": scope.entity_id}

    # ==================== TRANSPORT ====================

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        resource: Tuple[str, str],
        scope: Optional[Scope] = None,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Any:
        headers = self._headers(scope, json_body=json_body is not None)
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self.config.http_timeout_seconds
            ) as client:
                response = await client.request(
                    method,
                    url,
                    headers=headers,
                    params=params,
                    json=json_body,
                    data=data,
                    files=files,
                )
        except httpx.HTTPError as e:
            raise TransientNetworkError(operation, str(e))
        return self._handle_response(response, operation, resource)

    def _handle_response(self, response: httpx.Response, operation: str, resource: Tuple[str, str]) -> Any:
        status = response.status_code
        if response.is_success:
            if status == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError:
                return response.text

        detail = extract_detail(response)
        context = {"operation": operation, "status_code": status}
        logger.warning(f"{operation} failed with {status}: {detail}")

        if status == 404:
            raise NotFoundError(resource[0], resource[1], detail=detail)
        if status == 409 or (status == 400 and "already" in detail.lower()):
            raise ConflictError(detail, detail=detail, context=context)
        if status in (401, 403):
            raise NotPermittedError(detail, detail=detail, context=context)
        if status >= 500:
            raise TransientNetworkError(operation, detail, status_code=status)
        raise ValidationError(detail, detail=detail, context=context)

    # ==================== RECORDS ====================

    async def fetch_entity(self, kind: EntityKind, entity_id: str, scope: Scope) -> Dict[str, Any]:
        return await self._request(
            "GET",
            self._record_url(kind, entity_id),
            f"fetch_{kind.value}",
            (kind.value, entity_id),
            scope=scope,
            params=self._scope_params(scope),
        )

    async def update_entity_status(
        self,
        kind: EntityKind,
        entity_id: str,
        scope: Scope,
        payload: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        method = "PATCH" if kind == EntityKind.TASK else "PUT"
        result = await self._request(
            method,
            self._update_url(kind, entity_id),
            f"update_{kind.value}_status",
            (kind.value, entity_id),
            scope=scope,
            params=self._scope_params(scope),
            json_body=payload,
        )
        return result if isinstance(result, dict) else None

    async def fetch_sibling_list(self, kind: EntityKind, scope: Scope, role: Role) -> List[Dict[str, Any]]:
        result = await self._request(
            "GET",
            self._list_url(kind, role),
            f"list_{PLURAL[kind]}",
            (PLURAL[kind], scope.entity_id),
            scope=scope,
            params=self._scope_params(scope),
        )
        if isinstance(result, dict):
            result = result.get("items", [])
        return result if isinstance(result, list) else []

    # ==================== COMMENTS ====================

    async def fetch_comments(
        self, kind: EntityKind, parent_id: str, *, scope: Optional[Scope] = None
    ) -> List[Dict[str, Any]]:
        result = await self._request(
            "GET",
            self._record_url(kind, parent_id, "/comments"),
            "fetch_comments",
            (kind.value, parent_id),
            scope=scope,
        )
        if isinstance(result, dict):
            result = result.get("items", [])
        return result if isinstance(result, list) else []

    async def send_comment(
        self,
        kind: EntityKind,
        parent_id: str,
        message: str,
        attachment: Optional[Attachment] = None,
        *,
        scope: Optional[Scope] = None,
    ) -> Dict[str, Any]:
        files = None
        if attachment is not None:
            files = {"file": (attachment.filename, attachment.content, attachment.content_type)}
        return await self._request(
            "POST",
            self._record_url(kind, parent_id, "/comments"),
            "send_comment",
            (kind.value, parent_id),
            scope=scope,
            data={"message": message},
            files=files,
        )

    async def fetch_read_receipts(
        self, kind: EntityKind, parent_id: str, comment_id: str, *, scope: Optional[Scope] = None
    ) -> List[Dict[str, Any]]:
        result = await self._request(
            "GET",
            self._record_url(kind, parent_id, f"/comments/{comment_id}/reads"),
            "fetch_read_receipts",
            ("comment", comment_id),
            scope=scope,
        )
        return result if isinstance(result, list) else []

    async def mark_comment_read(
        self, kind: EntityKind, parent_id: str, comment_id: str, *, scope: Optional[Scope] = None
    ) -> None:
        await self._request(
            "POST",
            self._record_url(kind, parent_id, f"/comments/{comment_id}/read"),
            "mark_comment_read",
            ("comment", comment_id),
            scope=scope,
        )

    # ==================== COLLABORATORS ====================

    async def add_collaborator(
        self, kind: EntityKind, parent_id: str, user_id: str, *, scope: Optional[Scope] = None
    ) -> None:
        await self._request(
            "POST",
            self._record_url(kind, parent_id, "/collaborators"),
            "add_collaborator",
            (kind.value, parent_id),
            scope=scope,
            data={"user_id": user_id},
        )

    async def remove_collaborator(
        self, kind: EntityKind, parent_id: str, user_id: str, *, scope: Optional[Scope] = None
    ) -> None:
        await self._request(
            "DELETE",
            self._record_url(kind, parent_id, f"/collaborators/{user_id}"),
            "remove_collaborator",
            ("collaborator", user_id),
            scope=scope,
        )

    # ==================== CLOSURE ====================

    async def request_closure(
        self,
        kind: EntityKind,
        parent_id: str,
        scope: Scope,
        reason: str = "",
    ) -> Optional[Dict[str, Any]]:
        return await self._request(
            "POST",
            self._record_url(kind, parent_id, "/request-close"),
            "request_closure",
            (kind.value, parent_id),
            scope=scope,
            data={"reason": reason},
        )

    async def approve_closure(self, kind: EntityKind, parent_id: str, scope: Scope) -> Optional[Dict[str, Any]]:
        return await self._request(
            "POST",
            self._record_url(kind, parent_id, "/approve-close"),
            "approve_closure",
            (kind.value, parent_id),
            scope=scope,
        )

    async def reject_closure(
        self,
        kind: EntityKind,
        parent_id: str,
        scope: Scope,
        reason: str,
    ) -> Optional[Dict[str, Any]]:
        return await self._request(
            "POST",
            self._record_url(kind, parent_id, "/reject-close"),
            "reject_closure",
            (kind.value, parent_id),
            scope=scope,
            data={"reason": reason},
        )
