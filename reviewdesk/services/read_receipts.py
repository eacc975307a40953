"""
Read Receipt Tracker

Per-comment read receipts for one thread, de-duplicated by (comment_id, user_id).

Receipts come from three places: the receipts embedded in comment payloads,
realtime comment_read_receipt events, and on-demand detail fetches. The
current user's own reads are sent once a comment has stayed visible for the
dwell interval, never for their own comments and never twice.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from reviewdesk.core.models import Comment, EntityKind, ReadReceipt, Scope
from reviewdesk.integrations.base import ReviewBackend
from reviewdesk.integrations.realtime import addressed_to
from reviewdesk.services.errors import ReviewDeskError
from reviewdesk.services.logging import log_error

logger = logging.getLogger(__name__)

DEFAULT_DWELL_SECONDS = 1.0

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class ReadReceiptTracker:

    def __init__(
        self,
        kind: EntityKind,
        parent_id: str,
        current_user_id: str,
        backend: ReviewBackend,
        dwell_seconds: float = DEFAULT_DWELL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        scope: Optional[Scope] = None,
    ):
        self.kind = kind
        self.parent_id = str(parent_id)
        self.current_user_id = str(current_user_id)
        self.backend = backend
        self.dwell_seconds = dwell_seconds
        self._clock = clock
        self.scope = scope

        self._receipts: Dict[str, Dict[str, ReadReceipt]] = {}
        self._authors: Dict[str, str] = {}
        self._visible_since: Dict[str, float] = {}
        self._marking: Set[str] = set()
        self._details_loaded: Set[str] = set()
        self._closed = False

    # ==================== RECEIPT SET ====================

    def track(self, comments: Iterable[Comment]) -> None:
        """Register comments (author and embedded receipts)."""
        for comment in comments:
            self._authors[comment.id] = comment.user_id
            for receipt in comment.read_receipts:
                self.record_receipt(comment.id, receipt)

    def record_receipt(self, comment_id: str, receipt: ReadReceipt) -> bool:
        """Add a receipt; returns False when (comment_id, user_id) is already known."""
        comment_id = str(comment_id)
        by_user = self._receipts.setdefault(comment_id, {})
        existing = by_user.get(receipt.user_id)
        if existing is not None:
            if (existing.read_at is None and receipt.read_at) or (existing.user_name is None and receipt.user_name):
                by_user[receipt.user_id] = ReadReceipt(
                    comment_id=comment_id,
                    user_id=receipt.user_id,
                    read_at=existing.read_at or receipt.read_at,
                    user_name=existing.user_name or receipt.user_name,
                )
            return False
        if receipt.comment_id != comment_id:
            receipt = ReadReceipt(comment_id, receipt.user_id, receipt.read_at, receipt.user_name)
        by_user[receipt.user_id] = receipt
        return True

    def on_push(self, payload: Dict[str, Any]) -> bool:
        """Fold a comment_read_receipt event in."""
        body = payload.get("receipt") if isinstance(payload.get("receipt"), dict) else payload
        comment_id = payload.get("comment_id") or body.get("comment_id")
        if comment_id is None:
            logger.debug(f"Ignoring read receipt push without comment_id: {payload}")
            return False
        if not addressed_to(payload, self.kind, self.parent_id):
            logger.debug(f"Ignoring read receipt not addressed to {self.kind.value} {self.parent_id}")
            return False
        receipt = ReadReceipt.from_payload(body, comment_id=str(comment_id))
        return self.record_receipt(str(comment_id), receipt)

    def receipts_for(self, comment_id: str) -> List[ReadReceipt]:
        receipts = self._receipts.get(str(comment_id), {}).values()
        return sorted(receipts, key=lambda r: r.read_at or _EPOCH)

    def is_read_by(self, comment_id: str, user_id: Optional[str] = None) -> bool:
        user_id = str(user_id) if user_id is not None else self.current_user_id
        return user_id in self._receipts.get(str(comment_id), {})

    def _needs_mark(self, comment_id: str) -> bool:
        author = self._authors.get(comment_id)
        if author is None or author == self.current_user_id:
            return False
        return not self.is_read_by(comment_id) and comment_id not in self._marking

    # ==================== MARKING ====================

    async def observe_visible(self, comment_ids: Iterable[str]) -> List[str]:
        """
        Report the ids currently past the visibility threshold.

        Each id has to appear in consecutive observations for dwell_seconds
        before it is marked read. Returns the ids marked by this call.
        """
        if self._closed:
            return []
        now = self._clock()
        visible = {str(c) for c in comment_ids}

        for comment_id in list(self._visible_since):
            if comment_id not in visible:
                del self._visible_since[comment_id]

        due = []
        for comment_id in sorted(visible):
            if not self._needs_mark(comment_id):
                self._visible_since.pop(comment_id, None)
                continue
            started = self._visible_since.setdefault(comment_id, now)
            if now - started >= self.dwell_seconds:
                due.append(comment_id)

        marked = []
        for comment_id in due:
            if await self._mark(comment_id):
                marked.append(comment_id)
        return marked

    async def _mark(self, comment_id: str) -> bool:
        self._marking.add(comment_id)
        try:
            await self.backend.mark_comment_read(self.kind, self.parent_id, comment_id, scope=self.scope)
        except ReviewDeskError as e:
            log_error(
                "mark_read_failed",
                f"Could not mark comment {comment_id} as read",
                context={"kind": self.kind.value, "parent_id": self.parent_id, "comment_id": comment_id},
                exception=e,
                level=logging.WARNING,
            )
            return False
        finally:
            self._marking.discard(comment_id)

        if self._closed:
            return False
        self._visible_since.pop(comment_id, None)
        self.record_receipt(
            comment_id,
            ReadReceipt(
                comment_id=comment_id,
                user_id=self.current_user_id,
                read_at=datetime.now(timezone.utc),
            ),
        )
        return True

    # ==================== DETAILS ====================

    async def receipt_details(self, comment_id: str) -> List[ReadReceipt]:
        """Full receipts for one comment, fetched once per screen."""
        comment_id = str(comment_id)
        if comment_id in self._details_loaded:
            return self.receipts_for(comment_id)
        try:
            payloads = await self.backend.fetch_read_receipts(self.kind, self.parent_id, comment_id, scope=self.scope)
        except ReviewDeskError as e:
            log_error(
                "receipt_fetch_failed",
                f"Could not load read receipts for comment {comment_id}",
                context={"kind": self.kind.value, "parent_id": self.parent_id, "comment_id": comment_id},
                exception=e,
                level=logging.WARNING,
            )
            return self.receipts_for(comment_id)
        if self._closed:
            return self.receipts_for(comment_id)
        for payload in payloads or []:
            if isinstance(payload, dict):
                self.record_receipt(comment_id, ReadReceipt.from_payload(payload, comment_id=comment_id))
        self._details_loaded.add(comment_id)
        return self.receipts_for(comment_id)

    def close(self) -> None:
        self._closed = True
        self._visible_since.clear()
