"""
Comment Stream

One discussion thread (notice or task) fed by three producers: the initial
fetch, a fixed-interval poll and realtime push events. Everything lands in
merge(), keyed by comment id, so the producers converge regardless of the
order their results arrive in.

Sends are confirmed-only: the message shows up once the server acknowledges
it, and the draft stays in place after a failed send so it can be retried.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from zoneinfo import ZoneInfo

from reviewdesk.core.models import Comment, EntityKind, Scope
from reviewdesk.integrations.base import Attachment, ReviewBackend
from reviewdesk.integrations.realtime import addressed_to
from reviewdesk.services.errors import ErrorCode, ReviewDeskError, ValidationError
from reviewdesk.services.logging import log_error

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_VIEWER_TIMEZONE = "Asia/Kolkata"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def merge(existing: Iterable[Comment], incoming: Iterable[Comment]) -> List[Comment]:
    """Existing comments keep their positions; unseen ids are appended in arrival order."""
    merged = list(existing)
    seen = {c.id for c in merged}
    for comment in incoming:
        if comment.id in seen:
            continue
        seen.add(comment.id)
        merged.append(comment)
    return merged


@dataclass
class AuthorGroup:
    """Consecutive comments from one author, rendered under a single avatar."""
    user_id: str
    user_name: Optional[str]
    comments: List[Comment] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_name": self.user_name,
            "comments": [c.to_dict() for c in self.comments],
        }


@dataclass
class DayGroup:
    label: str
    day: date
    groups: List[AuthorGroup] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "date": self.day.isoformat(),
            "groups": [g.to_dict() for g in self.groups],
        }


def day_label(day: date, today: date) -> str:
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    return f"{day.day} {day.strftime('%b %Y')}"


def group_for_display(
    comments: Iterable[Comment],
    tz: Union[str, ZoneInfo] = DEFAULT_VIEWER_TIMEZONE,
    today: Optional[date] = None,
) -> List[DayGroup]:
    """
    Bucket display-ordered comments by calendar day in the viewer's zone,
    then into runs of consecutive comments by the same author.

    Comments without a timestamp are treated as arriving now.
    """
    zone = tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz)
    now = datetime.now(zone)
    today = today or now.date()

    days: List[DayGroup] = []
    for comment in comments:
        local = comment.created_at.astimezone(zone) if comment.created_at else now
        if not days or days[-1].day != local.date():
            days.append(DayGroup(label=day_label(local.date(), today), day=local.date()))
        bucket = days[-1]
        if not bucket.groups or bucket.groups[-1].user_id != comment.user_id:
            bucket.groups.append(AuthorGroup(user_id=comment.user_id, user_name=comment.user_name))
        bucket.groups[-1].comments.append(comment)
    return days


@dataclass
class PendingSend:
    pending_id: str
    message: str
    attachment: Optional[Attachment] = None


class CommentStream:
    """
    Comment list for one parent record, owned by a single review session.

    Subscribers registered with subscribe() are called with the newly merged
    comments whenever a producer adds something. Refresh subscribers
    (subscribe_refresh) get every batch pulled by load() and poll_once(),
    including comments already in the stream, so receipts embedded in a
    refetched comment are not lost.
    """

    def __init__(
        self,
        kind: EntityKind,
        parent_id: str,
        current_user_id: str,
        backend: ReviewBackend,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        scope: Optional[Scope] = None,
    ):
        self.kind = kind
        self.parent_id = str(parent_id)
        self.current_user_id = str(current_user_id)
        self.backend = backend
        self.poll_interval = poll_interval
        self.scope = scope

        self._comments: List[Comment] = []
        self._arrival: Dict[str, int] = {}
        self._sequence = itertools.count()
        self._subscribers: List[Callable[[List[Comment]], None]] = []
        self._refresh_subscribers: List[Callable[[List[Comment]], None]] = []
        self._pending: Dict[str, PendingSend] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._closed = False

        self.draft_message = ""
        self.draft_attachment: Optional[Attachment] = None
        self.last_error: Optional[Exception] = None

    # ==================== STATE ====================

    @property
    def comments(self) -> List[Comment]:
        return list(self._comments)

    def ordered(self) -> List[Comment]:
        """Display order: by created_at, ties broken by arrival."""
        return sorted(
            self._comments,
            key=lambda c: (c.created_at is None, c.created_at or _EPOCH, self._arrival[c.id]),
        )

    def get(self, comment_id: str) -> Optional[Comment]:
        for comment in self._comments:
            if comment.id == str(comment_id):
                return comment
        return None

    def __len__(self) -> int:
        return len(self._comments)

    def subscribe(self, callback: Callable[[List[Comment]], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[List[Comment]], None]) -> None:
        self._subscribers = [c for c in self._subscribers if c != callback]

    def subscribe_refresh(self, callback: Callable[[List[Comment]], None]) -> None:
        self._refresh_subscribers.append(callback)

    def _notify(self, callbacks, comments: List[Comment]) -> None:
        for callback in list(callbacks):
            try:
                callback(comments)
            except Exception as e:
                logger.error(f"Comment subscriber failed: {e}")

    def _merge_in(self, incoming: Iterable[Comment]) -> List[Comment]:
        if self._closed:
            return []
        before = len(self._comments)
        self._comments = merge(self._comments, incoming)
        added = self._comments[before:]
        for comment in added:
            self._arrival[comment.id] = next(self._sequence)
        if added:
            self._notify(self._subscribers, added)
        return added

    def _refreshed(self, batch: List[Comment]) -> List[Comment]:
        added = self._merge_in(batch)
        if batch and not self._closed:
            self._notify(self._refresh_subscribers, batch)
        return added

    def _parse(self, payloads: Iterable[Dict[str, Any]]) -> List[Comment]:
        return [
            Comment.from_payload(p, parent_id=self.parent_id)
            for p in payloads or []
            if isinstance(p, dict) and p.get("id") is not None
        ]

    # ==================== PRODUCERS ====================

    async def load(self) -> List[Comment]:
        """Initial fetch. Errors propagate: a thread that cannot load cannot be shown."""
        payloads = await self.backend.fetch_comments(self.kind, self.parent_id, scope=self.scope)
        self._refreshed(self._parse(payloads))
        return self.comments

    async def poll_once(self) -> int:
        """Refetch the full list; failures are logged and the stream carries on."""
        try:
            payloads = await self.backend.fetch_comments(self.kind, self.parent_id, scope=self.scope)
        except ReviewDeskError as e:
            log_error(
                "comment_poll_failed",
                f"Comment poll failed for {self.kind.value} {self.parent_id}",
                context={"kind": self.kind.value, "parent_id": self.parent_id},
                exception=e,
                level=logging.WARNING,
            )
            return 0
        return len(self._refreshed(self._parse(payloads)))

    def on_push(self, payload: Dict[str, Any]) -> bool:
        """
        Fold a new_comment event in. Returns True when the stream changed.

        The event must name this thread (room, notice_id/task_id or parent_id);
        events for another record, or for none, are ignored.
        """
        data = payload.get("comment") if isinstance(payload.get("comment"), dict) else payload
        if not isinstance(data, dict) or data.get("id") is None:
            logger.debug(f"Ignoring malformed comment push: {payload}")
            return False
        if not addressed_to(payload, self.kind, self.parent_id):
            logger.debug(f"Ignoring comment push not addressed to {self.kind.value} {self.parent_id}")
            return False
        comment = Comment.from_payload(data)
        if comment.user_id == self.current_user_id:
            return False
        if comment.parent_id != self.parent_id:
            comment = replace(comment, parent_id=self.parent_id)
        return bool(self._merge_in([comment]))

    def start_polling(self, interval: Optional[float] = None) -> None:
        if interval is not None:
            self.poll_interval = interval
        if self._running or self._closed:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.debug(f"Polling comments for {self.kind.value} {self.parent_id} every {self.poll_interval}s")

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.poll_interval)
            if not self._running:
                break
            await self.poll_once()

    @property
    def is_polling(self) -> bool:
        return self._running

    async def stop(self) -> None:
        """Cancel polling and stop accepting results from in-flight producers."""
        self._running = False
        self._closed = True
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ==================== SENDING ====================

    def begin_send(self, message: str, attachment: Optional[Attachment] = None) -> str:
        text = (message or "").strip()
        if not text and attachment is None:
            raise ValidationError("Message cannot be empty", code=ErrorCode.EMPTY_MESSAGE)
        self.draft_message = message
        self.draft_attachment = attachment
        self.last_error = None
        pending_id = uuid.uuid4().hex
        self._pending[pending_id] = PendingSend(pending_id=pending_id, message=text, attachment=attachment)
        return pending_id

    def reconcile(
        self,
        pending_id: str,
        comment: Optional[Comment] = None,
        error: Optional[Exception] = None,
    ) -> Optional[Comment]:
        """Settle a send: merge and clear the draft on success, keep the draft on failure."""
        pending = self._pending.pop(pending_id, None)
        if pending is None:
            logger.debug(f"Ignoring unknown or settled send {pending_id}")
            return None
        if error is not None or comment is None:
            self.last_error = error
            return None
        self._merge_in([comment])
        if self.draft_message.strip() == pending.message and self.draft_attachment is pending.attachment:
            self.draft_message = ""
            self.draft_attachment = None
        return comment

    @property
    def has_pending_send(self) -> bool:
        return bool(self._pending)

    async def send(self, message: str, attachment: Optional[Attachment] = None) -> Comment:
        pending_id = self.begin_send(message, attachment)
        pending = self._pending[pending_id]
        try:
            payload = await self.backend.send_comment(
                self.kind, self.parent_id, pending.message, attachment=attachment, scope=self.scope
            )
        except Exception as e:
            self.reconcile(pending_id, error=e)
            raise
        comment = Comment.from_payload(payload, parent_id=self.parent_id)
        self.reconcile(pending_id, comment=comment)
        return comment
