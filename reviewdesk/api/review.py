"""
Review API Endpoints

HTTP surface over review sessions:
- Open a session for an invoice, voucher, notice or task
- Apply review actions and follow the auto-advance target
- Previous/next navigation within the review queue
- Comment thread, read receipts and collaborators for notices and tasks
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile

from reviewdesk.api.deps import ReviewSessionStore, get_backend, get_channel, get_session_store
from reviewdesk.core.config import get_config
from reviewdesk.core.models import Actor, Scope
from reviewdesk.integrations.base import Attachment, ReviewBackend
from reviewdesk.integrations.realtime import RealtimeChannel
from reviewdesk.models.requests import (
    ActionRequest,
    CollaboratorRequest,
    NavigateRequest,
    OpenSessionRequest,
    SendCommentRequest,
    SwitchRequest,
    VisibleCommentsRequest,
)
from reviewdesk.services.review_session import ReviewSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/review", tags=["review"])


# =============================================================================
# SESSIONS
# =============================================================================

@router.post("/sessions")
async def open_session(
    request: OpenSessionRequest,
    backend: ReviewBackend = Depends(get_backend),
    channel: RealtimeChannel = Depends(get_channel),
    store: ReviewSessionStore = Depends(get_session_store),
):
    """Open a review session on one record."""
    session = ReviewSession(
        kind=request.kind,
        entity_id=request.entity_id,
        actor=Actor(user_id=request.actor.user_id, role=request.actor.role),
        scope=Scope(
            entity_id=request.scope.entity_id,
            agency_id=request.scope.agency_id,
            entity_ids=tuple(request.scope.entity_ids),
        ),
        backend=backend,
        channel=channel,
        config=get_config(),
    )
    await session.open(request.initial)
    store.add(session)
    logger.info(f"Opened review session {session.session_id} on {request.kind.value} {request.entity_id}")
    return session.to_dict()


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, store: ReviewSessionStore = Depends(get_session_store)):
    return store.get(session_id).to_dict()


@router.delete("/sessions/{session_id}", status_code=204)
async def close_session(session_id: str, store: ReviewSessionStore = Depends(get_session_store)):
    session = store.pop(session_id)
    await session.close()
    return Response(status_code=204)


# =============================================================================
# ACTIONS & NAVIGATION
# =============================================================================

@router.post("/sessions/{session_id}/actions")
async def act(
    session_id: str,
    request: ActionRequest,
    store: ReviewSessionStore = Depends(get_session_store),
):
    """Apply an action; with follow=true the session moves on to the next target."""
    session = store.get(session_id)
    outcome = await session.act(request.action, remarks=request.remarks, extra=request.extra or None)
    result: Dict[str, Any] = {"outcome": outcome.to_dict()}
    if request.follow:
        await session.follow(outcome.next_target)
    result["session"] = session.to_dict()
    return result


@router.post("/sessions/{session_id}/navigate")
async def navigate(
    session_id: str,
    request: NavigateRequest,
    store: ReviewSessionStore = Depends(get_session_store),
):
    session = store.get(session_id)
    target = session.navigate(request.step)
    if target is not None:
        await session.switch_to(target.id, kind=target.kind)
    return {"moved": target is not None, "session": session.to_dict()}


@router.post("/sessions/{session_id}/switch")
async def switch(
    session_id: str,
    request: SwitchRequest,
    store: ReviewSessionStore = Depends(get_session_store),
):
    session = store.get(session_id)
    await session.switch_to(request.entity_id, kind=request.kind)
    return session.to_dict()


# =============================================================================
# COMMENTS & READ RECEIPTS
# =============================================================================

@router.get("/sessions/{session_id}/comments")
async def list_comments(session_id: str, store: ReviewSessionStore = Depends(get_session_store)):
    """Comments grouped by day and author for display."""
    session = store.get(session_id)
    return {"days": [day.to_dict() for day in session.grouped_comments()]}


@router.post("/sessions/{session_id}/comments")
async def send_comment(
    session_id: str,
    request: SendCommentRequest,
    store: ReviewSessionStore = Depends(get_session_store),
):
    session = store.get(session_id)
    comment = await session.send_comment(request.message)
    return comment.to_dict()


@router.post("/sessions/{session_id}/comments/upload")
async def send_comment_with_attachment(
    session_id: str,
    message: str = Form(""),
    file: Optional[UploadFile] = File(None),
    store: ReviewSessionStore = Depends(get_session_store),
):
    session = store.get(session_id)
    attachment = None
    if file is not None:
        attachment = Attachment(
            filename=file.filename or "attachment",
            content=await file.read(),
            content_type=file.content_type or "application/octet-stream",
        )
    comment = await session.send_comment(message, attachment)
    return comment.to_dict()


@router.post("/sessions/{session_id}/comments/visible")
async def report_visible(
    session_id: str,
    request: VisibleCommentsRequest,
    store: ReviewSessionStore = Depends(get_session_store),
):
    """Report the comment ids currently on screen; returns the ones marked read."""
    session = store.get(session_id)
    marked = await session.observe_visible(request.comment_ids)
    return {"marked": marked}


@router.get("/sessions/{session_id}/comments/{comment_id}/reads")
async def read_receipts(
    session_id: str,
    comment_id: str,
    store: ReviewSessionStore = Depends(get_session_store),
):
    session = store.get(session_id)
    receipts = await session.receipt_details(comment_id)
    return {"comment_id": comment_id, "receipts": [r.to_dict() for r in receipts]}


# =============================================================================
# COLLABORATORS
# =============================================================================

@router.post("/sessions/{session_id}/collaborators")
async def add_collaborator(
    session_id: str,
    request: CollaboratorRequest,
    store: ReviewSessionStore = Depends(get_session_store),
):
    session = store.get(session_id)
    members = await session.add_collaborator(request.user_id)
    return {"collaborators": members}


@router.delete("/sessions/{session_id}/collaborators/{user_id}", status_code=204)
async def remove_collaborator(
    session_id: str,
    user_id: str,
    store: ReviewSessionStore = Depends(get_session_store),
):
    session = store.get(session_id)
    await session.remove_collaborator(user_id)
    return Response(status_code=204)
