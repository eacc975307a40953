"""FastAPI dependencies for the review surface."""
from typing import Dict, Optional

from fastapi import Header

from reviewdesk.core.config import get_config
from reviewdesk.integrations.base import ReviewBackend
from reviewdesk.integrations.finance_api import FinanceAPIClient
from reviewdesk.integrations.realtime import LocalRealtimeChannel, RealtimeChannel
from reviewdesk.services.errors import NotFoundError
from reviewdesk.services.review_session import ReviewSession


class ReviewSessionStore:
    """Open review sessions for this process, by session id."""

    def __init__(self):
        self._sessions: Dict[str, ReviewSession] = {}

    def add(self, session: ReviewSession) -> ReviewSession:
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> ReviewSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("review_session", session_id)
        return session

    def pop(self, session_id: str) -> ReviewSession:
        session = self.get(session_id)
        del self._sessions[session_id]
        return session

    def __len__(self) -> int:
        return len(self._sessions)


_store: Optional[ReviewSessionStore] = None
_hub: Optional[LocalRealtimeChannel] = None


def get_session_store() -> ReviewSessionStore:
    global _store
    if _store is None:
        _store = ReviewSessionStore()
    return _store


def get_channel() -> RealtimeChannel:
    global _hub
    if _hub is None:
        _hub = LocalRealtimeChannel()
    return _hub


def get_backend(
    authorization: Optional[str] = Header(default=None),
    x_agency_id: Optional[str] = Header(default=None),
) -> ReviewBackend:
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    return FinanceAPIClient(token=token, agency_id=x_agency_id, config=get_config())
