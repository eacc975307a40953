"""
Review Desk Integrations

- Finance and task REST services (httpx)
- Realtime comment rooms (Socket.IO, or an in-process hub)
"""

from reviewdesk.integrations.base import Attachment, ReviewBackend
from reviewdesk.integrations.finance_api import FinanceAPIClient
from reviewdesk.integrations.realtime import (
    LocalRealtimeChannel,
    RealtimeChannel,
    SocketIORealtimeChannel,
    room_for,
)

__all__ = [
    "Attachment",
    "ReviewBackend",
    "FinanceAPIClient",
    "LocalRealtimeChannel",
    "RealtimeChannel",
    "SocketIORealtimeChannel",
    "room_for",
]
