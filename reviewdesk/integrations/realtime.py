"""
Realtime channel for comment threads.

Each notice or task has a room (notice_<id>, task_<id>). A review session
joins the room when the screen opens and leaves it on teardown; while joined
it receives:

- new_comment            {comment: {...}}
- comment_read_receipt   {comment_id, receipt: {...}}

Handlers are registered per room, so several sessions can share one channel
and each only hears the events for the record it shows.

LocalRealtimeChannel is an in-process hub used by tests and single-process
deployments. SocketIORealtimeChannel talks to the portal's Socket.IO servers.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

import socketio

from reviewdesk.core.models import EntityKind

logger = logging.getLogger(__name__)

NEW_COMMENT = "new_comment"
COMMENT_READ_RECEIPT = "comment_read_receipt"

Handler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


def room_for(kind: EntityKind, parent_id: str) -> str:
    return f"{kind.value}_{parent_id}"


def parse_room(room: str) -> Tuple[str, str]:
    kind, _, parent_id = room.partition("_")
    return kind, parent_id


def event_target(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """
    (kind, parent_id) an event is addressed to: its room when present, else
    notice_id / task_id, else a bare parent_id (kind unknown).
    """
    room = payload.get("room")
    if room:
        return parse_room(str(room))
    sources = [payload] + [payload[k] for k in ("comment", "receipt") if isinstance(payload.get(k), dict)]
    for source in sources:
        for kind in (EntityKind.NOTICE, EntityKind.TASK):
            value = source.get(f"{kind.value}_id")
            if value is not None:
                return kind.value, str(value)
    for source in sources:
        if source.get("parent_id") is not None:
            return None, str(source["parent_id"])
    return None, None


def room_of(payload: Dict[str, Any]) -> Optional[str]:
    kind, parent_id = event_target(payload)
    if kind is None or parent_id is None:
        return None
    return f"{kind}_{parent_id}"


def addressed_to(payload: Dict[str, Any], kind: EntityKind, parent_id: str) -> bool:
    """True only when the event names this record; unaddressed events are refused."""
    target_kind, target_parent = event_target(payload)
    if target_parent is None or target_parent != str(parent_id):
        return False
    return target_kind is None or target_kind == kind.value


class RealtimeChannel(ABC):
    """Room-scoped push events. Handlers registered without a room hear every room."""

    def __init__(self):
        self._handlers: Dict[Tuple[str, Optional[str]], List[Handler]] = defaultdict(list)

    @abstractmethod
    async def join(self, room: str) -> None:
        pass

    @abstractmethod
    async def leave(self, room: str) -> None:
        pass

    def on(self, event: str, handler: Handler, room: Optional[str] = None) -> None:
        self._handlers[(event, room)].append(handler)

    def off(self, event: str, handler: Handler, room: Optional[str] = None) -> None:
        key = (event, room)
        if key in self._handlers:
            self._handlers[key] = [h for h in self._handlers[key] if h != handler]
            if not self._handlers[key]:
                del self._handlers[key]

    async def _dispatch(self, event: str, payload: Dict[str, Any], room: Optional[str] = None) -> None:
        handlers = list(self._handlers.get((event, None), []))
        if room is not None:
            handlers.extend(self._handlers.get((event, room), []))
        if not handlers:
            logger.debug(f"No handlers for {event}")
            return
        for handler in handlers:
            try:
                result = handler(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Realtime handler for {event} failed: {e}")


class LocalRealtimeChannel(RealtimeChannel):
    """In-process hub: publish() delivers only to rooms this channel has joined."""

    def __init__(self):
        super().__init__()
        self._rooms: Dict[str, int] = defaultdict(int)

    @property
    def rooms(self) -> Set[str]:
        return {room for room, count in self._rooms.items() if count > 0}

    async def join(self, room: str) -> None:
        self._rooms[room] += 1
        logger.debug(f"Joined room {room}")

    async def leave(self, room: str) -> None:
        if self._rooms.get(room, 0) > 0:
            self._rooms[room] -= 1
        if self._rooms.get(room) == 0:
            del self._rooms[room]
        logger.debug(f"Left room {room}")

    async def publish(self, room: str, event: str, payload: Dict[str, Any]) -> bool:
        """Returns False when nobody here is in the room."""
        if room not in self.rooms:
            return False
        _kind, parent_id = parse_room(room)
        data = dict(payload)
        data["room"] = room
        data.setdefault("parent_id", parent_id)
        await self._dispatch(event, data, room)
        return True


class SocketIORealtimeChannel(RealtimeChannel):
    """
    Socket.IO client for the finance (notices) and task services.

    Notice rooms use join_room/leave_room with {room}; task rooms use
    join_task/leave_task with {task_id, user_id}.
    """

    def __init__(
        self,
        url: str,
        user_id: str,
        token: Optional[str] = None,
        socketio_path: str = "/socket.io",
        client: Optional[socketio.AsyncClient] = None,
    ):
        super().__init__()
        self.url = url
        self.user_id = str(user_id)
        self.token = token
        self.socketio_path = socketio_path
        self._sio = client or socketio.AsyncClient(reconnection=True, logger=False)
        self._registered: Set[str] = set()
        self._rooms: Set[str] = set()

    @property
    def connected(self) -> bool:
        return bool(self._sio.connected)

    async def connect(self) -> None:
        if self.connected:
            return
        logger.info(f"Connecting realtime channel to {self.url}")
        await self._sio.connect(
            self.url,
            auth={"user_id": self.user_id, "token": self.token},
            socketio_path=self.socketio_path,
            transports=["websocket", "polling"],
        )

    async def disconnect(self) -> None:
        if self.connected:
            await self._sio.disconnect()
        self._rooms.clear()

    def on(self, event: str, handler: Handler, room: Optional[str] = None) -> None:
        super().on(event, handler, room)
        if event not in self._registered:
            self._registered.add(event)
            self._sio.on(event, self._forwarder(event))

    def _forwarder(self, event: str):
        async def forward(data=None):
            payload = data if isinstance(data, dict) else {"data": data}
            room = room_of(payload)
            if room is None and len(self._rooms) == 1:
                # Only one room joined, so an unaddressed event can only be for it.
                room = next(iter(self._rooms))
                payload = {**payload, "room": room}
            await self._dispatch(event, payload, room)
        return forward

    async def join(self, room: str) -> None:
        await self.connect()
        kind, parent_id = parse_room(room)
        if kind == EntityKind.TASK.value:
            await self._sio.emit("join_task", {"task_id": parent_id, "user_id": self.user_id})
        else:
            await self._sio.emit("join_room", {"room": room})
        self._rooms.add(room)

    async def leave(self, room: str) -> None:
        if room not in self._rooms or not self.connected:
            self._rooms.discard(room)
            return
        kind, parent_id = parse_room(room)
        if kind == EntityKind.TASK.value:
            await self._sio.emit("leave_task", {"task_id": parent_id, "user_id": self.user_id})
        else:
            await self._sio.emit("leave_room", {"room": room})
        self._rooms.discard(room)
