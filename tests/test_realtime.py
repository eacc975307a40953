import asyncio

from reviewdesk.core.models import EntityKind
from reviewdesk.integrations.realtime import (
    NEW_COMMENT,
    LocalRealtimeChannel,
    SocketIORealtimeChannel,
    addressed_to,
    parse_room,
    room_for,
)


def test_room_names():
    assert room_for(EntityKind.NOTICE, "12") == "notice_12"
    assert parse_room("task_t-9") == ("task", "t-9")


def test_addressed_to_requires_matching_kind_and_id():
    assert addressed_to({"room": "notice_5"}, EntityKind.NOTICE, "5")
    assert addressed_to({"comment": {"notice_id": 5}}, EntityKind.NOTICE, "5")
    assert addressed_to({"parent_id": "5"}, EntityKind.TASK, "5")
    assert not addressed_to({"room": "task_5"}, EntityKind.NOTICE, "5")
    assert not addressed_to({"receipt": {"task_id": "5"}}, EntityKind.NOTICE, "5")
    assert not addressed_to({"room": "notice_6"}, EntityKind.NOTICE, "5")
    assert not addressed_to({"comment": {"id": "c1"}}, EntityKind.NOTICE, "5")


class TestLocalChannel:
    def test_publish_reaches_joined_rooms_only(self):
        channel = LocalRealtimeChannel()
        received = []
        channel.on(NEW_COMMENT, received.append)

        async def run():
            await channel.join("notice_1")
            delivered = await channel.publish("notice_1", NEW_COMMENT, {"comment": {"id": "c1"}})
            missed = await channel.publish("notice_2", NEW_COMMENT, {"comment": {"id": "c2"}})
            return delivered, missed

        delivered, missed = asyncio.run(run())

        assert delivered is True and missed is False
        assert received == [{"comment": {"id": "c1"}, "parent_id": "1", "room": "notice_1"}]

    def test_rooms_are_reference_counted(self):
        channel = LocalRealtimeChannel()

        async def run():
            await channel.join("task_1")
            await channel.join("task_1")
            await channel.leave("task_1")
            still_joined = set(channel.rooms)
            await channel.leave("task_1")
            return still_joined

        assert asyncio.run(run()) == {"task_1"}
        assert channel.rooms == set()

    def test_async_handlers_and_failures(self):
        channel = LocalRealtimeChannel()
        seen = []

        async def handler(payload):
            seen.append(payload["comment"]["id"])

        def broken(payload):
            raise RuntimeError("boom")

        channel.on(NEW_COMMENT, broken)
        channel.on(NEW_COMMENT, handler)

        async def run():
            await channel.join("notice_1")
            await channel.publish("notice_1", NEW_COMMENT, {"comment": {"id": "c1"}})
            channel.off(NEW_COMMENT, handler)
            await channel.publish("notice_1", NEW_COMMENT, {"comment": {"id": "c2"}})

        asyncio.run(run())

        assert seen == ["c1"]

    def test_room_handlers_hear_only_their_room(self):
        channel = LocalRealtimeChannel()
        first, second, everything = [], [], []
        channel.on(NEW_COMMENT, first.append, room="notice_n1")
        channel.on(NEW_COMMENT, second.append, room="notice_n2")
        channel.on(NEW_COMMENT, everything.append)

        async def run():
            await channel.join("notice_n1")
            await channel.join("notice_n2")
            await channel.publish("notice_n2", NEW_COMMENT, {"comment": {"id": "c1"}})
            channel.off(NEW_COMMENT, second.append, room="notice_n2")
            await channel.publish("notice_n2", NEW_COMMENT, {"comment": {"id": "c2"}})

        asyncio.run(run())

        assert first == []
        assert [p["comment"]["id"] for p in second] == ["c1"]
        assert [p["comment"]["id"] for p in everything] == ["c1", "c2"]


class FakeSocketClient:
    """Stands in for socketio.AsyncClient."""

    def __init__(self):
        self.connected = False
        self.emitted = []
        self.handlers = {}
        self.connect_kwargs = None

    async def connect(self, url, **kwargs):
        self.connected = True
        self.connect_kwargs = {"url": url, **kwargs}

    async def disconnect(self):
        self.connected = False

    async def emit(self, event, data=None):
        self.emitted.append((event, data))

    def on(self, event, handler):
        self.handlers[event] = handler


class TestSocketIOChannel:
    def test_join_and_leave_use_room_protocols(self):
        sio = FakeSocketClient()
        channel = SocketIORealtimeChannel("http://finance.test", "u-me", token="tok", client=sio)

        async def run():
            await channel.join("notice_n1")
            await channel.join("task_t1")
            await channel.leave("notice_n1")
            await channel.leave("task_t1")

        asyncio.run(run())

        assert sio.connect_kwargs["auth"] == {"user_id": "u-me", "token": "tok"}
        assert sio.emitted == [
            ("join_room", {"room": "notice_n1"}),
            ("join_task", {"task_id": "t1", "user_id": "u-me"}),
            ("leave_room", {"room": "notice_n1"}),
            ("leave_task", {"task_id": "t1", "user_id": "u-me"}),
        ]

    def test_leave_without_join_emits_nothing(self):
        sio = FakeSocketClient()
        channel = SocketIORealtimeChannel("http://finance.test", "u-me", client=sio)

        asyncio.run(channel.leave("notice_n1"))

        assert sio.emitted == []

    def test_server_events_are_forwarded_to_handlers(self):
        sio = FakeSocketClient()
        channel = SocketIORealtimeChannel("http://finance.test", "u-me", client=sio)
        received = []
        channel.on(NEW_COMMENT, received.append)
        channel.on(NEW_COMMENT, received.append)

        asyncio.run(sio.handlers[NEW_COMMENT]({"comment": {"id": "c1"}}))

        assert list(sio.handlers) == [NEW_COMMENT]
        assert received == [{"comment": {"id": "c1"}}, {"comment": {"id": "c1"}}]

    def test_server_events_are_routed_by_room(self):
        sio = FakeSocketClient()
        channel = SocketIORealtimeChannel("http://finance.test", "u-me", client=sio)
        notices, tasks = [], []
        channel.on(NEW_COMMENT, notices.append, room="notice_5")
        channel.on(NEW_COMMENT, tasks.append, room="task_5")

        async def run():
            await channel.join("notice_5")
            await channel.join("task_5")
            await sio.handlers[NEW_COMMENT]({"comment": {"id": "c1", "task_id": "5"}})

        asyncio.run(run())

        assert notices == []
        assert [p["comment"]["id"] for p in tasks] == ["c1"]

    def test_unaddressed_event_goes_to_the_only_joined_room(self):
        sio = FakeSocketClient()
        channel = SocketIORealtimeChannel("http://finance.test", "u-me", client=sio)
        received = []
        channel.on(NEW_COMMENT, received.append, room="notice_n1")

        async def run():
            await channel.join("notice_n1")
            await sio.handlers[NEW_COMMENT]({"comment": {"id": "c1"}})

        asyncio.run(run())

        assert received == [{"comment": {"id": "c1"}, "room": "notice_n1"}]
