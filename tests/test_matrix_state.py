from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from nio import MatrixRoom, RoomGetStateError

from call_scanner import CALL_MEMBER_EVENT_TYPE, WIDGET_EVENT_TYPE
from conftest import BOT_USER_ID
from matrix_state import NioChatClient


ROOM_ID = "!abcXYZ:example.org"


@pytest.fixture
def nio_client():
    room = MatrixRoom(ROOM_ID, BOT_USER_ID, encrypted=True)
    room.name = "Voice Lounge"
    return SimpleNamespace(
        user_id=BOT_USER_ID,
        access_token="syt_bot_token",
        rooms={ROOM_ID: room},
        room_get_state=AsyncMock(),
    )


def test_room_view_exposes_name_and_encryption(nio_client):
    chat = NioChatClient(nio_client)

    room = chat.get_room(ROOM_ID)

    assert room.display_name == "Voice Lounge"
    assert room.encrypted
    assert chat.get_room("!other:example.org") is None
    assert [r.room_id for r in chat.get_rooms()] == [ROOM_ID]
    assert chat.access_token == "syt_bot_token"


def test_record_event_keeps_state_events_only(nio_client):
    chat = NioChatClient(nio_client)
    room = nio_client.rooms[ROOM_ID]
    state_event = SimpleNamespace(
        type=CALL_MEMBER_EVENT_TYPE,
        source={"state_key": "@alice:example.org_DEV", "content": {"application": "m.call"}},
    )
    timeline_event = SimpleNamespace(type="m.reaction", source={"content": {}})

    assert chat.record_event(room, state_event)
    assert not chat.record_event(room, timeline_event)

    events = chat.get_room(ROOM_ID).get_state_events(CALL_MEMBER_EVENT_TYPE)
    assert [(e.state_key, e.content) for e in events] == [("@alice:example.org_DEV", {"application": "m.call"})]


@pytest.mark.asyncio
async def test_refresh_replaces_cached_state(nio_client):
    chat = NioChatClient(nio_client)
    chat.record_state_event(ROOM_ID, WIDGET_EVENT_TYPE, "stale", {"url": "https://old.example"})
    nio_client.room_get_state.return_value = SimpleNamespace(
        events=[
            {"type": CALL_MEMBER_EVENT_TYPE, "state_key": "@bob:example.org_DEV", "content": {"call_id": ""}},
            {"type": "m.room.name", "state_key": "", "content": "not-a-dict"},
            {"type": "m.room.topic"},
        ]
    )

    assert await chat.refresh_room_state(ROOM_ID)

    room = chat.get_room(ROOM_ID)
    assert room.get_state_events(WIDGET_EVENT_TYPE) == []
    assert room.get_state_events(CALL_MEMBER_EVENT_TYPE, "@bob:example.org_DEV")[0].content == {"call_id": ""}
    assert room.get_state_events("m.room.name", "")[0].content == {}


@pytest.mark.asyncio
async def test_refresh_error_keeps_cache(nio_client):
    chat = NioChatClient(nio_client)
    chat.record_state_event(ROOM_ID, WIDGET_EVENT_TYPE, "w1", {"url": "https://call.element.io"})
    nio_client.room_get_state.return_value = RoomGetStateError("forbidden")

    assert not await chat.refresh_room_state(ROOM_ID)
    assert len(chat.get_room(ROOM_ID).get_state_events(WIDGET_EVENT_TYPE)) == 1

