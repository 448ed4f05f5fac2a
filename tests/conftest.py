import asyncio
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from call_scanner import CALL_MEMBER_EVENT_TYPE, CallStateScanner
from matrix_state import RoomState
from media_target import MediaTargetExtractor
from session_manager import SessionManager
from token_broker import SessionToken


BOT_USER_ID = "@soundboard:example.org"

LIVEKIT_MEMBER_CONTENT = {
    "application": "m.call",
    "call_id": "",
    "device_id": "DEVICE",
    "focus_active": {"type": "livekit", "focus_selection": "oldest_membership"},
    "foci_preferred": [
        {
            "type": "livekit",
            "livekit_service_url": "https://jwt.example.org",
            "livekit_alias": "!room:example.org",
        }
    ],
}


class FakeChatClient:
    def __init__(self, user_id: str = BOT_USER_ID, access_token: str = "syt_bot_token"):
        self.user_id = user_id
        self.access_token = access_token
        self.rooms: dict[str, RoomState] = {}
        self.refresh_calls: list[str] = []

    def add_room(self, room_id: str, display_name: str = "", encrypted: bool = False) -> RoomState:
        room = RoomState(room_id, display_name=display_name, encrypted=encrypted)
        self.rooms[room_id] = room
        return room

    def get_room(self, room_id: str) -> Optional[RoomState]:
        return self.rooms.get(room_id)

    def get_rooms(self) -> list[RoomState]:
        return list(self.rooms.values())

    async def refresh_room_state(self, room_id: str) -> bool:
        self.refresh_calls.append(room_id)
        return True


class FakeHandle:
    def __init__(self, room_name: str, publish_delay: float = 0.0, duration: float = 1.5):
        self.room_name = room_name
        self.publish_delay = publish_delay
        self.duration = duration
        self.published: list[bytes] = []
        self.disconnected = False

    async def publish_track(self, sound_bytes: bytes) -> float:
        await asyncio.sleep(self.publish_delay)
        self.published.append(sound_bytes)
        return self.duration

    async def disconnect(self):
        self.disconnected = True


class FakeMediaClient:
    def __init__(self):
        self.connects: list[tuple[str, str, str]] = []
        self.handles: list[FakeHandle] = []
        self.publish_delay = 0.0
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.cancelled = False
        self.error: Optional[Exception] = None

    async def connect(self, server_url: str, token: str, room_name: str) -> FakeHandle:
        self.connects.append((server_url, token, room_name))
        self.started.set()
        if self.gate is not None:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error is not None:
            raise self.error
        handle = FakeHandle(room_name, publish_delay=self.publish_delay)
        self.handles.append(handle)
        return handle


def make_broker() -> AsyncMock:
    broker = AsyncMock()
    broker.acquire_token.return_value = SessionToken(
        service_url="https://jwt.example.org/api/v1/token",
        value="lk-token",
        server_url="wss://sfu.example.org",
    )
    return broker


def add_call_room(chat: FakeChatClient, room_id: str, member_key: str = "@alice:example.org_DEVICE") -> RoomState:
    room = chat.add_room(room_id, display_name="Standup")
    room.set_event(CALL_MEMBER_EVENT_TYPE, member_key, LIVEKIT_MEMBER_CONTENT)
    return room


@pytest.fixture
def chat() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture
def media() -> FakeMediaClient:
    return FakeMediaClient()


@pytest.fixture
def broker() -> AsyncMock:
    return make_broker()


@pytest.fixture
def manager(chat, media, broker) -> SessionManager:
    return SessionManager(
        chat,
        CallStateScanner(chat),
        MediaTargetExtractor(),
        broker,
        media,
        resolve_base_delay=0.0,
        connect_timeout=1.0,
        play_timeout=1.0,
    )
