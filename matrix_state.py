from dataclasses import dataclass, field
import logging
from typing import Any, Optional, Protocol

from nio import AsyncClient, MatrixRoom, RoomGetStateError, UnknownEvent


logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StateEvent:
    event_type: str
    state_key: str
    content: dict[str, Any] = field(default_factory=dict)


class RoomState:
    """Point-in-time view of one room's state events, grouped by type and state key."""

    def __init__(self, room_id: str, display_name: str = "", encrypted: bool = False):
        self.room_id = room_id
        self.display_name = display_name or ""
        self.encrypted = bool(encrypted)
        self._events: dict[str, dict[str, dict[str, Any]]] = {}

    def set_event(self, event_type: str, state_key: str, content: Optional[dict[str, Any]]):
        self._events.setdefault(event_type, {})[state_key] = dict(content or {})

    def get_state_events(self, event_type: str, state_key: Optional[str] = None) -> list[StateEvent]:
        by_key = self._events.get(event_type) or {}
        if state_key is not None:
            content = by_key.get(state_key)
            if content is None:
                return []
            return [StateEvent(event_type, state_key, content)]
        return [StateEvent(event_type, key, content) for key, content in by_key.items()]


class ChatClient(Protocol):
    @property
    def user_id(self) -> str: ...

    @property
    def access_token(self) -> str: ...

    def get_room(self, room_id: str) -> Optional[RoomState]: ...

    def get_rooms(self) -> list[RoomState]: ...

    async def refresh_room_state(self, room_id: str) -> bool: ...


class NioChatClient:
    """Chat client backed by matrix-nio.

    nio's MatrixRoom only keeps the state it understands (members, names,
    encryption), so call and widget state events are cached here as they arrive
    through sync, and re-fetched with ``room_get_state`` on demand.
    """

    def __init__(self, client: AsyncClient):
        self.client = client
        self._state: dict[str, dict[str, dict[str, dict[str, Any]]]] = {}

    @property
    def user_id(self) -> str:
        return self.client.user_id

    @property
    def access_token(self) -> str:
        return self.client.access_token

    def get_room(self, room_id: str) -> Optional[RoomState]:
        room = self.client.rooms.get(room_id)
        if room is None:
            return None
        return self._view(room)

    def get_rooms(self) -> list[RoomState]:
        return [self._view(room) for room in list(self.client.rooms.values())]

    def record_state_event(self, room_id: str, event_type: str, state_key: str, content: Any):
        if not isinstance(content, dict):
            content = {}
        self._state.setdefault(room_id, {}).setdefault(event_type, {})[state_key] = content

    def record_event(self, room: MatrixRoom, event: UnknownEvent) -> bool:
        source = event.source if isinstance(event.source, dict) else {}
        state_key = source.get("state_key")
        if not isinstance(state_key, str):
            return False
        self.record_state_event(room.room_id, event.type, state_key, source.get("content"))
        return True

    async def refresh_room_state(self, room_id: str) -> bool:
        response = await self.client.room_get_state(room_id)
        if isinstance(response, RoomGetStateError):
            logger.warning("Could not fetch state for room %s: %s", room_id, response.message)
            return False

        fresh: dict[str, dict[str, dict[str, Any]]] = {}
        for raw in response.events:
            if not isinstance(raw, dict):
                continue
            event_type = raw.get("type")
            state_key = raw.get("state_key")
            if not isinstance(event_type, str) or not isinstance(state_key, str):
                continue
            content = raw.get("content")
            fresh.setdefault(event_type, {})[state_key] = content if isinstance(content, dict) else {}
        self._state[room_id] = fresh
        return True

    def _view(self, room: MatrixRoom) -> RoomState:
        view = RoomState(room.room_id, display_name=room.display_name, encrypted=room.encrypted)
        for event_type, by_key in self._state.get(room.room_id, {}).items():
            for state_key, content in by_key.items():
                view.set_event(event_type, state_key, content)
        return view
