from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Any, Callable, Optional
from urllib.parse import quote

from errors import RoomNotFound
from matrix_state import ChatClient, RoomState, StateEvent


logger = logging.getLogger(__name__)

CALL_EVENT_TYPE = "org.matrix.msc3401.call"
CALL_MEMBER_EVENT_TYPE = "org.matrix.msc3401.call.member"
WIDGET_EVENT_TYPE = "m.widget"
LEGACY_WIDGET_EVENT_TYPE = "im.vector.modular.widgets"

CALL_STATE_EVENT_TYPES = frozenset(
    {CALL_EVENT_TYPE, CALL_MEMBER_EVENT_TYPE, WIDGET_EVENT_TYPE, LEGACY_WIDGET_EVENT_TYPE}
)

DEFAULT_CALL_APP_URL = "https://call.element.io"

WIDGET_URL_MARKERS = ("element-call", "call.element.io", "jitsi")
WIDGET_NAME_MARKERS = ("call", "voice")
ROOM_NAME_MARKERS = ("call", "voice", "video")


class SourceKind(str, Enum):
    FOCUS_CALL_EVENT = "FocusCallEvent"
    CALL_MEMBER_EVENT = "CallMemberEvent"
    WIDGET_EVENT = "WidgetEvent"
    LEGACY_MODULAR_WIDGET = "LegacyModularWidget"
    INFERRED_BY_NAME = "InferredByName"


@dataclass(slots=True, frozen=True)
class CallDescriptor:
    source_kind: SourceKind
    locator: str
    room_id: str
    state_key: str
    raw_content: dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None


def synthesize_locator(call_app_url: str, room_id: str) -> str:
    return f"{call_app_url.rstrip('/')}/#/?roomId={quote(room_id, safe='')}"


def is_member_state_key(state_key: str, user_id: str) -> bool:
    """Match ``@user:hs`` plus the MatrixRTC device-scoped keys ``@user:hs_DEVICE`` / ``_@user:hs_DEVICE``."""
    if not state_key or not user_id:
        return False
    if state_key.startswith("_"):
        state_key = state_key[1:]
    return state_key == user_id or state_key.startswith(f"{user_id}_")


def _content_call_id(content: dict[str, Any]) -> Optional[str]:
    call_id = content.get("call_id")
    if isinstance(call_id, str) and call_id:
        return call_id
    return None


def _is_livekit_focus(focus: Any) -> bool:
    return isinstance(focus, dict) and focus.get("type") == "livekit"


def advertises_livekit_focus(content: dict[str, Any]) -> bool:
    if _is_livekit_focus(content.get("focus_active")):
        return True
    foci = content.get("foci_preferred")
    if isinstance(foci, list) and any(_is_livekit_focus(focus) for focus in foci):
        return True
    memberships = content.get("memberships")
    if isinstance(memberships, list):
        for membership in memberships:
            if not isinstance(membership, dict):
                continue
            active = membership.get("foci_active")
            if isinstance(active, list) and any(_is_livekit_focus(focus) for focus in active):
                return True
    return False


def scan_focus_call(room: RoomState, context: "ScanContext") -> Optional[CallDescriptor]:
    for event in room.get_state_events(CALL_EVENT_TYPE):
        focus = event.content.get("focus")
        url = focus.get("url") if isinstance(focus, dict) else None
        if not isinstance(url, str) or not url:
            continue
        return CallDescriptor(
            source_kind=SourceKind.FOCUS_CALL_EVENT,
            locator=url,
            room_id=room.room_id,
            state_key=event.state_key,
            raw_content=event.content,
            call_id=_content_call_id(event.content),
        )
    return None


def _member_descriptor(room: RoomState, event: StateEvent, context: "ScanContext") -> CallDescriptor:
    return CallDescriptor(
        source_kind=SourceKind.CALL_MEMBER_EVENT,
        locator=synthesize_locator(context.call_app_url, room.room_id),
        room_id=room.room_id,
        state_key=event.state_key,
        raw_content=event.content,
        call_id=_content_call_id(event.content),
    )


def scan_call_member(room: RoomState, context: "ScanContext") -> Optional[CallDescriptor]:
    # An empty content means that member has left the call.
    members = [event for event in room.get_state_events(CALL_MEMBER_EVENT_TYPE) if event.content]
    for event in members:
        if is_member_state_key(event.state_key, context.user_id):
            return _member_descriptor(room, event, context)
    for event in members:
        if advertises_livekit_focus(event.content):
            return _member_descriptor(room, event, context)
    return None


def _widget_matches(content: dict[str, Any]) -> Optional[str]:
    data = content.get("data")
    url = content.get("url")
    if not isinstance(url, str) or not url:
        url = data.get("url") if isinstance(data, dict) else None
    if not isinstance(url, str) or not url:
        return None
    name = content.get("name")
    name = name.lower() if isinstance(name, str) else ""
    if any(marker in url for marker in WIDGET_URL_MARKERS):
        return url
    if any(marker in name for marker in WIDGET_NAME_MARKERS):
        return url
    return None


def _scan_widgets(room: RoomState, event_type: str, kind: SourceKind) -> Optional[CallDescriptor]:
    for event in room.get_state_events(event_type):
        url = _widget_matches(event.content)
        if url is None:
            continue
        return CallDescriptor(
            source_kind=kind,
            locator=url,
            room_id=room.room_id,
            state_key=event.state_key,
            raw_content=event.content,
        )
    return None


def scan_widget(room: RoomState, context: "ScanContext") -> Optional[CallDescriptor]:
    return _scan_widgets(room, WIDGET_EVENT_TYPE, SourceKind.WIDGET_EVENT)


def scan_legacy_widget(room: RoomState, context: "ScanContext") -> Optional[CallDescriptor]:
    return _scan_widgets(room, LEGACY_WIDGET_EVENT_TYPE, SourceKind.LEGACY_MODULAR_WIDGET)


def scan_room_name(room: RoomState, context: "ScanContext") -> Optional[CallDescriptor]:
    name = (room.display_name or "").lower()
    if not any(marker in name for marker in ROOM_NAME_MARKERS):
        return None
    return CallDescriptor(
        source_kind=SourceKind.INFERRED_BY_NAME,
        locator=synthesize_locator(context.call_app_url, room.room_id),
        room_id=room.room_id,
        state_key="",
        raw_content={"name": room.display_name},
    )


@dataclass(slots=True, frozen=True)
class ScanContext:
    user_id: str
    call_app_url: str = DEFAULT_CALL_APP_URL


ScanStrategy = Callable[[RoomState, ScanContext], Optional[CallDescriptor]]

DEFAULT_STRATEGIES: tuple[ScanStrategy, ...] = (
    scan_focus_call,
    scan_call_member,
    scan_widget,
    scan_legacy_widget,
    scan_room_name,
)


class CallStateScanner:
    """Finds at most one call descriptor per room, trying strategies in priority order."""

    def __init__(
        self,
        chat: ChatClient,
        *,
        call_app_url: str = DEFAULT_CALL_APP_URL,
        strategies: tuple[ScanStrategy, ...] = DEFAULT_STRATEGIES,
    ):
        self.chat = chat
        self.call_app_url = call_app_url or DEFAULT_CALL_APP_URL
        self.strategies = strategies

    def _context(self) -> ScanContext:
        return ScanContext(user_id=self.chat.user_id or "", call_app_url=self.call_app_url)

    def _room(self, room_id: str) -> RoomState:
        room = self.chat.get_room(room_id)
        if room is None:
            raise RoomNotFound(f"Room not known to chat client: {room_id}")
        return room

    def scan(self, room_id: str) -> Optional[CallDescriptor]:
        return self.scan_room(self._room(room_id))

    def scan_room(self, room: RoomState) -> Optional[CallDescriptor]:
        context = self._context()
        for strategy in self.strategies:
            try:
                descriptor = strategy(room, context)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Malformed call state in %s (%s): %s", room.room_id, strategy.__name__, exc)
                continue
            if descriptor is not None:
                logger.debug("Room %s: %s via %s", room.room_id, descriptor.source_kind.value, strategy.__name__)
                return descriptor
        return None

    def scan_member(self, room_id: str, user_id: str) -> Optional[CallDescriptor]:
        return self.scan_member_in_room(self._room(room_id), user_id)

    def scan_member_in_room(self, room: RoomState, user_id: str) -> Optional[CallDescriptor]:
        context = self._context()
        for event in room.get_state_events(CALL_MEMBER_EVENT_TYPE):
            if event.content and is_member_state_key(event.state_key, user_id):
                return _member_descriptor(room, event, context)
        return None
