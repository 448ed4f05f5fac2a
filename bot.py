from dataclasses import dataclass
import logging
import time
from typing import Optional

from nio import AsyncClient, InviteMemberEvent, JoinError, MatrixRoom, RoomPutStateError, UnknownEvent

from call_scanner import (
    CALL_STATE_EVENT_TYPES,
    WIDGET_EVENT_TYPE,
    CallDescriptor,
    CallStateScanner,
    ScanContext,
    scan_widget,
    synthesize_locator,
)
from config import Config
from errors import BrokerError, CallCreateFailed, NotInCall, RoomNotFound
from matrix_state import NioChatClient
from media_client import LiveKitMediaClient
from media_target import MediaTargetExtractor
from session_manager import JoinResult, KnownVoiceRoom, LeaveResult, PlayResult, SessionManager
from token_broker import TokenBroker


logger = logging.getLogger(__name__)

# Call member events tend to arrive in bursts when a call starts.
CALL_EVENT_DEBOUNCE_SECONDS = 1.0


@dataclass(slots=True, frozen=True)
class CreateCallResult:
    success: bool
    created: bool = False
    widget_id: Optional[str] = None
    error: Optional[str] = None
    detail: Optional[str] = None


class SoundboardBot:
    """Matrix soundboard core (sync loop, invites, call detection, voice sessions)."""

    def __init__(self, config: Config):
        self.config = config
        self.client = AsyncClient(config.MATRIX_HOMESERVER, config.MATRIX_USER_ID)
        self.client.access_token = config.MATRIX_ACCESS_TOKEN
        self.first_sync_done = False

        self.chat = NioChatClient(self.client)
        self.scanner = CallStateScanner(self.chat, call_app_url=config.CALL_APP_URL)
        self.broker = TokenBroker(
            config.MATRIX_HOMESERVER,
            token_path=config.TOKEN_PATH,
            discovery_timeout=config.DISCOVERY_TIMEOUT_SECONDS,
            exchange_timeout=config.EXCHANGE_TIMEOUT_SECONDS,
            discovery_cache_seconds=config.DISCOVERY_CACHE_SECONDS,
        )
        self.sessions = SessionManager(
            self.chat,
            self.scanner,
            MediaTargetExtractor(config.CALL_APP_URL),
            self.broker,
            LiveKitMediaClient(sample_rate=config.MEDIA_SAMPLE_RATE, num_channels=config.MEDIA_NUM_CHANNELS),
            resolve_attempts=config.RESOLVE_ATTEMPTS,
            resolve_base_delay=config.RESOLVE_BASE_DELAY_SECONDS,
            connect_timeout=config.CONNECT_TIMEOUT_SECONDS,
            play_timeout=config.PLAY_TIMEOUT_SECONDS,
            on_call_detected=self._on_call_detected,
        )
        self.client.add_event_callback(self.on_invite, InviteMemberEvent)
        self.client.add_event_callback(self.on_state_event, UnknownEvent)

    async def join(self, room_id: str) -> JoinResult:
        return await self.sessions.join(room_id)

    async def leave(self, room_id: str) -> LeaveResult:
        return await self.sessions.leave(room_id)

    async def play_sound(self, room_id: str, sound_bytes: bytes) -> PlayResult:
        return await self.sessions.play_sound(room_id, sound_bytes)

    async def play_for_user(self, user_id: str, sound_bytes: bytes, fallback_room_id: Optional[str] = None) -> PlayResult:
        """Play in whichever call ``user_id`` is in, e.g. when asked from a text-only room."""
        room_id = self.sessions.find_session_for_user(user_id) or fallback_room_id
        if room_id is None:
            return PlayResult(success=False, error=NotInCall.code, detail=f"{user_id} is not in a call")
        return await self.sessions.play_sound(room_id, sound_bytes)

    def list_known_voice_rooms(self) -> list[KnownVoiceRoom]:
        return self.sessions.list_known_voice_rooms()

    async def create_call(self, room_id: str) -> CreateCallResult:
        """Add an Element Call widget to the room unless one is already there."""
        room = self.chat.get_room(room_id)
        if room is None:
            return CreateCallResult(success=False, error=RoomNotFound.code, detail=f"Unknown room {room_id}")

        context = ScanContext(user_id=self.client.user_id or "", call_app_url=self.config.CALL_APP_URL)
        existing = scan_widget(room, context)
        if existing is not None:
            logger.info("Room %s already has a call widget (%s)", room_id, existing.state_key)
            return CreateCallResult(success=True, created=False, widget_id=existing.state_key)

        widget_id = f"element-call-{int(time.time() * 1000)}"
        content = {
            "id": widget_id,
            "type": "jitsi",
            "url": synthesize_locator(self.config.CALL_APP_URL, room_id),
            "name": "Voice Call",
            "data": {"roomId": room_id},
        }
        logger.info("Creating call widget in %s", room_id)
        response = await self.client.room_put_state(room_id, WIDGET_EVENT_TYPE, content, state_key=widget_id)
        if isinstance(response, RoomPutStateError):
            logger.error("Failed creating call widget in %s: %s", room_id, response.message)
            return CreateCallResult(success=False, error=CallCreateFailed.code, detail=response.message)

        self.chat.record_state_event(room_id, WIDGET_EVENT_TYPE, widget_id, content)
        return CreateCallResult(success=True, created=True, widget_id=widget_id)

    async def _on_call_detected(self, room_id: str, descriptor: CallDescriptor):
        configured = room_id == self.config.VOICE_ROOM_ID
        if not configured and not self.config.AUTO_JOIN_DETECTED:
            return
        if self.sessions.is_connected(room_id):
            return

        logger.info("Auto-joining %s call in %s", descriptor.source_kind.value, room_id)
        result = await self.sessions.join(room_id)
        if not result.success:
            logger.warning("Auto-join failed in %s: %s (%s)", room_id, result.error, result.detail)

    async def on_state_event(self, room: MatrixRoom, event: UnknownEvent):
        if not self.chat.record_event(room, event):
            return
        if event.type not in CALL_STATE_EVENT_TYPES:
            return
        if not self.first_sync_done or room.encrypted:
            return
        logger.info("Call state changed in %s (%s)", room.room_id, event.type)
        self.sessions.schedule_detection(room.room_id, CALL_EVENT_DEBOUNCE_SECONDS)

    async def on_invite(self, room: MatrixRoom, event: InviteMemberEvent):
        if event.state_key != self.client.user_id or event.membership != "invite":
            return
        if not self.config.AUTO_ACCEPT_INVITES:
            logger.info("Invite received for %s but auto-accept is disabled", room.room_id)
            return

        logger.info("Invited to %s", room.display_name)
        response = await self.client.join(room.room_id)
        if isinstance(response, JoinError):
            logger.error("Failed joining %s: %s", room.room_id, response.message)
            return
        self.sessions.schedule_detection(room.room_id, self.config.INVITE_DETECT_DELAY_SECONDS)

    def _process_existing_rooms(self):
        rooms = self.chat.get_rooms()
        logger.info("Processing %d existing rooms", len(rooms))
        for room in rooms:
            if room.encrypted:
                logger.info("Skipping encrypted room: %s (%s)", room.display_name or "unnamed", room.room_id)
                continue
            self.sessions.schedule_detection(room.room_id, self.config.DETECT_DELAY_SECONDS)

        voice_room_id = self.config.VOICE_ROOM_ID
        if voice_room_id:
            if self.chat.get_room(voice_room_id) is None:
                logger.warning("Configured voice room %s not found", voice_room_id)
            else:
                logger.info("Using configured voice room: %s", voice_room_id)
                self.sessions.schedule_detection(voice_room_id, 0.0)

    async def _run_startup_checks(self):
        warnings: list[str] = []
        try:
            service_url = await self.broker.discover_service_url()
            logger.info("LiveKit JWT service: %s", service_url)
        except BrokerError as exc:
            warnings.append(f"LiveKit JWT service discovery failed ({exc.detail})")

        if warnings:
            for warning in warnings:
                logger.warning("Startup check: %s", warning)
        else:
            logger.info("Startup checks passed")

    async def start(self):
        logger.info("=" * 60)
        logger.info("%s Starting", self.config.BOT_NAME)
        logger.info("Call app URL: %s", self.config.CALL_APP_URL)
        logger.info("Voice room: %s", self.config.VOICE_ROOM_ID or "not configured (auto-detect)")
        logger.info("Auto-join detected calls: %s", self.config.AUTO_JOIN_DETECTED)
        await self._run_startup_checks()
        logger.info("=" * 60)

        await self.sessions.reset()
        await self.client.sync(timeout=30000, full_state=True)
        self.first_sync_done = True
        logger.info("Initial sync completed")
        self._process_existing_rooms()
        logger.info("Bot ready")

        try:
            await self.client.sync_forever(timeout=30000, full_state=False)
        finally:
            await self.sessions.close()
            await self.client.close()
