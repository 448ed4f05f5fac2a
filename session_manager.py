import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
import inspect
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Optional

from call_scanner import CallDescriptor, CallStateScanner, SourceKind
from errors import (
    InvalidSound,
    JoinCancelled,
    MediaConnectFailed,
    NoCallDescriptor,
    NotInCall,
    PlaybackFailed,
    PlaybackTimeout,
    VoiceError,
)
from matrix_state import ChatClient
from media_client import MediaClient, MediaHandle
from media_target import MediaTarget, MediaTargetExtractor
from token_broker import SessionToken, TokenBroker


logger = logging.getLogger(__name__)

CallDetectedHandler = Callable[[str, CallDescriptor], Optional[Awaitable[None]]]


class SessionState(str, Enum):
    IDLE = "Idle"
    RESOLVING = "Resolving"
    TOKEN_ACQUIRED = "TokenAcquired"
    CONNECTED = "Connected"
    DISCONNECTING = "Disconnecting"
    FAILED = "Failed"


@dataclass(slots=True)
class VoiceSession:
    room_id: str
    state: SessionState = SessionState.IDLE
    media_target: Optional[MediaTarget] = None
    handle: Optional[MediaHandle] = None
    descriptor: Optional[CallDescriptor] = None
    joined_at: Optional[float] = None
    last_error: Optional[str] = None


@dataclass(slots=True, frozen=True)
class SessionSnapshot:
    room_id: str
    state: SessionState
    media_target: Optional[MediaTarget]
    source_kind: Optional[SourceKind]
    joined_at: Optional[float]
    last_error: Optional[str]


@dataclass(slots=True, frozen=True)
class JoinResult:
    success: bool
    error: Optional[str] = None
    detail: Optional[str] = None


@dataclass(slots=True, frozen=True)
class LeaveResult:
    success: bool
    error: Optional[str] = None
    detail: Optional[str] = None


@dataclass(slots=True, frozen=True)
class PlayResult:
    success: bool
    duration_estimate: Optional[float] = None
    error: Optional[str] = None
    detail: Optional[str] = None


@dataclass(slots=True, frozen=True)
class KnownVoiceRoom:
    room_id: str
    name: str
    source_kind: SourceKind
    active: bool


class SessionManager:
    """Owns the per-room voice session table.

    join/leave/reset for one room are serialized by that room's lock; rooms
    never wait on each other. The join pipeline itself runs as a separate task
    so that a leave can cancel it and concurrent joins can share it.
    """

    def __init__(
        self,
        chat: ChatClient,
        scanner: CallStateScanner,
        extractor: MediaTargetExtractor,
        broker: TokenBroker,
        media: MediaClient,
        *,
        resolve_attempts: int = 3,
        resolve_base_delay: float = 1.0,
        connect_timeout: float = 15.0,
        play_timeout: float = 10.0,
        on_call_detected: Optional[CallDetectedHandler] = None,
    ):
        self.chat = chat
        self.scanner = scanner
        self.extractor = extractor
        self.broker = broker
        self.media = media
        self.resolve_attempts = max(1, int(resolve_attempts))
        self.resolve_base_delay = max(0.0, float(resolve_base_delay))
        self.connect_timeout = float(connect_timeout)
        self.play_timeout = float(play_timeout)
        self.on_call_detected = on_call_detected

        self._sessions: dict[str, VoiceSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._join_tasks: dict[str, asyncio.Task] = {}
        self._scheduled: dict[str, asyncio.Task] = {}

    @staticmethod
    def _require_room_id(room_id: str):
        if not isinstance(room_id, str) or not room_id.startswith("!"):
            logger.error("Invalid room id passed to session manager: %r", room_id)
            raise ValueError(f"Invalid room id: {room_id!r}")

    @asynccontextmanager
    async def _room_lock(self, room_id: str) -> AsyncIterator[None]:
        # A lock lives only while someone holds or waits on it.
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        self._lock_users[room_id] = self._lock_users.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[room_id] - 1
            if remaining:
                self._lock_users[room_id] = remaining
            else:
                self._lock_users.pop(room_id, None)
                self._locks.pop(room_id, None)

    @staticmethod
    def _snapshot(session: VoiceSession) -> SessionSnapshot:
        return SessionSnapshot(
            room_id=session.room_id,
            state=session.state,
            media_target=session.media_target,
            source_kind=session.descriptor.source_kind if session.descriptor else None,
            joined_at=session.joined_at,
            last_error=session.last_error,
        )

    def get_session(self, room_id: str) -> Optional[SessionSnapshot]:
        session = self._sessions.get(room_id)
        return self._snapshot(session) if session is not None else None

    def sessions(self) -> list[SessionSnapshot]:
        return [self._snapshot(session) for session in list(self._sessions.values())]

    def is_connected(self, room_id: str) -> bool:
        session = self._sessions.get(room_id)
        return session is not None and session.state == SessionState.CONNECTED

    async def join(self, room_id: str) -> JoinResult:
        self._require_room_id(room_id)
        async with self._room_lock(room_id):
            session = self._sessions.get(room_id)
            if session is not None and session.state == SessionState.CONNECTED:
                return JoinResult(success=True)

            task = self._join_tasks.get(room_id)
            if task is None or task.done():
                session = VoiceSession(room_id=room_id)
                self._sessions[room_id] = session
                task = asyncio.create_task(self._run_join(session), name=f"voice-join-{room_id}")
                self._join_tasks[room_id] = task
            else:
                logger.info("Join already in progress for %s, waiting for it", room_id)

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return JoinResult(success=False, error=JoinCancelled.code, detail="Join abandoned by leave")
            raise

    async def _run_join(self, session: VoiceSession) -> JoinResult:
        room_id = session.room_id
        try:
            session.state = SessionState.RESOLVING
            descriptor = await self._resolve_descriptor(room_id)
            session.descriptor = descriptor

            target = self.extractor.extract(descriptor)
            session.media_target = target

            token = await self.broker.acquire_token(self.chat.access_token, room_id, target)
            session.state = SessionState.TOKEN_ACQUIRED

            handle = await self._connect(target, token)
            session.handle = handle
            session.state = SessionState.CONNECTED
            session.joined_at = time.time()
            session.last_error = None
            logger.info(
                "Joined call in %s (%s, media room %s)",
                room_id,
                descriptor.source_kind.value,
                target.session_room_name,
            )
            return JoinResult(success=True)
        except VoiceError as exc:
            session.state = SessionState.FAILED
            session.last_error = f"{exc.code}: {exc.detail}"
            logger.warning("Join failed in %s: %s", room_id, session.last_error)
            return JoinResult(success=False, error=exc.code, detail=exc.detail)
        except asyncio.CancelledError:
            logger.info("Join in %s cancelled", room_id)
            raise
        except Exception as exc:
            session.state = SessionState.FAILED
            session.last_error = f"{type(exc).__name__}: {exc}"
            logger.exception("Unexpected error while joining %s", room_id)
            return JoinResult(success=False, error=type(exc).__name__, detail=str(exc))
        finally:
            if self._join_tasks.get(room_id) is asyncio.current_task():
                self._join_tasks.pop(room_id, None)

    async def _refresh_room_state(self, room_id: str):
        try:
            await self.chat.refresh_room_state(room_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Room state refresh failed for %s: %s", room_id, exc)

    async def _resolve_descriptor(self, room_id: str) -> CallDescriptor:
        for attempt in range(1, self.resolve_attempts + 1):
            await self._refresh_room_state(room_id)
            descriptor = self.scanner.scan(room_id)
            if descriptor is not None:
                logger.info(
                    "Found %s in %s (attempt %d)",
                    descriptor.source_kind.value,
                    room_id,
                    attempt,
                )
                return descriptor

            if attempt < self.resolve_attempts:
                delay = attempt * self.resolve_base_delay
                logger.info(
                    "No call found in %s (attempt %d/%d), retrying in %.1fs",
                    room_id,
                    attempt,
                    self.resolve_attempts,
                    delay,
                )
                await asyncio.sleep(delay)

        raise NoCallDescriptor(f"No call found in {room_id} after {self.resolve_attempts} attempts")

    async def _connect(self, target: MediaTarget, token: SessionToken) -> MediaHandle:
        server_url = token.server_url or target.server_base_url
        try:
            return await asyncio.wait_for(
                self.media.connect(server_url, token.value, target.session_room_name),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise MediaConnectFailed(
                f"Connecting to {server_url} timed out after {self.connect_timeout:.1f}s"
            ) from exc
        except VoiceError:
            raise
        except Exception as exc:
            logger.exception("Media client failed to connect to %s", server_url)
            raise MediaConnectFailed(str(exc)) from exc

    async def _disconnect(self, session: VoiceSession):
        handle = session.handle
        session.handle = None
        if handle is None:
            return
        try:
            await handle.disconnect()
        except Exception as exc:
            logger.warning("Media disconnect failed in %s: %s", session.room_id, exc)

    async def _teardown_locked(self, room_id: str) -> Optional[VoiceSession]:
        self._cancel_scheduled(room_id)
        session = self._sessions.get(room_id)
        if session is not None:
            session.state = SessionState.DISCONNECTING

        task = self._join_tasks.pop(room_id, None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if session is not None:
            await self._disconnect(session)
            self._sessions.pop(room_id, None)
        return session

    async def leave(self, room_id: str) -> LeaveResult:
        self._require_room_id(room_id)
        async with self._room_lock(room_id):
            if room_id not in self._sessions:
                return LeaveResult(success=False, error=NotInCall.code, detail="Not in a call in this room")
            await self._teardown_locked(room_id)
        logger.info("Left call in %s", room_id)
        return LeaveResult(success=True)

    async def play_sound(self, room_id: str, sound_bytes: bytes) -> PlayResult:
        self._require_room_id(room_id)
        if not sound_bytes:
            return PlayResult(success=False, error=InvalidSound.code, detail="Sound payload is empty")
        try:
            return await asyncio.wait_for(self._play(room_id, sound_bytes), timeout=self.play_timeout)
        except asyncio.TimeoutError:
            logger.warning("Playback in %s timed out after %.1fs", room_id, self.play_timeout)
            return PlayResult(
                success=False,
                error=PlaybackTimeout.code,
                detail=f"Playback did not finish within {self.play_timeout:.1f}s",
            )

    async def _play(self, room_id: str, sound_bytes: bytes) -> PlayResult:
        if not self.is_connected(room_id):
            joined = await self.join(room_id)
            if not joined.success:
                return PlayResult(success=False, error=joined.error, detail=joined.detail)

        session = self._sessions.get(room_id)
        handle = session.handle if session is not None else None
        if handle is None or session.state != SessionState.CONNECTED:
            return PlayResult(success=False, error=NotInCall.code, detail="Session was closed before playback")

        try:
            duration = await handle.publish_track(sound_bytes)
        except VoiceError as exc:
            return PlayResult(success=False, error=exc.code, detail=exc.detail)
        except Exception as exc:
            logger.exception("Playback failed in %s", room_id)
            return PlayResult(success=False, error=PlaybackFailed.code, detail=str(exc))
        return PlayResult(success=True, duration_estimate=duration)

    def find_session_for_user(self, user_id: str) -> Optional[str]:
        if not isinstance(user_id, str) or not user_id.startswith("@"):
            logger.error("Invalid user id passed to session manager: %r", user_id)
            raise ValueError(f"Invalid user id: {user_id!r}")

        for room in list(self.chat.get_rooms()):
            descriptor = self.scanner.scan_member_in_room(room, user_id)
            if descriptor is not None:
                logger.info("Found %s in a call in %s", user_id, room.room_id)
                return room.room_id
        logger.info("No call found for %s", user_id)
        return None

    def list_known_voice_rooms(self) -> list[KnownVoiceRoom]:
        known: list[KnownVoiceRoom] = []
        for room in list(self.chat.get_rooms()):
            descriptor = self.scanner.scan_room(room)
            if descriptor is None:
                continue
            known.append(
                KnownVoiceRoom(
                    room_id=room.room_id,
                    name=room.display_name or room.room_id,
                    source_kind=descriptor.source_kind,
                    active=self.is_connected(room.room_id),
                )
            )
        return known

    def schedule_detection(self, room_id: str, delay: float = 0.0):
        self._cancel_scheduled(room_id)
        self._scheduled[room_id] = asyncio.create_task(
            self._detect_later(room_id, max(0.0, float(delay))),
            name=f"voice-detect-{room_id}",
        )

    def _cancel_scheduled(self, room_id: str):
        task = self._scheduled.pop(room_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _detect_later(self, room_id: str, delay: float):
        try:
            await asyncio.sleep(delay)
            await self._refresh_room_state(room_id)
            descriptor = self.scanner.scan(room_id)
            if descriptor is None:
                logger.debug("No call detected in %s", room_id)
                return
            logger.info("Detected %s call in %s", descriptor.source_kind.value, room_id)
            if self.on_call_detected is not None:
                result = self.on_call_detected(room_id, descriptor)
                if inspect.isawaitable(result):
                    await result
        except asyncio.CancelledError:
            raise
        except VoiceError as exc:
            logger.info("Call detection skipped for %s: %s", room_id, exc.detail)
        except Exception as exc:
            logger.error("Call detection failed for %s: %s", room_id, exc)
        finally:
            if self._scheduled.get(room_id) is asyncio.current_task():
                self._scheduled.pop(room_id, None)

    async def reset(self):
        for task in list(self._scheduled.values()):
            task.cancel()
        self._scheduled.clear()

        room_ids = set(self._sessions) | set(self._join_tasks)
        for room_id in room_ids:
            async with self._room_lock(room_id):
                await self._teardown_locked(room_id)
        if room_ids:
            logger.info("Voice session table reset (%d room(s) dropped)", len(room_ids))

    async def close(self):
        await self.reset()
        await self.broker.close()
