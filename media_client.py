import asyncio
import logging
from typing import Protocol

from livekit import rtc

from errors import InvalidSound, MediaConnectFailed


logger = logging.getLogger(__name__)

FRAME_MS = 10
BYTES_PER_SAMPLE = 2


class MediaHandle(Protocol):
    async def publish_track(self, sound_bytes: bytes) -> float: ...

    async def disconnect(self) -> None: ...


class MediaClient(Protocol):
    async def connect(self, server_url: str, token: str, room_name: str) -> MediaHandle: ...


def pcm_duration(num_bytes: int, sample_rate: int, num_channels: int) -> float:
    frame_bytes = BYTES_PER_SAMPLE * max(1, num_channels)
    return (num_bytes // frame_bytes) / float(max(1, sample_rate))


class LiveKitMediaHandle:
    """A connected LiveKit room that publishes one short-lived audio track per clip."""

    def __init__(self, room: rtc.Room, room_name: str, *, sample_rate: int, num_channels: int):
        self.room = room
        self.room_name = room_name
        self.sample_rate = sample_rate
        self.num_channels = num_channels

    async def publish_track(self, sound_bytes: bytes) -> float:
        """Publish raw s16le PCM and return its duration in seconds once played out."""
        frame_bytes = BYTES_PER_SAMPLE * self.num_channels
        usable = len(sound_bytes) - (len(sound_bytes) % frame_bytes)
        if usable <= 0:
            raise InvalidSound("Sound payload is empty")
        duration = pcm_duration(usable, self.sample_rate, self.num_channels)

        samples_per_frame = self.sample_rate * FRAME_MS // 1000
        chunk_bytes = samples_per_frame * frame_bytes

        source = rtc.AudioSource(self.sample_rate, self.num_channels)
        publication = None
        try:
            track = rtc.LocalAudioTrack.create_audio_track("soundboard", source)
            options = rtc.TrackPublishOptions(source=rtc.TrackSource.SOURCE_MICROPHONE)
            publication = await self.room.local_participant.publish_track(track, options)
            logger.info("Publishing %.2fs clip in %s", duration, self.room_name)

            view = memoryview(sound_bytes)[:usable]
            for offset in range(0, usable, chunk_bytes):
                chunk = bytes(view[offset : offset + chunk_bytes])
                frame = rtc.AudioFrame(
                    data=chunk,
                    sample_rate=self.sample_rate,
                    num_channels=self.num_channels,
                    samples_per_channel=len(chunk) // frame_bytes,
                )
                await source.capture_frame(frame)
            await source.wait_for_playout()
        finally:
            if publication is not None:
                try:
                    await self.room.local_participant.unpublish_track(publication.sid)
                except Exception as exc:
                    logger.warning("Failed to unpublish clip track in %s: %s", self.room_name, exc)
            await source.aclose()
        return duration

    async def disconnect(self):
        await self.room.disconnect()
        logger.info("Disconnected from LiveKit room %s", self.room_name)


class LiveKitMediaClient:
    def __init__(self, *, sample_rate: int = 48000, num_channels: int = 1):
        self.sample_rate = int(sample_rate)
        self.num_channels = int(num_channels)

    async def connect(self, server_url: str, token: str, room_name: str) -> LiveKitMediaHandle:
        room = rtc.Room()

        @room.on("participant_connected")
        def _on_participant_connected(participant: rtc.RemoteParticipant):
            logger.info("Participant connected in %s: %s", room_name, participant.identity)

        @room.on("disconnected")
        def _on_disconnected(reason):
            logger.info("LiveKit room %s disconnected (%s)", room_name, reason)

        logger.info("Connecting to LiveKit room %s at %s", room_name, server_url)
        try:
            await room.connect(server_url, token, rtc.RoomOptions(auto_subscribe=False))
        except asyncio.CancelledError:
            await room.disconnect()
            raise
        except Exception as exc:
            await room.disconnect()
            raise MediaConnectFailed(f"LiveKit connect to {server_url} failed: {exc}") from exc

        logger.info("Connected to LiveKit room %s", room_name)
        return LiveKitMediaHandle(room, room_name, sample_rate=self.sample_rate, num_channels=self.num_channels)
