import asyncio
from typing import Callable, Iterable, Optional

from client.media import LocalTracks, MediaDevices
from logging_config import get_logger
from schemas.messages import AudioStateMessage, ScreenShareStartedMessage, ScreenShareStoppedMessage, VideoStateMessage

logger = get_logger(__name__)


class TrackController:
    """Owns the local capture tracks and applies source switches to every session.

    ``sessions`` returns the live negotiators; ``send`` delivers a client
    message to the hub.
    """

    def __init__(self, devices: MediaDevices, send: Callable, sessions: Callable[[], Iterable]):
        self.devices = devices
        self.room_id: Optional[str] = None
        self.tracks: Optional[LocalTracks] = None
        self.camera_track = None
        self.screen_track = None
        self.mic_enabled = True
        self.camera_enabled = True
        self.is_screen_sharing = False
        self._send = send
        self._sessions = sessions

    @property
    def in_call(self) -> bool:
        return self.tracks is not None

    @property
    def outgoing_video(self):
        return self.screen_track if self.is_screen_sharing else self.camera_track

    def local_tracks(self) -> list:
        if not self.in_call:
            return []
        return [track for track in (self.tracks.audio, self.outgoing_video) if track is not None]

    async def start_call(self) -> LocalTracks:
        if self.tracks is not None:
            return self.tracks
        # MediaAccessError propagates so the caller can offer a retry
        self.tracks = await self.devices.get_user_media()
        self.camera_track = self.tracks.video
        self.mic_enabled = True
        self.camera_enabled = True
        logger.info("Local camera and microphone ready")
        return self.tracks

    async def toggle_mic(self, enabled: bool) -> bool:
        if not self.in_call:
            return False
        self.tracks.audio.enabled = enabled
        self.mic_enabled = enabled
        await self._send(AudioStateMessage(room_id=self.room_id, is_audio_enabled=enabled))
        return True

    async def toggle_camera(self, enabled: bool) -> bool:
        """Returns False when the change is rejected (camera can't go off while sharing)."""
        if not self.in_call:
            return False
        if not enabled and self.is_screen_sharing:
            logger.info("Camera cannot be turned off while screen sharing")
            return False
        self.camera_track.enabled = enabled
        self.camera_enabled = enabled
        await self._send(VideoStateMessage(room_id=self.room_id, is_video_enabled=enabled))
        return True

    async def start_screen_share(self):
        if not self.in_call:
            raise RuntimeError("Start the call before sharing the screen")
        if self.is_screen_sharing:
            return self.screen_track

        screen = await self.devices.get_display_media()
        self.screen_track = screen
        self.is_screen_sharing = True
        # The capture source can end on its own (window closed, "stop sharing" in the OS)
        screen.on("ended", self._on_screen_track_ended)
        await self._substitute_video(screen)
        await self._send(ScreenShareStartedMessage(room_id=self.room_id))
        logger.info("Screen sharing started")
        return screen

    async def stop_screen_share(self):
        if not self.is_screen_sharing:
            return
        screen = self.screen_track
        self.is_screen_sharing = False
        self.screen_track = None
        await self._substitute_video(self.camera_track)
        screen.stop()
        await self._send(ScreenShareStoppedMessage(room_id=self.room_id))
        logger.info("Screen sharing stopped")

    def _on_screen_track_ended(self):
        if self.is_screen_sharing:
            asyncio.ensure_future(self.stop_screen_share())

    async def _substitute_video(self, track):
        sessions = [session for session in self._sessions() if session.active]
        await asyncio.gather(*(session.replace_track("video", track) for session in sessions))
        logger.debug(f"Replaced outgoing video on {len(sessions)} sessions")

    def stop_all(self):
        self.is_screen_sharing = False
        for track in (self.screen_track, self.camera_track, self.tracks.audio if self.tracks else None):
            if track is not None:
                track.stop()
        self.tracks = None
        self.camera_track = None
        self.screen_track = None
        logger.info("Local tracks stopped")
