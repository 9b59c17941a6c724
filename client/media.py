"""Local capture devices, opened through aiortc's ``MediaPlayer`` (PyAV/FFmpeg)."""
import asyncio
import fractions
import platform
from dataclasses import dataclass
from functools import partial
from typing import Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame, VideoFrame

from logging_config import get_logger

logger = get_logger(__name__)


class MediaAccessError(Exception):
    PERMISSION_DENIED = "permission-denied"
    DEVICE_NOT_FOUND = "device-not-found"

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or reason)


@dataclass
class DeviceSpec:
    file: str
    format: Optional[str] = None
    options: Optional[dict] = None


# (camera, microphone, screen) per OS
DEFAULT_DEVICES = {
    "Linux": (
        DeviceSpec("/dev/video0", "v4l2", {"video_size": "640x480", "framerate": "30"}),
        DeviceSpec("default", "pulse"),
        DeviceSpec(":0.0", "x11grab", {"video_size": "1280x720", "framerate": "15"}),
    ),
    "Darwin": (
        DeviceSpec("default:none", "avfoundation", {"framerate": "30", "video_size": "640x480"}),
        DeviceSpec("none:default", "avfoundation"),
        DeviceSpec("Capture screen 0:none", "avfoundation", {"framerate": "15"}),
    ),
    "Windows": (
        DeviceSpec("video=Integrated Camera", "dshow", {"video_size": "640x480"}),
        DeviceSpec("audio=Microphone", "dshow"),
        DeviceSpec("desktop", "gdigrab", {"framerate": "15"}),
    ),
}


class LocalTrack(MediaStreamTrack):
    """A capture track that can be muted in place.

    While disabled the track keeps pulling from its source (capture is never
    restarted) but emits blank frames with the same timing instead.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True
        source.on("ended", self.stop)

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return blank_like(frame)

    def stop(self):
        super().stop()
        self.source.stop()


def blank_like(frame):
    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        blank.sample_rate = frame.sample_rate
    else:
        blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
    for plane in blank.planes:
        plane.update(bytes(plane.buffer_size))
    blank.pts = frame.pts
    blank.time_base = frame.time_base or fractions.Fraction(1, 90000)
    return blank


@dataclass
class LocalTracks:
    audio: MediaStreamTrack
    video: MediaStreamTrack


class MediaDevices:
    """Opens camera, microphone and screen capture.

    Failures are classified into ``MediaAccessError`` reasons so a caller can
    offer a retry; nothing here is fatal.
    """

    def __init__(self, camera: Optional[DeviceSpec] = None, microphone: Optional[DeviceSpec] = None, screen: Optional[DeviceSpec] = None):
        default_camera, default_microphone, default_screen = DEFAULT_DEVICES.get(platform.system(), DEFAULT_DEVICES["Linux"])
        self.camera = camera or default_camera
        self.microphone = microphone or default_microphone
        self.screen = screen or default_screen

    async def get_user_media(self) -> LocalTracks:
        camera = await self._open(self.camera, "video")
        try:
            microphone = await self._open(self.microphone, "audio")
        except MediaAccessError:
            camera.stop()
            raise
        logger.info(f"Opened camera {self.camera.file} and microphone {self.microphone.file}")
        return LocalTracks(audio=microphone, video=camera)

    async def get_display_media(self) -> LocalTrack:
        track = await self._open(self.screen, "video")
        logger.info(f"Opened screen capture {self.screen.file}")
        return track

    async def _open(self, device: DeviceSpec, kind: str) -> LocalTrack:
        loop = asyncio.get_running_loop()
        try:
            # Opening a device blocks inside FFmpeg
            player = await loop.run_in_executor(None, partial(MediaPlayer, device.file, format=device.format, options=device.options or {}))
        except PermissionError as e:
            logger.warning(f"Access to {device.file} denied: {e}")
            raise MediaAccessError(MediaAccessError.PERMISSION_DENIED, f"Access to {device.file} was denied") from e
        except OSError as e:
            logger.warning(f"Could not open {device.file}: {e}")
            raise MediaAccessError(MediaAccessError.DEVICE_NOT_FOUND, f"No {kind} device at {device.file}") from e

        source = player.video if kind == "video" else player.audio
        if source is None:
            raise MediaAccessError(MediaAccessError.DEVICE_NOT_FOUND, f"{device.file} has no {kind} stream")
        return LocalTrack(source)
