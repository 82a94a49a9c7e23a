import platform
from typing import Any, List, Optional, Tuple

from av.error import FFmpegError
from aiortc.contrib.media import MediaPlayer

from constants import RESOLUTIONS, FPS_OPTIONS, DEFAULT_RESOLUTION, DEFAULT_FPS
from errors import CaptureUnavailable
from logging_config import get_logger

logger = get_logger(__name__)

# ffmpeg input device for the whole screen, per platform
SCREEN_SOURCES = {
    "Linux": ("x11grab", ":0.0"),
    "Darwin": ("avfoundation", "1:none"),
    "Windows": ("gdigrab", "desktop"),
}
AUDIO_SOURCES = {
    "Linux": ("pulse", "default"),
    "Darwin": ("avfoundation", "none:0"),
    "Windows": ("dshow", "audio=virtual-audio-capturer"),
}


class CaptureStream:
    """The host's local screen (and optionally audio) capture.

    Owned by the host orchestrator. Peer sessions only read its tracks.
    """

    def __init__(self, tracks: List[Any], players: Optional[List[MediaPlayer]] = None):
        self._tracks = list(tracks)
        self._players = players or []
        self.stopped = False

    @property
    def tracks(self) -> List[Any]:
        return list(self._tracks)

    def stop(self):
        """Stop every track now so the OS capture device is released promptly."""
        if self.stopped:
            return
        self.stopped = True
        for track in self._tracks:
            track.stop()
        logger.info(f"Stopped {len(self._tracks)} capture tracks")


def _capture_options(resolution: str, fps: int) -> Tuple[str, str]:
    if resolution not in RESOLUTIONS:
        raise ValueError(f"Unknown resolution {resolution!r}, expected one of {sorted(RESOLUTIONS)}")
    if fps not in FPS_OPTIONS:
        raise ValueError(f"Unsupported frame rate {fps}, expected one of {FPS_OPTIONS}")
    width, height = RESOLUTIONS[resolution]
    return f"{width}x{height}", str(fps)


def open_screen_capture(resolution: str = DEFAULT_RESOLUTION, fps: int = DEFAULT_FPS, audio: bool = True,
                        display: Optional[str] = None) -> CaptureStream:
    """Open screen capture through ffmpeg. Raises CaptureUnavailable when the device cannot be opened."""
    system = platform.system()
    if system not in SCREEN_SOURCES:
        raise CaptureUnavailable(f"Screen capture is not supported on {system}")

    video_size, framerate = _capture_options(resolution, fps)
    fmt, source = SCREEN_SOURCES[system]
    if display:
        source = display

    try:
        screen = MediaPlayer(source, format=fmt, options={"video_size": video_size, "framerate": framerate})
    except (FFmpegError, OSError) as e:
        raise CaptureUnavailable(f"Could not open screen capture ({fmt} {source}): {e}") from e

    tracks = [screen.video]
    players = [screen]
    if audio:
        audio_fmt, audio_source = AUDIO_SOURCES[system]
        try:
            sound = MediaPlayer(audio_source, format=audio_fmt)
            tracks.append(sound.audio)
            players.append(sound)
        except (FFmpegError, OSError) as e:
            # Video alone is still a usable stream
            logger.warning(f"System audio capture unavailable, streaming video only: {e}")

    logger.info(f"Screen capture opened: {video_size} @ {framerate} fps, {len(tracks)} tracks")
    return CaptureStream(tracks, players)
