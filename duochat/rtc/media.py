"""
Local capture devices.

Capture is acquired once per client lifetime.  Each Session receives its own
relay subscription of the same tracks, so tearing a Session down never stops
the camera or microphone.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from ..errors import DeviceError

LOG = logging.getLogger(__name__)

MEDIA_KINDS = ("audio", "video")


def _platform_defaults() -> Dict[str, Dict[str, Optional[str]]]:
    if sys.platform == "darwin":
        return {
            "video": {"device": "default:none", "format": "avfoundation"},
            "audio": {"device": "none:default", "format": "avfoundation"},
        }
    if sys.platform == "win32":
        return {
            "video": {"device": "video=Integrated Camera", "format": "dshow"},
            "audio": {"device": "audio=Microphone", "format": "dshow"},
        }
    return {
        "video": {"device": "/dev/video0", "format": "v4l2"},
        "audio": {"device": "default", "format": "pulse"},
    }


@dataclass
class MediaConfig:
    """
    Capture device settings.  ``None`` device/format values fall back to the
    platform defaults.
    """

    capture_audio: bool = True
    capture_video: bool = True
    audio_device: Optional[str] = None
    audio_format: Optional[str] = None
    video_device: Optional[str] = None
    video_format: Optional[str] = None
    video_options: Dict[str, str] = field(
        default_factory=lambda: {"framerate": "30", "video_size": "640x480"}
    )

    def sources(self) -> List[Dict[str, object]]:
        defaults = _platform_defaults()
        sources: List[Dict[str, object]] = []
        if self.capture_audio:
            sources.append(
                {
                    "kind": "audio",
                    "file": self.audio_device or defaults["audio"]["device"],
                    "format": self.audio_format or defaults["audio"]["format"],
                    "options": {},
                }
            )
        if self.capture_video:
            sources.append(
                {
                    "kind": "video",
                    "file": self.video_device or defaults["video"]["device"],
                    "format": self.video_format or defaults["video"]["format"],
                    "options": dict(self.video_options),
                }
            )
        return sources


def _silence(frame: AudioFrame) -> AudioFrame:
    muted = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in muted.planes:
        plane.update(bytes(plane.buffer_size))
    muted.sample_rate = frame.sample_rate
    muted.pts = frame.pts
    muted.time_base = frame.time_base
    return muted


def _black(frame: VideoFrame) -> VideoFrame:
    muted = VideoFrame(frame.width, frame.height, "yuv420p")
    luma, *chroma = muted.planes
    luma.update(bytes(luma.buffer_size))
    for plane in chroma:
        plane.update(b"\x80" * plane.buffer_size)
    muted.pts = frame.pts
    muted.time_base = frame.time_base
    return muted


class MuteableTrack(MediaStreamTrack):
    """
    Pass-through track that substitutes silence/black frames while muted, so
    muting never touches what is attached to a transport.
    """

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self._source = source
        self.muted = False

    async def recv(self):
        frame = await self._source.recv()
        if not self.muted:
            return frame
        if self.kind == "audio":
            return _silence(frame)
        return _black(frame)

    def stop(self) -> None:
        super().stop()
        self._source.stop()


PlayerFactory = Callable[..., MediaPlayer]


class MediaSource:
    """
    Owns the local capture stream for the whole client lifetime.
    """

    def __init__(
        self,
        config: Optional[MediaConfig] = None,
        *,
        player_factory: Optional[PlayerFactory] = None,
    ) -> None:
        self.config = config or MediaConfig()
        self._player_factory: PlayerFactory = player_factory or MediaPlayer
        self._players: List[MediaPlayer] = []
        self._tracks: Dict[str, MuteableTrack] = {}
        self._relay = MediaRelay()
        self._acquired = False
        self.error: Optional[DeviceError] = None

    @property
    def acquired(self) -> bool:
        return self._acquired

    @property
    def tracks(self) -> List[MuteableTrack]:
        return list(self._tracks.values())

    def acquire(self) -> List[MuteableTrack]:
        """
        Open the configured devices once.  A failure is remembered and re-raised
        on later calls rather than retried.
        """

        if self._acquired:
            return self.tracks
        if self.error is not None:
            raise self.error

        players: List[MediaPlayer] = []
        tracks: Dict[str, MuteableTrack] = {}
        try:
            for source in self.config.sources():
                kind = str(source["kind"])
                player = self._player_factory(
                    source["file"], format=source["format"], options=source["options"]
                )
                players.append(player)
                track = getattr(player, kind, None)
                if track is None:
                    raise DeviceError(f"{source['file']} exposes no {kind} track")
                tracks[kind] = MuteableTrack(track)
        except DeviceError as exc:
            self._abandon(players, exc)
            raise
        except (OSError, FFmpegError) as exc:
            error = DeviceError(f"capture failed: {exc}")
            self._abandon(players, error)
            raise error from exc

        self._players = players
        self._tracks = tracks
        self._acquired = True
        LOG.info("Acquired local capture: %s", ", ".join(sorted(tracks)) or "no tracks")
        return self.tracks

    def session_tracks(self) -> List[MediaStreamTrack]:
        """Fresh relay subscriptions of every captured track, for one transport."""

        return [self._relay.subscribe(track, buffered=False) for track in self._tracks.values()]

    def set_muted(self, muted: bool, kind: Optional[str] = None) -> Dict[str, bool]:
        if kind is not None and kind not in MEDIA_KINDS:
            raise ValueError(f"unknown media kind '{kind}'")
        for track_kind, track in self._tracks.items():
            if kind is None or track_kind == kind:
                track.muted = bool(muted)
        return self.mute_state()

    def mute_state(self) -> Dict[str, bool]:
        return {kind: track.muted for kind, track in self._tracks.items()}

    def describe(self) -> dict:
        return {
            "acquired": self._acquired,
            "error": str(self.error) if self.error else None,
            "muted": self.mute_state(),
        }

    def _abandon(self, players: List[MediaPlayer], error: DeviceError) -> None:
        for player in players:
            self._stop_player(player)
        self.error = error
        LOG.warning("Local capture unavailable: %s", error)

    def _stop_player(self, player: MediaPlayer) -> None:
        for track in (getattr(player, "audio", None), getattr(player, "video", None)):
            if track is not None:
                track.stop()

    def close(self) -> None:
        for track in self._tracks.values():
            track.stop()
        for player in self._players:
            self._stop_player(player)
        self._tracks.clear()
        self._players.clear()
        self._acquired = False


__all__ = ["MEDIA_KINDS", "MediaConfig", "MediaSource", "MuteableTrack"]
