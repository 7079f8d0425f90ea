"""Tests for local capture acquisition and muting."""

import pytest
from aiortc import MediaStreamTrack

from duochat.errors import DeviceError
from duochat.rtc.media import MediaConfig, MediaSource


class StubTrack(MediaStreamTrack):
    def __init__(self, kind: str) -> None:
        super().__init__()
        self.kind = kind

    async def recv(self):  # pragma: no cover - frames are not pulled here
        raise NotImplementedError


class StubPlayer:
    def __init__(self, file, format=None, options=None) -> None:
        self.file = file
        self.format = format
        self.options = options
        self.audio = StubTrack("audio") if format == "audio-fmt" else None
        self.video = StubTrack("video") if format == "video-fmt" else None


def config(**overrides) -> MediaConfig:
    values = dict(
        audio_device="mic",
        audio_format="audio-fmt",
        video_device="cam",
        video_format="video-fmt",
    )
    values.update(overrides)
    return MediaConfig(**values)


def test_sources_follow_capture_flags() -> None:
    sources = config(capture_video=False).sources()

    assert [source["kind"] for source in sources] == ["audio"]
    assert sources[0]["file"] == "mic"


def test_acquire_opens_each_device_once() -> None:
    opened = []

    def factory(*args, **kwargs):
        player = StubPlayer(*args, **kwargs)
        opened.append(player)
        return player

    media = MediaSource(config(), player_factory=factory)

    tracks = media.acquire()
    media.acquire()

    assert media.acquired
    assert sorted(track.kind for track in tracks) == ["audio", "video"]
    assert [player.file for player in opened] == ["mic", "cam"]
    assert opened[1].options == {"framerate": "30", "video_size": "640x480"}


def test_mute_toggles_per_kind() -> None:
    media = MediaSource(config(), player_factory=StubPlayer)
    media.acquire()

    assert media.set_muted(True, "audio") == {"audio": True, "video": False}
    assert media.set_muted(True) == {"audio": True, "video": True}
    assert media.set_muted(False, "video") == {"audio": True, "video": False}
    with pytest.raises(ValueError):
        media.set_muted(True, "screen")


def test_acquire_failure_is_remembered() -> None:
    calls = []

    def broken(*args, **kwargs):
        calls.append(args)
        raise OSError("No such device")

    media = MediaSource(config(), player_factory=broken)

    with pytest.raises(DeviceError):
        media.acquire()
    with pytest.raises(DeviceError):
        media.acquire()

    assert len(calls) == 1
    assert not media.acquired
    assert media.describe()["error"].startswith("capture failed")


def test_device_without_expected_track() -> None:
    media = MediaSource(config(video_format="audio-fmt"), player_factory=StubPlayer)

    with pytest.raises(DeviceError):
        media.acquire()
    assert media.tracks == []


def test_close_releases_capture() -> None:
    media = MediaSource(config(), player_factory=StubPlayer)
    tracks = media.acquire()

    media.close()

    assert not media.acquired
    assert media.mute_state() == {}
    assert all(track.readyState == "ended" for track in tracks)
