"""Tests for the aiortc-backed transport and muted frame substitution."""

import asyncio
from fractions import Fraction

import pytest
from aiortc import AudioStreamTrack, MediaStreamTrack
from aiortc.sdp import candidate_from_sdp
from av import AudioFrame, VideoFrame

from duochat.errors import NegotiationError
from duochat.rtc.candidates import ICECandidate
from duochat.rtc.media import MuteableTrack
from duochat.rtc.transport import SessionDescription, TransportConfig, TransportConnection


class FrameTrack(MediaStreamTrack):
    def __init__(self, kind: str, frame) -> None:
        super().__init__()
        self.kind = kind
        self.frame = frame

    async def recv(self):
        return self.frame


def audio_frame() -> AudioFrame:
    frame = AudioFrame(format="s16", layout="mono", samples=160)
    for plane in frame.planes:
        plane.update(b"\x11" * plane.buffer_size)
    frame.sample_rate = 8000
    frame.pts = 320
    frame.time_base = Fraction(1, 8000)
    return frame


def video_frame() -> VideoFrame:
    frame = VideoFrame(16, 16, "yuv420p")
    for plane in frame.planes:
        plane.update(b"\x55" * plane.buffer_size)
    frame.pts = 3000
    frame.time_base = Fraction(1, 90000)
    return frame


def test_build_configuration_lists_stun_and_turn() -> None:
    config = TransportConfig(
        stun_server="stun:stun.example.com:3478",
        turn_server="turn:turn.example.com:3478",
        turn_username="alice",
        turn_credential="secret",
        extra_ice_servers=[{"urls": "stun:backup.example.com"}],
    )

    servers = config.build_configuration().iceServers

    assert [server.urls for server in servers] == [
        "stun:stun.example.com:3478",
        "turn:turn.example.com:3478",
        "stun:backup.example.com",
    ]
    assert servers[1].username == "alice"
    assert servers[1].credential == "secret"


def test_candidate_prefix_is_stripped_for_parsing() -> None:
    value = ICECandidate(
        candidate="candidate:842163049 1 udp 1677729535 192.0.2.7 50123 typ srflx raddr 10.0.0.2 rport 50123",
        sdp_mid="0",
        sdp_mline_index=0,
    )

    parsed = candidate_from_sdp(value.sdp_attribute)

    assert parsed.foundation == "842163049"
    assert parsed.ip == "192.0.2.7"
    assert parsed.port == 50123
    assert parsed.type == "srflx"


def test_description_type_is_validated() -> None:
    with pytest.raises(NegotiationError):
        SessionDescription(type="bogus", sdp="v=0")


@pytest.mark.asyncio
async def test_candidate_before_remote_description_is_rejected() -> None:
    connection = TransportConnection(TransportConfig(stun_server=None))
    value = ICECandidate(candidate="candidate:1 1 udp 2122260223 192.0.2.1 5000 typ host", sdp_mid="0", sdp_mline_index=0)

    with pytest.raises(NegotiationError):
        await connection.add_ice_candidate(value)
    await connection.close()
    assert connection.is_closed


@pytest.mark.asyncio
async def test_malformed_remote_description_is_wrapped() -> None:
    connection = TransportConnection(TransportConfig(stun_server=None))

    with pytest.raises(NegotiationError):
        await connection.set_remote_description(SessionDescription(type="answer", sdp="v=0\r\n"))
    assert not connection.has_remote_description
    await connection.close()


@pytest.mark.asyncio
async def test_loopback_negotiation_connects() -> None:
    config = TransportConfig(stun_server=None)
    leader = TransportConnection(config)
    follower = TransportConnection(config)
    leader_candidates = []
    follower_candidates = []
    leader.on_local_candidate(leader_candidates.append)
    follower.on_local_candidate(follower_candidates.append)

    connected = {"leader": asyncio.Event(), "follower": asyncio.Event()}

    def watch(name):
        def callback(state: str) -> None:
            if state == "connected":
                connected[name].set()

        return callback

    leader.on_state_change(watch("leader"))
    follower.on_state_change(watch("follower"))
    leader.add_track(AudioStreamTrack())

    try:
        offer = await leader.create_offer()
        assert offer.is_offer
        local_offer = await leader.set_local_description(offer)
        await follower.set_remote_description(local_offer)
        answer = await follower.create_answer()
        local_answer = await follower.set_local_description(answer)
        await leader.set_remote_description(local_answer)

        await asyncio.wait_for(
            asyncio.gather(connected["leader"].wait(), connected["follower"].wait()),
            timeout=15,
        )
    finally:
        await leader.close()
        await follower.close()

    assert leader_candidates and follower_candidates
    for value in leader_candidates + follower_candidates:
        assert value.candidate.startswith("candidate:")
        assert value.sdp_mline_index == 0
        assert value.sdp_mid is not None
    # Each gathered candidate is announced once.
    assert len({value.candidate for value in leader_candidates}) == len(leader_candidates)


@pytest.mark.asyncio
async def test_muted_audio_is_silence() -> None:
    source = audio_frame()
    track = MuteableTrack(FrameTrack("audio", source))

    assert await track.recv() is source

    track.muted = True
    muted = await track.recv()

    assert set(bytes(muted.planes[0])) == {0}
    assert muted.samples == source.samples
    assert muted.sample_rate == 8000
    assert muted.pts == source.pts


@pytest.mark.asyncio
async def test_muted_video_is_black() -> None:
    source = video_frame()
    track = MuteableTrack(FrameTrack("video", source))
    track.muted = True

    muted = await track.recv()

    luma, *chroma = muted.planes
    assert (muted.width, muted.height) == (16, 16)
    assert set(bytes(luma)) == {0}
    assert all(set(bytes(plane)) == {0x80} for plane in chroma)
    assert muted.pts == source.pts
