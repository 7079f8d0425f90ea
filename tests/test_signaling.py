"""Tests for the relay payload schemas and the socket.io link."""

import asyncio

import pytest
from socketio.exceptions import ConnectionError as SocketIOConnectionError

from duochat.errors import NegotiationError, SignalingUnavailable
from duochat.rtc.candidates import ICECandidate
from duochat.rtc.transport import SessionDescription
from duochat.signaling import schemas
from duochat.signaling.link import SignalingLink


class FakeSocketClient:
    def __init__(self, *, connect_failures: int = 0, role: str = "p1") -> None:
        self.handlers = {}
        self.connected = False
        self.connect_failures = connect_failures
        self.connect_calls = 0
        self.role = role
        self.emitted = []
        self.disconnected = asyncio.Event()

    def on(self, event, handler=None, namespace=None):
        self.handlers[event] = handler

    async def connect(self, url, **kwargs):
        self.connect_calls += 1
        if self.connect_calls <= self.connect_failures:
            raise SocketIOConnectionError("refused")
        self.connected = True
        await self.handlers["connect"]()

    async def wait(self):
        await self.disconnected.wait()

    async def emit(self, event, data=None):
        self.emitted.append((event, data))

    async def call(self, event, data=None, timeout=60):
        self.emitted.append((event, data))
        return self.role

    async def disconnect(self):
        self.connected = False
        self.disconnected.set()
        await self.handlers["disconnect"]()

    async def trigger(self, event, *args):
        await self.handlers[event](*args)


class RecordingListener:
    def __init__(self) -> None:
        self.calls = []

    def __getattr__(self, name):
        if not name.startswith("on_"):
            raise AttributeError(name)

        async def record(*args):
            self.calls.append((name, args))

        return record

    def names(self):
        return [name for name, _ in self.calls]


def make_link(client, **kwargs):
    listener = RecordingListener()
    link = SignalingLink("http://relay.test", listener=listener, client=client, **kwargs)
    return link, listener


def test_description_schema_normalises_type() -> None:
    description = schemas.parse_description({"type": " OFFER ", "sdp": "v=0", "extra": 1})

    assert description == SessionDescription(type="offer", sdp="v=0")
    with pytest.raises(NegotiationError):
        schemas.parse_description({"type": "offer", "sdp": "  "})
    with pytest.raises(NegotiationError):
        schemas.parse_description(None)


def test_candidate_schema_accepts_browser_shape() -> None:
    parsed = schemas.parse_candidate(
        {"candidate": "candidate:1 1 udp 1 192.0.2.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
    )

    assert parsed == ICECandidate(
        candidate="candidate:1 1 udp 1 192.0.2.1 5000 typ host", sdp_mid="0", sdp_mline_index=0
    )
    assert schemas.parse_candidate(None) is None
    assert schemas.parse_candidate({"candidate": None}) is None
    with pytest.raises(NegotiationError):
        schemas.parse_candidate(42)


def test_outbound_payload_shapes() -> None:
    value = ICECandidate(candidate="candidate:1", sdp_mid="0", sdp_mline_index=0)

    assert schemas.sdp_send_payload(SessionDescription(type="answer", sdp="s")) == {
        "sdp": {"type": "answer", "sdp": "s"}
    }
    assert schemas.ice_send_payload(value, "peer-b") == {
        "candidate": {"candidate": "candidate:1", "sdpMid": "0", "sdpMLineIndex": 0},
        "to": "peer-b",
    }


def test_backoff_doubles_up_to_cap() -> None:
    link, _ = make_link(FakeSocketClient(), reconnect_delay=1.0, reconnect_delay_max=30.0, reconnect_jitter=0)

    assert [link.backoff_delay(n) for n in range(1, 8)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_backoff_jitter_stays_in_bounds() -> None:
    link, _ = make_link(FakeSocketClient(), reconnect_delay=2.0, reconnect_jitter=0.1)

    for _ in range(50):
        assert 1.8 <= link.backoff_delay(1) <= 2.2


@pytest.mark.asyncio
async def test_connect_runs_role_handshake() -> None:
    client = FakeSocketClient(role="p2")
    link, listener = make_link(client)

    client.connected = True
    await client.trigger("connect")
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert listener.calls == [("on_link_connected", ()), ("on_role_assigned", ("p2",))]
    assert link.role_token == "p2"
    assert client.emitted == [(schemas.EVENT_START, None)]


@pytest.mark.asyncio
async def test_inbound_events_reach_listener() -> None:
    client = FakeSocketClient()
    _, listener = make_link(client)

    await client.trigger(schemas.EVENT_ROOM_ID, "room-1")
    await client.trigger(schemas.EVENT_REMOTE_SOCKET, "peer-b")
    await client.trigger(schemas.EVENT_SDP_REPLY, {"sdp": {"type": "offer", "sdp": "v=0"}, "from": "peer-b"})
    await client.trigger(schemas.EVENT_ICE_REPLY, {"candidate": None, "from": "peer-b"})
    await client.trigger(schemas.EVENT_PEER_DISCONNECTED)
    await client.trigger("disconnect", "transport close")

    assert listener.calls == [
        ("on_room_id", ("room-1",)),
        ("on_peer_matched", ("peer-b",)),
        ("on_remote_description", ({"type": "offer", "sdp": "v=0"},)),
        ("on_remote_candidate", (None,)),
        ("on_peer_lost", ()),
        ("on_local_disconnect", ()),
    ]


@pytest.mark.asyncio
async def test_malformed_envelopes_are_dropped() -> None:
    client = FakeSocketClient()
    _, listener = make_link(client)

    await client.trigger(schemas.EVENT_SDP_REPLY, "garbage")
    await client.trigger(schemas.EVENT_ICE_REPLY, None)
    await client.trigger(schemas.EVENT_REMOTE_SOCKET, "")

    assert listener.calls == []


@pytest.mark.asyncio
async def test_send_requires_connection() -> None:
    client = FakeSocketClient()
    link, _ = make_link(client)
    value = ICECandidate(candidate="candidate:1", sdp_mid="0", sdp_mline_index=0)

    with pytest.raises(SignalingUnavailable):
        await link.send_candidate(value, "peer-b")

    client.connected = True
    await link.send_candidate(value, "peer-b")
    await link.send_description(SessionDescription(type="offer", sdp="v=0"))

    assert [event for event, _ in client.emitted] == [schemas.EVENT_ICE_SEND, schemas.EVENT_SDP_SEND]
    assert client.emitted[0][1]["to"] == "peer-b"


@pytest.mark.asyncio
async def test_chat_relay_round_trip() -> None:
    client = FakeSocketClient()
    link, _ = make_link(client)
    received = []
    link.on_chat(received.append)
    client.connected = True
    link.role_token = "p1"
    link.room_id = "room-1"

    sent = await link.send_chat("hello")
    await client.trigger(schemas.EVENT_GET_MESSAGE, "hi back", "p2")

    assert client.emitted == [(schemas.EVENT_SEND_MESSAGE, ("hello", "p1", "room-1"))]
    assert sent.incoming is False
    assert [(m.text, m.sender_role, m.incoming) for m in received] == [
        ("hello", "p1", False),
        ("hi back", "p2", True),
    ]
    with pytest.raises(ValueError):
        await link.send_chat("   ")


@pytest.mark.asyncio
async def test_run_reports_link_lost_after_exhausting_attempts() -> None:
    client = FakeSocketClient(connect_failures=10)
    link, listener = make_link(client, reconnect_attempts=2, reconnect_delay=0.0)

    await asyncio.wait_for(link.run(), timeout=1.0)

    assert client.connect_calls == 3
    assert listener.names() == ["on_link_lost"]


@pytest.mark.asyncio
async def test_run_retries_then_stops_cleanly() -> None:
    client = FakeSocketClient(connect_failures=1)
    link, listener = make_link(client, reconnect_attempts=3, reconnect_delay=0.0)

    runner = asyncio.create_task(link.run())
    for _ in range(20):
        await asyncio.sleep(0)
    assert link.connected
    await link.stop()
    await asyncio.wait_for(runner, timeout=1.0)

    assert client.connect_calls == 2
    assert "on_link_lost" not in listener.names()
    assert listener.names()[0] == "on_link_connected"
    assert listener.names()[-1] == "on_local_disconnect"
