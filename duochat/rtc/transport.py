"""
Peer-to-peer transport backed by aiortc.

:class:`TransportConnection` is the one object the coordinator talks to for a
Session.  It narrows :class:`aiortc.RTCPeerConnection` down to the operations
the negotiation protocol needs and converts transport-layer exceptions into
:class:`~duochat.errors.NegotiationError`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import SessionDescription as ParsedSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..errors import NegotiationError
from .candidates import CANDIDATE_PREFIX, ICECandidate

LOG = logging.getLogger(__name__)

DESCRIPTION_TYPES = ("offer", "answer", "pranswer", "rollback")

# Connection states after which the path is considered gone.
FAILED_STATES = frozenset({"failed", "disconnected", "closed"})


@dataclass(frozen=True)
class SessionDescription:
    """An offer or answer as exchanged over signalling."""

    type: str
    sdp: str

    def __post_init__(self) -> None:
        if self.type not in DESCRIPTION_TYPES:
            raise NegotiationError(f"unsupported description type '{self.type}'")

    @property
    def is_offer(self) -> bool:
        return self.type == "offer"

    def to_payload(self) -> dict:
        return {"type": self.type, "sdp": self.sdp}


@dataclass
class TransportConfig:
    """
    ICE server settings applied to every new connection.
    """

    stun_server: Optional[str] = "stun:stun.l.google.com:19302"
    turn_server: Optional[str] = None
    turn_username: Optional[str] = None
    turn_credential: Optional[str] = None
    extra_ice_servers: List[Dict[str, Any]] = field(default_factory=list)

    def iter_ice_servers(self) -> List[Dict[str, Any]]:
        """
        Return the flattened ICE server list in ``RTCIceServer`` keyword form.
        """

        servers: List[Dict[str, Any]] = []
        if self.stun_server:
            servers.append({"urls": self.stun_server})
        if self.turn_server:
            servers.append(
                {
                    "urls": self.turn_server,
                    "username": self.turn_username,
                    "credential": self.turn_credential,
                }
            )
        servers.extend(dict(entry) for entry in self.extra_ice_servers)
        return servers

    def build_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=[RTCIceServer(**entry) for entry in self.iter_ice_servers()])


def _to_aiortc(description: SessionDescription) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=description.sdp, type=description.type)


def extract_candidates(sdp: str) -> List[ICECandidate]:
    """List the gathered candidates embedded in a local description."""

    parsed = ParsedSessionDescription.parse(sdp)
    candidates: List[ICECandidate] = []
    for index, media in enumerate(parsed.media):
        mid = getattr(getattr(media, "rtp", None), "muxId", None) or None
        for entry in media.ice_candidates:
            candidates.append(
                ICECandidate(
                    candidate=CANDIDATE_PREFIX + candidate_to_sdp(entry),
                    sdp_mid=mid,
                    sdp_mline_index=index,
                )
            )
    return candidates


class TransportConnection:
    """
    One peer connection, owned by exactly one Session and never reused.
    """

    def __init__(
        self,
        config: Optional[TransportConfig] = None,
        *,
        peer_connection: Optional[RTCPeerConnection] = None,
    ) -> None:
        self.config = config or TransportConfig()
        self._pc = peer_connection or RTCPeerConnection(configuration=self.config.build_configuration())
        self._candidate_callbacks: List[Callable[[ICECandidate], None]] = []
        self._state_callbacks: List[Callable[[str], None]] = []
        self._track_callbacks: List[Callable[[MediaStreamTrack], None]] = []
        self._announced: set[str] = set()
        self._remote_description_set = False
        self._closed = False

        self._pc.on("connectionstatechange", self._emit_state)
        self._pc.on("track", self._emit_track)

    # ------------------------------------------------------------------ callbacks

    def on_local_candidate(self, callback: Callable[[ICECandidate], None]) -> None:
        self._candidate_callbacks.append(callback)

    def on_state_change(self, callback: Callable[[str], None]) -> None:
        self._state_callbacks.append(callback)

    def on_remote_track(self, callback: Callable[[MediaStreamTrack], None]) -> None:
        self._track_callbacks.append(callback)

    def _emit_state(self) -> None:
        state = self._pc.connectionState
        LOG.debug("connectionState -> %s", state)
        for callback in list(self._state_callbacks):
            callback(state)

    def _emit_track(self, track: MediaStreamTrack) -> None:
        LOG.debug("Remote %s track received", track.kind)
        for callback in list(self._track_callbacks):
            callback(track)

    def _announce_local_candidates(self) -> None:
        description = self._pc.localDescription
        if description is None:
            return
        for candidate in extract_candidates(description.sdp):
            if candidate.candidate in self._announced:
                continue
            self._announced.add(candidate.candidate)
            for callback in list(self._candidate_callbacks):
                callback(candidate)

    # ------------------------------------------------------------------ state

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def has_remote_description(self) -> bool:
        return self._remote_description_set

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def local_description(self) -> Optional[SessionDescription]:
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescription(type=description.type, sdp=description.sdp)

    # ------------------------------------------------------------------ operations

    def add_track(self, track: MediaStreamTrack) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        try:
            offer = await self._pc.createOffer()
        except Exception as exc:
            raise NegotiationError(f"offer creation failed: {exc}") from exc
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        try:
            answer = await self._pc.createAnswer()
        except Exception as exc:
            raise NegotiationError(f"answer creation failed: {exc}") from exc
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        """
        Install ``description`` locally and return the gathered description
        (aiortc completes candidate gathering before resolving).
        """

        try:
            await self._pc.setLocalDescription(_to_aiortc(description))
        except Exception as exc:
            raise NegotiationError(f"local {description.type} rejected: {exc}") from exc
        self._announce_local_candidates()
        installed = self.local_description
        return installed if installed is not None else description

    async def set_remote_description(self, description: SessionDescription) -> None:
        try:
            await self._pc.setRemoteDescription(_to_aiortc(description))
        except Exception as exc:
            raise NegotiationError(f"remote {description.type} rejected: {exc}") from exc
        self._remote_description_set = True

    async def add_ice_candidate(self, candidate: ICECandidate) -> None:
        if not self._remote_description_set:
            raise NegotiationError("cannot apply a candidate before the remote description")
        try:
            parsed = candidate_from_sdp(candidate.sdp_attribute)
            parsed.sdpMid = candidate.sdp_mid
            parsed.sdpMLineIndex = candidate.sdp_mline_index
            await self._pc.addIceCandidate(parsed)
        except Exception as exc:
            raise NegotiationError(f"candidate rejected: {exc}") from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._candidate_callbacks.clear()
        self._state_callbacks.clear()
        self._track_callbacks.clear()
        await self._pc.close()


TransportFactory = Callable[[], TransportConnection]


__all__ = [
    "FAILED_STATES",
    "SessionDescription",
    "TransportConfig",
    "TransportConnection",
    "TransportFactory",
    "extract_candidates",
]
