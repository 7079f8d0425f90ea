"""
Pydantic schemas mirroring the relay's socket.io contract.
"""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, validator

from ..errors import NegotiationError
from ..rtc.candidates import ICECandidate
from ..rtc.transport import DESCRIPTION_TYPES, SessionDescription

# socket.io event names used by the relay.
EVENT_START = "start"
EVENT_ROOM_ID = "roomid"
EVENT_REMOTE_SOCKET = "remote-socket"
EVENT_SDP_SEND = "sdp:send"
EVENT_SDP_REPLY = "sdp:reply"
EVENT_ICE_SEND = "ice:send"
EVENT_ICE_REPLY = "ice:reply"
EVENT_PEER_DISCONNECTED = "disconnected"
EVENT_SEND_MESSAGE = "send-message"
EVENT_GET_MESSAGE = "get-message"


class SessionDescriptionModel(BaseModel):
    type: str
    sdp: str
    model_config = ConfigDict(extra="ignore")

    @validator("type", pre=True)
    def _normalise_type(cls, value: object) -> str:
        result = str(value or "").strip().lower()
        if result not in DESCRIPTION_TYPES:
            raise ValueError(f"unsupported description type '{value}'")
        return result

    @validator("sdp")
    def _require_sdp(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("sdp is empty")
        return value

    def to_description(self) -> SessionDescription:
        return SessionDescription(type=self.type, sdp=self.sdp)


class IceCandidateModel(BaseModel):
    candidate: str = ""
    sdp_mid: Optional[str] = Field(default=None, validation_alias=AliasChoices("sdpMid", "sdp_mid"))
    sdp_mline_index: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("sdpMLineIndex", "sdp_mline_index"),
    )
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @validator("candidate", pre=True)
    def _coerce_candidate(cls, value: object) -> str:
        return "" if value is None else str(value)

    def to_candidate(self) -> ICECandidate:
        return ICECandidate(
            candidate=self.candidate,
            sdp_mid=self.sdp_mid,
            sdp_mline_index=self.sdp_mline_index,
        )


class SdpReply(BaseModel):
    """Inbound ``sdp:reply`` envelope; the description itself is validated by the coordinator."""

    sdp: Any = None
    sender_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("from", "senderId"))
    model_config = ConfigDict(extra="ignore")


class IceReply(BaseModel):
    """Inbound ``ice:reply`` envelope; ``candidate`` may be null (end-of-candidates)."""

    candidate: Any = None
    sender_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("from", "senderId"))
    model_config = ConfigDict(extra="ignore")


class ChatMessage(BaseModel):
    text: str
    sender_role: Optional[str] = None
    incoming: bool = True

    @validator("text", pre=True)
    def _coerce_text(cls, value: object) -> str:
        return str(value or "")

    def to_dict(self) -> dict:
        return {"text": self.text, "senderRole": self.sender_role, "incoming": self.incoming}


def parse_description(value: Union[SessionDescription, dict, None]) -> SessionDescription:
    """Validate a remote description payload; raises :class:`NegotiationError`."""

    if isinstance(value, SessionDescription):
        return value
    if not isinstance(value, dict):
        raise NegotiationError(f"malformed session description: {type(value).__name__}")
    try:
        return SessionDescriptionModel.model_validate(value).to_description()
    except ValidationError as exc:
        raise NegotiationError(f"malformed session description: {exc.errors()[0]['msg']}") from exc


def parse_candidate(value: Union[ICECandidate, dict, str, None]) -> Optional[ICECandidate]:
    """
    Validate a remote candidate payload.  ``None`` (or an empty candidate
    string) is the end-of-candidates marker and yields ``None``.
    """

    if value is None:
        return None
    if isinstance(value, ICECandidate):
        candidate = value
    elif isinstance(value, str):
        candidate = ICECandidate(candidate=value)
    elif isinstance(value, dict):
        try:
            candidate = IceCandidateModel.model_validate(value).to_candidate()
        except ValidationError as exc:
            raise NegotiationError(f"malformed ICE candidate: {exc.errors()[0]['msg']}") from exc
    else:
        raise NegotiationError(f"malformed ICE candidate: {type(value).__name__}")
    if candidate.is_end_of_candidates:
        return None
    return candidate


def sdp_send_payload(description: SessionDescription) -> dict:
    return {"sdp": description.to_payload()}


def ice_send_payload(candidate: ICECandidate, target_id: str) -> dict:
    return {"candidate": candidate.to_payload(), "to": target_id}


__all__ = [
    "ChatMessage",
    "EVENT_GET_MESSAGE",
    "EVENT_ICE_REPLY",
    "EVENT_ICE_SEND",
    "EVENT_PEER_DISCONNECTED",
    "EVENT_REMOTE_SOCKET",
    "EVENT_ROOM_ID",
    "EVENT_SDP_REPLY",
    "EVENT_SDP_SEND",
    "EVENT_SEND_MESSAGE",
    "EVENT_START",
    "IceCandidateModel",
    "IceReply",
    "SdpReply",
    "SessionDescriptionModel",
    "ice_send_payload",
    "parse_candidate",
    "parse_description",
    "sdp_send_payload",
]
