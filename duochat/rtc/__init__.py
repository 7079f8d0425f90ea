"""
WebRTC helpers: candidate buffering, the aiortc transport and local capture.
"""

from __future__ import annotations

from .candidates import CandidateBuffer, ICECandidate
from .media import MediaConfig, MediaSource
from .transport import SessionDescription, TransportConfig, TransportConnection

__all__ = [
    "CandidateBuffer",
    "ICECandidate",
    "MediaConfig",
    "MediaSource",
    "SessionDescription",
    "TransportConfig",
    "TransportConnection",
]
