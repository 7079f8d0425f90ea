"""
Relay signalling: socket.io link and wire schemas.
"""

from __future__ import annotations

from .link import SignalingLink, SignalingListener
from .schemas import ChatMessage

__all__ = ["ChatMessage", "SignalingLink", "SignalingListener"]
