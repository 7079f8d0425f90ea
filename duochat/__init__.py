"""
duochat: two-party video chat client.

A socket.io relay pairs two peers and assigns one of them the Leader role; the
client then negotiates a direct WebRTC session with its partner and exposes
its state through a small local status API.
"""

from .config import ClientConfig, load_config
from .coordinator import NegotiationCoordinator, NegotiationRole
from .session import SessionSnapshot, SessionState

__all__ = [
    "ClientConfig",
    "NegotiationCoordinator",
    "NegotiationRole",
    "SessionSnapshot",
    "SessionState",
    "load_config",
]

__version__ = "0.1.0"
