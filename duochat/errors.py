"""
Error taxonomy for the negotiation layer.

Every error here is local to one Session.  The coordinator logs it, records it
on the observable session snapshot and carries on; none of them is allowed to
escape a coordinator entry point.
"""

from __future__ import annotations


class CoordinatorError(RuntimeError):
    """Base class for negotiation related errors."""

    kind = "error"


class RoleConflict(CoordinatorError):
    """Raised when the relay assigns a second, contradictory role."""

    kind = "role-conflict"


class NegotiationError(CoordinatorError):
    """Raised for malformed/rejected descriptions or candidates and out-of-order events."""

    kind = "negotiation"


class TransportFailure(CoordinatorError):
    """Raised when the peer-to-peer path degrades or fails."""

    kind = "transport"


class DeviceError(CoordinatorError):
    """Raised when local capture cannot be acquired."""

    kind = "device"


class SignalingUnavailable(CoordinatorError):
    """Raised once the signalling link has exhausted its reconnect attempts."""

    kind = "signaling"


__all__ = [
    "CoordinatorError",
    "DeviceError",
    "NegotiationError",
    "RoleConflict",
    "SignalingUnavailable",
    "TransportFailure",
]
