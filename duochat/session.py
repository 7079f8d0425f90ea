"""
Session lifecycle state machine.

The machine owns the observable status of the client: the lifecycle state plus
the descriptive fields (role, room, remote peer, last error) the UI renders.
Every accepted change produces a new immutable snapshot with a bumped revision
that is pushed to subscribed observers.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional

from .errors import CoordinatorError, NegotiationError

LOG = logging.getLogger(__name__)


class SessionState(str, Enum):
    """
    Lifecycle states.

    - IDLE: no signalling connection (initial, and after a local disconnect)
    - AWAITING_ROLE: connected to the relay, role not assigned yet
    - AWAITING_PEER: role known, no partner (re-entered after partner loss)
    - NEGOTIATING: transport created, description exchange in progress
    - CONNECTED: descriptions exchanged and/or transport reports a live path
    """

    IDLE = "idle"
    AWAITING_ROLE = "awaiting_role"
    AWAITING_PEER = "awaiting_peer"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"


VALID_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.AWAITING_ROLE}),
    SessionState.AWAITING_ROLE: frozenset({SessionState.AWAITING_PEER, SessionState.IDLE}),
    SessionState.AWAITING_PEER: frozenset({SessionState.NEGOTIATING, SessionState.IDLE}),
    SessionState.NEGOTIATING: frozenset(
        {SessionState.CONNECTED, SessionState.AWAITING_PEER, SessionState.IDLE}
    ),
    SessionState.CONNECTED: frozenset({SessionState.AWAITING_PEER, SessionState.IDLE}),
}


class IllegalTransition(NegotiationError):
    """Raised when an event would move the machine along an undeclared edge."""


@dataclass(frozen=True)
class ErrorReport:
    kind: str
    message: str

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


@dataclass(frozen=True)
class SessionSnapshot:
    """
    Immutable view of the client status.
    """

    rev: int
    state: SessionState
    role: Optional[str] = None
    room_id: Optional[str] = None
    remote_peer_id: Optional[str] = None
    session_id: Optional[str] = None
    last_error: Optional[ErrorReport] = None

    def to_dict(self) -> dict:
        return {
            "rev": int(self.rev),
            "state": self.state.value,
            "role": self.role,
            "roomId": self.room_id,
            "remotePeerId": self.remote_peer_id,
            "sessionId": self.session_id,
            "lastError": self.last_error.to_dict() if self.last_error else None,
        }


SnapshotObserver = Callable[[SessionSnapshot], None]


class SessionStateMachine:
    """
    Guarded lifecycle tracker with observer fan-out.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._snapshot = SessionSnapshot(rev=0, state=SessionState.IDLE)
        self._observer_counter = 0
        self._observers: Dict[int, SnapshotObserver] = {}

    # ------------------------------------------------------------------ helpers

    def _commit_locked(self, **changes) -> SessionSnapshot:
        self._snapshot = replace(self._snapshot, rev=self._snapshot.rev + 1, **changes)
        return self._snapshot

    def _notify(self, snapshot: SessionSnapshot) -> None:
        with self._lock:
            observers = dict(self._observers)
        for token, callback in observers.items():
            try:
                callback(snapshot)
            except Exception:  # pragma: no cover - observer failures should not kill the machine
                LOG.exception("Session observer %s failed.", token)

    # ------------------------------------------------------------------ public API

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._snapshot.state

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return self._snapshot

    def can_transition(self, target: SessionState) -> bool:
        with self._lock:
            current = self._snapshot.state
        return target == current or target in VALID_TRANSITIONS[current]

    def transition(self, target: SessionState, **changes) -> SessionSnapshot:
        """
        Move to ``target``.  Staying in the current state is a no-op unless
        ``changes`` carries field updates.
        """

        with self._lock:
            current = self._snapshot.state
            if target == current:
                if not changes:
                    return self._snapshot
                snapshot = self._commit_locked(**changes)
            elif target not in VALID_TRANSITIONS[current]:
                raise IllegalTransition(f"{current.value} -> {target.value} is not a legal transition")
            else:
                snapshot = self._commit_locked(state=target, **changes)
        LOG.debug("Session state %s -> %s (rev %s)", current.value, target.value, snapshot.rev)
        self._notify(snapshot)
        return snapshot

    def update(self, **changes) -> SessionSnapshot:
        """Update descriptive fields without changing the lifecycle state."""

        if "state" in changes or "rev" in changes:
            raise TypeError("use transition() to change the lifecycle state")
        with self._lock:
            snapshot = self._commit_locked(**changes)
        self._notify(snapshot)
        return snapshot

    def report_error(self, error: CoordinatorError) -> SessionSnapshot:
        return self.update(last_error=ErrorReport(kind=error.kind, message=str(error)))

    def subscribe(self, callback: SnapshotObserver) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        with self._lock:
            self._observer_counter += 1
            token = self._observer_counter
            self._observers[token] = callback
            snapshot = self._snapshot
        # Deliver the current snapshot outside the lock
        try:
            callback(snapshot)
        except Exception:  # pragma: no cover - observer failures are logged only
            LOG.exception("Session observer %s failed during initial snapshot.", token)
        return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._observers.pop(token, None)


__all__ = [
    "ErrorReport",
    "IllegalTransition",
    "SessionSnapshot",
    "SessionState",
    "SessionStateMachine",
    "VALID_TRANSITIONS",
]
