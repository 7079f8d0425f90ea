"""
Negotiation coordinator.

Drives the offer/answer exchange for exactly one Session at a time.  Roles
are asymmetric: the Leader is the only side that ever creates an offer and the
Follower only answers, so the two peers can never both lead a negotiation.

Every entry point is a coroutine on the client's event loop.  Negotiation
handlers are serialised by a lock; teardown paths deliberately skip the lock
and detach the Session synchronously, so a handler suspended on the transport
finds its Session closed when it resumes and drops the result.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, Coroutine, List, Optional, Protocol, Set, Union

from .errors import (
    CoordinatorError,
    DeviceError,
    NegotiationError,
    RoleConflict,
    SignalingUnavailable,
    TransportFailure,
)
from .rtc.candidates import CandidateBuffer, ICECandidate
from .rtc.media import MediaSource
from .rtc.transport import (
    FAILED_STATES,
    SessionDescription,
    TransportConfig,
    TransportConnection,
    TransportFactory,
)
from .session import IllegalTransition, SessionSnapshot, SessionState, SessionStateMachine
from .signaling.schemas import parse_candidate, parse_description

LOG = logging.getLogger(__name__)

DEFAULT_NEGOTIATION_TIMEOUT = 15.0


class NegotiationRole(str, Enum):
    """The two negotiation roles; only the Leader initiates offers."""

    LEADER = "leader"
    FOLLOWER = "follower"

    @classmethod
    def from_token(cls, token: Union["NegotiationRole", str, None]) -> "NegotiationRole":
        if isinstance(token, cls):
            return token
        value = str(token or "").strip().lower()
        if value in {"p1", "leader"}:
            return cls.LEADER
        if value in {"p2", "follower"}:
            return cls.FOLLOWER
        raise NegotiationError(f"unknown role token {token!r}")

    @property
    def token(self) -> str:
        """The relay's wire token for this role."""

        return "p1" if self is NegotiationRole.LEADER else "p2"


class SignalingSink(Protocol):
    async def send_description(self, description: SessionDescription) -> None: ...

    async def send_candidate(self, candidate: ICECandidate, target_id: str) -> None: ...


@dataclass(eq=False)
class Session:
    """
    One negotiation lifetime with one remote peer.

    ``connection`` stays ``None`` while the match waits for the role; in that
    window a remote description is parked in ``early_description``.
    """

    remote_peer_id: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    room_id: Optional[str] = None
    connection: Optional[TransportConnection] = None
    offer_pending: bool = False
    early_description: Optional[SessionDescription] = None
    closed: bool = False
    watchdog: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def has_remote_description(self) -> bool:
        return self.connection is not None and self.connection.has_remote_description


class NegotiationCoordinator:
    """
    Owns the current Session, its transport and the lifecycle state machine.
    """

    def __init__(
        self,
        signaling: SignalingSink,
        media: Optional[MediaSource] = None,
        *,
        transport_factory: Optional[TransportFactory] = None,
        transport_config: Optional[TransportConfig] = None,
        state_machine: Optional[SessionStateMachine] = None,
        negotiation_timeout: float = DEFAULT_NEGOTIATION_TIMEOUT,
        on_remote_track: Optional[Callable[[Any], None]] = None,
    ) -> None:
        self.signaling = signaling
        self.media = media
        self.state_machine = state_machine or SessionStateMachine()
        self.candidates = CandidateBuffer()
        self.negotiation_timeout = max(0.0, float(negotiation_timeout))
        self._transport_factory: TransportFactory = transport_factory or partial(
            TransportConnection, transport_config
        )
        self._on_remote_track = on_remote_track
        self._lock = asyncio.Lock()
        self._role: Optional[NegotiationRole] = None
        self._room_id: Optional[str] = None
        self._session: Optional[Session] = None
        self._inert = False
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ inspection

    @property
    def role(self) -> Optional[NegotiationRole]:
        return self._role

    @property
    def room_id(self) -> Optional[str]:
        return self._room_id

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def state(self) -> SessionState:
        return self.state_machine.state

    @property
    def inert(self) -> bool:
        return self._inert

    def snapshot(self) -> SessionSnapshot:
        return self.state_machine.snapshot()

    # ------------------------------------------------------------------ helpers

    def _log(self, session: Session) -> logging.Logger:
        return LOG.getChild(session.session_id[:8])

    def _is_current(self, session: Session) -> bool:
        return not session.closed and self._session is session

    def _report(self, error: CoordinatorError) -> None:
        LOG.warning("%s: %s", type(error).__name__, error)
        self.state_machine.report_error(error)

    def _transition(self, target: SessionState, **changes) -> bool:
        try:
            self.state_machine.transition(target, **changes)
        except IllegalTransition as exc:
            self._report(exc)
            return False
        return True

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _local_tracks(self) -> List[Any]:
        media = self.media
        if media is None:
            return []
        if not media.acquired:
            if media.error is not None:
                return []
            try:
                # Opening capture devices blocks.
                await asyncio.to_thread(media.acquire)
            except DeviceError as exc:
                # Negotiation proceeds without local media.
                self._report(exc)
                return []
        return media.session_tracks()

    def _arm_watchdog(self, session: Session) -> None:
        if self.negotiation_timeout <= 0:
            return
        loop = asyncio.get_running_loop()
        session.watchdog = loop.call_later(self.negotiation_timeout, self._on_negotiation_timeout, session)

    def _disarm_watchdog(self, session: Session) -> None:
        if session.watchdog is not None:
            session.watchdog.cancel()
            session.watchdog = None

    def _detach_session(self) -> Optional[TransportConnection]:
        """
        Synchronously retire the current Session and return its transport for closing.
        """

        session = self._session
        if session is None:
            return None
        self._session = None
        session.closed = True
        self._disarm_watchdog(session)
        dropped = self.candidates.discard(session.session_id)
        connection, session.connection = session.connection, None
        self._log(session).info(
            "Session with %s retired (%d buffered candidates dropped)", session.remote_peer_id, dropped
        )
        return connection

    async def _close_connection(self, connection: Optional[TransportConnection]) -> None:
        if connection is None:
            return
        try:
            await connection.close()
        except Exception:  # pragma: no cover - closing must never fail teardown
            LOG.exception("Failed to close transport connection")

    def _mark_connected(self, session: Session) -> None:
        if not self._is_current(session):
            return
        if self.state_machine.state == SessionState.NEGOTIATING:
            self._disarm_watchdog(session)
            self._transition(SessionState.CONNECTED)

    # ------------------------------------------------------------------ transport callbacks

    def _handle_local_candidate(self, session: Session, candidate: ICECandidate) -> None:
        if self._is_current(session):
            self._spawn(self._forward_candidate(session, candidate))

    async def _forward_candidate(self, session: Session, candidate: ICECandidate) -> None:
        if not self._is_current(session):
            return
        try:
            await self.signaling.send_candidate(candidate, session.remote_peer_id)
        except CoordinatorError as exc:
            if self._is_current(session):
                self._report(exc)

    def _handle_transport_state(self, session: Session, state: str) -> None:
        if not self._is_current(session):
            return
        if state == "connected":
            self._mark_connected(session)
        elif state in FAILED_STATES:
            self._spawn(self._fail_session(session, TransportFailure(f"transport {state}")))

    def _handle_remote_track(self, track: Any) -> None:
        if self._on_remote_track is not None:
            self._on_remote_track(track)

    def _on_negotiation_timeout(self, session: Session) -> None:
        session.watchdog = None
        if self._is_current(session) and self.state_machine.state == SessionState.NEGOTIATING:
            error = NegotiationError(f"negotiation did not complete within {self.negotiation_timeout:g}s")
            self._spawn(self._fail_session(session, error))

    async def _fail_session(self, session: Session, error: CoordinatorError) -> None:
        if not self._is_current(session):
            return
        self._report(error)
        connection = self._detach_session()
        self._transition(SessionState.AWAITING_PEER, remote_peer_id=None, session_id=None)
        await self._close_connection(connection)

    # ------------------------------------------------------------------ negotiation steps (lock held)

    async def _start_session(self, session: Session) -> None:
        log = self._log(session)
        tracks = await self._local_tracks()
        if not self._is_current(session):
            return
        connection = self._transport_factory()
        session.connection = connection
        for track in tracks:
            connection.add_track(track)
        connection.on_local_candidate(partial(self._handle_local_candidate, session))
        connection.on_state_change(partial(self._handle_transport_state, session))
        connection.on_remote_track(self._handle_remote_track)
        log.info(
            "Transport created for %s as %s with %d local tracks",
            session.remote_peer_id,
            self._role.value if self._role else "?",
            len(tracks),
        )
        if not self._transition(SessionState.NEGOTIATING):
            return
        self._arm_watchdog(session)

        early, session.early_description = session.early_description, None
        if self._role is NegotiationRole.LEADER:
            if early is not None:
                self._report(NegotiationError(f"leader dropped an unsolicited {early.type}"))
            await self._negotiate_locked(session)
        elif early is not None:
            await self._apply_remote_description(session, early)

    async def _negotiate_locked(self, session: Session) -> None:
        log = self._log(session)
        if session.offer_pending:
            log.debug("Offer already outstanding; negotiation request ignored")
            return
        connection = session.connection
        if connection is None:
            return
        session.offer_pending = True
        try:
            offer = await connection.create_offer()
            if not self._is_current(session):
                return
            local = await connection.set_local_description(offer)
            if not self._is_current(session):
                return
            await self.signaling.send_description(local)
        except CoordinatorError as exc:
            if self._is_current(session):
                session.offer_pending = False
                self._report(exc)
            return
        log.info("Offer sent to %s", session.remote_peer_id)

    async def _apply_remote_description(self, session: Session, description: SessionDescription) -> None:
        log = self._log(session)
        role = self._role
        connection = session.connection
        if connection is None:
            return
        if role is NegotiationRole.LEADER and description.is_offer:
            self._report(NegotiationError("leader received an offer; only the leader may offer"))
            return
        if role is NegotiationRole.FOLLOWER and not description.is_offer:
            self._report(NegotiationError(f"follower received an unexpected {description.type}"))
            return
        if role is NegotiationRole.LEADER and not session.offer_pending:
            self._report(NegotiationError(f"{description.type} received without an outstanding offer"))
            return

        try:
            await connection.set_remote_description(description)
            if not self._is_current(session):
                return
            applied = await self.candidates.drain_into(
                session.session_id, connection, on_error=self._report
            )
            if not self._is_current(session):
                return
            if applied:
                log.debug("Applied %d buffered candidates", applied)
            if role is NegotiationRole.FOLLOWER:
                answer = await connection.create_answer()
                if not self._is_current(session):
                    return
                local = await connection.set_local_description(answer)
                if not self._is_current(session):
                    return
                await self.signaling.send_description(local)
                log.info("Answer sent to %s", session.remote_peer_id)
        except CoordinatorError as exc:
            # The Session stays in its state; the watchdog bounds a first negotiation.
            if self._is_current(session):
                if not description.is_offer:
                    # A rejected answer closes the exchange so the Leader can re-offer.
                    session.offer_pending = False
                self._report(exc)
            return

        if not description.is_offer:
            session.offer_pending = False
        self._mark_connected(session)

    # ------------------------------------------------------------------ signalling events

    async def on_link_connected(self) -> None:
        """A new top-level connection cycle: role and room are per connection."""

        connection = self._detach_session()
        self._inert = False
        self._role = None
        self._room_id = None
        self.candidates.clear()
        if self.state_machine.state != SessionState.IDLE:
            self._transition(SessionState.IDLE)
        self._transition(
            SessionState.AWAITING_ROLE,
            role=None,
            room_id=None,
            remote_peer_id=None,
            session_id=None,
            last_error=None,
        )
        await self._close_connection(connection)

    async def on_role_assigned(self, role: Union[NegotiationRole, str]) -> None:
        if self._inert:
            LOG.debug("Role assignment ignored while inert")
            return
        try:
            assigned = NegotiationRole.from_token(role)
        except NegotiationError as exc:
            self._report(exc)
            return

        async with self._lock:
            if self._role is not None:
                if assigned is self._role:
                    LOG.debug("Role %s re-asserted", assigned.value)
                    return
                self._report(
                    RoleConflict(f"role already {self._role.value}; ignoring {assigned.value}")
                )
                return
            if self.state_machine.state != SessionState.AWAITING_ROLE:
                self._report(NegotiationError(f"role assigned in state {self.state_machine.state.value}"))
                return
            self._role = assigned
            LOG.info("Assigned role %s", assigned.value)
            if not self._transition(SessionState.AWAITING_PEER, role=assigned.value):
                return
            session = self._session
            if session is not None and session.connection is None:
                self._log(session).info("Starting queued match with %s", session.remote_peer_id)
                await self._start_session(session)

    async def on_room_id(self, room_id: str) -> None:
        if self._inert:
            return
        self._room_id = str(room_id)
        if self._session is not None:
            self._session.room_id = self._room_id
        self.state_machine.update(room_id=self._room_id)

    async def on_peer_matched(self, remote_peer_id: str) -> None:
        if self._inert:
            LOG.debug("Peer match ignored while inert")
            return
        async with self._lock:
            if self._session is not None:
                self._report(
                    NegotiationError(
                        f"peer {remote_peer_id} matched while a session with "
                        f"{self._session.remote_peer_id} is active"
                    )
                )
                return
            state = self.state_machine.state
            if state not in (SessionState.AWAITING_ROLE, SessionState.AWAITING_PEER):
                self._report(NegotiationError(f"peer matched in state {state.value}"))
                return

            session = Session(remote_peer_id=str(remote_peer_id), room_id=self._room_id)
            self._session = session
            self.state_machine.update(remote_peer_id=session.remote_peer_id, session_id=session.session_id)
            if self._role is None:
                self._log(session).info("Matched %s before role assignment; queued", remote_peer_id)
                return
            await self._start_session(session)

    async def negotiate(self) -> None:
        """
        Leader only: create, install and send an offer.  A no-op while an
        offer is outstanding, so repeated triggers produce a single offer.
        """

        if self._inert:
            return
        async with self._lock:
            session = self._session
            if session is None or session.connection is None:
                LOG.debug("negotiate() without an active transport; ignoring")
                return
            if self._role is not NegotiationRole.LEADER:
                LOG.debug("Follower does not initiate offers")
                return
            await self._negotiate_locked(session)

    async def on_remote_description(self, description: Union[SessionDescription, dict, None]) -> None:
        if self._inert:
            return
        try:
            parsed = parse_description(description)
        except NegotiationError as exc:
            self._report(exc)
            return

        async with self._lock:
            session = self._session
            if session is None:
                self._report(
                    NegotiationError(
                        f"{parsed.type} received in state {self.state_machine.state.value} without a session"
                    )
                )
                return
            if session.connection is None:
                self._log(session).info("Holding remote %s until the role is known", parsed.type)
                session.early_description = parsed
                return
            await self._apply_remote_description(session, parsed)

    async def on_remote_candidate(self, candidate: Union[ICECandidate, dict, str, None]) -> None:
        if self._inert:
            return
        try:
            parsed = parse_candidate(candidate)
        except NegotiationError as exc:
            self._report(exc)
            return
        if parsed is None:
            LOG.debug("End-of-candidates marker dropped")
            return

        async with self._lock:
            session = self._session
            if session is None:
                self._report(NegotiationError("remote candidate received without a session"))
                return
            if session.connection is not None and self.candidates.is_live(session.session_id):
                try:
                    await session.connection.add_ice_candidate(parsed)
                except NegotiationError as exc:
                    if self._is_current(session):
                        self._report(exc)
                return
            if not self.candidates.enqueue(session.session_id, parsed):
                self._log(session).debug("Duplicate buffered candidate dropped")

    async def on_peer_lost(self) -> None:
        if self._inert:
            return
        session = self._session
        connection = self._detach_session()
        if session is not None:
            LOG.info("Peer %s lost", session.remote_peer_id)
        changes = {"remote_peer_id": None, "session_id": None}
        if self.state_machine.state in (SessionState.NEGOTIATING, SessionState.CONNECTED):
            self._transition(SessionState.AWAITING_PEER, **changes)
        elif session is not None:
            self.state_machine.update(**changes)
        await self._close_connection(connection)

    async def on_local_disconnect(self) -> None:
        """Unconditional teardown; inert until the next :meth:`on_link_connected`."""

        self._inert = True
        connection = self._detach_session()
        self._role = None
        self._room_id = None
        self.candidates.clear()
        if self.state_machine.state != SessionState.IDLE:
            self._transition(
                SessionState.IDLE, role=None, room_id=None, remote_peer_id=None, session_id=None
            )
        await self._close_connection(connection)

    async def on_link_lost(self) -> None:
        await self.on_local_disconnect()
        self._report(SignalingUnavailable("signalling link lost; reconnect attempts exhausted"))

    async def close(self) -> None:
        await self.on_local_disconnect()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = [
    "DEFAULT_NEGOTIATION_TIMEOUT",
    "NegotiationCoordinator",
    "NegotiationRole",
    "Session",
    "SignalingSink",
]
