"""
ICE candidate value type and the per-Session early-candidate buffer.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Deque, Dict, Optional, Set, Tuple

from ..errors import NegotiationError

if TYPE_CHECKING:  # pragma: no cover - typing aid
    from .transport import TransportConnection

LOG = logging.getLogger(__name__)

CANDIDATE_PREFIX = "candidate:"


@dataclass(frozen=True)
class ICECandidate:
    """Serialisable ICE candidate container (browser ``RTCIceCandidateInit`` shape)."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    @property
    def is_end_of_candidates(self) -> bool:
        return not self.candidate.strip()

    @property
    def sdp_attribute(self) -> str:
        """The candidate line without the ``candidate:`` prefix."""

        value = self.candidate.strip()
        if value.startswith(CANDIDATE_PREFIX):
            value = value[len(CANDIDATE_PREFIX):]
        return value

    def to_payload(self) -> dict:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }


class CandidateBuffer:
    """
    Remote candidates that arrived before their Session's remote description.

    Entries are keyed by Session identity and kept in arrival order.  Once an
    entry has been drained the Session is *live* and the coordinator applies
    later arrivals directly.  :meth:`discard` must be called on teardown so
    that nothing leaks into the next Session.
    """

    def __init__(self) -> None:
        self._pending: Dict[str, Deque[ICECandidate]] = {}
        self._live: Set[str] = set()

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._pending or session_id in self._live

    def is_live(self, session_id: str) -> bool:
        return session_id in self._live

    def pending(self, session_id: str) -> Tuple[ICECandidate, ...]:
        return tuple(self._pending.get(session_id, ()))

    def enqueue(self, session_id: str, candidate: ICECandidate) -> bool:
        """
        Append ``candidate``; returns ``False`` when an identical value is already queued.
        """

        if session_id in self._live:
            raise NegotiationError(f"session {session_id[:8]} is live; apply candidates directly")
        queue = self._pending.setdefault(session_id, deque())
        if candidate in queue:
            return False
        queue.append(candidate)
        return True

    async def drain_into(
        self,
        session_id: str,
        connection: "TransportConnection",
        *,
        on_error: Optional[Callable[[NegotiationError], None]] = None,
    ) -> int:
        """
        Apply every buffered candidate to ``connection`` in insertion order,
        then mark the Session live.  Returns the number applied.

        A discard issued while a candidate is being applied stops the drain and
        leaves the Session not-live.
        """

        self._pending.setdefault(session_id, deque())
        applied = 0
        while True:
            queue = self._pending.get(session_id)
            if queue is None:
                LOG.debug("Buffer for session %s discarded mid-drain", session_id[:8])
                return applied
            if not queue:
                break
            candidate = queue.popleft()
            try:
                await connection.add_ice_candidate(candidate)
            except NegotiationError as exc:
                if on_error is None:
                    raise
                on_error(exc)
                continue
            applied += 1

        self._pending.pop(session_id, None)
        self._live.add(session_id)
        return applied

    def discard(self, session_id: str) -> int:
        """Forget everything about ``session_id``; returns the number of dropped candidates."""

        queue = self._pending.pop(session_id, None)
        self._live.discard(session_id)
        return len(queue) if queue else 0

    def clear(self) -> None:
        self._pending.clear()
        self._live.clear()


__all__ = ["CANDIDATE_PREFIX", "CandidateBuffer", "ICECandidate"]
