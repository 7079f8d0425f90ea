import pytest

from duochat.errors import NegotiationError, RoleConflict
from duochat.session import (
    VALID_TRANSITIONS,
    IllegalTransition,
    SessionState,
    SessionStateMachine,
)


def test_initial_snapshot() -> None:
    machine = SessionStateMachine()

    snapshot = machine.snapshot()
    assert snapshot.rev == 0
    assert snapshot.state is SessionState.IDLE
    assert snapshot.role is None
    assert snapshot.last_error is None


def test_full_lifecycle_bumps_revision() -> None:
    machine = SessionStateMachine()

    machine.transition(SessionState.AWAITING_ROLE)
    machine.transition(SessionState.AWAITING_PEER, role="leader")
    machine.transition(SessionState.NEGOTIATING, remote_peer_id="peer-b")
    snap = machine.transition(SessionState.CONNECTED)

    assert snap.rev == 4
    assert snap.state is SessionState.CONNECTED
    assert snap.role == "leader"
    assert snap.remote_peer_id == "peer-b"

    # Partner loss goes back to waiting with the role retained.
    snap = machine.transition(SessionState.AWAITING_PEER, remote_peer_id=None)
    assert snap.role == "leader"
    assert snap.remote_peer_id is None


def test_illegal_transition_is_rejected() -> None:
    machine = SessionStateMachine()

    with pytest.raises(IllegalTransition):
        machine.transition(SessionState.CONNECTED)
    assert machine.state is SessionState.IDLE
    assert machine.snapshot().rev == 0
    assert isinstance(IllegalTransition("x"), NegotiationError)


def test_every_state_can_reach_idle_except_idle() -> None:
    for state, targets in VALID_TRANSITIONS.items():
        if state is SessionState.IDLE:
            assert SessionState.IDLE not in targets
        else:
            assert SessionState.IDLE in targets


def test_same_state_transition_without_changes_is_noop() -> None:
    machine = SessionStateMachine()
    machine.transition(SessionState.AWAITING_ROLE)

    snap = machine.transition(SessionState.AWAITING_ROLE)
    assert snap.rev == 1

    snap = machine.transition(SessionState.AWAITING_ROLE, room_id="room-1")
    assert snap.rev == 2
    assert snap.room_id == "room-1"


def test_update_refuses_state_changes() -> None:
    machine = SessionStateMachine()

    with pytest.raises(TypeError):
        machine.update(state=SessionState.CONNECTED)
    snap = machine.update(room_id="abc")
    assert snap.room_id == "abc"
    assert snap.state is SessionState.IDLE


def test_report_error_records_kind() -> None:
    machine = SessionStateMachine()

    snap = machine.report_error(RoleConflict("already leader"))

    assert snap.last_error is not None
    assert snap.last_error.kind == "role-conflict"
    assert snap.to_dict()["lastError"] == {"kind": "role-conflict", "message": "already leader"}


def test_observers_receive_snapshots() -> None:
    machine = SessionStateMachine()
    seen = []

    token = machine.subscribe(seen.append)
    machine.transition(SessionState.AWAITING_ROLE)
    machine.unsubscribe(token)
    machine.transition(SessionState.AWAITING_PEER, role="follower")

    assert [snap.rev for snap in seen] == [0, 1]
    assert seen[-1].state is SessionState.AWAITING_ROLE


def test_snapshot_to_dict_uses_wire_keys() -> None:
    machine = SessionStateMachine()
    machine.transition(SessionState.AWAITING_ROLE, room_id="r", session_id="s")

    payload = machine.snapshot().to_dict()

    assert payload == {
        "rev": 1,
        "state": "awaiting_role",
        "role": None,
        "roomId": "r",
        "remotePeerId": None,
        "sessionId": "s",
        "lastError": None,
    }
