import pytest

from coach_stream.errors import InvalidTransitionError
from coach_stream.models import StreamPhase as P
from coach_stream.performance import PerformanceTracker
from coach_stream.state import TRANSITIONS, StreamStateMachine


@pytest.fixture
def machine():
    return StreamStateMachine(PerformanceTracker(), max_restarts=2)


def _walk(machine, *phases):
    for phase in phases:
        machine.transition(phase)


def test_happy_path_returns_to_idle(machine):
    _walk(machine, P.CONNECTING, P.LOADING_CONTEXT, P.STREAMING, P.COMPLETING, P.IDLE)
    assert machine.phase is P.IDLE
    assert not machine.is_active
    assert machine.tracker.metrics.stage == "complete"
    assert [dst for _, dst in machine.history][-1] is P.IDLE


@pytest.mark.parametrize("path", [
    (P.LOADING_CONTEXT,),
    (P.STREAMING,),
    (P.CONNECTING, P.STREAMING),
    (P.CONNECTING, P.IDLE),
    (P.CONNECTING, P.LOADING_CONTEXT, P.CONNECTING),
])
def test_illegal_transitions_raise(machine, path):
    *ok, bad = path
    _walk(machine, *ok)
    before = machine.phase
    with pytest.raises(InvalidTransitionError):
        machine.transition(bad)
    assert machine.phase is before


@pytest.mark.parametrize("phase", [P.CONNECTING, P.LOADING_CONTEXT, P.STREAMING, P.COMPLETING])
def test_every_active_phase_can_fail_or_abort(phase):
    for target in (P.ERROR, P.ABORTED):
        assert target in TRANSITIONS[phase]


def test_error_updates_tracker(machine):
    _walk(machine, P.CONNECTING)
    machine.transition(P.ERROR, reason="boom")
    m = machine.tracker.metrics
    assert m.stage == "error"
    assert m.last_error == "boom"
    assert m.streaming_error_count == 1


def test_restart_is_bounded(machine):
    _walk(machine, P.CONNECTING, P.ABORTED, P.CONNECTING, P.ERROR, P.CONNECTING, P.ABORTED)
    assert machine.restarts == 2
    assert not machine.can_transition(P.CONNECTING)
    with pytest.raises(InvalidTransitionError):
        machine.transition(P.CONNECTING)


def test_abort_allowed_before_start(machine):
    machine.transition(P.ABORTED)
    assert machine.phase is P.ABORTED
    assert machine.restarts == 0


def test_pending_restart_can_be_cancelled(machine):
    _walk(machine, P.CONNECTING, P.ERROR)
    machine.transition(P.ABORTED, reason="Manual stop")
    assert machine.phase is P.ABORTED
    assert machine.restarts == 0
