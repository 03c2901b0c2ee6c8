import pytest

from shipyard.core.errors import IllegalTransitionError
from shipyard.core.pipeline.models import RunState
from shipyard.core.pipeline.state_machine import RETRYABLE, allowed_next, can_transition, ensure_transition, is_terminal


def test_allowed_transitions():
    assert can_transition(RunState.PENDING, RunState.RUNNING)
    assert can_transition(RunState.PENDING, RunState.CANCELED)
    assert can_transition(RunState.RUNNING, RunState.BLOCKED)
    assert can_transition(RunState.RUNNING, RunState.SKIPPED)
    # staying put is always fine
    assert can_transition(RunState.SUCCEEDED, RunState.SUCCEEDED)


@pytest.mark.parametrize(
    "src, dst",
    [
        (RunState.PENDING, RunState.SUCCEEDED),
        (RunState.SUCCEEDED, RunState.RUNNING),
        (RunState.FAILED, RunState.SUCCEEDED),
        (RunState.BLOCKED, RunState.RUNNING),
        (RunState.CANCELED, RunState.PENDING),
    ],
)
def test_illegal_transitions_raise(src, dst):
    assert not can_transition(src, dst)
    with pytest.raises(IllegalTransitionError) as ei:
        ensure_transition(src, dst)
    assert ei.value.details == {"from": src.value, "to": dst.value}


def test_terminal_and_retryable_states():
    for s in (RunState.SUCCEEDED, RunState.FAILED, RunState.BLOCKED, RunState.CANCELED, RunState.SKIPPED):
        assert is_terminal(s)
    assert not is_terminal(RunState.RUNNING)
    assert RunState.SUCCEEDED not in RETRYABLE
    assert RunState.BLOCKED in RETRYABLE
    assert allowed_next(RunState.SUCCEEDED) == {}
    assert set(allowed_next(RunState.PENDING)) == {"RUNNING", "CANCELED", "SKIPPED"}
