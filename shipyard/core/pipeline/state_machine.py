from __future__ import annotations

from typing import Dict, Set, Tuple

from shipyard.core.errors import IllegalTransitionError

from .models import RunState


_ALLOWED: Set[Tuple[RunState, RunState]] = {
    (RunState.PENDING, RunState.RUNNING),
    (RunState.PENDING, RunState.CANCELED),
    (RunState.PENDING, RunState.SKIPPED),

    (RunState.RUNNING, RunState.SUCCEEDED),
    (RunState.RUNNING, RunState.FAILED),
    (RunState.RUNNING, RunState.BLOCKED),
    (RunState.RUNNING, RunState.CANCELED),
    (RunState.RUNNING, RunState.SKIPPED),
}

_TERMINAL: Set[RunState] = {
    RunState.SUCCEEDED,
    RunState.FAILED,
    RunState.BLOCKED,
    RunState.CANCELED,
    RunState.SKIPPED,
}

RETRYABLE: Set[RunState] = {
    RunState.FAILED,
    RunState.BLOCKED,
    RunState.CANCELED,
}


def is_terminal(state: RunState) -> bool:
    return state in _TERMINAL


def can_transition(src: RunState, dst: RunState) -> bool:
    if src == dst:
        return True
    if src in _TERMINAL:
        return False
    return (src, dst) in _ALLOWED


def ensure_transition(src: RunState, dst: RunState) -> None:
    if not can_transition(src, dst):
        raise IllegalTransitionError(
            f"Illegal transition: {src.value} -> {dst.value}",
            details={"from": src.value, "to": dst.value},
        )


def allowed_next(src: RunState) -> Dict[str, bool]:
    out: Dict[str, bool] = {}
    for a, b in _ALLOWED:
        if a == src:
            out[b.value] = True
    return out
