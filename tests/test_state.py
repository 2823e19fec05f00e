import pytest

from forge.errors import InvalidTransitionError
from forge.state import TaskStatus, can_transition, ensure_transition


def test_happy_path_transitions() -> None:
    path = ["intake", "classified", "preparing", "prepared", "completed"]
    for current, new in zip(path, path[1:]):
        assert ensure_transition(current, new) == TaskStatus(new)


def test_awaiting_human_can_resume_or_cancel() -> None:
    assert can_transition("awaiting_human", "preparing")
    assert can_transition("awaiting_human", "cancelled")
    assert not can_transition("awaiting_human", "prepared")


def test_terminal_states_do_not_move() -> None:
    assert not can_transition("completed", "preparing")
    assert not can_transition("cancelled", "failed")


def test_any_live_state_can_fail() -> None:
    assert can_transition("preparing", "failed")
    assert can_transition("prepared", "failed")


def test_invalid_transition_raises() -> None:
    with pytest.raises(InvalidTransitionError):
        ensure_transition("intake", "completed")
