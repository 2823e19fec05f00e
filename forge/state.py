"""
Task lifecycle states and the transitions allowed between them.
"""

from __future__ import annotations

from enum import StrEnum

from .errors import InvalidTransitionError


class TaskStatus(StrEnum):
    INTAKE = "intake"
    CLASSIFIED = "classified"
    PREPARING = "preparing"
    PREPARED = "prepared"
    AWAITING_HUMAN = "awaiting_human"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.INTAKE: frozenset({TaskStatus.CLASSIFIED, TaskStatus.AWAITING_HUMAN}),
    TaskStatus.CLASSIFIED: frozenset({TaskStatus.PREPARING, TaskStatus.AWAITING_HUMAN}),
    TaskStatus.PREPARING: frozenset(
        {TaskStatus.PREPARED, TaskStatus.AWAITING_HUMAN, TaskStatus.BLOCKED}
    ),
    TaskStatus.PREPARED: frozenset({TaskStatus.COMPLETED, TaskStatus.PREPARING}),
    TaskStatus.AWAITING_HUMAN: frozenset(
        {TaskStatus.PREPARING, TaskStatus.BLOCKED, TaskStatus.CANCELLED}
    ),
    TaskStatus.BLOCKED: frozenset({TaskStatus.PREPARING}),
}


def can_transition(current: str, new: str) -> bool:
    """Whether a task in ``current`` may move to ``new``."""
    current_status = TaskStatus(current)
    new_status = TaskStatus(new)
    if current_status == new_status:
        return True
    if new_status == TaskStatus.FAILED:
        return current_status not in TERMINAL_STATUSES
    return new_status in ALLOWED_TRANSITIONS.get(current_status, frozenset())


def ensure_transition(current: str, new: str) -> TaskStatus:
    if not can_transition(current, new):
        raise InvalidTransitionError(f"Task cannot move from {current} to {new}")
    return TaskStatus(new)
