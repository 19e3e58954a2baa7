"""
Orchestration run state machine.

Pure transition table; RunService applies it and persists the side effects.
"""

from typing import Dict, FrozenSet

from storymap.errors import InvalidTransitionError
from storymap.models.domain import RunStatus

VALID_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    RunStatus.QUEUED: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset(
        {RunStatus.BLOCKED, RunStatus.FAILED, RunStatus.COMPLETED, RunStatus.CANCELLED}
    ),
    RunStatus.BLOCKED: frozenset({RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.FAILED: frozenset({RunStatus.QUEUED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}

# States that close a run (ended_at is stamped on entry)
ENDING_STATES = frozenset({RunStatus.FAILED, RunStatus.COMPLETED, RunStatus.CANCELLED})


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, frozenset())


def assert_transition(from_status: str, to_status: str) -> None:
    """Raise InvalidTransitionError unless from_status -> to_status is allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
