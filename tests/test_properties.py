"""
Property-based tests for the pure planning and orchestration rules.
"""

import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List

import pytest
from hypothesis import given, settings, strategies as st

from conftest import action
from storymap.actions.effects import ResolutionTable, commit_to_state, derive_id, plan_action
from storymap.actions.validation import parse_action_batch
from storymap.config import Config
from storymap.db.database import SQLiteDatabase
from storymap.errors import InvalidTransitionError
from storymap.models.state import ProjectState
from storymap.orchestration.approval_gates import validate_approval_gates
from storymap.orchestration.state_machine import VALID_TRANSITIONS, assert_transition
from storymap.services.base import ServiceContext
from storymap.services.snapshot import SnapshotService

CHECK_TYPES = ["dependency", "security", "policy", "lint", "unit", "integration", "e2e"]
RUN_STATUSES = list(VALID_TRANSITIONS)

check_record_strategy = st.fixed_dictionaries({
    "check_type": st.sampled_from(CHECK_TYPES),
    "status": st.sampled_from(["passed", "failed", "skipped"]),
})


@contextmanager
def empty_project_state():
    """Snapshot of a freshly created project in a throwaway database."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = SQLiteDatabase(Path(tmpdir) / "props.sqlite")
        db.init_schema()
        project = db.create_project(name="props")
        yield SnapshotService(ServiceContext(config=Config()), db).fetch_snapshot(project.id)


def _plan_all(state: ProjectState, raw_actions: List[Dict[str, Any]]) -> None:
    resolutions = ResolutionTable()
    for parsed in parse_action_batch(raw_actions):
        outcome = plan_action(state, parsed, resolutions)
        assert outcome.accepted, outcome.reason
        commit_to_state(state, outcome, resolutions)


@settings(max_examples=50, deadline=None)
@given(
    card_count=st.integers(min_value=1, max_value=6),
    moved=st.integers(min_value=0, max_value=5),
    new_position=st.integers(min_value=0, max_value=12),
)
def test_reorder_keeps_scope_contiguous(card_count: int, moved: int, new_position: int) -> None:
    moved = moved % card_count
    with empty_project_state() as state:
        batch = [
            action("wf", "createWorkflow", {}, title="Checkout"),
            action("act", "createActivity", {"workflow_id": "wf"}, title="Pay"),
        ]
        batch += [
            action(f"c{i}", "createCard", {"workflow_activity_id": "act"}, title=f"Card {i}")
            for i in range(card_count)
        ]
        batch.append(action("move", "reorderCard", {"card_id": f"c{moved}"}, new_position=new_position))

        _plan_all(state, batch)

        scope = state.cards_in_scope(derive_id("act", "activity"), None)
        assert [c.position for c in scope] == list(range(card_count))
        assert scope[min(new_position, card_count - 1)].id == derive_id(f"c{moved}", "card")


@settings(max_examples=200, deadline=None)
@given(
    required=st.lists(st.sampled_from(CHECK_TYPES), unique=True, max_size=4),
    records=st.lists(check_record_strategy, max_size=10),
)
def test_approval_requires_latest_pass_for_every_required_check(required, records) -> None:
    latest = {r["check_type"]: r["status"] for r in records}

    result = validate_approval_gates(required, records)

    assert result.can_approve == all(latest.get(check) == "passed" for check in required)
    assert set(result.missing_checks) == {c for c in required if c not in latest}
    assert set(result.failed_checks) == {c for c in required if latest.get(c) == "failed"}


@settings(max_examples=100, deadline=None)
@given(
    required=st.lists(st.sampled_from(CHECK_TYPES), unique=True, min_size=1, max_size=4),
    records=st.lists(check_record_strategy, max_size=10),
    extra=st.sampled_from(CHECK_TYPES),
)
def test_recording_a_pass_never_revokes_approval(required, records, extra) -> None:
    before = validate_approval_gates(required, records)
    after = validate_approval_gates(required, records + [{"check_type": extra, "status": "passed"}])

    assert after.can_approve or not before.can_approve


@given(from_status=st.sampled_from(RUN_STATUSES), to_status=st.sampled_from(RUN_STATUSES))
def test_only_tabled_transitions_are_accepted(from_status: str, to_status: str) -> None:
    if to_status in VALID_TRANSITIONS[from_status]:
        assert_transition(from_status, to_status)
    else:
        with pytest.raises(InvalidTransitionError):
            assert_transition(from_status, to_status)
