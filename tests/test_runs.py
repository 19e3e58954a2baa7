import pytest

from storymap.errors import ConflictError, InvalidTransitionError
from storymap.models.domain import AssignmentStatus, RunStatus, RunUpdate
from storymap.orchestration.state_machine import VALID_TRANSITIONS, assert_transition, can_transition
from storymap.services.approvals import ApprovalService
from storymap.services.runs import RunService


@pytest.fixture
def runs(context, db):
    return RunService(context, db)


def _card_run(runs, story_map, **snapshot):
    result = runs.create_run(
        project_id=story_map["project_id"],
        scope="card",
        card_id=story_map["card_id"],
        trigger_type="card",
        initiated_by="user",
        run_input_snapshot={"card_id": story_map["card_id"], **snapshot},
    )
    assert result.success, result.validation_errors
    return result.run


def test_transition_table() -> None:
    assert can_transition("queued", "running")
    assert can_transition("blocked", "running")
    assert can_transition("failed", "queued")
    assert not can_transition("queued", "failed")
    assert not can_transition("completed", "running")
    assert VALID_TRANSITIONS["cancelled"] == frozenset()
    with pytest.raises(InvalidTransitionError):
        assert_transition("completed", "running")


def test_create_run_freezes_policy_and_marks_card_queued(runs, db, story_map) -> None:
    run = _card_run(runs, story_map)

    assert run.status == RunStatus.QUEUED
    assert run.base_branch == "main"
    assert run.system_policy_snapshot["required_checks"] == ["lint"]
    assert db.get_card(story_map["card_id"]).build_state == "queued"
    assert db.list_events(story_map["project_id"], run.id)[0].event_type == "run_created"

    db.update_policy_profile(story_map["project_id"], required_checks=["lint", "unit"])
    assert db.get_run(run.id).required_checks == ["lint"]


def test_create_run_validation_errors(runs, db, story_map) -> None:
    pid = story_map["project_id"]
    runs.get_or_create_policy(pid)
    db.update_policy_profile(pid, forbidden_paths=["infra"])

    result = runs.create_run(
        project_id=pid,
        scope="card",
        card_id=story_map["card_id"],
        trigger_type="card",
        initiated_by="user",
        run_input_snapshot={"allowed_paths": ["infra/terraform"], "forbidden_paths": []},
    )

    assert not result.success
    assert "run_input_snapshot must include workflow_id or card_id as scope target" in result.validation_errors
    assert "allowed_paths cannot include forbidden path: infra" in result.validation_errors
    assert "run must forbid paths required by policy: infra" in result.validation_errors


def test_create_run_rejects_card_from_other_project(runs, db, story_map) -> None:
    other = db.create_project(name="other")

    result = runs.create_run(
        project_id=other.id,
        scope="card",
        card_id=story_map["card_id"],
        trigger_type="card",
        initiated_by="user",
        run_input_snapshot={"card_id": story_map["card_id"]},
    )

    assert not result.success
    assert "not found" in result.error


def test_workflow_run_tracks_workflow_build_state(runs, db, story_map) -> None:
    result = runs.create_run(
        project_id=story_map["project_id"],
        scope="workflow",
        workflow_id=story_map["workflow_id"],
        trigger_type="workflow",
        initiated_by="user",
        run_input_snapshot={"workflow_id": story_map["workflow_id"]},
    )
    assert result.success

    runs.transition_run(result.run.id, RunStatus.RUNNING)
    assert db.get_workflow(story_map["workflow_id"]).build_state == "running"

    runs.transition_run(result.run.id, RunStatus.CANCELLED)
    assert db.get_workflow(story_map["workflow_id"]).build_state is None


def test_transition_stamps_times_and_rejects_illegal_moves(runs, db, story_map) -> None:
    run = _card_run(runs, story_map)

    running = runs.transition_run(run.id, RunStatus.RUNNING)
    assert running.started_at is not None
    assert running.ended_at is None

    completed = runs.transition_run(run.id, RunStatus.COMPLETED)
    assert completed.ended_at is not None

    with pytest.raises(InvalidTransitionError):
        runs.transition_run(run.id, RunStatus.RUNNING)
    assert db.get_run(run.id).status == RunStatus.COMPLETED


def test_requeue_resets_unfinished_assignments(runs, db, story_map) -> None:
    run = _card_run(runs, story_map)
    runs.transition_run(run.id, RunStatus.RUNNING)
    assignment = db.create_assignment(
        run_id=run.id, card_id=story_map["card_id"], agent_role="coder", agent_profile="default",
        feature_branch="feat/card", allowed_paths=["src"], status=AssignmentStatus.RUNNING,
    )
    runs.transition_run(run.id, RunStatus.FAILED)

    requeued = runs.transition_run(run.id, RunStatus.QUEUED)

    assert requeued.status == RunStatus.QUEUED
    assert requeued.ended_at is None
    assert db.get_assignment(assignment.id).status == AssignmentStatus.QUEUED
    assert db.get_card(story_map["card_id"]).build_state == "queued"


def test_recover_stale_runs_fails_old_running_runs_only(runs, db, story_map) -> None:
    stale = _card_run(runs, story_map)
    runs.transition_run(stale.id, RunStatus.RUNNING)
    db.update_run(stale.id, RunUpdate(started_at="2020-01-01T00:00:00+00:00"))
    assignment = db.create_assignment(
        run_id=stale.id, card_id=story_map["card_id"], agent_role="coder", agent_profile="default",
        feature_branch="feat/card", allowed_paths=["src"], status=AssignmentStatus.RUNNING,
    )
    queued = _card_run(runs, story_map)
    db.update_run(queued.id, RunUpdate(started_at="2020-01-01T00:00:00+00:00"))

    assert runs.recover_stale_runs(0) == 0
    assert runs.recover_stale_runs(30) == 1

    assert db.get_run(stale.id).status == RunStatus.FAILED
    assert db.get_run(queued.id).status == RunStatus.QUEUED
    assert db.get_assignment(assignment.id).status == AssignmentStatus.FAILED
    card = db.get_card(story_map["card_id"])
    assert card.build_state == "failed"
    assert "recovered after 30+ min" in card.last_build_error


def test_recent_running_run_is_not_recovered(runs, db, story_map) -> None:
    run = _card_run(runs, story_map)
    runs.transition_run(run.id, RunStatus.RUNNING)

    assert runs.recover_stale_runs(30) == 0
    assert db.get_run(run.id).status == RunStatus.RUNNING


def test_approval_requires_passing_checks_then_allows_one_pr(context, db, runs, story_map) -> None:
    pid = story_map["project_id"]
    run = _card_run(runs, story_map)
    approvals = ApprovalService(context, db)

    blocked = approvals.request_approval(pid, run.id, "create_pr", "alice")
    assert not blocked.success
    assert blocked.gate.missing_checks == ["lint"]

    no_approval = approvals.create_pull_request_candidate(pid, run.id, head_branch="feat/card", title="Card entry")
    assert no_approval.validation_errors == ["An approved create_pr approval request is required"]

    runs.record_check(run.id, "lint", "passed")
    requested = approvals.request_approval(pid, run.id, "create_pr", "alice")
    assert requested.success
    assert requested.approval.status == "pending"

    resolved = approvals.resolve_approval(pid, requested.approval.id, status="approved", resolved_by="bob")
    assert resolved.approval.status == "approved"
    assert resolved.approval.resolved_at is not None
    again = approvals.resolve_approval(pid, requested.approval.id, status="rejected", resolved_by="bob")
    assert again.error == "Approval request is already approved"

    created = approvals.create_pull_request_candidate(pid, run.id, head_branch="feat/card", title="Card entry")
    assert created.success
    assert created.candidate.base_branch == "main"
    assert created.candidate.status == "not_created"

    duplicate = approvals.create_pull_request_candidate(pid, run.id, head_branch="feat/card", title="Again")
    assert duplicate.validation_errors == ["A pull request candidate already exists for this run"]

    opened = approvals.update_pull_request_candidate(
        pid, created.candidate.id, status="open", pr_url="https://example.com/pr/1"
    )
    assert opened.candidate.pr_url == "https://example.com/pr/1"


def test_concurrent_transition_keeps_the_first_terminal_status(runs, db, story_map, monkeypatch) -> None:
    run = _card_run(runs, story_map)
    runs.transition_run(run.id, RunStatus.RUNNING)
    stale = db.get_run(run.id)
    runs.transition_run(run.id, RunStatus.COMPLETED)
    monkeypatch.setattr(db, "get_run", lambda run_id: stale)

    with pytest.raises(ConflictError):
        runs.transition_run(run.id, RunStatus.CANCELLED)

    monkeypatch.undo()
    assert db.get_run(run.id).status == RunStatus.COMPLETED


def test_status_guarded_update_reports_current_status(runs, db, story_map) -> None:
    run = _card_run(runs, story_map)

    with pytest.raises(ConflictError, match="is queued, expected running"):
        db.update_run(run.id, RunUpdate(status=RunStatus.COMPLETED), expected_status=RunStatus.RUNNING)
    with pytest.raises(KeyError):
        db.update_run("missing", RunUpdate(status=RunStatus.COMPLETED), expected_status=RunStatus.RUNNING)

    assert db.get_run(run.id).status == RunStatus.QUEUED
