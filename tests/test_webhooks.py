import pytest

from storymap.models.domain import AssignmentStatus, RunStatus
from storymap.orchestration.execution_client import LocalExecutionClient
from storymap.services.assignments import AssignmentService
from storymap.services.runs import RunService
from storymap.services.webhooks import AgentWebhookEvent, WebhookService


@pytest.fixture
def assignments(context, db):
    return AssignmentService(context, db, LocalExecutionClient())


@pytest.fixture
def webhooks(context, db):
    return WebhookService(context, db)


@pytest.fixture
def running(context, db, assignments, story_map):
    """A card run with one dispatched assignment."""
    run = RunService(context, db).create_run(
        project_id=story_map["project_id"], scope="card", card_id=story_map["card_id"],
        trigger_type="card", initiated_by="user", run_input_snapshot={"card_id": story_map["card_id"]},
    ).run
    assignment = assignments.create_assignment(
        run_id=run.id, card_id=story_map["card_id"], agent_role="coder", agent_profile="default",
        feature_branch="feat/card-entry", allowed_paths=["src"],
    ).assignment
    outcome = assignments.dispatch_assignment(assignment.id)
    assert outcome.success
    return run, assignment, outcome.execution_id


def test_completed_build_records_commit_knowledge_and_closes_run(db, webhooks, running, story_map) -> None:
    run, assignment, execution_id = running

    webhooks.process(AgentWebhookEvent(event_type="execution_started", assignment_id=assignment.id,
                                       execution_id=execution_id))
    webhooks.process(AgentWebhookEvent(
        event_type="commit_created",
        assignment_id=assignment.id,
        commit={"sha": "abc123", "branch": "feat/card-entry", "message": "Add card form"},
    ))
    result = webhooks.process(AgentWebhookEvent(
        event_type="execution_completed",
        assignment_id=assignment.id,
        execution_id=execution_id,
        summary="Card form done",
        knowledge={
            "facts": [{"text": "Cards are tokenized client side", "evidence_source": "src/card.ts"}],
            "questions": [{"text": "Support Amex?"}],
        },
    ))

    assert result.success
    assert db.get_assignment(assignment.id).status == AssignmentStatus.COMPLETED
    card = db.get_card(story_map["card_id"])
    assert card.build_state == "completed"
    assert card.last_build_ref == "abc123"
    assert card.last_built_at is not None
    assert db.get_run(run.id).status == RunStatus.COMPLETED

    (execution,) = db.list_agent_executions(assignment.id)
    assert execution.status == "completed"
    assert execution.summary == "Card form done"

    facts = db.list_knowledge_items(story_map["card_id"], "fact")
    assert [(f.text, f.source, f.status, f.evidence_source) for f in facts] == [
        ("Cards are tokenized client side", "agent", "draft", "src/card.ts")
    ]
    assert [q.text for q in db.list_knowledge_items(story_map["card_id"], "question")] == ["Support Amex?"]


def test_completed_without_commits_uses_feature_branch_as_ref(db, webhooks, running, story_map) -> None:
    _, assignment, _ = running

    webhooks.process(AgentWebhookEvent(event_type="execution_completed", assignment_id=assignment.id))

    assert db.get_card(story_map["card_id"]).last_build_ref == "feat/card-entry"


def test_run_stays_open_while_other_assignments_are_unfinished(db, assignments, webhooks, running, story_map) -> None:
    run, assignment, _ = running
    assignments.create_assignment(
        run_id=run.id, card_id=story_map["card_id"], agent_role="tester", agent_profile="default",
        feature_branch="feat/card-tests", allowed_paths=["tests"],
    )

    webhooks.process(AgentWebhookEvent(event_type="execution_completed", assignment_id=assignment.id))

    assert db.get_run(run.id).status == RunStatus.RUNNING


def test_failed_build_fails_run_and_records_error(db, webhooks, running, story_map) -> None:
    run, assignment, _ = running

    webhooks.process(AgentWebhookEvent(event_type="execution_failed", assignment_id=assignment.id,
                                       error="Tests failed"))

    assert db.get_assignment(assignment.id).status == AssignmentStatus.FAILED
    card = db.get_card(story_map["card_id"])
    assert card.build_state == "failed"
    assert card.last_build_error == "Tests failed"
    assert db.get_run(run.id).status == RunStatus.FAILED
    assert db.list_events(story_map["project_id"], run.id)[0].event_type == "execution_failed"


def test_blocked_build_blocks_run_and_can_be_resumed(db, assignments, webhooks, running, story_map) -> None:
    run, assignment, _ = running

    webhooks.process(AgentWebhookEvent(event_type="execution_blocked", assignment_id=assignment.id,
                                       summary="Which payment provider?",
                                       knowledge={"questions": [{"text": "Stripe or Adyen?"}]}))

    assert db.get_run(run.id).status == RunStatus.BLOCKED
    card = db.get_card(story_map["card_id"])
    assert card.build_state == "blocked"
    assert card.last_build_error == "Which payment provider?"

    resumed = assignments.resume_blocked_assignment(story_map["project_id"], story_map["card_id"])

    assert resumed.success
    assert db.get_run(run.id).status == RunStatus.RUNNING
    assert db.get_assignment(assignment.id).status == AssignmentStatus.RUNNING
    assert len(db.list_agent_executions(assignment.id)) == 2


def test_unknown_assignment_is_reported(webhooks) -> None:
    result = webhooks.process(AgentWebhookEvent(event_type="execution_started", assignment_id="missing"))

    assert not result.success
    assert result.error == "Assignment not found"
