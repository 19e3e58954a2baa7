import pytest

from conftest import action, seed_actions
from storymap.actions.effects import CODE_GENERATION_REASON, derive_id
from storymap.errors import EntityNotFoundError, ValidationError
from storymap.services.actions import ActionService
from storymap.services.snapshot import SnapshotService


@pytest.fixture
def service(context, db):
    return ActionService(context, db)


def _snapshot(context, db, project_id):
    return SnapshotService(context, db).fetch_snapshot(project_id)


def test_seed_batch_builds_hierarchy_with_derived_ids(context, db, service, project) -> None:
    result = service.apply_batch(project.id, seed_actions(project.id))

    assert result.applied == 4
    assert [r.validation_status for r in result.results] == ["accepted"] * 4
    card_id = derive_id("seed-card", "card")
    assert result.results[3].created_ids == [card_id]

    state = _snapshot(context, db, project.id)
    card = state.cards[card_id]
    assert card.workflow_activity_id == derive_id("seed-act", "activity")
    assert card.step_id is None
    assert card.status == "todo"
    assert card.position == 0
    assert state.activities[card.workflow_activity_id].color == "blue"


def test_rejected_action_does_not_stop_the_batch(context, db, service, story_map) -> None:
    pid = story_map["project_id"]
    result = service.apply_batch(
        pid,
        [
            action("bad-update", "updateCard", {"card_id": "missing"}, title="Nope"),
            action("good-card", "createCard", {"workflow_activity_id": story_map["activity_id"]}, title="Save card"),
        ],
    )

    assert result.applied == 1
    rejected, accepted = result.results
    assert rejected.validation_status == "rejected"
    assert rejected.reason == "Referenced card missing does not exist"
    assert rejected.applied_at is None
    assert accepted.validation_status == "accepted"
    assert accepted.applied_at is not None

    records = db.list_planning_actions(pid)
    by_id = {r.action_id: r for r in records}
    assert by_id["bad-update"].validation_status == "rejected"
    assert by_id["bad-update"].rejection_reason == "Referenced card missing does not exist"
    assert by_id["good-card"].validation_status == "accepted"


def test_malformed_batch_applies_and_records_nothing(context, db, service, story_map) -> None:
    pid = story_map["project_id"]
    before = len(db.list_planning_actions(pid))

    with pytest.raises(ValidationError) as exc_info:
        service.apply_batch(
            pid,
            [
                action("ok", "createCard", {"workflow_activity_id": story_map["activity_id"]}, title="Fine"),
                action("broken", "createCard", {"workflow_activity_id": story_map["activity_id"]}),
            ],
        )

    assert "actions.1.payload.title" in exc_info.value.details
    assert len(db.list_planning_actions(pid)) == before
    titles = [c.title for c in _snapshot(context, db, pid).cards.values()]
    assert "Fine" not in titles


def test_empty_and_unknown_action_type_are_shape_errors(service, story_map) -> None:
    with pytest.raises(ValidationError):
        service.apply_batch(story_map["project_id"], [])

    with pytest.raises(ValidationError) as exc_info:
        service.apply_batch(story_map["project_id"], [action("x", "deleteEverything", {})])
    assert "actions.0.action_type" in exc_info.value.details


def test_unknown_project_raises_not_found(service) -> None:
    with pytest.raises(EntityNotFoundError):
        service.apply_batch("no-such-project", seed_actions("no-such-project"))


def test_replaying_an_action_id_is_rejected(service, story_map) -> None:
    pid = story_map["project_id"]
    result = service.apply_batch(pid, [seed_actions(pid)[0]])

    assert result.applied == 0
    assert result.results[0].reason == "Action seed-wf was already applied"


def test_code_generation_intent_is_rejected_except_for_test_artifacts(context, db, service, story_map) -> None:
    pid = story_map["project_id"]
    result = service.apply_batch(
        pid,
        [
            action("codegen", "updateCard", {"card_id": story_map["card_id"]}, description="Please write code for it"),
            action(
                "test-artifact",
                "createContextArtifact",
                {"project_id": pid},
                name="checkout-e2e",
                type="test",
                content="write code paths are covered by this suite",
            ),
        ],
    )

    assert result.results[0].validation_status == "rejected"
    assert result.results[0].reason == CODE_GENERATION_REASON
    assert result.results[1].validation_status == "accepted"
    card = _snapshot(context, db, pid).cards[story_map["card_id"]]
    assert card.description == "Shopper can enter card number and expiry"


def test_update_card_null_semantics(context, db, service, story_map) -> None:
    pid = story_map["project_id"]
    card_id = story_map["card_id"]
    service.apply_batch(
        pid,
        [action("clear", "updateCard", {"card_id": card_id}, title=None, description=None, priority=3)],
    )

    card = _snapshot(context, db, pid).cards[card_id]
    assert card.title == "Enter card details"
    assert card.description is None
    assert card.priority == 3


def test_later_actions_see_earlier_ones_through_temp_ids(context, db, service, story_map) -> None:
    pid = story_map["project_id"]
    result = service.apply_batch(
        pid,
        [
            action("new-card", "createCard", {"workflow_activity_id": story_map["activity_id"]},
                   title="Confirm payment", temp_id="tmp-card"),
            action("new-req", "upsertCardKnowledgeItem", {"card_id": "tmp-card"},
                   item_type="requirement", text="Show a confirmation screen"),
        ],
    )

    assert result.applied == 2
    state = _snapshot(context, db, pid)
    card_id = derive_id("new-card", "card")
    requirements = state.knowledge_of(card_id, "requirement")
    assert [k.text for k in requirements] == ["Show a confirmation screen"]
    assert requirements[0].status == "draft"
    assert requirements[0].source == "user"


def test_reorder_card_within_and_across_scopes(context, db, service, story_map) -> None:
    pid = story_map["project_id"]
    activity_id = story_map["activity_id"]
    service.apply_batch(
        pid,
        [
            action("c2", "createCard", {"workflow_activity_id": activity_id}, title="Second"),
            action("c3", "createCard", {"workflow_activity_id": activity_id}, title="Third"),
        ],
    )
    first = story_map["card_id"]
    third = derive_id("c3", "card")

    result = service.apply_batch(pid, [action("move-up", "reorderCard", {"card_id": third}, new_position=0)])
    assert result.results[0].reordered_ids == [third]

    state = _snapshot(context, db, pid)
    assert [c.title for c in state.cards_in_scope(activity_id, None)] == ["Third", "Enter card details", "Second"]
    assert [c.position for c in state.cards_in_scope(activity_id, None)] == [0, 1, 2]

    service.apply_batch(
        pid,
        [action("into-step", "reorderCard", {"card_id": first}, new_position=5, new_step_id=story_map["step_id"])],
    )

    state = _snapshot(context, db, pid)
    assert [c.id for c in state.cards_in_scope(activity_id, story_map["step_id"])] == [first]
    assert state.cards[first].position == 0
    remaining = state.cards_in_scope(activity_id, None)
    assert [c.title for c in remaining] == ["Third", "Second"]
    assert [c.position for c in remaining] == [0, 1]


def test_planned_file_upsert_and_approval(context, db, service, story_map) -> None:
    pid = story_map["project_id"]
    card_id = story_map["card_id"]
    service.apply_batch(
        pid,
        [
            action("pf", "upsertCardPlannedFile", {"card_id": card_id}, logical_file_name="CardForm",
                   artifact_kind="component", action="edit", intent_summary="Card entry form"),
            action("pf-ok", "approveCardPlannedFile", {"card_id": card_id}, planned_file_id="pf", status="approved"),
        ],
    )

    planned = _snapshot(context, db, pid).planned_files_of(card_id)
    assert len(planned) == 1
    assert planned[0].action == "modify"
    assert planned[0].status == "approved"

    service.apply_batch(
        pid,
        [action("pf-edit", "upsertCardPlannedFile", {"card_id": card_id}, planned_file_id=planned[0].id,
                logical_file_name="CardForm", artifact_kind="component", action="modify",
                intent_summary="Card entry form with validation")],
    )
    edited = _snapshot(context, db, pid).planned_files_of(card_id)[0]
    assert edited.status == "proposed"
    assert edited.intent_summary == "Card entry form with validation"


def test_link_context_artifact_is_idempotent(context, db, service, story_map) -> None:
    pid = story_map["project_id"]
    card_id = story_map["card_id"]
    service.apply_batch(
        pid,
        [
            action("doc", "createContextArtifact", {"project_id": pid}, name="pci-notes", type="doc", temp_id="doc"),
            action("link-1", "linkContextArtifact", {"card_id": card_id}, context_artifact_id="doc"),
        ],
    )
    artifact_id = derive_id("doc", "context_artifact")

    result = service.apply_batch(
        pid, [action("link-2", "linkContextArtifact", {"card_id": card_id}, context_artifact_id=artifact_id)]
    )

    assert result.results[0].validation_status == "accepted"
    assert _snapshot(context, db, pid).artifact_ids_of(card_id) == [artifact_id]


def test_successful_batch_writes_event(context, db, service, project) -> None:
    service.apply_batch(project.id, seed_actions(project.id))

    events = db.list_events(project.id)
    assert events[0].event_type == "planning_action_applied"
    assert events[0].payload["applied"] == 4


def test_action_without_id_gets_a_generated_one(context, db, service, project) -> None:
    result = service.apply_batch(
        project.id,
        [{"action_type": "createWorkflow", "target_ref": {"project_id": project.id}, "payload": {"title": "W"}}],
    )

    assert result.applied == 1
    (outcome,) = result.results
    assert outcome.validation_status == "accepted"
    assert outcome.action_id
    assert outcome.created_ids == [derive_id(outcome.action_id, "workflow")]
    assert [r.action_id for r in db.list_planning_actions(project.id)] == [outcome.action_id]
