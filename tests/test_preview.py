from conftest import action, seed_actions
from storymap.actions.effects import derive_id
from storymap.actions.preview import preview_action_batch, summarize_previews
from storymap.services.actions import ActionService
from storymap.services.snapshot import SnapshotService


def test_preview_reports_the_ids_apply_creates_without_writing(context, db, project) -> None:
    batch = seed_actions(project.id)
    snapshot = SnapshotService(context, db).fetch_snapshot(project.id)

    previews = preview_action_batch(batch, snapshot)

    assert previews is not None
    assert [p.action_type for p in previews] == ["createWorkflow", "createActivity", "createStep", "createCard"]
    assert previews[3].created_ids == [derive_id("seed-card", "card")]
    assert summarize_previews(previews).splitlines()[0] == "createWorkflow: Checkout"
    assert SnapshotService(context, db).fetch_snapshot(project.id).workflows == {}
    assert db.list_planning_actions(project.id) == []

    applied = ActionService(context, db).apply_batch(project.id, batch)
    assert [r.created_ids for r in applied.results] == [p.created_ids for p in previews]


def test_preview_does_not_mutate_the_snapshot(context, db, story_map) -> None:
    snapshot = SnapshotService(context, db).fetch_snapshot(story_map["project_id"])
    batch = [action("rename", "updateCard", {"card_id": story_map["card_id"]}, title="Renamed")]

    previews = preview_action_batch(batch, snapshot)

    assert previews[0].updated_ids == [story_map["card_id"]]
    assert snapshot.cards[story_map["card_id"]].title == "Enter card details"


def test_preview_returns_none_when_any_action_would_be_rejected(context, db, story_map) -> None:
    snapshot = SnapshotService(context, db).fetch_snapshot(story_map["project_id"])
    batch = [
        action("ok", "updateCard", {"card_id": story_map["card_id"]}, priority=2),
        action("bad", "createStep", {"workflow_activity_id": "missing"}, title="Orphan"),
    ]

    assert preview_action_batch(batch, snapshot) is None


def test_preview_returns_none_for_empty_malformed_or_missing_snapshot(context, db, story_map) -> None:
    snapshot = SnapshotService(context, db).fetch_snapshot(story_map["project_id"])

    assert preview_action_batch([], snapshot) is None
    assert preview_action_batch([{"id": "x"}], snapshot) is None
    assert preview_action_batch(seed_actions(story_map["project_id"]), None) is None
