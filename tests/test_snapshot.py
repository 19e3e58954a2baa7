from conftest import action
from storymap.models.domain import Activity, Card, Project, ProjectBundle, Workflow
from storymap.models.state import ProjectState
from storymap.services.actions import ActionService
from storymap.services.snapshot import SnapshotService


def test_missing_project_has_no_snapshot(context, db) -> None:
    assert SnapshotService(context, db).fetch_snapshot("nope") is None


def test_snapshot_tree_nests_cards_under_steps_and_activities(context, db, story_map) -> None:
    ActionService(context, db).apply_batch(
        story_map["project_id"],
        [action("in-step", "createCard", {"workflow_activity_id": story_map["activity_id"]},
                title="Validate expiry", step_id=story_map["step_id"])],
    )

    tree = SnapshotService(context, db).fetch_snapshot(story_map["project_id"]).to_dict()

    assert tree["project"]["name"] == "shop"
    (workflow,) = tree["workflows"]
    (activity,) = workflow["activities"]
    assert [c["title"] for c in activity["cards"]] == ["Enter card details"]
    (step,) = activity["steps"]
    assert [c["title"] for c in step["cards"]] == ["Validate expiry"]
    assert activity["cards"][0]["knowledge_items"] == []
    assert activity["cards"][0]["planned_files"] == []


def test_card_with_dangling_step_is_shown_under_its_activity() -> None:
    now = "2024-01-01T00:00:00+00:00"
    bundle = ProjectBundle(
        project=Project(id="p", name="p", default_branch="main", created_at=now, updated_at=now),
        workflows=[Workflow(id="w", project_id="p", title="W", position=0, created_at=now, updated_at=now)],
        activities=[Activity(id="a", workflow_id="w", title="A", position=0, created_at=now, updated_at=now)],
        cards=[
            Card(id="c", workflow_activity_id="a", step_id="gone", title="C", status="todo",
                 priority=0, position=0, created_at=now, updated_at=now),
        ],
    )

    state = ProjectState.from_bundle(bundle)

    assert state.cards["c"].step_id is None
    assert [c.id for c in state.cards_in_scope("a", None)] == ["c"]
    assert state.cards_of_workflow("w")[0].id == "c"


def test_clone_is_independent() -> None:
    now = "2024-01-01T00:00:00+00:00"
    state = ProjectState(project=Project(id="p", name="p", default_branch="main", created_at=now, updated_at=now))
    copy = state.clone()
    copy.workflows["w"] = Workflow(id="w", project_id="p", title="W", position=0, created_at=now, updated_at=now)

    assert state.workflows == {}
