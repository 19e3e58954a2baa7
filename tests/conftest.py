import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

# Ensure repository root is on sys.path so the in-tree package imports cleanly.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from storymap.actions.effects import derive_id  # noqa: E402
from storymap.config import Config  # noqa: E402
from storymap.db.database import SQLiteDatabase  # noqa: E402
from storymap.services.actions import ActionService  # noqa: E402
from storymap.services.base import ServiceContext  # noqa: E402


def action(action_id: str, action_type: str, target_ref: Dict[str, Any], **payload: Any) -> Dict[str, Any]:
    return {"id": action_id, "action_type": action_type, "target_ref": target_ref, "payload": payload}


def seed_actions(project_id: str) -> List[Dict[str, Any]]:
    """One workflow > activity > step, plus one card directly under the activity."""
    return [
        action("seed-wf", "createWorkflow", {"project_id": project_id}, title="Checkout", temp_id="wf"),
        action("seed-act", "createActivity", {"workflow_id": "wf"}, title="Pay", color="blue", temp_id="act"),
        action("seed-step", "createStep", {"workflow_activity_id": "act"}, title="Card entry", temp_id="step"),
        action(
            "seed-card",
            "createCard",
            {"workflow_activity_id": "act"},
            title="Enter card details",
            description="Shopper can enter card number and expiry",
            temp_id="card",
        ),
    ]


@pytest.fixture
def db(tmp_path: Path) -> SQLiteDatabase:
    database = SQLiteDatabase(tmp_path / "storymap.sqlite")
    database.init_schema()
    return database


@pytest.fixture
def context(tmp_path: Path) -> ServiceContext:
    return ServiceContext(
        config=Config(
            db_path=tmp_path / "storymap.sqlite",
            data_dir=tmp_path / "data",
            git_lock_max_retries=1,
            git_lock_retry_delay=0.01,
        )
    )


@pytest.fixture
def project(db):
    return db.create_project(name="shop", default_branch="main")


@pytest.fixture
def story_map(context, db, project) -> Dict[str, str]:
    """Apply the seed batch and return the ids it created."""
    result = ActionService(context, db).apply_batch(project.id, seed_actions(project.id))
    assert result.applied == 4
    return {
        "project_id": project.id,
        "workflow_id": derive_id("seed-wf", "workflow"),
        "activity_id": derive_id("seed-act", "activity"),
        "step_id": derive_id("seed-step", "step"),
        "card_id": derive_id("seed-card", "card"),
    }
