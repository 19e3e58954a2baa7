import json
from pathlib import Path

import pytest
from click.testing import CliRunner
from rich.console import Console

from conftest import seed_actions
from storymap.cli import main as cli_main
from storymap.cli.main import cli, get_db, get_service_context
from storymap.logging import EXIT_CONFIG_ERROR, EXIT_RUNTIME_ERROR
from storymap.services.actions import ActionService


@pytest.fixture
def runner(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> CliRunner:
    monkeypatch.setenv("STORYMAP_DB_PATH", str(tmp_path / "cli.sqlite"))
    monkeypatch.setenv("STORYMAP_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("STORYMAP_LOG_LEVEL", "WARNING")
    monkeypatch.delenv("STORYMAP_DB_URL", raising=False)
    monkeypatch.delenv("STORYMAP_STALE_RUN_MINUTES", raising=False)
    return CliRunner()


def _seeded_project() -> str:
    db = get_db()
    db.init_schema()
    project = db.create_project(name="shop")
    ActionService(get_service_context(), db).apply_batch(project.id, seed_actions(project.id))
    return project.id


def test_version(runner: CliRunner) -> None:
    plain = runner.invoke(cli, ["version"], obj={})
    assert plain.exit_code == 0
    assert plain.output.startswith("Storymap v")

    as_json = runner.invoke(cli, ["--json", "version"], obj={})
    assert "version" in json.loads(as_json.output)


def test_init_db_is_repeatable(runner: CliRunner, tmp_path: Path) -> None:
    first = runner.invoke(cli, ["init-db"], obj={})
    second = runner.invoke(cli, ["init-db"], obj={})

    assert first.exit_code == 0
    assert second.exit_code == 0
    assert "Database schema initialized" in second.output
    assert (tmp_path / "cli.sqlite").exists()


def test_snapshot_prints_the_map(runner: CliRunner) -> None:
    project_id = _seeded_project()

    result = runner.invoke(cli, ["snapshot", project_id], obj={})

    assert result.exit_code == 0
    assert "Checkout" in result.output
    assert "Enter card details [todo]" in result.output

    as_json = runner.invoke(cli, ["--json", "snapshot", project_id], obj={})
    assert json.loads(as_json.output)["workflows"][0]["title"] == "Checkout"


def test_snapshot_of_unknown_project_fails(runner: CliRunner) -> None:
    runner.invoke(cli, ["init-db"], obj={})

    result = runner.invoke(cli, ["snapshot", "nope"], obj={})

    assert result.exit_code == EXIT_RUNTIME_ERROR
    assert "Project nope not found" in result.output


def test_recover_stale_needs_a_threshold(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["recover-stale"], obj={})

    assert result.exit_code == EXIT_CONFIG_ERROR


def test_recover_stale_with_nothing_running(runner: CliRunner) -> None:
    runner.invoke(cli, ["init-db"], obj={})

    result = runner.invoke(cli, ["--json", "recover-stale", "--minutes", "30"], obj={})

    assert result.exit_code == 0
    assert json.loads(result.output) == {"recovered": 0, "stale_minutes": 30}


def test_events_lists_planning_audit(runner: CliRunner) -> None:
    project_id = _seeded_project()

    result = runner.invoke(cli, ["--json", "events", project_id], obj={})

    assert result.exit_code == 0
    events = json.loads(result.output)
    (event,) = events
    assert event["event_type"] == "planning_action_applied"
    assert event["payload"]["applied"] == 4


def test_events_table_lists_event_types(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli_main, "console", Console(width=200))
    project_id = _seeded_project()

    result = runner.invoke(cli, ["events", project_id], obj={})

    assert result.exit_code == 0
    assert f"Events of {project_id}" in result.output
    assert "planning_action_applied" in result.output


def test_malformed_numeric_setting_is_a_config_error(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORYMAP_STALE_RUN_MINUTES", "soon")

    result = runner.invoke(cli, ["version"], obj={})

    assert result.exit_code == EXIT_CONFIG_ERROR
    assert "STORYMAP_STALE_RUN_MINUTES is not a valid int" in result.output
