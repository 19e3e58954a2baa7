from pathlib import Path

import pytest

try:
    from fastapi.testclient import TestClient
except ImportError:  # pragma: no cover
    TestClient = None  # type: ignore

from conftest import action, seed_actions
from storymap.actions.effects import derive_id
from storymap.config import _reset_config_for_tests


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    if TestClient is None:
        pytest.skip("fastapi not installed")
    monkeypatch.setenv("STORYMAP_DB_PATH", str(tmp_path / "api.sqlite"))
    monkeypatch.setenv("STORYMAP_DATA_DIR", str(tmp_path / "data"))
    for name in ("STORYMAP_DB_URL", "STORYMAP_API_TOKEN", "STORYMAP_WEBHOOK_TOKEN", "STORYMAP_AGENT_ENDPOINT"):
        monkeypatch.delenv(name, raising=False)
    _reset_config_for_tests()

    from storymap.api.app import app

    with TestClient(app) as test_client:
        yield test_client
    _reset_config_for_tests()


def _project(client) -> str:
    resp = client.post("/projects", json={"name": "shop", "default_branch": "main"})
    assert resp.status_code == 201
    return resp.json()["id"]


def _seeded(client) -> dict:
    pid = _project(client)
    resp = client.post(f"/projects/{pid}/actions", json={"actions": seed_actions(pid)})
    assert resp.status_code == 201
    assert resp.json()["applied"] == 4
    return {"project_id": pid, "card_id": derive_id("seed-card", "card")}


def _card_run(client, ids) -> dict:
    resp = client.post(
        f"/projects/{ids['project_id']}/orchestration/runs",
        json={"scope": "card", "card_id": ids["card_id"], "run_input_snapshot": {"card_id": ids["card_id"]}},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health(client) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["service"] == "storymap"
    assert "X-Request-ID" in resp.headers

    ready = client.get("/health/ready")
    assert ready.json()["components"]["database"] == "ok"


def test_project_crud_and_not_found_body(client) -> None:
    pid = _project(client)

    assert client.get(f"/projects/{pid}").json()["name"] == "shop"
    patched = client.patch(f"/projects/{pid}", json={"repo_url": "https://github.com/u/shop"})
    assert patched.json()["repo_url"] == "https://github.com/u/shop"
    assert patched.json()["name"] == "shop"

    missing = client.get("/projects/nope")
    assert missing.status_code == 404
    assert missing.json()["error"] == "not_found"


def test_actions_apply_snapshot_and_audit(client) -> None:
    ids = _seeded(client)
    pid = ids["project_id"]

    snapshot = client.get(f"/projects/{pid}/snapshot").json()
    cards = snapshot["workflows"][0]["activities"][0]["cards"]
    assert [c["id"] for c in cards] == [ids["card_id"]]

    resp = client.post(
        f"/projects/{pid}/actions",
        json={"actions": [action("bad", "updateCard", {"card_id": "missing"}, title="x")]},
    )
    assert resp.status_code == 201
    assert resp.json()["results"][0]["validation_status"] == "rejected"

    audit = client.get(f"/projects/{pid}/actions").json()
    assert audit[0]["action_id"] == "bad"
    assert audit[0]["rejection_reason"] == "Referenced card missing does not exist"


def test_malformed_batch_is_400_with_field_details(client) -> None:
    pid = _project(client)

    resp = client.post(
        f"/projects/{pid}/actions",
        json={"actions": [action("wf", "createWorkflow", {"project_id": pid})]},
    )

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "validation_failed"
    assert "actions.0.payload.title" in body["details"]
    assert client.get(f"/projects/{pid}/actions").json() == []


def test_preview(client) -> None:
    pid = _project(client)

    ok = client.post(f"/projects/{pid}/actions/preview", json={"actions": seed_actions(pid)})
    assert ok.status_code == 200
    assert ok.json()["success"] is True
    assert ok.json()["previews"][3]["created_ids"] == [derive_id("seed-card", "card")]
    assert client.get(f"/projects/{pid}/snapshot").json()["workflows"] == []

    rejected = client.post(
        f"/projects/{pid}/actions/preview",
        json={"actions": [action("s", "createStep", {"workflow_activity_id": "missing"}, title="x")]},
    )
    assert rejected.status_code == 400
    assert rejected.json()["success"] is False
    assert rejected.json()["previews"] == []

    assert client.post("/projects/nope/actions/preview", json={"actions": []}).status_code == 404


def test_run_status_patch_rejects_illegal_transition(client) -> None:
    ids = _seeded(client)
    run = _card_run(client, ids)
    base = f"/projects/{ids['project_id']}/orchestration/runs/{run['id']}"

    assert client.patch(base, json={"status": "running"}).json()["status"] == "running"
    assert client.patch(base, json={"status": "completed"}).json()["status"] == "completed"

    resp = client.patch(base, json={"status": "running"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid status transition from completed to running"
    assert client.get(base).json()["status"] == "completed"

    assert client.get(f"/projects/{ids['project_id']}/orchestration/runs/nope").status_code == 404


def test_run_validation_errors_are_reported(client) -> None:
    ids = _seeded(client)

    resp = client.post(
        f"/projects/{ids['project_id']}/orchestration/runs",
        json={"scope": "card", "card_id": ids["card_id"], "run_input_snapshot": {}},
    )

    assert resp.status_code == 400
    assert resp.json()["details"]["validation_errors"] == [
        "run_input_snapshot must include workflow_id or card_id as scope target"
    ]


def test_checks_gate_approvals_and_pull_requests(client) -> None:
    ids = _seeded(client)
    pid = ids["project_id"]
    run = _card_run(client, ids)
    orch = f"/projects/{pid}/orchestration"

    blocked = client.post(f"{orch}/approvals", json={"run_id": run["id"], "approval_type": "create_pr"})
    assert blocked.status_code == 400
    assert blocked.json()["details"]["validation_errors"] == ["Required check 'lint' has not been executed"]

    check = client.post(f"{orch}/runs/{run['id']}/checks", json={"check_type": "lint", "status": "passed"})
    assert check.status_code == 201

    approval = client.post(f"{orch}/approvals", json={"run_id": run["id"], "approval_type": "create_pr"})
    assert approval.status_code == 201
    approved = client.patch(
        f"{orch}/approvals/{approval.json()['id']}", json={"status": "approved", "resolved_by": "lead"}
    )
    assert approved.json()["status"] == "approved"
    conflict = client.patch(
        f"{orch}/approvals/{approval.json()['id']}", json={"status": "rejected", "resolved_by": "lead"}
    )
    assert conflict.status_code == 409

    pr = client.post(
        f"{orch}/pull-requests", json={"run_id": run["id"], "head_branch": "feat/card", "title": "Card entry"}
    )
    assert pr.status_code == 201
    duplicate = client.post(
        f"{orch}/pull-requests", json={"run_id": run["id"], "head_branch": "feat/card", "title": "Again"}
    )
    assert duplicate.status_code == 400


def test_dispatch_webhook_and_resume_flow(client) -> None:
    ids = _seeded(client)
    pid = ids["project_id"]
    run = _card_run(client, ids)
    orch = f"/projects/{pid}/orchestration"

    created = client.post(
        f"{orch}/runs/{run['id']}/assignments",
        json={"card_id": ids["card_id"], "feature_branch": "feat/card-entry", "allowed_paths": ["src"]},
    )
    assert created.status_code == 201
    assignment_id = created.json()["id"]

    dispatched = client.post(f"{orch}/runs/{run['id']}/assignments/{assignment_id}/dispatch")
    assert dispatched.status_code == 202
    assert dispatched.json()["execution_id"]
    again = client.post(f"{orch}/runs/{run['id']}/assignments/{assignment_id}/dispatch")
    assert again.status_code == 422

    hook = client.post(
        f"{orch}/webhooks/agent",
        json={"event_type": "execution_blocked", "assignment_id": assignment_id, "summary": "Need API keys"},
    )
    assert hook.status_code == 202
    assert client.get(f"{orch}/runs/{run['id']}").json()["status"] == "blocked"

    resumed = client.post(f"{orch}/resume-blocked", json={"card_id": ids["card_id"]})
    assert resumed.status_code == 202
    assert resumed.json()["outcome_type"] == "success"

    client.post(
        f"{orch}/webhooks/agent",
        json={"event_type": "execution_completed", "assignment_id": assignment_id},
    )
    assert client.get(f"{orch}/runs/{run['id']}").json()["status"] == "completed"

    nothing = client.post(f"{orch}/resume-blocked", json={"card_id": ids["card_id"]})
    assert nothing.status_code == 400
    assert nothing.json()["message"] == "No blocked build found for this card. Start a new build instead."

    events = [e["event_type"] for e in client.get(f"/projects/{pid}/events").json()]
    assert "agent_run_started" in events
    assert "execution_blocked" in events


def test_build_trigger(client) -> None:
    ids = _seeded(client)
    pid = ids["project_id"]
    card_target = {"card_id": ids["card_id"]}
    client.post(
        f"/projects/{pid}/actions",
        json={"actions": [
            action("pf", "upsertCardPlannedFile", card_target, logical_file_name="CardForm",
                   artifact_kind="component", action="create", intent_summary="Card entry form"),
            action("pf-ok", "approveCardPlannedFile", card_target, planned_file_id="pf", status="approved"),
        ]},
    )
    builds = f"/projects/{pid}/orchestration/builds"

    started = client.post(builds, json={"scope": "workflow", "workflow_id": derive_id("seed-wf", "workflow")})
    assert started.status_code == 202, started.text
    body = started.json()
    assert len(body["assignment_ids"]) == 1
    assert body["skipped_card_ids"] == []
    assert client.get(f"/projects/{pid}/orchestration/runs/{body['run_id']}").json()["status"] == "running"

    busy = client.post(builds, json={"scope": "card", "card_id": ids["card_id"]})
    assert busy.status_code == 409
    assert busy.json()["error"] == "conflict"

    no_target = client.post(builds, json={"scope": "workflow"})
    assert no_target.status_code == 400
    assert no_target.json()["error"] == "validation_failed"

    unknown = client.post("/projects/nope/orchestration/builds", json={"scope": "card", "card_id": ids["card_id"]})
    assert unknown.status_code == 404


def test_assignment_validation_errors(client) -> None:
    ids = _seeded(client)
    run = _card_run(client, ids)

    resp = client.post(
        f"/projects/{ids['project_id']}/orchestration/runs/{run['id']}/assignments",
        json={"card_id": ids["card_id"], "feature_branch": "main", "allowed_paths": []},
    )

    assert resp.status_code == 400
    errors = resp.json()["details"]["validation_errors"]
    assert "feature_branch cannot equal project default_branch (main)" in errors
    assert "allowed_paths must be non-empty" in errors


def test_policy_endpoints(client) -> None:
    pid = _project(client)

    assert client.get(f"/projects/{pid}/policy").json()["required_checks"] == ["lint"]
    updated = client.patch(f"/projects/{pid}/policy", json={"required_checks": ["lint", "unit"]})
    assert updated.json()["required_checks"] == ["lint", "unit"]
    assert updated.json()["forbidden_paths"] == []


def test_push_requires_repository_and_completed_build(client) -> None:
    ids = _seeded(client)
    pid = ids["project_id"]

    no_repo = client.post(f"/projects/{pid}/cards/{ids['card_id']}/push")
    assert no_repo.status_code == 400

    client.patch(f"/projects/{pid}", json={"repo_url": "https://github.com/u/shop"})
    no_build = client.post(f"/projects/{pid}/cards/{ids['card_id']}/push")
    assert no_build.status_code == 409
    assert no_build.json()["error"] == "conflict"

    assert client.post(f"/projects/{pid}/cards/unknown/push").status_code == 404


def test_api_token_is_enforced(client, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORYMAP_API_TOKEN", "s3cret")

    assert client.get("/projects").status_code == 401
    assert client.get("/projects", headers={"Authorization": "Bearer s3cret"}).status_code == 200
    assert client.get("/projects", headers={"X-Storymap-Token": "s3cret"}).status_code == 200
    assert client.get("/health").status_code == 200


def test_webhook_token_is_enforced(client, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORYMAP_WEBHOOK_TOKEN", "hook")
    body = {"event_type": "execution_started", "assignment_id": "missing"}

    assert client.post("/projects/p/orchestration/webhooks/agent", json=body).status_code == 401
    resp = client.post(
        "/projects/p/orchestration/webhooks/agent", json=body, headers={"X-Storymap-Webhook-Token": "hook"}
    )
    assert resp.status_code == 404
