"""
Storymap Database Schema Definitions

Raw SQL schema for SQLite and PostgreSQL.
Ids are text (UUID strings); timestamps are ISO-8601 UTC strings written by
the application so both backends order and compare them the same way.
"""

# Planning entity kind -> table. Used by the generic insert/update helpers.
PLANNING_TABLES = {
    "workflow": "workflows",
    "activity": "workflow_activities",
    "step": "steps",
    "card": "cards",
    "knowledge_item": "card_knowledge_items",
    "planned_file": "card_planned_files",
    "context_artifact": "context_artifacts",
    "card_context_link": "card_context_artifacts",
}

_TABLES = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    repo_url TEXT,
    default_branch TEXT NOT NULL DEFAULT 'main',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS workflows (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT,
    build_state TEXT,
    position INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS workflow_activities (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    color TEXT,
    position INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS steps (
    id TEXT PRIMARY KEY,
    workflow_activity_id TEXT NOT NULL REFERENCES workflow_activities(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS cards (
    id TEXT PRIMARY KEY,
    workflow_activity_id TEXT NOT NULL REFERENCES workflow_activities(id) ON DELETE CASCADE,
    step_id TEXT REFERENCES steps(id) ON DELETE SET NULL,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'todo',
    priority INTEGER NOT NULL DEFAULT 0,
    position INTEGER NOT NULL DEFAULT 0,
    quick_answer TEXT,
    build_state TEXT,
    last_built_at TEXT,
    last_build_ref TEXT,
    last_build_error TEXT,
    finalized_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS card_knowledge_items (
    id TEXT PRIMARY KEY,
    card_id TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
    item_type TEXT NOT NULL,
    text TEXT NOT NULL,
    evidence_source TEXT,
    status TEXT NOT NULL DEFAULT 'draft',
    source TEXT NOT NULL DEFAULT 'user',
    confidence REAL,
    position INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS card_planned_files (
    id TEXT PRIMARY KEY,
    card_id TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
    logical_file_name TEXT NOT NULL,
    module_hint TEXT,
    artifact_kind TEXT NOT NULL,
    action TEXT NOT NULL,
    intent_summary TEXT NOT NULL,
    contract_notes TEXT,
    status TEXT NOT NULL DEFAULT 'proposed',
    position INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS context_artifacts (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT,
    content TEXT,
    uri TEXT,
    integration_ref TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS card_context_artifacts (
    id TEXT PRIMARY KEY,
    card_id TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
    context_artifact_id TEXT NOT NULL REFERENCES context_artifacts(id) ON DELETE CASCADE,
    linked_by TEXT,
    usage_hint TEXT,
    created_at TEXT NOT NULL{seq},
    UNIQUE(card_id, context_artifact_id)
);

CREATE TABLE IF NOT EXISTS planning_actions (
    id TEXT PRIMARY KEY,
    action_id TEXT NOT NULL,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    action_type TEXT NOT NULL,
    target_ref TEXT,
    payload TEXT,
    validation_status TEXT NOT NULL,
    rejection_reason TEXT,
    applied_at TEXT,
    created_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS system_policy_profiles (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL UNIQUE REFERENCES projects(id) ON DELETE CASCADE,
    required_checks TEXT NOT NULL,
    protected_paths TEXT NOT NULL,
    forbidden_paths TEXT NOT NULL,
    dependency_policy TEXT,
    security_policy TEXT,
    architecture_policy TEXT,
    approval_policy TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS orchestration_runs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    scope TEXT NOT NULL,
    workflow_id TEXT,
    card_id TEXT,
    trigger_type TEXT NOT NULL,
    initiated_by TEXT NOT NULL,
    repo_url TEXT,
    base_branch TEXT NOT NULL,
    run_input_snapshot TEXT NOT NULL,
    system_policy_snapshot TEXT NOT NULL,
    worktree_root TEXT,
    status TEXT NOT NULL,
    started_at TEXT,
    ended_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS card_assignments (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL REFERENCES orchestration_runs(id) ON DELETE CASCADE,
    card_id TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
    agent_role TEXT NOT NULL,
    agent_profile TEXT NOT NULL,
    feature_branch TEXT NOT NULL,
    worktree_path TEXT,
    allowed_paths TEXT NOT NULL,
    forbidden_paths TEXT NOT NULL,
    assignment_input_snapshot TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS agent_executions (
    id TEXT PRIMARY KEY,
    assignment_id TEXT NOT NULL REFERENCES card_assignments(id) ON DELETE CASCADE,
    execution_id TEXT,
    status TEXT NOT NULL,
    started_at TEXT,
    ended_at TEXT,
    summary TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS agent_commits (
    id TEXT PRIMARY KEY,
    assignment_id TEXT NOT NULL REFERENCES card_assignments(id) ON DELETE CASCADE,
    sha TEXT NOT NULL,
    branch TEXT NOT NULL,
    message TEXT NOT NULL,
    committed_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS run_checks (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL REFERENCES orchestration_runs(id) ON DELETE CASCADE,
    check_type TEXT NOT NULL,
    status TEXT NOT NULL,
    output TEXT,
    executed_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS approval_requests (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL REFERENCES orchestration_runs(id) ON DELETE CASCADE,
    approval_type TEXT NOT NULL,
    requested_by TEXT NOT NULL,
    requested_at TEXT NOT NULL,
    status TEXT NOT NULL,
    resolved_by TEXT,
    resolved_at TEXT,
    notes TEXT{seq}
);

CREATE TABLE IF NOT EXISTS pull_request_candidates (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL UNIQUE REFERENCES orchestration_runs(id) ON DELETE CASCADE,
    base_branch TEXT NOT NULL,
    head_branch TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    status TEXT NOT NULL,
    pr_url TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL{seq}
);

CREATE TABLE IF NOT EXISTS event_log (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    run_id TEXT,
    event_type TEXT NOT NULL,
    actor TEXT NOT NULL,
    payload TEXT,
    created_at TEXT NOT NULL{seq}
);

CREATE INDEX IF NOT EXISTS idx_workflows_project ON workflows(project_id);
CREATE INDEX IF NOT EXISTS idx_activities_workflow ON workflow_activities(workflow_id);
CREATE INDEX IF NOT EXISTS idx_steps_activity ON steps(workflow_activity_id);
CREATE INDEX IF NOT EXISTS idx_cards_activity ON cards(workflow_activity_id);
CREATE INDEX IF NOT EXISTS idx_knowledge_card ON card_knowledge_items(card_id);
CREATE INDEX IF NOT EXISTS idx_planned_files_card ON card_planned_files(card_id);
CREATE INDEX IF NOT EXISTS idx_runs_project_status ON orchestration_runs(project_id, status);
CREATE INDEX IF NOT EXISTS idx_assignments_run ON card_assignments(run_id);
CREATE INDEX IF NOT EXISTS idx_event_log_project ON event_log(project_id, run_id);
"""

# SQLite keeps insertion order in the implicit rowid; PostgreSQL gets an
# explicit sequence column for the same tie-break.
SCHEMA_SQLITE = _TABLES.replace("{seq}", "")
SCHEMA_POSTGRES = (
    _TABLES.replace("{seq}", ",\n    seq BIGSERIAL")
    .replace(" REAL,", " DOUBLE PRECISION,")
)
