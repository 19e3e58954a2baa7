"""
Storymap Database Service

Provides SQLite + PostgreSQL support with a unified interface.
Uses the Protocol pattern to define the database contract.

Both backends share one set of SQL statements written with "?" placeholders;
the PostgreSQL adapter rewrites them to "%s" before execution.
"""

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, Union

from storymap.db.schema import PLANNING_TABLES
from storymap.errors import ConflictError
from storymap.logging import get_logger
from storymap.models.domain import (
    Activity,
    AgentCommit,
    AgentExecution,
    ApprovalRequest,
    ApprovalUpdate,
    AssignmentStatus,
    AssignmentUpdate,
    BuildState,
    Card,
    CardAssignment,
    CardContextLink,
    CardUpdate,
    ContextArtifact,
    EntityInsert,
    EntityUpdate,
    EventLogEntry,
    ExecutionUpdate,
    KnowledgeItem,
    OrchestrationRun,
    PlannedFile,
    PlanningActionRecord,
    PolicyProfile,
    Project,
    ProjectBundle,
    PullRequestCandidate,
    PullRequestUpdate,
    RunCheck,
    RunStatus,
    RunUpdate,
    Step,
    Workflow,
    new_id,
    utc_now,
)

logger = get_logger(__name__)

# Try to import psycopg for PostgreSQL support
try:
    import psycopg
    from psycopg.rows import dict_row
    from psycopg_pool import ConnectionPool
except ImportError:
    psycopg = None  # type: ignore
    dict_row = None  # type: ignore
    ConnectionPool = None  # type: ignore


# Sentinel for unset optional parameters
_UNSET = object()

_JSON_FIELDS = {
    ContextArtifact: ("integration_ref",),
    PlanningActionRecord: ("target_ref", "payload"),
    PolicyProfile: (
        "required_checks", "protected_paths", "forbidden_paths",
        "dependency_policy", "security_policy", "architecture_policy", "approval_policy",
    ),
    OrchestrationRun: ("run_input_snapshot", "system_policy_snapshot"),
    CardAssignment: ("allowed_paths", "forbidden_paths", "assignment_input_snapshot"),
    EventLogEntry: ("payload",),
}

_PLANNING_CLASSES = {
    "workflow": Workflow,
    "activity": Activity,
    "step": Step,
    "card": Card,
    "knowledge_item": KnowledgeItem,
    "planned_file": PlannedFile,
    "context_artifact": ContextArtifact,
    "card_context_link": CardContextLink,
}

# Tables whose rows carry no updated_at column
_NO_UPDATED_AT = {
    "card_context_artifacts", "planning_actions", "agent_commits",
    "run_checks", "approval_requests", "event_log",
}


class DatabaseProtocol(Protocol):
    """Protocol defining the database interface."""

    def init_schema(self) -> None: ...

    # Projects
    def create_project(
        self,
        name: str,
        repo_url: Optional[str] = None,
        default_branch: str = "main",
        description: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> Project: ...
    def get_project(self, project_id: str) -> Project: ...
    def list_projects(self) -> List[Project]: ...
    def update_project(self, project_id: str, **updates: Any) -> Project: ...

    # Planning hierarchy
    def read_project_bundle(self, project_id: str) -> Optional[ProjectBundle]: ...
    def apply_mutations(self, mutations: Sequence[Union[EntityInsert, EntityUpdate]]) -> None: ...
    def get_card(self, card_id: str) -> Card: ...
    def update_card(self, card_id: str, update: CardUpdate) -> Card: ...
    def get_workflow(self, workflow_id: str) -> Workflow: ...
    def set_workflow_build_state(self, workflow_id: str, build_state: Optional[str]) -> None: ...
    def list_knowledge_items(self, card_id: str, item_type: Optional[str] = None) -> List[KnowledgeItem]: ...
    def create_knowledge_item(self, card_id: str, item_type: str, text: str, **kwargs: Any) -> KnowledgeItem: ...
    def list_planned_files(self, card_id: str) -> List[PlannedFile]: ...
    def record_planning_action(self, record: PlanningActionRecord) -> None: ...
    def list_planning_actions(self, project_id: str, *, limit: int = 200) -> List[PlanningActionRecord]: ...

    # Policy
    def get_policy_profile(self, project_id: str) -> Optional[PolicyProfile]: ...
    def create_policy_profile(self, project_id: str, required_checks: List[str], **kwargs: Any) -> PolicyProfile: ...
    def update_policy_profile(self, project_id: str, **updates: Any) -> PolicyProfile: ...

    # Runs
    def create_run(self, **fields: Any) -> OrchestrationRun: ...
    def get_run(self, run_id: str) -> OrchestrationRun: ...
    def list_runs(self, project_id: str, **filters: Any) -> List[OrchestrationRun]: ...
    def list_runs_by_status(self, statuses: Sequence[str], *, created_before: Optional[str] = None) -> List[OrchestrationRun]: ...
    def update_run(self, run_id: str, update: RunUpdate, *, expected_status: Optional[str] = None) -> OrchestrationRun: ...
    def requeue_run(self, run_id: str) -> OrchestrationRun: ...
    def fail_run(self, run_id: str, error: str) -> OrchestrationRun: ...

    # Assignments and executions
    def create_assignment(self, **fields: Any) -> CardAssignment: ...
    def get_assignment(self, assignment_id: str) -> CardAssignment: ...
    def list_assignments(self, run_id: str, card_id: Optional[str] = None) -> List[CardAssignment]: ...
    def update_assignment(self, assignment_id: str, update: AssignmentUpdate) -> CardAssignment: ...
    def transition_assignment(
        self,
        assignment_id: str,
        status: str,
        *,
        card_update: Optional[CardUpdate] = None,
        expected_status: Optional[str] = None,
    ) -> CardAssignment: ...
    def create_agent_execution(self, assignment_id: str, status: str, **kwargs: Any) -> AgentExecution: ...
    def list_agent_executions(self, assignment_id: str) -> List[AgentExecution]: ...
    def update_agent_execution(self, agent_execution_id: str, update: ExecutionUpdate) -> AgentExecution: ...
    def create_agent_commit(self, assignment_id: str, sha: str, branch: str, message: str) -> AgentCommit: ...
    def list_agent_commits(self, assignment_id: str) -> List[AgentCommit]: ...

    # Checks, approvals, pull requests
    def create_run_check(self, run_id: str, check_type: str, status: str, output: Optional[str] = None) -> RunCheck: ...
    def list_run_checks(self, run_id: str) -> List[RunCheck]: ...
    def create_approval_request(self, run_id: str, approval_type: str, requested_by: str) -> ApprovalRequest: ...
    def get_approval_request(self, approval_id: str) -> ApprovalRequest: ...
    def list_approval_requests(self, project_id: str, run_id: Optional[str] = None) -> List[ApprovalRequest]: ...
    def update_approval_request(self, approval_id: str, update: ApprovalUpdate) -> ApprovalRequest: ...
    def create_pull_request_candidate(self, run_id: str, **kwargs: Any) -> PullRequestCandidate: ...
    def get_pull_request_candidate(self, pr_id: str) -> PullRequestCandidate: ...
    def get_pull_request_candidate_for_run(self, run_id: str) -> Optional[PullRequestCandidate]: ...
    def list_pull_request_candidates(self, project_id: str) -> List[PullRequestCandidate]: ...
    def update_pull_request_candidate(self, pr_id: str, update: PullRequestUpdate) -> PullRequestCandidate: ...

    # Events
    def append_event(
        self,
        project_id: str,
        event_type: str,
        actor: str,
        payload: Optional[Dict[str, Any]] = None,
        run_id: Optional[str] = None,
    ) -> EventLogEntry: ...
    def list_events(self, project_id: str, run_id: Optional[str] = None, *, limit: int = 100) -> List[EventLogEntry]: ...


class SQLiteDatabase:
    """
    SQLite-backed persistence for Storymap state.
    """

    # Column used to keep insertion order among equal positions
    _tiebreak = "rowid"

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        """Context manager for database transactions."""
        with self._connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def _read_transaction(self) -> Iterator[Any]:
        """Several SELECTs that must observe one consistent database state."""
        with self._connection() as conn:
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                conn.rollback()

    def _q(self, query: str) -> str:
        return query

    def _execute(self, conn: Any, query: str, params: Iterable[Any] = ()) -> Any:
        return conn.execute(self._q(query), tuple(params))

    def _fetchone(self, query: str, params: Iterable[Any] = ()) -> Optional[Any]:
        with self._connection() as conn:
            return self._execute(conn, query, params).fetchone()

    def _fetchall(self, query: str, params: Iterable[Any] = ()) -> List[Any]:
        with self._connection() as conn:
            return list(self._execute(conn, query, params).fetchall() or [])

    def init_schema(self) -> None:
        """Initialize database schema."""
        from storymap.db.schema import SCHEMA_SQLITE

        with self._transaction() as conn:
            conn.executescript(SCHEMA_SQLITE)

    # Helper methods for JSON parsing and row conversion
    @staticmethod
    def _parse_json(value: Any) -> Optional[Union[dict, list]]:
        if value is None:
            return None
        if isinstance(value, (dict, list)):
            return value
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _encode(value: Any) -> Any:
        if isinstance(value, (dict, list, tuple)):
            return json.dumps(value)
        if isinstance(value, bool):
            return int(value)
        return value

    def _row_to(self, cls: Any, row: Any) -> Any:
        keys = set(row.keys())
        json_fields = _JSON_FIELDS.get(cls, ())
        data: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in keys:
                continue
            value = row[f.name]
            if f.name in json_fields:
                value = self._parse_json(value)
            data[f.name] = value
        return cls(**data)

    def _insert(self, conn: Any, table: str, entity: Any) -> None:
        data = asdict(entity)
        columns = list(data)
        placeholders = ", ".join("?" for _ in columns)
        self._execute(
            conn,
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            [self._encode(data[c]) for c in columns],
        )

    def _update(
        self,
        conn: Any,
        table: str,
        entity_id: str,
        changes: Dict[str, Any],
        *,
        expected_status: Optional[str] = None,
    ) -> int:
        changes = dict(changes)
        if table not in _NO_UPDATED_AT:
            changes.setdefault("updated_at", utc_now())
        if not changes:
            return 0
        assignments = ", ".join(f"{column} = ?" for column in changes)
        params = [*(self._encode(v) for v in changes.values()), entity_id]
        where = "id = ?"
        if expected_status is not None:
            where += " AND status = ?"
            params.append(expected_status)
        cur = self._execute(conn, f"UPDATE {table} SET {assignments} WHERE {where}", params)
        return cur.rowcount

    def _raise_missed(self, conn: Any, table: str, label: str, entity_id: str, expected_status: Optional[str]) -> None:
        row = self._execute(conn, f"SELECT status FROM {table} WHERE id = ?", (entity_id,)).fetchone()
        if row is None:
            raise KeyError(f"{label} {entity_id} not found")
        raise ConflictError(
            f"{label} {entity_id} is {row['status']}, expected {expected_status}",
            metadata={"entity_id": entity_id, "status": row["status"], "expected_status": expected_status},
        )

    def _get(self, cls: Any, table: str, entity_id: str, label: str) -> Any:
        row = self._fetchone(f"SELECT * FROM {table} WHERE id = ?", (entity_id,))
        if row is None:
            raise KeyError(f"{label} {entity_id} not found")
        return self._row_to(cls, row)

    # Projects ------------------------------------------------------------

    def create_project(
        self,
        name: str,
        repo_url: Optional[str] = None,
        default_branch: str = "main",
        description: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> Project:
        now = utc_now()
        project = Project(
            id=project_id or new_id(),
            name=name,
            default_branch=default_branch or "main",
            created_at=now,
            updated_at=now,
            description=description,
            repo_url=repo_url,
        )
        with self._transaction() as conn:
            self._insert(conn, "projects", project)
        return project

    def get_project(self, project_id: str) -> Project:
        return self._get(Project, "projects", project_id, "Project")

    def list_projects(self) -> List[Project]:
        rows = self._fetchall(f"SELECT * FROM projects ORDER BY created_at, {self._tiebreak}")
        return [self._row_to(Project, row) for row in rows]

    def update_project(
        self,
        project_id: str,
        *,
        name: Any = _UNSET,
        description: Any = _UNSET,
        repo_url: Any = _UNSET,
        default_branch: Any = _UNSET,
    ) -> Project:
        changes = {
            key: value
            for key, value in (
                ("name", name),
                ("description", description),
                ("repo_url", repo_url),
                ("default_branch", default_branch),
            )
            if value is not _UNSET
        }
        with self._transaction() as conn:
            if not self._update(conn, "projects", project_id, changes):
                raise KeyError(f"Project {project_id} not found")
        return self.get_project(project_id)

    # Planning hierarchy ----------------------------------------------------

    def read_project_bundle(self, project_id: str) -> Optional[ProjectBundle]:
        """
        Read a project's whole planning hierarchy inside one read transaction.

        Rows come back ordered by position with insertion order as the tie-break.
        """
        t = self._tiebreak
        with self._read_transaction() as conn:
            row = self._execute(conn, "SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
            if row is None:
                return None

            def rows(query: str) -> List[Any]:
                return list(self._execute(conn, query, (project_id,)).fetchall() or [])

            activity_join = (
                "JOIN workflow_activities a ON {alias}.workflow_activity_id = a.id "
                "JOIN workflows w ON a.workflow_id = w.id WHERE w.project_id = ?"
            )
            card_join = (
                "JOIN cards c ON {alias}.card_id = c.id "
                "JOIN workflow_activities a ON c.workflow_activity_id = a.id "
                "JOIN workflows w ON a.workflow_id = w.id WHERE w.project_id = ?"
            )
            bundle = ProjectBundle(project=self._row_to(Project, row))
            bundle.workflows = [
                self._row_to(Workflow, r)
                for r in rows(f"SELECT * FROM workflows WHERE project_id = ? ORDER BY position, {t}")
            ]
            bundle.activities = [
                self._row_to(Activity, r)
                for r in rows(
                    "SELECT a.* FROM workflow_activities a JOIN workflows w ON a.workflow_id = w.id "
                    f"WHERE w.project_id = ? ORDER BY a.position, a.{t}"
                )
            ]
            bundle.steps = [
                self._row_to(Step, r)
                for r in rows(f"SELECT s.* FROM steps s {activity_join.format(alias='s')} ORDER BY s.position, s.{t}")
            ]
            bundle.cards = [
                self._row_to(Card, r)
                for r in rows(f"SELECT c.* FROM cards c {activity_join.format(alias='c')} ORDER BY c.position, c.{t}")
            ]
            bundle.knowledge_items = [
                self._row_to(KnowledgeItem, r)
                for r in rows(
                    f"SELECT k.* FROM card_knowledge_items k {card_join.format(alias='k')} ORDER BY k.position, k.{t}"
                )
            ]
            bundle.planned_files = [
                self._row_to(PlannedFile, r)
                for r in rows(
                    f"SELECT p.* FROM card_planned_files p {card_join.format(alias='p')} ORDER BY p.position, p.{t}"
                )
            ]
            bundle.context_artifacts = [
                self._row_to(ContextArtifact, r)
                for r in rows(f"SELECT * FROM context_artifacts WHERE project_id = ? ORDER BY created_at, {t}")
            ]
            bundle.card_context_links = [
                self._row_to(CardContextLink, r)
                for r in rows(
                    f"SELECT l.* FROM card_context_artifacts l {card_join.format(alias='l')} ORDER BY l.created_at, l.{t}"
                )
            ]
        return bundle

    def apply_mutations(self, mutations: Sequence[Union[EntityInsert, EntityUpdate]]) -> None:
        """Write the mutations of one planning action atomically."""
        with self._transaction() as conn:
            for mutation in mutations:
                table = PLANNING_TABLES[mutation.kind]
                if isinstance(mutation, EntityInsert):
                    self._insert(conn, table, mutation.entity)
                elif not self._update(conn, table, mutation.entity_id, mutation.changes):
                    raise KeyError(f"{mutation.kind} {mutation.entity_id} not found")

    def get_card(self, card_id: str) -> Card:
        return self._get(Card, "cards", card_id, "Card")

    def update_card(self, card_id: str, update: CardUpdate) -> Card:
        with self._transaction() as conn:
            if not self._update(conn, "cards", card_id, update.changes()):
                raise KeyError(f"Card {card_id} not found")
        return self.get_card(card_id)

    def get_card_project_id(self, card_id: str) -> Optional[str]:
        row = self._fetchone(
            "SELECT w.project_id AS project_id FROM cards c "
            "JOIN workflow_activities a ON c.workflow_activity_id = a.id "
            "JOIN workflows w ON a.workflow_id = w.id WHERE c.id = ?",
            (card_id,),
        )
        return row["project_id"] if row else None

    def get_workflow(self, workflow_id: str) -> Workflow:
        return self._get(Workflow, "workflows", workflow_id, "Workflow")

    def set_workflow_build_state(self, workflow_id: str, build_state: Optional[str]) -> None:
        with self._transaction() as conn:
            self._update(conn, "workflows", workflow_id, {"build_state": build_state})

    def list_knowledge_items(self, card_id: str, item_type: Optional[str] = None) -> List[KnowledgeItem]:
        query = "SELECT * FROM card_knowledge_items WHERE card_id = ?"
        params: List[Any] = [card_id]
        if item_type:
            query += " AND item_type = ?"
            params.append(item_type)
        rows = self._fetchall(f"{query} ORDER BY position, {self._tiebreak}", params)
        return [self._row_to(KnowledgeItem, row) for row in rows]

    def create_knowledge_item(
        self,
        card_id: str,
        item_type: str,
        text: str,
        *,
        status: str = "draft",
        source: str = "user",
        position: Optional[int] = None,
        evidence_source: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> KnowledgeItem:
        if position is None:
            position = len(self.list_knowledge_items(card_id, item_type))
        now = utc_now()
        item = KnowledgeItem(
            id=new_id(),
            card_id=card_id,
            item_type=item_type,
            text=text,
            status=status,
            source=source,
            position=position,
            created_at=now,
            updated_at=now,
            evidence_source=evidence_source,
            confidence=confidence,
        )
        with self._transaction() as conn:
            self._insert(conn, "card_knowledge_items", item)
        return item

    def list_planned_files(self, card_id: str) -> List[PlannedFile]:
        rows = self._fetchall(
            f"SELECT * FROM card_planned_files WHERE card_id = ? ORDER BY position, {self._tiebreak}",
            (card_id,),
        )
        return [self._row_to(PlannedFile, row) for row in rows]

    def record_planning_action(self, record: PlanningActionRecord) -> None:
        with self._transaction() as conn:
            self._insert(conn, "planning_actions", record)

    def list_planning_actions(self, project_id: str, *, limit: int = 200) -> List[PlanningActionRecord]:
        limit = max(1, min(int(limit), 1000))
        rows = self._fetchall(
            f"SELECT * FROM planning_actions WHERE project_id = ? ORDER BY created_at DESC, {self._tiebreak} DESC LIMIT ?",
            (project_id, limit),
        )
        return [self._row_to(PlanningActionRecord, row) for row in rows]

    # Policy ------------------------------------------------------------------

    def get_policy_profile(self, project_id: str) -> Optional[PolicyProfile]:
        row = self._fetchone("SELECT * FROM system_policy_profiles WHERE project_id = ?", (project_id,))
        return self._row_to(PolicyProfile, row) if row else None

    def create_policy_profile(
        self,
        project_id: str,
        required_checks: List[str],
        *,
        protected_paths: Optional[List[str]] = None,
        forbidden_paths: Optional[List[str]] = None,
    ) -> PolicyProfile:
        now = utc_now()
        profile = PolicyProfile(
            id=new_id(),
            project_id=project_id,
            required_checks=list(required_checks),
            protected_paths=list(protected_paths or []),
            forbidden_paths=list(forbidden_paths or []),
            created_at=now,
            updated_at=now,
            dependency_policy={},
            security_policy={},
            architecture_policy={},
            approval_policy={},
        )
        with self._transaction() as conn:
            self._insert(conn, "system_policy_profiles", profile)
        return profile

    def update_policy_profile(
        self,
        project_id: str,
        *,
        required_checks: Any = _UNSET,
        protected_paths: Any = _UNSET,
        forbidden_paths: Any = _UNSET,
    ) -> PolicyProfile:
        profile = self.get_policy_profile(project_id)
        if profile is None:
            raise KeyError(f"Policy profile for project {project_id} not found")
        changes = {
            key: list(value)
            for key, value in (
                ("required_checks", required_checks),
                ("protected_paths", protected_paths),
                ("forbidden_paths", forbidden_paths),
            )
            if value is not _UNSET
        }
        with self._transaction() as conn:
            self._update(conn, "system_policy_profiles", profile.id, changes)
        return self.get_policy_profile(project_id)  # type: ignore[return-value]

    # Runs ----------------------------------------------------------------------

    def create_run(
        self,
        *,
        project_id: str,
        scope: str,
        trigger_type: str,
        initiated_by: str,
        base_branch: str,
        run_input_snapshot: Dict[str, Any],
        system_policy_snapshot: Dict[str, Any],
        workflow_id: Optional[str] = None,
        card_id: Optional[str] = None,
        repo_url: Optional[str] = None,
        worktree_root: Optional[str] = None,
        status: str = RunStatus.QUEUED,
    ) -> OrchestrationRun:
        now = utc_now()
        run = OrchestrationRun(
            id=new_id(),
            project_id=project_id,
            scope=scope,
            trigger_type=trigger_type,
            initiated_by=initiated_by,
            base_branch=base_branch,
            status=status,
            run_input_snapshot=run_input_snapshot,
            system_policy_snapshot=system_policy_snapshot,
            created_at=now,
            updated_at=now,
            workflow_id=workflow_id,
            card_id=card_id,
            repo_url=repo_url,
            worktree_root=worktree_root,
        )
        with self._transaction() as conn:
            self._insert(conn, "orchestration_runs", run)
        return run

    def get_run(self, run_id: str) -> OrchestrationRun:
        return self._get(OrchestrationRun, "orchestration_runs", run_id, "Run")

    def list_runs(
        self,
        project_id: str,
        *,
        scope: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        limit: int = 50,
    ) -> List[OrchestrationRun]:
        query = "SELECT * FROM orchestration_runs WHERE project_id = ?"
        params: List[Any] = [project_id]
        if scope:
            query += " AND scope = ?"
            params.append(scope)
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        limit = max(1, min(int(limit), 500))
        query += f" ORDER BY created_at DESC, {self._tiebreak} DESC LIMIT ?"
        params.append(limit)
        return [self._row_to(OrchestrationRun, row) for row in self._fetchall(query, params)]

    def list_runs_by_status(
        self,
        statuses: Sequence[str],
        *,
        created_before: Optional[str] = None,
    ) -> List[OrchestrationRun]:
        query = f"SELECT * FROM orchestration_runs WHERE status IN ({', '.join('?' for _ in statuses)})"
        params: List[Any] = list(statuses)
        if created_before:
            query += " AND created_at < ?"
            params.append(created_before)
        rows = self._fetchall(f"{query} ORDER BY created_at, {self._tiebreak}", params)
        return [self._row_to(OrchestrationRun, row) for row in rows]

    def update_run(self, run_id: str, update: RunUpdate, *, expected_status: Optional[str] = None) -> OrchestrationRun:
        """Apply ``update``; with ``expected_status`` the write only lands while the run still has it."""
        with self._transaction() as conn:
            if not self._update(conn, "orchestration_runs", run_id, update.changes(), expected_status=expected_status):
                self._raise_missed(conn, "orchestration_runs", "Run", run_id, expected_status)
        return self.get_run(run_id)

    def requeue_run(self, run_id: str) -> OrchestrationRun:
        """Move a failed run back to queued along with its unfinished assignments and their cards."""
        with self._transaction() as conn:
            changes = {"status": RunStatus.QUEUED, "ended_at": None}
            if not self._update(conn, "orchestration_runs", run_id, changes, expected_status=RunStatus.FAILED):
                self._raise_missed(conn, "orchestration_runs", "Run", run_id, RunStatus.FAILED)
            rows = self._execute(
                conn,
                "SELECT id, card_id FROM card_assignments WHERE run_id = ? AND status != ?",
                (run_id, AssignmentStatus.COMPLETED),
            ).fetchall()
            for row in rows:
                self._update(conn, "card_assignments", row["id"], {"status": AssignmentStatus.QUEUED})
                self._update(conn, "cards", row["card_id"], {"build_state": BuildState.QUEUED, "last_build_error": None})
        return self.get_run(run_id)

    def fail_run(self, run_id: str, error: str) -> OrchestrationRun:
        """Fail a run plus every non-terminal assignment, recording the error on their cards."""
        with self._transaction() as conn:
            if not self._update(conn, "orchestration_runs", run_id, {"status": RunStatus.FAILED, "ended_at": utc_now()}):
                raise KeyError(f"Run {run_id} not found")
            terminal = AssignmentStatus.TERMINAL
            rows = self._execute(
                conn,
                f"SELECT id, card_id FROM card_assignments WHERE run_id = ? AND status NOT IN ({', '.join('?' for _ in terminal)})",
                (run_id, *terminal),
            ).fetchall()
            for row in rows:
                self._update(conn, "card_assignments", row["id"], {"status": AssignmentStatus.FAILED})
                self._update(conn, "cards", row["card_id"], {"build_state": BuildState.FAILED, "last_build_error": error})
        return self.get_run(run_id)

    # Assignments and executions ----------------------------------------------

    def create_assignment(
        self,
        *,
        run_id: str,
        card_id: str,
        agent_role: str,
        agent_profile: str,
        feature_branch: str,
        allowed_paths: List[str],
        forbidden_paths: Optional[List[str]] = None,
        assignment_input_snapshot: Optional[Dict[str, Any]] = None,
        worktree_path: Optional[str] = None,
        status: str = AssignmentStatus.QUEUED,
    ) -> CardAssignment:
        now = utc_now()
        assignment = CardAssignment(
            id=new_id(),
            run_id=run_id,
            card_id=card_id,
            agent_role=agent_role,
            agent_profile=agent_profile,
            feature_branch=feature_branch,
            allowed_paths=list(allowed_paths),
            forbidden_paths=list(forbidden_paths or []),
            assignment_input_snapshot=assignment_input_snapshot or {},
            status=status,
            created_at=now,
            updated_at=now,
            worktree_path=worktree_path,
        )
        with self._transaction() as conn:
            self._insert(conn, "card_assignments", assignment)
        return assignment

    def get_assignment(self, assignment_id: str) -> CardAssignment:
        return self._get(CardAssignment, "card_assignments", assignment_id, "Assignment")

    def list_assignments(self, run_id: str, card_id: Optional[str] = None) -> List[CardAssignment]:
        query = "SELECT * FROM card_assignments WHERE run_id = ?"
        params: List[Any] = [run_id]
        if card_id:
            query += " AND card_id = ?"
            params.append(card_id)
        rows = self._fetchall(f"{query} ORDER BY created_at, {self._tiebreak}", params)
        return [self._row_to(CardAssignment, row) for row in rows]

    def update_assignment(self, assignment_id: str, update: AssignmentUpdate) -> CardAssignment:
        with self._transaction() as conn:
            if not self._update(conn, "card_assignments", assignment_id, update.changes()):
                raise KeyError(f"Assignment {assignment_id} not found")
        return self.get_assignment(assignment_id)

    def transition_assignment(
        self,
        assignment_id: str,
        status: str,
        *,
        card_update: Optional[CardUpdate] = None,
        expected_status: Optional[str] = None,
    ) -> CardAssignment:
        """
        Change an assignment's status and its card's build fields in one transaction.

        With ``expected_status`` nothing is written unless the assignment is
        still in that status; ConflictError is raised instead.
        """
        with self._transaction() as conn:
            row = self._execute(conn, "SELECT card_id FROM card_assignments WHERE id = ?", (assignment_id,)).fetchone()
            if row is None:
                raise KeyError(f"Assignment {assignment_id} not found")
            if not self._update(conn, "card_assignments", assignment_id, {"status": status}, expected_status=expected_status):
                self._raise_missed(conn, "card_assignments", "Assignment", assignment_id, expected_status)
            if card_update is not None and not card_update.is_empty():
                self._update(conn, "cards", row["card_id"], card_update.changes())
        return self.get_assignment(assignment_id)

    def create_agent_execution(
        self,
        assignment_id: str,
        status: str,
        *,
        execution_id: Optional[str] = None,
        started_at: Optional[str] = None,
    ) -> AgentExecution:
        now = utc_now()
        execution = AgentExecution(
            id=new_id(),
            assignment_id=assignment_id,
            status=status,
            created_at=now,
            updated_at=now,
            execution_id=execution_id,
            started_at=started_at,
        )
        with self._transaction() as conn:
            self._insert(conn, "agent_executions", execution)
        return execution

    def list_agent_executions(self, assignment_id: str) -> List[AgentExecution]:
        rows = self._fetchall(
            f"SELECT * FROM agent_executions WHERE assignment_id = ? ORDER BY created_at DESC, {self._tiebreak} DESC",
            (assignment_id,),
        )
        return [self._row_to(AgentExecution, row) for row in rows]

    def update_agent_execution(self, agent_execution_id: str, update: ExecutionUpdate) -> AgentExecution:
        with self._transaction() as conn:
            if not self._update(conn, "agent_executions", agent_execution_id, update.changes()):
                raise KeyError(f"Agent execution {agent_execution_id} not found")
        return self._get(AgentExecution, "agent_executions", agent_execution_id, "Agent execution")

    def create_agent_commit(self, assignment_id: str, sha: str, branch: str, message: str) -> AgentCommit:
        commit = AgentCommit(
            id=new_id(),
            assignment_id=assignment_id,
            sha=sha,
            branch=branch,
            message=message,
            committed_at=utc_now(),
        )
        with self._transaction() as conn:
            self._insert(conn, "agent_commits", commit)
        return commit

    def list_agent_commits(self, assignment_id: str) -> List[AgentCommit]:
        rows = self._fetchall(
            f"SELECT * FROM agent_commits WHERE assignment_id = ? ORDER BY committed_at, {self._tiebreak}",
            (assignment_id,),
        )
        return [self._row_to(AgentCommit, row) for row in rows]

    # Checks, approvals, pull requests -----------------------------------------

    def create_run_check(self, run_id: str, check_type: str, status: str, output: Optional[str] = None) -> RunCheck:
        check = RunCheck(
            id=new_id(),
            run_id=run_id,
            check_type=check_type,
            status=status,
            executed_at=utc_now(),
            output=output,
        )
        with self._transaction() as conn:
            self._insert(conn, "run_checks", check)
        return check

    def list_run_checks(self, run_id: str) -> List[RunCheck]:
        rows = self._fetchall(
            f"SELECT * FROM run_checks WHERE run_id = ? ORDER BY executed_at, {self._tiebreak}",
            (run_id,),
        )
        return [self._row_to(RunCheck, row) for row in rows]

    def create_approval_request(self, run_id: str, approval_type: str, requested_by: str) -> ApprovalRequest:
        approval = ApprovalRequest(
            id=new_id(),
            run_id=run_id,
            approval_type=approval_type,
            requested_by=requested_by,
            requested_at=utc_now(),
            status="pending",
        )
        with self._transaction() as conn:
            self._insert(conn, "approval_requests", approval)
        return approval

    def get_approval_request(self, approval_id: str) -> ApprovalRequest:
        return self._get(ApprovalRequest, "approval_requests", approval_id, "Approval request")

    def list_approval_requests(self, project_id: str, run_id: Optional[str] = None) -> List[ApprovalRequest]:
        query = (
            "SELECT ar.* FROM approval_requests ar JOIN orchestration_runs r ON ar.run_id = r.id "
            "WHERE r.project_id = ?"
        )
        params: List[Any] = [project_id]
        if run_id:
            query += " AND ar.run_id = ?"
            params.append(run_id)
        rows = self._fetchall(f"{query} ORDER BY ar.requested_at, ar.{self._tiebreak}", params)
        return [self._row_to(ApprovalRequest, row) for row in rows]

    def update_approval_request(self, approval_id: str, update: ApprovalUpdate) -> ApprovalRequest:
        with self._transaction() as conn:
            if not self._update(conn, "approval_requests", approval_id, update.changes()):
                raise KeyError(f"Approval request {approval_id} not found")
        return self.get_approval_request(approval_id)

    def create_pull_request_candidate(
        self,
        run_id: str,
        *,
        base_branch: str,
        head_branch: str,
        title: str,
        description: str,
        status: str = "not_created",
    ) -> PullRequestCandidate:
        now = utc_now()
        candidate = PullRequestCandidate(
            id=new_id(),
            run_id=run_id,
            base_branch=base_branch,
            head_branch=head_branch,
            title=title,
            description=description,
            status=status,
            created_at=now,
            updated_at=now,
        )
        with self._transaction() as conn:
            self._insert(conn, "pull_request_candidates", candidate)
        return candidate

    def get_pull_request_candidate(self, pr_id: str) -> PullRequestCandidate:
        return self._get(PullRequestCandidate, "pull_request_candidates", pr_id, "Pull request candidate")

    def get_pull_request_candidate_for_run(self, run_id: str) -> Optional[PullRequestCandidate]:
        row = self._fetchone("SELECT * FROM pull_request_candidates WHERE run_id = ?", (run_id,))
        return self._row_to(PullRequestCandidate, row) if row else None

    def list_pull_request_candidates(self, project_id: str) -> List[PullRequestCandidate]:
        rows = self._fetchall(
            "SELECT p.* FROM pull_request_candidates p JOIN orchestration_runs r ON p.run_id = r.id "
            f"WHERE r.project_id = ? ORDER BY p.created_at DESC, p.{self._tiebreak} DESC",
            (project_id,),
        )
        return [self._row_to(PullRequestCandidate, row) for row in rows]

    def update_pull_request_candidate(self, pr_id: str, update: PullRequestUpdate) -> PullRequestCandidate:
        with self._transaction() as conn:
            if not self._update(conn, "pull_request_candidates", pr_id, update.changes()):
                raise KeyError(f"Pull request candidate {pr_id} not found")
        return self.get_pull_request_candidate(pr_id)

    # Events --------------------------------------------------------------------

    def append_event(
        self,
        project_id: str,
        event_type: str,
        actor: str,
        payload: Optional[Dict[str, Any]] = None,
        run_id: Optional[str] = None,
    ) -> EventLogEntry:
        entry = EventLogEntry(
            id=new_id(),
            project_id=project_id,
            event_type=event_type,
            actor=actor,
            payload=payload or {},
            created_at=utc_now(),
            run_id=run_id,
        )
        with self._transaction() as conn:
            self._insert(conn, "event_log", entry)
        return entry

    def list_events(self, project_id: str, run_id: Optional[str] = None, *, limit: int = 100) -> List[EventLogEntry]:
        query = "SELECT * FROM event_log WHERE project_id = ?"
        params: List[Any] = [project_id]
        if run_id:
            query += " AND run_id = ?"
            params.append(run_id)
        limit = max(1, min(int(limit), 1000))
        query += f" ORDER BY created_at DESC, {self._tiebreak} DESC LIMIT ?"
        params.append(limit)
        return [self._row_to(EventLogEntry, row) for row in self._fetchall(query, params)]


class PostgresDatabase(SQLiteDatabase):
    """
    PostgreSQL-backed persistence for Storymap state.
    Requires psycopg>=3. Follows the same contract as the SQLite class.
    """

    _tiebreak = "seq"

    def __init__(self, db_url: str, pool_size: int = 5) -> None:
        if psycopg is None:
            raise ImportError("psycopg is required for Postgres support. Install psycopg[binary].")

        self.db_url = db_url
        self.row_factory = dict_row
        self.pool = None

        if ConnectionPool:
            self.pool = ConnectionPool(
                conninfo=db_url,
                min_size=1,
                max_size=pool_size,
                kwargs={"row_factory": self.row_factory},
            )

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        if self.pool:
            with self.pool.connection() as conn:
                yield conn
        else:
            with psycopg.connect(self.db_url, row_factory=self.row_factory) as conn:
                yield conn

    @contextmanager
    def _read_transaction(self) -> Iterator[Any]:
        with self._connection() as conn:
            conn.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ")
            try:
                yield conn
            finally:
                conn.rollback()

    def _q(self, query: str) -> str:
        return query.replace("?", "%s")

    def init_schema(self) -> None:
        """Initialize database schema."""
        from storymap.db.schema import SCHEMA_POSTGRES

        with self._transaction() as conn:
            conn.execute(SCHEMA_POSTGRES)


# Type alias for the unified database interface
Database = Union[SQLiteDatabase, PostgresDatabase]


def get_database(db_url: Optional[str] = None, db_path: Optional[Path] = None, pool_size: int = 5) -> Database:
    """
    Factory function to create the appropriate database instance.

    Args:
        db_url: PostgreSQL connection URL (postgresql://...)
        db_path: SQLite database file path
        pool_size: Connection pool size for PostgreSQL

    Returns:
        Either SQLiteDatabase or PostgresDatabase instance
    """
    if db_url and db_url.startswith("postgres"):
        return PostgresDatabase(db_url, pool_size=pool_size)

    if db_path:
        return SQLiteDatabase(db_path)

    return SQLiteDatabase(Path(".storymap.sqlite"))
