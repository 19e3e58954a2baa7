"""
Storymap Domain Models

Data classes representing the core entities in the Storymap system.
These are used for data transfer between storage and services.
"""

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# Status Constants

class CardStatus:
    """Card workflow status values."""
    TODO = "todo"
    ACTIVE = "active"
    QUESTIONS = "questions"
    REVIEW = "review"
    PRODUCTION = "production"

    ALL = (TODO, ACTIVE, QUESTIONS, REVIEW, PRODUCTION)


class ActivityColor:
    ALL = ("yellow", "blue", "purple", "green", "orange", "pink")


class ArtifactType:
    """Context artifact types."""
    TEST = "test"

    ALL = (
        "doc", "design", "code", "research", "link", "image", "skill",
        "mcp", "cli", "api", "prompt", "spec", "runbook", "test",
    )


class PlannedFileKind:
    ALL = ("component", "endpoint", "service", "schema", "hook", "util", "middleware", "job", "config")


class PlannedFileAction:
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"

    ALL = (CREATE, MODIFY, DELETE)


class PlannedFileStatus:
    PROPOSED = "proposed"
    USER_EDITED = "user_edited"
    APPROVED = "approved"

    ALL = (PROPOSED, USER_EDITED, APPROVED)


class KnowledgeItemType:
    """Semantic roles of card knowledge items."""
    REQUIREMENT = "requirement"
    FACT = "fact"
    ASSUMPTION = "assumption"
    QUESTION = "question"

    ALL = (REQUIREMENT, FACT, ASSUMPTION, QUESTION)


class KnowledgeStatus:
    DRAFT = "draft"
    APPROVED = "approved"
    REJECTED = "rejected"

    ALL = (DRAFT, APPROVED, REJECTED)


class KnowledgeSource:
    USER = "user"
    AGENT = "agent"
    IMPORTED = "imported"


class RunStatus:
    """Orchestration run status values."""
    QUEUED = "queued"
    RUNNING = "running"
    BLOCKED = "blocked"
    FAILED = "failed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ALL = (QUEUED, RUNNING, BLOCKED, FAILED, COMPLETED, CANCELLED)
    ACTIVE = (QUEUED, RUNNING, BLOCKED)
    TERMINAL = (COMPLETED, CANCELLED)


class RunScope:
    WORKFLOW = "workflow"
    CARD = "card"

    ALL = (WORKFLOW, CARD)


class TriggerType:
    CARD = "card"
    WORKFLOW = "workflow"
    MANUAL = "manual"

    ALL = (CARD, WORKFLOW, MANUAL)


class AgentRole:
    ALL = ("planner", "coder", "reviewer", "integrator", "tester")


class AssignmentStatus:
    """Card assignment status values."""
    QUEUED = "queued"
    DISPATCHED = "dispatched"
    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (QUEUED, DISPATCHED, RUNNING, BLOCKED, COMPLETED, FAILED)
    TERMINAL = (COMPLETED, FAILED)


class ExecutionStatus:
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class BuildState:
    """Card/workflow build_state values (mirrors run status names)."""
    QUEUED = "queued"
    RUNNING = "running"
    BLOCKED = "blocked"
    FAILED = "failed"
    COMPLETED = "completed"


class CheckType:
    ALL = ("dependency", "security", "policy", "lint", "unit", "integration", "e2e")


class CheckStatus:
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"

    ALL = (PASSED, FAILED, SKIPPED)


class ApprovalType:
    CREATE_PR = "create_pr"
    MERGE_PR = "merge_pr"

    ALL = (CREATE_PR, MERGE_PR)


class ApprovalStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    ALL = (PENDING, APPROVED, REJECTED)


class PullRequestStatus:
    NOT_CREATED = "not_created"
    DRAFT_OPEN = "draft_open"
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"

    ALL = (NOT_CREATED, DRAFT_OPEN, OPEN, MERGED, CLOSED)


# Planning hierarchy

@dataclass
class Project:
    """Root of a story map; owns every planning and orchestration entity."""
    id: str
    name: str
    default_branch: str
    created_at: str
    updated_at: str
    description: Optional[str] = None
    repo_url: Optional[str] = None


@dataclass
class Workflow:
    id: str
    project_id: str
    title: str
    position: int
    created_at: str
    updated_at: str
    description: Optional[str] = None
    build_state: Optional[str] = None


@dataclass
class Activity:
    id: str
    workflow_id: str
    title: str
    position: int
    created_at: str
    updated_at: str
    color: Optional[str] = None


@dataclass
class Step:
    id: str
    workflow_activity_id: str
    title: str
    position: int
    created_at: str
    updated_at: str


@dataclass
class Card:
    """
    Atomic unit of implementation work.

    A card always belongs to an activity; step_id is set when the card is
    grouped under one of that activity's steps.
    """
    id: str
    workflow_activity_id: str
    title: str
    status: str
    priority: int
    position: int
    created_at: str
    updated_at: str
    step_id: Optional[str] = None
    description: Optional[str] = None
    quick_answer: Optional[str] = None
    build_state: Optional[str] = None
    last_built_at: Optional[str] = None
    last_build_ref: Optional[str] = None
    last_build_error: Optional[str] = None
    finalized_at: Optional[str] = None


@dataclass
class KnowledgeItem:
    """Requirement, fact, assumption or question attached to a card."""
    id: str
    card_id: str
    item_type: str
    text: str
    status: str
    source: str
    position: int
    created_at: str
    updated_at: str
    evidence_source: Optional[str] = None
    confidence: Optional[float] = None


@dataclass
class PlannedFile:
    id: str
    card_id: str
    logical_file_name: str
    artifact_kind: str
    action: str
    intent_summary: str
    status: str
    position: int
    created_at: str
    updated_at: str
    module_hint: Optional[str] = None
    contract_notes: Optional[str] = None


@dataclass
class ContextArtifact:
    id: str
    project_id: str
    name: str
    type: str
    created_at: str
    updated_at: str
    title: Optional[str] = None
    content: Optional[str] = None
    uri: Optional[str] = None
    integration_ref: Optional[Dict[str, Any]] = None


@dataclass
class CardContextLink:
    id: str
    card_id: str
    context_artifact_id: str
    created_at: str
    linked_by: Optional[str] = None
    usage_hint: Optional[str] = None


@dataclass
class PlanningActionRecord:
    """Audit row for a submitted planning action."""
    id: str
    action_id: str
    project_id: str
    action_type: str
    target_ref: Dict[str, Any]
    payload: Dict[str, Any]
    validation_status: str
    created_at: str
    rejection_reason: Optional[str] = None
    applied_at: Optional[str] = None


@dataclass
class ProjectBundle:
    """Raw rows of one project's planning hierarchy, read in one transaction."""
    project: Project
    workflows: List[Workflow] = field(default_factory=list)
    activities: List[Activity] = field(default_factory=list)
    steps: List[Step] = field(default_factory=list)
    cards: List[Card] = field(default_factory=list)
    knowledge_items: List[KnowledgeItem] = field(default_factory=list)
    planned_files: List[PlannedFile] = field(default_factory=list)
    context_artifacts: List[ContextArtifact] = field(default_factory=list)
    card_context_links: List[CardContextLink] = field(default_factory=list)


# Orchestration

@dataclass
class PolicyProfile:
    """System policy for a project; frozen into each run at creation."""
    id: str
    project_id: str
    required_checks: List[str]
    protected_paths: List[str]
    forbidden_paths: List[str]
    created_at: str
    updated_at: str
    dependency_policy: Optional[Dict[str, Any]] = None
    security_policy: Optional[Dict[str, Any]] = None
    architecture_policy: Optional[Dict[str, Any]] = None
    approval_policy: Optional[Dict[str, Any]] = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "required_checks": list(self.required_checks),
            "protected_paths": list(self.protected_paths),
            "forbidden_paths": list(self.forbidden_paths),
            "dependency_policy": self.dependency_policy or {},
            "security_policy": self.security_policy or {},
            "architecture_policy": self.architecture_policy or {},
            "approval_policy": self.approval_policy or {},
        }


@dataclass
class OrchestrationRun:
    """One build attempt scoped to a workflow or a single card."""
    id: str
    project_id: str
    scope: str
    trigger_type: str
    initiated_by: str
    base_branch: str
    status: str
    run_input_snapshot: Dict[str, Any]
    system_policy_snapshot: Dict[str, Any]
    created_at: str
    updated_at: str
    workflow_id: Optional[str] = None
    card_id: Optional[str] = None
    repo_url: Optional[str] = None
    worktree_root: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None

    @property
    def required_checks(self) -> List[str]:
        return list((self.system_policy_snapshot or {}).get("required_checks") or [])

    @property
    def forbidden_paths(self) -> List[str]:
        return list((self.system_policy_snapshot or {}).get("forbidden_paths") or [])


@dataclass
class CardAssignment:
    id: str
    run_id: str
    card_id: str
    agent_role: str
    agent_profile: str
    feature_branch: str
    allowed_paths: List[str]
    forbidden_paths: List[str]
    assignment_input_snapshot: Dict[str, Any]
    status: str
    created_at: str
    updated_at: str
    worktree_path: Optional[str] = None


@dataclass
class AgentExecution:
    id: str
    assignment_id: str
    status: str
    created_at: str
    updated_at: str
    execution_id: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    summary: Optional[str] = None
    error: Optional[str] = None


@dataclass
class AgentCommit:
    id: str
    assignment_id: str
    sha: str
    branch: str
    message: str
    committed_at: str


@dataclass
class RunCheck:
    id: str
    run_id: str
    check_type: str
    status: str
    executed_at: str
    output: Optional[str] = None


@dataclass
class ApprovalRequest:
    id: str
    run_id: str
    approval_type: str
    requested_by: str
    requested_at: str
    status: str
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class PullRequestCandidate:
    id: str
    run_id: str
    base_branch: str
    head_branch: str
    title: str
    description: str
    status: str
    created_at: str
    updated_at: str
    pr_url: Optional[str] = None


@dataclass
class EventLogEntry:
    id: str
    project_id: str
    event_type: str
    actor: str
    payload: Dict[str, Any]
    created_at: str
    run_id: Optional[str] = None


# Partial updates

class _Unset:
    """Marker for update fields that were not provided."""

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


class _PartialUpdate:
    """Mixin for update structs: only fields that are not UNSET are written."""

    def changes(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)  # type: ignore[arg-type]
            if getattr(self, f.name) is not UNSET
        }

    def is_empty(self) -> bool:
        return not self.changes()


@dataclass
class CardUpdate(_PartialUpdate):
    title: Any = UNSET
    description: Any = UNSET
    status: Any = UNSET
    priority: Any = UNSET
    quick_answer: Any = UNSET
    workflow_activity_id: Any = UNSET
    step_id: Any = UNSET
    position: Any = UNSET
    build_state: Any = UNSET
    last_built_at: Any = UNSET
    last_build_ref: Any = UNSET
    last_build_error: Any = UNSET
    finalized_at: Any = UNSET


@dataclass
class KnowledgeItemUpdate(_PartialUpdate):
    text: Any = UNSET
    status: Any = UNSET
    evidence_source: Any = UNSET
    confidence: Any = UNSET
    position: Any = UNSET


@dataclass
class PlannedFileUpdate(_PartialUpdate):
    logical_file_name: Any = UNSET
    module_hint: Any = UNSET
    artifact_kind: Any = UNSET
    action: Any = UNSET
    intent_summary: Any = UNSET
    contract_notes: Any = UNSET
    status: Any = UNSET
    position: Any = UNSET


@dataclass
class RunUpdate(_PartialUpdate):
    status: Any = UNSET
    worktree_root: Any = UNSET
    started_at: Any = UNSET
    ended_at: Any = UNSET


@dataclass
class AssignmentUpdate(_PartialUpdate):
    status: Any = UNSET
    worktree_path: Any = UNSET


@dataclass
class ExecutionUpdate(_PartialUpdate):
    status: Any = UNSET
    execution_id: Any = UNSET
    started_at: Any = UNSET
    ended_at: Any = UNSET
    summary: Any = UNSET
    error: Any = UNSET


@dataclass
class ApprovalUpdate(_PartialUpdate):
    status: Any = UNSET
    resolved_by: Any = UNSET
    resolved_at: Any = UNSET
    notes: Any = UNSET


@dataclass
class PullRequestUpdate(_PartialUpdate):
    status: Any = UNSET
    pr_url: Any = UNSET
    title: Any = UNSET
    description: Any = UNSET


# Planning mutations produced by the action pipeline

@dataclass
class EntityInsert:
    """Insert one planning entity (kind names the table, see db.schema.PLANNING_TABLES)."""
    kind: str
    entity: Any


@dataclass
class EntityUpdate:
    kind: str
    entity_id: str
    changes: Dict[str, Any]


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()
