from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from storymap import __version__

# =============================================================================
# Base Models
# =============================================================================

class APIModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class Health(BaseModel):
    status: str = "ok"
    version: str = __version__
    service: str = "storymap"


class ErrorOut(BaseModel):
    error: str
    message: str
    details: Optional[Dict[str, List[str]]] = None


# =============================================================================
# Project Models
# =============================================================================

class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    repo_url: Optional[str] = None
    default_branch: str = "main"


class ProjectUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    repo_url: Optional[str] = None
    default_branch: Optional[str] = None


class ProjectOut(APIModel):
    id: str
    name: str
    description: Optional[str] = None
    repo_url: Optional[str] = None
    default_branch: str
    created_at: str
    updated_at: str


class PolicyUpdate(BaseModel):
    required_checks: Optional[List[str]] = None
    protected_paths: Optional[List[str]] = None
    forbidden_paths: Optional[List[str]] = None


class PolicyOut(APIModel):
    id: str
    project_id: str
    required_checks: List[str]
    protected_paths: List[str]
    forbidden_paths: List[str]
    updated_at: str


# =============================================================================
# Planning Action Models
# =============================================================================

class ActionBatchIn(BaseModel):
    # shape is validated by the action pipeline so every failure reports as 400
    actions: Any = None


class PlanningActionOut(APIModel):
    id: str
    action_id: str
    project_id: str
    action_type: str
    target_ref: Dict[str, Any]
    payload: Dict[str, Any]
    validation_status: str
    rejection_reason: Optional[str] = None
    applied_at: Optional[str] = None
    created_at: str


class ActionPreviewOut(APIModel):
    action_id: str
    action_type: str
    summary: str
    created_ids: List[str] = Field(default_factory=list)
    updated_ids: List[str] = Field(default_factory=list)
    reordered_ids: List[str] = Field(default_factory=list)


class PreviewResponse(BaseModel):
    success: bool
    previews: List[ActionPreviewOut] = Field(default_factory=list)
    summary: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# Orchestration Models
# =============================================================================

RunStatusValue = Literal["queued", "running", "blocked", "failed", "completed", "cancelled"]
CheckTypeValue = Literal["dependency", "security", "policy", "lint", "unit", "integration", "e2e"]


class RunCreate(BaseModel):
    scope: Literal["workflow", "card"]
    workflow_id: Optional[str] = None
    card_id: Optional[str] = None
    trigger_type: Literal["card", "workflow", "manual"] = "manual"
    initiated_by: str = "user"
    run_input_snapshot: Dict[str, Any] = Field(default_factory=dict)
    repo_url: Optional[str] = None
    base_branch: Optional[str] = None
    worktree_root: Optional[str] = None


class RunPatch(BaseModel):
    status: RunStatusValue
    actor: str = "user"


class BuildTrigger(BaseModel):
    scope: Literal["workflow", "card"]
    workflow_id: Optional[str] = None
    card_id: Optional[str] = None
    trigger_type: Literal["card", "workflow", "manual"] = "manual"
    initiated_by: str = "user"

    @model_validator(mode="after")
    def _target_for_scope(self) -> "BuildTrigger":
        if self.scope == "workflow" and not self.workflow_id:
            raise ValueError("workflow_id required when scope=workflow")
        if self.scope == "card" and not self.card_id:
            raise ValueError("card_id required when scope=card")
        return self


class BuildOut(BaseModel):
    run_id: str
    assignment_ids: List[str]
    skipped_card_ids: List[str]


class RunOut(APIModel):
    id: str
    project_id: str
    scope: str
    workflow_id: Optional[str] = None
    card_id: Optional[str] = None
    trigger_type: str
    initiated_by: str
    repo_url: Optional[str] = None
    base_branch: str
    status: str
    run_input_snapshot: Dict[str, Any]
    system_policy_snapshot: Dict[str, Any]
    worktree_root: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    created_at: str
    updated_at: str


class AssignmentCreate(BaseModel):
    card_id: str
    feature_branch: str = Field(min_length=1)
    allowed_paths: List[str]
    agent_role: str = "coder"
    agent_profile: str = "default"
    forbidden_paths: Optional[List[str]] = None
    assignment_input_snapshot: Dict[str, Any] = Field(default_factory=dict)
    worktree_path: Optional[str] = None


class AssignmentOut(APIModel):
    id: str
    run_id: str
    card_id: str
    agent_role: str
    agent_profile: str
    feature_branch: str
    worktree_path: Optional[str] = None
    allowed_paths: List[str]
    forbidden_paths: List[str]
    assignment_input_snapshot: Dict[str, Any]
    status: str
    created_at: str
    updated_at: str


class DispatchRequest(BaseModel):
    actor: str = "user"


class DispatchOut(BaseModel):
    success: bool = True
    execution_id: Optional[str] = None
    agent_execution_id: Optional[str] = None


class CheckCreate(BaseModel):
    check_type: CheckTypeValue
    status: Literal["passed", "failed", "skipped"]
    output: Optional[str] = None


class CheckOut(APIModel):
    id: str
    run_id: str
    check_type: str
    status: str
    output: Optional[str] = None
    executed_at: str


class ApprovalCreate(BaseModel):
    run_id: str
    approval_type: Literal["create_pr", "merge_pr"]
    requested_by: str = "user"


class ApprovalPatch(BaseModel):
    status: Literal["approved", "rejected"]
    resolved_by: str = Field(min_length=1)
    notes: Optional[str] = None


class ApprovalOut(APIModel):
    id: str
    run_id: str
    approval_type: str
    status: str
    requested_by: str
    requested_at: str
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None
    notes: Optional[str] = None


class PullRequestCreate(BaseModel):
    run_id: str
    head_branch: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = ""
    base_branch: Optional[str] = None
    actor: str = "user"


class PullRequestPatch(BaseModel):
    status: Literal["not_created", "draft_open", "open", "merged", "closed"]
    pr_url: Optional[str] = None
    actor: str = "user"


class PullRequestOut(APIModel):
    id: str
    run_id: str
    base_branch: str
    head_branch: str
    title: str
    description: str
    status: str
    pr_url: Optional[str] = None
    created_at: str
    updated_at: str


class ResumeRequest(BaseModel):
    card_id: str
    actor: str = "user"


class EventOut(APIModel):
    id: str
    project_id: str
    run_id: Optional[str] = None
    event_type: str
    actor: str
    payload: Dict[str, Any]
    created_at: str


# =============================================================================
# Repository Models
# =============================================================================

class ChangedFileOut(APIModel):
    path: str
    status: str


class ChangedFilesOut(BaseModel):
    base_branch: str
    feature_branch: str
    files: List[ChangedFileOut] = Field(default_factory=list)


class FileNodeOut(APIModel):
    name: str
    type: str
    path: str
    status: Optional[str] = None
    children: Optional[List["FileNodeOut"]] = None


class PushOut(BaseModel):
    success: bool = True
    branch: str
