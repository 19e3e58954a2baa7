from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from storymap.api import schemas
from storymap.api.dependencies import get_db, get_execution_client, get_repository, get_service_context
from storymap.db.database import Database
from storymap.errors import ActionRejectedError, ConflictError, EntityNotFoundError, ValidationError
from storymap.models.domain import CardAssignment, OrchestrationRun
from storymap.orchestration.execution_client import ExecutionClient
from storymap.services.approvals import ApprovalService
from storymap.services.assignments import AssignmentService
from storymap.services.base import ServiceContext
from storymap.services.repository import RepositoryManager
from storymap.services.runs import RunService

router = APIRouter(prefix="/projects/{project_id}/orchestration")


def _failed(error: Optional[str], validation_errors: List[str]) -> ValidationError:
    details = {"validation_errors": list(validation_errors)} if validation_errors else None
    return ValidationError(error or "; ".join(validation_errors) or "Request failed", details=details)


def _run_or_404(runs: RunService, project_id: str, run_id: str) -> OrchestrationRun:
    try:
        return runs.get_run(project_id, run_id)
    except KeyError:
        raise EntityNotFoundError("Orchestration run not found")


def _assignment_or_404(
    service: AssignmentService,
    project_id: str,
    run_id: str,
    assignment_id: str,
) -> CardAssignment:
    try:
        return service.get_assignment(project_id, run_id, assignment_id)
    except KeyError:
        raise EntityNotFoundError("Assignment not found")


# =============================================================================
# Runs
# =============================================================================

@router.post("/runs", response_model=schemas.RunOut, status_code=201)
def create_run(
    project_id: str,
    request: schemas.RunCreate,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    result = RunService(ctx, db).create_run(
        project_id=project_id,
        scope=request.scope,
        trigger_type=request.trigger_type,
        initiated_by=request.initiated_by,
        run_input_snapshot=request.run_input_snapshot,
        workflow_id=request.workflow_id,
        card_id=request.card_id,
        repo_url=request.repo_url,
        base_branch=request.base_branch,
        worktree_root=request.worktree_root,
    )
    if not result.success:
        if result.error and result.error.startswith("Project "):
            raise EntityNotFoundError(result.error)
        raise _failed(result.error, result.validation_errors)
    return result.run


@router.get("/runs", response_model=List[schemas.RunOut])
def list_runs(
    project_id: str,
    scope: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    return RunService(ctx, db).list_runs(project_id, scope=scope, status=status, limit=limit)


@router.get("/runs/{run_id}", response_model=schemas.RunOut)
def get_run(
    project_id: str,
    run_id: str,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    return _run_or_404(RunService(ctx, db), project_id, run_id)


@router.patch("/runs/{run_id}", response_model=schemas.RunOut)
def update_run_status(
    project_id: str,
    run_id: str,
    request: schemas.RunPatch,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    """Move a run through its state machine; an illegal transition is a 400."""
    runs = RunService(ctx, db)
    _run_or_404(runs, project_id, run_id)
    return runs.transition_run(run_id, request.status, actor=request.actor)


# =============================================================================
# Assignments
# =============================================================================

@router.post("/runs/{run_id}/assignments", response_model=schemas.AssignmentOut, status_code=201)
def create_assignment(
    project_id: str,
    run_id: str,
    request: schemas.AssignmentCreate,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
    client: ExecutionClient = Depends(get_execution_client),
):
    result = AssignmentService(ctx, db, client).create_assignment(
        project_id=project_id,
        run_id=run_id,
        card_id=request.card_id,
        agent_role=request.agent_role,
        agent_profile=request.agent_profile,
        feature_branch=request.feature_branch,
        allowed_paths=request.allowed_paths,
        forbidden_paths=request.forbidden_paths,
        assignment_input_snapshot=request.assignment_input_snapshot,
        worktree_path=request.worktree_path,
    )
    if not result.success:
        if result.error == "Orchestration run not found":
            raise EntityNotFoundError(result.error)
        raise _failed(result.error, result.validation_errors)
    return result.assignment


@router.get("/runs/{run_id}/assignments", response_model=List[schemas.AssignmentOut])
def list_assignments(
    project_id: str,
    run_id: str,
    card_id: Optional[str] = Query(default=None),
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
    client: ExecutionClient = Depends(get_execution_client),
):
    _run_or_404(RunService(ctx, db), project_id, run_id)
    return AssignmentService(ctx, db, client).list_assignments(run_id, card_id)


@router.post(
    "/runs/{run_id}/assignments/{assignment_id}/dispatch",
    response_model=schemas.DispatchOut,
    status_code=202,
)
def dispatch_assignment(
    project_id: str,
    run_id: str,
    assignment_id: str,
    request: Optional[schemas.DispatchRequest] = None,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
    client: ExecutionClient = Depends(get_execution_client),
    repository: RepositoryManager = Depends(get_repository),
):
    """Hand a queued assignment to the coding agent."""
    service = AssignmentService(ctx, db, client, repository=repository)
    _assignment_or_404(service, project_id, run_id, assignment_id)
    outcome = service.dispatch_assignment(assignment_id, actor=(request.actor if request else "user"))
    if not outcome.success:
        raise ActionRejectedError(outcome.error or "Dispatch failed")
    return schemas.DispatchOut(execution_id=outcome.execution_id, agent_execution_id=outcome.agent_execution_id)


@router.get(
    "/runs/{run_id}/assignments/{assignment_id}/files",
    response_model=schemas.ChangedFilesOut,
)
def list_changed_files(
    project_id: str,
    run_id: str,
    assignment_id: str,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
    client: ExecutionClient = Depends(get_execution_client),
    repository: RepositoryManager = Depends(get_repository),
):
    """Files the assignment's feature branch changed relative to the run's base branch."""
    run = _run_or_404(RunService(ctx, db), project_id, run_id)
    assignment = _assignment_or_404(AssignmentService(ctx, db, client), project_id, run_id, assignment_id)
    root = _worktree_root(run, assignment, repository)
    result = repository.get_changed_files(root, run.base_branch, assignment.feature_branch)
    if not result.success:
        raise ConflictError(result.error or "Could not read changed files")
    return schemas.ChangedFilesOut(
        base_branch=run.base_branch,
        feature_branch=assignment.feature_branch,
        files=[schemas.ChangedFileOut.model_validate(f) for f in result.files],
    )


@router.get("/runs/{run_id}/assignments/{assignment_id}/files/diff")
def get_file_diff(
    project_id: str,
    run_id: str,
    assignment_id: str,
    path: str = Query(..., min_length=1),
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
    client: ExecutionClient = Depends(get_execution_client),
    repository: RepositoryManager = Depends(get_repository),
):
    run = _run_or_404(RunService(ctx, db), project_id, run_id)
    assignment = _assignment_or_404(AssignmentService(ctx, db, client), project_id, run_id, assignment_id)
    result = repository.get_file_diff(
        _worktree_root(run, assignment, repository), run.base_branch, assignment.feature_branch, path
    )
    if not result.success:
        raise EntityNotFoundError(result.error or "Diff not available")
    return {"path": path, "diff": result.content}


@router.get("/runs/{run_id}/assignments/{assignment_id}/files/content")
def get_file_content(
    project_id: str,
    run_id: str,
    assignment_id: str,
    path: str = Query(..., min_length=1),
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
    client: ExecutionClient = Depends(get_execution_client),
    repository: RepositoryManager = Depends(get_repository),
):
    run = _run_or_404(RunService(ctx, db), project_id, run_id)
    assignment = _assignment_or_404(AssignmentService(ctx, db, client), project_id, run_id, assignment_id)
    result = repository.get_file_content(_worktree_root(run, assignment, repository), assignment.feature_branch, path)
    if not result.success:
        raise EntityNotFoundError(f"File {path} not found on {assignment.feature_branch}")
    return {"path": path, "branch": assignment.feature_branch, "content": result.content}


@router.get("/runs/{run_id}/assignments/{assignment_id}/files/tree", response_model=List[schemas.FileNodeOut])
def get_file_tree(
    project_id: str,
    run_id: str,
    assignment_id: str,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
    client: ExecutionClient = Depends(get_execution_client),
    repository: RepositoryManager = Depends(get_repository),
):
    """Feature branch file tree, nodes annotated with their diff status."""
    run = _run_or_404(RunService(ctx, db), project_id, run_id)
    assignment = _assignment_or_404(AssignmentService(ctx, db, client), project_id, run_id, assignment_id)
    result = repository.get_repo_file_tree(
        _worktree_root(run, assignment, repository), assignment.feature_branch, run.base_branch
    )
    if not result.success:
        raise ConflictError(result.error or "Could not read file tree")
    return [schemas.FileNodeOut.model_validate(node) for node in result.tree]


def _worktree_root(run: OrchestrationRun, assignment: CardAssignment, repository: RepositoryManager) -> Path:
    for candidate in (assignment.worktree_path, run.worktree_root):
        if candidate and Path(candidate).is_dir():
            return Path(candidate)
    clone = repository.get_clone_path(run.project_id)
    if (clone / ".git").exists():
        return clone
    raise EntityNotFoundError("No worktree for this assignment")


# =============================================================================
# Checks
# =============================================================================

@router.post("/runs/{run_id}/checks", response_model=schemas.CheckOut, status_code=201)
def record_check(
    project_id: str,
    run_id: str,
    request: schemas.CheckCreate,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    runs = RunService(ctx, db)
    _run_or_404(runs, project_id, run_id)
    return runs.record_check(run_id, request.check_type, request.status, output=request.output)


@router.get("/runs/{run_id}/checks", response_model=List[schemas.CheckOut])
def list_checks(
    project_id: str,
    run_id: str,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    runs = RunService(ctx, db)
    _run_or_404(runs, project_id, run_id)
    return runs.list_checks(run_id)


# =============================================================================
# Approvals
# =============================================================================

@router.post("/approvals", response_model=schemas.ApprovalOut, status_code=201)
def request_approval(
    project_id: str,
    request: schemas.ApprovalCreate,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    """Request an approval; refused while required checks are missing or not passed."""
    result = ApprovalService(ctx, db).request_approval(
        project_id, request.run_id, request.approval_type, request.requested_by
    )
    if not result.success:
        if result.error == "Orchestration run not found":
            raise EntityNotFoundError(result.error)
        raise _failed(result.error, result.validation_errors)
    return result.approval


@router.get("/approvals", response_model=List[schemas.ApprovalOut])
def list_approvals(
    project_id: str,
    run_id: Optional[str] = Query(default=None),
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    return ApprovalService(ctx, db).list_approvals(project_id, run_id)


@router.patch("/approvals/{approval_id}", response_model=schemas.ApprovalOut)
def resolve_approval(
    project_id: str,
    approval_id: str,
    request: schemas.ApprovalPatch,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    result = ApprovalService(ctx, db).resolve_approval(
        project_id,
        approval_id,
        status=request.status,
        resolved_by=request.resolved_by,
        notes=request.notes,
    )
    if not result.success:
        if result.error == "Approval request not found":
            raise EntityNotFoundError(result.error)
        raise ConflictError(result.error or "Approval request cannot be resolved")
    return result.approval


# =============================================================================
# Pull request candidates
# =============================================================================

@router.post("/pull-requests", response_model=schemas.PullRequestOut, status_code=201)
def create_pull_request(
    project_id: str,
    request: schemas.PullRequestCreate,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    result = ApprovalService(ctx, db).create_pull_request_candidate(
        project_id,
        request.run_id,
        head_branch=request.head_branch,
        title=request.title,
        description=request.description,
        base_branch=request.base_branch,
        actor=request.actor,
    )
    if not result.success:
        if result.error == "Orchestration run not found":
            raise EntityNotFoundError(result.error)
        raise _failed(result.error, result.validation_errors)
    return result.candidate


@router.get("/pull-requests", response_model=List[schemas.PullRequestOut])
def list_pull_requests(
    project_id: str,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    return ApprovalService(ctx, db).list_pull_request_candidates(project_id)


@router.patch("/pull-requests/{pr_id}", response_model=schemas.PullRequestOut)
def update_pull_request(
    project_id: str,
    pr_id: str,
    request: schemas.PullRequestPatch,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    result = ApprovalService(ctx, db).update_pull_request_candidate(
        project_id, pr_id, status=request.status, pr_url=request.pr_url, actor=request.actor
    )
    if not result.success:
        if result.error == "Pull request candidate not found":
            raise EntityNotFoundError(result.error)
        raise _failed(result.error, result.validation_errors)
    return result.candidate


# =============================================================================
# Builds
# =============================================================================

@router.post("/builds", response_model=schemas.BuildOut, status_code=202)
def trigger_build(
    project_id: str,
    request: schemas.BuildTrigger,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
    client: ExecutionClient = Depends(get_execution_client),
    repository: RepositoryManager = Depends(get_repository),
):
    """Run, assignments and dispatch for every card in scope, in one call."""
    service = AssignmentService(ctx, db, client, repository=repository)
    result = service.trigger_build(
        project_id,
        request.scope,
        workflow_id=request.workflow_id,
        card_id=request.card_id,
        trigger_type=request.trigger_type,
        initiated_by=request.initiated_by,
    )
    if not result.success:
        if result.error and result.error.endswith("not found"):
            raise EntityNotFoundError(result.error)
        if result.error == "Build in progress":
            raise ConflictError(result.error, metadata={"validation_errors": result.validation_errors})
        raise _failed(result.error, result.validation_errors)
    return schemas.BuildOut(
        run_id=result.run_id,
        assignment_ids=result.assignment_ids,
        skipped_card_ids=result.skipped_card_ids,
    )


# =============================================================================
# Resume
# =============================================================================

@router.post("/resume-blocked", status_code=202)
def resume_blocked(
    project_id: str,
    request: schemas.ResumeRequest,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
    client: ExecutionClient = Depends(get_execution_client),
    repository: RepositoryManager = Depends(get_repository),
):
    """Re-dispatch the card's blocked assignment in the project's latest active run."""
    service = AssignmentService(ctx, db, client, repository=repository)
    result = service.resume_blocked_assignment(project_id, request.card_id, actor=request.actor)
    if not result.success:
        return JSONResponse(status_code=400, content=result.to_dict())
    return result.to_dict()
