from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from storymap.api import schemas
from storymap.api.dependencies import get_db, get_repository, get_service_context
from storymap.db.database import Database
from storymap.errors import EntityNotFoundError
from storymap.models.domain import AssignmentStatus
from storymap.services.base import ServiceContext
from storymap.services.events import EventLogger
from storymap.services.repository import RepositoryManager

router = APIRouter()

_PUSH_STATUS = {"auth_required": 401, "auth_failed": 401}


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, "message": message})


@router.post("/projects/{project_id}/cards/{card_id}/push", response_model=schemas.PushOut)
def push_card_branch(
    project_id: str,
    card_id: str,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
    repository: RepositoryManager = Depends(get_repository),
):
    """Push the feature branch of the card's latest completed build to the project repository."""
    if db.get_card_project_id(card_id) != project_id:
        raise EntityNotFoundError("Card not found")
    project = db.get_project(project_id)
    if not project.repo_url:
        return _error(400, "validation_failed", "Connect a repository in project settings to push.")

    for run in db.list_runs(project_id, limit=20):
        completed = [
            a for a in db.list_assignments(run.id, card_id)
            if a.status == AssignmentStatus.COMPLETED
        ]
        if not completed:
            continue
        branch = completed[-1].feature_branch
        result = repository.push_branch(project_id, branch, project.repo_url)
        if not result.success:
            status_code = _PUSH_STATUS.get(result.error_code or "", 502)
            code = "unauthorized" if status_code == 401 else "push_failed"
            return _error(status_code, code, result.error or "Push failed")
        EventLogger(ctx, db).log(project_id, "branch_pushed", actor="user", run_id=run.id, payload={"branch": branch})
        return schemas.PushOut(branch=branch)

    return _error(
        409,
        "conflict",
        "No completed build for this card. Run a build and wait for it to complete, then push.",
    )
