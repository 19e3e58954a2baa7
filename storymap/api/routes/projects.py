from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from storymap.api import schemas
from storymap.api.dependencies import get_db, get_service_context
from storymap.db.database import Database
from storymap.errors import EntityNotFoundError
from storymap.services.base import ServiceContext
from storymap.services.events import EventLogger
from storymap.services.runs import RunService
from storymap.services.snapshot import SnapshotService

router = APIRouter()


def _require_project(db: Database, project_id: str) -> None:
    try:
        db.get_project(project_id)
    except KeyError:
        raise EntityNotFoundError(f"Project {project_id} not found")


@router.post("/projects", response_model=schemas.ProjectOut, status_code=201)
def create_project(
    project: schemas.ProjectCreate,
    db: Database = Depends(get_db),
):
    """Create a new project."""
    return db.create_project(
        name=project.name,
        repo_url=(project.repo_url or "").strip() or None,
        default_branch=project.default_branch,
        description=project.description,
    )


@router.get("/projects", response_model=List[schemas.ProjectOut])
def list_projects(db: Database = Depends(get_db)):
    return db.list_projects()


@router.get("/projects/{project_id}", response_model=schemas.ProjectOut)
def get_project(project_id: str, db: Database = Depends(get_db)):
    try:
        return db.get_project(project_id)
    except KeyError:
        raise EntityNotFoundError(f"Project {project_id} not found")


@router.patch("/projects/{project_id}", response_model=schemas.ProjectOut)
def update_project(
    project_id: str,
    update: schemas.ProjectUpdate,
    db: Database = Depends(get_db),
):
    """Update project fields; only fields present in the body change."""
    _require_project(db, project_id)
    return db.update_project(project_id, **update.model_dump(exclude_unset=True))


@router.get("/projects/{project_id}/snapshot")
def get_snapshot(
    project_id: str,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
) -> Dict[str, Any]:
    """The project's whole story map as a nested tree."""
    state = SnapshotService(ctx, db).fetch_snapshot(project_id)
    if state is None:
        raise EntityNotFoundError(f"Project {project_id} not found")
    return state.to_dict()


@router.get("/projects/{project_id}/policy", response_model=schemas.PolicyOut)
def get_policy(
    project_id: str,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    _require_project(db, project_id)
    return RunService(ctx, db).get_or_create_policy(project_id)


@router.patch("/projects/{project_id}/policy", response_model=schemas.PolicyOut)
def update_policy(
    project_id: str,
    update: schemas.PolicyUpdate,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    """Change the policy frozen into future runs; existing runs keep their snapshot."""
    _require_project(db, project_id)
    RunService(ctx, db).get_or_create_policy(project_id)
    return db.update_policy_profile(project_id, **update.model_dump(exclude_unset=True, exclude_none=True))


@router.get("/projects/{project_id}/events", response_model=List[schemas.EventOut])
def list_events(
    project_id: str,
    run_id: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    _require_project(db, project_id)
    return EventLogger(ctx, db).list(project_id, run_id, limit=limit)
