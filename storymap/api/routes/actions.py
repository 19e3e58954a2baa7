from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from storymap.actions.preview import preview_action_batch, summarize_previews
from storymap.actions.validation import parse_action_batch
from storymap.api import schemas
from storymap.api.dependencies import get_db, get_service_context
from storymap.db.database import Database
from storymap.errors import EntityNotFoundError, ValidationError
from storymap.services.actions import ActionService
from storymap.services.base import ServiceContext
from storymap.services.snapshot import SnapshotService

router = APIRouter()


@router.get("/projects/{project_id}/actions", response_model=List[schemas.PlanningActionOut])
def list_actions(
    project_id: str,
    limit: int = Query(default=200, ge=1, le=1000),
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    """Audit trail of submitted planning actions, newest first."""
    try:
        return ActionService(ctx, db).list_actions(project_id, limit=limit)
    except KeyError:
        raise EntityNotFoundError(f"Project {project_id} not found")


@router.post("/projects/{project_id}/actions", status_code=201)
def submit_actions(
    project_id: str,
    batch: schemas.ActionBatchIn,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
) -> Dict[str, Any]:
    """
    Validate and apply a batch of planning actions in order.

    A malformed action rejects the whole batch with 400; otherwise each
    action is accepted or rejected on its own.
    """
    result = ActionService(ctx, db).apply_batch(project_id, batch.actions)
    return result.to_dict()


@router.post("/projects/{project_id}/actions/preview")
def preview_actions(
    project_id: str,
    batch: schemas.ActionBatchIn,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    """Dry-run a batch against the current map without writing anything."""
    snapshot = SnapshotService(ctx, db).fetch_snapshot(project_id)
    if snapshot is None:
        raise EntityNotFoundError(f"Project {project_id} not found")

    try:
        parse_action_batch(batch.actions)
    except ValidationError as exc:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": str(exc), "details": exc.details, "previews": []},
        )

    previews = preview_action_batch(batch.actions, snapshot)
    if previews is None:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "One or more actions would be rejected", "previews": []},
        )
    return schemas.PreviewResponse(
        success=True,
        previews=[schemas.ActionPreviewOut.model_validate(p) for p in previews],
        summary=summarize_previews(previews),
    )
