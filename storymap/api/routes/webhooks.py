from fastapi import APIRouter, Depends

from storymap.api.dependencies import get_db, get_service_context
from storymap.db.database import Database
from storymap.errors import EntityNotFoundError
from storymap.services.base import ServiceContext
from storymap.services.webhooks import AgentWebhookEvent, WebhookService

router = APIRouter()


@router.post("/projects/{project_id}/orchestration/webhooks/agent", status_code=202)
def agent_webhook(
    project_id: str,
    event: AgentWebhookEvent,
    db: Database = Depends(get_db),
    ctx: ServiceContext = Depends(get_service_context),
):
    """
    Execution callback from the coding agent.

    Accepts execution_started, commit_created, execution_completed,
    execution_failed and execution_blocked events for one assignment.
    """
    try:
        run = db.get_run(db.get_assignment(event.assignment_id).run_id)
    except KeyError:
        raise EntityNotFoundError("Assignment not found")
    if run.project_id != project_id:
        raise EntityNotFoundError("Assignment not found")

    result = WebhookService(ctx, db).process(event)
    if not result.success:
        raise EntityNotFoundError(result.error or "Assignment not found")
    return {"success": True, "event_type": event.event_type}
