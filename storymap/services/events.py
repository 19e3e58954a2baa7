"""
Storymap Event Log

Writes orchestration and planning audit events to the event_log table.
Event writes are best-effort: a failed write is logged and never fails the
operation that produced the event.
"""

import dataclasses
from typing import Any, Dict, List, Optional

from storymap.db.database import Database
from storymap.models.domain import EventLogEntry
from storymap.services.base import Service, ServiceContext

EVENT_TYPES = (
    "planning_action_applied",
    "run_created",
    "run_status_changed",
    "assignment_created",
    "agent_run_started",
    "execution_started",
    "commit_created",
    "execution_completed",
    "execution_failed",
    "execution_blocked",
    "checks_executed",
    "approval_requested",
    "approval_resolved",
    "pr_created",
    "pr_updated",
    "branch_pushed",
    "run_recovered",
)


def _json_safe(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {k: _json_safe(v) for k, v in dataclasses.asdict(value).items()}
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    return value


class EventLogger(Service):
    def __init__(self, context: ServiceContext, db: Database) -> None:
        super().__init__(context)
        self.db = db

    def log(
        self,
        project_id: str,
        event_type: str,
        *,
        actor: str = "system",
        payload: Optional[Dict[str, Any]] = None,
        run_id: Optional[str] = None,
    ) -> Optional[EventLogEntry]:
        try:
            return self.db.append_event(
                project_id,
                event_type,
                actor,
                payload=_json_safe(payload or {}),
                run_id=run_id,
            )
        except Exception:
            self.logger.exception(
                "event_log_write_failed",
                extra=self.log_extra(project_id=project_id, run_id=run_id, event_type=event_type),
            )
            return None

    def list(self, project_id: str, run_id: Optional[str] = None, *, limit: int = 100) -> List[EventLogEntry]:
        return self.db.list_events(project_id, run_id, limit=limit)
