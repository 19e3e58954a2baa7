"""
Storymap Action Service

Applies planning action batches: whole-batch shape validation, then per-action
reference/business-rule checks and one storage transaction per accepted
action. Every processed action is written to the planning_actions audit table.
"""

import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence

from storymap.actions.effects import REJECTED, ActionOutcome, ResolutionTable, commit_to_state, plan_action
from storymap.actions.validation import ParsedAction, parse_action_batch
from storymap.db.database import Database
from storymap.errors import EntityNotFoundError
from storymap.models.domain import PlanningActionRecord, new_id, utc_now
from storymap.models.state import ProjectState
from storymap.services.base import Service, ServiceContext
from storymap.services.events import EventLogger


@dataclass
class ActionResult:
    action_id: str
    action_type: str
    validation_status: str
    reason: Optional[str] = None
    created_ids: List[str] = field(default_factory=list)
    updated_ids: List[str] = field(default_factory=list)
    reordered_ids: List[str] = field(default_factory=list)
    applied_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["reason"] is None:
            del data["reason"]
        if data["applied_at"] is None:
            del data["applied_at"]
        return data


@dataclass
class BatchResult:
    applied: int
    results: List[ActionResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"applied": self.applied, "results": [r.to_dict() for r in self.results]}


class ProjectLocks:
    """One lock per project id; serializes action batches within this process."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, project_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(project_id, threading.Lock())
        with lock:
            yield


_default_locks = ProjectLocks()


class ActionService(Service):
    """
    Example:
        service = ActionService(context, db)
        result = service.apply_batch(project_id, [{"id": "a1", "action_type": "createWorkflow", ...}])
    """

    def __init__(
        self,
        context: ServiceContext,
        db: Database,
        *,
        events: Optional[EventLogger] = None,
        locks: Optional[ProjectLocks] = None,
    ) -> None:
        super().__init__(context)
        self.db = db
        self.events = events or EventLogger(context, db)
        self.locks = locks or _default_locks

    def apply_batch(self, project_id: str, raw_actions: Sequence[Any], *, actor: str = "user") -> BatchResult:
        """
        Validate and apply a batch in submission order.

        Raises:
            ValidationError: a malformed action; nothing applied or recorded.
            EntityNotFoundError: the project does not exist.
        """
        parsed = parse_action_batch(raw_actions)

        with self.locks.hold(project_id):
            bundle = self.db.read_project_bundle(project_id)
            if bundle is None:
                raise EntityNotFoundError(f"Project {project_id} not found")
            state = ProjectState.from_bundle(bundle)
            resolutions = ResolutionTable()
            results = [self._apply_one(state, action, resolutions) for action in parsed]

        applied = sum(1 for r in results if r.applied_at is not None)
        self.logger.info(
            "planning_batch_processed",
            extra=self.log_extra(project_id=project_id, applied=applied, rejected=len(results) - applied),
        )
        if applied:
            self.events.log(
                project_id,
                "planning_action_applied",
                actor=actor,
                payload={
                    "action_ids": [r.action_id for r in results if r.applied_at is not None],
                    "applied": applied,
                    "rejected": len(results) - applied,
                },
            )
        return BatchResult(applied=applied, results=results)

    def _apply_one(self, state: ProjectState, action: ParsedAction, resolutions: ResolutionTable) -> ActionResult:
        outcome = plan_action(state, action, resolutions)
        applied_at: Optional[str] = None
        if outcome.accepted:
            try:
                if outcome.mutations:
                    self.db.apply_mutations(outcome.mutations)
            except Exception:
                self.logger.exception(
                    "planning_action_persist_failed",
                    extra=self.log_extra(
                        project_id=state.project.id,
                        action_id=action.id,
                        action_type=action.action_type,
                    ),
                )
                outcome = ActionOutcome(
                    action_id=action.id,
                    action_type=action.action_type,
                    validation_status=REJECTED,
                    reason="Failed to persist action",
                )
            else:
                commit_to_state(state, outcome, resolutions)
                applied_at = utc_now()
        else:
            self.logger.info(
                "planning_action_rejected",
                extra=self.log_extra(
                    project_id=state.project.id,
                    action_id=action.id,
                    action_type=action.action_type,
                    reason=outcome.reason,
                ),
            )

        self.db.record_planning_action(
            PlanningActionRecord(
                id=new_id(),
                action_id=action.id,
                project_id=state.project.id,
                action_type=action.action_type,
                target_ref=action.raw_target_ref,
                payload=action.raw_payload,
                validation_status=outcome.validation_status,
                created_at=utc_now(),
                rejection_reason=outcome.reason,
                applied_at=applied_at,
            )
        )
        return ActionResult(
            action_id=action.id,
            action_type=action.action_type,
            validation_status=outcome.validation_status,
            reason=outcome.reason,
            created_ids=list(outcome.created_ids),
            updated_ids=list(outcome.updated_ids),
            reordered_ids=list(outcome.reordered_ids),
            applied_at=applied_at,
        )

    def list_actions(self, project_id: str, *, limit: int = 200) -> List[PlanningActionRecord]:
        self.db.get_project(project_id)
        return self.db.list_planning_actions(project_id, limit=limit)
