"""
Storymap Run Service

Creates orchestration runs with frozen policy and input snapshots, applies the
run state machine, records checks, and recovers runs left running by a
crashed or disconnected agent.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from storymap.db.database import Database
from storymap.models.domain import (
    CardUpdate,
    OrchestrationRun,
    PolicyProfile,
    RunCheck,
    RunScope,
    RunStatus,
    RunUpdate,
    utc_now,
)
from storymap.orchestration.policy import validate_run_input, validate_scope
from storymap.orchestration.state_machine import ENDING_STATES, assert_transition
from storymap.services.base import Service, ServiceContext
from storymap.services.events import EventLogger


@dataclass
class RunResult:
    success: bool
    run: Optional[OrchestrationRun] = None
    error: Optional[str] = None
    validation_errors: List[str] = field(default_factory=list)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class RunService(Service):
    """
    Orchestration run lifecycle.

    Example:
        runs = RunService(context, db)
        result = runs.create_run(project_id=pid, scope="card", card_id=cid,
                                 trigger_type="card", initiated_by="user",
                                 run_input_snapshot={"card_id": cid})
        runs.transition_run(result.run.id, "running")
    """

    def __init__(self, context: ServiceContext, db: Database, *, events: Optional[EventLogger] = None) -> None:
        super().__init__(context)
        self.db = db
        self.events = events or EventLogger(context, db)

    # Policy ---------------------------------------------------------------

    def get_or_create_policy(self, project_id: str) -> PolicyProfile:
        """Return the project's policy profile, provisioning the default one on first use."""
        policy = self.db.get_policy_profile(project_id)
        if policy is None:
            policy = self.db.create_policy_profile(project_id, list(self.config.default_required_checks))
            self.logger.info(
                "policy_profile_provisioned",
                extra=self.log_extra(project_id=project_id, required_checks=policy.required_checks),
            )
        return policy

    # Runs -----------------------------------------------------------------

    def create_run(
        self,
        *,
        project_id: str,
        scope: str,
        trigger_type: str,
        initiated_by: str,
        run_input_snapshot: Dict[str, Any],
        workflow_id: Optional[str] = None,
        card_id: Optional[str] = None,
        repo_url: Optional[str] = None,
        base_branch: Optional[str] = None,
        worktree_root: Optional[str] = None,
    ) -> RunResult:
        try:
            project = self.db.get_project(project_id)
        except KeyError:
            return RunResult(success=False, error=f"Project {project_id} not found")

        if scope == RunScope.CARD:
            if not card_id or self.db.get_card_project_id(card_id) != project_id:
                return RunResult(success=False, error=f"Card {card_id} not found in project")
        elif scope == RunScope.WORKFLOW:
            try:
                workflow = self.db.get_workflow(workflow_id) if workflow_id else None
            except KeyError:
                workflow = None
            if workflow is None or workflow.project_id != project_id:
                return RunResult(success=False, error=f"Workflow {workflow_id} not found in project")
        else:
            return RunResult(success=False, error=f"Unknown run scope: {scope}")

        policy = self.get_or_create_policy(project_id)
        errors = validate_run_input(run_input_snapshot, policy.forbidden_paths)
        errors += validate_scope(
            scope,
            policy.required_checks,
            strict_workflow_checks=self.config.strict_workflow_checks,
        )
        if errors:
            self.logger.info(
                "run_rejected",
                extra=self.log_extra(project_id=project_id, scope=scope, errors=errors),
            )
            return RunResult(success=False, error="Run validation failed", validation_errors=errors)

        run = self.db.create_run(
            project_id=project_id,
            scope=scope,
            trigger_type=trigger_type,
            initiated_by=initiated_by,
            base_branch=base_branch or project.default_branch,
            run_input_snapshot=dict(run_input_snapshot),
            system_policy_snapshot=policy.snapshot(),
            workflow_id=workflow_id if scope == RunScope.WORKFLOW else None,
            card_id=card_id if scope == RunScope.CARD else None,
            repo_url=repo_url or project.repo_url,
            worktree_root=worktree_root,
        )
        if run.workflow_id:
            self.db.set_workflow_build_state(run.workflow_id, RunStatus.QUEUED)
        if run.card_id:
            self.db.update_card(run.card_id, CardUpdate(build_state=RunStatus.QUEUED, last_build_error=None))

        self.logger.info(
            "run_created",
            extra=self.log_extra(project_id=project_id, run_id=run.id, scope=scope),
        )
        self.events.log(
            project_id,
            "run_created",
            actor=initiated_by,
            run_id=run.id,
            payload={"scope": scope, "workflow_id": run.workflow_id, "card_id": run.card_id},
        )
        return RunResult(success=True, run=run)

    def get_run(self, project_id: str, run_id: str) -> OrchestrationRun:
        """Raises KeyError when the run does not exist in this project."""
        run = self.db.get_run(run_id)
        if run.project_id != project_id:
            raise KeyError(f"Run {run_id} not found")
        return run

    def list_runs(
        self,
        project_id: str,
        *,
        scope: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[OrchestrationRun]:
        return self.db.list_runs(project_id, scope=scope, statuses=[status] if status else None, limit=limit)

    def transition_run(self, run_id: str, status: str, *, actor: str = "system") -> OrchestrationRun:
        """
        Move a run to ``status``.

        Raises:
            KeyError: unknown run.
            InvalidTransitionError: the pair is not in the transition table;
                the run is left unchanged.
            ConflictError: the run changed status between the check and the
                write; the other writer's status is kept.
        """
        run = self.db.get_run(run_id)
        assert_transition(run.status, status)

        if run.status == RunStatus.FAILED and status == RunStatus.QUEUED:
            updated = self.db.requeue_run(run_id)
        else:
            update = RunUpdate(status=status)
            if status == RunStatus.RUNNING and not run.started_at:
                update.started_at = utc_now()
            if status in ENDING_STATES:
                update.ended_at = utc_now()
            updated = self.db.update_run(run_id, update, expected_status=run.status)

        if updated.workflow_id:
            build_state = None if status == RunStatus.CANCELLED else status
            self.db.set_workflow_build_state(updated.workflow_id, build_state)

        self.logger.info(
            "run_status_changed",
            extra=self.log_extra(
                project_id=run.project_id,
                run_id=run_id,
                from_status=run.status,
                to_status=status,
            ),
        )
        self.events.log(
            run.project_id,
            "run_status_changed",
            actor=actor,
            run_id=run_id,
            payload={"from": run.status, "to": status},
        )
        return updated

    # Checks ---------------------------------------------------------------

    def record_check(
        self,
        run_id: str,
        check_type: str,
        status: str,
        *,
        output: Optional[str] = None,
        actor: str = "system",
    ) -> RunCheck:
        run = self.db.get_run(run_id)
        check = self.db.create_run_check(run_id, check_type, status, output)
        self.events.log(
            run.project_id,
            "checks_executed",
            actor=actor,
            run_id=run_id,
            payload={"check_type": check_type, "status": status},
        )
        return check

    def list_checks(self, run_id: str) -> List[RunCheck]:
        return self.db.list_run_checks(run_id)

    # Recovery -------------------------------------------------------------

    def recover_stale_runs(self, stale_minutes: Optional[int] = None) -> int:
        """
        Fail running runs whose start is older than ``stale_minutes``.

        0 disables recovery. Returns the number of runs recovered.
        """
        minutes = self.config.stale_run_minutes if stale_minutes is None else stale_minutes
        if minutes <= 0:
            return 0

        cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
        error = f"Build timed out or agent stopped (recovered after {minutes}+ min)"
        recovered = 0
        for run in self.db.list_runs_by_status([RunStatus.RUNNING]):
            started = _parse_ts(run.started_at) or _parse_ts(run.created_at)
            if started is None or started > cutoff:
                continue
            self.db.fail_run(run.id, error)
            if run.workflow_id:
                self.db.set_workflow_build_state(run.workflow_id, RunStatus.FAILED)
            recovered += 1
            self.logger.warning(
                "run_recovered",
                extra=self.log_extra(project_id=run.project_id, run_id=run.id, stale_minutes=minutes),
            )
            self.events.log(run.project_id, "run_recovered", run_id=run.id, payload={"error": error})
        return recovered
