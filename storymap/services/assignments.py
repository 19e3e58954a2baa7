"""
Storymap Assignment Service

Creates card assignments inside orchestration runs, dispatches them to the
execution client and resumes blocked builds.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from storymap.db.database import Database
from storymap.errors import DispatchError
from storymap.models.domain import (
    AgentRole,
    AssignmentStatus,
    AssignmentUpdate,
    BuildState,
    CardAssignment,
    CardUpdate,
    ExecutionStatus,
    KnowledgeItemType,
    KnowledgeStatus,
    OrchestrationRun,
    PlannedFileStatus,
    RunScope,
    RunStatus,
    utc_now,
)
from storymap.models.state import ProjectState
from storymap.orchestration.execution_client import DispatchResult, ExecutionClient
from storymap.orchestration.policy import forbidden_overlaps
from storymap.orchestration.task_builder import ContextArtifactDetail, DispatchPayload, PlannedFileDetail
from storymap.services.actions import ProjectLocks
from storymap.services.base import Service, ServiceContext
from storymap.services.events import EventLogger
from storymap.services.repository import RepositoryManager
from storymap.services.runs import RunService
from storymap.services.snapshot import SnapshotService


@dataclass
class AssignmentResult:
    success: bool
    assignment: Optional[CardAssignment] = None
    error: Optional[str] = None
    validation_errors: List[str] = field(default_factory=list)


@dataclass
class DispatchOutcome:
    success: bool
    execution_id: Optional[str] = None
    agent_execution_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ResumeResult:
    success: bool
    outcome_type: str
    message: str
    error: Optional[str] = None
    run_id: Optional[str] = None
    assignment_id: Optional[str] = None
    execution_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.success:
            return {"error": self.error, "message": self.message, "outcome_type": self.outcome_type}
        return {
            "success": True,
            "outcome_type": self.outcome_type,
            "message": self.message,
            "run_id": self.run_id,
            "assignment_id": self.assignment_id,
            "execution_id": self.execution_id,
        }


@dataclass
class BuildResult:
    success: bool
    run_id: Optional[str] = None
    assignment_ids: List[str] = field(default_factory=list)
    skipped_card_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None
    validation_errors: List[str] = field(default_factory=list)


_build_locks = ProjectLocks()


def acceptance_criteria_for(state: ProjectState, card_id: str) -> List[str]:
    """Card description followed by its approved or draft requirement texts."""
    card = state.cards[card_id]
    criteria: List[str] = []
    if card.description:
        criteria.append(card.description)
    for item in state.knowledge_of(card_id, KnowledgeItemType.REQUIREMENT):
        if item.status in (KnowledgeStatus.APPROVED, KnowledgeStatus.DRAFT):
            criteria.append(item.text)
    return criteria


class AssignmentService(Service):
    """
    Example:
        service = AssignmentService(context, db, LocalExecutionClient())
        created = service.create_assignment(
            run_id=run.id, card_id=card.id, agent_role="coder", agent_profile="default",
            feature_branch="feat/login", allowed_paths=["src/auth"],
        )
        service.dispatch_assignment(created.assignment.id, actor="user")
    """

    def __init__(
        self,
        context: ServiceContext,
        db: Database,
        client: ExecutionClient,
        *,
        repository: Optional[RepositoryManager] = None,
        events: Optional[EventLogger] = None,
    ) -> None:
        super().__init__(context)
        self.db = db
        self.client = client
        self.repository = repository
        self.events = events or EventLogger(context, db)
        self.runs = RunService(context, db, events=self.events)
        self.snapshots = SnapshotService(context, db)

    # Creation -------------------------------------------------------------

    def create_assignment(
        self,
        *,
        run_id: str,
        card_id: str,
        agent_role: str,
        agent_profile: str,
        feature_branch: str,
        allowed_paths: List[str],
        forbidden_paths: Optional[List[str]] = None,
        assignment_input_snapshot: Optional[Dict[str, Any]] = None,
        worktree_path: Optional[str] = None,
        project_id: Optional[str] = None,
        actor: str = "system",
    ) -> AssignmentResult:
        try:
            run = self.db.get_run(run_id)
        except KeyError:
            return AssignmentResult(success=False, error="Orchestration run not found")
        if project_id is not None and run.project_id != project_id:
            return AssignmentResult(success=False, error="Orchestration run not found")

        project = self.db.get_project(run.project_id)
        errors: List[str] = []
        if feature_branch.strip() == project.default_branch:
            errors.append(f"feature_branch cannot equal project default_branch ({project.default_branch})")
        if not allowed_paths:
            errors.append("allowed_paths must be non-empty")
        if agent_role not in AgentRole.ALL:
            errors.append(f"agent_role must be one of {', '.join(AgentRole.ALL)}")
        if self.db.get_card_project_id(card_id) != run.project_id:
            errors.append(f"Card {card_id} not found in project")
        for forbidden in forbidden_overlaps(allowed_paths, run.forbidden_paths):
            errors.append(f"allowed_paths cannot include forbidden path from policy: {forbidden}")
        if errors:
            return AssignmentResult(success=False, error="Assignment validation failed", validation_errors=errors)

        merged_forbidden = list(forbidden_paths or [])
        merged_forbidden += [p for p in run.forbidden_paths if p not in merged_forbidden]

        assignment = self.db.create_assignment(
            run_id=run_id,
            card_id=card_id,
            agent_role=agent_role,
            agent_profile=agent_profile,
            feature_branch=feature_branch.strip(),
            allowed_paths=list(allowed_paths),
            forbidden_paths=merged_forbidden,
            assignment_input_snapshot=dict(assignment_input_snapshot or {}),
            worktree_path=worktree_path,
        )
        self.logger.info(
            "assignment_created",
            extra=self.log_extra(project_id=run.project_id, run_id=run_id, assignment_id=assignment.id, card_id=card_id),
        )
        self.events.log(
            run.project_id,
            "assignment_created",
            actor=actor,
            run_id=run_id,
            payload={"assignment_id": assignment.id, "card_id": card_id, "feature_branch": assignment.feature_branch},
        )
        return AssignmentResult(success=True, assignment=assignment)

    def get_assignment(self, project_id: str, run_id: str, assignment_id: str) -> CardAssignment:
        """Raises KeyError unless the assignment belongs to this run and project."""
        run = self.runs.get_run(project_id, run_id)
        assignment = self.db.get_assignment(assignment_id)
        if assignment.run_id != run.id:
            raise KeyError(f"Assignment {assignment_id} not found")
        return assignment

    def list_assignments(self, run_id: str, card_id: Optional[str] = None) -> List[CardAssignment]:
        return self.db.list_assignments(run_id, card_id)

    # Dispatch -------------------------------------------------------------

    def build_dispatch_payload(
        self,
        run: OrchestrationRun,
        assignment: CardAssignment,
        state: ProjectState,
    ) -> DispatchPayload:
        card = state.cards[assignment.card_id]
        planned = [
            PlannedFileDetail(
                logical_file_name=pf.logical_file_name,
                action=pf.action,
                artifact_kind=pf.artifact_kind,
                intent_summary=pf.intent_summary,
                contract_notes=pf.contract_notes,
                module_hint=pf.module_hint,
            )
            for pf in state.planned_files_of(card.id)
            if pf.status == PlannedFileStatus.APPROVED
        ]
        artifacts = [
            ContextArtifactDetail(name=a.name, type=a.type, title=a.title, content=a.content)
            for a in (state.context_artifacts.get(aid) for aid in state.artifact_ids_of(card.id))
            if a is not None
        ]
        snapshot = assignment.assignment_input_snapshot or {}
        return DispatchPayload(
            run_id=run.id,
            assignment_id=assignment.id,
            card_id=card.id,
            feature_branch=assignment.feature_branch,
            allowed_paths=list(assignment.allowed_paths),
            assignment_input_snapshot=dict(snapshot),
            worktree_path=assignment.worktree_path,
            forbidden_paths=list(assignment.forbidden_paths),
            memory_context_refs=[str(ref) for ref in snapshot.get("memory_context_refs") or []],
            acceptance_criteria=acceptance_criteria_for(state, card.id),
            card_title=card.title,
            card_description=card.description,
            planned_files_detail=planned,
            context_artifacts=artifacts,
        )

    def _prepare_worktree(
        self,
        run: OrchestrationRun,
        assignment: CardAssignment,
    ) -> Tuple[CardAssignment, Optional[str]]:
        """
        Clone the run's repository and check out the feature branch.

        Skipped when no repository manager is configured, the run has no
        repository or the assignment already names its worktree.
        """
        if self.repository is None or assignment.worktree_path or not run.repo_url:
            return assignment, None
        clone = self.repository.ensure_clone(run.project_id, run.repo_url)
        if not clone.success:
            return assignment, clone.error
        branch = self.repository.create_feature_branch(clone.path, assignment.feature_branch, run.base_branch)
        if not branch.success:
            return assignment, branch.error
        updated = self.db.update_assignment(assignment.id, AssignmentUpdate(worktree_path=str(clone.path)))
        return updated, None

    def dispatch_assignment(self, assignment_id: str, actor: str = "system") -> DispatchOutcome:
        """
        Send a queued assignment to the execution client.

        On client failure the assignment keeps its status and an
        execution_failed event is recorded.
        """
        try:
            assignment = self.db.get_assignment(assignment_id)
        except KeyError:
            return DispatchOutcome(success=False, error="Assignment not found")
        if assignment.status != AssignmentStatus.QUEUED:
            return DispatchOutcome(
                success=False,
                error=f"Assignment is {assignment.status}; only queued assignments can be dispatched",
            )

        run = self.db.get_run(assignment.run_id)
        if run.status not in RunStatus.ACTIVE:
            return DispatchOutcome(success=False, error=f"Orchestration run is {run.status}")

        state = self.snapshots.fetch_snapshot(run.project_id)
        if state is None or assignment.card_id not in state.cards:
            return DispatchOutcome(success=False, error="Card not found")

        extra = self.log_extra(project_id=run.project_id, run_id=run.id, assignment_id=assignment.id)
        assignment, prepare_error = self._prepare_worktree(run, assignment)
        if prepare_error:
            result = DispatchResult(success=False, error=prepare_error)
        else:
            payload = self.build_dispatch_payload(run, assignment, state)
            try:
                result = self.client.dispatch(payload)
            except DispatchError as exc:
                result = DispatchResult(success=False, error=str(exc))
            except Exception as exc:
                self.logger.exception("execution_client_error", extra=extra)
                result = DispatchResult(success=False, error=f"Execution client error: {exc}")

        if not result.success:
            self.logger.warning("assignment_dispatch_failed", extra={**extra, "error": result.error})
            self.events.log(
                run.project_id,
                "execution_failed",
                actor=actor,
                run_id=run.id,
                payload={"assignment_id": assignment.id, "error": result.error, "phase": "dispatch"},
            )
            return DispatchOutcome(success=False, error=result.error or "Dispatch failed")

        now = utc_now()
        execution = self.db.create_agent_execution(
            assignment.id,
            ExecutionStatus.RUNNING,
            execution_id=result.execution_id,
            started_at=now,
        )
        self.db.transition_assignment(
            assignment.id,
            AssignmentStatus.RUNNING,
            card_update=CardUpdate(build_state=BuildState.RUNNING, last_build_error=None),
            expected_status=AssignmentStatus.QUEUED,
        )
        if run.status in (RunStatus.QUEUED, RunStatus.BLOCKED):
            self.runs.transition_run(run.id, RunStatus.RUNNING, actor=actor)

        self.logger.info("assignment_dispatched", extra={**extra, "execution_id": result.execution_id})
        self.events.log(
            run.project_id,
            "agent_run_started",
            actor=actor,
            run_id=run.id,
            payload={
                "assignment_id": assignment.id,
                "execution_id": result.execution_id,
                "agent_execution_id": execution.id,
            },
        )
        return DispatchOutcome(success=True, execution_id=result.execution_id, agent_execution_id=execution.id)

    # Build trigger --------------------------------------------------------

    def trigger_build(
        self,
        project_id: str,
        scope: str,
        *,
        workflow_id: Optional[str] = None,
        card_id: Optional[str] = None,
        trigger_type: str = "manual",
        initiated_by: str = "user",
    ) -> BuildResult:
        """
        Create a run for the cards in scope, one assignment per card, and dispatch each.

        Only one build may be running per project. Cards without approved
        planned files get no assignment and are reported in
        ``skipped_card_ids``; a card whose assignment or dispatch fails does
        not stop the others.
        """
        with _build_locks.hold(project_id):
            if self.db.list_runs(project_id, statuses=[RunStatus.RUNNING], limit=1):
                return BuildResult(
                    success=False,
                    error="Build in progress",
                    validation_errors=["A build is already running for this project. Wait for it to complete."],
                )

            state = self.snapshots.fetch_snapshot(project_id)
            if state is None:
                return BuildResult(success=False, error=f"Project {project_id} not found")

            if scope == RunScope.CARD:
                card_ids = [card_id] if card_id in state.cards else []
            elif scope == RunScope.WORKFLOW and workflow_id in state.workflows:
                card_ids = [card.id for card in state.cards_of_workflow(workflow_id)]
            else:
                card_ids = []
            if not card_ids:
                return BuildResult(success=False, error="No cards in scope", validation_errors=["No cards in scope"])

            snapshot: Dict[str, Any] = {"card_ids": card_ids, "triggered_at": utc_now()}
            if scope == RunScope.WORKFLOW:
                snapshot["workflow_id"] = workflow_id
            else:
                snapshot["card_id"] = card_id
            created = self.runs.create_run(
                project_id=project_id,
                scope=scope,
                workflow_id=workflow_id,
                card_id=card_id,
                trigger_type=trigger_type,
                initiated_by=initiated_by,
                run_input_snapshot=snapshot,
            )
            if not created.success:
                return BuildResult(success=False, error=created.error, validation_errors=created.validation_errors)
            run = created.run

            self.events.log(
                project_id,
                "run_initialized",
                actor=initiated_by,
                run_id=run.id,
                payload={"scope": scope, "card_ids": card_ids},
            )

            result = BuildResult(success=True, run_id=run.id)
            for cid in card_ids:
                approved = [
                    f for f in state.planned_files_of(cid) if f.status == PlannedFileStatus.APPROVED
                ]
                if not approved:
                    result.skipped_card_ids.append(cid)
                    continue
                assigned = self.create_assignment(
                    run_id=run.id,
                    card_id=cid,
                    agent_role="coder",
                    agent_profile="default",
                    feature_branch=f"feat/run-{run.id[:8]}-{cid[:8]}",
                    allowed_paths=[f.logical_file_name for f in approved],
                    assignment_input_snapshot={"card_id": cid, "planned_file_ids": [f.id for f in approved]},
                    actor=initiated_by,
                )
                if not assigned.success:
                    self.logger.warning(
                        "build_assignment_failed",
                        extra=self.log_extra(
                            project_id=project_id,
                            run_id=run.id,
                            card_id=cid,
                            error=assigned.error,
                            validation_errors=assigned.validation_errors,
                        ),
                    )
                    result.skipped_card_ids.append(cid)
                    continue
                result.assignment_ids.append(assigned.assignment.id)
                outcome = self.dispatch_assignment(assigned.assignment.id, actor=initiated_by)
                if not outcome.success:
                    self.logger.warning(
                        "build_dispatch_failed",
                        extra=self.log_extra(
                            project_id=project_id,
                            run_id=run.id,
                            assignment_id=assigned.assignment.id,
                            error=outcome.error,
                        ),
                    )

        self.logger.info(
            "build_triggered",
            extra=self.log_extra(
                project_id=project_id,
                run_id=run.id,
                assignments=len(result.assignment_ids),
                skipped=len(result.skipped_card_ids),
            ),
        )
        return result

    # Resume ---------------------------------------------------------------

    def find_blocked_assignment(self, project_id: str, card_id: str) -> Optional[CardAssignment]:
        """Blocked assignment for the card in the project's most recent active run."""
        runs = self.db.list_runs(project_id, statuses=list(RunStatus.ACTIVE), limit=1)
        if not runs:
            return None
        for assignment in reversed(self.db.list_assignments(runs[0].id, card_id)):
            if assignment.status == AssignmentStatus.BLOCKED:
                return assignment
        return None

    def revert_resume(self, assignment_id: str, error: Optional[str] = None) -> CardAssignment:
        """Compensating action for a failed resume: assignment and card go back to blocked."""
        return self.db.transition_assignment(
            assignment_id,
            AssignmentStatus.BLOCKED,
            card_update=CardUpdate(build_state=BuildState.BLOCKED, last_build_error=error),
        )

    def resume_blocked_assignment(self, project_id: str, card_id: str, actor: str = "user") -> ResumeResult:
        assignment = self.find_blocked_assignment(project_id, card_id)
        if assignment is None:
            return ResumeResult(
                success=False,
                outcome_type="error",
                error="No blocked assignment found for this card",
                message="No blocked build found for this card. Start a new build instead.",
            )

        self.db.transition_assignment(
            assignment.id,
            AssignmentStatus.QUEUED,
            card_update=CardUpdate(build_state=BuildState.QUEUED, last_build_error=None),
            expected_status=AssignmentStatus.BLOCKED,
        )
        try:
            outcome = self.dispatch_assignment(assignment.id, actor=actor)
        except Exception as exc:
            self.revert_resume(assignment.id, str(exc))
            self.logger.exception(
                "assignment_resume_reverted",
                extra=self.log_extra(project_id=project_id, run_id=assignment.run_id, assignment_id=assignment.id),
            )
            raise
        if not outcome.success:
            self.revert_resume(assignment.id, outcome.error)
            self.logger.warning(
                "assignment_resume_reverted",
                extra=self.log_extra(
                    project_id=project_id,
                    run_id=assignment.run_id,
                    assignment_id=assignment.id,
                    error=outcome.error,
                ),
            )
            return ResumeResult(
                success=False,
                outcome_type="error",
                error=outcome.error or "Dispatch failed",
                message="Could not resume the build. The card is still blocked.",
                run_id=assignment.run_id,
                assignment_id=assignment.id,
            )

        return ResumeResult(
            success=True,
            outcome_type="success",
            message="Build resumed",
            run_id=assignment.run_id,
            assignment_id=assignment.id,
            execution_id=outcome.execution_id,
        )
