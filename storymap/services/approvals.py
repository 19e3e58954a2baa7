"""
Storymap Approval Service

Approval requests gated on recorded run checks, and the one pull request
candidate a run may produce once its create_pr request is approved.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from storymap.db.database import Database
from storymap.models.domain import (
    ApprovalRequest,
    ApprovalStatus,
    ApprovalType,
    ApprovalUpdate,
    OrchestrationRun,
    PullRequestCandidate,
    PullRequestStatus,
    PullRequestUpdate,
    utc_now,
)
from storymap.orchestration.approval_gates import ApprovalGateResult, validate_approval_gates
from storymap.services.base import Service, ServiceContext
from storymap.services.events import EventLogger


@dataclass
class ApprovalResult:
    success: bool
    approval: Optional[ApprovalRequest] = None
    error: Optional[str] = None
    validation_errors: List[str] = field(default_factory=list)
    gate: Optional[ApprovalGateResult] = None


@dataclass
class PullRequestResult:
    success: bool
    candidate: Optional[PullRequestCandidate] = None
    error: Optional[str] = None
    validation_errors: List[str] = field(default_factory=list)


class ApprovalService(Service):
    def __init__(self, context: ServiceContext, db: Database, *, events: Optional[EventLogger] = None) -> None:
        super().__init__(context)
        self.db = db
        self.events = events or EventLogger(context, db)

    def _run_in_project(self, project_id: str, run_id: str) -> Optional[OrchestrationRun]:
        try:
            run = self.db.get_run(run_id)
        except KeyError:
            return None
        return run if run.project_id == project_id else None

    def evaluate_gates(self, run: OrchestrationRun) -> ApprovalGateResult:
        """Gate the run's frozen required checks against its recorded checks."""
        return validate_approval_gates(run.required_checks, self.db.list_run_checks(run.id))

    # Approval requests ----------------------------------------------------

    def request_approval(
        self,
        project_id: str,
        run_id: str,
        approval_type: str,
        requested_by: str,
    ) -> ApprovalResult:
        run = self._run_in_project(project_id, run_id)
        if run is None:
            return ApprovalResult(success=False, error="Orchestration run not found")

        gate = self.evaluate_gates(run)
        if not gate.can_approve:
            self.logger.info(
                "approval_blocked",
                extra=self.log_extra(project_id=project_id, run_id=run_id, errors=gate.errors),
            )
            return ApprovalResult(
                success=False,
                error="Required checks have not passed",
                validation_errors=list(gate.errors),
                gate=gate,
            )

        approval = self.db.create_approval_request(run_id, approval_type, requested_by)
        self.events.log(
            project_id,
            "approval_requested",
            actor=requested_by,
            run_id=run_id,
            payload={"approval_id": approval.id, "approval_type": approval_type},
        )
        return ApprovalResult(success=True, approval=approval, gate=gate)

    def resolve_approval(
        self,
        project_id: str,
        approval_id: str,
        *,
        status: str,
        resolved_by: str,
        notes: Optional[str] = None,
    ) -> ApprovalResult:
        try:
            approval = self.db.get_approval_request(approval_id)
        except KeyError:
            return ApprovalResult(success=False, error="Approval request not found")
        if self._run_in_project(project_id, approval.run_id) is None:
            return ApprovalResult(success=False, error="Approval request not found")
        if status not in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
            return ApprovalResult(success=False, error=f"Invalid approval status: {status}")
        if approval.status != ApprovalStatus.PENDING:
            return ApprovalResult(success=False, error=f"Approval request is already {approval.status}")

        updated = self.db.update_approval_request(
            approval_id,
            ApprovalUpdate(status=status, resolved_by=resolved_by, resolved_at=utc_now(), notes=notes),
        )
        self.events.log(
            project_id,
            "approval_resolved",
            actor=resolved_by,
            run_id=approval.run_id,
            payload={"approval_id": approval_id, "status": status},
        )
        return ApprovalResult(success=True, approval=updated)

    def list_approvals(self, project_id: str, run_id: Optional[str] = None) -> List[ApprovalRequest]:
        return self.db.list_approval_requests(project_id, run_id)

    # Pull request candidates ----------------------------------------------

    def create_pull_request_candidate(
        self,
        project_id: str,
        run_id: str,
        *,
        head_branch: str,
        title: str,
        description: str = "",
        base_branch: Optional[str] = None,
        actor: str = "system",
    ) -> PullRequestResult:
        run = self._run_in_project(project_id, run_id)
        if run is None:
            return PullRequestResult(success=False, error="Orchestration run not found")
        if self.db.get_pull_request_candidate_for_run(run_id) is not None:
            return PullRequestResult(
                success=False,
                validation_errors=["A pull request candidate already exists for this run"],
            )
        approved = [
            a for a in self.db.list_approval_requests(project_id, run_id)
            if a.approval_type == ApprovalType.CREATE_PR and a.status == ApprovalStatus.APPROVED
        ]
        if not approved:
            return PullRequestResult(
                success=False,
                validation_errors=["An approved create_pr approval request is required"],
            )

        candidate = self.db.create_pull_request_candidate(
            run_id,
            base_branch=base_branch or run.base_branch,
            head_branch=head_branch,
            title=title,
            description=description,
        )
        self.events.log(
            project_id,
            "pr_created",
            actor=actor,
            run_id=run_id,
            payload={"pr_candidate_id": candidate.id, "head_branch": head_branch},
        )
        return PullRequestResult(success=True, candidate=candidate)

    def update_pull_request_candidate(
        self,
        project_id: str,
        pr_id: str,
        *,
        status: str,
        pr_url: Optional[str] = None,
        actor: str = "system",
    ) -> PullRequestResult:
        try:
            candidate = self.db.get_pull_request_candidate(pr_id)
        except KeyError:
            return PullRequestResult(success=False, error="Pull request candidate not found")
        if self._run_in_project(project_id, candidate.run_id) is None:
            return PullRequestResult(success=False, error="Pull request candidate not found")
        if status not in PullRequestStatus.ALL:
            return PullRequestResult(success=False, error=f"Invalid pull request status: {status}")

        update = PullRequestUpdate(status=status)
        if pr_url is not None:
            update.pr_url = pr_url
        updated = self.db.update_pull_request_candidate(pr_id, update)
        self.events.log(
            project_id,
            "pr_updated",
            actor=actor,
            run_id=candidate.run_id,
            payload={"pr_candidate_id": pr_id, "status": status},
        )
        return PullRequestResult(success=True, candidate=updated)

    def list_pull_request_candidates(self, project_id: str) -> List[PullRequestCandidate]:
        return self.db.list_pull_request_candidates(project_id)
