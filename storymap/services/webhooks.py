"""
Storymap Webhook Service

Applies execution callbacks reported by the coding agent: execution status,
commits and the knowledge the agent discovered while building a card.
"""

from dataclasses import dataclass
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from storymap.db.database import Database
from storymap.models.domain import (
    AgentExecution,
    AssignmentStatus,
    BuildState,
    CardAssignment,
    CardUpdate,
    ExecutionStatus,
    ExecutionUpdate,
    KnowledgeItemType,
    KnowledgeSource,
    KnowledgeStatus,
    OrchestrationRun,
    RunStatus,
    utc_now,
)
from storymap.orchestration.state_machine import can_transition
from storymap.services.base import Service, ServiceContext
from storymap.services.events import EventLogger
from storymap.services.runs import RunService

WEBHOOK_ACTOR = "agent"


class WebhookCommit(BaseModel):
    sha: str
    branch: str
    message: str = ""


class KnowledgeText(BaseModel):
    text: str
    evidence_source: Optional[str] = None


class AgentKnowledge(BaseModel):
    facts: List[KnowledgeText] = Field(default_factory=list)
    assumptions: List[KnowledgeText] = Field(default_factory=list)
    questions: List[KnowledgeText] = Field(default_factory=list)


class AgentWebhookEvent(BaseModel):
    event_type: Literal[
        "execution_started",
        "commit_created",
        "execution_completed",
        "execution_failed",
        "execution_blocked",
    ]
    assignment_id: str
    execution_id: Optional[str] = None
    summary: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    commit: Optional[WebhookCommit] = None
    knowledge: Optional[AgentKnowledge] = None


@dataclass
class WebhookResult:
    success: bool
    error: Optional[str] = None


class WebhookService(Service):
    def __init__(self, context: ServiceContext, db: Database, *, events: Optional[EventLogger] = None) -> None:
        super().__init__(context)
        self.db = db
        self.events = events or EventLogger(context, db)
        self.runs = RunService(context, db, events=self.events)

    def _find_execution(self, assignment_id: str, execution_id: Optional[str]) -> Optional[AgentExecution]:
        executions = self.db.list_agent_executions(assignment_id)
        if not executions:
            return None
        if execution_id:
            for execution in executions:
                if execution_id in (execution.id, execution.execution_id):
                    return execution
        return executions[0]

    def _write_knowledge(self, card_id: str, knowledge: Optional[AgentKnowledge]) -> int:
        if knowledge is None:
            return 0
        written = 0
        for item_type, items in (
            (KnowledgeItemType.FACT, knowledge.facts),
            (KnowledgeItemType.ASSUMPTION, knowledge.assumptions),
            (KnowledgeItemType.QUESTION, knowledge.questions),
        ):
            position = len(self.db.list_knowledge_items(card_id, item_type))
            for item in items:
                self.db.create_knowledge_item(
                    card_id,
                    item_type,
                    item.text,
                    status=KnowledgeStatus.DRAFT,
                    source=KnowledgeSource.AGENT,
                    position=position,
                    evidence_source=item.evidence_source if item_type == KnowledgeItemType.FACT else None,
                )
                position += 1
                written += 1
        return written

    def _move_run(self, run: OrchestrationRun, status: str) -> None:
        current = self.db.get_run(run.id)
        if current.status == status:
            return
        if not can_transition(current.status, status):
            self.logger.info(
                "run_transition_skipped",
                extra=self.log_extra(run_id=run.id, from_status=current.status, to_status=status),
            )
            return
        self.runs.transition_run(run.id, status, actor=WEBHOOK_ACTOR)

    def _close_run_if_done(self, run: OrchestrationRun) -> None:
        assignments = self.db.list_assignments(run.id)
        if not assignments or any(a.status not in AssignmentStatus.TERMINAL for a in assignments):
            return
        if all(a.status == AssignmentStatus.COMPLETED for a in assignments):
            self._move_run(run, RunStatus.COMPLETED)
        else:
            self._move_run(run, RunStatus.FAILED)

    def process(self, event: AgentWebhookEvent) -> WebhookResult:
        try:
            assignment = self.db.get_assignment(event.assignment_id)
        except KeyError:
            return WebhookResult(success=False, error="Assignment not found")
        run = self.db.get_run(assignment.run_id)
        execution = self._find_execution(assignment.id, event.execution_id)

        handler = getattr(self, f"_on_{event.event_type}")
        handler(event, assignment, run, execution)

        self.logger.info(
            "agent_webhook_processed",
            extra=self.log_extra(
                project_id=run.project_id,
                run_id=run.id,
                assignment_id=assignment.id,
                event_type=event.event_type,
            ),
        )
        payload = {"assignment_id": assignment.id, "execution_id": event.execution_id}
        if event.summary:
            payload["summary"] = event.summary
        if event.error:
            payload["error"] = event.error
        if event.commit:
            payload["commit"] = event.commit.model_dump()
        self.events.log(run.project_id, event.event_type, actor=WEBHOOK_ACTOR, run_id=run.id, payload=payload)
        return WebhookResult(success=True)

    # Handlers -------------------------------------------------------------

    def _on_execution_started(
        self,
        event: AgentWebhookEvent,
        assignment: CardAssignment,
        run: OrchestrationRun,
        execution: Optional[AgentExecution],
    ) -> None:
        if execution is not None:
            self.db.update_agent_execution(
                execution.id,
                ExecutionUpdate(status=ExecutionStatus.RUNNING, started_at=event.started_at or utc_now()),
            )

    def _on_commit_created(
        self,
        event: AgentWebhookEvent,
        assignment: CardAssignment,
        run: OrchestrationRun,
        execution: Optional[AgentExecution],
    ) -> None:
        if event.commit is not None:
            self.db.create_agent_commit(assignment.id, event.commit.sha, event.commit.branch, event.commit.message)

    def _on_execution_completed(
        self,
        event: AgentWebhookEvent,
        assignment: CardAssignment,
        run: OrchestrationRun,
        execution: Optional[AgentExecution],
    ) -> None:
        now = utc_now()
        if execution is not None:
            self.db.update_agent_execution(
                execution.id,
                ExecutionUpdate(
                    status=ExecutionStatus.COMPLETED,
                    ended_at=event.ended_at or now,
                    summary=event.summary,
                    error=None,
                ),
            )
        commits = self.db.list_agent_commits(assignment.id)
        self.db.transition_assignment(
            assignment.id,
            AssignmentStatus.COMPLETED,
            card_update=CardUpdate(
                build_state=BuildState.COMPLETED,
                last_built_at=now,
                last_build_ref=commits[-1].sha if commits else assignment.feature_branch,
                last_build_error=None,
            ),
        )
        self._write_knowledge(assignment.card_id, event.knowledge)
        self._close_run_if_done(run)

    def _on_execution_failed(
        self,
        event: AgentWebhookEvent,
        assignment: CardAssignment,
        run: OrchestrationRun,
        execution: Optional[AgentExecution],
    ) -> None:
        error = event.error or "Build failed"
        if execution is not None:
            self.db.update_agent_execution(
                execution.id,
                ExecutionUpdate(
                    status=ExecutionStatus.FAILED,
                    ended_at=event.ended_at or utc_now(),
                    summary=event.summary,
                    error=error,
                ),
            )
        self.db.transition_assignment(
            assignment.id,
            AssignmentStatus.FAILED,
            card_update=CardUpdate(build_state=BuildState.FAILED, last_build_error=error),
        )
        self._write_knowledge(assignment.card_id, event.knowledge)
        self._move_run(run, RunStatus.FAILED)

    def _on_execution_blocked(
        self,
        event: AgentWebhookEvent,
        assignment: CardAssignment,
        run: OrchestrationRun,
        execution: Optional[AgentExecution],
    ) -> None:
        if execution is not None:
            self.db.update_agent_execution(
                execution.id,
                ExecutionUpdate(status=ExecutionStatus.BLOCKED, summary=event.summary),
            )
        self.db.transition_assignment(
            assignment.id,
            AssignmentStatus.BLOCKED,
            card_update=CardUpdate(build_state=BuildState.BLOCKED, last_build_error=event.summary or event.error),
        )
        self._write_knowledge(assignment.card_id, event.knowledge)
        # the run waits for a resume once nothing else is in flight
        in_flight = (AssignmentStatus.QUEUED, AssignmentStatus.DISPATCHED, AssignmentStatus.RUNNING)
        if not any(a.status in in_flight for a in self.db.list_assignments(run.id)):
            self._move_run(run, RunStatus.BLOCKED)
