"""
Storymap Models

Domain models (dataclasses) and the in-memory project state.
"""

from storymap.models.domain import (
    Activity,
    AgentCommit,
    AgentExecution,
    ApprovalRequest,
    Card,
    CardAssignment,
    CardContextLink,
    ContextArtifact,
    EventLogEntry,
    KnowledgeItem,
    OrchestrationRun,
    PlannedFile,
    PlanningActionRecord,
    PolicyProfile,
    Project,
    PullRequestCandidate,
    RunCheck,
    RunStatus,
    Step,
    Workflow,
)
from storymap.models.state import ProjectState

__all__ = [
    "Activity",
    "AgentCommit",
    "AgentExecution",
    "ApprovalRequest",
    "Card",
    "CardAssignment",
    "CardContextLink",
    "ContextArtifact",
    "EventLogEntry",
    "KnowledgeItem",
    "OrchestrationRun",
    "PlannedFile",
    "PlanningActionRecord",
    "PolicyProfile",
    "Project",
    "ProjectState",
    "PullRequestCandidate",
    "RunCheck",
    "RunStatus",
    "Step",
    "Workflow",
]
