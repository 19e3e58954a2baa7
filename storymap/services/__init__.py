"""
Storymap Services

Service layer for planning and build orchestration.
"""

from importlib import import_module
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from storymap.services.base import Service, ServiceContext
    from storymap.services.events import EventLogger
    from storymap.services.snapshot import SnapshotService
    from storymap.services.actions import ActionService, ActionResult, BatchResult
    from storymap.services.runs import RunService, RunResult
    from storymap.services.approvals import ApprovalService, ApprovalResult, PullRequestResult
    from storymap.services.assignments import AssignmentService, AssignmentResult, DispatchOutcome, ResumeResult
    from storymap.services.repository import RepositoryManager, repo_url_to_clone_url
    from storymap.services.webhooks import WebhookService, AgentWebhookEvent

__all__ = [
    # Base
    "Service",
    "ServiceContext",
    # Events
    "EventLogger",
    # Planning
    "SnapshotService",
    "ActionService",
    "ActionResult",
    "BatchResult",
    # Runs
    "RunService",
    "RunResult",
    # Approvals
    "ApprovalService",
    "ApprovalResult",
    "PullRequestResult",
    # Assignments
    "AssignmentService",
    "AssignmentResult",
    "DispatchOutcome",
    "ResumeResult",
    # Repository
    "RepositoryManager",
    "repo_url_to_clone_url",
    # Webhooks
    "WebhookService",
    "AgentWebhookEvent",
]

_EXPORTS = {
    "Service": "storymap.services.base",
    "ServiceContext": "storymap.services.base",
    "EventLogger": "storymap.services.events",
    "SnapshotService": "storymap.services.snapshot",
    "ActionService": "storymap.services.actions",
    "ActionResult": "storymap.services.actions",
    "BatchResult": "storymap.services.actions",
    "RunService": "storymap.services.runs",
    "RunResult": "storymap.services.runs",
    "ApprovalService": "storymap.services.approvals",
    "ApprovalResult": "storymap.services.approvals",
    "PullRequestResult": "storymap.services.approvals",
    "AssignmentService": "storymap.services.assignments",
    "AssignmentResult": "storymap.services.assignments",
    "DispatchOutcome": "storymap.services.assignments",
    "ResumeResult": "storymap.services.assignments",
    "RepositoryManager": "storymap.services.repository",
    "repo_url_to_clone_url": "storymap.services.repository",
    "WebhookService": "storymap.services.webhooks",
    "AgentWebhookEvent": "storymap.services.webhooks",
}


def __getattr__(name: str):
    module_path = _EXPORTS.get(name)
    if not module_path:
        raise AttributeError(f"module {__name__} has no attribute {name}")
    module = import_module(module_path)
    return getattr(module, name)


def __dir__() -> list[str]:
    return sorted(__all__)
