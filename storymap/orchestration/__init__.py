"""
Storymap Orchestration

Pure orchestration building blocks: run state machine, approval gates,
task builder and execution clients.
"""

from storymap.orchestration.approval_gates import ApprovalGateResult, validate_approval_gates
from storymap.orchestration.execution_client import (
    DispatchResult,
    ExecutionClient,
    HttpExecutionClient,
    HttpExecutionConfig,
    LocalExecutionClient,
    get_execution_client,
)
from storymap.orchestration.state_machine import VALID_TRANSITIONS, assert_transition, can_transition
from storymap.orchestration.task_builder import BuiltTask, DispatchPayload, build_task_from_payload

__all__ = [
    "ApprovalGateResult",
    "BuiltTask",
    "DispatchPayload",
    "DispatchResult",
    "ExecutionClient",
    "HttpExecutionClient",
    "HttpExecutionConfig",
    "LocalExecutionClient",
    "VALID_TRANSITIONS",
    "assert_transition",
    "build_task_from_payload",
    "can_transition",
    "get_execution_client",
    "validate_approval_gates",
]
