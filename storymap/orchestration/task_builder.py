"""
Task description builder.

Translates a DispatchPayload into the instructions sent to a coding agent:
branch, planned files, path constraints, acceptance criteria and memory
references. Every literal from the payload appears verbatim in the text.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class PlannedFileDetail:
    logical_file_name: str
    action: str
    artifact_kind: str
    intent_summary: str
    contract_notes: Optional[str] = None
    module_hint: Optional[str] = None


@dataclass
class ContextArtifactDetail:
    name: str
    type: str
    title: Optional[str] = None
    content: Optional[str] = None


@dataclass
class DispatchPayload:
    """Everything an execution client needs to start one assignment."""
    run_id: str
    assignment_id: str
    card_id: str
    feature_branch: str
    allowed_paths: List[str]
    assignment_input_snapshot: Dict[str, Any]
    worktree_path: Optional[str] = None
    forbidden_paths: List[str] = field(default_factory=list)
    memory_context_refs: List[str] = field(default_factory=list)
    acceptance_criteria: List[str] = field(default_factory=list)
    card_title: Optional[str] = None
    card_description: Optional[str] = None
    planned_files_detail: List[PlannedFileDetail] = field(default_factory=list)
    context_artifacts: List[ContextArtifactDetail] = field(default_factory=list)


@dataclass
class BuiltTask:
    task_description: str
    context: Dict[str, Any]


def _planned_files(payload: DispatchPayload) -> List[Dict[str, Optional[str]]]:
    if payload.planned_files_detail:
        return [
            {"name": pf.logical_file_name, "action": pf.action, "intent": pf.intent_summary}
            for pf in payload.planned_files_detail
        ]
    return [{"name": path, "action": "create_or_edit", "intent": None} for path in payload.allowed_paths]


def build_task_from_payload(payload: DispatchPayload) -> BuiltTask:
    """Build the agent task description and structured context for a dispatch."""
    planned_files = _planned_files(payload)
    sections: List[str] = []

    header = ["## Task"]
    if payload.card_title:
        header.append(f"Card: {payload.card_title}")
    header.append(f"Implement the card scope on branch `{payload.feature_branch}`.")
    if payload.worktree_path:
        header.append(f"Worktree: `{payload.worktree_path}`")
    if payload.card_description:
        header.extend(["", payload.card_description])
    sections.append("\n".join(header))

    if planned_files:
        lines = ["## Planned files", "Create or edit these files:"]
        for pf in planned_files:
            line = f"- `{pf['name']}` ({pf['action']})"
            if pf["intent"]:
                line += f": {pf['intent']}"
            lines.append(line)
        sections.append("\n".join(lines))

    if payload.allowed_paths:
        lines = ["## Allowed paths", "Only modify files within:"]
        lines.extend(f"- `{path}`" for path in payload.allowed_paths)
        sections.append("\n".join(lines))

    if payload.forbidden_paths:
        lines = ["## Forbidden paths", "Do not modify:"]
        lines.extend(f"- `{path}`" for path in payload.forbidden_paths)
        sections.append("\n".join(lines))

    if payload.acceptance_criteria:
        lines = ["## Acceptance criteria"]
        lines.extend(f"- {criterion}" for criterion in payload.acceptance_criteria)
        sections.append("\n".join(lines))

    if payload.context_artifacts:
        lines = ["## Context artifacts"]
        for artifact in payload.context_artifacts:
            lines.append(f"### {artifact.title or artifact.name} ({artifact.type})")
            if artifact.content:
                lines.append(artifact.content)
        sections.append("\n".join(lines))

    if payload.memory_context_refs:
        sections.append(
            "## Context references\n"
            f"Retrieved memory IDs for context: {', '.join(payload.memory_context_refs)}"
        )

    return BuiltTask(
        task_description="\n\n".join(sections),
        context={
            "planned_files": planned_files,
            "allowed_paths": list(payload.allowed_paths),
            "forbidden_paths": list(payload.forbidden_paths),
            "acceptance_criteria": list(payload.acceptance_criteria),
            "memory_refs": list(payload.memory_context_refs),
        },
    )
