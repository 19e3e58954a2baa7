"""
Planning action shape validation.

Every action in a batch is checked against its envelope, target_ref and
payload models before anything touches storage. One malformed action fails
the whole batch with field-keyed details such as
``{"actions.0.payload.title": ["Field required"]}``.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Sequence, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from storymap.errors import ValidationError

CardStatusName = Literal["todo", "active", "questions", "review", "production"]
ColorName = Literal["yellow", "blue", "purple", "green", "orange", "pink"]
ArtifactTypeName = Literal[
    "doc", "design", "code", "research", "link", "image", "skill",
    "mcp", "cli", "api", "prompt", "spec", "runbook", "test",
]
PlannedFileKindName = Literal[
    "component", "endpoint", "service", "schema", "hook", "util", "middleware", "job", "config",
]
KnowledgeTypeName = Literal["requirement", "fact", "assumption", "question"]


class PayloadModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _CreatePayload(PayloadModel):
    temp_id: Optional[str] = None


# =============================================================================
# Target refs
# =============================================================================

class ProjectTarget(PayloadModel):
    project_id: Optional[str] = None


class WorkflowTarget(PayloadModel):
    workflow_id: str = Field(min_length=1)


class ActivityTarget(PayloadModel):
    workflow_activity_id: str = Field(min_length=1)


class CardTarget(PayloadModel):
    card_id: str = Field(min_length=1)


# =============================================================================
# Payloads
# =============================================================================

class CreateWorkflowPayload(_CreatePayload):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    position: Optional[int] = Field(default=None, ge=0)


class CreateActivityPayload(_CreatePayload):
    id: Optional[str] = None
    title: str = Field(min_length=1)
    color: Optional[ColorName] = None
    position: Optional[int] = Field(default=None, ge=0)


class CreateStepPayload(_CreatePayload):
    title: str = Field(min_length=1)
    position: Optional[int] = Field(default=None, ge=0)


class CreateCardPayload(_CreatePayload):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    status: CardStatusName = "todo"
    priority: int = Field(default=0, ge=0)
    position: Optional[int] = Field(default=None, ge=0)
    step_id: Optional[str] = None


class UpdateCardPayload(PayloadModel):
    # title, status and priority: null means "no change"; description and quick_answer: null clears
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    status: Optional[CardStatusName] = None
    priority: Optional[int] = Field(default=None, ge=0)
    quick_answer: Optional[str] = None


class ReorderCardPayload(PayloadModel):
    new_position: int = Field(ge=0)
    new_step_id: Optional[str] = None
    new_activity_id: Optional[str] = None


class LinkContextArtifactPayload(PayloadModel):
    context_artifact_id: str = Field(min_length=1)
    linked_by: Optional[str] = None
    usage_hint: Optional[str] = None


class CreateContextArtifactPayload(_CreatePayload):
    name: str = Field(min_length=1)
    type: ArtifactTypeName
    title: Optional[str] = None
    content: Optional[str] = None
    uri: Optional[str] = None
    card_id: Optional[str] = None


class UpsertCardPlannedFilePayload(_CreatePayload):
    planned_file_id: Optional[str] = None
    logical_file_name: str = Field(min_length=1)
    module_hint: Optional[str] = None
    artifact_kind: PlannedFileKindName
    action: Literal["create", "modify", "delete"]
    intent_summary: str = Field(min_length=1)
    contract_notes: Optional[str] = None
    position: Optional[int] = Field(default=None, ge=0)

    @field_validator("action", mode="before")
    @classmethod
    def _edit_is_modify(cls, value: Any) -> Any:
        return "modify" if value == "edit" else value


class ApproveCardPlannedFilePayload(PayloadModel):
    planned_file_id: str = Field(min_length=1)
    status: Literal["approved", "proposed"]


class UpsertCardKnowledgeItemPayload(_CreatePayload):
    knowledge_item_id: Optional[str] = None
    item_type: KnowledgeTypeName
    text: str = Field(min_length=1)
    evidence_source: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    position: Optional[int] = Field(default=None, ge=0)


class SetCardKnowledgeStatusPayload(PayloadModel):
    knowledge_item_id: str = Field(min_length=1)
    status: Literal["draft", "approved", "rejected"]


# action_type -> (target_ref model, payload model)
ACTION_MODELS: Dict[str, tuple] = {
    "createWorkflow": (ProjectTarget, CreateWorkflowPayload),
    "createActivity": (WorkflowTarget, CreateActivityPayload),
    "createStep": (ActivityTarget, CreateStepPayload),
    "createCard": (ActivityTarget, CreateCardPayload),
    "updateCard": (CardTarget, UpdateCardPayload),
    "reorderCard": (CardTarget, ReorderCardPayload),
    "linkContextArtifact": (CardTarget, LinkContextArtifactPayload),
    "createContextArtifact": (ProjectTarget, CreateContextArtifactPayload),
    "upsertCardPlannedFile": (CardTarget, UpsertCardPlannedFilePayload),
    "approveCardPlannedFile": (CardTarget, ApproveCardPlannedFilePayload),
    "upsertCardKnowledgeItem": (CardTarget, UpsertCardKnowledgeItemPayload),
    "setCardKnowledgeStatus": (CardTarget, SetCardKnowledgeStatusPayload),
}

ACTION_TYPES = tuple(ACTION_MODELS)


class PlanningActionIn(BaseModel):
    """Envelope of one submitted planning action."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    project_id: Optional[str] = None
    action_type: str = Field(min_length=1)
    target_ref: Dict[str, Any]
    payload: Dict[str, Any]


@dataclass
class ParsedAction:
    """A shape-valid planning action."""
    id: str
    action_type: str
    target: BaseModel
    payload: BaseModel
    raw_target_ref: Dict[str, Any]
    raw_payload: Dict[str, Any]
    project_id: Optional[str] = None

    def payload_was_set(self, name: str) -> bool:
        return name in self.payload.model_fields_set


def _error_key(prefix: str, loc: Sequence[Any]) -> str:
    return ".".join([prefix, *(str(part) for part in loc)])


def _collect(
    details: Dict[str, List[str]],
    prefix: str,
    model: Type[BaseModel],
    data: Any,
) -> Optional[BaseModel]:
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        for err in exc.errors():
            details.setdefault(_error_key(prefix, err["loc"]), []).append(err["msg"])
        return None


def parse_action(raw: Any, index: int, details: Dict[str, List[str]]) -> Optional[ParsedAction]:
    """Validate one action, adding any problems to details under ``actions.<index>``."""
    prefix = f"actions.{index}"
    if isinstance(raw, ParsedAction):
        return raw
    envelope = _collect(details, prefix, PlanningActionIn, raw)
    if envelope is None:
        return None

    models = ACTION_MODELS.get(envelope.action_type)
    if models is None:
        details.setdefault(f"{prefix}.action_type", []).append(
            f"Unknown action type: {envelope.action_type}"
        )
        return None

    target_model, payload_model = models
    target = _collect(details, f"{prefix}.target_ref", target_model, envelope.target_ref)
    payload = _collect(details, f"{prefix}.payload", payload_model, envelope.payload)
    if target is None or payload is None:
        return None

    return ParsedAction(
        id=envelope.id or str(uuid.uuid4()),
        action_type=envelope.action_type,
        target=target,
        payload=payload,
        raw_target_ref=dict(envelope.target_ref),
        raw_payload=dict(envelope.payload),
        project_id=envelope.project_id,
    )


def parse_action_batch(raw_actions: Any) -> List[ParsedAction]:
    """
    Shape-validate a whole batch.

    Raises:
        ValidationError: if the batch is empty or any action is malformed.
            Nothing has been applied at that point.
    """
    if not isinstance(raw_actions, (list, tuple)):
        raise ValidationError("Invalid action batch", details={"actions": ["Expected a list of actions"]})
    if not raw_actions:
        raise ValidationError("Invalid action batch", details={"actions": ["At least one action is required"]})

    details: Dict[str, List[str]] = {}
    parsed = [parse_action(raw, index, details) for index, raw in enumerate(raw_actions)]
    if details:
        raise ValidationError("Invalid action batch", details=details)
    return [action for action in parsed if action is not None]
