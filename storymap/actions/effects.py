"""
Planning action effects.

``plan_action`` checks one shape-valid action against the current project
state and computes the storage mutations it would perform, without touching
the state. ``commit_to_state`` then folds an accepted outcome into the state
so later actions of the same batch see it. Apply and preview both go through
these two functions, which is what keeps their results identical.
"""

import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from storymap.actions.validation import ParsedAction
from storymap.models.domain import (
    Activity,
    Card,
    CardContextLink,
    ContextArtifact,
    EntityInsert,
    EntityUpdate,
    KnowledgeItem,
    KnowledgeSource,
    KnowledgeStatus,
    PlannedFile,
    PlannedFileStatus,
    Step,
    Workflow,
    utc_now,
)
from storymap.models.state import ProjectState

ACCEPTED = "accepted"
REJECTED = "rejected"

# Namespace for ids derived from (action id, entity kind)
ACTION_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "storymap:planning-action")

CODE_GENERATION_PATTERNS = (
    re.compile(r"\bgenerate\s+code\b", re.IGNORECASE),
    re.compile(r"\bwrite\s+code\b", re.IGNORECASE),
    re.compile(r"\bimplement\s+function\b", re.IGNORECASE),
    re.compile(r"\bcreate\s+class\b", re.IGNORECASE),
    re.compile(r"\bcode\s+snippet\b", re.IGNORECASE),
)

CODE_GENERATION_REASON = (
    "Planning actions cannot generate production code. "
    "Code generation must be deferred to orchestration phase."
)

Mutation = Union[EntityInsert, EntityUpdate]


def derive_id(action_id: str, kind: str) -> str:
    """Id of the entity of ``kind`` created by action ``action_id``."""
    return str(uuid.uuid5(ACTION_ID_NAMESPACE, f"{action_id}:{kind}"))


def _strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _strings(item)


def contains_code_generation_intent(payload: Dict[str, Any]) -> bool:
    return any(pattern.search(text) for text in _strings(payload) for pattern in CODE_GENERATION_PATTERNS)


class ResolutionTable:
    """
    Maps aliases (caller temp ids and action ids) to the real ids of
    entities created earlier in the same batch.
    """

    def __init__(self) -> None:
        self._aliases: Dict[str, str] = {}

    def register(self, alias: Optional[str], real_id: str) -> None:
        if alias:
            self._aliases[alias] = real_id

    def resolve(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self._aliases.get(value, value)

    def __contains__(self, alias: str) -> bool:
        return alias in self._aliases

    def as_dict(self) -> Dict[str, str]:
        return dict(self._aliases)


@dataclass
class ActionOutcome:
    """Result of planning one action against a state."""
    action_id: str
    action_type: str
    validation_status: str
    reason: Optional[str] = None
    mutations: List[Mutation] = field(default_factory=list)
    created_ids: List[str] = field(default_factory=list)
    updated_ids: List[str] = field(default_factory=list)
    reordered_ids: List[str] = field(default_factory=list)
    summary: str = ""
    aliases: Dict[str, str] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.validation_status == ACCEPTED


class ActionRejected(Exception):
    """Internal signal: the action breaks a reference or business rule."""


@dataclass
class _Ctx:
    state: ProjectState
    action: ParsedAction
    resolutions: ResolutionTable
    now: str
    outcome: ActionOutcome

    def resolve(self, value: Optional[str]) -> Optional[str]:
        return self.resolutions.resolve(value)

    def insert(self, kind: str, entity: Any, *, created: bool = True) -> None:
        self.outcome.mutations.append(EntityInsert(kind, entity))
        if created:
            self.outcome.created_ids.append(entity.id)

    def update(self, kind: str, entity_id: str, changes: Dict[str, Any], *, reordered: bool = False) -> None:
        if not changes:
            return
        self.outcome.mutations.append(EntityUpdate(kind, entity_id, {**changes, "updated_at": self.now}))
        if not reordered and entity_id not in self.outcome.updated_ids:
            self.outcome.updated_ids.append(entity_id)

    def new_id(self, kind: str, explicit: Optional[str] = None) -> str:
        entity_id = explicit or derive_id(self.action.id, kind)
        if self.state.contains(entity_id):
            if explicit:
                raise ActionRejected(f"Entity {entity_id} already exists")
            raise ActionRejected(f"Action {self.action.id} was already applied")
        temp_id = getattr(self.action.payload, "temp_id", None)
        self.outcome.aliases[self.action.id] = entity_id
        if temp_id:
            self.outcome.aliases[temp_id] = entity_id
        return entity_id

    # Reference checks -----------------------------------------------------

    def project_target(self) -> None:
        project_id = getattr(self.action.target, "project_id", None)
        if project_id and self.resolve(project_id) != self.state.project.id:
            raise ActionRejected(f"Referenced project {project_id} does not exist")

    def workflow(self, workflow_id: Optional[str]) -> Workflow:
        resolved = self.resolve(workflow_id)
        if resolved not in self.state.workflows:
            raise ActionRejected(f"Referenced workflow {workflow_id} does not exist")
        return self.state.workflows[resolved]

    def activity(self, activity_id: Optional[str]) -> Activity:
        resolved = self.resolve(activity_id)
        if resolved not in self.state.activities:
            raise ActionRejected(f"Referenced activity {activity_id} does not exist")
        return self.state.activities[resolved]

    def step_of(self, step_id: Optional[str], activity: Activity) -> Step:
        resolved = self.resolve(step_id)
        step = self.state.steps.get(resolved) if resolved else None
        if step is None:
            raise ActionRejected(f"Referenced step {step_id} does not exist")
        if step.workflow_activity_id != activity.id:
            raise ActionRejected(f"Step {step.id} does not belong to activity {activity.id}")
        return step

    def card(self) -> Card:
        card_id = self.action.target.card_id  # type: ignore[attr-defined]
        resolved = self.resolve(card_id)
        if resolved not in self.state.cards:
            raise ActionRejected(f"Referenced card {card_id} does not exist")
        return self.state.cards[resolved]

    def planned_file_of(self, planned_file_id: str, card: Card) -> PlannedFile:
        planned = self.state.planned_files.get(self.resolve(planned_file_id) or "")
        if planned is None:
            raise ActionRejected(f"Referenced planned file {planned_file_id} does not exist")
        if planned.card_id != card.id:
            raise ActionRejected(f"Planned file {planned.id} does not belong to card {card.id}")
        return planned

    def knowledge_item_of(self, knowledge_item_id: str, card: Card) -> KnowledgeItem:
        item = self.state.knowledge_items.get(self.resolve(knowledge_item_id) or "")
        if item is None:
            raise ActionRejected(f"Referenced knowledge item {knowledge_item_id} does not exist")
        if item.card_id != card.id:
            raise ActionRejected(f"Knowledge item {item.id} does not belong to card {card.id}")
        return item


# =============================================================================
# Handlers
# =============================================================================

def _create_workflow(ctx: _Ctx) -> None:
    ctx.project_target()
    p = ctx.action.payload
    workflow = Workflow(
        id=ctx.new_id("workflow"),
        project_id=ctx.state.project.id,
        title=p.title,
        description=p.description,
        position=p.position if p.position is not None else len(ctx.state.workflows),
        created_at=ctx.now,
        updated_at=ctx.now,
    )
    ctx.insert("workflow", workflow)
    ctx.outcome.summary = f"createWorkflow: {workflow.title}"


def _create_activity(ctx: _Ctx) -> None:
    p = ctx.action.payload
    workflow = ctx.workflow(ctx.action.target.workflow_id)
    activity = Activity(
        id=ctx.new_id("activity", explicit=p.id),
        workflow_id=workflow.id,
        title=p.title,
        color=p.color,
        position=p.position if p.position is not None else len(ctx.state.activities_of(workflow.id)),
        created_at=ctx.now,
        updated_at=ctx.now,
    )
    ctx.insert("activity", activity)
    ctx.outcome.summary = f"createActivity: {activity.title}"


def _create_step(ctx: _Ctx) -> None:
    p = ctx.action.payload
    activity = ctx.activity(ctx.action.target.workflow_activity_id)
    step = Step(
        id=ctx.new_id("step"),
        workflow_activity_id=activity.id,
        title=p.title,
        position=p.position if p.position is not None else len(ctx.state.steps_of(activity.id)),
        created_at=ctx.now,
        updated_at=ctx.now,
    )
    ctx.insert("step", step)
    ctx.outcome.summary = f"createStep: {step.title}"


def _create_card(ctx: _Ctx) -> None:
    p = ctx.action.payload
    activity = ctx.activity(ctx.action.target.workflow_activity_id)
    step_id = ctx.step_of(p.step_id, activity).id if p.step_id else None
    card = Card(
        id=ctx.new_id("card"),
        workflow_activity_id=activity.id,
        step_id=step_id,
        title=p.title,
        description=p.description,
        status=p.status,
        priority=p.priority,
        position=p.position if p.position is not None else len(ctx.state.cards_in_scope(activity.id, step_id)),
        created_at=ctx.now,
        updated_at=ctx.now,
    )
    ctx.insert("card", card)
    ctx.outcome.summary = f"createCard: {card.title}"


def _update_card(ctx: _Ctx) -> None:
    card = ctx.card()
    p = ctx.action.payload
    changes: Dict[str, Any] = {}
    for name in ("title", "status", "priority"):
        value = getattr(p, name)
        if value is not None:
            changes[name] = value
    for name in ("description", "quick_answer"):
        if ctx.action.payload_was_set(name):
            changes[name] = getattr(p, name)
    ctx.update("card", card.id, changes)
    ctx.outcome.summary = f"Updated card: {changes.get('title', card.title)}"


def _renumber(ctx: _Ctx, cards: List[Card], overrides: Optional[Dict[str, Any]] = None) -> None:
    for index, sibling in enumerate(cards):
        changes: Dict[str, Any] = {}
        if sibling.position != index:
            changes["position"] = index
        if overrides and sibling.id in overrides:
            changes.update(overrides[sibling.id])
        ctx.update("card", sibling.id, changes, reordered=True)


def _reorder_card(ctx: _Ctx) -> None:
    card = ctx.card()
    p = ctx.action.payload

    target_activity = ctx.state.activities[card.workflow_activity_id]
    if p.new_activity_id is not None:
        target_activity = ctx.activity(p.new_activity_id)

    if ctx.action.payload_was_set("new_step_id"):
        target_step_id = ctx.step_of(p.new_step_id, target_activity).id if p.new_step_id else None
    elif target_activity.id == card.workflow_activity_id:
        target_step_id = card.step_id
    else:
        target_step_id = None

    source = [c for c in ctx.state.cards_in_scope(card.workflow_activity_id, card.step_id) if c.id != card.id]
    same_scope = (target_activity.id, target_step_id) == (card.workflow_activity_id, card.step_id)
    target = source if same_scope else [
        c for c in ctx.state.cards_in_scope(target_activity.id, target_step_id) if c.id != card.id
    ]

    position = max(0, min(p.new_position, len(target)))
    target = [*target[:position], card, *target[position:]]

    parent_change: Dict[str, Any] = {}
    if target_activity.id != card.workflow_activity_id:
        parent_change["workflow_activity_id"] = target_activity.id
    if target_step_id != card.step_id:
        parent_change["step_id"] = target_step_id

    if not same_scope:
        _renumber(ctx, source)
    _renumber(ctx, target, {card.id: parent_change})

    ctx.outcome.reordered_ids.append(card.id)
    ctx.outcome.summary = f"Reordered card to position {position}"


def _link_context_artifact(ctx: _Ctx) -> None:
    card = ctx.card()
    p = ctx.action.payload
    artifact_id = ctx.resolve(p.context_artifact_id)
    artifact = ctx.state.context_artifacts.get(artifact_id or "")
    if artifact is None:
        raise ActionRejected(f"Referenced artifact {p.context_artifact_id} does not exist")
    if (card.id, artifact.id) in ctx.state.card_context_links:
        ctx.outcome.summary = "Context artifact already linked"
        return
    link = CardContextLink(
        id=derive_id(ctx.action.id, "card_context_link"),
        card_id=card.id,
        context_artifact_id=artifact.id,
        linked_by=p.linked_by,
        usage_hint=p.usage_hint,
        created_at=ctx.now,
    )
    ctx.insert("card_context_link", link, created=False)
    ctx.outcome.summary = f"Linked context artifact: {artifact.name}"


def _create_context_artifact(ctx: _Ctx) -> None:
    ctx.project_target()
    p = ctx.action.payload
    card = None
    if p.card_id:
        card = ctx.state.cards.get(ctx.resolve(p.card_id) or "")
        if card is None:
            raise ActionRejected(f"Referenced card {p.card_id} does not exist")
    artifact = ContextArtifact(
        id=ctx.new_id("context_artifact"),
        project_id=ctx.state.project.id,
        name=p.name,
        type=p.type,
        title=p.title,
        content=p.content,
        uri=p.uri,
        created_at=ctx.now,
        updated_at=ctx.now,
    )
    ctx.insert("context_artifact", artifact)
    if card is not None:
        link = CardContextLink(
            id=derive_id(ctx.action.id, "card_context_link"),
            card_id=card.id,
            context_artifact_id=artifact.id,
            created_at=ctx.now,
        )
        ctx.insert("card_context_link", link, created=False)
    ctx.outcome.summary = f"createContextArtifact: {artifact.name}"


def _upsert_planned_file(ctx: _Ctx) -> None:
    card = ctx.card()
    p = ctx.action.payload
    fields_ = {
        "logical_file_name": p.logical_file_name,
        "module_hint": p.module_hint,
        "artifact_kind": p.artifact_kind,
        "action": p.action,
        "intent_summary": p.intent_summary,
        "contract_notes": p.contract_notes,
    }
    if p.planned_file_id:
        planned = ctx.planned_file_of(p.planned_file_id, card)
        changes = {**fields_, "status": PlannedFileStatus.PROPOSED}
        if p.position is not None:
            changes["position"] = p.position
        ctx.update("planned_file", planned.id, changes)
    else:
        planned = PlannedFile(
            id=ctx.new_id("planned_file"),
            card_id=card.id,
            status=PlannedFileStatus.PROPOSED,
            position=p.position if p.position is not None else len(ctx.state.planned_files_of(card.id)),
            created_at=ctx.now,
            updated_at=ctx.now,
            **fields_,
        )
        ctx.insert("planned_file", planned)
    ctx.outcome.summary = f"Planned file: {p.logical_file_name}"


def _approve_planned_file(ctx: _Ctx) -> None:
    card = ctx.card()
    p = ctx.action.payload
    planned = ctx.planned_file_of(p.planned_file_id, card)
    ctx.update("planned_file", planned.id, {"status": p.status})
    if p.status == PlannedFileStatus.APPROVED:
        ctx.outcome.summary = "Approved planned file"
    else:
        ctx.outcome.summary = f"Planned file status: {p.status}"


def _upsert_knowledge_item(ctx: _Ctx) -> None:
    card = ctx.card()
    p = ctx.action.payload
    if p.knowledge_item_id:
        item = ctx.knowledge_item_of(p.knowledge_item_id, card)
        if item.item_type != p.item_type:
            raise ActionRejected(
                f"Knowledge item {item.id} is a {item.item_type}, not a {p.item_type}"
            )
        changes: Dict[str, Any] = {"text": p.text}
        for name in ("evidence_source", "confidence"):
            if ctx.action.payload_was_set(name):
                changes[name] = getattr(p, name)
        if p.position is not None:
            changes["position"] = p.position
        ctx.update("knowledge_item", item.id, changes)
    else:
        item = KnowledgeItem(
            id=ctx.new_id("knowledge_item"),
            card_id=card.id,
            item_type=p.item_type,
            text=p.text,
            evidence_source=p.evidence_source,
            confidence=p.confidence,
            status=KnowledgeStatus.DRAFT,
            source=KnowledgeSource.USER,
            position=p.position if p.position is not None else len(ctx.state.knowledge_of(card.id, p.item_type)),
            created_at=ctx.now,
            updated_at=ctx.now,
        )
        ctx.insert("knowledge_item", item)
    ctx.outcome.summary = f"Knowledge item ({p.item_type}): {p.text}"


def _set_knowledge_status(ctx: _Ctx) -> None:
    card = ctx.card()
    p = ctx.action.payload
    item = ctx.knowledge_item_of(p.knowledge_item_id, card)
    ctx.update("knowledge_item", item.id, {"status": p.status})
    ctx.outcome.summary = f"Knowledge item status: {p.status}"


ACTION_HANDLERS: Dict[str, Callable[[_Ctx], None]] = {
    "createWorkflow": _create_workflow,
    "createActivity": _create_activity,
    "createStep": _create_step,
    "createCard": _create_card,
    "updateCard": _update_card,
    "reorderCard": _reorder_card,
    "linkContextArtifact": _link_context_artifact,
    "createContextArtifact": _create_context_artifact,
    "upsertCardPlannedFile": _upsert_planned_file,
    "approveCardPlannedFile": _approve_planned_file,
    "upsertCardKnowledgeItem": _upsert_knowledge_item,
    "setCardKnowledgeStatus": _set_knowledge_status,
}


# =============================================================================
# Entry points
# =============================================================================

def plan_action(
    state: ProjectState,
    action: ParsedAction,
    resolutions: ResolutionTable,
    *,
    now: Optional[str] = None,
) -> ActionOutcome:
    """
    Check ``action`` against ``state`` and compute its mutations.

    Neither ``state`` nor ``resolutions`` is modified. A rule violation yields
    an outcome with ``validation_status == "rejected"`` and a reason.
    """
    outcome = ActionOutcome(action_id=action.id, action_type=action.action_type, validation_status=ACCEPTED)
    if action.project_id and action.project_id != state.project.id:
        return _rejected(outcome, f"Action belongs to project {action.project_id}")

    exempt = action.action_type == "createContextArtifact" and getattr(action.payload, "type", None) == "test"
    if not exempt and contains_code_generation_intent(action.raw_payload):
        return _rejected(outcome, CODE_GENERATION_REASON)

    ctx = _Ctx(state=state, action=action, resolutions=resolutions, now=now or utc_now(), outcome=outcome)
    try:
        ACTION_HANDLERS[action.action_type](ctx)
    except ActionRejected as exc:
        return _rejected(outcome, str(exc))
    return outcome


def _rejected(outcome: ActionOutcome, reason: str) -> ActionOutcome:
    return ActionOutcome(
        action_id=outcome.action_id,
        action_type=outcome.action_type,
        validation_status=REJECTED,
        reason=reason,
    )


def commit_to_state(state: ProjectState, outcome: ActionOutcome, resolutions: ResolutionTable) -> None:
    """Fold an accepted outcome into the working state and the resolution table."""
    if not outcome.accepted:
        return
    for mutation in outcome.mutations:
        state.apply(mutation)
    for alias, real_id in outcome.aliases.items():
        resolutions.register(alias, real_id)
