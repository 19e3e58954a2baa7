"""
In-memory project state.

A ProjectState holds one project's whole planning hierarchy indexed by id.
It is the input of action validation and preview, and it is mutated in place
by the same EntityInsert / EntityUpdate objects that are written to storage.
"""

import copy
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from storymap.models.domain import (
    Activity,
    Card,
    CardContextLink,
    ContextArtifact,
    EntityInsert,
    EntityUpdate,
    KnowledgeItem,
    PlannedFile,
    Project,
    ProjectBundle,
    Step,
    Workflow,
)


def _by_position(items):
    # sorted() is stable, so equal positions keep insertion order
    return sorted(items, key=lambda item: item.position)


@dataclass
class ProjectState:
    project: Project
    workflows: Dict[str, Workflow] = field(default_factory=dict)
    activities: Dict[str, Activity] = field(default_factory=dict)
    steps: Dict[str, Step] = field(default_factory=dict)
    cards: Dict[str, Card] = field(default_factory=dict)
    knowledge_items: Dict[str, KnowledgeItem] = field(default_factory=dict)
    planned_files: Dict[str, PlannedFile] = field(default_factory=dict)
    context_artifacts: Dict[str, ContextArtifact] = field(default_factory=dict)
    card_context_links: Dict[Tuple[str, str], CardContextLink] = field(default_factory=dict)

    @classmethod
    def from_bundle(cls, bundle: ProjectBundle) -> "ProjectState":
        state = cls(project=bundle.project)
        for wf in bundle.workflows:
            state.workflows[wf.id] = wf
        for activity in bundle.activities:
            if activity.workflow_id in state.workflows:
                state.activities[activity.id] = activity
        for step in bundle.steps:
            if step.workflow_activity_id in state.activities:
                state.steps[step.id] = step
        for card in bundle.cards:
            if card.workflow_activity_id not in state.activities:
                continue
            if card.step_id is not None and card.step_id not in state.steps:
                # Dangling step pointer: surface the card directly under its activity
                card = replace(card, step_id=None)
            state.cards[card.id] = card
        for item in bundle.knowledge_items:
            if item.card_id in state.cards:
                state.knowledge_items[item.id] = item
        for planned in bundle.planned_files:
            if planned.card_id in state.cards:
                state.planned_files[planned.id] = planned
        for artifact in bundle.context_artifacts:
            state.context_artifacts[artifact.id] = artifact
        for link in bundle.card_context_links:
            if link.card_id in state.cards and link.context_artifact_id in state.context_artifacts:
                state.card_context_links[(link.card_id, link.context_artifact_id)] = link
        return state

    def clone(self) -> "ProjectState":
        return copy.deepcopy(self)

    # Lookups ---------------------------------------------------------------

    def contains(self, entity_id: str) -> bool:
        return any(
            entity_id in index
            for index in (
                self.workflows,
                self.activities,
                self.steps,
                self.cards,
                self.knowledge_items,
                self.planned_files,
                self.context_artifacts,
            )
        )

    def ordered_workflows(self) -> List[Workflow]:
        return _by_position(self.workflows.values())

    def activities_of(self, workflow_id: str) -> List[Activity]:
        return _by_position(a for a in self.activities.values() if a.workflow_id == workflow_id)

    def steps_of(self, activity_id: str) -> List[Step]:
        return _by_position(s for s in self.steps.values() if s.workflow_activity_id == activity_id)

    def cards_in_scope(self, activity_id: str, step_id: Optional[str]) -> List[Card]:
        """Cards sharing one parent: the activity itself (step_id None) or one of its steps."""
        return _by_position(
            c for c in self.cards.values()
            if c.workflow_activity_id == activity_id and c.step_id == step_id
        )

    def knowledge_of(self, card_id: str, item_type: Optional[str] = None) -> List[KnowledgeItem]:
        return _by_position(
            k for k in self.knowledge_items.values()
            if k.card_id == card_id and (item_type is None or k.item_type == item_type)
        )

    def planned_files_of(self, card_id: str) -> List[PlannedFile]:
        return _by_position(p for p in self.planned_files.values() if p.card_id == card_id)

    def artifact_ids_of(self, card_id: str) -> List[str]:
        return [artifact_id for (cid, artifact_id) in self.card_context_links if cid == card_id]

    def workflow_of_card(self, card_id: str) -> Optional[Workflow]:
        card = self.cards.get(card_id)
        if card is None:
            return None
        activity = self.activities.get(card.workflow_activity_id)
        return self.workflows.get(activity.workflow_id) if activity else None

    def cards_of_workflow(self, workflow_id: str) -> List[Card]:
        result: List[Card] = []
        for activity in self.activities_of(workflow_id):
            result.extend(self.cards_in_scope(activity.id, None))
            for step in self.steps_of(activity.id):
                result.extend(self.cards_in_scope(activity.id, step.id))
        return result

    # Mutation --------------------------------------------------------------

    def _index(self, kind: str) -> Dict[Any, Any]:
        return {
            "workflow": self.workflows,
            "activity": self.activities,
            "step": self.steps,
            "card": self.cards,
            "knowledge_item": self.knowledge_items,
            "planned_file": self.planned_files,
            "context_artifact": self.context_artifacts,
        }[kind]

    def apply(self, mutation: Any) -> None:
        """Apply an EntityInsert or EntityUpdate to this state."""
        if isinstance(mutation, EntityInsert):
            if mutation.kind == "card_context_link":
                link = mutation.entity
                self.card_context_links[(link.card_id, link.context_artifact_id)] = link
                return
            self._index(mutation.kind)[mutation.entity.id] = mutation.entity
        elif isinstance(mutation, EntityUpdate):
            index = self._index(mutation.kind)
            index[mutation.entity_id] = replace(index[mutation.entity_id], **mutation.changes)
        else:
            raise TypeError(f"Unsupported mutation: {mutation!r}")

    # Rendering -------------------------------------------------------------

    def _card_dict(self, card: Card) -> Dict[str, Any]:
        data = asdict(card)
        data["knowledge_items"] = [asdict(k) for k in self.knowledge_of(card.id)]
        data["planned_files"] = [asdict(p) for p in self.planned_files_of(card.id)]
        data["context_artifact_ids"] = self.artifact_ids_of(card.id)
        return data

    def to_dict(self) -> Dict[str, Any]:
        """Nested map tree: workflows > activities > (steps > cards, cards)."""
        workflows = []
        for wf in self.ordered_workflows():
            activities = []
            for activity in self.activities_of(wf.id):
                steps = [
                    {**asdict(step), "cards": [self._card_dict(c) for c in self.cards_in_scope(activity.id, step.id)]}
                    for step in self.steps_of(activity.id)
                ]
                activities.append(
                    {
                        **asdict(activity),
                        "steps": steps,
                        "cards": [self._card_dict(c) for c in self.cards_in_scope(activity.id, None)],
                    }
                )
            workflows.append({**asdict(wf), "activities": activities})
        return {
            "project": asdict(self.project),
            "workflows": workflows,
            "context_artifacts": [asdict(a) for a in self.context_artifacts.values()],
        }
