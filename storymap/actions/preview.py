"""
Dry-run of a planning action batch.

Previews run through the same ``plan_action`` / ``commit_to_state`` pair the
action service uses, against a clone of the snapshot, so the ids reported
here are the ids an apply of the same batch would create.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from storymap.actions.effects import ResolutionTable, commit_to_state, plan_action
from storymap.actions.validation import parse_action_batch
from storymap.errors import ValidationError
from storymap.models.state import ProjectState


@dataclass
class ActionPreview:
    action_id: str
    action_type: str
    summary: str
    created_ids: List[str] = field(default_factory=list)
    updated_ids: List[str] = field(default_factory=list)
    reordered_ids: List[str] = field(default_factory=list)


def preview_action_batch(
    actions: Sequence[Any],
    snapshot: Optional[ProjectState],
) -> Optional[List[ActionPreview]]:
    """
    Preview a batch without touching storage.

    Returns None when the batch is empty, the snapshot is missing, or any
    action is malformed or would be rejected.
    """
    if not actions or snapshot is None:
        return None
    try:
        parsed = parse_action_batch(list(actions))
    except ValidationError:
        return None

    state = snapshot.clone()
    resolutions = ResolutionTable()
    previews: List[ActionPreview] = []
    for action in parsed:
        outcome = plan_action(state, action, resolutions)
        if not outcome.accepted:
            return None
        commit_to_state(state, outcome, resolutions)
        previews.append(
            ActionPreview(
                action_id=outcome.action_id,
                action_type=outcome.action_type,
                summary=outcome.summary,
                created_ids=list(outcome.created_ids),
                updated_ids=list(outcome.updated_ids),
                reordered_ids=list(outcome.reordered_ids),
            )
        )
    return previews


def summarize_previews(previews: Sequence[ActionPreview]) -> str:
    """One line per preview, used as the batch summary in API responses."""
    return "\n".join(p.summary for p in previews)
