"""
Planning action pipeline: shape validation, effects and preview.
"""

from storymap.actions.effects import (
    ACCEPTED,
    REJECTED,
    ActionOutcome,
    ResolutionTable,
    commit_to_state,
    contains_code_generation_intent,
    derive_id,
    plan_action,
)
from storymap.actions.preview import ActionPreview, preview_action_batch
from storymap.actions.validation import ACTION_TYPES, ParsedAction, parse_action_batch

__all__ = [
    "ACCEPTED",
    "ACTION_TYPES",
    "REJECTED",
    "ActionOutcome",
    "ActionPreview",
    "ParsedAction",
    "ResolutionTable",
    "commit_to_state",
    "contains_code_generation_intent",
    "derive_id",
    "parse_action_batch",
    "plan_action",
    "preview_action_batch",
]
