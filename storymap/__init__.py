"""
Storymap: product planning and build orchestration

- Story-map hierarchy (workflows, activities, steps, cards) edited through planning actions
- Dry-run preview of action batches
- Build runs that dispatch card assignments to coding agents behind approval gates

Distribution: Available as both Python library and CLI
"""

__version__ = "0.1.0"
__all__ = [
    "__version__",
]
