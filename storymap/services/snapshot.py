"""
Storymap Snapshot Service

Reads one project's planning hierarchy as a consistent ProjectState.
"""

from typing import Optional

from storymap.db.database import Database
from storymap.models.state import ProjectState
from storymap.services.base import Service, ServiceContext


class SnapshotService(Service):
    def __init__(self, context: ServiceContext, db: Database) -> None:
        super().__init__(context)
        self.db = db

    def fetch_snapshot(self, project_id: str) -> Optional[ProjectState]:
        """
        Load the project's whole map, or None when the project does not exist.

        All rows are read in one storage transaction.
        """
        bundle = self.db.read_project_bundle(project_id)
        if bundle is None:
            return None
        state = ProjectState.from_bundle(bundle)
        self.logger.debug(
            "snapshot_loaded",
            extra=self.log_extra(
                project_id=project_id,
                workflows=len(state.workflows),
                cards=len(state.cards),
            ),
        )
        return state
