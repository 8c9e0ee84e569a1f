"""
Data source collaborator.

The cache never talks to trackers directly. Whatever fetches sprints,
issues and aggregated reports is handed in as an object satisfying
``SprintDataSource``.
"""

from typing import Any, Dict, Optional, Protocol, runtime_checkable


@runtime_checkable
class SprintDataSource(Protocol):
    """Upstream provider of sprint data and derived reports."""

    async def get_sprint(self, sprint_id: str) -> Optional[Dict[str, Any]]:
        """Return the sprint record (must carry a ``state`` field) or None."""
        ...

    async def get_sprint_issues(self, sprint_id: str) -> Any:
        """Return the full issue list of a sprint."""
        ...

    async def generate_comprehensive_report(self, sprint_id: str, params: Dict[str, Any]) -> Any:
        """Run the aggregation pipeline for a sprint."""
        ...
