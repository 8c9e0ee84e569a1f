"""
Lifecycle-aware TTL policy.

Sprints move through future -> active -> closed. Closed sprints are
immutable and can be cached for a month; active ones churn and get five
minutes. The resolved state itself is cached for an hour.
"""

from enum import Enum
from typing import Optional

from ..shared.logging_config import get_logger
from .cache_manager import CacheManager
from .keys import CacheKeys
from .sources import SprintDataSource


class SprintState(str, Enum):
    """Sprint lifecycle state."""
    FUTURE = "future"
    ACTIVE = "active"
    CLOSED = "closed"


# TTL classes in milliseconds
ACTIVE_TTL_MS = 300_000
CLOSED_TTL_MS = 2_592_000_000
FUTURE_TTL_MS = 900_000
DEFAULT_TTL_MS = 600_000

STATE_CACHE_TTL_MS = 3_600_000

STATE_TTLS = {
    SprintState.ACTIVE: ACTIVE_TTL_MS,
    SprintState.CLOSED: CLOSED_TTL_MS,
    SprintState.FUTURE: FUTURE_TTL_MS,
}


def ttl_for_state(state: Optional[str]) -> int:
    """Map a lifecycle state to its TTL class (milliseconds)."""
    if not state:
        return DEFAULT_TTL_MS
    if isinstance(state, SprintState):
        return STATE_TTLS[state]
    try:
        return STATE_TTLS[SprintState(str(state).lower())]
    except ValueError:
        return DEFAULT_TTL_MS


class TTLPolicyResolver:
    """Resolves cache TTLs from the current sprint lifecycle state."""

    def __init__(self, cache_manager: CacheManager, data_source: SprintDataSource):
        self.cache_manager = cache_manager
        self.data_source = data_source
        self.logger = get_logger(__name__, 'ttl_policy')

    async def get_state(self, sprint_id: str) -> Optional[str]:
        """Cached lifecycle state, fetched from the data source on a miss."""
        state_key = CacheKeys.sprint_state(sprint_id)
        state = await self.cache_manager.get(state_key)
        if state:
            return state

        try:
            sprint = await self.data_source.get_sprint(sprint_id)
        except Exception as e:
            self.logger.warning(
                f"Failed to fetch sprint state for {sprint_id}: {e}",
                operation="get_state",
                sprint_id=sprint_id,
            )
            return None

        state = (sprint or {}).get('state')
        if not state:
            return None

        state = str(state).lower()
        await self.cache_manager.set(state_key, state, ttl=STATE_CACHE_TTL_MS // 1000)
        return state

    async def resolve_ttl(self, sprint_id: str) -> int:
        """TTL in milliseconds for keys scoped to a sprint."""
        try:
            state = await self.get_state(sprint_id)
        except Exception as e:
            self.logger.warning(
                f"Failed to resolve TTL for sprint {sprint_id}, using default: {e}",
                operation="resolve_ttl",
                sprint_id=sprint_id,
            )
            return DEFAULT_TTL_MS

        ttl_ms = ttl_for_state(state)
        self.logger.debug(
            f"Resolved TTL {ttl_ms}ms for sprint {sprint_id} ({state or 'unknown'})",
            operation="resolve_ttl",
            sprint_id=sprint_id,
        )
        return ttl_ms

    async def resolve_ttl_seconds(self, sprint_id: str) -> int:
        """Same as resolve_ttl, in the seconds the cache manager expects."""
        return await self.resolve_ttl(sprint_id) // 1000
