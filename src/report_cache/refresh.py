"""
Stale-while-revalidate refresh.

Values stored through ``BackgroundRefreshScheduler.store`` carry a
``{key}:metadata`` record with their creation time. Once an entry is
past half its TTL, the next ``schedule_refresh`` call recomputes it on
the background runner while callers keep reading the old value.
"""

import inspect
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from ..shared.logging_config import CorrelationContext, get_logger
from ..shared.metrics_collector import get_metrics_collector
from .background import BackgroundTaskRunner
from .cache_manager import CacheManager
from .keys import CacheKeys

RefreshFn = Callable[[], Union[Any, Awaitable[Any]]]


def _now_ms() -> int:
    return int(time.time() * 1000)


class BackgroundRefreshScheduler:
    """Half-life refresh of cached values on a background runner."""

    def __init__(
        self,
        cache_manager: CacheManager,
        runner: BackgroundTaskRunner,
        single_flight: bool = True,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.cache_manager = cache_manager
        self.runner = runner
        self.single_flight = single_flight
        self.clock = clock or _now_ms
        self.logger = get_logger(__name__, 'refresh')
        self.metrics = get_metrics_collector()

        self._in_flight: Set[str] = set()
        self.stats = {
            'scheduled': 0,
            'completed': 0,
            'failed': 0,
            'skipped_fresh': 0,
            'skipped_no_metadata': 0,
            'skipped_in_flight': 0,
        }

    @staticmethod
    def _ttl_seconds(ttl_ms: int) -> int:
        return max(1, int(ttl_ms) // 1000)

    async def store(self, key: str, value: Any, ttl_ms: int) -> None:
        """Write a value together with its creation metadata."""
        ttl = self._ttl_seconds(ttl_ms)
        await self.cache_manager.set(key, value, ttl=ttl)
        await self.cache_manager.set(CacheKeys.metadata(key), {'createdAt': self.clock()}, ttl=ttl)

    def is_refreshing(self, key: str) -> bool:
        return key in self._in_flight

    async def schedule_refresh(self, key: str, refresh_fn: RefreshFn, ttl_ms: int) -> bool:
        """
        Spawn a refresh when the entry is older than half its TTL.

        Returns True when a refresh was scheduled. Nothing happens when
        the metadata is missing, the entry is still young, or (with
        single-flight on) a refresh for the key is already running.
        """
        metadata = await self.cache_manager.get(CacheKeys.metadata(key))
        if not isinstance(metadata, dict) or 'createdAt' not in metadata:
            self.stats['skipped_no_metadata'] += 1
            return False

        try:
            created_at = float(metadata['createdAt'])
        except (TypeError, ValueError):
            self.stats['skipped_no_metadata'] += 1
            return False

        age = self.clock() - created_at
        if age <= ttl_ms / 2:
            self.stats['skipped_fresh'] += 1
            return False

        if self.single_flight and key in self._in_flight:
            self.stats['skipped_in_flight'] += 1
            return False

        self._in_flight.add(key)
        self.stats['scheduled'] += 1
        self.runner.spawn(self._refresh(key, refresh_fn, ttl_ms), name=f"refresh:{key}")
        self.logger.debug(
            f"Scheduled refresh of {key} (age {int(age)}ms, ttl {ttl_ms}ms)",
            operation="schedule_refresh",
            cache_key=key,
        )
        return True

    async def _refresh(self, key: str, refresh_fn: RefreshFn, ttl_ms: int) -> None:
        start = time.perf_counter()
        with CorrelationContext(inherit=True):
            try:
                self.logger.info(f"Background refresh started for {key}", operation="refresh", cache_key=key)
                value = refresh_fn()
                if inspect.isawaitable(value):
                    value = await value
                await self.store(key, value, ttl_ms)
                self.stats['completed'] += 1
                self.metrics.get_timer('cache_refresh_duration', 'Background refresh duration').record(
                    time.perf_counter() - start
                )
                self.logger.info(f"Background refresh completed for {key}", operation="refresh", cache_key=key)
            except Exception as e:
                self.stats['failed'] += 1
                self.logger.warning(f"Background refresh failed for {key}: {e}", operation="refresh", cache_key=key)
            finally:
                self._in_flight.discard(key)

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, 'in_flight': len(self._in_flight)}
