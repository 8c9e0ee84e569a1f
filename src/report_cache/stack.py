"""
Cache stack assembly.

Builds every cache component from settings with explicit injection and
owns their start/stop lifecycle. Nothing here is a module-level
singleton: each stack is an independent instance.
"""

from dataclasses import dataclass
from typing import Optional

from ..shared.config import Settings, get_settings
from ..shared.logging_config import get_logger
from .background import BackgroundTaskRunner
from .cache_manager import CacheManager
from .invalidation import InvalidationOrchestrator
from .optimizer import CacheOptimizer, PrefetchLoader
from .redis_store import RedisStore
from .refresh import BackgroundRefreshScheduler
from .sources import SprintDataSource
from .ttl_policy import TTLPolicyResolver

logger = get_logger(__name__, 'cache_stack')


@dataclass
class CacheStack:
    """All cache components wired together."""
    settings: Settings
    cache_manager: CacheManager
    runner: BackgroundTaskRunner
    ttl_resolver: TTLPolicyResolver
    invalidation: InvalidationOrchestrator
    refresh: BackgroundRefreshScheduler
    optimizer: CacheOptimizer

    async def start(self) -> None:
        """Connect the cache and start the optimizer loop when enabled."""
        await self.cache_manager.initialize()
        if self.settings.optimizer.enabled:
            await self.optimizer.start()
        logger.info("Cache stack started", operation="start")

    async def stop(self) -> None:
        """Stop background work, then disconnect and drop local entries."""
        await self.optimizer.stop()
        await self.runner.shutdown()
        await self.cache_manager.shutdown()
        logger.info("Cache stack stopped", operation="stop")

    def export_metrics(self) -> str:
        """Prometheus text when enabled in monitoring settings, JSON otherwise."""
        format_type = 'prometheus' if self.settings.monitoring.prometheus_enabled else 'json'
        return self.cache_manager.metrics.export_metrics(format_type)

    async def __aenter__(self) -> 'CacheStack':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()


def build_cache_stack(
    data_source: SprintDataSource,
    settings: Optional[Settings] = None,
    prefetch_loader: Optional[PrefetchLoader] = None,
    redis_store: Optional[RedisStore] = None,
) -> CacheStack:
    """
    Construct a cache stack.

    Args:
        data_source: Upstream provider of sprints, issues and reports
        settings: Application settings (defaults to ``get_settings()``)
        prefetch_loader: Loader used by the optimizer's prefetch strategies
        redis_store: Pre-built Tier-2 store, mainly for tests
    """
    settings = settings or get_settings()

    runner = BackgroundTaskRunner(error_history=settings.cache.background_error_history)
    cache_manager = CacheManager(
        config=settings.cache,
        redis_settings=settings.redis,
        redis_store=redis_store,
    )
    optimizer = CacheOptimizer(
        cache_manager,
        settings=settings.optimizer,
        runner=runner,
        prefetch_loader=prefetch_loader,
    )
    if settings.optimizer.enabled:
        cache_manager.add_access_listener(optimizer.record_access)

    return CacheStack(
        settings=settings,
        cache_manager=cache_manager,
        runner=runner,
        ttl_resolver=TTLPolicyResolver(cache_manager, data_source),
        invalidation=InvalidationOrchestrator(cache_manager, data_source),
        refresh=BackgroundRefreshScheduler(
            cache_manager,
            runner,
            single_flight=settings.cache.refresh_single_flight,
        ),
        optimizer=optimizer,
    )
