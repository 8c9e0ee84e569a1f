"""
Sprint report cache.

Two-tier (memory + Redis) caching for sprint, issue and report data,
with lifecycle-aware TTLs, sprint-scoped invalidation, half-life
background refresh and an access-pattern optimizer.
"""

from .background import BackgroundError, BackgroundTaskRunner
from .cache_manager import BatchEntry, CacheManager, cached
from .errors import CacheError, CachePartialFailureError, CacheSerializationError
from .invalidation import EntityChangeEvent, InvalidationOrchestrator, InvalidationResult
from .key_patterns import compile_glob, matches, to_redis_match
from .keys import CacheKeys, sanitize
from .memory_store import CacheEntry, MemoryCache
from .optimizer import (
    CacheOptimizer,
    CachePattern,
    OptimizationAction,
    OptimizationResult,
    OptimizationRule,
    PatternPriority,
    PrefetchStrategy,
)
from .redis_store import RedisStore
from .refresh import BackgroundRefreshScheduler
from .serialization import deserialize, serialize
from .sources import SprintDataSource
from .stack import CacheStack, build_cache_stack
from .ttl_policy import SprintState, TTLPolicyResolver, ttl_for_state

__all__ = [
    # Manager
    'CacheManager',
    'BatchEntry',
    'cached',

    # Tiers
    'MemoryCache',
    'CacheEntry',
    'RedisStore',

    # Keys and serialization
    'CacheKeys',
    'sanitize',
    'compile_glob',
    'matches',
    'to_redis_match',
    'serialize',
    'deserialize',

    # Errors
    'CacheError',
    'CachePartialFailureError',
    'CacheSerializationError',

    # Orchestration
    'SprintDataSource',
    'SprintState',
    'TTLPolicyResolver',
    'ttl_for_state',
    'InvalidationOrchestrator',
    'InvalidationResult',
    'EntityChangeEvent',
    'BackgroundTaskRunner',
    'BackgroundError',
    'BackgroundRefreshScheduler',

    # Optimizer
    'CacheOptimizer',
    'CachePattern',
    'OptimizationAction',
    'OptimizationResult',
    'OptimizationRule',
    'PatternPriority',
    'PrefetchStrategy',

    # Assembly
    'CacheStack',
    'build_cache_stack',
]
