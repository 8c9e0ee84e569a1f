"""
Two-tier cache manager.

Coordinates the in-process Tier-1 store and the shared Redis Tier-2
store behind one API. Reads and writes degrade rather than raise: a
broken Redis behaves like an empty one. Only operations that promise
removal (delete, delete_pattern, clear) raise ``CacheError``.
"""

import functools
import inspect
import time
from dataclasses import dataclass
from typing import (
    Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set,
    TypeVar, Union,
)

from ..shared.config import CacheSettings, RedisSettings
from ..shared.logging_config import get_logger
from ..shared.metrics_collector import MetricsCollector, MetricUnit, get_metrics_collector, get_process_memory
from .errors import CacheError, CachePartialFailureError, CacheSerializationError
from .key_patterns import compile_glob, literal_key, matches, to_redis_match
from .keys import CacheKeys
from .memory_store import MemoryCache
from .redis_store import RedisStore
from .serialization import deserialize, serialize

T = TypeVar('T')

Fallback = Callable[[], Union[T, Awaitable[T]]]
AccessListener = Callable[[str, bool, int], None]

_MISS = object()


@dataclass
class BatchEntry:
    """One item of a set_many batch."""
    key: str
    value: Any
    ttl: Optional[int] = None


class CacheManager:
    """Two-tier cache manager coordinating memory and Redis."""

    def __init__(
        self,
        config: Optional[CacheSettings] = None,
        redis_settings: Optional[RedisSettings] = None,
        redis_store: Optional[RedisStore] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or CacheSettings()
        self.logger = get_logger(__name__, 'cache_manager')
        self.metrics = metrics or get_metrics_collector()

        self.memory_cache: MemoryCache[Any] = MemoryCache(
            max_size=self.config.memory_max_size,
            default_ttl=self.config.memory_ttl,
        )

        if redis_store is not None:
            self.redis_store: Optional[RedisStore] = redis_store
        else:
            redis_settings = redis_settings or RedisSettings()
            self.redis_store = RedisStore(redis_settings) if redis_settings.redis_enabled else None

        self.stats = self._empty_stats()
        self._access_listeners: List[AccessListener] = []
        self._compressed_patterns: List[str] = []

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'deletes': 0,
            'errors': 0,
            'evictions': 0,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Connect the shared tier. A failure leaves the cache running memory-only."""
        if self.redis_store is None:
            self.logger.info("Cache manager initialized (memory only)", operation="initialize")
            return

        try:
            await self.redis_store.connect()
            self.logger.info("Cache manager initialized", operation="initialize")
        except Exception as e:
            self._record_error('connect', None, e)
            self.logger.warning(
                f"Redis unavailable, continuing in degraded mode: {e}",
                operation="initialize",
            )

    async def shutdown(self) -> None:
        """Disconnect the shared tier and drop local entries."""
        try:
            if self.redis_store is not None:
                await self.redis_store.disconnect()
        except Exception as e:
            self.logger.error(f"Error during cache manager shutdown: {e}", operation="shutdown")
        finally:
            self.memory_cache.clear()
            self.logger.info("Cache manager shutdown completed", operation="shutdown")

    def _tier2(self) -> Optional[RedisStore]:
        if self.redis_store is not None and self.redis_store.available:
            return self.redis_store
        return None

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def add_access_listener(self, listener: AccessListener) -> None:
        """Register a callback invoked with (key, hit, size_bytes) on every read."""
        self._access_listeners.append(listener)

    def _notify_access(self, key: str, hit: bool, size: int) -> None:
        for listener in self._access_listeners:
            try:
                listener(key, hit, size)
            except Exception as e:
                self.logger.warning(f"Access listener failed for key {key}: {e}", operation="notify_access")

    def mark_compressed(self, pattern: str) -> bool:
        """Compress future Tier-2 writes for keys matching a glob."""
        if pattern in self._compressed_patterns:
            return False
        self._compressed_patterns.append(pattern)
        self.logger.info(f"Enabled compression for pattern {pattern}", operation="mark_compressed")
        return True

    def _should_compress(self, key: str) -> bool:
        return any(matches(key, pattern) for pattern in self._compressed_patterns)

    def _record_error(self, operation: str, key: Optional[str], error: BaseException) -> None:
        self.stats['errors'] += 1
        self.metrics.get_counter('cache_errors_total', 'Cache errors').increment(1, operation=operation)
        target = f" for key {key}" if key else ""
        self.logger.warning(f"Cache {operation} error{target}: {error}", operation=operation)

    # -------------------------------------------------------------------------
    # Tier-1 helpers
    # -------------------------------------------------------------------------

    def _evict_oldest(self, fraction: float) -> int:
        """Drop the oldest-inserted slice of Tier-1, sized against max_size."""
        count = max(1, int(self.memory_cache.max_size * fraction))
        victims = self.memory_cache.keys()[:count]
        for key in victims:
            self.memory_cache.delete(key)

        self.stats['evictions'] += len(victims)
        self.metrics.get_counter('cache_evictions_total', 'Tier-1 evictions').increment(len(victims))
        return len(victims)

    def _memory_set(self, key: str, value: Any, ttl: int) -> bool:
        if self.memory_cache.set(key, value, ttl):
            return True

        current = len(self.memory_cache)
        max_size = self.memory_cache.max_size
        if current >= max_size * self.config.eviction_threshold:
            self.logger.warning(
                f"Memory cache near capacity ({current}/{max_size}), clearing old entries",
                operation="set",
            )
            self._evict_oldest(self.config.eviction_fraction)
            if self.memory_cache.set(key, value, ttl):
                return True

        self.logger.warning(f"Memory cache rejected key {key}", operation="set")
        return False

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def _get_from_redis(self, key: str, ttl: Optional[int]) -> Any:
        store = self._tier2()
        if store is None:
            return _MISS

        try:
            data = await store.get(key)
        except Exception as e:
            self._record_error('get', key, e)
            return _MISS

        if data is None:
            return _MISS

        try:
            value = deserialize(data)
        except CacheSerializationError as e:
            self._record_error('deserialize', key, e)
            return _MISS

        self._memory_set(key, value, self._backfill_ttl(ttl))
        self._notify_access(key, True, len(data))
        return value

    def _backfill_ttl(self, ttl: Optional[int]) -> int:
        return min(ttl or self.config.memory_ttl, self.config.backfill_max_ttl)

    async def get(self, key: str, fallback: Optional[Fallback] = None, ttl: Optional[int] = None) -> Optional[T]:
        """
        Get a value, falling through memory -> Redis -> fallback.

        A non-None fallback result is cached under the same key and TTL.
        A fallback that raises is counted as an error and yields None.
        """
        entry = self.memory_cache.get_entry(key)
        if entry is not None:
            self.stats['hits'] += 1
            self.metrics.get_counter('cache_hits_total', 'Cache hits').increment(1, tier='memory')
            self._notify_access(key, True, entry.size_bytes)
            return entry.value

        value = await self._get_from_redis(key, ttl)
        if value is not _MISS:
            self.stats['hits'] += 1
            self.metrics.get_counter('cache_hits_total', 'Cache hits').increment(1, tier='redis')
            return value

        self.stats['misses'] += 1
        self.metrics.get_counter('cache_misses_total', 'Cache misses').increment(1)
        self._notify_access(key, False, 0)

        if fallback is None:
            return None

        try:
            result = fallback()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self._record_error('fallback', key, e)
            return None

        if result is not None:
            await self.set(key, result, ttl=ttl)
        return result

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[Any]]:
        """Get several keys with one pipelined Redis round trip for Tier-1 misses."""
        results: Dict[str, Optional[Any]] = {}
        missing: List[str] = []

        for key in dict.fromkeys(keys):
            entry = self.memory_cache.get_entry(key)
            if entry is not None:
                results[key] = entry.value
                self.stats['hits'] += 1
                self._notify_access(key, True, entry.size_bytes)
            else:
                missing.append(key)

        if not missing:
            return results

        store = self._tier2()
        replies: List[Any] = []
        if store is not None:
            try:
                replies = await store.get_many(missing)
            except Exception as e:
                self._record_error('get_many', None, e)
                replies = []

        backfill_ttl = self._backfill_ttl(None)
        for index, key in enumerate(missing):
            reply = replies[index] if index < len(replies) else None
            value = None
            if isinstance(reply, Exception):
                self._record_error('get', key, reply)
            elif reply is not None:
                try:
                    value = deserialize(reply)
                except CacheSerializationError as e:
                    self._record_error('deserialize', key, e)
                else:
                    self._memory_set(key, value, backfill_ttl)
                    results[key] = value
                    self.stats['hits'] += 1
                    self._notify_access(key, True, len(reply))
                    continue

            results[key] = None
            self.stats['misses'] += 1
            self._notify_access(key, False, 0)

        return results

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def set(self, key: str, value: T, ttl: Optional[int] = None) -> None:
        """Write to both tiers independently. Never raises."""
        ttl = ttl or self.config.memory_ttl

        try:
            self._memory_set(key, value, ttl)
        except Exception as e:
            self._record_error('memory_set', key, e)

        store = self._tier2()
        if store is not None:
            try:
                data = serialize(value, self._should_compress(key), self.config.compression_level)
                await store.set(key, data, ttl)
            except Exception as e:
                self._record_error('set', key, e)

        self.stats['sets'] += 1

    async def set_many(
        self,
        entries: Union[Mapping[str, Any], Iterable[BatchEntry]],
        ttl: Optional[int] = None,
    ) -> None:
        """
        Write a batch to both tiers.

        Accepts a mapping of key -> value (all sharing ``ttl``) or
        ``BatchEntry`` items with their own TTLs. Tier-2 writes go out in
        a single pipeline.
        """
        if isinstance(entries, Mapping):
            batch = [BatchEntry(key, value, ttl) for key, value in entries.items()]
        else:
            batch = [BatchEntry(e.key, e.value, e.ttl if e.ttl is not None else ttl) for e in entries]

        if not batch:
            return

        failures = 0
        for entry in batch:
            try:
                if not self.memory_cache.set(entry.key, entry.value, entry.ttl or self.config.memory_ttl):
                    failures += 1
            except Exception as e:
                failures += 1
                self._record_error('memory_set', entry.key, e)

        if failures > len(batch) * self.config.batch_failure_ratio:
            self.logger.warning(
                f"Memory cache batch set had {failures} failures "
                f"({len(self.memory_cache)}/{self.memory_cache.max_size}), clearing old entries",
                operation="set_many",
            )
            self._evict_oldest(self.config.batch_eviction_fraction)

        store = self._tier2()
        if store is not None:
            items = []
            for entry in batch:
                try:
                    data = serialize(entry.value, self._should_compress(entry.key), self.config.compression_level)
                except CacheSerializationError as e:
                    self._record_error('serialize', entry.key, e)
                    continue
                items.append((entry.key, data, entry.ttl or self.config.memory_ttl))

            try:
                replies = await store.set_many(items)
                errors = [reply for reply in replies if isinstance(reply, Exception)]
                if errors:
                    self.stats['errors'] += len(errors)
                    self.logger.warning(f"Redis pipeline set_many had {len(errors)} errors", operation="set_many")
            except Exception as e:
                self._record_error('set_many', None, e)

        self.stats['sets'] += len(batch)

    # -------------------------------------------------------------------------
    # Removal
    # -------------------------------------------------------------------------

    async def delete(self, key: str) -> bool:
        """
        Delete a key from both tiers.

        Raises CacheError when Redis cannot confirm the removal.
        """
        memory_deleted = self.memory_cache.delete(key)
        redis_deleted = False

        store = self._tier2()
        if store is not None:
            try:
                redis_deleted = await store.delete(key) > 0
            except Exception as e:
                self._record_error('delete', key, e)
                raise CacheError(f"delete:{key}", e) from e

        deleted = memory_deleted or redis_deleted
        if deleted:
            self.stats['deletes'] += 1
        return deleted

    async def _delete_batch(self, store: RedisStore, batch: List[str]) -> List[str]:
        replies = await store.delete_keys(batch)
        removed = []
        for key, reply in zip(batch, replies):
            if isinstance(reply, Exception):
                self._record_error('delete', key, reply)
            elif reply == 1:
                removed.append(key)
        return removed

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob (``*`` and ``?``) from both tiers.

        Returns the number of distinct keys removed. Deleting a pattern
        that matches nothing returns 0. If Redis fails midway the keys
        already removed stay removed and CachePartialFailureError reports
        how many there were. A pattern without wildcards is deleted
        directly instead of scanning Redis.
        """
        matcher = compile_glob(pattern)
        literal = literal_key(pattern)
        removed: Set[str] = set()

        for key in self.memory_cache.keys():
            if matcher.match(key) and self.memory_cache.delete(key):
                removed.add(key)

        store = self._tier2()
        if store is not None:
            batch_size = self.config.delete_batch_size
            batch: List[str] = [literal] if literal is not None else []
            try:
                if literal is None:
                    async for key in store.scan(to_redis_match(pattern), count=self.config.scan_count):
                        if not matcher.match(key):
                            continue
                        batch.append(key)
                        if len(batch) >= batch_size:
                            removed.update(await self._delete_batch(store, batch))
                            batch = []
                if batch:
                    removed.update(await self._delete_batch(store, batch))
            except Exception as e:
                self._record_error('delete_pattern', pattern, e)
                self.stats['deletes'] += len(removed)
                raise CachePartialFailureError(f"delete_pattern:{pattern}", len(removed), e) from e

        self.stats['deletes'] += len(removed)
        self.logger.debug(f"Deleted {len(removed)} keys matching {pattern}", operation="delete_pattern")
        return len(removed)

    async def clear(self) -> None:
        """Flush both tiers and reset counters. Raises CacheError if Redis cannot be flushed."""
        self.memory_cache.clear()

        store = self._tier2()
        if store is not None:
            try:
                await store.flush()
            except Exception as e:
                self._record_error('clear', None, e)
                raise CacheError("clear", e) from e

        self.stats = self._empty_stats()
        self.memory_cache.reset_stats()
        self.logger.info("Cache cleared", operation="clear")

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    async def exists(self, key: str) -> bool:
        if self.memory_cache.has(key):
            return True

        store = self._tier2()
        if store is not None:
            try:
                return await store.exists(key)
            except Exception as e:
                self._record_error('exists', key, e)
        return False

    async def ttl(self, key: str) -> int:
        """Remaining TTL in seconds, or -1 when the key is absent or never expires."""
        memory_ttl = self.memory_cache.ttl(key)
        if memory_ttl is not None:
            return memory_ttl

        store = self._tier2()
        if store is not None:
            try:
                remaining = await store.ttl(key)
                return remaining if remaining >= 0 else -1
            except Exception as e:
                self._record_error('ttl', key, e)
        return -1

    async def expire(self, key: str, ttl: int) -> bool:
        """Reset a key's TTL in whichever tiers hold it."""
        updated = self.memory_cache.expire(key, ttl)

        store = self._tier2()
        if store is not None:
            try:
                updated = await store.expire(key, ttl) or updated
            except Exception as e:
                self._record_error('expire', key, e)
        return updated

    async def expire_by(self, key: str, multiplier: float) -> bool:
        """
        Scale a key's remaining lifetime by ``multiplier``.

        Redis holds the authoritative TTL, so the new value is computed from
        it when Redis has the key. The Tier-1 copy is re-capped at
        ``backfill_max_ttl`` like any backfilled entry. Keys that never
        expire are left alone.
        """
        store = self._tier2()
        if store is not None:
            try:
                remaining = await store.ttl(key)
            except Exception as e:
                self._record_error('ttl', key, e)
                remaining = -2
            if remaining > 0:
                new_ttl = max(1, int(remaining * multiplier))
                try:
                    updated = await store.expire(key, new_ttl)
                except Exception as e:
                    self._record_error('expire', key, e)
                    return False
                if self.memory_cache.has(key):
                    self.memory_cache.expire(key, min(new_ttl, self.config.backfill_max_ttl))
                return updated
            if remaining == -1:
                return False

        remaining = self.memory_cache.ttl(key)
        if remaining is None or remaining <= 0:
            return False
        return self.memory_cache.expire(key, max(1, int(remaining * multiplier)))

    async def keys(self, pattern: str = "*") -> List[str]:
        """List keys matching a glob across both tiers (Redis via SCAN)."""
        matcher = compile_glob(pattern)
        found = {key for key in self.memory_cache.keys() if matcher.match(key)}

        store = self._tier2()
        if store is not None:
            try:
                async for key in store.scan(to_redis_match(pattern), count=self.config.scan_count):
                    if matcher.match(key):
                        found.add(key)
            except Exception as e:
                self._record_error('scan', pattern, e)

        return sorted(found)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics; ``hit_rate`` is a percentage."""
        total_requests = self.stats['hits'] + self.stats['misses']
        hit_rate = (self.stats['hits'] / total_requests) * 100 if total_requests > 0 else 0
        memory_bytes = self.memory_cache.memory_usage()
        self.metrics.set_cache_hit_rate('report_cache', hit_rate / 100)
        self.metrics.get_gauge('cache_memory_bytes', 'Tier-1 payload size', MetricUnit.BYTES).set(
            memory_bytes, tier='memory'
        )

        return {
            **self.stats,
            'total_requests': total_requests,
            'hit_rate': hit_rate,
            'keys': len(self.memory_cache),
            'memory': memory_bytes,
        }

    async def get_info(self) -> Dict[str, Any]:
        """Detailed tier information."""
        info: Dict[str, Any] = {
            'memory': {
                'keys': len(self.memory_cache),
                'size': self.memory_cache.memory_usage(),
                'max_size': self.memory_cache.max_size,
            },
            'stats': dict(self.stats),
            'process': get_process_memory(),
        }

        if self.redis_store is not None:
            store = self._tier2()
            try:
                if store is None:
                    raise CacheError("info", None)
                info['redis'] = {'connected': True, 'keys': await store.dbsize()}
            except Exception:
                info['redis'] = {'connected': False}

        return info

    async def health_check(self) -> Dict[str, Any]:
        """
        Round-trip a probe value through the cache and ping Redis.

        A memory failure makes the cache unhealthy; a Redis failure only
        downgrades it to ``degraded``.
        """
        start = time.perf_counter()
        result: Dict[str, Any] = {'healthy': True, 'status': 'healthy', 'tiers': {'memory': True}}

        probe_key = f"health_check_{time.time_ns()}"
        probe_value = {'timestamp': time.time()}
        try:
            if not self.memory_cache.set(probe_key, probe_value, 5):
                raise CacheError("health_check:set", None)
            retrieved = self.memory_cache.get(probe_key)
            if not retrieved or retrieved.get('timestamp') != probe_value['timestamp']:
                raise CacheError("health_check:get", None)
            self.memory_cache.delete(probe_key)
        except Exception as e:
            result.update(healthy=False, status='unhealthy', error=str(e))
            result['tiers']['memory'] = False

        if self.redis_store is not None:
            store = self._tier2()
            try:
                if store is None:
                    raise CacheError("ping", None)
                await store.ping()
                result['tiers']['redis'] = True
            except Exception as e:
                self.logger.warning(f"Redis health check failed: {e}", operation="health_check")
                result['tiers']['redis'] = False
                if result['healthy']:
                    result['status'] = 'degraded'

        result['latency_ms'] = (time.perf_counter() - start) * 1000
        return result


def cached(
    cache_manager: CacheManager,
    ttl: Optional[int] = None,
    key_func: Optional[Callable[..., str]] = None,
    namespace: Optional[str] = None,
):
    """Read-through caching decorator for coroutine functions."""
    def decorator(func: Callable) -> Callable:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"cached() requires a coroutine function, got {func.__name__}")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            if key_func:
                cache_key = key_func(*args, **kwargs)
            else:
                parts = [namespace or func.__name__, *args]
                parts.extend(f"{k}={v}" for k, v in sorted(kwargs.items()))
                cache_key = CacheKeys.build(*parts)

            return await cache_manager.get(cache_key, fallback=lambda: func(*args, **kwargs), ttl=ttl)

        return wrapper

    return decorator
