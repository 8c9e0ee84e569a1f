"""
Tier-1 in-process cache.

A bounded key/value store with per-entry TTLs. Unlike an LRU it never
evicts on its own: a write of a new key into a full store fails and the
cache manager decides what to drop. Iteration order is insertion order,
which the manager uses as its "oldest first" heuristic.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, TypeVar

from .serialization import estimate_size

T = TypeVar('T')


@dataclass
class CacheEntry:
    """Cache entry with metadata."""
    key: str
    value: Any
    ttl: Optional[int]
    created_at: float
    expires_at: Optional[float]
    size_bytes: int = 0
    access_count: int = 0

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if the cache entry is expired."""
        if self.expires_at is None:
            return False
        return (time.time() if now is None else now) >= self.expires_at

    def remaining_ttl(self, now: Optional[float] = None) -> int:
        """Whole seconds left, or -1 when the entry never expires."""
        if self.expires_at is None:
            return -1
        return max(0, int(self.expires_at - (time.time() if now is None else now)))


class MemoryCache(Generic[T]):
    """Thread-safe bounded TTL cache."""

    def __init__(self, max_size: int = 1000, default_ttl: Optional[int] = 300):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self.stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'deletes': 0,
            'rejected': 0,
            'expired': 0,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _get_live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._entries[key]
            self.stats['expired'] += 1
            return None
        return entry

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Get the live entry for a key, counting a hit or miss."""
        with self._lock:
            entry = self._get_live_entry(key)
            if entry is None:
                self.stats['misses'] += 1
                return None
            entry.access_count += 1
            self.stats['hits'] += 1
            return entry

    def get(self, key: str) -> Optional[T]:
        """Get value from cache."""
        entry = self.get_entry(key)
        return entry.value if entry is not None else None

    def has(self, key: str) -> bool:
        """Check for a live key without touching hit statistics."""
        with self._lock:
            return self._get_live_entry(key) is not None

    def set(self, key: str, value: T, ttl: Optional[int] = None) -> bool:
        """
        Set value in cache.

        Returns False when the key is new and the store is full; existing
        keys are always updated in place and keep their position.
        """
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self.purge_expired()
                if len(self._entries) >= self.max_size:
                    self.stats['rejected'] += 1
                    return False

            ttl = ttl if ttl is not None else self.default_ttl
            now = time.time()
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                ttl=ttl,
                created_at=now,
                expires_at=now + ttl if ttl else None,
                size_bytes=estimate_size(value),
            )
            self.stats['sets'] += 1
            return True

    def delete(self, key: str) -> bool:
        """Delete key from cache."""
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self.stats['deletes'] += 1
            return not entry.is_expired()

    def expire(self, key: str, ttl: int) -> bool:
        """Reset the TTL of a live key."""
        with self._lock:
            entry = self._get_live_entry(key)
            if entry is None:
                return False
            now = time.time()
            entry.ttl = ttl
            entry.expires_at = now + ttl if ttl else None
            return True

    def ttl(self, key: str) -> Optional[int]:
        """Remaining TTL in seconds, -1 for no expiry, None when absent."""
        with self._lock:
            entry = self._get_live_entry(key)
            return entry.remaining_ttl() if entry is not None else None

    def keys(self) -> List[str]:
        """Live keys in insertion order."""
        with self._lock:
            self.purge_expired()
            return list(self._entries.keys())

    def purge_expired(self) -> int:
        """Drop every expired entry, returning how many were removed."""
        with self._lock:
            now = time.time()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self.stats['expired'] += len(expired)
            return len(expired)

    def clear(self) -> None:
        """Clear all cache entries."""
        with self._lock:
            self._entries.clear()

    def reset_stats(self) -> None:
        with self._lock:
            for name in self.stats:
                self.stats[name] = 0

    def memory_usage(self) -> int:
        """Estimated bytes held by live values."""
        with self._lock:
            now = time.time()
            return sum(e.size_bytes for e in self._entries.values() if not e.is_expired(now))

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total_requests = self.stats['hits'] + self.stats['misses']
            hit_rate = self.stats['hits'] / total_requests if total_requests > 0 else 0
            return {
                **self.stats,
                'size': len(self._entries),
                'max_size': self.max_size,
                'hit_rate': hit_rate,
                'total_requests': total_requests
            }
