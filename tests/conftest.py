"""
Shared fixtures for the cache test suite.

Tier-2 runs against ``FakeRedis``, an in-memory stand-in for the subset
of the ``redis.asyncio`` client the cache uses, so the suite needs no
Redis server. Individual commands can be made to fail to exercise the
degradation paths.
"""

import os
import re
import time
from typing import Dict, List, Optional, Pattern, Set, Tuple
from unittest.mock import AsyncMock, Mock

os.environ["TESTING"] = "1"

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.report_cache import (
    BackgroundTaskRunner,
    CacheManager,
    RedisStore,
)
from src.shared.config import CacheSettings, OptimizerSettings, RedisSettings
from src.shared.metrics_collector import MetricsCollector


def _to_bytes(value) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


def redis_match_regex(pattern: str) -> Pattern[str]:
    """
    Compile a Redis SCAN MATCH pattern the way the server reads it.

    Supports ``*``, ``?``, ``[abc]``, ``[^abc]``, ``[a-z]`` and backslash
    escapes, both outside and inside a class.
    """
    out = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == "*":
            out.append(".*")
        elif char == "?":
            out.append(".")
        elif char == "[":
            j = i + 1
            negate = j < len(pattern) and pattern[j] == "^"
            if negate:
                j += 1
            members = []
            while j < len(pattern) and pattern[j] != "]":
                if pattern[j] == "\\" and j + 1 < len(pattern):
                    members.append(re.escape(pattern[j + 1]))
                    j += 2
                elif j + 2 < len(pattern) and pattern[j + 1] == "-" and pattern[j + 2] != "]":
                    members.append(f"{re.escape(pattern[j])}-{re.escape(pattern[j + 2])}")
                    j += 3
                else:
                    members.append(re.escape(pattern[j]))
                    j += 1
            out.append("[" + ("^" if negate else "") + "".join(members) + "]")
            i = j + 1
            continue
        else:
            out.append(re.escape(char))
        i += 1
    return re.compile("".join(out), re.DOTALL)


class FakePipeline:
    """Queues commands and replays them against FakeRedis on execute()."""

    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.commands: List[Tuple[str, tuple]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.commands = []

    def get(self, key):
        self.commands.append(("get", (key,)))
        return self

    def setex(self, key, ttl, value):
        self.commands.append(("setex", (key, ttl, value)))
        return self

    def delete(self, *keys):
        self.commands.append(("delete", keys))
        return self

    async def execute(self, raise_on_error: bool = True):
        self.redis.pipeline_executions += 1
        results = []
        for name, args in self.commands:
            try:
                results.append(await getattr(self.redis, name)(*args))
            except Exception as e:
                if raise_on_error:
                    raise
                results.append(e)
        self.commands = []
        return results


class FakeRedis:
    """In-memory async Redis double (bytes in, bytes out)."""

    def __init__(self):
        self.data: Dict[bytes, Tuple[bytes, Optional[float]]] = {}
        self.failing: Set[str] = set()
        self.fail_scan_after: Optional[int] = None
        self.calls: List[Tuple[str, tuple]] = []
        self.pipeline_executions = 0
        self.closed = False

    def fail_on(self, *operations: str) -> None:
        self.failing.update(operations)

    def recover(self) -> None:
        self.failing.clear()
        self.fail_scan_after = None

    def _check(self, operation: str, *args) -> None:
        self.calls.append((operation, args))
        if operation in self.failing:
            raise RedisConnectionError(f"{operation} failed")

    def _live(self, key: bytes) -> Optional[bytes]:
        item = self.data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and time.time() >= expires_at:
            del self.data[key]
            return None
        return value

    async def ping(self):
        self._check("ping")
        return True

    async def get(self, key):
        self._check("get", key)
        return self._live(_to_bytes(key))

    async def setex(self, key, ttl, value):
        self._check("setex", key, ttl)
        self.data[_to_bytes(key)] = (_to_bytes(value), time.time() + int(ttl))
        return True

    async def delete(self, *keys):
        self._check("delete", *keys)
        removed = 0
        for key in keys:
            key = _to_bytes(key)
            if self._live(key) is not None:
                del self.data[key]
                removed += 1
        return removed

    async def exists(self, *keys):
        self._check("exists", *keys)
        return sum(1 for key in keys if self._live(_to_bytes(key)) is not None)

    async def ttl(self, key):
        self._check("ttl", key)
        key = _to_bytes(key)
        if self._live(key) is None:
            return -2
        expires_at = self.data[key][1]
        if expires_at is None:
            return -1
        return int(round(expires_at - time.time()))

    async def expire(self, key, ttl):
        self._check("expire", key, ttl)
        key = _to_bytes(key)
        if self._live(key) is None:
            return False
        self.data[key] = (self.data[key][0], time.time() + int(ttl))
        return True

    async def flushdb(self):
        self._check("flushdb")
        self.data.clear()
        return True

    async def dbsize(self):
        self._check("dbsize")
        return len(self.data)

    async def aclose(self):
        self.closed = True

    async def scan_iter(self, match=None, count=None):
        self._check("scan", match, count)
        matcher = redis_match_regex(match or "*")
        yielded = 0
        for key in list(self.data):
            if self._live(key) is None:
                continue
            if not matcher.fullmatch(key.decode("utf-8")):
                continue
            if self.fail_scan_after is not None and yielded >= self.fail_scan_after:
                raise RedisConnectionError("scan interrupted")
            yielded += 1
            yield key

    def pipeline(self, transaction: bool = True):
        self.calls.append(("pipeline", (transaction,)))
        return FakePipeline(self)

    def put(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        """Seed a raw payload without recording a call."""
        expires_at = time.time() + ttl if ttl else None
        self.data[key.encode("utf-8")] = (value, expires_at)

    def raw(self, key: str) -> Optional[bytes]:
        return self._live(key.encode("utf-8"))

    def key_ttl(self, key: str) -> Optional[float]:
        item = self.data.get(key.encode("utf-8"))
        if item is None or item[1] is None:
            return None
        return item[1] - time.time()


@pytest.fixture(autouse=True)
def reset_metrics():
    """Give every test a fresh metrics collector."""
    MetricsCollector.reset_instance()
    yield
    MetricsCollector.reset_instance()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_store(fake_redis):
    return RedisStore(RedisSettings(), client=fake_redis)


@pytest.fixture
def cache_settings():
    return CacheSettings(memory_max_size=100, memory_ttl=300)


@pytest.fixture
def optimizer_settings():
    return OptimizerSettings(interval_seconds=1, history_size=50)


@pytest.fixture
def cache_manager(cache_settings, redis_store):
    return CacheManager(config=cache_settings, redis_store=redis_store)


@pytest.fixture
def memory_only_manager(cache_settings):
    return CacheManager(config=cache_settings, redis_settings=RedisSettings(redis_enabled=False))


@pytest.fixture
def runner():
    return BackgroundTaskRunner(error_history=10)


@pytest.fixture
def data_source():
    """Mock sprint data source."""
    source = Mock()
    source.get_sprint = AsyncMock(return_value={"id": "300", "state": "active"})
    source.get_sprint_issues = AsyncMock(return_value=[{"key": "PROJ-1"}, {"key": "PROJ-2"}])
    source.generate_comprehensive_report = AsyncMock(return_value={"summary": "ok"})
    return source
