"""
Tier-2 shared store backed by Redis.

Thin async wrapper over redis-py: payloads are opaque bytes, batch
operations go through non-transactional pipelines, and key discovery
uses SCAN cursors so a pattern sweep never blocks other clients the way
KEYS would. Errors propagate; the cache manager decides whether to
degrade or raise.
"""

from typing import AsyncIterator, List, Optional, Sequence, Tuple, Union

import redis.asyncio as redis
from redis.asyncio import Redis

from ..shared.config import RedisSettings
from ..shared.logging_config import get_logger

PipelineResult = Union[bytes, int, bool, None, Exception]


def _decode_key(key: Union[bytes, str]) -> str:
    return key.decode("utf-8") if isinstance(key, bytes) else key


class RedisStore:
    """Redis-based shared cache tier."""

    def __init__(self, settings: RedisSettings, client: Optional[Redis] = None):
        self.settings = settings
        self.client: Optional[Redis] = client
        self.connected = False
        self.logger = get_logger(__name__, 'redis_store')

    @property
    def available(self) -> bool:
        """True when a client exists; individual calls may still fail."""
        return self.client is not None

    async def connect(self) -> None:
        """Create the client (if not injected) and verify it with a ping."""
        if self.client is None:
            self.client = redis.from_url(
                self.settings.redis_url,
                db=self.settings.redis_db,
                password=self.settings.redis_password,
                max_connections=self.settings.redis_pool_size,
                socket_timeout=self.settings.redis_timeout,
                socket_connect_timeout=self.settings.redis_timeout,
                decode_responses=False,  # Payloads are opaque bytes
            )

        await self.client.ping()
        self.connected = True
        self.logger.info("Connected to Redis", operation="connect")

    async def disconnect(self) -> None:
        """Close the client and its connection pool."""
        if self.client is not None:
            await self.client.aclose()
            self.client = None
            self.connected = False
            self.logger.info("Disconnected from Redis", operation="disconnect")

    async def ping(self) -> bool:
        result = await self.client.ping()
        self.connected = bool(result)
        return self.connected

    async def get(self, key: str) -> Optional[bytes]:
        return await self.client.get(key)

    async def set(self, key: str, data: bytes, ttl: int) -> None:
        await self.client.setex(key, max(1, int(ttl)), data)

    async def get_many(self, keys: Sequence[str]) -> List[PipelineResult]:
        """GET every key in one round trip; failed commands come back as exceptions."""
        async with self.client.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.get(key)
            return await pipe.execute(raise_on_error=False)

    async def set_many(self, items: Sequence[Tuple[str, bytes, int]]) -> List[PipelineResult]:
        """SETEX every (key, data, ttl) in one round trip."""
        async with self.client.pipeline(transaction=False) as pipe:
            for key, data, ttl in items:
                pipe.setex(key, max(1, int(ttl)), data)
            return await pipe.execute(raise_on_error=False)

    async def delete(self, key: str) -> int:
        return await self.client.delete(key)

    async def delete_keys(self, keys: Sequence[str]) -> List[PipelineResult]:
        """DEL each key separately so the reply tells which ones existed."""
        async with self.client.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.delete(key)
            return await pipe.execute(raise_on_error=False)

    async def exists(self, key: str) -> bool:
        return await self.client.exists(key) > 0

    async def ttl(self, key: str) -> int:
        """Remaining TTL: -2 when missing, -1 when no expiry (Redis semantics)."""
        return await self.client.ttl(key)

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self.client.expire(key, max(1, int(ttl))))

    async def scan(self, match: str, count: int = 100) -> AsyncIterator[str]:
        """Iterate keys matching a Redis pattern, one bounded SCAN page at a time."""
        async for key in self.client.scan_iter(match=match, count=count):
            yield _decode_key(key)

    async def flush(self) -> None:
        await self.client.flushdb()

    async def dbsize(self) -> int:
        return await self.client.dbsize()
