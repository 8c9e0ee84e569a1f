"""
Tests for lifecycle-aware TTL resolution.
"""

import pytest
from unittest.mock import AsyncMock

from src.report_cache import SprintState, TTLPolicyResolver, ttl_for_state


class TestTTLForState:
    """Test the state -> TTL class mapping."""

    @pytest.mark.parametrize("state,expected", [
        ("active", 300_000),
        ("closed", 2_592_000_000),
        ("future", 900_000),
        ("CLOSED", 2_592_000_000),
        (SprintState.ACTIVE, 300_000),
        ("archived", 600_000),
        (None, 600_000),
        ("", 600_000),
    ])
    def test_mapping(self, state, expected):
        assert ttl_for_state(state) == expected


class TestTTLPolicyResolver:
    """Test resolution through the cache and data source."""

    @pytest.fixture
    def resolver(self, cache_manager, data_source):
        return TTLPolicyResolver(cache_manager, data_source)

    @pytest.mark.asyncio
    async def test_resolves_and_caches_state(self, resolver, cache_manager, data_source, fake_redis):
        data_source.get_sprint.return_value = {"id": "300", "state": "closed"}

        assert await resolver.resolve_ttl("300") == 2_592_000_000
        assert await resolver.resolve_ttl("300") == 2_592_000_000

        data_source.get_sprint.assert_awaited_once_with("300")
        assert await cache_manager.get("sprint:300:state") == "closed"
        assert 3590 <= fake_redis.key_ttl("sprint:300:state") <= 3600

    @pytest.mark.asyncio
    async def test_cached_state_skips_data_source(self, resolver, cache_manager, data_source):
        await cache_manager.set("sprint:5:state", "future", ttl=3600)

        assert await resolver.resolve_ttl("5") == 900_000
        data_source.get_sprint.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lookup_failure_uses_default(self, resolver, data_source):
        data_source.get_sprint.side_effect = RuntimeError("tracker unavailable")

        assert await resolver.resolve_ttl("1") == 600_000

    @pytest.mark.asyncio
    async def test_missing_sprint_uses_default(self, resolver, cache_manager, data_source):
        data_source.get_sprint.return_value = None

        assert await resolver.resolve_ttl("1") == 600_000
        assert not await cache_manager.exists("sprint:1:state")

    @pytest.mark.asyncio
    async def test_unknown_state_uses_default(self, resolver, data_source):
        data_source.get_sprint.return_value = {"state": "paused"}

        assert await resolver.resolve_ttl("1") == 600_000

    @pytest.mark.asyncio
    async def test_resolve_ttl_seconds(self, resolver):
        assert await resolver.resolve_ttl_seconds("300") == 300

    @pytest.mark.asyncio
    async def test_cache_failure_uses_default(self, cache_manager, data_source):
        cache_manager.get = AsyncMock(side_effect=RuntimeError("cache broken"))
        resolver = TTLPolicyResolver(cache_manager, data_source)

        assert await resolver.resolve_ttl("1") == 600_000
