"""
Tests for the access-pattern optimizer.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from src.report_cache import (
    CacheError,
    CacheOptimizer,
    OptimizationAction,
    OptimizationRule,
    PatternPriority,
    PrefetchStrategy,
)
from src.report_cache.optimizer import (
    calculate_priority,
    context_from_keys,
    estimate_performance_gain,
    extract_tags,
    normalize_key,
    CachePattern,
)

NOW = 1_700_000_000.0


@pytest.fixture
def optimizer(cache_manager, optimizer_settings, runner):
    return CacheOptimizer(cache_manager, settings=optimizer_settings, runner=runner)


def record(optimizer, key, hits, misses=0, size=100, now=NOW):
    for _ in range(hits):
        optimizer.record_access(key, True, size, now=now)
    for _ in range(misses):
        optimizer.record_access(key, False, 0, now=now)


class TestPatternExtraction:
    """Test key normalization and tagging."""

    @pytest.mark.parametrize("key,expected", [
        ("sprint:300:issues:all:100", "sprint:*:issues:all:*"),
        ("issue:PROJ-123:commits", "issue:*:commits"),
        ("repo:octo:cat:commit:a1b2c3d", "repo:octo:cat:commit:*"),
        ("sprint:300:state", "sprint:*:state"),
        ("comprehensive:42:octo:cat:true:true", "comprehensive:*:octo:cat:true:true"),
        ("sprint:12abc:state", "sprint:12abc:state"),
    ])
    def test_normalize_key(self, key, expected):
        assert normalize_key(key) == expected

    def test_extract_tags(self):
        assert extract_tags("sprint:1:metrics:velocity") == ["sprint", "metrics", "velocity"]
        assert extract_tags("repo:o:r:prs:open") == ["repository", "pull-requests"]
        assert extract_tags("issue:PROJ-1:commits") == ["issue", "commits"]
        assert extract_tags("health") == []

    def test_context_from_keys(self):
        context = context_from_keys([
            "sprint:1:state",
            "comprehensive:2:o:r",
            "sprint:1:issues",
            "repo:octo:cat:stats",
            "issue:PROJ-9:details",
        ])

        assert context == {
            'sprint_ids': ["1", "2"],
            'repositories': [{'owner': "octo", 'repo': "cat"}],
            'issue_keys': ["PROJ-9"],
        }


class TestRecordAccess:
    """Test folding reads into patterns."""

    def test_hit_rate_and_frequency(self, optimizer):
        record(optimizer, "sprint:1:state", hits=3, misses=1)
        record(optimizer, "sprint:2:state", hits=4)

        pattern = optimizer.patterns["sprint:*:state"]
        assert pattern.frequency == 8
        assert pattern.hit_rate == 7 / 8
        assert list(pattern.sample_keys) == ["sprint:1:state", "sprint:2:state"]
        assert pattern.tags == ["sprint"]

    def test_average_size_tracks_recent_sizes(self, optimizer):
        optimizer.record_access("repo:o:r:stats", True, 1000)
        optimizer.record_access("repo:o:r:stats", True, 3000)
        optimizer.record_access("repo:o:r:stats", False, 0)

        assert optimizer.patterns["repo:o:r:stats"].avg_size == 2000

    def test_priority(self, optimizer):
        record(optimizer, "sprint:1:state", hits=250)
        record(optimizer, "issue:PROJ-1:details", hits=120)
        record(optimizer, "repo:o:r:stats", hits=5)

        assert optimizer.patterns["sprint:*:state"].priority == PatternPriority.HIGH
        assert optimizer.patterns["issue:*:details"].priority == PatternPriority.MEDIUM
        assert optimizer.patterns["repo:o:r:stats"].priority == PatternPriority.LOW
        assert [p.priority for p in optimizer.get_patterns()] == [
            PatternPriority.HIGH, PatternPriority.MEDIUM, PatternPriority.LOW,
        ]

    def test_calculate_priority_score(self):
        pattern = CachePattern(key_pattern="k", frequency=200, hits=200)
        assert calculate_priority(pattern) == PatternPriority.HIGH

    @pytest.mark.asyncio
    async def test_manager_reads_feed_the_optimizer(self, optimizer, cache_manager):
        cache_manager.add_access_listener(optimizer.record_access)

        await cache_manager.set("sprint:5:state", "active")
        await cache_manager.get("sprint:5:state")
        await cache_manager.get("sprint:6:state")

        pattern = optimizer.patterns["sprint:*:state"]
        assert pattern.frequency == 2
        assert pattern.hits == 1


class TestOptimize:
    """Test rule evaluation."""

    @pytest.mark.asyncio
    async def test_popular_pattern_gets_ttl_extended(self, optimizer, cache_manager, fake_redis):
        await cache_manager.set("sprint:1:issues:all:100", [], ttl=100)
        record(optimizer, "sprint:1:issues:all:100", hits=150, misses=5)

        result = await optimizer.optimize(now=NOW)

        assert result.actions_performed['extend_ttl'] == 1
        assert result.actions_performed['evict'] == 0
        assert 140 <= await cache_manager.ttl("sprint:1:issues:all:100") <= 150
        assert fake_redis.key_ttl("sprint:1:issues:all:100") > 140

    @pytest.mark.asyncio
    async def test_extending_long_lived_redis_key_never_shortens_it(self, optimizer, cache_manager, fake_redis):
        key = "sprint:9:issues:all:100"
        fake_redis.put(key, b"[]", ttl=2_592_000)
        await cache_manager.get(key)
        record(optimizer, key, hits=150, misses=5)

        result = await optimizer.optimize(now=NOW)

        assert result.actions_performed['extend_ttl'] == 1
        assert fake_redis.key_ttl(key) >= 2_592_000
        assert await cache_manager.ttl(key) <= 300

    @pytest.mark.asyncio
    async def test_performance_gain_counts_reads_on_warmed_patterns(self, optimizer):
        record(optimizer, "sprint:1:issues:all:100", hits=150, misses=10)
        record(optimizer, "repo:o:r:stats", hits=20, misses=20)

        result = await optimizer.optimize(now=NOW)

        assert result.estimated_performance_gain == pytest.approx(160 / 200 * 100)
        assert result.to_dict()['estimated_performance_gain'] == result.estimated_performance_gain

    def test_performance_gain_without_reads(self):
        assert estimate_performance_gain([], {"sprint:*:state"}) == 0.0
        assert estimate_performance_gain([CachePattern(key_pattern="repo:*")], set()) == 0.0

    @pytest.mark.asyncio
    async def test_cold_pattern_is_evicted(self, optimizer, cache_manager):
        await cache_manager.set("repo:o:r:commits:recent", [])
        await cache_manager.set("repo:o:r:stats", {})
        record(optimizer, "repo:o:r:commits:recent", hits=1, misses=9, now=NOW - 600)

        result = await optimizer.optimize(now=NOW)

        assert result.actions_performed['evict'] == 1
        assert result.actions_performed['extend_ttl'] == 0
        assert not await cache_manager.exists("repo:o:r:commits:recent")
        assert await cache_manager.exists("repo:o:r:stats")
        assert "repo:o:r:commits:recent" not in optimizer.patterns
        assert result.space_saved == 100

    @pytest.mark.asyncio
    async def test_recently_used_cold_pattern_is_kept(self, optimizer, cache_manager):
        await cache_manager.set("repo:o:r:stats", {})
        record(optimizer, "repo:o:r:stats", hits=0, misses=5, now=NOW - 60)

        result = await optimizer.optimize(now=NOW)

        assert result.actions_performed['evict'] == 0
        assert await cache_manager.exists("repo:o:r:stats")

    @pytest.mark.asyncio
    async def test_large_stale_pattern_gets_ttl_reduced(self, optimizer, cache_manager):
        await cache_manager.set("repo:o:r:contributors", ["x"], ttl=1000)
        record(optimizer, "repo:o:r:contributors", hits=5, size=20000, now=NOW - 200)

        result = await optimizer.optimize(now=NOW)

        assert result.actions_performed['reduce_ttl'] == 1
        assert await cache_manager.ttl("repo:o:r:contributors") <= 500

    @pytest.mark.asyncio
    async def test_large_frequent_pattern_is_compressed(self, optimizer, cache_manager):
        record(optimizer, "comprehensive:1:o:r", hits=60, size=80000)

        result = await optimizer.optimize(now=NOW)

        assert result.actions_performed['compress'] == 1
        assert result.space_saved == pytest.approx(80000 * 0.3)
        assert "comprehensive:*:o:r" in cache_manager._compressed_patterns

    @pytest.mark.asyncio
    async def test_hot_sprint_pattern_preloads_related_data(self, cache_manager, optimizer_settings, runner):
        loader = AsyncMock(return_value={"sprint:7:velocity": 30, "sprint:7:burndown": None})
        optimizer = CacheOptimizer(
            cache_manager,
            settings=optimizer_settings,
            runner=runner,
            prefetch_loader=loader,
        )
        record(optimizer, "sprint:7:state", hits=8, misses=2)

        result = await optimizer.optimize(now=NOW)

        assert result.actions_performed['preload'] == 1
        loader.assert_awaited_once_with("sprint-ecosystem", [
            "sprint:7:issues", "sprint:7:metrics", "sprint:7:velocity", "sprint:7:burndown",
        ])
        assert await cache_manager.get("sprint:7:velocity") == 30
        assert not await cache_manager.exists("sprint:7:burndown")
        assert await cache_manager.ttl("sprint:7:velocity") == pytest.approx(1800, abs=2)

    @pytest.mark.asyncio
    async def test_failing_rule_does_not_stop_the_pass(self, optimizer):
        optimizer.add_rule(OptimizationRule(
            name='broken',
            condition=lambda p, now: True,
            action=OptimizationAction.EVICT,
        ))
        optimizer.cache_manager.delete_pattern = AsyncMock(side_effect=CacheError("delete_pattern"))
        record(optimizer, "sprint:1:state", hits=1)

        result = await optimizer.optimize(now=NOW)

        assert result.actions_performed['evict'] == 0
        assert "sprint:*:state" in optimizer.patterns

    @pytest.mark.asyncio
    async def test_disabled_and_removed_rules(self, optimizer, cache_manager):
        await cache_manager.set("repo:o:r:stats", {})
        record(optimizer, "repo:o:r:stats", hits=0, misses=5, now=NOW - 600)
        assert optimizer.remove_rule('evict-low-performance')
        assert not optimizer.remove_rule('evict-low-performance')

        result = await optimizer.optimize(now=NOW)

        assert result.actions_performed['evict'] == 0

    @pytest.mark.asyncio
    async def test_recommendations(self, optimizer):
        for i in range(6):
            record(optimizer, f"repo:o:r:facet{i}", hits=0, misses=1, now=NOW - 60)
        record(optimizer, "sprint:1:state", hits=150)
        record(optimizer, "comprehensive:1:o:r", hits=1, size=200000)

        result = await optimizer.optimize(now=NOW)

        assert any("high-frequency" in r for r in result.recommendations)
        assert any("low hit rates" in r for r in result.recommendations)
        assert any(">100KB" in r for r in result.recommendations)
        assert not any("stale" in r for r in result.recommendations)

    @pytest.mark.asyncio
    async def test_history_is_capped(self, cache_manager, runner):
        from src.shared.config import OptimizerSettings

        optimizer = CacheOptimizer(cache_manager, settings=OptimizerSettings(history_size=3), runner=runner)
        for _ in range(5):
            await optimizer.optimize(now=NOW)

        assert len(optimizer.get_history()) == 3

    @pytest.mark.asyncio
    async def test_summary(self, optimizer):
        record(optimizer, "sprint:1:state", hits=250)
        record(optimizer, "repo:o:r:stats", hits=1, misses=1)
        await optimizer.optimize(now=NOW)

        summary = optimizer.get_summary()

        assert summary['total_patterns'] == 2
        assert summary['high_priority_patterns'] == 1
        assert summary['average_hit_rate'] == pytest.approx(0.75)
        assert summary['total_performance_gain'] == pytest.approx(250 / 252 * 100)
        assert summary['last_optimization'] == NOW


class TestWarm:
    """Test strategy-driven warming."""

    @pytest.mark.asyncio
    async def test_strategies_run_in_priority_order(self, cache_manager, optimizer_settings, runner):
        loader = AsyncMock(side_effect=lambda name, keys: {key: name for key in keys})
        optimizer = CacheOptimizer(cache_manager, settings=optimizer_settings, runner=runner, prefetch_loader=loader)

        written = await optimizer.warm({
            'sprint_ids': ["1"],
            'repositories': [{'owner': "o", 'repo': "r"}],
            'issue_keys': ["PROJ-1", "PROJ-2"],
        })

        assert written == {'sprint-ecosystem': 4, 'repository-ecosystem': 4, 'issue-correlation': 6}
        assert [c.args[0] for c in loader.await_args_list] == [
            'sprint-ecosystem', 'repository-ecosystem', 'issue-correlation',
        ]
        assert await cache_manager.get("repo:o:r:prs:open") == 'repository-ecosystem'
        assert await cache_manager.get("issue:PROJ-2:details") == 'issue-correlation'

    @pytest.mark.asyncio
    async def test_dependencies_run_first(self, optimizer):
        order = []

        def strategy(name, priority, dependencies=()):
            async def load(keys):
                order.append(name)
                return {}
            return PrefetchStrategy(
                name=name,
                key_generator=lambda context: [f"{name}:key"],
                data_loader=load,
                priority=priority,
                dependencies=list(dependencies),
            )

        for name in ('sprint-ecosystem', 'repository-ecosystem', 'issue-correlation'):
            optimizer.remove_prefetch_strategy(name)
        optimizer.add_prefetch_strategy(strategy('late-base', 9))
        optimizer.add_prefetch_strategy(strategy('early', 1, dependencies=['late-base']))
        optimizer.add_prefetch_strategy(strategy('middle', 5))

        await optimizer.warm({})

        assert order == ['late-base', 'early', 'middle']

    @pytest.mark.asyncio
    async def test_failing_strategy_is_skipped(self, cache_manager, optimizer_settings, runner):
        async def loader(name, keys):
            if name == 'sprint-ecosystem':
                raise RuntimeError("tracker down")
            return {key: 1 for key in keys}

        optimizer = CacheOptimizer(cache_manager, settings=optimizer_settings, runner=runner, prefetch_loader=loader)

        written = await optimizer.warm({'sprint_ids': ["1"], 'issue_keys': ["PROJ-1"]})

        assert written['sprint-ecosystem'] == 0
        assert written['issue-correlation'] == 3

    @pytest.mark.asyncio
    async def test_without_loader_nothing_is_written(self, optimizer, cache_manager):
        written = await optimizer.warm({'sprint_ids': ["1"]})

        assert written['sprint-ecosystem'] == 0
        assert await cache_manager.keys() == []


class TestScheduling:
    """Test the periodic loop and background passes."""

    @pytest.mark.asyncio
    async def test_schedule_optimize_runs_on_runner(self, optimizer, runner):
        optimizer.schedule_optimize()
        await runner.drain()

        assert len(optimizer.get_history()) == 1

    def test_schedule_optimize_requires_runner(self, cache_manager):
        optimizer = CacheOptimizer(cache_manager)

        with pytest.raises(CacheError):
            optimizer.schedule_optimize()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, optimizer):
        await optimizer.start(interval=0.01)
        assert optimizer.running

        await asyncio.sleep(0.1)
        await optimizer.stop()

        assert not optimizer.running
        assert optimizer.worker_task is None
        assert len(optimizer.get_history()) >= 1
