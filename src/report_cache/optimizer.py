"""
Access-pattern driven cache optimization.

Every read reported by the cache manager is folded into a
``CachePattern`` keyed by the key's shape (ids, SHAs and issue keys
collapsed to ``*``). A periodic ``optimize`` pass evaluates rules over
those patterns and acts on the cache: stretching or shrinking TTLs,
evicting cold patterns, compressing large hot ones and preloading data
related to popular sprints through prefetch strategies.
"""

import asyncio
import re
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set

from ..shared.config import OptimizerSettings
from ..shared.logging_config import CorrelationContext, get_logger
from ..shared.metrics_collector import get_metrics_collector
from .background import BackgroundTaskRunner
from .cache_manager import CacheManager
from .errors import CacheError
from .keys import CacheKeys

MAX_SAMPLE_KEYS = 20

_ISSUE_KEY_SEGMENT = re.compile(r"(?<=:)[A-Z][A-Z0-9]*-\d+(?=:|$)")
_SHA_SEGMENT = re.compile(r"(?<=:)[a-f0-9]{7,40}(?=:|$)")
_NUMERIC_SEGMENT = re.compile(r"(?<=:)\d+(?=:|$)")

_FAMILY_TAGS = {
    CacheKeys.SPRINT: 'sprint',
    CacheKeys.COMPREHENSIVE: 'sprint',
    CacheKeys.REPOSITORY: 'repository',
    CacheKeys.ISSUE: 'issue',
}
_FACET_TAGS = {
    'commits': 'commits',
    'prs': 'pull-requests',
    'metrics': 'metrics',
    'velocity': 'velocity',
    'burndown': 'burndown',
}

PrefetchContext = Dict[str, Any]
PrefetchLoader = Callable[[str, List[str]], Awaitable[Dict[str, Any]]]


def normalize_key(key: str) -> str:
    """Collapse variable segments of a key into ``*``."""
    pattern = _ISSUE_KEY_SEGMENT.sub("*", key)
    pattern = _SHA_SEGMENT.sub("*", pattern)
    return _NUMERIC_SEGMENT.sub("*", pattern)


def extract_tags(key: str) -> List[str]:
    """Domain tags for a key, from its family and facet segments."""
    segments = key.split(":")
    tags: List[str] = []
    family_tag = _FAMILY_TAGS.get(segments[0])
    if family_tag:
        tags.append(family_tag)
    for segment in segments[1:]:
        tag = _FACET_TAGS.get(segment)
        if tag and tag not in tags:
            tags.append(tag)
    return tags


class PatternPriority(str, Enum):
    """Pattern priority buckets."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_PRIORITY_ORDER = {PatternPriority.HIGH: 0, PatternPriority.MEDIUM: 1, PatternPriority.LOW: 2}


class OptimizationAction(str, Enum):
    """What a rule does to a matching pattern."""
    PRELOAD = "preload"
    EXTEND_TTL = "extend_ttl"
    REDUCE_TTL = "reduce_ttl"
    EVICT = "evict"
    COMPRESS = "compress"


@dataclass
class CachePattern:
    """Aggregated access statistics for one key shape."""
    key_pattern: str
    frequency: int = 0
    hits: int = 0
    avg_size: float = 0.0
    last_accessed: float = field(default_factory=time.time)
    priority: PatternPriority = PatternPriority.MEDIUM
    tags: List[str] = field(default_factory=list)
    sample_keys: Deque[str] = field(default_factory=lambda: deque(maxlen=MAX_SAMPLE_KEYS))

    @property
    def hit_rate(self) -> float:
        return self.hits / self.frequency if self.frequency else 0.0

    def idle_seconds(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.last_accessed

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key_pattern': self.key_pattern,
            'frequency': self.frequency,
            'hit_rate': self.hit_rate,
            'avg_size': self.avg_size,
            'last_accessed': self.last_accessed,
            'priority': self.priority.value,
            'tags': list(self.tags),
        }


def calculate_priority(pattern: CachePattern) -> PatternPriority:
    score = pattern.frequency * 0.4 + pattern.hit_rate * 0.6
    if score > 80:
        return PatternPriority.HIGH
    if score > 40:
        return PatternPriority.MEDIUM
    return PatternPriority.LOW


def estimate_performance_gain(patterns: Iterable[CachePattern], warmed: Set[str]) -> float:
    """
    Percentage of tracked reads that land on patterns whose entries were
    kept longer or preloaded during a pass.
    """
    patterns = list(patterns)
    total = sum(p.frequency for p in patterns)
    if total == 0:
        return 0.0
    boosted = sum(p.frequency for p in patterns if p.key_pattern in warmed)
    return boosted / total * 100


@dataclass
class OptimizationRule:
    """
    Condition/action pair evaluated against every pattern.

    ``condition`` receives the pattern and the pass timestamp (epoch
    seconds). ``value`` is the TTL multiplier for TTL actions.
    """
    name: str
    condition: Callable[[CachePattern, float], bool]
    action: OptimizationAction
    value: Optional[float] = None
    enabled: bool = True
    description: str = ""


@dataclass
class PrefetchStrategy:
    """Generates keys from a warm-up context and loads their data."""
    name: str
    key_generator: Callable[[PrefetchContext], List[str]]
    data_loader: Callable[[List[str]], Awaitable[Dict[str, Any]]]
    priority: int = 1
    tags: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)


@dataclass
class OptimizationResult:
    """Outcome of one optimization pass."""
    keys_processed: int = 0
    actions_performed: Dict[str, int] = field(
        default_factory=lambda: {action.value: 0 for action in OptimizationAction}
    )
    space_saved: float = 0.0
    estimated_performance_gain: float = 0.0
    recommendations: List[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'keys_processed': self.keys_processed,
            'actions_performed': dict(self.actions_performed),
            'space_saved': self.space_saved,
            'estimated_performance_gain': self.estimated_performance_gain,
            'recommendations': list(self.recommendations),
            'timestamp': self.timestamp,
            'duration_ms': self.duration_ms,
        }


def default_rules() -> List[OptimizationRule]:
    return [
        OptimizationRule(
            name='extend-popular-keys',
            condition=lambda p, now: p.frequency > 100 and p.hit_rate > 0.8,
            action=OptimizationAction.EXTEND_TTL,
            value=1.5,
            description="Extend TTL for frequently accessed keys with high hit rates",
        ),
        OptimizationRule(
            name='evict-low-performance',
            condition=lambda p, now: p.hit_rate < 0.2 and p.idle_seconds(now) > 300,
            action=OptimizationAction.EVICT,
            description="Evict keys with low hit rates that haven't been accessed recently",
        ),
        OptimizationRule(
            name='reduce-large-stale',
            condition=lambda p, now: p.avg_size > 10000 and p.frequency < 10 and p.idle_seconds(now) > 180,
            action=OptimizationAction.REDUCE_TTL,
            value=0.5,
            description="Reduce TTL for large, infrequently accessed keys",
        ),
        OptimizationRule(
            name='preload-sprint-data',
            condition=lambda p, now: 'sprint' in p.tags and p.hit_rate > 0.6,
            action=OptimizationAction.PRELOAD,
            description="Preload related sprint data for frequently accessed sprints",
        ),
        OptimizationRule(
            name='compress-large-frequent',
            condition=lambda p, now: p.avg_size > 50000 and p.frequency > 50,
            action=OptimizationAction.COMPRESS,
            description="Compress large values that are accessed frequently",
        ),
    ]


def context_from_keys(keys: List[str]) -> PrefetchContext:
    """Recover sprint ids, repositories and issue keys from concrete keys."""
    sprint_ids: List[str] = []
    repositories: List[Dict[str, str]] = []
    issue_keys: List[str] = []

    for key in keys:
        parsed = CacheKeys.parse_key(key)
        if parsed is None:
            continue
        family, ident, facets = parsed['family'], parsed['id'], parsed['facets']
        if family in (CacheKeys.SPRINT, CacheKeys.COMPREHENSIVE) and ident not in sprint_ids:
            sprint_ids.append(ident)
        elif family == CacheKeys.REPOSITORY and facets:
            repository = {'owner': ident, 'repo': facets[0]}
            if repository not in repositories:
                repositories.append(repository)
        elif family == CacheKeys.ISSUE and ident not in issue_keys:
            issue_keys.append(ident)

    context: PrefetchContext = {}
    if sprint_ids:
        context['sprint_ids'] = sprint_ids
    if repositories:
        context['repositories'] = repositories
    if issue_keys:
        context['issue_keys'] = issue_keys
    return context


class CacheOptimizer:
    """Learns access patterns and tunes the cache accordingly."""

    def __init__(
        self,
        cache_manager: CacheManager,
        settings: Optional[OptimizerSettings] = None,
        runner: Optional[BackgroundTaskRunner] = None,
        prefetch_loader: Optional[PrefetchLoader] = None,
    ):
        self.cache_manager = cache_manager
        self.settings = settings or OptimizerSettings()
        self.runner = runner
        self.prefetch_loader = prefetch_loader
        self.logger = get_logger(__name__, 'cache_optimizer')
        self.metrics = get_metrics_collector()

        self.patterns: Dict[str, CachePattern] = {}
        self.rules: List[OptimizationRule] = default_rules()
        self.prefetch_strategies: Dict[str, PrefetchStrategy] = {}
        self.history: Deque[OptimizationResult] = deque(maxlen=self.settings.history_size)

        self.running = False
        self.worker_task: Optional[asyncio.Task] = None
        self._optimize_lock = asyncio.Lock()

        for strategy in self._default_strategies():
            self.add_prefetch_strategy(strategy)

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def _loader_for(self, strategy_name: str) -> Callable[[List[str]], Awaitable[Dict[str, Any]]]:
        async def load(keys: List[str]) -> Dict[str, Any]:
            if self.prefetch_loader is None:
                return {}
            return await self.prefetch_loader(strategy_name, keys)
        return load

    def _default_strategies(self) -> List[PrefetchStrategy]:
        def sprint_keys(context: PrefetchContext) -> List[str]:
            return [
                CacheKeys.sprint(sprint_id, facet)
                for sprint_id in context.get('sprint_ids', [])
                for facet in ('issues', 'metrics', 'velocity', 'burndown')
            ]

        def repository_keys(context: PrefetchContext) -> List[str]:
            return [
                CacheKeys.repository(repo['owner'], repo['repo'], facet)
                for repo in context.get('repositories', [])
                for facet in ('commits:recent', 'prs:open', 'contributors', 'stats')
            ]

        def issue_keys(context: PrefetchContext) -> List[str]:
            return [
                CacheKeys.issue(issue_key, facet)
                for issue_key in context.get('issue_keys', [])
                for facet in ('commits', 'prs', 'details')
            ]

        return [
            PrefetchStrategy(
                name='sprint-ecosystem',
                key_generator=sprint_keys,
                data_loader=self._loader_for('sprint-ecosystem'),
                priority=1,
                tags=['sprint'],
            ),
            PrefetchStrategy(
                name='repository-ecosystem',
                key_generator=repository_keys,
                data_loader=self._loader_for('repository-ecosystem'),
                priority=2,
                tags=['repository'],
            ),
            PrefetchStrategy(
                name='issue-correlation',
                key_generator=issue_keys,
                data_loader=self._loader_for('issue-correlation'),
                priority=3,
                tags=['issue'],
                dependencies=['sprint-ecosystem'],
            ),
        ]

    def add_rule(self, rule: OptimizationRule) -> None:
        self.rules.append(rule)
        self.logger.info(f"Registered optimization rule: {rule.name}", operation="add_rule")

    def remove_rule(self, rule_name: str) -> bool:
        for index, rule in enumerate(self.rules):
            if rule.name == rule_name:
                del self.rules[index]
                return True
        return False

    def add_prefetch_strategy(self, strategy: PrefetchStrategy) -> None:
        self.prefetch_strategies[strategy.name] = strategy

    def remove_prefetch_strategy(self, strategy_name: str) -> bool:
        return self.prefetch_strategies.pop(strategy_name, None) is not None

    # -------------------------------------------------------------------------
    # Pattern tracking
    # -------------------------------------------------------------------------

    def record_access(self, key: str, hit: bool, size: int = 0, now: Optional[float] = None) -> CachePattern:
        """Fold one read into its pattern. Signature matches the manager's access listener."""
        now = time.time() if now is None else now
        key_pattern = normalize_key(key)

        pattern = self.patterns.get(key_pattern)
        if pattern is None:
            pattern = CachePattern(key_pattern=key_pattern, last_accessed=now, tags=extract_tags(key))
            self.patterns[key_pattern] = pattern

        pattern.frequency += 1
        if hit:
            pattern.hits += 1
        if size > 0:
            pattern.avg_size = size if pattern.avg_size == 0 else (pattern.avg_size + size) / 2
        pattern.last_accessed = now
        if key not in pattern.sample_keys:
            pattern.sample_keys.append(key)
        pattern.priority = calculate_priority(pattern)
        return pattern

    def get_patterns(self) -> List[CachePattern]:
        """Tracked patterns, high priority first."""
        return sorted(self.patterns.values(), key=lambda p: _PRIORITY_ORDER[p.priority])

    # -------------------------------------------------------------------------
    # Optimization
    # -------------------------------------------------------------------------

    async def optimize(self, now: Optional[float] = None) -> OptimizationResult:
        """Run every enabled rule over every pattern."""
        async with self._optimize_lock, CorrelationContext(inherit=True):
            start = time.perf_counter()
            now = time.time() if now is None else now
            patterns = self.get_patterns()
            result = OptimizationResult(keys_processed=len(patterns), timestamp=now)
            evicted: List[str] = []
            warmed: Set[str] = set()

            for pattern in patterns:
                for rule in self.rules:
                    if not rule.enabled or not rule.condition(pattern, now):
                        continue
                    try:
                        await self._apply(rule, pattern, result)
                    except Exception as e:
                        self.logger.warning(
                            f"Failed to execute optimization rule {rule.name}: {e}",
                            operation="optimize",
                            key_pattern=pattern.key_pattern,
                        )
                        continue
                    if rule.action in (OptimizationAction.EXTEND_TTL, OptimizationAction.PRELOAD):
                        warmed.add(pattern.key_pattern)
                    if rule.action == OptimizationAction.EVICT:
                        evicted.append(pattern.key_pattern)
                        break

            result.estimated_performance_gain = estimate_performance_gain(patterns, warmed)
            for key_pattern in evicted:
                self.patterns.pop(key_pattern, None)

            result.recommendations = self.generate_recommendations(patterns, now)
            result.duration_ms = (time.perf_counter() - start) * 1000
            self.history.append(result)

            self.metrics.get_timer('cache_optimization_duration', 'Optimization pass duration').record(
                result.duration_ms / 1000
            )
            self.logger.info(
                f"Optimization pass over {len(patterns)} patterns: {result.actions_performed}",
                operation="optimize",
            )
            return result

    async def _apply(self, rule: OptimizationRule, pattern: CachePattern, result: OptimizationResult) -> None:
        action = rule.action
        if action == OptimizationAction.PRELOAD:
            await self._preload_related(pattern)
        elif action == OptimizationAction.EXTEND_TTL:
            await self._adjust_ttl(pattern, rule.value or 1.5)
        elif action == OptimizationAction.REDUCE_TTL:
            await self._adjust_ttl(pattern, rule.value or 0.5)
        elif action == OptimizationAction.EVICT:
            await self.cache_manager.delete_pattern(pattern.key_pattern)
            result.space_saved += pattern.avg_size
        elif action == OptimizationAction.COMPRESS:
            self.cache_manager.mark_compressed(pattern.key_pattern)
            result.space_saved += pattern.avg_size * 0.3

        result.actions_performed[action.value] += 1

    async def _adjust_ttl(self, pattern: CachePattern, multiplier: float) -> int:
        adjusted = 0
        for key in await self.cache_manager.keys(pattern.key_pattern):
            if await self.cache_manager.expire_by(key, multiplier):
                adjusted += 1

        self.logger.debug(
            f"Adjusted TTL of {adjusted} keys matching {pattern.key_pattern} by {multiplier}",
            operation="adjust_ttl",
        )
        return adjusted

    async def _preload_related(self, pattern: CachePattern) -> None:
        context = context_from_keys(list(pattern.sample_keys))
        strategies = [
            strategy for strategy in self._ordered_strategies()
            if set(strategy.tags) & set(pattern.tags)
        ]
        for strategy in strategies:
            try:
                await self._run_strategy(strategy, context)
            except Exception as e:
                self.logger.warning(
                    f"Failed to execute prefetch strategy {strategy.name}: {e}",
                    operation="preload",
                )

    def generate_recommendations(self, patterns: List[CachePattern], now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        recommendations = []

        high_frequency = [p for p in patterns if p.frequency > 100]
        if high_frequency:
            recommendations.append(
                f"Consider increasing cache memory allocation. "
                f"Found {len(high_frequency)} high-frequency access patterns."
            )

        low_hit_rate = [p for p in patterns if p.hit_rate < 0.3]
        if len(low_hit_rate) > 5:
            recommendations.append(
                f"Review cache strategy. {len(low_hit_rate)} patterns have low hit rates (<30%)."
            )

        large = [p for p in patterns if p.avg_size > 100000]
        if large:
            recommendations.append(
                f"Consider implementing compression for large cache entries. "
                f"Found {len(large)} patterns with average size >100KB."
            )

        stale = [p for p in patterns if p.idle_seconds(now) > 3600]
        if len(stale) > 10:
            recommendations.append(
                f"Clean up stale cache entries. {len(stale)} patterns haven't been accessed in over 1 hour."
            )

        return recommendations

    # -------------------------------------------------------------------------
    # Warming
    # -------------------------------------------------------------------------

    def _ordered_strategies(self) -> List[PrefetchStrategy]:
        """Strategies by priority, each preceded by its dependencies."""
        ordered: List[PrefetchStrategy] = []
        done = set()
        visiting = set()

        def visit(strategy: PrefetchStrategy) -> None:
            if strategy.name in done:
                return
            if strategy.name in visiting:
                self.logger.warning(f"Prefetch dependency cycle at {strategy.name}", operation="warm")
                return
            visiting.add(strategy.name)
            for dependency in strategy.dependencies:
                dependency_strategy = self.prefetch_strategies.get(dependency)
                if dependency_strategy is not None:
                    visit(dependency_strategy)
            visiting.discard(strategy.name)
            done.add(strategy.name)
            ordered.append(strategy)

        for strategy in sorted(self.prefetch_strategies.values(), key=lambda s: s.priority):
            visit(strategy)
        return ordered

    async def _run_strategy(self, strategy: PrefetchStrategy, context: PrefetchContext) -> int:
        keys = strategy.key_generator(context)
        if not keys:
            return 0

        data = await strategy.data_loader(keys)
        entries = {key: value for key, value in (data or {}).items() if value is not None}
        if entries:
            await self.cache_manager.set_many(entries, ttl=self.settings.prefetch_ttl)
        return len(entries)

    async def warm(self, context: PrefetchContext) -> Dict[str, int]:
        """
        Run every prefetch strategy against a context.

        ``context`` may hold ``sprint_ids``, ``repositories`` (dicts with
        ``owner`` and ``repo``) and ``issue_keys``. Returns the number of
        entries written per strategy; a failing strategy is logged and
        skipped.
        """
        written: Dict[str, int] = {}
        for strategy in self._ordered_strategies():
            try:
                written[strategy.name] = await self._run_strategy(strategy, context)
            except Exception as e:
                written[strategy.name] = 0
                self.logger.warning(
                    f"Failed to warm cache with strategy {strategy.name}: {e}",
                    operation="warm",
                )

        self.logger.info(f"Cache warm completed: {written}", operation="warm")
        return written

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def schedule_optimize(self) -> asyncio.Task:
        """Run one optimization pass on the background runner."""
        if self.runner is None:
            raise CacheError("schedule_optimize", RuntimeError("no background runner configured"))
        return self.runner.spawn(self.optimize(), name="cache-optimize")

    async def start(self, interval: Optional[float] = None) -> None:
        """Start the periodic optimization loop."""
        if self.running:
            self.logger.warning("Cache optimizer is already running", operation="start")
            return

        self.running = True
        self.worker_task = asyncio.create_task(self._optimizer_worker(interval or self.settings.interval_seconds))
        self.logger.info("Cache optimizer started", operation="start")

    async def stop(self) -> None:
        """Stop the periodic optimization loop."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except asyncio.CancelledError:
                pass
            self.worker_task = None

        self.logger.info("Cache optimizer stopped", operation="stop")

    async def _optimizer_worker(self, interval: float) -> None:
        while self.running:
            try:
                await asyncio.sleep(interval)
                await self.optimize()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in cache optimizer loop: {e}", operation="optimize")

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def get_history(self) -> List[OptimizationResult]:
        return list(self.history)

    def get_summary(self) -> Dict[str, Any]:
        patterns = list(self.patterns.values())
        summary: Dict[str, Any] = {
            'total_patterns': len(patterns),
            'high_priority_patterns': sum(1 for p in patterns if p.priority == PatternPriority.HIGH),
            'average_hit_rate': sum(p.hit_rate for p in patterns) / len(patterns) if patterns else 0,
            'total_space_saved': sum(result.space_saved for result in self.history),
            'total_performance_gain': sum(result.estimated_performance_gain for result in self.history),
            'recommendations': self.generate_recommendations(patterns),
        }
        if self.history:
            summary['last_optimization'] = self.history[-1].timestamp
        return summary
