"""
Sprint-scoped cache invalidation and warming.

Tracker webhooks tell us when an issue changes or moves between
sprints, and when a sprint changes lifecycle state. Everything cached
for an affected sprint is dropped; a sprint that just closed is warmed
straight away so the first reads after closure are hits.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..shared.logging_config import CorrelationContext, get_logger
from ..shared.metrics_collector import MetricUnit, get_metrics_collector
from .cache_manager import CacheManager
from .errors import CachePartialFailureError
from .keys import CacheKeys
from .sources import SprintDataSource
from .ttl_policy import SprintState

WARM_TTL_MS = 7_200_000

SPRINT_FIELD = "Sprint"


def _split_ids(raw: Any) -> List[str]:
    """Changelog sprint values may hold several comma-separated ids."""
    if raw is None:
        return []
    return [part.strip() for part in str(raw).split(",") if part.strip()]


def _dedupe(ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(ids))


@dataclass
class EntityChangeEvent:
    """An issue changed, possibly moving between sprints."""
    issue_key: Optional[str] = None
    sprint_ids: List[str] = field(default_factory=list)
    moved_from: List[str] = field(default_factory=list)
    moved_to: List[str] = field(default_factory=list)

    def affected_sprints(self) -> List[str]:
        """Current, source and destination sprints, each once, in that order."""
        return _dedupe([*self.sprint_ids, *self.moved_from, *self.moved_to])

    @classmethod
    def from_webhook(cls, payload: Mapping[str, Any]) -> 'EntityChangeEvent':
        """Build an event from an issue-updated webhook body."""
        issue = payload.get('issue') or {}
        fields = issue.get('fields') or {}

        sprint_field = fields.get('sprint')
        if isinstance(sprint_field, dict):
            sprint_field = [sprint_field]
        current = [
            str(sprint['id']) for sprint in (sprint_field or [])
            if isinstance(sprint, dict) and sprint.get('id') is not None
        ]

        moved_from: List[str] = []
        moved_to: List[str] = []
        changelog = payload.get('changelog') or {}
        for item in changelog.get('items') or []:
            if item.get('field') != SPRINT_FIELD:
                continue
            moved_from.extend(_split_ids(item.get('from')))
            moved_to.extend(_split_ids(item.get('to')))

        return cls(
            issue_key=issue.get('key'),
            sprint_ids=_dedupe(current),
            moved_from=_dedupe(moved_from),
            moved_to=_dedupe(moved_to),
        )


@dataclass
class InvalidationResult:
    """Outcome of invalidating one sprint."""
    sprint_id: str
    deleted: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    attempted: List[str] = field(default_factory=list)
    partial: List[str] = field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())

    @property
    def success(self) -> bool:
        return not self.failed


class InvalidationOrchestrator:
    """Cascades sprint changes into cache deletions and warm-ups."""

    def __init__(self, cache_manager: CacheManager, data_source: SprintDataSource):
        self.cache_manager = cache_manager
        self.data_source = data_source
        self.logger = get_logger(__name__, 'invalidation')
        self.metrics = get_metrics_collector()

        self.stats = {
            'invalidations': 0,
            'patterns_failed': 0,
            'keys_invalidated': 0,
            'warms': 0,
            'warm_failures': 0,
        }

    async def invalidate_entity(self, sprint_id: str) -> InvalidationResult:
        """
        Drop everything cached for a sprint.

        Each pattern is deleted independently; a failure on one is
        recorded in the result and does not stop the rest.
        """
        sprint_id = str(sprint_id)
        result = InvalidationResult(sprint_id=sprint_id)

        for pattern in CacheKeys.sprint_invalidation_patterns(sprint_id):
            result.attempted.append(pattern)
            try:
                result.deleted[pattern] = await self.cache_manager.delete_pattern(pattern)
            except CachePartialFailureError as e:
                result.deleted[pattern] = e.deleted
                result.failed[pattern] = str(e)
                result.partial.append(pattern)
            except Exception as e:
                result.deleted[pattern] = 0
                result.failed[pattern] = str(e)

        self.stats['invalidations'] += 1
        self.stats['patterns_failed'] += len(result.failed)
        self.stats['keys_invalidated'] += result.total_deleted
        self.metrics.get_counter('cache_invalidations_total', 'Sprint invalidations').increment(1)

        if result.failed:
            self.logger.warning(
                f"Sprint {sprint_id} invalidation incomplete: {len(result.failed)} patterns failed",
                operation="invalidate_entity",
                sprint_id=sprint_id,
                failed_patterns=list(result.failed),
            )
        else:
            self.logger.info(
                f"Sprint {sprint_id} cache invalidated ({result.total_deleted} keys)",
                operation="invalidate_entity",
                sprint_id=sprint_id,
            )
        return result

    async def invalidate_related(self, event: EntityChangeEvent) -> Dict[str, InvalidationResult]:
        """Invalidate every sprint an issue change touches."""
        sprint_ids = event.affected_sprints()
        if not sprint_ids:
            return {}

        with CorrelationContext(inherit=True):
            results = await asyncio.gather(*(self.invalidate_entity(sid) for sid in sprint_ids))
            self.logger.info(
                f"Issue {event.issue_key} change invalidated {len(sprint_ids)} sprints",
                operation="invalidate_related",
                issue_key=event.issue_key,
                sprint_ids=sprint_ids,
            )
        return {result.sprint_id: result for result in results}

    async def warm_entity(self, sprint_id: str, params: Mapping[str, Any]) -> None:
        """
        Repopulate a sprint's issue list and comprehensive report.

        ``params`` carries the repository as ``owner``/``repo`` (the
        ``github_`` prefixed names are accepted too). Fetch or write
        failures are logged and re-raised.
        """
        sprint_id = str(sprint_id)
        owner = params.get('owner') or params.get('github_owner')
        repo = params.get('repo') or params.get('github_repo')
        if not owner or not repo:
            raise ValueError("warm_entity requires repository owner and repo")

        log = self.logger.bind(sprint_id=sprint_id)
        ttl = WARM_TTL_MS // 1000
        start = time.perf_counter()
        log.info(f"Warming sprint {sprint_id} cache", operation="warm_entity", github_owner=owner, github_repo=repo)

        try:
            issues = await self.data_source.get_sprint_issues(sprint_id)
            await self.cache_manager.set(CacheKeys.sprint_issues(sprint_id), issues, ttl=ttl)

            report_params = {
                'sprint_id': sprint_id,
                'github_owner': owner,
                'github_repo': repo,
                'include_tier1': True,
                'include_tier2': True,
                'include_tier3': True,
                'include_forward_looking': True,
                'include_enhanced_github': True,
            }
            report = await self.data_source.generate_comprehensive_report(sprint_id, report_params)
            report_key = CacheKeys.comprehensive(sprint_id, owner, repo, True, True, True, True, True)
            await self.cache_manager.set(report_key, report, ttl=ttl)
        except Exception as e:
            self.stats['warm_failures'] += 1
            log.error(f"Failed to warm sprint {sprint_id} cache: {e}", operation="warm_entity")
            raise

        self.stats['warms'] += 1
        self.metrics.get_histogram(
            'cache_warm_duration_ms', 'Sprint warm duration', MetricUnit.MILLISECONDS,
            buckets=[10, 50, 100, 500, 1000, 5000],
        ).observe(
            (time.perf_counter() - start) * 1000
        )
        log.info(f"Sprint {sprint_id} cache warmed", operation="warm_entity")

    async def handle_lifecycle_transition(
        self,
        sprint_id: str,
        new_state: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> InvalidationResult:
        """Invalidate on any state change; warm when the sprint closes."""
        with CorrelationContext(inherit=True):
            result = await self.invalidate_entity(sprint_id)

            state = new_state.value if isinstance(new_state, SprintState) else str(new_state).lower()
            if state == SprintState.CLOSED.value:
                if params is None:
                    self.logger.warning(
                        f"Sprint {sprint_id} closed but no repository given, skipping warm",
                        operation="handle_lifecycle_transition",
                        sprint_id=str(sprint_id),
                    )
                else:
                    await self.warm_entity(sprint_id, params)

        return result

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
