"""
Cache key schema.

Key format: {family}:{id}:{facet}[:{facet}...]

Where:
- family: "sprint", "comprehensive", "repo", "issue"
- id: sprint id, repository owner/name or issue key
- facet: "issues", "metrics", "state", parameter signature parts, ...

Variable segments are sanitized so an identifier can never introduce an
extra delimiter or a glob wildcard into a key.
"""

import re
from typing import List, Optional, Union

Part = Union[str, int, bool]

_UNSAFE_SEGMENT_CHARS = re.compile(r"[:*?\[\]\\]")

METADATA_SUFFIX = "metadata"


def sanitize(part: Part) -> str:
    """Render a key segment, replacing delimiters and wildcards with ``_``."""
    if isinstance(part, bool):
        text = "true" if part else "false"
    else:
        text = str(part)
    return _UNSAFE_SEGMENT_CHARS.sub("_", text)


class CacheKeys:
    """Cache key generator following a consistent naming convention."""

    SPRINT = "sprint"
    COMPREHENSIVE = "comprehensive"
    REPOSITORY = "repo"
    ISSUE = "issue"

    @staticmethod
    def build(*parts: Part) -> str:
        """Join sanitized segments with ``:``."""
        return ":".join(sanitize(part) for part in parts)

    @classmethod
    def sprint(cls, sprint_id: Part, suffix: Optional[str] = None) -> str:
        """Key for sprint data, optionally with a raw (trusted) suffix."""
        base = cls.build(cls.SPRINT, sprint_id)
        return f"{base}:{suffix}" if suffix else base

    @classmethod
    def sprint_issues(cls, sprint_id: Part, status: str = "all", max_results: int = 100) -> str:
        """Key for a sprint's issue list."""
        return cls.build(cls.SPRINT, sprint_id, "issues", status, max_results)

    @classmethod
    def sprint_metrics(cls, sprint_id: Part, facet: str) -> str:
        """Key for computed sprint metrics (velocity, burndown, ...)."""
        return cls.build(cls.SPRINT, sprint_id, "metrics", facet)

    @classmethod
    def sprint_state(cls, sprint_id: Part) -> str:
        """Key for the cached sprint lifecycle state."""
        return cls.build(cls.SPRINT, sprint_id, "state")

    @classmethod
    def comprehensive(cls, sprint_id: Part, owner: str, repo: str, *flags: bool) -> str:
        """Key for the comprehensive (aggregate) sprint report."""
        return cls.build(cls.COMPREHENSIVE, sprint_id, owner, repo, *flags)

    @classmethod
    def repository(cls, owner: str, repo: str, suffix: Optional[str] = None) -> str:
        """Key for repository data."""
        base = cls.build(cls.REPOSITORY, owner, repo)
        return f"{base}:{suffix}" if suffix else base

    @classmethod
    def issue(cls, issue_key: str, suffix: Optional[str] = None) -> str:
        """Key for issue data."""
        base = cls.build(cls.ISSUE, issue_key)
        return f"{base}:{suffix}" if suffix else base

    @staticmethod
    def metadata(key: str) -> str:
        """Key holding creation metadata for another key."""
        return f"{key}:{METADATA_SUFFIX}"

    @classmethod
    def sprint_invalidation_patterns(cls, sprint_id: Part) -> List[str]:
        """Glob patterns covering everything derived from a sprint."""
        sid = sanitize(sprint_id)
        return [
            f"{cls.SPRINT}:{sid}:issues:*",
            f"{cls.SPRINT}:{sid}:metrics:*",
            f"{cls.COMPREHENSIVE}:{sid}:*",
            f"{cls.SPRINT}:{sid}:state",
        ]

    @classmethod
    def parse_key(cls, key: str) -> Optional[dict]:
        """
        Parse a key into family / id / facets.

        Returns None for keys with fewer than two segments.
        """
        parts = key.split(":")
        if len(parts) < 2:
            return None
        return {
            "family": parts[0],
            "id": parts[1],
            "facets": parts[2:],
        }
