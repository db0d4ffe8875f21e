"""
In-process TTL cache for GitLab responses used during tracing.

Keys are built from the entity kind plus its scope (project or group id)
and entity id, so identical iids in different projects never collide.
Expired entries are removed lazily on lookup or by ``clear_expired``.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from shared.models import Commit, MergeRequest, Issue, Epic, ProjectId


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL = 300


@dataclass
class CacheEntry(Generic[T]):
    data: T
    cached_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.cached_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


def cache_key(kind: str, scope: ProjectId, entity_id: Any) -> str:
    return f"{kind}:{scope}:{entity_id}"


class ChainCache:
    """
    TTL cache for commits, merge requests, issues and epics.

    Example:
        >>> cache = ChainCache(default_ttl=300)
        >>> cache.set_commit(commit, project_id=42)
        >>> cache.get_commit(commit.id, project_id=42)
    """

    def __init__(self, default_ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.time):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry[Any]] = {}
        self.hits = 0
        self.misses = 0

    # Generic operations

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            self.misses += 1
            return None

        self.hits += 1
        return entry.data

    def set(self, key: str, data: Any, ttl: Optional[float] = None):
        ttl = ttl if ttl is not None else self.default_ttl
        self._entries[key] = CacheEntry(data=data, cached_at=self._clock(), ttl=ttl)

    def clear(self, key: str):
        self._entries.pop(key, None)

    def clear_all(self):
        """Drop every entry and reset hit/miss counters."""
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def clear_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Cleared {len(expired)} expired cache entries")
        return len(expired)

    @property
    def size(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total > 0 else 0.0,
        }

    # Commits

    def get_commit(self, sha: str, project_id: ProjectId) -> Optional[Commit]:
        return self.get(cache_key("commit", project_id, sha))

    def set_commit(self, commit: Commit, project_id: ProjectId, ttl: Optional[float] = None):
        self.set(cache_key("commit", project_id, commit.id), commit, ttl)

    def get_commit_merge_requests(self, sha: str, project_id: ProjectId) -> Optional[List[MergeRequest]]:
        return self.get(cache_key("commit-mrs", project_id, sha))

    def set_commit_merge_requests(
        self, sha: str, merge_requests: List[MergeRequest], project_id: ProjectId, ttl: Optional[float] = None
    ):
        self.set(cache_key("commit-mrs", project_id, sha), list(merge_requests), ttl)

    # Merge requests

    def get_merge_request(self, iid: int, project_id: ProjectId) -> Optional[MergeRequest]:
        return self.get(cache_key("mr", project_id, iid))

    def set_merge_request(self, merge_request: MergeRequest, project_id: ProjectId, ttl: Optional[float] = None):
        self.set(cache_key("mr", project_id, merge_request.iid), merge_request, ttl)

    def get_mr_closing_issues(self, mr_iid: int, project_id: ProjectId) -> Optional[List[Issue]]:
        return self.get(cache_key("mr-closes", project_id, mr_iid))

    def set_mr_closing_issues(
        self, mr_iid: int, issues: List[Issue], project_id: ProjectId, ttl: Optional[float] = None
    ):
        self.set(cache_key("mr-closes", project_id, mr_iid), list(issues), ttl)

    # Issues

    def get_issue(self, iid: int, project_id: ProjectId) -> Optional[Issue]:
        return self.get(cache_key("issue", project_id, iid))

    def set_issue(self, issue: Issue, project_id: ProjectId, ttl: Optional[float] = None):
        self.set(cache_key("issue", project_id, issue.iid), issue, ttl)

    def get_issue_related_mrs(self, issue_iid: int, project_id: ProjectId) -> Optional[List[MergeRequest]]:
        return self.get(cache_key("issue-mrs", project_id, issue_iid))

    def set_issue_related_mrs(
        self, issue_iid: int, merge_requests: List[MergeRequest], project_id: ProjectId, ttl: Optional[float] = None
    ):
        self.set(cache_key("issue-mrs", project_id, issue_iid), list(merge_requests), ttl)

    # Epics

    def get_epic(self, iid: int, group_id: ProjectId) -> Optional[Epic]:
        return self.get(cache_key("epic", group_id, iid))

    def set_epic(self, epic: Epic, group_id: ProjectId, ttl: Optional[float] = None):
        self.set(cache_key("epic", group_id, epic.iid), epic, ttl)
