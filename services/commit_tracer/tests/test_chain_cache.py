"""
Unit tests for the chain cache.
"""

import pytest

from services.commit_tracer.chain_cache import CacheEntry, ChainCache, cache_key


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ChainCache(default_ttl=300, clock=clock)


class TestCacheEntry:
    """Test cases for CacheEntry expiry."""

    def test_expires_strictly_after_ttl(self):
        """An entry is still valid at exactly its expiry time."""
        entry = CacheEntry(data="x", cached_at=100.0, ttl=5)
        assert entry.expires_at == 105.0
        assert entry.is_expired(105.0) is False
        assert entry.is_expired(105.1) is True

    def test_cache_key_includes_scope(self):
        """Identical ids in different scopes produce different keys."""
        assert cache_key("issue", 42, 9) != cache_key("issue", 43, 9)
        assert cache_key("issue", 42, 9) == "issue:42:9"


class TestChainCache:
    """Test cases for ChainCache."""

    def test_ttl_hit_then_expiry(self, cache, clock):
        """A hit inside the TTL, then a miss that evicts the entry."""
        cache.set("k", "value", ttl=5)

        clock.advance(1)
        assert cache.get("k") == "value"
        assert cache.hits == 1

        clock.advance(5)
        assert cache.get("k") is None
        assert cache.misses == 1
        assert cache.size == 0

    def test_missing_key_counts_as_miss(self, cache):
        """Unknown keys return None and count a miss."""
        assert cache.get("nope") is None
        assert cache.get_stats() == {"size": 0, "hits": 0, "misses": 1, "hit_rate": 0.0}

    def test_default_ttl_applies(self, cache, clock):
        """Entries without an explicit TTL use the default."""
        cache.set("k", 1)
        clock.advance(299)
        assert cache.get("k") == 1
        clock.advance(2)
        assert cache.get("k") is None

    def test_clear_expired(self, cache, clock):
        """clear_expired removes only stale entries and reports the count."""
        cache.set("short", 1, ttl=1)
        cache.set("long", 2, ttl=100)
        clock.advance(10)

        assert cache.clear_expired() == 1
        assert cache.size == 1
        assert cache.get("long") == 2

    def test_clear_and_clear_all(self, cache):
        """clear drops one key, clear_all drops everything and resets counters."""
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.get("missing")

        cache.clear("a")
        assert cache.size == 1

        cache.clear_all()
        assert cache.get_stats() == {"size": 0, "hits": 0, "misses": 0, "hit_rate": 0.0}

    def test_hit_rate(self, cache):
        """hit_rate is hits over total lookups."""
        cache.set("k", 1)
        cache.get("k")
        cache.get("k")
        cache.get("k")
        cache.get("other")
        assert cache.get_stats()["hit_rate"] == 0.75

    def test_typed_accessors(self, cache, commit_factory, mr_factory, issue_factory, epic_factory):
        """Typed accessors key entities by project or group scope."""
        commit = commit_factory("a1b2c3d4e5f6")
        mr = mr_factory(500, 5)
        issue = issue_factory(900, 9)
        epic = epic_factory(70, 3)

        cache.set_commit(commit, 42)
        cache.set_commit_merge_requests(commit.id, [mr], 42)
        cache.set_merge_request(mr, 42)
        cache.set_mr_closing_issues(5, [issue], 42)
        cache.set_issue(issue, 42)
        cache.set_issue_related_mrs(9, [mr], 42)
        cache.set_epic(epic, 7)

        assert cache.get_commit(commit.id, 42) == commit
        assert cache.get_commit_merge_requests(commit.id, 42) == [mr]
        assert cache.get_merge_request(5, 42) == mr
        assert cache.get_mr_closing_issues(5, 42) == [issue]
        assert cache.get_issue(9, 42) == issue
        assert cache.get_issue_related_mrs(9, 42) == [mr]
        assert cache.get_epic(3, 7) == epic

        assert cache.get_issue(9, 43) is None
        assert cache.get_epic(3, 8) is None

    def test_empty_list_is_a_hit(self, cache):
        """A cached empty result is returned rather than treated as a miss."""
        cache.set_commit_merge_requests("a1b2c3d4", [], 42)
        assert cache.get_commit_merge_requests("a1b2c3d4", 42) == []
        assert cache.hits == 1
