"""
Unit tests for the feed monitor.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from config.projects import MonitorConfigLoader
from shared.events import CommitDetectedEvent, EventType, MonitorLifecycleEvent, PollErrorEvent
from shared.gitlab_client import GitLabAPIError, GitLabClient, Page
from services.feed_monitor.monitor import FeedMonitor, state_key


def sha(n):
    return f"{n:040x}"


@pytest.fixture
def client():
    mock = MagicMock(spec=GitLabClient)
    mock.list_commits.return_value = Page(items=[])
    return mock


@pytest.fixture
def monitor(client, projects_file):
    return FeedMonitor(client, MonitorConfigLoader(projects_file), initial_load_limit=50, failure_alert_threshold=3)


@pytest.fixture
def serve(client, commit_factory):
    """Make ``list_commits`` return the given SHAs, newest first."""
    def _serve(*shas, author="Jane Developer"):
        client.list_commits.return_value = Page(items=[commit_factory(s, author=author) for s in shas])
    return _serve


def detected(subscription):
    return [e.commit.sha for e in subscription.drain() if isinstance(e, CommitDetectedEvent)]


class TestMonitorState:
    """Test cases for the per-branch state table."""

    def test_state_key(self):
        """Keys combine project id and branch."""
        assert state_key(42, "main") == "42:main"

    def test_update_and_reset(self, monitor):
        """Baselines can be set manually and forgotten."""
        monitor.update_last_commit(42, "main", sha(1))
        state = monitor.get_state(42, "main")
        assert state.last_commit_sha == sha(1)
        assert state.phase == "idle"
        assert len(monitor.get_all_states()) == 1

        monitor.reset_state(42, "main")
        assert monitor.get_state(42, "main") is None

        monitor.update_last_commit(42, "develop", sha(2))
        monitor.reset_all_states()
        assert monitor.get_all_states() == []

    def test_stats(self, monitor):
        """Stats count enabled projects and their branches."""
        stats = monitor.get_stats()
        assert stats.is_running is False
        assert stats.total_projects == 2
        assert stats.enabled_projects == 1
        assert stats.total_branches == 1
        assert stats.total_commits_discovered == 0


class TestPolling:
    """Test cases for branch polling."""

    @pytest.mark.asyncio
    async def test_initial_load_is_bounded_and_oldest_first(self, monitor, serve):
        """A fresh branch emits at most the initial load limit, oldest first."""
        shas = [sha(n) for n in range(60, 0, -1)]
        serve(*shas)
        events = monitor.events.subscribe()

        emitted = await monitor.poll_project(42)

        assert emitted == 50
        assert detected(events) == list(reversed(shas[:50]))
        assert monitor.get_state(42, "main").last_commit_sha == shas[0]

    @pytest.mark.asyncio
    async def test_zero_initial_load_only_sets_baseline(self, client, projects_file, serve):
        """An explicit initial load limit of 0 is honored rather than defaulted."""
        monitor = FeedMonitor(
            client, MonitorConfigLoader(projects_file), initial_load_limit=0, failure_alert_threshold=0,
        )
        serve(sha(3), sha(2), sha(1))
        events = monitor.events.subscribe()

        emitted = await monitor.poll_project(42)

        assert monitor.initial_load_limit == 0
        assert monitor.failure_alert_threshold == 0
        assert emitted == 0
        assert detected(events) == []
        assert monitor.get_state(42, "main").last_commit_sha == sha(3)

    @pytest.mark.asyncio
    async def test_unchanged_branch_emits_nothing(self, monitor, serve):
        """A second poll with no new commits leaves the baseline alone."""
        serve(sha(3), sha(2), sha(1))
        await monitor.poll_project(42)
        events = monitor.events.subscribe()

        emitted = await monitor.poll_project(42)

        assert emitted == 0
        assert detected(events) == []
        assert monitor.get_state(42, "main").last_commit_sha == sha(3)

    @pytest.mark.asyncio
    async def test_new_commits_since_baseline(self, monitor, serve, client):
        """Commits newer than the baseline are emitted oldest first."""
        monitor.update_last_commit(42, "main", sha(1))
        serve(sha(3), sha(2), sha(1))
        events = monitor.events.subscribe()

        emitted = await monitor.poll_project(42)

        assert emitted == 2
        assert detected(events) == [sha(2), sha(3)]
        assert monitor.get_state(42, "main").last_commit_sha == sha(3)
        client.list_commits.assert_awaited_with(42, ref_name="main", per_page=100)

    @pytest.mark.asyncio
    async def test_baseline_beyond_page(self, monitor, serve):
        """If the baseline is not on the page, the whole page is new."""
        monitor.update_last_commit(42, "main", sha(99))
        serve(sha(3), sha(2), sha(1))
        events = monitor.events.subscribe()

        await monitor.poll_project(42)

        assert detected(events) == [sha(1), sha(2), sha(3)]

    @pytest.mark.asyncio
    async def test_detected_event_payload(self, monitor, serve):
        """Detected events carry the commit summary and the project."""
        serve(sha(1))
        events = monitor.events.subscribe()

        await monitor.poll_project(42)

        event = events.get_nowait()
        assert isinstance(event, CommitDetectedEvent)
        assert event.commit.project_id == 42
        assert event.commit.branch == "main"
        assert event.commit.author_name == "Jane Developer"
        assert event.project.name == "Platform API"
        assert monitor.total_commits_discovered == 1

    @pytest.mark.asyncio
    async def test_excluded_author_is_skipped(self, monitor, serve):
        """Filtered commits are not emitted but the baseline still advances."""
        serve(sha(2), sha(1), author="renovate-bot")
        events = monitor.events.subscribe()

        emitted = await monitor.poll_project(42)

        assert emitted == 0
        assert detected(events) == []
        assert monitor.get_state(42, "main").last_commit_sha == sha(2)

    @pytest.mark.asyncio
    async def test_empty_branch(self, monitor, client):
        """An empty page only records the poll time."""
        await monitor.poll_project(42)

        state = monitor.get_state(42, "main")
        assert state.last_commit_sha is None
        assert state.last_polled_at is not None
        assert state.phase == "uninitialized"

    @pytest.mark.asyncio
    async def test_poll_failure_is_reported(self, monitor, client, serve):
        """A failing poll publishes an error and counts consecutive failures."""
        monitor.update_last_commit(42, "main", sha(1))
        client.list_commits.side_effect = GitLabAPIError(503, "Service Unavailable")
        events = monitor.events.subscribe()

        assert await monitor.poll_project(42) == 0
        assert await monitor.poll_project(42) == 0

        errors = [e for e in events.drain() if isinstance(e, PollErrorEvent)]
        assert [e.consecutive_failures for e in errors] == [1, 2]
        assert errors[0].branch == "main"
        assert "Service Unavailable" in errors[0].error
        state = monitor.get_state(42, "main")
        assert state.last_commit_sha == sha(1)
        assert state.is_polling is False

        client.list_commits.side_effect = None
        serve(sha(2), sha(1))
        await monitor.poll_project(42)
        assert monitor.get_state(42, "main").consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_skips_branch_already_polling(self, monitor, client):
        """A branch with a poll in flight is not polled again."""
        monitor._get_or_create_state(42, "main").is_polling = True

        assert await monitor.poll_project(42) == 0
        client.list_commits.assert_not_called()

    @pytest.mark.asyncio
    async def test_poll_project_errors(self, monitor):
        """Unknown and disabled projects are rejected."""
        with pytest.raises(ValueError, match="Project not found"):
            await monitor.poll_project(999)
        with pytest.raises(ValueError, match="Project is disabled"):
            await monitor.poll_project("acme/web")

    @pytest.mark.asyncio
    async def test_poll_project_accepts_string_id(self, monitor, client):
        """Numeric ids given as strings resolve to the same project."""
        await monitor.poll_project("42")
        client.list_commits.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_poll_all_only_polls_enabled(self, monitor, client, serve):
        """poll_all covers enabled projects and brackets the cycle with events."""
        serve(sha(1))
        events = monitor.events.subscribe()

        emitted = await monitor.poll_all()

        assert emitted == 1
        assert client.list_commits.await_count == 1
        types = [e.event_type for e in events.drain()]
        assert types == [EventType.POLL_STARTED, EventType.COMMIT_DETECTED, EventType.POLL_COMPLETED]
        assert monitor.last_poll_at is not None


class TestLifecycle:
    """Test cases for start and stop."""

    @pytest.mark.asyncio
    async def test_start_polls_then_stop(self, monitor, serve):
        """start polls immediately; stop ends the loop without waiting for the interval."""
        serve(sha(1))
        events = monitor.events.subscribe()

        await monitor.start()
        await asyncio.sleep(0)
        assert monitor.is_running is True
        assert monitor.get_stats().is_running is True
        assert monitor.next_poll_at is not None

        await asyncio.wait_for(monitor.stop(), timeout=1)
        assert monitor.is_running is False
        assert monitor.next_poll_at is None

        received = events.drain()
        types = [e.event_type for e in received]
        assert types[0] == EventType.MONITOR_STARTED
        assert EventType.COMMIT_DETECTED in types
        assert types[-1] == EventType.MONITOR_STOPPED
        assert isinstance(received[-1], MonitorLifecycleEvent)

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, monitor):
        """Repeated start or stop calls are ignored."""
        events = monitor.events.subscribe()
        await monitor.start()
        await monitor.start()
        await monitor.stop()
        await monitor.stop()

        types = [e.event_type for e in events.drain()]
        assert types.count(EventType.MONITOR_STARTED) == 1
        assert types.count(EventType.MONITOR_STOPPED) == 1
