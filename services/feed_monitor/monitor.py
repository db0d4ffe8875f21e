"""
GitLab feed monitor.

Polls the branches of every enabled project, keeps a per-branch baseline
(the newest commit already seen) and publishes a ``CommitDetectedEvent``
for each commit newer than the baseline, oldest first.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from config.projects import MonitorConfigLoader
from config.settings import settings
from shared.events import (
    BaseEvent, CommitDetectedEvent, EventChannel, EventMetadata, EventSource, EventType,
    MonitorLifecycleEvent, PollErrorEvent,
)
from shared.gitlab_client import GitLabClient
from shared.models import Commit, DetectedCommit, MonitorState, MonitorStats, ProjectConfig, ProjectId


logger = logging.getLogger(__name__)


def state_key(project_id: ProjectId, branch: str) -> str:
    return f"{project_id}:{branch}"


class FeedMonitor:
    """
    Polls configured project branches for new commits.

    Usage:
        monitor = FeedMonitor(client, MonitorConfigLoader("config/projects.json"))
        detected = monitor.events.subscribe()
        await monitor.start()
        event = await detected.get()
    """

    def __init__(
        self,
        client: GitLabClient,
        config_loader: Optional[MonitorConfigLoader] = None,
        initial_load_limit: Optional[int] = None,
        failure_alert_threshold: Optional[int] = None,
        events: Optional[EventChannel[BaseEvent]] = None,
    ):
        self.client = client
        self.config_loader = config_loader or MonitorConfigLoader()
        self.initial_load_limit = (
            initial_load_limit if initial_load_limit is not None else settings.monitor.initial_load_limit
        )
        self.failure_alert_threshold = (
            failure_alert_threshold if failure_alert_threshold is not None
            else settings.monitor.failure_alert_threshold
        )
        self.events: EventChannel[BaseEvent] = events or EventChannel("feed_monitor")

        self._states: Dict[str, MonitorState] = {}
        self._stop_event: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None

        self.is_running = False
        self.started_at: Optional[datetime] = None
        self.last_poll_at: Optional[datetime] = None
        self.next_poll_at: Optional[datetime] = None
        self.total_commits_discovered = 0

    def _publish(self, event: BaseEvent):
        self.events.publish(event)

    def _lifecycle(self, event_type: EventType, detail: Optional[str] = None):
        self._publish(MonitorLifecycleEvent(
            metadata=EventMetadata(source=EventSource.FEED_MONITOR),
            event_type=event_type,
            detail=detail,
        ))

    # State table

    def get_state(self, project_id: ProjectId, branch: str) -> Optional[MonitorState]:
        return self._states.get(state_key(project_id, branch))

    def get_all_states(self) -> List[MonitorState]:
        return list(self._states.values())

    def _get_or_create_state(self, project_id: ProjectId, branch: str) -> MonitorState:
        key = state_key(project_id, branch)
        state = self._states.get(key)
        if state is None:
            state = MonitorState(project_id=project_id, branch=branch)
            self._states[key] = state
        return state

    def reset_state(self, project_id: ProjectId, branch: str):
        """Forget the baseline so the next poll performs a bulk initial load."""
        self._states.pop(state_key(project_id, branch), None)
        logger.info(f"Reset state for {project_id}:{branch}")

    def reset_all_states(self):
        self._states.clear()
        logger.info("Reset all monitor states")

    def update_last_commit(self, project_id: ProjectId, branch: str, sha: str):
        state = self._get_or_create_state(project_id, branch)
        state.last_commit_sha = sha
        state.last_polled_at = datetime.now(timezone.utc)
        logger.info(f"Updated baseline for {project_id}:{branch} to {sha[:8]}")

    def get_stats(self) -> MonitorStats:
        config = self.config_loader.get_config()
        enabled = config.enabled_projects
        return MonitorStats(
            is_running=self.is_running,
            total_projects=len(config.projects),
            enabled_projects=len(enabled),
            total_branches=sum(len(p.branches) for p in enabled),
            total_commits_discovered=self.total_commits_discovered,
            started_at=self.started_at,
            last_poll_at=self.last_poll_at,
            next_poll_at=self.next_poll_at,
        )

    # Lifecycle

    async def start(self):
        """Poll every enabled branch once, then keep polling at the configured interval."""
        if self.is_running:
            logger.info("Monitor is already running")
            return

        logger.info("Starting GitLab commit monitor")
        self.is_running = True
        self.started_at = datetime.now(timezone.utc)
        self._stop_event = asyncio.Event()
        self._lifecycle(EventType.MONITOR_STARTED)

        await self.poll_all()
        self._loop_task = asyncio.create_task(self._run_loop(), name="feed-monitor-loop")

    async def stop(self):
        """Stop scheduling polls. A poll already in flight is allowed to finish."""
        if not self.is_running:
            logger.info("Monitor is not running")
            return

        logger.info("Stopping GitLab commit monitor")
        self.is_running = False
        self.next_poll_at = None
        if self._stop_event is not None:
            self._stop_event.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        self._lifecycle(EventType.MONITOR_STOPPED)

    async def _run_loop(self):
        while self.is_running:
            interval = self.config_loader.get_config().global_config.poll_interval_seconds
            self.next_poll_at = datetime.now(timezone.utc) + timedelta(seconds=interval)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            await self.poll_all()

    # Polling

    async def poll_all(self) -> int:
        """Poll every enabled project/branch pair concurrently; returns commits emitted."""
        projects = self.config_loader.get_enabled_projects()
        if not projects:
            logger.warning("No enabled projects to monitor")
            return 0

        pairs = [(project, branch) for project in projects for branch in project.branches]
        self._lifecycle(EventType.POLL_STARTED, detail=f"{len(projects)} projects, {len(pairs)} branches")
        logger.info(f"Polling {len(projects)} project(s)")

        counts = await asyncio.gather(*(self._poll_branch(project, branch) for project, branch in pairs))

        self.last_poll_at = datetime.now(timezone.utc)
        emitted = sum(counts)
        self._lifecycle(EventType.POLL_COMPLETED, detail=f"{emitted} new commits")
        return emitted

    async def poll_project(self, project_id: ProjectId) -> int:
        """Out-of-band poll of every branch of one project."""
        project = self.config_loader.get_project(project_id)
        if project is None:
            raise ValueError(f"Project not found: {project_id}")
        if not project.enabled:
            raise ValueError(f"Project is disabled: {project.name}")

        logger.info(f"Manual poll triggered for {project.name}")
        emitted = 0
        for branch in project.branches:
            emitted += await self._poll_branch(project, branch)
        return emitted

    async def _poll_branch(self, project: ProjectConfig, branch: str) -> int:
        state = self._get_or_create_state(project.id, branch)
        if state.is_polling:
            logger.debug(f"Skipping {project.name}:{branch} - already polling")
            return 0
        state.is_polling = True

        try:
            per_page = self.config_loader.get_config().global_config.max_commits_per_poll
            page = await self.client.list_commits(project.id, ref_name=branch, per_page=per_page)
            commits = page.items

            if not commits:
                logger.info(f"No commits found for {project.name}:{branch}")
                state.last_polled_at = datetime.now(timezone.utc)
                return 0

            latest = commits[0]
            if state.last_commit_sha is None:
                limit = min(self.initial_load_limit, len(commits))
                logger.info(f"Initial poll for {project.name}:{branch} - loading {limit} recent commit(s)")
                candidates = list(reversed(commits[:limit]))
            elif latest.id == state.last_commit_sha:
                logger.debug(f"No new commits for {project.name}:{branch}")
                candidates = []
            else:
                newer = []
                for commit in commits:
                    if commit.id == state.last_commit_sha:
                        break
                    newer.append(commit)
                logger.info(f"Found {len(newer)} new commit(s) for {project.name}:{branch}")
                candidates = list(reversed(newer))

            emitted = self._emit(project, branch, candidates)

            state.last_commit_sha = latest.id
            state.last_polled_at = datetime.now(timezone.utc)
            state.consecutive_failures = 0
            return emitted

        except Exception as e:
            state.consecutive_failures += 1
            logger.error(
                f"Error polling {project.name}:{branch} (failure #{state.consecutive_failures}): {e}"
            )
            self._publish(PollErrorEvent(
                metadata=EventMetadata(source=EventSource.FEED_MONITOR),
                project_id=project.id,
                branch=branch,
                error=str(e),
                consecutive_failures=state.consecutive_failures,
            ))
            if state.consecutive_failures >= self.failure_alert_threshold:
                logger.error(
                    f"Project {project.name}:{branch} has failed "
                    f"{state.consecutive_failures} times consecutively"
                )
            return 0

        finally:
            state.is_polling = False

    def _emit(self, project: ProjectConfig, branch: str, commits: List[Commit]) -> int:
        emitted = 0
        for commit in commits:
            if not project.filters.allows(commit.author_name):
                logger.info(f"Skipping commit {commit.short_sha} (filtered by author: {commit.author_name})")
                continue

            self.total_commits_discovered += 1
            emitted += 1
            self._publish(CommitDetectedEvent(
                metadata=EventMetadata(source=EventSource.FEED_MONITOR),
                commit=DetectedCommit.from_commit(commit, project.id, branch),
                project=project,
            ))
            logger.debug(f"New commit: {commit.short_sha} - {commit.title[:60]}")
        return emitted
