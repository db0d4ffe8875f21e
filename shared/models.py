"""
Data models for the GitLab commit tracer.

This module provides:
- GitLab entity models (commits, merge requests, issues, epics)
- Relationship chain models produced by the tracer
- Feed monitor configuration, state and queue records
"""

from datetime import datetime, timezone
from typing import List, Optional, Union
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, AliasChoices, computed_field, field_validator


ProjectId = Union[int, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GitLabEntity(BaseModel):
    """Base for records sourced from GitLab; unknown response fields are dropped."""

    model_config = ConfigDict(frozen=True, extra="ignore")


class GitLabUser(GitLabEntity):
    id: int
    username: str
    name: str = ""
    web_url: Optional[str] = None


class References(GitLabEntity):
    short: str = ""
    relative: str = ""
    full: str = ""


# GitLab entities
class Commit(GitLabEntity):
    """A repository commit. Identity is the SHA (``id``)."""

    id: str = Field(..., min_length=7, description="Commit SHA")
    short_id: str = ""
    title: str = ""
    message: str = ""
    author_name: str = ""
    author_email: str = ""
    authored_date: Optional[datetime] = None
    committer_name: str = ""
    committer_email: str = ""
    committed_date: Optional[datetime] = None
    parent_ids: List[str] = Field(default_factory=list)
    web_url: str = ""

    @property
    def sha(self) -> str:
        return self.id

    @property
    def short_sha(self) -> str:
        return self.short_id or self.id[:8]


class MergeRequestState(str, Enum):
    OPENED = "opened"
    CLOSED = "closed"
    LOCKED = "locked"
    MERGED = "merged"


class MergeRequest(GitLabEntity):
    id: int
    iid: int
    project_id: int
    title: str = ""
    description: Optional[str] = None
    state: MergeRequestState = MergeRequestState.OPENED
    source_branch: str = ""
    target_branch: str = ""
    author: Optional[GitLabUser] = None
    labels: List[str] = Field(default_factory=list)
    merged_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    sha: Optional[str] = None
    merge_commit_sha: Optional[str] = None
    web_url: str = ""
    references: Optional[References] = None


class IssueEpicRef(GitLabEntity):
    """Partial epic reference embedded in a full issue representation."""

    id: int
    iid: int
    title: str = ""
    url: str = ""
    group_id: int


class Issue(GitLabEntity):
    id: int
    iid: int
    project_id: int
    title: str = ""
    description: Optional[str] = None
    state: str = "opened"
    labels: List[str] = Field(default_factory=list)
    author: Optional[GitLabUser] = None
    assignees: List[GitLabUser] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    web_url: str = ""
    references: Optional[References] = None
    epic: Optional[IssueEpicRef] = None
    epic_iid: Optional[int] = None


class Epic(GitLabEntity):
    id: int
    iid: int
    group_id: int
    title: str = ""
    description: Optional[str] = None
    state: str = "opened"
    web_url: str = ""
    labels: List[str] = Field(default_factory=list)
    start_date: Optional[str] = None
    due_date: Optional[str] = None
    parent_id: Optional[int] = None
    partial: bool = Field(
        default=False, description="Built from an issue's epic reference, not fetched"
    )

    @classmethod
    def from_reference(cls, ref: IssueEpicRef) -> "Epic":
        return cls(
            id=ref.id,
            iid=ref.iid,
            group_id=ref.group_id,
            title=ref.title,
            web_url=ref.url,
            partial=True,
        )


class PaginationInfo(GitLabEntity):
    page: int = 1
    per_page: int = 20
    next_page: Optional[int] = None
    prev_page: Optional[int] = None
    total: Optional[int] = None
    total_pages: Optional[int] = None


class RateLimitInfo(GitLabEntity):
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset: Optional[datetime] = None


# Relationship chain
class TracingStep(GitLabEntity):
    name: str
    started_at: datetime
    duration_ms: float = 0.0
    success: bool
    result: str = ""
    error: Optional[str] = None


class MergeRequestLink(GitLabEntity):
    merge_request: MergeRequest
    closes_issues: List[Issue] = Field(default_factory=list)
    contains_commit: bool = True


class IssueLink(GitLabEntity):
    issue: Issue
    related_merge_requests: List[MergeRequest] = Field(default_factory=list)
    epic: Optional[Epic] = None
    closed_by_merge_request: Optional[MergeRequest] = None

    def with_merge_requests(self, merge_requests: List[MergeRequest]) -> "IssueLink":
        """Return a link whose related MRs are extended by ``merge_requests``, deduplicated by id."""
        seen = {mr.id for mr in self.related_merge_requests}
        merged = list(self.related_merge_requests)
        for mr in merge_requests:
            if mr.id not in seen:
                seen.add(mr.id)
                merged.append(mr)
        return self.model_copy(update={"related_merge_requests": merged})

    def with_issue(self, issue: Issue) -> "IssueLink":
        return self.model_copy(update={"issue": issue})

    def with_epic(self, epic: Epic) -> "IssueLink":
        return self.model_copy(update={"epic": epic})


class ChainMetadata(GitLabEntity):
    traced_at: datetime = Field(default_factory=_utcnow)
    duration_ms: float = 0.0
    api_call_count: int = 0
    is_complete: bool = False
    warnings: List[str] = Field(default_factory=list)
    steps: List[TracingStep] = Field(default_factory=list)


class CommitChain(GitLabEntity):
    """Commit -> merge requests -> issues -> epics for one traced commit."""

    commit: Commit
    merge_requests: List[MergeRequestLink] = Field(default_factory=list)
    issues: List[IssueLink] = Field(default_factory=list)
    epics: List[Epic] = Field(default_factory=list)
    metadata: ChainMetadata = Field(default_factory=ChainMetadata)

    def summary(self) -> str:
        return (
            f"{len(self.merge_requests)} MRs, "
            f"{len(self.issues)} issues, "
            f"{len(self.epics)} epics"
        )


class TraceFailure(BaseModel):
    commit_sha: str
    error: str
    steps: List[TracingStep] = Field(default_factory=list)


class BatchTraceSummary(BaseModel):
    total_commits: int = 0
    success_count: int = 0
    failure_count: int = 0
    total_api_calls: int = 0
    total_duration_ms: float = 0.0
    avg_duration_ms: float = 0.0


class BatchTraceResult(BaseModel):
    chains: List[CommitChain] = Field(default_factory=list)
    failures: List[TraceFailure] = Field(default_factory=list)
    summary: BatchTraceSummary = Field(default_factory=BatchTraceSummary)


class ChainStatistics(BaseModel):
    total_chains: int = 0
    chains_with_mrs: int = 0
    chains_with_issues: int = 0
    chains_with_epics: int = 0
    avg_mrs_per_commit: float = 0.0
    avg_issues_per_mr: float = 0.0
    completeness_score: float = 0.0


# Monitor configuration
class ProjectFilters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    include_authors: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("include_authors", "includeAuthors")
    )
    exclude_authors: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("exclude_authors", "excludeAuthors")
    )

    def allows(self, author_name: str) -> bool:
        if self.include_authors and author_name not in self.include_authors:
            return False
        if self.exclude_authors and author_name in self.exclude_authors:
            return False
        return True


class ProjectConfig(BaseModel):
    """A monitored GitLab project and the branches to poll."""

    model_config = ConfigDict(populate_by_name=True)

    id: ProjectId
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    branches: List[str] = Field(..., min_length=1)
    enabled: bool
    filters: ProjectFilters = Field(default_factory=ProjectFilters)

    @field_validator("branches")
    @classmethod
    def validate_branches(cls, v):
        if any(not branch.strip() for branch in v):
            raise ValueError("Branch names cannot be empty")
        return v

    def matches(self, project_id: ProjectId) -> bool:
        return str(self.id) == str(project_id)


class GlobalConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    poll_interval_seconds: int = Field(
        ..., ge=60, validation_alias=AliasChoices("poll_interval_seconds", "pollIntervalSeconds")
    )
    max_commits_per_poll: int = Field(
        ...,
        ge=1,
        le=100,
        validation_alias=AliasChoices("max_commits_per_poll", "maxCommitsPerPoll"),
    )


class MonitorConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    projects: List[ProjectConfig]
    global_config: GlobalConfig = Field(
        ..., validation_alias=AliasChoices("global", "global_config")
    )

    @property
    def enabled_projects(self) -> List[ProjectConfig]:
        return [p for p in self.projects if p.enabled]


# Monitor state and queue records
class MonitorState(BaseModel):
    """Per (project, branch) polling state, mutated in place by the feed monitor."""

    project_id: ProjectId
    branch: str
    last_commit_sha: Optional[str] = None
    last_polled_at: Optional[datetime] = None
    is_polling: bool = False
    consecutive_failures: int = 0

    @property
    def key(self) -> str:
        return f"{self.project_id}:{self.branch}"

    @computed_field
    @property
    def phase(self) -> str:
        if self.is_polling:
            return "polling"
        if self.last_commit_sha is None:
            return "uninitialized"
        return "idle"


class MonitorStats(BaseModel):
    is_running: bool = False
    total_projects: int = 0
    enabled_projects: int = 0
    total_branches: int = 0
    total_commits_discovered: int = 0
    started_at: Optional[datetime] = None
    last_poll_at: Optional[datetime] = None
    next_poll_at: Optional[datetime] = None


class DetectedCommit(BaseModel):
    """A commit discovered on a monitored branch."""

    model_config = ConfigDict(frozen=True)

    sha: str
    project_id: ProjectId
    branch: str
    title: str = ""
    author_name: str = ""
    author_email: str = ""
    committed_at: Optional[datetime] = None
    discovered_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_commit(cls, commit: Commit, project_id: ProjectId, branch: str) -> "DetectedCommit":
        return cls(
            sha=commit.id,
            project_id=project_id,
            branch=branch,
            title=commit.title,
            author_name=commit.author_name,
            author_email=commit.author_email,
            committed_at=commit.committed_date,
        )


class ProcessingStatus(str, Enum):
    """Commit processing status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED)


class QueuedCommit(BaseModel):
    """A detected commit plus its mutable processing state."""

    commit: DetectedCommit
    status: ProcessingStatus = ProcessingStatus.PENDING
    retries: int = 0
    error: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    not_before: Optional[float] = Field(
        default=None, description="Event loop time before which a retry is not attempted"
    )

    @property
    def sha(self) -> str:
        return self.commit.sha

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ProcessorStats(BaseModel):
    queue_size: int = 0
    pending: int = 0
    processing: int = 0
    active_slots: int = 0
    max_concurrency: int = 0
    total_processed: int = 0
    completed: int = 0
    failed: int = 0


__all__ = [
    'ProjectId', 'GitLabUser', 'References',
    'Commit', 'MergeRequestState', 'MergeRequest', 'IssueEpicRef', 'Issue', 'Epic',
    'PaginationInfo', 'RateLimitInfo',
    'TracingStep', 'MergeRequestLink', 'IssueLink', 'ChainMetadata', 'CommitChain',
    'TraceFailure', 'BatchTraceSummary', 'BatchTraceResult', 'ChainStatistics',
    'ProjectFilters', 'ProjectConfig', 'GlobalConfig', 'MonitorConfig',
    'MonitorState', 'MonitorStats', 'DetectedCommit', 'ProcessingStatus', 'QueuedCommit',
    'ProcessorStats',
    'TERMINAL_STATUSES',
]
