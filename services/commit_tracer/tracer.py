"""
Commit relationship tracer.

This module provides:
- Multi-hop tracing of a commit to its merge requests, closed issues and epics
- Step-level timing and a warning log for tolerated partial failures
- Batch and recent-commit tracing with summaries
- Aggregate statistics over traced chains
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from config.settings import TracingSettings, settings
from shared.gitlab_client import GitLabClient
from shared.models import (
    BatchTraceResult, BatchTraceSummary, ChainMetadata, ChainStatistics, CommitChain,
    Epic, IssueLink, MergeRequestLink, ProjectId, TraceFailure, TracingStep,
)
from services.commit_tracer.chain_cache import ChainCache


logger = logging.getLogger(__name__)

T = TypeVar("T")

CompletenessCheck = Callable[[List[MergeRequestLink], List[IssueLink], List[Epic]], bool]
ProgressCallback = Callable[[TracingStep], None]


def is_chain_complete(
    merge_requests: List[MergeRequestLink],
    issues: List[IssueLink],
    epics: List[Epic],
) -> bool:
    """Heuristic completeness: MRs were found, and issues were found whenever an MR closes any."""
    if not merge_requests:
        return False
    expects_issues = any(link.closes_issues for link in merge_requests)
    if expects_issues and not issues:
        return False
    return True


@dataclass
class TracingOptions:
    include_epics: bool = True
    follow_related_mrs: bool = True
    use_cache: bool = True
    cache_ttl: float = 300
    continue_on_error: bool = True
    on_progress: Optional[ProgressCallback] = None
    completeness_check: CompletenessCheck = is_chain_complete

    @classmethod
    def from_settings(cls, tracing: Optional[TracingSettings] = None, **overrides) -> "TracingOptions":
        config = tracing or settings.tracing
        values = dict(
            include_epics=config.include_epics,
            follow_related_mrs=config.follow_related_mrs,
            use_cache=config.use_cache,
            cache_ttl=config.cache_ttl,
            continue_on_error=config.continue_on_error,
        )
        values.update(overrides)
        return cls(**values)


class TracingError(Exception):
    """A trace that could not produce a chain; carries the partial step log."""

    def __init__(
        self,
        commit_sha: str,
        message: str,
        steps: Optional[List[TracingStep]] = None,
        warnings: Optional[List[str]] = None,
    ):
        self.commit_sha = commit_sha
        self.steps = list(steps or [])
        self.warnings = list(warnings or [])
        super().__init__(f"Failed to trace commit {commit_sha[:8]}: {message}")


@dataclass
class _TraceContext:
    """Per-trace counters so concurrent traces never share state."""
    sha: str
    project_id: Optional[ProjectId]
    started: float = field(default_factory=time.perf_counter)
    api_calls: int = 0
    steps: List[TracingStep] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def scope(self) -> str:
        return str(self.project_id) if self.project_id is not None else "default"


def _summarize(result: Any) -> str:
    if result is None:
        return "None"
    if isinstance(result, list):
        return f"Found {len(result)} item(s)"
    title = getattr(result, "title", None)
    if title is not None:
        return str(title)
    if isinstance(result, int):
        return str(result)
    return "Success"


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class CommitTracer:
    """
    Builds ``CommitChain`` aggregates for commits.

    Usage:
        tracer = CommitTracer(client, TracingOptions(include_epics=False))
        chain = await tracer.trace_commit("a1b2c3d4", project_id=42)
        result = await tracer.trace_recent_commits(10, project_id=42, branch="main")
    """

    def __init__(
        self,
        client: GitLabClient,
        options: Optional[TracingOptions] = None,
        cache: Optional[ChainCache] = None,
    ):
        self.client = client
        self.options = options or TracingOptions()
        if cache is None and self.options.use_cache:
            cache = ChainCache(default_ttl=self.options.cache_ttl)
        self.cache = cache

        self.last_api_call_count = 0
        self.total_api_call_count = 0
        self.traces_completed = 0
        self.traces_failed = 0

    # Step plumbing

    def _report(self, step: TracingStep):
        if self.options.on_progress is None:
            return
        try:
            self.options.on_progress(step)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    async def _run_step(self, ctx: _TraceContext, name: str, fn: Callable[[], Awaitable[T]]) -> T:
        started_at = datetime.now(timezone.utc)
        started = time.perf_counter()
        self._report(TracingStep(name=name, started_at=started_at, success=False, result="In progress"))

        try:
            result = await fn()
        except Exception as e:
            ctx.steps.append(TracingStep(
                name=name,
                started_at=started_at,
                duration_ms=_elapsed_ms(started),
                success=False,
                result="Error",
                error=str(e),
            ))
            raise

        ctx.steps.append(TracingStep(
            name=name,
            started_at=started_at,
            duration_ms=_elapsed_ms(started),
            success=True,
            result=_summarize(result),
        ))
        logger.debug(f"[{ctx.sha[:8]}] {name}: {ctx.steps[-1].result}")
        return result

    def _tolerate(self, ctx: _TraceContext, message: str, error: Exception):
        """Record a sub-step failure as a warning, or re-raise when errors are fatal."""
        if not self.options.continue_on_error:
            raise error
        warning = f"{message}: {error}"
        ctx.warnings.append(warning)
        logger.warning(f"[{ctx.sha[:8]}] {warning}")

    async def _cached(
        self,
        ctx: _TraceContext,
        lookup: Callable[[ChainCache], Optional[T]],
        store: Callable[[ChainCache, T], None],
        fetch: Callable[[], Awaitable[T]],
    ) -> T:
        cache = self.cache if self.options.use_cache else None
        if cache is not None:
            hit = lookup(cache)
            if hit is not None:
                return hit

        value = await fetch()
        ctx.api_calls += 1
        if cache is not None:
            store(cache, value)
        return value

    # Trace stages

    async def _fetch_commit(self, ctx: _TraceContext):
        ttl = self.options.cache_ttl
        return await self._cached(
            ctx,
            lambda c: c.get_commit(ctx.sha, ctx.scope),
            lambda c, v: c.set_commit(v, ctx.scope, ttl),
            lambda: self.client.get_commit(ctx.sha, ctx.project_id),
        )

    async def _find_merge_requests(self, ctx: _TraceContext):
        ttl = self.options.cache_ttl
        merge_requests = await self._cached(
            ctx,
            lambda c: c.get_commit_merge_requests(ctx.sha, ctx.scope),
            lambda c, v: c.set_commit_merge_requests(ctx.sha, v, ctx.scope, ttl),
            lambda: self.client.get_commit_merge_requests(ctx.sha, ctx.project_id),
        )
        if not merge_requests:
            ctx.warnings.append("No merge requests found for this commit")
        return merge_requests

    async def _fetch_closing_issues(self, ctx: _TraceContext, merge_requests) -> List[MergeRequestLink]:
        ttl = self.options.cache_ttl
        links = []
        for mr in merge_requests:
            try:
                closes = await self._cached(
                    ctx,
                    lambda c: c.get_mr_closing_issues(mr.iid, ctx.scope),
                    lambda c, v: c.set_mr_closing_issues(mr.iid, v, ctx.scope, ttl),
                    lambda: self.client.get_merge_request_closes_issues(mr.iid, ctx.project_id),
                )
            except Exception as e:
                self._tolerate(ctx, f"Failed to fetch closing issues for MR !{mr.iid}", e)
                closes = []
            links.append(MergeRequestLink(merge_request=mr, closes_issues=closes, contains_commit=True))
        return links

    async def _build_issue_links(self, ctx: _TraceContext, mr_links: List[MergeRequestLink]) -> List[IssueLink]:
        issue_map: Dict[int, IssueLink] = {}
        for mr_link in mr_links:
            mr = mr_link.merge_request
            for issue in mr_link.closes_issues:
                existing = issue_map.get(issue.id)
                if existing is None:
                    issue_map[issue.id] = IssueLink(
                        issue=issue,
                        related_merge_requests=[mr],
                        closed_by_merge_request=mr,
                    )
                else:
                    issue_map[issue.id] = existing.with_merge_requests([mr])

        if self.options.follow_related_mrs:
            ttl = self.options.cache_ttl
            for issue_id, link in list(issue_map.items()):
                iid = link.issue.iid
                try:
                    related = await self._cached(
                        ctx,
                        lambda c: c.get_issue_related_mrs(iid, ctx.scope),
                        lambda c, v: c.set_issue_related_mrs(iid, v, ctx.scope, ttl),
                        lambda: self.client.get_issue_related_merge_requests(iid, ctx.project_id),
                    )
                except Exception as e:
                    self._tolerate(ctx, f"Failed to fetch related MRs for issue #{iid}", e)
                    continue
                issue_map[issue_id] = link.with_merge_requests(related)

        return list(issue_map.values())

    async def _fetch_full_issues(self, ctx: _TraceContext, issue_links: List[IssueLink]) -> List[IssueLink]:
        ttl = self.options.cache_ttl
        result = []
        for link in issue_links:
            iid = link.issue.iid
            try:
                full = await self._cached(
                    ctx,
                    lambda c: c.get_issue(iid, ctx.scope),
                    lambda c, v: c.set_issue(v, ctx.scope, ttl),
                    lambda: self.client.get_issue(iid, ctx.project_id),
                )
            except Exception as e:
                self._tolerate(ctx, f"Failed to fetch full details for issue #{iid}", e)
                result.append(link)
                continue
            result.append(link.with_issue(full))
        return result

    async def _fetch_epics(self, ctx: _TraceContext, issue_links: List[IssueLink]):
        ttl = self.options.cache_ttl
        epic_map: Dict[int, Epic] = {}
        linked = []
        for link in issue_links:
            ref = link.issue.epic
            if ref is None:
                linked.append(link)
                continue

            epic = epic_map.get(ref.id)
            if epic is None:
                try:
                    epic = await self._cached(
                        ctx,
                        lambda c: c.get_epic(ref.iid, ref.group_id),
                        lambda c, v: c.set_epic(v, ref.group_id, ttl),
                        lambda: self.client.get_epic(ref.group_id, ref.iid),
                    )
                except Exception as e:
                    self._tolerate(ctx, f"Failed to fetch epic &{ref.iid} for issue #{link.issue.iid}", e)
                    epic = Epic.from_reference(ref)
                epic_map[ref.id] = epic
            linked.append(link.with_epic(epic))

        return linked, list(epic_map.values())

    # Public API

    async def trace_commit(self, sha: str, project_id: Optional[ProjectId] = None) -> CommitChain:
        """
        Trace one commit to its merge requests, issues and epics.

        Raises:
            TracingError: if the commit cannot be fetched or a non-tolerated step fails
        """
        ctx = _TraceContext(sha=sha, project_id=project_id)
        logger.info(f"Tracing commit {sha[:8]}")

        try:
            commit = await self._run_step(ctx, "Fetch commit details", lambda: self._fetch_commit(ctx))
            merge_requests = await self._run_step(
                ctx, "Find merge requests", lambda: self._find_merge_requests(ctx)
            )
            mr_links = await self._run_step(
                ctx, "Fetch closing issues", lambda: self._fetch_closing_issues(ctx, merge_requests)
            )
            issue_links = await self._run_step(
                ctx, "Build issue relationships", lambda: self._build_issue_links(ctx, mr_links)
            )

            epics: List[Epic] = []
            if self.options.include_epics:
                if issue_links:
                    issue_links = await self._run_step(
                        ctx, "Fetch full issue details", lambda: self._fetch_full_issues(ctx, issue_links)
                    )
                issue_links, epics = await self._run_step(
                    ctx, "Fetch epic details", lambda: self._fetch_epics(ctx, issue_links)
                )
        except Exception as e:
            ctx.steps.append(TracingStep(
                name="Trace failed",
                started_at=datetime.now(timezone.utc),
                duration_ms=0,
                success=False,
                result="Error",
                error=str(e),
            ))
            self._finish(ctx, success=False)
            logger.error(f"Trace of commit {sha[:8]} failed: {e}")
            raise TracingError(sha, str(e), steps=ctx.steps, warnings=ctx.warnings) from e

        chain = CommitChain(
            commit=commit,
            merge_requests=mr_links,
            issues=issue_links,
            epics=epics,
            metadata=ChainMetadata(
                duration_ms=_elapsed_ms(ctx.started),
                api_call_count=ctx.api_calls,
                is_complete=self.options.completeness_check(mr_links, issue_links, epics),
                warnings=ctx.warnings,
                steps=ctx.steps,
            ),
        )
        self._finish(ctx, success=True)
        logger.info(f"Traced commit {sha[:8]}: {chain.summary()} ({ctx.api_calls} API calls)")
        return chain

    def _finish(self, ctx: _TraceContext, success: bool):
        self.last_api_call_count = ctx.api_calls
        self.total_api_call_count += ctx.api_calls
        if success:
            self.traces_completed += 1
        else:
            self.traces_failed += 1

    async def trace_commits(self, shas: List[str], project_id: Optional[ProjectId] = None) -> BatchTraceResult:
        """Trace commits one after another, collecting failures instead of raising."""
        started = time.perf_counter()
        chains: List[CommitChain] = []
        failures: List[TraceFailure] = []
        total_api_calls = 0

        for sha in shas:
            try:
                chain = await self.trace_commit(sha, project_id)
            except TracingError as e:
                failures.append(TraceFailure(commit_sha=sha, error=str(e.__cause__ or e), steps=e.steps))
                total_api_calls += self.last_api_call_count
                self._report(TracingStep(
                    name=f"Failed to trace commit {sha[:8]}",
                    started_at=datetime.now(timezone.utc),
                    success=False,
                    result="Error",
                    error=str(e),
                ))
                continue

            chains.append(chain)
            total_api_calls += chain.metadata.api_call_count
            self._report(TracingStep(
                name=f"Traced commit {sha[:8]}",
                started_at=datetime.now(timezone.utc),
                duration_ms=chain.metadata.duration_ms,
                success=True,
                result=f"Found {chain.summary()}",
            ))

        total_duration_ms = _elapsed_ms(started)
        summary = BatchTraceSummary(
            total_commits=len(shas),
            success_count=len(chains),
            failure_count=len(failures),
            total_api_calls=total_api_calls,
            total_duration_ms=total_duration_ms,
            avg_duration_ms=total_duration_ms / len(chains) if chains else 0.0,
        )
        return BatchTraceResult(chains=chains, failures=failures, summary=summary)

    async def trace_recent_commits(
        self,
        count: int,
        project_id: Optional[ProjectId] = None,
        branch: Optional[str] = None,
    ) -> BatchTraceResult:
        page = await self.client.list_commits(project_id, ref_name=branch, per_page=count)
        return await self.trace_commits([commit.id for commit in page.items], project_id)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "last_api_call_count": self.last_api_call_count,
            "total_api_call_count": self.total_api_call_count,
            "traces_completed": self.traces_completed,
            "traces_failed": self.traces_failed,
            "cache": self.cache.get_stats() if self.cache else None,
        }


def compute_chain_statistics(chains: List[CommitChain]) -> ChainStatistics:
    """Aggregate coverage figures over a set of traced chains."""
    if not chains:
        return ChainStatistics()

    total_mrs = sum(len(chain.merge_requests) for chain in chains)
    total_issues = sum(len(chain.issues) for chain in chains)
    complete = sum(1 for chain in chains if chain.metadata.is_complete)

    return ChainStatistics(
        total_chains=len(chains),
        chains_with_mrs=sum(1 for chain in chains if chain.merge_requests),
        chains_with_issues=sum(1 for chain in chains if chain.issues),
        chains_with_epics=sum(1 for chain in chains if chain.epics),
        avg_mrs_per_commit=total_mrs / len(chains),
        avg_issues_per_mr=total_issues / total_mrs if total_mrs else 0.0,
        completeness_score=complete / len(chains) * 100,
    )
