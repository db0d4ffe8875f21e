"""
GitLab REST API v4 client.

This module provides:
- Authenticated async access to commits, merge requests, issues and epics
- Retry with exponential backoff for transient failures
- Request spacing and rate-limit aware waiting
- Pagination metadata parsed from response headers
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar
from urllib.parse import quote

import httpx

from config.settings import GitLabSettings, settings
from shared.models import (
    Commit, MergeRequest, Issue, Epic, PaginationInfo, RateLimitInfo, ProjectId
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


class GitLabAPIError(Exception):
    """
    Error returned by the GitLab API or raised by the transport.

    ``status`` is 0 when no HTTP response was received.
    """

    def __init__(self, status: int, message: str, response: Any = None, path: str = ""):
        self.status = status
        self.message = message
        self.response = response
        self.path = path
        super().__init__(f"GitLab API Error ({status}): {message}")

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


@dataclass
class Page(Generic[T]):
    """One page of a list endpoint."""
    items: List[T] = field(default_factory=list)
    pagination: PaginationInfo = field(default_factory=PaginationInfo)


def should_retry(
    status: Optional[int],
    error: Optional[BaseException],
    attempt: int,
    max_retries: int,
) -> bool:
    """Decide whether a failed request is retried.

    Retries 5xx and 429 responses and connection-level errors. Timeouts and
    other 4xx responses are returned to the caller immediately.
    """
    if attempt >= max_retries:
        return False
    if status:
        return status >= 500 or status == 429
    if isinstance(error, httpx.TimeoutException):
        return False
    return isinstance(error, httpx.TransportError)


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Parse a Retry-After header given in whole seconds."""
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def compute_retry_delay(attempt: int, retry_after: Optional[float], base_delay: float) -> float:
    """Seconds to wait before retry ``attempt`` (0-based)."""
    if retry_after is not None:
        return float(retry_after)
    return base_delay * (2 ** attempt)


def encode_id(value: ProjectId) -> str:
    """Numeric ids pass through, namespaced paths are percent-encoded."""
    text = str(value)
    if text.isdigit():
        return text
    return quote(text, safe="")


def _int_header(headers: httpx.Headers, name: str) -> Optional[int]:
    value = headers.get(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def parse_pagination(headers: httpx.Headers) -> PaginationInfo:
    return PaginationInfo(
        page=_int_header(headers, "x-page") or 1,
        per_page=_int_header(headers, "x-per-page") or 20,
        next_page=_int_header(headers, "x-next-page"),
        prev_page=_int_header(headers, "x-prev-page"),
        total=_int_header(headers, "x-total"),
        total_pages=_int_header(headers, "x-total-pages"),
    )


class GitLabClient:
    """
    Async GitLab API client.

    Usage:
        async with GitLabClient.from_settings() as client:
            commit = await client.get_commit("a1b2c3d", project_id=42)
            page = await client.list_commits(42, ref_name="main", per_page=50)
    """

    def __init__(
        self,
        url: str,
        token: str,
        project_id: Optional[ProjectId] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        min_request_interval: float = 0.1,
        rate_limit_low_water: int = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        if not url:
            raise ValueError("GitLab URL is required")
        if not token:
            raise ValueError("GitLab token is required")

        self.base_url = url.rstrip("/")
        self.project_id = project_id
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.min_request_interval = min_request_interval
        self.rate_limit_low_water = rate_limit_low_water

        self._token = token
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None
        self._last_request_at: Optional[float] = None
        self._throttle_lock = asyncio.Lock()

        self.request_count = 0
        self.rate_limit = RateLimitInfo()

    @classmethod
    def from_settings(cls, gitlab_settings: Optional[GitLabSettings] = None, **kwargs) -> "GitLabClient":
        config = gitlab_settings or settings.gitlab
        token = config.token.get_secret_value() if config.token else ""
        return cls(
            url=config.url,
            token=token,
            project_id=config.project_id,
            timeout=config.timeout,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            min_request_interval=config.min_request_interval,
            rate_limit_low_water=config.rate_limit_low_water,
            **kwargs,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{self.base_url}/api/v4",
                headers={
                    "PRIVATE-TOKEN": self._token,
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "GitLabClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # Core request handling

    async def _throttle(self):
        # Spacing check, quota wait and stamp run under one lock.
        async with self._throttle_lock:
            if self._last_request_at is not None and self.min_request_interval > 0:
                elapsed = self._clock() - self._last_request_at
                if elapsed < self.min_request_interval:
                    await self._sleep(self.min_request_interval - elapsed)

            remaining = self.rate_limit.remaining
            if remaining is not None and remaining < self.rate_limit_low_water and self.rate_limit.reset:
                wait = self.rate_limit.reset.timestamp() - self._clock()
                if wait > 0:
                    logger.warning(
                        f"Rate limit nearly exhausted ({remaining} remaining), waiting {wait:.1f}s for reset"
                    )
                    await self._sleep(wait)

            self._last_request_at = self._clock()

    def _update_rate_limit(self, headers: httpx.Headers):
        update: Dict[str, Any] = {}
        limit = _int_header(headers, "ratelimit-limit")
        if limit is not None:
            update["limit"] = limit
        remaining = _int_header(headers, "ratelimit-remaining")
        if remaining is not None:
            update["remaining"] = remaining
        reset = _int_header(headers, "ratelimit-reset")
        if reset is not None:
            update["reset"] = datetime.fromtimestamp(reset, tz=timezone.utc)
        if update:
            self.rate_limit = self.rate_limit.model_copy(update=update)

    @staticmethod
    def _error_from_response(path: str, response: httpx.Response) -> GitLabAPIError:
        try:
            body = response.json()
        except ValueError:
            body = response.text

        message = None
        if isinstance(body, dict):
            message = body.get("message") or body.get("error")
        if not message:
            message = response.reason_phrase or "Request failed"
        if not isinstance(message, str):
            message = str(message)
        return GitLabAPIError(response.status_code, message, response=body, path=path)

    async def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        client = self._get_client()
        attempt = 0

        while True:
            await self._throttle()
            self.request_count += 1

            response: Optional[httpx.Response] = None
            error: Optional[Exception] = None
            try:
                response = await client.get(path, params=query)
            except httpx.TransportError as e:
                error = e
            else:
                self._update_rate_limit(response.headers)
                if response.is_success:
                    return response

            status = response.status_code if response is not None else None
            if should_retry(status, error, attempt, self.max_retries):
                retry_after = parse_retry_after(response.headers.get("retry-after")) if response is not None else None
                delay = compute_retry_delay(attempt, retry_after, self.retry_delay)
                logger.warning(
                    f"Retrying GET {path} in {delay:.2f}s "
                    f"(attempt {attempt + 1}/{self.max_retries}, status={status or error.__class__.__name__})"
                )
                await self._sleep(delay)
                attempt += 1
                continue

            if response is not None:
                raise self._error_from_response(path, response)
            raise GitLabAPIError(0, str(error) or error.__class__.__name__, path=path) from error

    async def fetch_one(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET ``path`` and return the decoded JSON body."""
        response = await self._request(path, params)
        return response.json()

    async def fetch_page(self, path: str, params: Optional[Dict[str, Any]] = None) -> Page[Dict[str, Any]]:
        """GET a list endpoint and return its items with pagination metadata."""
        response = await self._request(path, params)
        return Page(items=response.json(), pagination=parse_pagination(response.headers))

    # Helpers

    def _project_path(self, project_id: Optional[ProjectId]) -> str:
        resolved = project_id if project_id not in (None, "") else self.project_id
        if resolved in (None, ""):
            raise ValueError("Project ID is required. Provide it in config or method call.")
        return f"/projects/{encode_id(resolved)}"

    # Commits

    async def list_commits(
        self,
        project_id: Optional[ProjectId] = None,
        ref_name: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        per_page: int = 20,
        page: int = 1,
        **params,
    ) -> Page[Commit]:
        result = await self.fetch_page(
            f"{self._project_path(project_id)}/repository/commits",
            {"ref_name": ref_name, "since": since, "until": until, "per_page": per_page, "page": page, **params},
        )
        return Page(items=[Commit.model_validate(c) for c in result.items], pagination=result.pagination)

    async def get_commit(self, sha: str, project_id: Optional[ProjectId] = None) -> Commit:
        data = await self.fetch_one(f"{self._project_path(project_id)}/repository/commits/{sha}")
        return Commit.model_validate(data)

    async def get_commit_merge_requests(
        self, sha: str, project_id: Optional[ProjectId] = None
    ) -> List[MergeRequest]:
        data = await self.fetch_one(f"{self._project_path(project_id)}/repository/commits/{sha}/merge_requests")
        return [MergeRequest.model_validate(mr) for mr in data]

    # Merge requests

    async def list_merge_requests(self, project_id: Optional[ProjectId] = None, **params) -> Page[MergeRequest]:
        result = await self.fetch_page(f"{self._project_path(project_id)}/merge_requests", params)
        return Page(items=[MergeRequest.model_validate(mr) for mr in result.items], pagination=result.pagination)

    async def get_merge_request(self, iid: int, project_id: Optional[ProjectId] = None) -> MergeRequest:
        data = await self.fetch_one(f"{self._project_path(project_id)}/merge_requests/{iid}")
        return MergeRequest.model_validate(data)

    async def get_merge_request_commits(self, iid: int, project_id: Optional[ProjectId] = None) -> List[Commit]:
        data = await self.fetch_one(f"{self._project_path(project_id)}/merge_requests/{iid}/commits")
        return [Commit.model_validate(c) for c in data]

    async def get_merge_request_closes_issues(
        self, iid: int, project_id: Optional[ProjectId] = None
    ) -> List[Issue]:
        data = await self.fetch_one(f"{self._project_path(project_id)}/merge_requests/{iid}/closes_issues")
        return [Issue.model_validate(issue) for issue in data]

    # Issues

    async def list_issues(self, project_id: Optional[ProjectId] = None, **params) -> Page[Issue]:
        result = await self.fetch_page(f"{self._project_path(project_id)}/issues", params)
        return Page(items=[Issue.model_validate(i) for i in result.items], pagination=result.pagination)

    async def get_issue(self, iid: int, project_id: Optional[ProjectId] = None) -> Issue:
        data = await self.fetch_one(f"{self._project_path(project_id)}/issues/{iid}")
        return Issue.model_validate(data)

    async def get_issue_related_merge_requests(
        self, iid: int, project_id: Optional[ProjectId] = None
    ) -> List[MergeRequest]:
        data = await self.fetch_one(f"{self._project_path(project_id)}/issues/{iid}/related_merge_requests")
        return [MergeRequest.model_validate(mr) for mr in data]

    async def get_issue_closed_by(self, iid: int, project_id: Optional[ProjectId] = None) -> List[MergeRequest]:
        data = await self.fetch_one(f"{self._project_path(project_id)}/issues/{iid}/closed_by")
        return [MergeRequest.model_validate(mr) for mr in data]

    # Epics (Premium/Ultimate)

    async def get_epic(self, group_id: ProjectId, epic_iid: int) -> Epic:
        data = await self.fetch_one(f"/groups/{encode_id(group_id)}/epics/{epic_iid}")
        return Epic.model_validate(data)

    async def list_epics(self, group_id: ProjectId, **params) -> Page[Epic]:
        result = await self.fetch_page(f"/groups/{encode_id(group_id)}/epics", params)
        return Page(items=[Epic.model_validate(e) for e in result.items], pagination=result.pagination)

    # Health

    async def test_connection(self) -> bool:
        """Check that the configured token authenticates."""
        try:
            await self.fetch_one("/user")
            return True
        except GitLabAPIError as e:
            logger.error(f"GitLab connection test failed: {e}")
            return False

    def get_stats(self) -> Dict[str, Any]:
        return {
            "request_count": self.request_count,
            "rate_limit": self.rate_limit,
        }


__all__ = [
    'GitLabAPIError', 'GitLabClient', 'Page',
    'should_retry', 'parse_retry_after', 'compute_retry_delay', 'encode_id', 'parse_pagination',
]
