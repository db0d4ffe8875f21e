"""
Shared pytest fixtures.

Factories build GitLab API payloads (plain dicts, as returned by the REST
API) and the matching pydantic models.
"""

import json
from typing import Any, Dict, List, Optional

import pytest

from shared.models import Commit, Epic, Issue, MergeRequest


def make_commit_payload(sha: str, title: Optional[str] = None, author: str = "Jane Developer", **extra) -> Dict[str, Any]:
    payload = {
        "id": sha,
        "short_id": sha[:8],
        "title": title or f"Commit {sha[:8]}",
        "message": title or f"Commit {sha[:8]}",
        "author_name": author,
        "author_email": f"{author.split()[0].lower()}@example.com",
        "authored_date": "2024-05-01T10:00:00Z",
        "committer_name": author,
        "committer_email": f"{author.split()[0].lower()}@example.com",
        "committed_date": "2024-05-01T10:00:00Z",
        "parent_ids": [],
        "web_url": f"https://gitlab.example.com/acme/api/-/commit/{sha}",
    }
    payload.update(extra)
    return payload


def make_mr_payload(mr_id: int, iid: int, project_id: int = 42, **extra) -> Dict[str, Any]:
    payload = {
        "id": mr_id,
        "iid": iid,
        "project_id": project_id,
        "title": f"Merge request !{iid}",
        "state": "merged",
        "source_branch": f"feature-{iid}",
        "target_branch": "main",
        "web_url": f"https://gitlab.example.com/acme/api/-/merge_requests/{iid}",
    }
    payload.update(extra)
    return payload


def make_issue_payload(issue_id: int, iid: int, project_id: int = 42, epic: Optional[Dict[str, Any]] = None, **extra) -> Dict[str, Any]:
    payload = {
        "id": issue_id,
        "iid": iid,
        "project_id": project_id,
        "title": f"Issue #{iid}",
        "state": "closed",
        "web_url": f"https://gitlab.example.com/acme/api/-/issues/{iid}",
    }
    if epic is not None:
        payload["epic"] = epic
        payload["epic_iid"] = epic["iid"]
    payload.update(extra)
    return payload


def make_epic_ref(epic_id: int, iid: int, group_id: int = 7) -> Dict[str, Any]:
    return {
        "id": epic_id,
        "iid": iid,
        "title": f"Epic &{iid}",
        "url": f"/groups/acme/-/epics/{iid}",
        "group_id": group_id,
    }


def make_epic_payload(epic_id: int, iid: int, group_id: int = 7, **extra) -> Dict[str, Any]:
    payload = {
        "id": epic_id,
        "iid": iid,
        "group_id": group_id,
        "title": f"Epic &{iid}",
        "state": "opened",
        "web_url": f"https://gitlab.example.com/groups/acme/-/epics/{iid}",
    }
    payload.update(extra)
    return payload


@pytest.fixture
def commit_factory():
    """Build ``Commit`` models."""
    def factory(sha: str, **kwargs) -> Commit:
        return Commit.model_validate(make_commit_payload(sha, **kwargs))
    return factory


@pytest.fixture
def mr_factory():
    """Build ``MergeRequest`` models."""
    def factory(mr_id: int, iid: int, **kwargs) -> MergeRequest:
        return MergeRequest.model_validate(make_mr_payload(mr_id, iid, **kwargs))
    return factory


@pytest.fixture
def issue_factory():
    """Build ``Issue`` models, optionally with an epic reference."""
    def factory(issue_id: int, iid: int, epic: Optional[Dict[str, Any]] = None, **kwargs) -> Issue:
        return Issue.model_validate(make_issue_payload(issue_id, iid, epic=epic, **kwargs))
    return factory


@pytest.fixture
def epic_factory():
    """Build ``Epic`` models."""
    def factory(epic_id: int, iid: int, **kwargs) -> Epic:
        return Epic.model_validate(make_epic_payload(epic_id, iid, **kwargs))
    return factory


@pytest.fixture
def epic_ref():
    return make_epic_ref


@pytest.fixture
def commit_payloads():
    """Newest-first commit payloads for ``list_commits`` responses."""
    def factory(*shas: str, author: str = "Jane Developer") -> List[Dict[str, Any]]:
        return [make_commit_payload(sha, author=author) for sha in shas]
    return factory


@pytest.fixture
def projects_config():
    """A valid monitored-projects document in the on-disk camelCase format."""
    return {
        "projects": [
            {
                "id": 42,
                "name": "Platform API",
                "description": "Core platform backend",
                "branches": ["main"],
                "enabled": True,
                "filters": {"excludeAuthors": ["renovate-bot"]},
            },
            {
                "id": "acme/web",
                "name": "Web Frontend",
                "branches": ["main", "develop"],
                "enabled": False,
            },
        ],
        "global": {"pollIntervalSeconds": 60, "maxCommitsPerPoll": 100},
    }


@pytest.fixture
def projects_file(tmp_path, projects_config):
    """Write ``projects_config`` to a temporary JSON file."""
    path = tmp_path / "projects.json"
    path.write_text(json.dumps(projects_config), encoding="utf-8")
    return path
