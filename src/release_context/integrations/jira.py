"""Jira REST API v2 client.

Fetches the tracker side of a release: fix versions, the issues scheduled
for a version, and their parent features. Sprints and their issues come
from the Agile API (/rest/agile/1.0), which lives next to REST v2.

Design notes:
- Issue searches go through POST /search with an explicit field list so the
  custom attributes (acceptance criteria, story points, ...) come back on
  every record
- Methods raise (HttpError, httpx errors) instead of returning envelopes;
  the tool layer and the workflow's step runner decide how to report

Jira API docs: https://docs.atlassian.com/software/jira/docs/api/REST/latest/
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from release_context.config import JiraConfig
from release_context.http import HttpClient
from release_context.logging_config import get_logger
from release_context.schemas import (
    FixVersion,
    IssueSearchResult,
    JiraIssue,
    JiraProject,
    JiraSprint,
)

logger = get_logger(__name__)

ISSUE_FIELDS = [
    "summary",
    "description",
    "issuetype",
    "project",
    "priority",
    "status",
    "assignee",
    "reporter",
    "labels",
    "fixVersions",
    "components",
    "duedate",
    "environment",
    "parent",
    "subtasks",
    "created",
    "updated",
    "resolutiondate",
    "customfield_10601",
    "customfield_15601",
    "customfield_10106",
    "customfield_11700",
    "customfield_11900",
    "customfield_15600",
    "customfield_15900",
    "customfield_15602",
    "customfield_10100",
]


def jql_quote(value: str) -> str:
    """Quote a value for use inside a JQL string literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def fix_version_jql(project_key: str, version: str, exclude_subtasks: bool = True) -> str:
    clauses = [f"fixVersion = {jql_quote(version)}", f"project = {jql_quote(project_key)}"]
    if exclude_subtasks:
        clauses.append("issuetype not in subTaskIssueTypes()")
    return " AND ".join(clauses) + " ORDER BY created ASC"


def sprint_jql(sprint_id: int, project_key: str | None = None) -> str:
    jql = f"sprint = {sprint_id} AND issuetype not in subTaskIssueTypes()"
    if project_key:
        jql += f" AND project = {jql_quote(project_key)}"
    return jql


# ---------------------------------------------------------------------------
# Protocol (Interface)
# ---------------------------------------------------------------------------


class JiraClientProtocol(Protocol):
    """What the release summary workflow needs from the tracker."""

    async def get_first_unreleased_version(self, project_key: str) -> FixVersion | None:
        """First version that is neither released nor archived, or None."""
        ...

    async def search_issues_by_fix_version(
        self,
        project_key: str,
        version: str,
        exclude_subtasks: bool = True,
        max_results: int = 200,
    ) -> IssueSearchResult:
        """Issues scheduled for a fix version, oldest first."""
        ...

    async def bulk_get_issues(self, keys: list[str]) -> list[JiraIssue]:
        """Fetch several issues by key in one search."""
        ...


# ---------------------------------------------------------------------------
# Concrete Implementation
# ---------------------------------------------------------------------------


class JiraClient:
    """Real Jira client.

    Usage:
        client = JiraClient(JiraConfig(base_url=..., api_token=..., project_key="PROJ"))
        version = await client.get_first_unreleased_version("PROJ")
    """

    def __init__(
        self,
        config: JiraConfig,
        *,
        timeout: float = 30.0,
        max_attempts: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        base_url = config.base_url.rstrip("/")
        headers = {
            "Authorization": f"Bearer {config.api_token}",
            "Accept": "application/json",
        }
        options = {"timeout": timeout, "max_attempts": max_attempts, "transport": transport}
        self._http = HttpClient(f"{base_url}/rest/api/2", headers, **options)
        self._agile = HttpClient(f"{base_url}/rest/agile/1.0", headers, **options)

    async def get_server_info(self) -> dict[str, Any]:
        return await self._http.get("/serverInfo")

    async def list_projects(self, keys: list[str] | None = None) -> list[JiraProject]:
        """List accessible projects, optionally restricted to ``keys`` (case-insensitive)."""
        projects = [JiraProject.model_validate(p) for p in await self._http.get("/project")]
        if keys:
            wanted = {k.upper() for k in keys}
            projects = [p for p in projects if p.key.upper() in wanted]
        logger.info("jira_projects_listed", count=len(projects))
        return projects

    async def list_fix_versions(
        self,
        project_key: str,
        released: bool | None = None,
    ) -> list[FixVersion]:
        """List a project's fix versions in Jira's order.

        Args:
            project_key: Jira project key
            released: Keep only released (True) or unreleased (False) versions;
                      None keeps everything
        """
        raw = await self._http.get(f"/project/{project_key}/versions")
        versions = [FixVersion.model_validate(v) for v in raw]
        if released is not None:
            versions = [v for v in versions if v.released == released]
        logger.info(
            "jira_fix_versions_listed",
            project_key=project_key,
            released=released,
            count=len(versions),
        )
        return versions

    async def get_first_unreleased_version(self, project_key: str) -> FixVersion | None:
        versions = await self.list_fix_versions(project_key)
        unreleased = [v for v in versions if not v.released and not v.archived]
        first = unreleased[0] if unreleased else None
        logger.info(
            "jira_first_unreleased_version",
            project_key=project_key,
            unreleased=len(unreleased),
            version=first.name if first else None,
        )
        return first

    async def search_issues(self, jql: str, max_results: int = 50) -> IssueSearchResult:
        """Run a JQL search.

        Returns:
            The returned page of issues plus Jira's total hit count
        """
        logger.info("jira_search", jql=jql, max_results=max_results)
        raw = await self._http.post(
            "/search",
            {"jql": jql, "maxResults": max_results, "fields": ISSUE_FIELDS},
        )
        result = IssueSearchResult(
            issues=[JiraIssue.model_validate(i) for i in raw.get("issues", [])],
            total=raw.get("total", 0),
        )
        logger.info("jira_search_done", total=result.total, returned=len(result.issues))
        return result

    async def search_issues_by_fix_version(
        self,
        project_key: str,
        version: str,
        exclude_subtasks: bool = True,
        max_results: int = 200,
    ) -> IssueSearchResult:
        jql = fix_version_jql(project_key, version, exclude_subtasks)
        return await self.search_issues(jql, max_results)

    async def bulk_get_issues(self, keys: list[str]) -> list[JiraIssue]:
        if not keys:
            return []
        jql = f"issueKey in ({','.join(jql_quote(k) for k in keys)})"
        result = await self.search_issues(jql, max_results=len(keys))
        return result.issues

    async def get_issue(self, key: str) -> JiraIssue:
        raw = await self._http.get(f"/issue/{key}", params={"fields": ",".join(ISSUE_FIELDS)})
        return JiraIssue.model_validate(raw)

    # -- Agile API ----------------------------------------------------------

    async def lookup_board_id(self, project_key: str) -> int:
        """Id of the first board of a project.

        Raises:
            LookupError: If the project has no board
        """
        raw = await self._agile.get("/board", {"projectKeyOrId": project_key, "maxResults": 1})
        boards = raw.get("values") or []
        if not boards:
            raise LookupError(
                f'No board found for project "{project_key}". Verify the project key is correct.'
            )
        logger.info("jira_board_found", project_key=project_key, board_id=boards[0]["id"])
        return boards[0]["id"]

    async def list_sprints(self, board_id: int, state: str | None = None) -> list[JiraSprint]:
        """List a board's sprints (first 50), optionally only "active", "future" or "closed"."""
        raw = await self._agile.get(
            f"/board/{board_id}/sprint", {"startAt": 0, "maxResults": 50, "state": state}
        )
        sprints = [JiraSprint.model_validate(s) for s in raw.get("values", [])]
        logger.info("jira_sprints_listed", board_id=board_id, state=state, count=len(sprints))
        return sprints

    async def get_sprint_issues(
        self,
        board_id: int,
        sprint_id: int,
        project_key: str | None = None,
        max_results: int = 200,
    ) -> IssueSearchResult:
        """Issues of a sprint, sub-tasks excluded."""
        raw = await self._agile.get(
            f"/board/{board_id}/sprint/{sprint_id}/issue",
            {
                "jql": sprint_jql(sprint_id, project_key),
                "maxResults": max_results,
                "fields": ",".join(ISSUE_FIELDS),
            },
        )
        result = IssueSearchResult(
            issues=[JiraIssue.model_validate(i) for i in raw.get("issues", [])],
            total=raw.get("total", 0),
        )
        logger.info(
            "jira_sprint_issues_listed",
            board_id=board_id,
            sprint_id=sprint_id,
            total=result.total,
            returned=len(result.issues),
        )
        return result


# ---------------------------------------------------------------------------
# Mock Implementation (for testing)
# ---------------------------------------------------------------------------


class MockJiraClient:
    """Jira client returning predefined records.

    Usage:
        client = MockJiraClient(
            versions=[FixVersion(name="26.01.1")],
            issues=[JiraIssue(key="PROJ-1", ...)],
            parents=[JiraIssue(key="PROJ-100", ...)],
        )
    """

    def __init__(
        self,
        versions: list[FixVersion] | None = None,
        issues: list[JiraIssue] | None = None,
        parents: list[JiraIssue] | None = None,
        sprints: dict[int, list[JiraSprint]] | None = None,
    ) -> None:
        self._versions = versions or []
        self._issues = issues or []
        self._parents = parents or []
        self._sprints = sprints or {}

    async def get_server_info(self) -> dict[str, Any]:
        return {"baseUrl": "https://jira.mock", "version": "9.12.0", "serverTitle": "Mock Jira"}

    async def list_fix_versions(
        self,
        project_key: str,
        released: bool | None = None,
    ) -> list[FixVersion]:
        if released is None:
            return list(self._versions)
        return [v for v in self._versions if v.released == released]

    async def get_first_unreleased_version(self, project_key: str) -> FixVersion | None:
        for version in self._versions:
            if not version.released and not version.archived:
                return version
        return None

    async def search_issues_by_fix_version(
        self,
        project_key: str,
        version: str,
        exclude_subtasks: bool = True,
        max_results: int = 200,
    ) -> IssueSearchResult:
        issues = self._issues[:max_results]
        return IssueSearchResult(issues=issues, total=len(self._issues))

    async def bulk_get_issues(self, keys: list[str]) -> list[JiraIssue]:
        wanted = set(keys)
        return [p for p in self._parents if p.key in wanted]

    async def get_issue(self, key: str) -> JiraIssue:
        for issue in [*self._issues, *self._parents]:
            if issue.key == key:
                return issue
        raise KeyError(f"No mock issue {key}")

    async def lookup_board_id(self, project_key: str) -> int:
        if not self._sprints:
            raise LookupError(f'No board found for project "{project_key}".')
        return next(iter(self._sprints))

    async def list_sprints(self, board_id: int, state: str | None = None) -> list[JiraSprint]:
        sprints = self._sprints.get(board_id, [])
        return [s for s in sprints if state is None or s.state == state]

    async def get_sprint_issues(
        self,
        board_id: int,
        sprint_id: int,
        project_key: str | None = None,
        max_results: int = 200,
    ) -> IssueSearchResult:
        return IssueSearchResult(issues=self._issues[:max_results], total=len(self._issues))
