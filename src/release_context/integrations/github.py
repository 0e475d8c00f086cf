"""GitHub REST API client for repositories, branches, Actions runs and pull requests.

This module fetches the source-control side of a release:
- Repositories of the organization, scoped to one application by name prefix
- Branches of each repository (to correlate with Jira issue keys)
- Workflow runs and their log archives (to read the deployment payload)
- Issues, pull requests, file contents and search, for tool callers

Design notes:
- Uses httpx through the shared HttpClient (retries, HttpError)
- Repository listing reads the first page's Link header to learn the page
  count, then fetches the remaining pages concurrently. A failing page is
  logged and contributes no repos instead of failing the listing
- Uses a Protocol so the workflow doesn't depend on the concrete client

GitHub API docs: https://docs.github.com/en/rest
"""

from __future__ import annotations

import asyncio
import base64
from typing import Any, Literal, Protocol

import httpx

from release_context.config import GithubConfig
from release_context.http import HttpClient, last_page
from release_context.logging_config import get_logger
from release_context.schemas import (
    GithubBranch,
    GithubIssue,
    GithubPullRequest,
    GithubRepo,
    GithubSearchResult,
    RepoFile,
    WorkflowRun,
    WorkflowRunList,
)

logger = get_logger(__name__)

PAGE_SIZE = 100

RepoType = Literal["code", "config"]
RepoStatus = Literal["active", "archived"]
PullState = Literal["open", "closed", "all"]


def filter_repos(
    repos: list[GithubRepo],
    app_id: str | None = None,
    repo_type: RepoType = "code",
    status: RepoStatus = "active",
) -> list[GithubRepo]:
    """Apply the application scoping rules to a repository listing.

    Args:
        repos: Repositories as listed by GitHub
        app_id: Case-insensitive name prefix; falsy disables the filter
        repo_type: "code" keeps repos not ending in "-cd", "config" keeps the
                   "-cd" deployment-config repos
        status: "active" drops archived repos, "archived" keeps only those
    """
    filtered = repos
    if app_id:
        prefix = app_id.lower()
        filtered = [r for r in filtered if r.name.lower().startswith(prefix)]
    is_config = repo_type == "config"
    filtered = [r for r in filtered if r.name.lower().endswith("-cd") == is_config]
    want_archived = status == "archived"
    return [r for r in filtered if r.archived == want_archived]


# ---------------------------------------------------------------------------
# Protocol (Interface)
# ---------------------------------------------------------------------------


class GithubClientProtocol(Protocol):
    """What the release summary workflow needs from source control."""

    async def list_repos(
        self,
        org: str,
        app_id: str | None = None,
        repo_type: RepoType = "code",
        status: RepoStatus = "active",
    ) -> list[GithubRepo]:
        ...

    async def list_branches(self, org: str, repo: str) -> list[GithubBranch]:
        ...

    async def list_workflow_runs(
        self,
        org: str,
        repo: str,
        *,
        status: str | None = None,
        branch: str | None = None,
        workflow_id: str | None = None,
        per_page: int = 20,
        page: int = 1,
    ) -> WorkflowRunList:
        ...

    async def download_run_logs(self, org: str, repo: str, run_id: int) -> bytes:
        """Raw zip bytes of a run's logs."""
        ...


# ---------------------------------------------------------------------------
# Concrete Implementation
# ---------------------------------------------------------------------------


class GithubClient:
    """Real GitHub API client using httpx.

    Usage:
        client = GithubClient(GithubConfig(api_token="ghp_...", org="myorg"))
        repos = await client.list_repos("myorg", app_id="App-gsap")
    """

    def __init__(
        self,
        config: GithubConfig,
        *,
        timeout: float = 30.0,
        max_attempts: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._http = HttpClient(
            config.base_url,
            {
                "Authorization": f"Bearer {config.api_token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=timeout,
            max_attempts=max_attempts,
            transport=transport,
        )

    async def get_org(self, org: str) -> dict[str, Any]:
        return await self._http.get(f"/orgs/{org}")

    async def _repos_page(self, org: str, page: int) -> list[GithubRepo]:
        try:
            raw = await self._http.get(f"/orgs/{org}/repos", {"per_page": PAGE_SIZE, "page": page})
        except Exception as exc:
            logger.warning("repos_page_failed", org=org, page=page, error=str(exc))
            return []
        return [GithubRepo.model_validate(r) for r in raw]

    async def list_repos(
        self,
        org: str,
        app_id: str | None = None,
        repo_type: RepoType = "code",
        status: RepoStatus = "active",
    ) -> list[GithubRepo]:
        """List the organization's repositories, filtered to one application.

        Raises:
            HttpError: If the first page cannot be fetched
        """
        first = await self._http.get_raw(f"/orgs/{org}/repos", {"per_page": PAGE_SIZE, "page": 1})
        repos = [GithubRepo.model_validate(r) for r in first.json()]
        pages = last_page(first)

        if pages > 1:
            rest = await asyncio.gather(
                *(self._repos_page(org, page) for page in range(2, pages + 1))
            )
            for batch in rest:
                repos.extend(batch)

        filtered = filter_repos(repos, app_id, repo_type, status)
        logger.info(
            "repos_listed",
            org=org,
            pages=pages,
            fetched=len(repos),
            app_id=app_id,
            repo_type=repo_type,
            status=status,
            count=len(filtered),
        )
        return filtered

    async def list_branches(self, org: str, repo: str) -> list[GithubBranch]:
        """List every branch of a repository, one page of 100 at a time."""
        branches: list[GithubBranch] = []
        page = 1
        while True:
            batch = await self._http.get(
                f"/repos/{org}/{repo}/branches", {"per_page": PAGE_SIZE, "page": page}
            )
            branches.extend(GithubBranch.model_validate(b) for b in batch)
            if len(batch) < PAGE_SIZE:
                break
            page += 1
        logger.debug("branches_listed", org=org, repo=repo, count=len(branches))
        return branches

    async def list_workflow_runs(
        self,
        org: str,
        repo: str,
        *,
        status: str | None = None,
        branch: str | None = None,
        workflow_id: str | None = None,
        per_page: int = 20,
        page: int = 1,
    ) -> WorkflowRunList:
        """List Actions runs, newest first.

        Args:
            status: Run status or conclusion filter (e.g. "completed")
            branch: Head branch filter
            workflow_id: Restrict to one workflow (file name or numeric id)
        """
        path = (
            f"/repos/{org}/{repo}/actions/workflows/{workflow_id}/runs"
            if workflow_id
            else f"/repos/{org}/{repo}/actions/runs"
        )
        raw = await self._http.get(
            path,
            {"status": status, "branch": branch, "per_page": per_page, "page": page},
        )
        result = WorkflowRunList(
            runs=[WorkflowRun.model_validate(r) for r in raw.get("workflow_runs", [])],
            total=raw.get("total_count", 0),
        )
        logger.info(
            "workflow_runs_listed",
            org=org,
            repo=repo,
            status=status,
            total=result.total,
            returned=len(result.runs),
        )
        return result

    async def get_workflow_run(self, org: str, repo: str, run_id: int) -> WorkflowRun:
        raw = await self._http.get(f"/repos/{org}/{repo}/actions/runs/{run_id}")
        return WorkflowRun.model_validate(raw)

    async def download_run_logs(self, org: str, repo: str, run_id: int) -> bytes:
        """Download a run's log archive.

        GitHub answers with a 302 to a short-lived storage URL; the redirect
        is followed and the archive bytes returned.
        """
        response = await self._http.get_raw(f"/repos/{org}/{repo}/actions/runs/{run_id}/logs")
        logger.info("run_logs_downloaded", org=org, repo=repo, run_id=run_id, bytes=len(response.content))
        return response.content

    # -- Issues, pull requests and code ---------------------------------------

    async def get_issue(self, org: str, repo: str, number: int) -> GithubIssue:
        raw = await self._http.get(f"/repos/{org}/{repo}/issues/{number}")
        return GithubIssue.model_validate(raw)

    async def search_issues(self, query: str, per_page: int = 50) -> GithubSearchResult:
        """Issues and pull requests matching a GitHub search query."""
        raw = await self._http.get("/search/issues", {"q": query, "per_page": per_page})
        result = GithubSearchResult(items=raw.get("items", []), total=raw.get("total_count", 0))
        logger.info("github_issue_search", query=query, total=result.total)
        return result

    async def list_pull_requests(
        self,
        org: str,
        repo: str,
        state: PullState = "open",
        base: str | None = None,
    ) -> list[GithubPullRequest]:
        raw = await self._http.get(
            f"/repos/{org}/{repo}/pulls", {"state": state, "base": base, "per_page": 50}
        )
        return [GithubPullRequest.model_validate(p) for p in raw]

    async def get_pull_request(self, org: str, repo: str, number: int) -> GithubPullRequest:
        raw = await self._http.get(f"/repos/{org}/{repo}/pulls/{number}")
        return GithubPullRequest.model_validate(raw)

    async def get_file(self, org: str, repo: str, path: str, ref: str | None = None) -> RepoFile:
        """Fetch a file from the contents API, base64-decoded to text.

        Without ``ref`` GitHub serves the repository's default branch.
        """
        raw = await self._http.get(f"/repos/{org}/{repo}/contents/{path}", {"ref": ref})
        if isinstance(raw, list):
            raise LookupError(f"{path} is a directory in {org}/{repo}, not a file.")
        content = raw.get("content") or ""
        if raw.get("encoding") == "base64" and content:
            content = base64.b64decode(content.replace("\n", "")).decode("utf-8", errors="replace")
        return RepoFile(path=path, ref=ref or "default", size=raw.get("size", 0), content=content)

    async def search_code(self, query: str, per_page: int = 30) -> GithubSearchResult:
        raw = await self._http.get("/search/code", {"q": query, "per_page": per_page})
        result = GithubSearchResult(items=raw.get("items", []), total=raw.get("total_count", 0))
        logger.info("github_code_search", query=query, total=result.total)
        return result


# ---------------------------------------------------------------------------
# Mock Implementation (for testing)
# ---------------------------------------------------------------------------


class MockGithubClient:
    """GitHub client returning predefined data.

    Usage:
        client = MockGithubClient(
            repos=[GithubRepo(name="App-gsap-api")],
            branches={"App-gsap-api": ["main", "feature/PROJ-1-login"]},
            runs={"App-gsap-api": [WorkflowRun(id=7)]},
            logs={7: zip_bytes},
            pulls={"App-gsap-api": [GithubPullRequest(number=12, title="PROJ-1 login")]},
            files={("App-gsap-api", "deploy.yml"): "stages: ..."},
        )
    """

    def __init__(
        self,
        repos: list[GithubRepo] | None = None,
        branches: dict[str, list[str]] | None = None,
        runs: dict[str, list[WorkflowRun]] | None = None,
        logs: dict[int, bytes] | None = None,
        pulls: dict[str, list[GithubPullRequest]] | None = None,
        files: dict[tuple[str, str], str] | None = None,
    ) -> None:
        self._repos = repos or []
        self._branches = branches or {}
        self._runs = runs or {}
        self._logs = logs or {}
        self._pulls = pulls or {}
        self._files = files or {}
        self.downloads: list[tuple[str, int]] = []

    async def list_repos(
        self,
        org: str,
        app_id: str | None = None,
        repo_type: RepoType = "code",
        status: RepoStatus = "active",
    ) -> list[GithubRepo]:
        return filter_repos(list(self._repos), app_id, repo_type, status)

    async def list_branches(self, org: str, repo: str) -> list[GithubBranch]:
        return [GithubBranch(name=name) for name in self._branches.get(repo, [])]

    async def list_workflow_runs(
        self,
        org: str,
        repo: str,
        *,
        status: str | None = None,
        branch: str | None = None,
        workflow_id: str | None = None,
        per_page: int = 20,
        page: int = 1,
    ) -> WorkflowRunList:
        runs = self._runs.get(repo, [])
        return WorkflowRunList(runs=runs[:per_page], total=len(runs))

    async def download_run_logs(self, org: str, repo: str, run_id: int) -> bytes:
        self.downloads.append((repo, run_id))
        if run_id not in self._logs:
            raise KeyError(f"No mock logs for run {run_id}")
        return self._logs[run_id]

    async def get_org(self, org: str) -> dict[str, Any]:
        return {"login": org, "public_repos": len(self._repos)}

    async def list_pull_requests(
        self,
        org: str,
        repo: str,
        state: PullState = "open",
        base: str | None = None,
    ) -> list[GithubPullRequest]:
        pulls = self._pulls.get(repo, [])
        return [p for p in pulls if state == "all" or p.state in (None, state)]

    async def get_pull_request(self, org: str, repo: str, number: int) -> GithubPullRequest:
        for pull in self._pulls.get(repo, []):
            if pull.number == number:
                return pull
        raise KeyError(f"No mock pull request {repo}#{number}")

    async def get_issue(self, org: str, repo: str, number: int) -> GithubIssue:
        pull = await self.get_pull_request(org, repo, number)
        return GithubIssue.model_validate(pull.model_dump())

    async def search_issues(self, query: str, per_page: int = 50) -> GithubSearchResult:
        needle = query.lower()
        items = [
            p.model_dump()
            for pulls in self._pulls.values()
            for p in pulls
            if needle in p.title.lower()
        ]
        return GithubSearchResult(items=items[:per_page], total=len(items))

    async def get_file(self, org: str, repo: str, path: str, ref: str | None = None) -> RepoFile:
        if (repo, path) not in self._files:
            raise KeyError(f"No mock file {repo}/{path}")
        content = self._files[repo, path]
        return RepoFile(path=path, ref=ref or "default", size=len(content), content=content)

    async def search_code(self, query: str, per_page: int = 30) -> GithubSearchResult:
        needle = query.lower()
        items = [
            {"name": path.rsplit("/", 1)[-1], "path": path, "repository": {"name": repo}}
            for (repo, path), content in self._files.items()
            if needle in content.lower()
        ]
        return GithubSearchResult(items=items[:per_page], total=len(items))
