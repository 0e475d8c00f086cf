"""Tool registry: every callable operation behind one request/response shape.

A tool is a name, a description, a pydantic model for its arguments and an
async handler. Handlers receive the shared Services (config + clients) and
the validated arguments, and always return a ToolResponse envelope.

Error policy:
- Argument validation errors propagate as pydantic ValidationError (a
  ValueError); the API turns them into 422s
- Failures of the remote systems (HTTP errors, missing records, unreadable
  log archives) become `build_error` envelopes with `success=False`
- An unknown tool name raises UnknownToolError
- Anything else propagates to the caller's last-resort handler
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field

from release_context.config import AppConfig
from release_context.envelope import ToolResponse, build_error, build_response
from release_context.http import HttpError
from release_context.integrations.confluence import ConfluenceClient
from release_context.integrations.github import GithubClient, PullState, RepoStatus, RepoType
from release_context.integrations.jira import JiraClient, fix_version_jql, sprint_jql
from release_context.logging_config import get_logger
from release_context.logs import (
    LogArchiveError,
    PayloadExtractionError,
    extract_logs_from_zip,
    extract_payload_object,
    filter_log_lines,
)
from release_context.workflow import ReleaseSummaryInput, ReleaseSummaryWorkflow

logger = get_logger(__name__)

SERVER_ONLINE = "Server is Online"

# Failures of a remote system, reported as error envelopes.
TOOL_ERRORS = (HttpError, httpx.HTTPError, LookupError, LogArchiveError, PayloadExtractionError)


class UnknownToolError(LookupError):
    """Raised when a tool name is not registered."""


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@dataclass
class Services:
    """Config plus one client per configured system.

    Clients hold no connection state, so one Services instance is shared by
    every request of the API process.
    """

    config: AppConfig
    jira: Any
    github: Any
    confluence: Any = None

    @classmethod
    def from_config(cls, config: AppConfig) -> Services:
        settings = config.settings
        options = {"timeout": settings.http_timeout, "max_attempts": settings.http_max_attempts}
        return cls(
            config=config,
            jira=JiraClient(config.jira, **options),
            github=GithubClient(config.github, **options),
            confluence=(
                ConfluenceClient(config.confluence, **options) if config.confluence else None
            ),
        )

    def workflow(self) -> ReleaseSummaryWorkflow:
        return ReleaseSummaryWorkflow(
            self.jira,
            self.github,
            project_key=self.config.jira.project_key,
            org=self.config.github.org,
            app_id=self.config.github.app_id,
            settings=self.config.settings,
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ToolHandler = Callable[[Services, Any], Awaitable[ToolResponse]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: type[BaseModel]
    handler: ToolHandler

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.args_model.model_json_schema(),
        }


TOOLS: dict[str, ToolSpec] = {}


def tool(name: str, description: str, args_model: type[BaseModel]):
    """Register the decorated handler under ``name``."""

    def register(handler: ToolHandler) -> ToolHandler:
        TOOLS[name] = ToolSpec(name, description, args_model, handler)
        return handler

    return register


async def call_tool(
    services: Services,
    name: str,
    arguments: dict[str, Any] | None = None,
) -> ToolResponse:
    """Validate arguments and run a tool.

    Raises:
        UnknownToolError: If no tool is registered under ``name``
        pydantic.ValidationError: If the arguments do not validate
    """
    spec = TOOLS.get(name)
    if spec is None:
        raise UnknownToolError(f"Unknown tool: {name}")
    args = spec.args_model.model_validate(arguments or {})
    log = logger.bind(tool=name)
    log.info("tool_called")
    try:
        response = await spec.handler(services, args)
    except TOOL_ERRORS as exc:
        log.warning("tool_failed", error=str(exc), error_type=type(exc).__name__)
        return build_error(f"{name} failed: {exc}", None)
    log.info("tool_completed", success=response.success)
    return response


def _dump(models: list[BaseModel]) -> list[dict[str, Any]]:
    return [m.model_dump(by_alias=True, exclude_none=True) for m in models]


def _org(services: Services, args: GithubArgs) -> str:
    return args.org or services.config.github.org


def _require_confluence(services: Services) -> ConfluenceClient:
    if services.confluence is None:
        raise LookupError(
            "Confluence is not configured. Set CONFLUENCE_BASE_URL and CONFLUENCE_API_TOKEN."
        )
    return services.confluence


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------


class NoArgs(BaseModel):
    pass


class ListToolsArgs(BaseModel):
    filter: str | None = Field(None, description="Case-insensitive substring of the tool name")


class ListProjectsArgs(BaseModel):
    keys: list[str] | None = Field(None, description="Restrict to these project keys")


class ListFixVersionsArgs(BaseModel):
    project_key: str | None = None
    released: bool | None = Field(None, description="True = released only, False = unreleased only")


class SearchIssuesArgs(BaseModel):
    jql: str = Field(..., min_length=1)
    max_results: int = Field(50, ge=1, le=1000)


class IssuesByFixVersionArgs(BaseModel):
    fix_version: str = Field(..., min_length=1)
    project_key: str | None = None
    include_subtasks: bool = False
    max_results: int = Field(200, ge=1, le=1000)


class IssueKeyArgs(BaseModel):
    key: str = Field(..., min_length=1)


class ListSprintsArgs(BaseModel):
    board_id: int | None = Field(
        None, gt=0, description="Board id; defaults to the first board of the project"
    )
    project_key: str | None = None
    state: Literal["active", "future", "closed"] | None = None


class SprintIssuesArgs(BaseModel):
    sprint_id: int = Field(..., gt=0)
    board_id: int | None = Field(None, gt=0)
    project_key: str | None = None
    max_results: int = Field(200, ge=1, le=1000)


class GithubArgs(BaseModel):
    org: str | None = Field(None, description="GitHub organization; defaults to GITHUB_ORG")


class ListReposArgs(GithubArgs):
    app_id: str | None = Field(None, description="Repo name prefix; defaults to GITHUB_APP_ID")
    repo_type: RepoType = "code"
    status: RepoStatus = "active"


class ListBranchesArgs(GithubArgs):
    repo: str = Field(..., min_length=1)
    filter: str | None = Field(None, description="Case-insensitive substring of the branch name")


class ListWorkflowRunsArgs(GithubArgs):
    repo: str = Field(..., min_length=1)
    status: str | None = None
    branch: str | None = None
    workflow_id: str | None = None
    per_page: int = Field(20, ge=1, le=100)
    page: int = Field(1, ge=1)


class WorkflowRunArgs(GithubArgs):
    repo: str = Field(..., min_length=1)
    run_id: int = Field(..., gt=0)


class RunLogsArgs(WorkflowRunArgs):
    file_filter: str | None = Field(None, description="Substring of the log file names to keep")
    line_filter: str | None = Field(None, description="Only return lines containing this text")
    extract_payload: bool = Field(False, description="Also parse the `Payload:` JSON object")


class GithubIssueArgs(GithubArgs):
    repo: str = Field(..., min_length=1)
    issue_number: int = Field(..., gt=0)


class PullRequestArgs(GithubArgs):
    repo: str = Field(..., min_length=1)
    pull_number: int = Field(..., gt=0)


class ListPullsArgs(GithubArgs):
    repo: str = Field(..., min_length=1)
    state: PullState = "open"
    base: str | None = Field(None, description="Base branch, e.g. main")


class GetFileArgs(GithubArgs):
    repo: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1)
    ref: str | None = Field(None, description="Branch, tag or commit; defaults to the default one")


class GithubSearchArgs(BaseModel):
    query: str = Field(
        ..., min_length=1, description="GitHub search syntax, e.g. 'repo:myorg/app is:open'"
    )


class ListSpacesArgs(BaseModel):
    limit: int = Field(25, ge=1, le=250)
    cursor: str | None = None


class SpaceIdArgs(BaseModel):
    space_id: str = Field(..., min_length=1)


class PageIdArgs(BaseModel):
    page_id: str = Field(..., min_length=1)


class SearchPagesArgs(BaseModel):
    query: str = Field(..., min_length=1)
    space_id: str | None = None
    cursor: str | None = None


class ChildPagesArgs(PageIdArgs):
    cursor: str | None = None


# ---------------------------------------------------------------------------
# Meta tools
# ---------------------------------------------------------------------------


@tool("status", "Check that the server is up.", NoArgs)
async def status(services: Services, args: NoArgs) -> ToolResponse:
    return build_response({"status": SERVER_ONLINE}, SERVER_ONLINE)


@tool("list_tools", "List the available tools and their argument schemas.", ListToolsArgs)
async def list_tools(services: Services, args: ListToolsArgs) -> ToolResponse:
    needle = (args.filter or "").lower()
    tools = [spec.describe() for name, spec in TOOLS.items() if needle in name.lower()]
    return build_response({"tools": tools}, f"{len(tools)} tool(s) available.")


# ---------------------------------------------------------------------------
# Jira tools
# ---------------------------------------------------------------------------


@tool("jira_status", "Check the Jira connection by fetching server info.", NoArgs)
async def jira_status(services: Services, args: NoArgs) -> ToolResponse:
    info = await services.jira.get_server_info()
    title = info.get("serverTitle") or info.get("baseUrl") or "Jira"
    return build_response(info, f"Connected to {title} (version {info.get('version', 'unknown')}).")


@tool("jira_list_projects", "List accessible Jira projects.", ListProjectsArgs)
async def jira_list_projects(services: Services, args: ListProjectsArgs) -> ToolResponse:
    projects = await services.jira.list_projects(args.keys)
    return build_response(_dump(projects), f"Found {len(projects)} project(s).")


@tool(
    "jira_list_fix_versions",
    "List a project's fix versions, optionally only released or unreleased ones.",
    ListFixVersionsArgs,
)
async def jira_list_fix_versions(services: Services, args: ListFixVersionsArgs) -> ToolResponse:
    project_key = args.project_key or services.config.jira.project_key
    versions = await services.jira.list_fix_versions(project_key, args.released)
    return build_response(
        _dump(versions), f"Found {len(versions)} fix version(s) for {project_key}."
    )


@tool("jira_search_issues", "Run a JQL search.", SearchIssuesArgs)
async def jira_search_issues(services: Services, args: SearchIssuesArgs) -> ToolResponse:
    result = await services.jira.search_issues(args.jql, args.max_results)
    return build_response(
        {"issues": _dump(result.issues), "total": result.total},
        f"Found {result.total} issue(s); returned {len(result.issues)}.",
    )


@tool(
    "jira_list_issues_by_fix_version",
    "List the issues scheduled for a fix version, oldest first.",
    IssuesByFixVersionArgs,
)
async def jira_list_issues_by_fix_version(
    services: Services, args: IssuesByFixVersionArgs
) -> ToolResponse:
    project_key = args.project_key or services.config.jira.project_key
    result = await services.jira.search_issues_by_fix_version(
        project_key,
        args.fix_version,
        exclude_subtasks=not args.include_subtasks,
        max_results=args.max_results,
    )
    return build_response(
        {
            "jql": fix_version_jql(project_key, args.fix_version, not args.include_subtasks),
            "issues": _dump(result.issues),
            "total": result.total,
        },
        f"Fix version {args.fix_version} ({project_key}): {result.total} issue(s).",
    )


@tool("jira_get_issue", "Fetch one issue by key, including custom fields.", IssueKeyArgs)
async def jira_get_issue(services: Services, args: IssueKeyArgs) -> ToolResponse:
    issue = await services.jira.get_issue(args.key)
    return build_response(issue.model_dump(by_alias=True), f"{issue.key}: {issue.fields.summary}")


async def _board_id(services: Services, board_id: int | None, project_key: str) -> int:
    if board_id:
        return board_id
    return await services.jira.lookup_board_id(project_key)


@tool(
    "jira_list_sprints",
    "List a board's sprints, optionally only active, future or closed ones.",
    ListSprintsArgs,
)
async def jira_list_sprints(services: Services, args: ListSprintsArgs) -> ToolResponse:
    project_key = args.project_key or services.config.jira.project_key
    board_id = await _board_id(services, args.board_id, project_key)
    sprints = await services.jira.list_sprints(board_id, args.state)
    state = f" ({args.state})" if args.state else ""
    return build_response(
        _dump(sprints), f"Found {len(sprints)} sprint(s) on board {board_id}{state}."
    )


@tool("jira_list_issues_by_sprint", "List a sprint's issues, sub-tasks excluded.", SprintIssuesArgs)
async def jira_list_issues_by_sprint(services: Services, args: SprintIssuesArgs) -> ToolResponse:
    project_key = args.project_key or services.config.jira.project_key
    board_id = await _board_id(services, args.board_id, project_key)
    result = await services.jira.get_sprint_issues(
        board_id, args.sprint_id, project_key, args.max_results
    )
    return build_response(
        {
            "board_id": board_id,
            "jql": sprint_jql(args.sprint_id, project_key),
            "issues": _dump(result.issues),
            "total": result.total,
        },
        f"Found {result.total} issue(s) in sprint {args.sprint_id} (excluding sub-tasks).",
    )


# ---------------------------------------------------------------------------
# GitHub tools
# ---------------------------------------------------------------------------


@tool("github_status", "Check GitHub connectivity for the organization.", GithubArgs)
async def github_status(services: Services, args: GithubArgs) -> ToolResponse:
    org = _org(services, args)
    info = await services.github.get_org(org)
    return build_response(
        {"org": info.get("login", org), "public_repos": info.get("public_repos")},
        f"Connected to GitHub organization {org}.",
    )


@tool("github_list_repos", "List the application's repositories.", ListReposArgs)
async def github_list_repos(services: Services, args: ListReposArgs) -> ToolResponse:
    app_id = args.app_id or services.config.github.app_id or None
    repos = await services.github.list_repos(
        _org(services, args), app_id, args.repo_type, args.status
    )
    return build_response(_dump(repos), f"Found {len(repos)} {args.status} {args.repo_type} repo(s).")


@tool("github_list_branches", "List a repository's branches.", ListBranchesArgs)
async def github_list_branches(services: Services, args: ListBranchesArgs) -> ToolResponse:
    branches = await services.github.list_branches(_org(services, args), args.repo)
    if args.filter:
        needle = args.filter.lower()
        branches = [b for b in branches if needle in b.name.lower()]
    return build_response(_dump(branches), f"Found {len(branches)} branch(es) in {args.repo}.")


@tool("github_list_workflow_runs", "List a repository's Actions runs.", ListWorkflowRunsArgs)
async def github_list_workflow_runs(
    services: Services, args: ListWorkflowRunsArgs
) -> ToolResponse:
    result = await services.github.list_workflow_runs(
        _org(services, args),
        args.repo,
        status=args.status,
        branch=args.branch,
        workflow_id=args.workflow_id,
        per_page=args.per_page,
        page=args.page,
    )
    return build_response(
        {"runs": _dump(result.runs), "total": result.total},
        f"Found {result.total} run(s) in {args.repo}; returned {len(result.runs)}.",
    )


@tool("github_get_workflow_run", "Fetch one Actions run.", WorkflowRunArgs)
async def github_get_workflow_run(services: Services, args: WorkflowRunArgs) -> ToolResponse:
    run = await services.github.get_workflow_run(_org(services, args), args.repo, args.run_id)
    return build_response(
        run.model_dump(exclude_none=True),
        f"Run {run.id} ({run.name or 'unnamed'}): {run.status}/{run.conclusion}.",
    )


@tool(
    "github_get_run_logs",
    "Download a run's logs, optionally filtered, and optionally extract the deploy payload.",
    RunLogsArgs,
)
async def github_get_run_logs(services: Services, args: RunLogsArgs) -> ToolResponse:
    archive = await services.github.download_run_logs(_org(services, args), args.repo, args.run_id)
    entries = extract_logs_from_zip(archive, args.file_filter)

    files = []
    payloads = []
    errors = []
    for entry in entries:
        lines = (
            filter_log_lines(entry.content, args.line_filter)
            if args.line_filter
            else entry.content.splitlines()
        )
        files.append({"file_name": entry.file_name, "lines": lines})
        if not args.extract_payload:
            continue
        try:
            search = extract_payload_object(entry.content)
        except PayloadExtractionError as exc:
            payloads.append({"file_name": entry.file_name, "error": str(exc)})
            errors.append(f"{entry.file_name}: {exc}")
            continue
        if search.found:
            payloads.append({"file_name": entry.file_name, "payload": search.payload})

    data: dict[str, Any] = {"run_id": args.run_id, "repo": args.repo, "files": files}
    summary = f"Extracted {len(files)} log file(s) from run {args.run_id}."
    if args.extract_payload:
        data["payloads"] = payloads
        summary += f" Payload objects found: {len(payloads) - len(errors)}."
        if errors:
            summary += f" Unparseable payloads: {len(errors)}."
    return build_response(data, summary, errors)


@tool(
    "github_get_issue",
    "Fetch one GitHub issue with its labels, assignees and body.",
    GithubIssueArgs,
)
async def github_get_issue(services: Services, args: GithubIssueArgs) -> ToolResponse:
    org = _org(services, args)
    issue = await services.github.get_issue(org, args.repo, args.issue_number)
    return build_response(
        issue.model_dump(), f"Retrieved issue #{issue.number} in {org}/{args.repo}."
    )


@tool(
    "github_search_issues",
    "Search issues and pull requests with GitHub search syntax.",
    GithubSearchArgs,
)
async def github_search_issues(services: Services, args: GithubSearchArgs) -> ToolResponse:
    result = await services.github.search_issues(args.query)
    return build_response(result.model_dump(), f"Found {result.total} result(s) for query.")


@tool("github_list_prs", "List a repository's pull requests.", ListPullsArgs)
async def github_list_prs(services: Services, args: ListPullsArgs) -> ToolResponse:
    org = _org(services, args)
    pulls = await services.github.list_pull_requests(org, args.repo, args.state, args.base)
    return build_response(
        _dump(pulls), f"Found {len(pulls)} PR(s) in {org}/{args.repo} ({args.state})."
    )


@tool("github_get_pr", "Fetch one pull request with its merge state.", PullRequestArgs)
async def github_get_pr(services: Services, args: PullRequestArgs) -> ToolResponse:
    org = _org(services, args)
    pull = await services.github.get_pull_request(org, args.repo, args.pull_number)
    return build_response(pull.model_dump(), f"Retrieved PR #{pull.number} in {org}/{args.repo}.")


@tool("github_get_file", "Fetch a file's text content from a repository.", GetFileArgs)
async def github_get_file(services: Services, args: GetFileArgs) -> ToolResponse:
    org = _org(services, args)
    repo_file = await services.github.get_file(org, args.repo, args.path, args.ref)
    return build_response(
        repo_file.model_dump(), f"Retrieved {repo_file.path} from {org}/{args.repo}."
    )


@tool("github_search_code", "Search code with GitHub code search syntax.", GithubSearchArgs)
async def github_search_code(services: Services, args: GithubSearchArgs) -> ToolResponse:
    result = await services.github.search_code(args.query)
    return build_response(result.model_dump(), f"Found {result.total} code result(s).")


# ---------------------------------------------------------------------------
# Confluence tools
# ---------------------------------------------------------------------------


@tool("confluence_list_spaces", "List Confluence spaces.", ListSpacesArgs)
async def confluence_list_spaces(services: Services, args: ListSpacesArgs) -> ToolResponse:
    result = await _require_confluence(services).list_spaces(args.limit, args.cursor)
    return build_response(
        {"spaces": _dump(result.spaces), "next_cursor": result.next_cursor},
        f"Found {len(result.spaces)} space(s).",
    )


@tool("confluence_status", "Check the Confluence connection by listing one space.", NoArgs)
async def confluence_status(services: Services, args: NoArgs) -> ToolResponse:
    result = await _require_confluence(services).list_spaces(limit=1)
    configured = services.config.confluence.space_name if services.config.confluence else ""
    return build_response(
        {
            "connected": True,
            "space_sample": _dump(result.spaces)[0] if result.spaces else None,
            "configured_space": configured or None,
        },
        "Confluence connection verified.",
    )


@tool("confluence_get_space", "Fetch one Confluence space by id.", SpaceIdArgs)
async def confluence_get_space(services: Services, args: SpaceIdArgs) -> ToolResponse:
    space = await _require_confluence(services).get_space(args.space_id)
    return build_response(space.model_dump(by_alias=True), f"Retrieved space: {space.name}.")


@tool("confluence_get_page","Fetch a Confluence page with its storage-format body.", PageIdArgs)
async def confluence_get_page(services: Services, args: PageIdArgs) -> ToolResponse:
    page = await _require_confluence(services).get_page(args.page_id)
    return build_response(
        {
            "id": page.id,
            "title": page.title,
            "space_id": page.space_id,
            "parent_id": page.parent_id,
            "body": page.storage_body,
        },
        f"Page {page.id}: {page.title}",
    )


@tool("confluence_search_pages", "Find Confluence pages by title.", SearchPagesArgs)
async def confluence_search_pages(services: Services, args: SearchPagesArgs) -> ToolResponse:
    result = await _require_confluence(services).search_pages(
        args.query, args.space_id, args.cursor
    )
    return build_response(
        {"pages": _dump(result.pages), "next_cursor": result.next_cursor},
        f"Found {len(result.pages)} page(s) titled '{args.query}'.",
    )


@tool("confluence_list_child_pages", "List the child pages of a Confluence page.", ChildPagesArgs)
async def confluence_list_child_pages(services: Services, args: ChildPagesArgs) -> ToolResponse:
    result = await _require_confluence(services).list_child_pages(args.page_id, args.cursor)
    return build_response(
        {"pages": _dump(result.pages), "next_cursor": result.next_cursor},
        f"Found {len(result.pages)} child page(s) of {args.page_id}.",
    )


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


@tool(
    "app_release_summary",
    "Summarize a release: fix version issues grouped by feature, matching "
    "branches, and the deployment payload from the latest run's logs.",
    ReleaseSummaryInput,
)
async def app_release_summary(services: Services, args: ReleaseSummaryInput) -> ToolResponse:
    return await services.workflow().run(args)
