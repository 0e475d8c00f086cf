"""Release summary workflow.

Chains Jira and GitHub calls into one deterministic report for a fix
version. Six steps run strictly in order, each isolated by the step runner:

1. fix_version_resolution  use the given version, or Jira's first unreleased
2. issue_search            non-sub-task issues of that version (max 200)
3. parent_features         bulk-fetch the distinct parent issues
4. branch_discovery        list the app's repos, all their branches, and
                           match branch names against the issue keys
5. log_download            newest completed run of the target repo, its log
                           archive, and the "Deploy Trigger Stage" entry
6. payload_extraction      the `Payload:` JSON object from that entry

Failure policy:
- Steps 1 and 2 are fatal. The report is assembled immediately and the
  remaining steps stay `skipped`
- Steps 3 to 6 are not. A failure is recorded and the next step still runs
  with whatever data is available
- Steps 5 and 6 are `skipped` when no target repository can be chosen, and
  step 6 is `skipped` when step 5 failed

The report is always returned. `overall_status` is `failed` when a fatal
step failed, `complete` when all six steps succeeded, `partial` otherwise.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, computed_field

from release_context.branches import BranchMatch, RepoBranch, find_branches_matching_issue_keys
from release_context.config import AppConfig, ConfigError, WorkflowSettings, load_config
from release_context.envelope import ToolResponse, build_error, build_response
from release_context.integrations.github import GithubClient, GithubClientProtocol
from release_context.integrations.jira import JiraClient, JiraClientProtocol
from release_context.logging_config import get_logger, setup_logging
from release_context.logs import (
    LogEntry,
    extract_logs_from_zip,
    extract_payload_object,
    find_deploy_trigger_stage_log,
    payload_excerpt,
)
from release_context.schemas import JiraIssue
from release_context.steps import StepResult, StepStatus, run_step, skip_step

logger = get_logger(__name__)

SUMMARY_UNAVAILABLE = "(summary unavailable)"
STATUS_UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Input / step data / report models
# ---------------------------------------------------------------------------


class ReleaseSummaryInput(BaseModel):
    """Caller-facing arguments of the workflow."""

    fix_version: str | None = Field(
        None,
        description="Jira fix version name (e.g. '26.01.1'). Auto-resolves the "
        "first unreleased version of the project when omitted.",
    )
    project_key: str | None = Field(
        None, description="Jira project key. Defaults to the configured project."
    )
    force_log_refresh: bool = Field(
        False,
        description="Ignore workflow_run_id and use the most recent completed run.",
    )
    workflow_run_id: int | None = Field(
        None, gt=0, description="GitHub Actions run id to read the deploy logs from."
    )


class VersionResolution(BaseModel):
    version: str
    released: bool


class IssueSearchData(BaseModel):
    issues: list[JiraIssue]
    total: int


class ParentFeaturesData(BaseModel):
    features: list[JiraIssue]
    unique_parent_keys: list[str]


class BranchDiscoveryData(BaseModel):
    matches: list[BranchMatch]
    repos: list[str]
    searched_repos: int


class LogDownloadData(BaseModel):
    run_id: int
    repo: str
    entries_found: int
    deploy_trigger_file: str


class PayloadExtractionData(BaseModel):
    payload: dict[str, Any]
    raw_match: str


class PipelineSteps(BaseModel):
    """One result slot per step, all `skipped` until the step runs."""

    fix_version_resolution: StepResult = Field(default_factory=skip_step)
    issue_search: StepResult = Field(default_factory=skip_step)
    parent_features: StepResult = Field(default_factory=skip_step)
    branch_discovery: StepResult = Field(default_factory=skip_step)
    log_download: StepResult = Field(default_factory=skip_step)
    payload_extraction: StepResult = Field(default_factory=skip_step)

    def results(self) -> dict[str, StepResult]:
        return {name: getattr(self, name) for name in type(self).model_fields}


class OverallStatus(StrEnum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


def compute_overall_status(steps: PipelineSteps) -> OverallStatus:
    if steps.fix_version_resolution.failed or steps.issue_search.failed:
        return OverallStatus.FAILED
    if all(result.succeeded for result in steps.results().values()):
        return OverallStatus.COMPLETE
    return OverallStatus.PARTIAL


class FeatureGroup(BaseModel):
    feature_key: str
    feature_summary: str
    feature_status: str
    issues: list[JiraIssue]


class ReleaseReportBody(BaseModel):
    summary: str
    issues_by_feature: list[FeatureGroup]
    unparented_issues: list[JiraIssue]
    branch_matches: list[BranchMatch]
    deploy_payload: dict[str, Any]


class ReleaseSummaryReport(BaseModel):
    """Externally visible workflow result.

    Attributes:
        fix_version: The resolved (or requested) fix version
        project_key: Jira project the issues were searched in
        verification_token: Token of the envelope carrying this report
        timestamp: Assembly time (ISO-8601 UTC)
        steps: Outcome of every step
        report: Grouped release data; present only if issue_search succeeded
    """

    fix_version: str
    project_key: str
    verification_token: str = ""
    timestamp: str = ""
    steps: PipelineSteps
    report: ReleaseReportBody | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def overall_status(self) -> OverallStatus:
        return compute_overall_status(self.steps)


# ---------------------------------------------------------------------------
# Report assembly
# ---------------------------------------------------------------------------


def select_candidate_repos(branch_discovery: StepResult) -> list[str]:
    """Repositories worth reading deploy logs from, best first.

    Distinct repos of the branch matches when there are any; otherwise the
    first repo of the listing; nothing if branch discovery did not succeed.
    """
    if not branch_discovery.succeeded:
        return []
    data: BranchDiscoveryData = branch_discovery.data
    if data.matches:
        return list(dict.fromkeys(match.repo for match in data.matches))
    return data.repos[:1]


def group_issues_by_feature(
    issues: list[JiraIssue],
    features: list[JiraIssue],
) -> tuple[list[FeatureGroup], list[JiraIssue]]:
    """Group issues under their parent, in order of first appearance.

    Returns:
        (feature groups, issues without a parent)
    """
    feature_map = {feature.key: feature for feature in features}
    grouped: dict[str, list[JiraIssue]] = {}
    unparented: list[JiraIssue] = []
    for issue in issues:
        parent_key = issue.parent_key
        if parent_key:
            grouped.setdefault(parent_key, []).append(issue)
        else:
            unparented.append(issue)

    groups = []
    for feature_key, feature_issues in grouped.items():
        feature = feature_map.get(feature_key)
        status = feature.fields.status if feature else None
        groups.append(
            FeatureGroup(
                feature_key=feature_key,
                feature_summary=feature.fields.summary if feature else SUMMARY_UNAVAILABLE,
                feature_status=status.name if status else STATUS_UNKNOWN,
                issues=feature_issues,
            )
        )
    return groups, unparented


def build_final_report(
    steps: PipelineSteps,
    fix_version: str,
    project_key: str,
) -> ToolResponse[ReleaseSummaryReport]:
    """Assemble the report from whatever steps succeeded. Never raises."""
    result = ReleaseSummaryReport(fix_version=fix_version, project_key=project_key, steps=steps)
    status = result.overall_status

    if steps.issue_search.succeeded:
        issues = steps.issue_search.data.issues
        features = steps.parent_features.data.features if steps.parent_features.succeeded else []
        groups, unparented = group_issues_by_feature(issues, features)
        matches = steps.branch_discovery.data.matches if steps.branch_discovery.succeeded else []
        payload = (
            steps.payload_extraction.data.payload if steps.payload_extraction.succeeded else {}
        )
        match_count = len(matches) if steps.branch_discovery.succeeded else "n/a"
        payload_state = "extracted" if steps.payload_extraction.succeeded else "unavailable"
        result.report = ReleaseReportBody(
            summary=(
                f"Fix version {fix_version} ({project_key}): {len(issues)} issue(s) across "
                f"{len(groups)} parent feature(s). Branch matches: {match_count}. "
                f"Deployment payload: {payload_state}."
            ),
            issues_by_feature=groups,
            unparented_issues=unparented,
            branch_matches=matches,
            deploy_payload=payload,
        )

    counts = {s: 0 for s in StepStatus}
    for step in steps.results().values():
        counts[step.status] += 1
    logger.info(
        "report_assembled",
        fix_version=fix_version,
        project_key=project_key,
        overall_status=status.value,
        steps_ok=counts[StepStatus.SUCCESS],
        steps_failed=counts[StepStatus.FAILED],
        steps_skipped=counts[StepStatus.SKIPPED],
    )

    summary = (
        result.report.summary
        if result.report
        else f"Release summary for {fix_version or '(unresolved)'} ({status.value})."
    )
    step_errors = [f"{name}: {step.error}" for name, step in steps.results().items() if step.failed]
    if status == OverallStatus.FAILED:
        response = build_error(summary, result, step_errors)
    else:
        response = build_response(result, summary, step_errors)
    result.verification_token = response.verification_token
    result.timestamp = response.timestamp
    return response


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class ReleaseSummaryWorkflow:
    """Runs the six release summary steps against injected clients.

    Each run builds its own step table; the workflow object holds only the
    clients and settings and can be reused.

    Usage:
        workflow = ReleaseSummaryWorkflow(jira, github, project_key="PROJ", org="myorg")
        response = await workflow.run(ReleaseSummaryInput(fix_version="26.01.1"))
        print(response.data.overall_status)
    """

    def __init__(
        self,
        jira: JiraClientProtocol,
        github: GithubClientProtocol,
        *,
        project_key: str,
        org: str,
        app_id: str | None = None,
        settings: WorkflowSettings | None = None,
        log: Any = None,
    ) -> None:
        self.jira = jira
        self.github = github
        self.project_key = project_key
        self.org = org
        self.app_id = app_id or None
        self.settings = settings or WorkflowSettings()
        self._log = log or logger

    async def run(self, request: ReleaseSummaryInput) -> ToolResponse[ReleaseSummaryReport]:
        project_key = request.project_key or self.project_key
        log = self._log.bind(project_key=project_key, fix_version=request.fix_version or "auto")
        log.info("workflow_started", force_log_refresh=request.force_log_refresh)
        steps = PipelineSteps()

        steps.fix_version_resolution = await run_step(
            "fix_version_resolution",
            lambda: self._resolve_version(request, project_key),
            log=log,
        )
        if steps.fix_version_resolution.succeeded:
            fix_version = steps.fix_version_resolution.data.version
        else:
            fix_version = request.fix_version or ""
            log.error("workflow_aborted", failed_step="fix_version_resolution")
            return build_final_report(steps, fix_version, project_key)

        log = log.bind(fix_version=fix_version)
        steps.issue_search = await run_step(
            "issue_search",
            lambda: self._search_issues(project_key, fix_version),
            log=log,
        )
        if not steps.issue_search.succeeded:
            log.error("workflow_aborted", failed_step="issue_search")
            return build_final_report(steps, fix_version, project_key)

        issues: list[JiraIssue] = steps.issue_search.data.issues

        steps.parent_features = await run_step(
            "parent_features", lambda: self._parent_features(issues), log=log
        )
        steps.branch_discovery = await run_step(
            "branch_discovery", lambda: self._discover_branches(issues, log), log=log
        )

        candidates = select_candidate_repos(steps.branch_discovery)
        if not candidates:
            log.info("log_download_skipped", reason="no target repository")
            return build_final_report(steps, fix_version, project_key)

        target_repo = candidates[0]
        log.info("target_repo_selected", repo=target_repo, candidates=candidates)
        steps.log_download = await run_step(
            "log_download", lambda: self._download_logs(target_repo, request), log=log
        )
        if steps.log_download.succeeded:
            run_id = steps.log_download.data.run_id
            steps.payload_extraction = await run_step(
                "payload_extraction",
                lambda: self._extract_payload(target_repo, run_id),
                log=log,
            )

        return build_final_report(steps, fix_version, project_key)

    # -- steps ---------------------------------------------------------------

    async def _resolve_version(
        self, request: ReleaseSummaryInput, project_key: str
    ) -> VersionResolution:
        if request.fix_version:
            # Not looked up, so released is assumed false.
            return VersionResolution(version=request.fix_version, released=False)
        version = await self.jira.get_first_unreleased_version(project_key)
        if version is None:
            raise LookupError(
                f"Could not resolve an unreleased fix version for project {project_key}."
            )
        return VersionResolution(version=version.name, released=version.released)

    async def _search_issues(self, project_key: str, fix_version: str) -> IssueSearchData:
        result = await self.jira.search_issues_by_fix_version(
            project_key,
            fix_version,
            exclude_subtasks=True,
            max_results=self.settings.max_issues,
        )
        return IssueSearchData(issues=result.issues, total=result.total)

    async def _parent_features(self, issues: list[JiraIssue]) -> ParentFeaturesData:
        parent_keys = list(dict.fromkeys(i.parent_key for i in issues if i.parent_key))
        if not parent_keys:
            return ParentFeaturesData(features=[], unique_parent_keys=[])
        features = await self.jira.bulk_get_issues(parent_keys)
        return ParentFeaturesData(features=features, unique_parent_keys=parent_keys)

    async def _repo_branches(self, repo: str, log: Any) -> list[RepoBranch]:
        try:
            branches = await self.github.list_branches(self.org, repo)
        except Exception as exc:
            log.warning("repo_branches_failed", repo=repo, error=str(exc))
            return []
        return [RepoBranch(name=branch.name, repo=repo) for branch in branches]

    async def _discover_branches(self, issues: list[JiraIssue], log: Any) -> BranchDiscoveryData:
        repos = await self.github.list_repos(self.org, self.app_id, self.settings.repo_type)
        listings = await asyncio.gather(*(self._repo_branches(r.name, log) for r in repos))
        branches = [branch for listing in listings for branch in listing]
        matches = find_branches_matching_issue_keys(branches, [i.key for i in issues])
        log.info(
            "branches_searched",
            repos=len(repos),
            branches=len(branches),
            matches=len(matches),
        )
        return BranchDiscoveryData(
            matches=matches,
            repos=[r.name for r in repos],
            searched_repos=len(repos),
        )

    async def _fetch_deploy_log(self, repo: str, run_id: int) -> tuple[list[LogEntry], LogEntry]:
        archive = await self.github.download_run_logs(self.org, repo, run_id)
        entries = extract_logs_from_zip(archive)
        deploy_log = find_deploy_trigger_stage_log(entries, self.settings.deploy_log_marker)
        if deploy_log is None:
            raise LookupError(
                f"No '{self.settings.deploy_log_marker}' log file found in the logs of "
                f"run {run_id} ({repo})."
            )
        return entries, deploy_log

    async def _download_logs(self, repo: str, request: ReleaseSummaryInput) -> LogDownloadData:
        run_id = request.workflow_run_id
        if not run_id or request.force_log_refresh:
            runs = await self.github.list_workflow_runs(
                self.org, repo, status="completed", per_page=1
            )
            if not runs.runs:
                raise LookupError(f"No completed workflow runs found for {repo}.")
            run_id = runs.runs[0].id

        entries, deploy_log = await self._fetch_deploy_log(repo, run_id)
        return LogDownloadData(
            run_id=run_id,
            repo=repo,
            entries_found=len(entries),
            deploy_trigger_file=deploy_log.file_name,
        )

    async def _extract_payload(self, repo: str, run_id: int) -> PayloadExtractionData:
        # Downloads the archive again; nothing is cached between steps.
        _, deploy_log = await self._fetch_deploy_log(repo, run_id)
        search = extract_payload_object(deploy_log.content)
        if not search.found:
            raise LookupError(search.message)
        return PayloadExtractionData(
            payload=search.payload,
            raw_match=payload_excerpt(deploy_log.content, self.settings.payload_excerpt_chars),
        )


async def run_app_release_summary(
    request: ReleaseSummaryInput,
    config: AppConfig,
) -> ToolResponse[ReleaseSummaryReport]:
    """Run the workflow with real Jira and GitHub clients built from ``config``."""
    settings = config.settings
    jira = JiraClient(
        config.jira, timeout=settings.http_timeout, max_attempts=settings.http_max_attempts
    )
    github = GithubClient(
        config.github, timeout=settings.http_timeout, max_attempts=settings.http_max_attempts
    )
    workflow = ReleaseSummaryWorkflow(
        jira,
        github,
        project_key=config.jira.project_key,
        org=config.github.org,
        app_id=config.github.app_id,
        settings=settings,
    )
    return await workflow.run(request)


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Usage:
        release-summary --fix-version 26.01.1
        release-summary --project-key PROJ --run-id 123456 --settings settings.yaml

    Prints the response envelope as JSON on stdout; logs go to stderr.
    """
    parser = argparse.ArgumentParser(description="Release summary for a Jira fix version")
    parser.add_argument("--fix-version", help="Fix version name (default: first unreleased)")
    parser.add_argument("--project-key", help="Jira project key (default: JIRA_PROJECT_KEY)")
    parser.add_argument(
        "--force-log-refresh",
        action="store_true",
        help="Use the most recent completed run even if --run-id is given",
    )
    parser.add_argument("--run-id", type=int, help="GitHub Actions run id for the deploy logs")
    parser.add_argument("--env-file", help="Path to a .env file (default: ./.env)")
    parser.add_argument("--settings", help="Path to a YAML settings file")
    args = parser.parse_args(argv)

    setup_logging()

    try:
        config = load_config(args.env_file, args.settings)
        request = ReleaseSummaryInput(
            fix_version=args.fix_version,
            project_key=args.project_key,
            force_log_refresh=args.force_log_refresh,
            workflow_run_id=args.run_id,
        )
    except (ConfigError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    try:
        response = asyncio.run(run_app_release_summary(request, config))
    except Exception as exc:
        logger.exception("workflow_crashed", error=str(exc))
        print(
            json.dumps(
                {
                    "success": False,
                    "error": str(exc),
                    "hint": "Unexpected workflow-level error. Individual step errors are "
                    "reported in the steps object and never end up here.",
                },
                indent=2,
            )
        )
        return 1

    print(response.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
