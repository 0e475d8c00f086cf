"""Tests for the release summary workflow.

These tests wire the workflow to the mock Jira and GitHub clients and check
the step table, the overall status and the assembled report for each path
through the pipeline: fatal failures, partial results and the happy path.

Run with: pytest tests/test_workflow.py -v
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_issue, make_zip
from release_context.config import WorkflowSettings
from release_context.integrations.github import MockGithubClient
from release_context.integrations.jira import MockJiraClient
from release_context.schemas import FixVersion, GithubRepo, JiraIssue, WorkflowRun
from release_context.steps import StepResult, StepStatus, skip_step
from release_context.workflow import (
    BranchDiscoveryData,
    OverallStatus,
    PipelineSteps,
    ReleaseSummaryInput,
    ReleaseSummaryWorkflow,
    build_final_report,
    compute_overall_status,
    group_issues_by_feature,
    main,
    select_candidate_repos,
)

STEP_NAMES = [
    "fix_version_resolution",
    "issue_search",
    "parent_features",
    "branch_discovery",
    "log_download",
    "payload_extraction",
]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def jira() -> MockJiraClient:
    return MockJiraClient(
        versions=[
            FixVersion(name="25.12.1", released=True),
            FixVersion(name="26.01.0", archived=True),
            FixVersion(name="26.01.1"),
            FixVersion(name="26.02.1"),
        ],
        issues=[
            make_issue("PROJ-1", "Login page", parent="PROJ-100"),
            make_issue("PROJ-2", "Logout button", parent="PROJ-100"),
            make_issue("PROJ-3", "Fix typo"),
            make_issue("PROJ-4", "Report export", parent="PROJ-200"),
        ],
        parents=[make_issue("PROJ-100", "Authentication", status="In Progress")],
    )


@pytest.fixture
def github(deploy_archive: bytes) -> MockGithubClient:
    return MockGithubClient(
        repos=[
            GithubRepo(name="App-gsap-api"),
            GithubRepo(name="App-gsap-web"),
            GithubRepo(name="App-gsap-api-cd"),
            GithubRepo(name="App-gsap-old", archived=True),
            GithubRepo(name="Other-service"),
        ],
        branches={
            "App-gsap-api": ["main", "feature/PROJ-1-login", "bugfix/proj_3_typo"],
            "App-gsap-web": ["main", "feature/PROJ2-logout"],
        },
        runs={
            "App-gsap-api": [WorkflowRun(id=900, status="completed")],
            "App-gsap-web": [WorkflowRun(id=901, status="completed")],
        },
        logs={900: deploy_archive, 901: deploy_archive, 42: deploy_archive},
    )


def make_workflow(jira, github, **kwargs) -> ReleaseSummaryWorkflow:
    return ReleaseSummaryWorkflow(
        jira, github, project_key="PROJ", org="myorg", app_id="App-gsap", **kwargs
    )


def statuses(steps: PipelineSteps) -> dict[str, str]:
    return {name: result.status.value for name, result in steps.results().items()}


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestCompleteRun:
    @pytest.mark.asyncio
    async def test_all_steps_succeed(self, jira, github) -> None:
        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        result = response.data
        assert statuses(result.steps) == {name: "success" for name in STEP_NAMES}
        assert result.overall_status == OverallStatus.COMPLETE
        assert response.success is True
        assert response.errors == []

    @pytest.mark.asyncio
    async def test_auto_resolves_first_unreleased_version(self, jira, github) -> None:
        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        assert response.data.fix_version == "26.01.1"
        assert response.data.steps.fix_version_resolution.data.version == "26.01.1"
        assert response.data.steps.fix_version_resolution.data.released is False

    @pytest.mark.asyncio
    async def test_explicit_version_skips_lookup(self, github) -> None:
        jira = MockJiraClient(issues=[make_issue("PROJ-1")])
        jira.get_first_unreleased_version = AsyncMock()

        response = await make_workflow(jira, github).run(ReleaseSummaryInput(fix_version="9.9.9"))

        jira.get_first_unreleased_version.assert_not_awaited()
        assert response.data.fix_version == "9.9.9"
        assert response.data.steps.fix_version_resolution.data.released is False

    @pytest.mark.asyncio
    async def test_report_groups_issues_by_feature(self, jira, github) -> None:
        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        report = response.data.report
        assert report is not None
        groups = {g.feature_key: g for g in report.issues_by_feature}
        assert list(groups) == ["PROJ-100", "PROJ-200"]
        assert [i.key for i in groups["PROJ-100"].issues] == ["PROJ-1", "PROJ-2"]
        assert groups["PROJ-100"].feature_summary == "Authentication"
        assert groups["PROJ-100"].feature_status == "In Progress"
        # PROJ-200 was not returned by the bulk fetch
        assert groups["PROJ-200"].feature_summary == "(summary unavailable)"
        assert groups["PROJ-200"].feature_status == "unknown"
        assert [i.key for i in report.unparented_issues] == ["PROJ-3"]

    @pytest.mark.asyncio
    async def test_branch_matches_and_payload(self, jira, github) -> None:
        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        report = response.data.report
        assert [(m.repo, m.branch_name, m.issue_key) for m in report.branch_matches] == [
            ("App-gsap-api", "feature/PROJ-1-login", "PROJ-1"),
            ("App-gsap-api", "bugfix/proj_3_typo", "PROJ-3"),
            ("App-gsap-web", "feature/PROJ2-logout", "PROJ-2"),
        ]
        assert report.deploy_payload["app"] == "gsap"
        assert response.data.steps.branch_discovery.data.searched_repos == 2

    @pytest.mark.asyncio
    async def test_first_matched_repo_is_the_log_target(self, jira, github) -> None:
        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        log_download = response.data.steps.log_download.data
        assert log_download.repo == "App-gsap-api"
        assert log_download.run_id == 900
        assert log_download.entries_found == 2
        assert log_download.deploy_trigger_file == "deploy/3_Deploy Trigger Stage.txt"

    @pytest.mark.asyncio
    async def test_logs_are_downloaded_once_per_sub_step(self, jira, github) -> None:
        await make_workflow(jira, github).run(ReleaseSummaryInput())

        assert github.downloads == [("App-gsap-api", 900), ("App-gsap-api", 900)]

    @pytest.mark.asyncio
    async def test_summary_line_and_token(self, jira, github) -> None:
        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        assert response.summary == (
            "Fix version 26.01.1 (PROJ): 4 issue(s) across 2 parent feature(s). "
            "Branch matches: 3. Deployment payload: extracted."
        )
        assert response.data.report.summary == response.summary
        assert response.data.verification_token == response.verification_token
        assert len(response.verification_token) == 16
        assert response.data.timestamp == response.timestamp

    @pytest.mark.asyncio
    async def test_payload_raw_match_is_bounded_excerpt(self, jira, github) -> None:
        settings = WorkflowSettings(payload_excerpt_chars=20)

        response = await make_workflow(jira, github, settings=settings).run(ReleaseSummaryInput())

        raw_match = response.data.steps.payload_extraction.data.raw_match
        assert raw_match.startswith("Payload:")
        assert len(raw_match) == 20

    @pytest.mark.asyncio
    async def test_project_key_override(self, jira, github) -> None:
        jira.search_issues_by_fix_version = AsyncMock(
            wraps=jira.search_issues_by_fix_version
        )

        response = await make_workflow(jira, github).run(
            ReleaseSummaryInput(fix_version="26.01.1", project_key="OTHER")
        )

        assert response.data.project_key == "OTHER"
        assert jira.search_issues_by_fix_version.await_args.args[:2] == ("OTHER", "26.01.1")

    @pytest.mark.asyncio
    async def test_issue_search_is_capped(self, jira, github) -> None:
        settings = WorkflowSettings(max_issues=2)

        response = await make_workflow(jira, github, settings=settings).run(ReleaseSummaryInput())

        search = response.data.steps.issue_search.data
        assert [i.key for i in search.issues] == ["PROJ-1", "PROJ-2"]
        assert search.total == 4


# ---------------------------------------------------------------------------
# Fatal failures
# ---------------------------------------------------------------------------


class TestFatalFailures:
    @pytest.mark.asyncio
    async def test_no_unreleased_version(self, github) -> None:
        jira = MockJiraClient(versions=[FixVersion(name="1.0", released=True)])

        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        result = response.data
        assert result.overall_status == OverallStatus.FAILED
        assert result.steps.fix_version_resolution.status == StepStatus.FAILED
        assert "unreleased fix version" in result.steps.fix_version_resolution.error
        assert all(
            result.steps.results()[name].status == StepStatus.SKIPPED for name in STEP_NAMES[1:]
        )
        assert result.report is None
        assert response.success is False
        assert github.downloads == []

    @pytest.mark.asyncio
    async def test_issue_search_failure_stops_the_pipeline(self, jira, github) -> None:
        jira.search_issues_by_fix_version = AsyncMock(side_effect=RuntimeError("JQL error"))
        github.list_repos = AsyncMock()

        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        result = response.data
        assert statuses(result.steps) == {
            "fix_version_resolution": "success",
            "issue_search": "failed",
            "parent_features": "skipped",
            "branch_discovery": "skipped",
            "log_download": "skipped",
            "payload_extraction": "skipped",
        }
        assert result.overall_status == OverallStatus.FAILED
        assert result.report is None
        assert "issue_search: JQL error" in response.errors
        github.list_repos.assert_not_awaited()


# ---------------------------------------------------------------------------
# Partial results
# ---------------------------------------------------------------------------


class TestPartialResults:
    @pytest.mark.asyncio
    async def test_fallback_repo_and_missing_payload(self, jira) -> None:
        """No branch matches, fallback repo, log found but no `Payload:` marker."""
        archive = make_zip({"Deploy Trigger Stage.txt": "triggered without payload\n"})
        github = MockGithubClient(
            repos=[GithubRepo(name="App-gsap-api"), GithubRepo(name="App-gsap-web")],
            branches={"App-gsap-api": ["main", "develop"]},
            runs={"App-gsap-api": [WorkflowRun(id=5)]},
            logs={5: archive},
        )

        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        result = response.data
        assert result.steps.branch_discovery.succeeded
        assert result.steps.branch_discovery.data.matches == []
        assert result.steps.log_download.succeeded
        assert result.steps.log_download.data.repo == "App-gsap-api"
        assert result.steps.payload_extraction.failed
        assert "Payload:" in result.steps.payload_extraction.error
        assert result.overall_status == OverallStatus.PARTIAL
        assert result.report.deploy_payload == {}
        assert result.report.branch_matches == []
        assert result.report.summary.endswith("Branch matches: 0. Deployment payload: unavailable.")

    @pytest.mark.asyncio
    async def test_parent_feature_failure_is_not_fatal(self, jira, github) -> None:
        jira.bulk_get_issues = AsyncMock(side_effect=RuntimeError("timeout"))

        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        result = response.data
        assert result.steps.parent_features.failed
        assert result.steps.branch_discovery.succeeded
        assert result.steps.payload_extraction.succeeded
        assert result.overall_status == OverallStatus.PARTIAL
        assert all(
            g.feature_summary == "(summary unavailable)" for g in result.report.issues_by_feature
        )

    @pytest.mark.asyncio
    async def test_no_parents_is_success_with_empty_data(self, github) -> None:
        jira = MockJiraClient(versions=[FixVersion(name="1.0")], issues=[make_issue("PROJ-1")])
        jira.bulk_get_issues = AsyncMock()

        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        parent_features = response.data.steps.parent_features
        assert parent_features.succeeded
        assert parent_features.data.features == []
        assert parent_features.data.unique_parent_keys == []
        jira.bulk_get_issues.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_repo_listing_failure_skips_log_steps(self, jira, github) -> None:
        github.list_repos = AsyncMock(side_effect=RuntimeError("HTTP 401"))

        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        result = response.data
        assert result.steps.branch_discovery.failed
        assert result.steps.log_download.status == StepStatus.SKIPPED
        assert result.steps.payload_extraction.status == StepStatus.SKIPPED
        assert result.overall_status == OverallStatus.PARTIAL
        assert "Branch matches: n/a" in result.report.summary

    @pytest.mark.asyncio
    async def test_no_repos_skips_log_steps(self, jira) -> None:
        github = MockGithubClient(repos=[GithubRepo(name="Other-service")])

        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        result = response.data
        assert result.steps.branch_discovery.succeeded
        assert result.steps.branch_discovery.data.searched_repos == 0
        assert result.steps.log_download.status == StepStatus.SKIPPED
        assert result.overall_status == OverallStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_one_failing_repo_does_not_fail_branch_discovery(self, jira, github) -> None:
        original = github.list_branches

        async def flaky(org: str, repo: str):
            if repo == "App-gsap-api":
                raise RuntimeError("HTTP 502")
            return await original(org, repo)

        github.list_branches = flaky

        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        discovery = response.data.steps.branch_discovery
        assert discovery.succeeded
        assert discovery.data.searched_repos == 2
        assert [(m.repo, m.issue_key) for m in discovery.data.matches] == [
            ("App-gsap-web", "PROJ-2")
        ]
        assert response.data.steps.log_download.data.repo == "App-gsap-web"

    @pytest.mark.asyncio
    async def test_log_download_failure_skips_payload(self, jira, github) -> None:
        github.download_run_logs = AsyncMock(side_effect=RuntimeError("HTTP 410 Gone"))

        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        result = response.data
        assert result.steps.log_download.failed
        assert result.steps.log_download.error == "HTTP 410 Gone"
        assert result.steps.payload_extraction.status == StepStatus.SKIPPED
        assert result.overall_status == OverallStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_no_completed_runs(self, jira, github) -> None:
        github._runs = {}

        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        assert response.data.steps.log_download.error == (
            "No completed workflow runs found for App-gsap-api."
        )
        assert response.data.steps.payload_extraction.status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_missing_deploy_log_fails_download(self, jira, github) -> None:
        github._logs[900] = make_zip({"1_build.txt": "built"})

        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        error = response.data.steps.log_download.error
        assert "deploy trigger stage" in error
        assert response.data.steps.payload_extraction.status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_corrupt_archive_fails_download(self, jira, github) -> None:
        github._logs[900] = b"not a zip"

        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        assert "Failed to extract log archive" in response.data.steps.log_download.error

    @pytest.mark.asyncio
    async def test_invalid_payload_json_fails_extraction(self, jira, github) -> None:
        github._logs[900] = make_zip({"Deploy Trigger Stage.txt": "Payload: {app: gsap}"})

        response = await make_workflow(jira, github).run(ReleaseSummaryInput())

        result = response.data
        assert result.steps.log_download.succeeded
        assert "not valid JSON" in result.steps.payload_extraction.error
        assert result.report.deploy_payload == {}


# ---------------------------------------------------------------------------
# Run id resolution
# ---------------------------------------------------------------------------


class TestRunIdResolution:
    @pytest.mark.asyncio
    async def test_explicit_run_id_is_used(self, jira, github) -> None:
        github.list_workflow_runs = AsyncMock()

        response = await make_workflow(jira, github).run(ReleaseSummaryInput(workflow_run_id=42))

        assert response.data.steps.log_download.data.run_id == 42
        github.list_workflow_runs.assert_not_awaited()
        assert github.downloads == [("App-gsap-api", 42), ("App-gsap-api", 42)]

    @pytest.mark.asyncio
    async def test_force_refresh_ignores_run_id(self, jira, github) -> None:
        response = await make_workflow(jira, github).run(
            ReleaseSummaryInput(workflow_run_id=42, force_log_refresh=True)
        )

        assert response.data.steps.log_download.data.run_id == 900

    @pytest.mark.asyncio
    async def test_latest_run_query_asks_for_one_completed_run(self, jira, github) -> None:
        github.list_workflow_runs = AsyncMock(wraps=github.list_workflow_runs)

        await make_workflow(jira, github).run(ReleaseSummaryInput())

        kwargs = github.list_workflow_runs.await_args.kwargs
        assert kwargs["status"] == "completed"
        assert kwargs["per_page"] == 1

    def test_run_id_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            ReleaseSummaryInput(workflow_run_id=0)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def step(status: StepStatus) -> StepResult:
    if status == StepStatus.FAILED:
        return StepResult(status=status, error="boom")
    return StepResult(status=status)


class TestOverallStatus:
    @pytest.mark.parametrize(
        "overrides,expected",
        [
            ({}, OverallStatus.COMPLETE),
            ({"fix_version_resolution": StepStatus.FAILED}, OverallStatus.FAILED),
            ({"issue_search": StepStatus.FAILED}, OverallStatus.FAILED),
            (
                {"issue_search": StepStatus.FAILED, "parent_features": StepStatus.FAILED},
                OverallStatus.FAILED,
            ),
            ({"parent_features": StepStatus.FAILED}, OverallStatus.PARTIAL),
            ({"branch_discovery": StepStatus.FAILED}, OverallStatus.PARTIAL),
            ({"log_download": StepStatus.SKIPPED}, OverallStatus.PARTIAL),
            ({"payload_extraction": StepStatus.SKIPPED}, OverallStatus.PARTIAL),
            ({"payload_extraction": StepStatus.FAILED}, OverallStatus.PARTIAL),
            ({"log_download": StepStatus.PENDING}, OverallStatus.PARTIAL),
        ],
    )
    def test_classification(self, overrides: dict, expected: OverallStatus) -> None:
        steps = PipelineSteps(
            **{name: step(overrides.get(name, StepStatus.SUCCESS)) for name in STEP_NAMES}
        )

        assert compute_overall_status(steps) == expected

    def test_fresh_steps_are_all_skipped(self) -> None:
        steps = PipelineSteps()

        assert set(statuses(steps).values()) == {"skipped"}
        assert compute_overall_status(steps) == OverallStatus.PARTIAL


class TestSelectCandidateRepos:
    def test_distinct_repos_of_matches_in_order(self) -> None:
        data = BranchDiscoveryData.model_validate(
            {
                "matches": [
                    {"issue_key": "P-1", "branch_name": "a", "repo": "web"},
                    {"issue_key": "P-2", "branch_name": "b", "repo": "api"},
                    {"issue_key": "P-1", "branch_name": "c", "repo": "web"},
                ],
                "repos": ["api", "web"],
                "searched_repos": 2,
            }
        )

        assert select_candidate_repos(StepResult(status=StepStatus.SUCCESS, data=data)) == [
            "web",
            "api",
        ]

    def test_falls_back_to_first_listed_repo(self) -> None:
        data = BranchDiscoveryData(matches=[], repos=["api", "web"], searched_repos=2)

        assert select_candidate_repos(StepResult(status=StepStatus.SUCCESS, data=data)) == ["api"]

    def test_nothing_when_discovery_did_not_succeed(self) -> None:
        assert select_candidate_repos(skip_step()) == []
        assert select_candidate_repos(step(StepStatus.FAILED)) == []


class TestGroupIssuesByFeature:
    def test_empty_feature_summary_is_kept(self) -> None:
        feature = JiraIssue.model_validate(
            {"id": "100", "key": "PROJ-100", "fields": {"summary": "", "status": {"name": "Done"}}}
        )

        groups, _ = group_issues_by_feature(
            [make_issue("PROJ-1", parent="PROJ-100"), make_issue("PROJ-2", parent="PROJ-200")],
            [feature],
        )

        assert [(g.feature_key, g.feature_summary) for g in groups] == [
            ("PROJ-100", ""),
            ("PROJ-200", "(summary unavailable)"),
        ]


class TestBuildFinalReport:
    def test_never_raises_on_fresh_steps(self) -> None:
        response = build_final_report(PipelineSteps(), "", "PROJ")

        assert response.data.report is None
        assert response.summary == "Release summary for (unresolved) (partial)."

    def test_dump_includes_computed_status(self) -> None:
        response = build_final_report(PipelineSteps(), "1.0", "PROJ")

        dumped = response.model_dump(mode="json")
        assert dumped["data"]["overall_status"] == "partial"
        assert dumped["data"]["steps"]["issue_search"]["status"] == "skipped"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestCli:
    @pytest.fixture(autouse=True)
    def quiet_logging(self, monkeypatch) -> None:
        from release_context import workflow as workflow_module

        monkeypatch.setattr(workflow_module, "setup_logging", MagicMock())

    def test_missing_config_exits_2(self, monkeypatch, tmp_path, capsys) -> None:
        for key in ("JIRA_BASE_URL", "JIRA_API_TOKEN", "JIRA_PROJECT_KEY", "GITHUB_TOKEN"):
            monkeypatch.delenv(key, raising=False)

        code = main(["--env-file", str(tmp_path / "missing.env")])

        assert code == 2
        assert "JIRA_BASE_URL" in capsys.readouterr().err

    def test_prints_envelope(self, monkeypatch, app_config, capsys) -> None:
        from release_context import workflow as workflow_module

        response = build_final_report(PipelineSteps(), "1.0", "PROJ")
        monkeypatch.setattr(workflow_module, "load_config", MagicMock(return_value=app_config))
        monkeypatch.setattr(
            workflow_module, "run_app_release_summary", AsyncMock(return_value=response)
        )

        code = main(["--fix-version", "1.0"])

        assert code == 0
        assert '"overall_status": "partial"' in capsys.readouterr().out

    def test_unexpected_error_exits_1(self, monkeypatch, app_config, capsys) -> None:
        from release_context import workflow as workflow_module

        monkeypatch.setattr(workflow_module, "load_config", MagicMock(return_value=app_config))
        monkeypatch.setattr(
            workflow_module,
            "run_app_release_summary",
            AsyncMock(side_effect=RuntimeError("event loop exploded")),
        )

        code = main([])

        assert code == 1
        out = capsys.readouterr().out
        assert '"success": false' in out
        assert "event loop exploded" in out
