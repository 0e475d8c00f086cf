"""Tests for the FastAPI layer.

The app's services are replaced with mock clients on app.state, so no
configuration or network is needed.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from conftest import make_issue
from release_context.integrations.github import MockGithubClient
from release_context.integrations.jira import MockJiraClient
from release_context.main import app
from release_context.schemas import FixVersion, GithubRepo
from release_context.tools import Services


@pytest.fixture
def client(app_config) -> TestClient:
    app.state.services = Services(
        config=app_config,
        jira=MockJiraClient(
            versions=[FixVersion(name="26.01.1")],
            issues=[make_issue("PROJ-1", "Login")],
        ),
        github=MockGithubClient(repos=[GithubRepo(name="App-gsap-api")]),
    )
    return TestClient(app, raise_server_exceptions=False)


def test_health_check(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_list_tools(client: TestClient) -> None:
    response = client.get("/tools")
    assert response.status_code == 200
    names = [t["name"] for t in response.json()["tools"]]
    assert "app_release_summary" in names


def test_call_tool(client: TestClient) -> None:
    response = client.post("/tools/status")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"] == {"status": "Server is Online"}
    assert len(body["verification_token"]) == 16


def test_call_tool_with_arguments(client: TestClient) -> None:
    response = client.post("/tools/jira_list_fix_versions", json={"project_key": "PROJ"})
    assert response.status_code == 200
    assert response.json()["data"][0]["name"] == "26.01.1"


def test_unknown_tool_is_404(client: TestClient) -> None:
    response = client.post("/tools/nope", json={})
    assert response.status_code == 404
    assert response.json()["error"] == "unknown_tool"


def test_invalid_tool_arguments_are_422(client: TestClient) -> None:
    response = client.post("/tools/jira_get_issue", json={"wrong": 1})
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


def test_release_summary_partial(client: TestClient) -> None:
    """No branches and no runs: log steps fail or skip, the call still succeeds."""
    response = client.post("/release-summary", json={})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["fix_version"] == "26.01.1"
    assert data["overall_status"] == "partial"
    assert data["steps"]["issue_search"]["status"] == "success"
    assert data["steps"]["log_download"]["status"] == "failed"
    assert data["report"]["unparented_issues"][0]["key"] == "PROJ-1"


def test_release_summary_rejects_bad_run_id(client: TestClient) -> None:
    response = client.post("/release-summary", json={"workflow_run_id": 0})
    assert response.status_code == 422


def test_unexpected_error_is_500_with_hint(client: TestClient) -> None:
    app.state.services.workflow = lambda: AsyncMock(run=AsyncMock(side_effect=RuntimeError("boom")))

    response = client.post("/release-summary", json={})

    assert response.status_code == 500
    body = response.json()
    assert body["detail"] == "boom"
    assert "unexpected" in body["hint"]
