"""Shared fixtures and record builders for the test suite."""

from __future__ import annotations

import io
import zipfile

import pytest

from release_context.config import AppConfig, GithubConfig, JiraConfig
from release_context.schemas import JiraIssue


def make_issue(
    key: str,
    summary: str = "",
    parent: str | None = None,
    status: str | None = None,
) -> JiraIssue:
    """Build a JiraIssue the way Jira returns it on the wire."""
    fields: dict = {"summary": summary or f"Summary of {key}"}
    if parent:
        fields["parent"] = {"key": parent}
    if status:
        fields["status"] = {"name": status}
    return JiraIssue.model_validate({"id": key.split("-")[-1], "key": key, "fields": fields})


def make_zip(files: dict[str, str | bytes]) -> bytes:
    """Build an in-memory log archive from {file name: content}."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()


DEPLOY_LOG = (
    "2026-01-15T14:29:58Z Starting deployment trigger\n"
    '2026-01-15T14:30:00Z Payload: {"app": "gsap", "version": "26.01.1", '
    '"env": {"name": "prod", "region": "eu"}}\n'
    "2026-01-15T14:30:01Z Trigger accepted\n"
)


@pytest.fixture
def deploy_archive() -> bytes:
    return make_zip(
        {
            "build/1_Set up job.txt": "Set up job\n",
            "deploy/3_Deploy Trigger Stage.txt": DEPLOY_LOG,
        }
    )


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        jira=JiraConfig(base_url="https://jira.example.com", api_token="jt", project_key="PROJ"),
        github=GithubConfig(api_token="gt", org="myorg", app_id="App-gsap"),
    )
