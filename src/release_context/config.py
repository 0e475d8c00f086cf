"""Configuration loading for the integrations and the workflow.

Two sources:
- Credentials and scopes come from environment variables, optionally seeded
  from a `.env` file (python-dotenv, never overriding variables that are
  already set).
- Workflow tunables come from an optional YAML settings file. A missing file
  means defaults; a malformed one is a ConfigError.

Environment variables:
    JIRA_BASE_URL, JIRA_API_TOKEN, JIRA_PROJECT_KEY          (required)
    GITHUB_TOKEN, GITHUB_ORG                                 (required)
    GITHUB_BASE_URL (default https://api.github.com), GITHUB_APP_ID
    CONFLUENCE_BASE_URL, CONFLUENCE_API_TOKEN, CONFLUENCE_SPACE_NAME
        (optional as a group; Confluence tools are disabled without them)

Example settings.yaml:
    max_issues: 200
    deploy_log_marker: deploy trigger stage
    payload_excerpt_chars: 500
    repo_type: code
    http_timeout: 30
    http_max_attempts: 3
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from release_context.logging_config import get_logger

logger = get_logger(__name__)


class ConfigError(ValueError):
    """Raised when required configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------


def require_env(key: str, service: str | None = None) -> str:
    """Read an environment variable, failing loudly if it is missing or blank."""
    value = os.environ.get(key, "")
    if not value.strip():
        context = f" ({service})" if service else ""
        raise ConfigError(
            f"Missing required environment variable: {key}{context}. "
            "Set it in the environment or in the .env file."
        )
    return value.strip()


def optional_env(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def load_env_file(path: str | Path | None = None) -> bool:
    """Seed os.environ from a .env file without overriding existing values.

    Returns:
        True if a file was found and loaded.
    """
    env_path = Path(path) if path else Path.cwd() / ".env"
    if not env_path.exists():
        logger.debug("env_file_missing", path=str(env_path))
        return False
    load_dotenv(env_path, override=False)
    logger.info("env_file_loaded", path=str(env_path))
    return True


# ---------------------------------------------------------------------------
# Service configs
# ---------------------------------------------------------------------------


class JiraConfig(BaseModel):
    base_url: str
    api_token: str
    project_key: str

    @classmethod
    def from_env(cls) -> JiraConfig:
        return cls(
            base_url=require_env("JIRA_BASE_URL", "jira"),
            api_token=require_env("JIRA_API_TOKEN", "jira"),
            project_key=require_env("JIRA_PROJECT_KEY", "jira"),
        )


class GithubConfig(BaseModel):
    """GitHub connection settings.

    Attributes:
        app_id: Repository name prefix that scopes repo listings to one
                application (e.g. "App-gsap"). Empty means no prefix filter.
    """

    base_url: str = "https://api.github.com"
    api_token: str
    org: str
    app_id: str = ""

    @classmethod
    def from_env(cls) -> GithubConfig:
        return cls(
            base_url=optional_env("GITHUB_BASE_URL", "https://api.github.com"),
            api_token=require_env("GITHUB_TOKEN", "github"),
            org=require_env("GITHUB_ORG", "github"),
            app_id=optional_env("GITHUB_APP_ID"),
        )


class ConfluenceConfig(BaseModel):
    base_url: str
    api_token: str
    space_name: str = ""

    @classmethod
    def from_env(cls) -> ConfluenceConfig | None:
        """Build from env, or return None when Confluence is not configured at all."""
        if not optional_env("CONFLUENCE_BASE_URL"):
            return None
        return cls(
            base_url=require_env("CONFLUENCE_BASE_URL", "confluence"),
            api_token=require_env("CONFLUENCE_API_TOKEN", "confluence"),
            space_name=optional_env("CONFLUENCE_SPACE_NAME"),
        )


# ---------------------------------------------------------------------------
# Workflow settings (YAML)
# ---------------------------------------------------------------------------


class WorkflowSettings(BaseModel):
    """Tunables for the release summary workflow and the HTTP layer."""

    max_issues: int = Field(200, gt=0)
    deploy_log_marker: str = Field("deploy trigger stage", min_length=1)
    payload_excerpt_chars: int = Field(500, ge=0)
    repo_type: Literal["code", "config"] = "code"
    http_timeout: float = Field(30.0, gt=0)
    http_max_attempts: int = Field(3, ge=1)


def load_settings(path: str | Path | None) -> WorkflowSettings:
    """Load and validate a YAML settings file.

    Args:
        path: Path to the YAML file. None or a missing file yields defaults.

    Raises:
        ConfigError: If the YAML is malformed or fails validation.
    """
    if path is None:
        return WorkflowSettings()
    settings_path = Path(path)
    if not settings_path.exists():
        return WorkflowSettings()

    try:
        raw = yaml.safe_load(settings_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    try:
        return WorkflowSettings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings in {path}: {exc}") from exc


class AppConfig(BaseModel):
    jira: JiraConfig
    github: GithubConfig
    confluence: ConfluenceConfig | None = None
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)


def load_config(
    env_file: str | Path | None = None,
    settings_path: str | Path | None = None,
) -> AppConfig:
    """Load every service config plus workflow settings.

    Raises:
        ConfigError: If a required variable is missing or settings are invalid.
    """
    load_env_file(env_file)
    config = AppConfig(
        jira=JiraConfig.from_env(),
        github=GithubConfig.from_env(),
        confluence=ConfluenceConfig.from_env(),
        settings=load_settings(settings_path),
    )
    logger.info(
        "config_loaded",
        jira=config.jira.base_url,
        github_org=config.github.org,
        app_id=config.github.app_id or None,
        confluence=config.confluence is not None,
    )
    return config
