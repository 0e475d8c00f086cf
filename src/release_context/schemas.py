"""Pydantic models for the records exchanged with Jira, GitHub and Confluence.

These models are the single source of truth for what the integrations
return and what the tools and the workflow pass around.

Key design decisions:
- Only the fields the package reads are declared; everything else the
  remote APIs return is kept (`extra="allow"`) so records pass through
  to tool callers untouched
- Jira custom fields get explicit, named attributes (aliased to their
  `customfield_*` ids). Models accept either the alias or the field name,
  and `model_dump(by_alias=True)` reproduces Jira's wire shape
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Jira
# ---------------------------------------------------------------------------


class JiraRecord(BaseModel):
    """Base for Jira models: tolerant of unknown keys, populated by name or alias."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class SelectOption(JiraRecord):
    """A single- or multi-select custom field option, e.g. {"value": "Ready"}."""

    value: str
    id: str | None = None


class JiraStatus(JiraRecord):
    id: str | None = None
    name: str


class JiraIssueType(JiraRecord):
    id: str | None = None
    name: str
    subtask: bool = False


class JiraParentFields(JiraRecord):
    summary: str | None = None
    status: JiraStatus | None = None
    issuetype: JiraIssueType | None = None


class JiraParent(JiraRecord):
    id: str | None = None
    key: str
    fields: JiraParentFields | None = None


class FixVersion(JiraRecord):
    id: str | None = None
    name: str
    released: bool = False
    archived: bool = False
    release_date: str | None = Field(None, alias="releaseDate")
    description: str | None = None


class JiraIssueFields(JiraRecord):
    """Fields of a Jira issue.

    Custom attributes carried through opaquely; the workflow only ever
    looks at `summary`, `status` and `parent`.

    Attributes:
        acceptance_criteria: Acceptance Criteria (customfield_10601)
        test_description: Test Description (customfield_15601)
        story_points: Story point estimate (customfield_10106)
        application_name: Application Name select (customfield_11700)
        status_flags: Ready / Blocked multi-select (customfield_11900)
        sdlc_information: SDLC Information Yes/No (customfield_15600)
        software_changes_in: Software Changes In select (customfield_15900)
        test_types: Test Types multi-select (customfield_15602)
        feature_link: Feature Link, the linked parent key (customfield_10100)
    """

    summary: str = ""
    description: str | None = None
    issuetype: JiraIssueType | None = None
    status: JiraStatus | None = None
    parent: JiraParent | None = None
    labels: list[str] = Field(default_factory=list)
    fix_versions: list[FixVersion] = Field(default_factory=list, alias="fixVersions")
    created: str | None = None
    updated: str | None = None

    acceptance_criteria: str | None = Field(None, alias="customfield_10601")
    test_description: str | None = Field(None, alias="customfield_15601")
    story_points: float | None = Field(None, alias="customfield_10106")
    application_name: SelectOption | None = Field(None, alias="customfield_11700")
    status_flags: list[SelectOption] | None = Field(None, alias="customfield_11900")
    sdlc_information: SelectOption | None = Field(None, alias="customfield_15600")
    software_changes_in: SelectOption | None = Field(None, alias="customfield_15900")
    test_types: list[SelectOption] | None = Field(None, alias="customfield_15602")
    feature_link: str | None = Field(None, alias="customfield_10100")


class JiraIssue(JiraRecord):
    id: str | None = None
    key: str
    fields: JiraIssueFields = Field(default_factory=JiraIssueFields)

    @property
    def parent_key(self) -> str | None:
        """Key of the parent issue, or None for unparented issues."""
        parent = self.fields.parent
        return parent.key if parent and parent.key else None


class IssueSearchResult(BaseModel):
    issues: list[JiraIssue] = Field(default_factory=list)
    total: int = 0


class JiraProject(JiraRecord):
    id: str | None = None
    key: str
    name: str = ""


class JiraSprint(JiraRecord):
    id: int
    name: str = ""
    state: str | None = None
    start_date: str | None = Field(None, alias="startDate")
    end_date: str | None = Field(None, alias="endDate")
    goal: str | None = None


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------


class GithubRecord(BaseModel):
    model_config = ConfigDict(extra="allow")


class GithubRepo(GithubRecord):
    name: str
    full_name: str | None = None
    archived: bool = False
    default_branch: str | None = None


class GithubBranch(GithubRecord):
    name: str
    protected: bool = False


class WorkflowRun(GithubRecord):
    id: int
    name: str | None = None
    head_branch: str | None = None
    status: str | None = None
    conclusion: str | None = None
    created_at: str | None = None


class WorkflowRunList(BaseModel):
    runs: list[WorkflowRun] = Field(default_factory=list)
    total: int = 0


class GithubIssue(GithubRecord):
    """An issue or pull request. GitHub serves both through the issues API."""

    number: int
    title: str = ""
    state: str | None = None
    html_url: str | None = None


class GithubPullRequest(GithubIssue):
    merged: bool | None = None
    mergeable_state: str | None = None


class GithubSearchResult(BaseModel):
    """One page of /search/issues or /search/code hits, passed through as returned."""

    items: list[dict[str, Any]] = Field(default_factory=list)
    total: int = 0


class RepoFile(BaseModel):
    path: str
    ref: str
    size: int = 0
    content: str = ""


# ---------------------------------------------------------------------------
# Confluence
# ---------------------------------------------------------------------------


class ConfluenceRecord(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class ConfluenceSpace(ConfluenceRecord):
    id: str
    key: str = ""
    name: str = ""


class ConfluencePage(ConfluenceRecord):
    id: str
    title: str = ""
    space_id: str | None = Field(None, alias="spaceId")
    parent_id: str | None = Field(None, alias="parentId")

    @property
    def storage_body(self) -> str:
        """The page body in storage format, or "" when it was not requested."""
        body = getattr(self, "body", None) or {}
        return (body.get("storage") or {}).get("value", "")


class ConfluencePageList(BaseModel):
    pages: list[ConfluencePage] = Field(default_factory=list)
    next_cursor: str | None = None


class ConfluenceSpaceList(BaseModel):
    spaces: list[ConfluenceSpace] = Field(default_factory=list)
    next_cursor: str | None = None
