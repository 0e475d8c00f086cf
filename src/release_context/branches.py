"""Correlate Jira issue keys with Git branch names.

A branch "belongs" to an issue when the issue key appears in its name as a
whole token: delimited on both sides by the start or end of the name, `/`,
`_` or `-`. The hyphen inside the key is relaxed so that the common naming
variants all match:

    feature/PROJ-123-login    matches PROJ-123
    feature/proj_123_login    matches PROJ-123  (case and separator)
    bugfix/PROJ123            matches PROJ-123  (separator dropped)
    feature/PROJ1234-login    does not match PROJ-123
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

from pydantic import BaseModel

from release_context.logging_config import get_logger

logger = get_logger(__name__)

_DELIMITER = r"[/_-]"


class RepoBranch(BaseModel):
    """A branch name tagged with the repository it lives in."""

    name: str
    repo: str


class BranchMatch(BaseModel):
    issue_key: str
    branch_name: str
    repo: str


def build_issue_key_pattern(issue_key: str) -> re.Pattern[str]:
    """Compile the token pattern for one issue key.

    Only the first hyphen is relaxed (`PROJ-123` -> `PROJ[-_]?123`); both key
    parts are escaped so keys are matched literally.
    """
    project, sep, number = issue_key.partition("-")
    body = f"{re.escape(project)}[-_]?{re.escape(number)}" if sep else re.escape(issue_key)
    return re.compile(f"(?:^|{_DELIMITER}){body}(?:{_DELIMITER}|$)", re.IGNORECASE)


def find_branches_matching_issue_keys(
    branches: Sequence[RepoBranch],
    issue_keys: Iterable[str],
) -> list[BranchMatch]:
    """Report every (issue key, branch) pair whose branch name contains the key.

    Results are ordered by branch, then by key. Nothing is deduplicated: a
    branch naming two keys yields two matches, and a key named by several
    branches yields one match per branch.

    Args:
        branches: Flat list of branches across repositories
        issue_keys: Jira issue keys, e.g. ["PROJ-123", "PROJ-124"]

    Returns:
        The matches, possibly empty
    """
    keys = list(issue_keys)
    if not keys or not branches:
        return []

    patterns = [(key, build_issue_key_pattern(key)) for key in keys]
    matches = [
        BranchMatch(issue_key=key, branch_name=branch.name, repo=branch.repo)
        for branch in branches
        for key, pattern in patterns
        if pattern.search(branch.name)
    ]
    logger.debug(
        "branches_matched",
        branches=len(branches),
        issue_keys=len(keys),
        matches=len(matches),
    )
    return matches
