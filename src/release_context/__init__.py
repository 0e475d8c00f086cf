"""Release Context tools.

Jira, GitHub and Confluence integrations exposed as callable tools behind a
single response envelope, plus a deterministic six-step workflow that turns
a fix version into a release summary (issues by feature, matching branches,
and the deployment payload parsed out of the CI logs).
"""

__version__ = "0.1.0"
