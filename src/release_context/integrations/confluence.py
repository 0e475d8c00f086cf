"""Confluence REST API v2 client (read-only).

Lets tool callers look up release pages and runbooks next to the Jira and
GitHub data. List endpoints are cursor-paginated: the response carries a
`_links.next` URL whose `cursor` query parameter fetches the next page.
"""

from __future__ import annotations

from typing import Any

import httpx

from release_context.config import ConfluenceConfig
from release_context.http import HttpClient
from release_context.logging_config import get_logger
from release_context.schemas import (
    ConfluencePage,
    ConfluencePageList,
    ConfluenceSpace,
    ConfluenceSpaceList,
)

logger = get_logger(__name__)


def next_cursor(payload: dict[str, Any]) -> str | None:
    """Extract the cursor for the next page from a paginated response."""
    next_link = (payload.get("_links") or {}).get("next")
    if not next_link:
        return None
    return httpx.URL(next_link).params.get("cursor")


class ConfluenceClient:
    def __init__(
        self,
        config: ConfluenceConfig,
        *,
        timeout: float = 30.0,
        max_attempts: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._http = HttpClient(
            f"{config.base_url.rstrip('/')}/wiki/api/v2",
            {
                "Authorization": f"Bearer {config.api_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
            max_attempts=max_attempts,
            transport=transport,
        )

    async def list_spaces(self, limit: int = 25, cursor: str | None = None) -> ConfluenceSpaceList:
        raw = await self._http.get("/spaces", {"limit": limit, "cursor": cursor})
        spaces = [ConfluenceSpace.model_validate(s) for s in raw.get("results", [])]
        logger.info("confluence_spaces_listed", count=len(spaces))
        return ConfluenceSpaceList(spaces=spaces, next_cursor=next_cursor(raw))

    async def get_space(self, space_id: str) -> ConfluenceSpace:
        return ConfluenceSpace.model_validate(await self._http.get(f"/spaces/{space_id}"))

    async def get_page(self, page_id: str) -> ConfluencePage:
        """Fetch a page including its body in storage format."""
        raw = await self._http.get(f"/pages/{page_id}", {"body-format": "storage"})
        return ConfluencePage.model_validate(raw)

    async def search_pages(
        self,
        query: str,
        space_id: str | None = None,
        cursor: str | None = None,
    ) -> ConfluencePageList:
        """Find pages by exact title, optionally within one space."""
        raw = await self._http.get(
            "/pages",
            {"title": query, "limit": 25, "space-id": space_id, "cursor": cursor},
        )
        pages = [ConfluencePage.model_validate(p) for p in raw.get("results", [])]
        logger.info("confluence_pages_found", query=query, space_id=space_id, count=len(pages))
        return ConfluencePageList(pages=pages, next_cursor=next_cursor(raw))

    async def list_child_pages(self, page_id: str, cursor: str | None = None) -> ConfluencePageList:
        raw = await self._http.get(f"/pages/{page_id}/children", {"limit": 25, "cursor": cursor})
        pages = [ConfluencePage.model_validate(p) for p in raw.get("results", [])]
        return ConfluencePageList(pages=pages, next_cursor=next_cursor(raw))
