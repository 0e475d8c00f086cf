"""Async HTTP client shared by the Jira, GitHub and Confluence integrations.

Design notes:
- Uses httpx; a fresh AsyncClient is opened per request so concurrent
  fan-outs (one task per repository) never share connection state
- Non-2xx responses raise HttpError carrying status, body and URL, so the
  message that ends up in a failed step is actionable
- Transient failures (transport errors, 429, 5xx) are retried with
  exponential backoff via tenacity. This is the only retry layer in the
  package: a workflow step that fails after retries is simply failed
- `transport` lets tests plug in httpx.MockTransport
"""

from __future__ import annotations

from typing import Any

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from release_context.logging_config import get_logger

logger = get_logger(__name__)

Params = dict[str, str | int | float | bool | None]


class HttpError(Exception):
    """Raised for any non-2xx response."""

    def __init__(self, status_code: int, reason: str, body: str, url: str) -> None:
        self.status_code = status_code
        self.reason = reason
        self.body = body
        self.url = url
        super().__init__(f"HTTP {status_code} {reason} ({url}): {body[:500]}")


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, HttpError) and (exc.status_code == 429 or exc.status_code >= 500)


def last_page(response: httpx.Response) -> int:
    """Read the page number of the ``rel="last"`` entry in a Link header.

    Returns 1 when the header is absent, i.e. the response is the only page.
    """
    last = response.links.get("last")
    if not last or "url" not in last:
        return 1
    page = httpx.URL(last["url"]).params.get("page")
    return int(page) if page and page.isdigit() else 1


class HttpClient:
    """JSON-over-HTTP client bound to a base URL and default headers.

    Usage:
        client = HttpClient("https://api.github.com", {"Authorization": "Bearer ..."})
        repos = await client.get("/orgs/myorg/repos", params={"per_page": 100})
    """

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str],
        *,
        timeout: float = 30.0,
        max_attempts: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Prefix for every relative path
            headers: Headers sent with every request (auth, accept)
            timeout: Per-request timeout in seconds
            max_attempts: Total attempts for transient failures (1 = no retry)
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self._headers = dict(headers)
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
            follow_redirects=True,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Params | None = None,
        json: Any = None,
    ) -> httpx.Response:
        """Send a request and return the raw response.

        Raises:
            HttpError: If the final attempt returned a non-2xx status
            httpx.TransportError: If the final attempt could not connect
        """
        query = {k: v for k, v in (params or {}).items() if v is not None}
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        ):
            with attempt:
                async with self._client() as client:
                    response = await client.request(method, path, params=query, json=json)
                if response.is_error:
                    logger.warning(
                        "http_error",
                        method=method,
                        url=str(response.request.url),
                        status=response.status_code,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise HttpError(
                        response.status_code,
                        response.reason_phrase,
                        response.text,
                        str(response.request.url),
                    )
                logger.debug(
                    "http_ok",
                    method=method,
                    url=str(response.request.url),
                    status=response.status_code,
                )
                return response
        raise AssertionError("retry loop exited without a result")

    async def get(self, path: str, params: Params | None = None) -> Any:
        response = await self.request("GET", path, params=params)
        return response.json()

    async def post(self, path: str, body: Any) -> Any:
        response = await self.request("POST", path, json=body)
        return response.json()

    async def get_raw(self, path: str, params: Params | None = None) -> httpx.Response:
        """GET without decoding, for callers that need headers or bytes."""
        return await self.request("GET", path, params=params)
