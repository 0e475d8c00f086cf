"""FastAPI application exposing the tools and the release summary workflow.

Endpoints:
- GET /health - Health check for load balancers and monitoring
- GET /tools - Registered tools with their argument schemas
- POST /tools/{name} - Call a tool; the body holds its arguments
- POST /release-summary - Run the release summary workflow
- Automatic OpenAPI/Swagger documentation at /docs

Architecture notes:
- Config and clients are built once at startup and kept on app.state.services
- Every tool answers with the ToolResponse envelope; remote failures are
  envelopes with success=false, not HTTP errors
- Exception handlers map what escapes: bad arguments -> 422, unknown
  tool -> 404, anything else -> 500

To run locally:
    uvicorn release_context.main:app --reload --port 8000
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from release_context import __version__
from release_context.config import load_config
from release_context.logging_config import get_logger, setup_logging
from release_context.tools import TOOLS, Services, UnknownToolError, call_tool
from release_context.workflow import ReleaseSummaryInput

logger = get_logger(__name__)

UNEXPECTED_ERROR_HINT = (
    "This is an unexpected server-level error. Individual workflow step errors "
    "are captured in the steps object and do not cause this."
)


# ---------------------------------------------------------------------------
# Application Lifespan (startup/shutdown)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Load config and build the clients once at startup.

    Services already placed on app.state (tests, embedding apps) are kept.
    """
    setup_logging()
    if getattr(app.state, "services", None) is None:
        app.state.services = Services.from_config(load_config())
    logger.info("app_started", tools=len(TOOLS))
    yield
    logger.info("app_stopped")


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Release Context",
    description="Jira, GitHub and Confluence tools plus the release summary workflow",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Process-Time"] = f"{duration_ms / 1000:.2f}s"
        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(duration_ms, 1),
        )
        return response


app.add_middleware(LoggingMiddleware)


# ---------------------------------------------------------------------------
# Error Handling
# ---------------------------------------------------------------------------


@app.exception_handler(UnknownToolError)
async def unknown_tool_handler(request: Request, exc: UnknownToolError) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"error": "unknown_tool", "detail": str(exc)},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Invalid tool arguments or configuration values."""
    return JSONResponse(
        status_code=422,
        content={"error": "validation_error", "detail": str(exc)},
    )


@app.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler: log the traceback, answer with a hint."""
    logger.exception("unhandled_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "internal_error",
            "detail": str(exc),
            "hint": UNEXPECTED_ERROR_HINT,
        },
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def _services(request: Request) -> Services:
    return request.app.state.services


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/tools")
async def get_tools() -> dict[str, Any]:
    return {"tools": [spec.describe() for spec in TOOLS.values()]}


@app.post("/tools/{name}")
async def run_tool(
    name: str,
    request: Request,
    arguments: dict[str, Any] | None = Body(None),
) -> dict[str, Any]:
    """Call a registered tool.

    Args:
        name: Tool name as listed by GET /tools
        arguments: JSON object with the tool's arguments (may be omitted)

    Returns:
        The tool's ToolResponse envelope
    """
    response = await call_tool(_services(request), name, arguments)
    return response.model_dump(mode="json")


@app.post("/release-summary")
async def release_summary(body: ReleaseSummaryInput, request: Request) -> dict[str, Any]:
    """Run the release summary workflow.

    Always answers 200 with the report envelope; check
    `data.overall_status` for complete / partial / failed.
    """
    response = await _services(request).workflow().run(body)
    return response.model_dump(mode="json")
