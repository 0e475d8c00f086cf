"""Universal tool response envelope.

Every tool, and the release summary workflow, returns the same shape:

    {
        "success": true,
        "data": {...},
        "summary": "Found 3 fix version(s) for PROJ.",
        "verification_token": "9f2c41d0a7b3e815",
        "timestamp": "2026-01-15T14:30:00.123456+00:00",
        "errors": []
    }

The verification token is a short hash over the data and the timestamp. It
lets a consumer check that a summary it is quoting really came from this
payload; nothing in this package interprets it.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field
from pydantic_core import to_json

T = TypeVar("T")

TOKEN_LENGTH = 16


class ToolResponse(BaseModel, Generic[T]):
    """Envelope wrapping the result of a single tool call."""

    success: bool = Field(..., description="Whether the call succeeded")
    data: T = Field(..., description="Tool-specific payload")
    summary: str = Field(..., description="One-line human readable outcome")
    verification_token: str = Field(..., description="Integrity token over data + timestamp")
    timestamp: str = Field(..., description="ISO-8601 UTC creation time")
    errors: list[str] = Field(default_factory=list, description="Error messages, if any")


def verification_token(data: Any, timestamp: str) -> str:
    """Hash the JSON form of ``data`` together with ``timestamp``.

    Args:
        data: Any value pydantic can serialize (models, dicts, lists, scalars)
        timestamp: The timestamp stored alongside the token

    Returns:
        The first 16 hex characters of the SHA-256 digest
    """
    digest = hashlib.sha256(to_json(data) + timestamp.encode("utf-8"))
    return digest.hexdigest()[:TOKEN_LENGTH]


def _now() -> str:
    return datetime.now(UTC).isoformat()


def build_response(
    data: T,
    summary: str,
    errors: Iterable[str] = (),
) -> ToolResponse[T]:
    """Wrap a successful result."""
    timestamp = _now()
    return ToolResponse[Any](
        success=True,
        data=data,
        summary=summary,
        verification_token=verification_token(data, timestamp),
        timestamp=timestamp,
        errors=list(errors),
    )


def build_error(
    message: str,
    data: T,
    errors: Iterable[str] = (),
) -> ToolResponse[T]:
    """Wrap a failed result. ``message`` becomes both the summary and the first error."""
    timestamp = _now()
    return ToolResponse[Any](
        success=False,
        data=data,
        summary=message,
        verification_token=verification_token(data, timestamp),
        timestamp=timestamp,
        errors=[message, *errors],
    )
