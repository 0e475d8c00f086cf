"""GitHub Actions log archive parsing.

A run's logs download as a zip archive with one text file per job/step.
The deployment pipeline's "Deploy Trigger Stage" step prints the payload
it sent to the deployment system as a line like:

    2026-01-15T14:30:00Z Payload: {"app": "gsap", "version": "26.01.1", ...}

This module pulls that object out, entirely in memory:
1. extract_logs_from_zip: archive bytes -> [LogEntry]
2. find_deploy_trigger_stage_log: pick the entry by file name
3. extract_payload_object: find the `Payload:` marker, brace-balance the
   object that follows it, and parse it as JSON

The brace scan counts raw `{` and `}` characters and does not track JSON
string literals, so a brace inside a quoted value before the real closing
brace throws the count off. Such a slice normally fails JSON parsing and
the extraction raises PayloadExtractionError.
"""

from __future__ import annotations

import io
import json
import re
import zipfile
from enum import StrEnum
from typing import Any

from pydantic import BaseModel

from release_context.logging_config import get_logger

logger = get_logger(__name__)

DEPLOY_TRIGGER_MARKER = "deploy trigger stage"
PAYLOAD_MARKER = re.compile(r"Payload\s*:", re.IGNORECASE)


class LogArchiveError(ValueError):
    """Raised when log archive bytes cannot be read as a zip file."""


class PayloadExtractionError(ValueError):
    """Raised when a `Payload:` object is present but cannot be parsed."""


class LogEntry(BaseModel):
    file_name: str
    content: str


# ---------------------------------------------------------------------------
# Archive extraction
# ---------------------------------------------------------------------------


def extract_logs_from_zip(archive: bytes, file_filter: str | None = None) -> list[LogEntry]:
    """Decode every file in a log archive, in archive order.

    Args:
        archive: Raw zip bytes as downloaded from the Actions API
        file_filter: Optional case-insensitive substring an entry name must contain

    Returns:
        One LogEntry per non-directory entry that passed the filter

    Raises:
        LogArchiveError: If the bytes are not a readable zip archive
    """
    needle = file_filter.lower() if file_filter else None
    entries: list[LogEntry] = []
    try:
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            for info in zf.infolist():
                if info.is_dir():
                    continue
                if needle and needle not in info.filename.lower():
                    continue
                content = zf.read(info).decode("utf-8", errors="replace")
                entries.append(LogEntry(file_name=info.filename, content=content))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, OSError) as exc:
        raise LogArchiveError(f"Failed to extract log archive: {exc}") from exc

    logger.info(
        "log_archive_extracted",
        archive_bytes=len(archive),
        file_filter=file_filter,
        entries=len(entries),
    )
    return entries


def find_deploy_trigger_stage_log(
    entries: list[LogEntry],
    marker: str = DEPLOY_TRIGGER_MARKER,
) -> LogEntry | None:
    """Return the first entry whose name contains ``marker`` (case-insensitive)."""
    needle = marker.lower()
    for entry in entries:
        if needle in entry.file_name.lower():
            logger.debug("deploy_log_found", file_name=entry.file_name)
            return entry
    logger.info("deploy_log_missing", searched=len(entries), marker=marker)
    return None


def filter_log_lines(content: str, needle: str) -> list[str]:
    """Lines of ``content`` containing ``needle``, case-insensitively."""
    lowered = needle.lower()
    return [line for line in content.splitlines() if lowered in line.lower()]


# ---------------------------------------------------------------------------
# Payload extraction
# ---------------------------------------------------------------------------


class PayloadOutcome(StrEnum):
    FOUND = "found"
    MARKER_MISSING = "marker_missing"
    NO_OBJECT = "no_object"


class PayloadSearch(BaseModel):
    """Result of looking for a payload object in a log.

    `payload` is set only when `outcome` is FOUND.
    """

    outcome: PayloadOutcome
    payload: dict[str, Any] | None = None
    message: str = ""

    @property
    def found(self) -> bool:
        return self.outcome == PayloadOutcome.FOUND


def _matching_brace(text: str, start: int) -> int:
    """Index of the `}` closing the `{` at ``start``, or -1 if it never closes."""
    depth = 0
    for index in range(start, len(text)):
        char = text[index]
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return -1


def extract_payload_object(text: str) -> PayloadSearch:
    """Find and parse the JSON object printed after a `Payload:` marker.

    Absence is not an error: a log without the marker, or with the marker
    but no `{` after it, yields a PayloadSearch with the matching outcome.

    Args:
        text: Decoded content of one log file

    Returns:
        A PayloadSearch; `payload` preserves the key order of the log

    Raises:
        PayloadExtractionError: If the braces never balance, or the balanced
            slice is not a valid JSON object
    """
    marker = PAYLOAD_MARKER.search(text)
    if marker is None:
        return PayloadSearch(
            outcome=PayloadOutcome.MARKER_MISSING,
            message="No 'Payload:' marker found in log content.",
        )

    brace_start = text.find("{", marker.start())
    if brace_start == -1:
        return PayloadSearch(
            outcome=PayloadOutcome.NO_OBJECT,
            message="'Payload:' found but no '{' follows it.",
        )

    brace_end = _matching_brace(text, brace_start)
    if brace_end == -1:
        raise PayloadExtractionError(
            "Found 'Payload: {' but the braces are unbalanced: no matching closing brace."
        )

    raw = text[brace_start : brace_end + 1]
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PayloadExtractionError(f"Payload object is not valid JSON: {exc}") from exc
    keys = list(payload)
    logger.info("payload_extracted", keys=keys)
    return PayloadSearch(
        outcome=PayloadOutcome.FOUND,
        payload=payload,
        message=f"Payload object extracted. Keys: {', '.join(keys)}.",
    )


def payload_excerpt(text: str, limit: int = 500) -> str:
    """Raw text starting at the `Payload:` marker, at most ``limit`` characters."""
    marker = PAYLOAD_MARKER.search(text)
    if marker is None:
        return ""
    return text[marker.start() : marker.start() + limit]
