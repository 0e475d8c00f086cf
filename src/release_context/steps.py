"""Step results and the step runner.

A workflow is a sequence of steps. Each step produces exactly one
StepResult, and the runner guarantees that producing it never raises: an
exception inside a step becomes a `failed` result with the error message.
That isolation is what lets a workflow return partial results.

`skipped` and `failed` are deliberately different outcomes:
- skipped: the step was not attempted because its input was absent
  (no candidate repository, an earlier fatal failure)
- failed: the step was attempted and raised

Both keep a report from being "complete", but callers can tell
"nothing to try" from "tried and broke".
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator

from release_context.logging_config import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class StepStatus(StrEnum):
    PENDING = "pending"
    SKIPPED = "skipped"
    SUCCESS = "success"
    FAILED = "failed"


class StepResult(BaseModel, Generic[T]):
    """Immutable outcome of one workflow step.

    Attributes:
        status: Outcome tag
        data: Step output, only present on success
        error: Error message, present iff the step failed
        duration_ms: Wall-clock time spent in the step (0 unless it ran)
    """

    model_config = ConfigDict(frozen=True)

    status: StepStatus
    data: T | None = None
    error: str | None = None
    duration_ms: float = Field(0.0, ge=0.0)

    @model_validator(mode="after")
    def check_shape(self) -> StepResult[T]:
        if self.status != StepStatus.SUCCESS and self.data is not None:
            raise ValueError(f"A {self.status} step cannot carry data")
        if (self.status == StepStatus.FAILED) != (self.error is not None):
            raise ValueError("error must be set iff the step failed")
        if self.status in (StepStatus.PENDING, StepStatus.SKIPPED) and self.duration_ms:
            raise ValueError(f"A {self.status} step has zero duration")
        return self

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCESS

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED


def skip_step() -> StepResult:
    return StepResult(status=StepStatus.SKIPPED)


def pending_step() -> StepResult:
    return StepResult(status=StepStatus.PENDING)


async def run_step(
    name: str,
    work: Callable[[], Awaitable[T]],
    *,
    log: Any = None,
) -> StepResult[T]:
    """Run one unit of work and capture its outcome.

    Args:
        name: Step name, used for logging only
        work: Zero-argument coroutine function producing the step's data
        log: structlog logger to report through. Callers bind their
                own context (project, version) and pass it in; defaults to
                this module's logger.

    Returns:
        `success` with the returned data, or `failed` with the exception
        message. Task cancellation is not captured.
    """
    log = log or logger
    start = time.perf_counter()
    try:
        data = await work()
    except Exception as exc:
        duration_ms = (time.perf_counter() - start) * 1000
        error = str(exc) or type(exc).__name__
        log.warning("step_failed", step=name, duration_ms=round(duration_ms, 1), error=error)
        return StepResult(status=StepStatus.FAILED, error=error, duration_ms=duration_ms)

    duration_ms = (time.perf_counter() - start) * 1000
    log.info("step_succeeded", step=name, duration_ms=round(duration_ms, 1))
    return StepResult(status=StepStatus.SUCCESS, data=data, duration_ms=duration_ms)
