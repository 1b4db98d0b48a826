"""Result models for service checks.

Pydantic v2 models describing the outcome of ``servicebed check``: one
``CheckResult`` per started service, made of ordered ``CheckStep`` entries
(start, connect, round trip, stop). ``mark_complete()`` finalises the
timestamps and derives the overall status from the steps, so CI can test
``result.overall_status == OverallStatus.PASSED`` instead of parsing output.

Key Concepts:
    OverallStatus: PASSED, FAILED, ERROR, PENDING.
    CheckStep: One named step with pass/fail, duration and detail.
    CheckResult: Service, image, container, endpoint and steps.

Tags:
    results, models, pydantic, check, status, reporting
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class OverallStatus(str, Enum):
    """Overall status of a check run."""

    PASSED = "PASSED"
    FAILED = "FAILED"
    ERROR = "ERROR"
    PENDING = "PENDING"


class CheckStep(BaseModel):
    """A single step of a service check."""

    name: str
    passed: bool = False
    duration_ms: float = 0.0
    detail: str = ""
    error: str | None = None


class CheckResult(BaseModel):
    """Outcome of starting one service and exercising it."""

    service: str
    image: str
    container: str | None = None
    endpoint: str | None = None
    url: str | None = None
    startup_ms: float = 0.0
    started_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    completed_at: str | None = None
    duration_seconds: float = 0.0
    steps: list[CheckStep] = Field(default_factory=list)
    overall_status: OverallStatus = OverallStatus.PENDING
    error: str | None = None
    error_category: str | None = None

    def add_step(
        self,
        name: str,
        passed: bool,
        duration_ms: float = 0.0,
        detail: str = "",
        error: str | None = None,
    ) -> CheckStep:
        step = CheckStep(name=name, passed=passed, duration_ms=round(duration_ms, 1), detail=detail, error=error)
        self.steps.append(step)
        return step

    @property
    def failed_steps(self) -> list[CheckStep]:
        return [s for s in self.steps if not s.passed]

    def mark_complete(self, status: OverallStatus | None = None) -> None:
        """Finalise timestamps and derive the overall status."""
        self.completed_at = datetime.now(UTC).isoformat()
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at)
        self.duration_seconds = (end - start).total_seconds()
        if status:
            self.overall_status = status
        elif self.error is not None:
            self.overall_status = OverallStatus.ERROR
        elif self.steps and not self.failed_steps:
            self.overall_status = OverallStatus.PASSED
        else:
            self.overall_status = OverallStatus.FAILED
