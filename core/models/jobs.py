"""Job models -- named cron jobs held by the scheduler runner."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class JobState(BaseModel):
    """Schedule and execution history of one named job."""

    name: str
    cron_expression: str
    enabled: bool = True
    description: str = ""

    # Execution history
    running: bool = False
    last_run_at: datetime | None = None
    last_status: Literal["success", "error", "skipped"] | None = None
    last_error: str | None = None
    run_count: int = 0
    skipped_overlaps: int = 0


class JobResult(BaseModel):
    """Outcome of one job invocation."""

    job: str
    status: Literal["success", "error"] = "success"
    started_at: datetime
    finished_at: datetime
    value: Any = None
    error: str | None = None


class SchedulerStatus(BaseModel):
    is_running: bool
    jobs: list[str] = Field(default_factory=list)
    config: dict = Field(default_factory=dict)
    details: list[JobState] = Field(default_factory=list)
