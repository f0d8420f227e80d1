"""History-row projection of workflow executions."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field

from .contracts import ExecutionStatus, StepStatus, utc_now
from .models import FINISHED_STEP_STATUSES, WorkflowExecution


class ExecutionSummary(BaseModel):
    """Flat view of one execution suitable for listing."""

    task_id: str
    name: str = "Data governance workflow"
    status: ExecutionStatus
    progress: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    processed_records: int = 0
    total_records: int = 0
    current_step: int = 0
    total_steps: int = 0
    duration: Optional[str] = None
    error: Optional[str] = None
    awaiting_confirmation: bool = False
    steps: List[str] = Field(default_factory=list)
    enabled_steps: List[str] = Field(default_factory=list)


def format_duration(delta: timedelta) -> str:
    """Render ``delta`` as ``"{minutes}m {seconds}s"``."""
    total_seconds = max(0, int(delta.total_seconds()))
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}m {seconds}s"


def summarize(
    execution: WorkflowExecution, now: Optional[datetime] = None
) -> ExecutionSummary:
    """Project ``execution`` into an :class:`ExecutionSummary`.

    Running executions measure their duration up to ``now``.
    """
    enabled = execution.enabled_steps
    processed, total = execution.processed_totals()
    completed = sum(1 for step in enabled if step.status in FINISHED_STEP_STATUSES)

    end = execution.end_time or now or utc_now()
    failed = next(
        (step for step in execution.steps if step.status is StepStatus.ERROR and step.error),
        None,
    )
    error = failed.error if failed else execution.error

    return ExecutionSummary(
        task_id=str(execution.task_id),
        status=execution.status,
        progress=execution.progress,
        start_time=execution.start_time,
        end_time=execution.end_time,
        processed_records=processed,
        total_records=total,
        current_step=min(completed + 1, len(enabled)) if enabled else 0,
        total_steps=len(enabled),
        duration=format_duration(end - execution.start_time),
        error=error,
        awaiting_confirmation=execution.awaiting_confirmation,
        steps=[step.title for step in execution.steps],
        enabled_steps=[step.title for step in enabled],
    )
