"""Execution state models folded from the message stream."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .contracts import ExecutionMessage, ExecutionStatus, StepStatus, TaskId, utc_now

_STEP_RANK = {
    StepStatus.IDLE: 0,
    StepStatus.RUNNING: 1,
    StepStatus.COMPLETED: 2,
    StepStatus.ERROR: 2,
    StepStatus.PAUSED: 2,
    StepStatus.SKIPPED: 2,
}

RESUMABLE_STEP_STATUSES = frozenset({StepStatus.PAUSED, StepStatus.ERROR})
FINISHED_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})


class StepDefinition(BaseModel):
    """Static configuration of one pipeline step."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    description: str = ""
    enabled: bool = True
    is_automatic: bool = True

    def to_step(self) -> "WorkflowStep":
        return WorkflowStep(
            id=self.id,
            title=self.title or self.id,
            description=self.description,
            enabled=self.enabled,
            is_automatic=self.is_automatic,
        )


class WorkflowStep(BaseModel):
    """Immutable snapshot of one pipeline step."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    description: str = ""
    status: StepStatus = StepStatus.IDLE
    enabled: bool = True
    is_automatic: bool = True
    progress: int = Field(default=0, ge=0, le=100)
    processed_records: int = 0
    total_records: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def duration(self) -> Optional[timedelta]:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time

    @property
    def is_resumable(self) -> bool:
        """Paused or failed steps that wait for a manual "continue"."""
        return self.status in RESUMABLE_STEP_STATUSES and not self.is_automatic

    def can_transition_to(self, status: StepStatus, resuming: bool = False) -> bool:
        """Return ``True`` if moving to ``status`` keeps the step moving forward.

        Only manual steps may go back from paused or error to running, and
        only while a resume was requested.
        """
        if status is self.status:
            return True
        if status is StepStatus.RUNNING and self.status in RESUMABLE_STEP_STATUSES:
            return resuming and self.is_resumable
        return _STEP_RANK[status] > _STEP_RANK[self.status]


class WorkflowExecution(BaseModel):
    """Immutable snapshot of one workflow run."""

    model_config = ConfigDict(frozen=True)

    task_id: TaskId
    status: ExecutionStatus = ExecutionStatus.STARTING
    start_time: datetime = Field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    progress: int = Field(default=0, ge=0, le=100)
    steps: Tuple[WorkflowStep, ...] = ()
    messages: Tuple[ExecutionMessage, ...] = ()
    error: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    @property
    def enabled_steps(self) -> Tuple[WorkflowStep, ...]:
        return tuple(step for step in self.steps if step.enabled)

    @property
    def resumable_steps(self) -> Tuple[WorkflowStep, ...]:
        return tuple(step for step in self.enabled_steps if step.is_resumable)

    @property
    def awaiting_confirmation(self) -> bool:
        """``True`` while the furthest active step is a manual one not yet done."""
        if self.is_finished:
            return False
        active = [step for step in self.enabled_steps if step.status is not StepStatus.IDLE]
        if not active:
            return False
        last = active[-1]
        return not last.is_automatic and last.status not in FINISHED_STEP_STATUSES

    def step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def overall_progress(self) -> int:
        """Mean step progress over enabled steps only."""
        enabled = self.enabled_steps
        if not enabled:
            return 0
        return round(sum(step.progress for step in enabled) / len(enabled))

    def processed_totals(self) -> Tuple[int, int]:
        """Return ``(processed, total)`` record counts over enabled steps."""
        enabled = self.enabled_steps
        return (
            sum(step.processed_records for step in enabled),
            sum(step.total_records for step in enabled),
        )
