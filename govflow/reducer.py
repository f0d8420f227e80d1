"""Fold execution messages into the execution store."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from .contracts import (
    ExecutionMessage,
    ExecutionStatus,
    Started,
    StepProgress,
    StepStatus,
    StepStatusChanged,
    TaskId,
    Unknown,
    WorkflowEnded,
    parse_message,
)
from .models import StepDefinition
from .store import ExecutionStore

logger = logging.getLogger(__name__)

StartedCallback = Callable[[TaskId], None]
EndedCallback = Callable[[TaskId, ExecutionStatus], None]


class ReductionOutcome(str, Enum):
    DISCARDED = "discarded"
    APPLIED = "applied"
    STARTED = "started"
    ENDED = "ended"


class ExecutionReducer:
    """Apply messages to an :class:`ExecutionStore` strictly in arrival order."""

    def __init__(
        self,
        store: ExecutionStore,
        on_started: Optional[StartedCallback] = None,
        on_ended: Optional[EndedCallback] = None,
    ) -> None:
        self.store = store
        self._on_started = on_started
        self._on_ended = on_ended

    def apply_raw(self, payload: Any) -> ReductionOutcome:
        """Parse a decoded payload and apply it."""
        message = parse_message(payload)
        if message is None:
            return ReductionOutcome.DISCARDED
        return self.apply(message)

    def apply(self, message: ExecutionMessage) -> ReductionOutcome:
        task_id = message.task_id
        if self.store.record_message(task_id, message) is None:
            logger.debug(
                f"Dropping {message.kind} message for untracked task_id={task_id}"
            )
            return ReductionOutcome.DISCARDED

        if isinstance(message, Started):
            self._apply_started(message)
            return ReductionOutcome.STARTED
        if isinstance(message, StepProgress):
            self._apply_step_progress(message)
        elif isinstance(message, StepStatusChanged):
            self._apply_step_status(message)
        elif isinstance(message, WorkflowEnded):
            self._apply_ended(message)
            return ReductionOutcome.ENDED
        elif isinstance(message, Unknown):
            logger.debug(
                f"Recorded unrecognised executionStatus={message.execution_status!r} "
                f"for task_id={task_id}"
            )
        return ReductionOutcome.APPLIED

    def replay(self, messages: Iterable[Any]) -> int:
        """Re-apply a stored message log; returns the number of applied messages."""
        applied = 0
        for item in messages:
            if isinstance(item, dict):
                outcome = self.apply_raw(item)
            else:
                outcome = self.apply(item)
            if outcome is not ReductionOutcome.DISCARDED:
                applied += 1
        return applied

    # ------------------------------------------------------------------
    def _apply_started(self, message: Started) -> None:
        execution = self.store.get(message.task_id)
        if execution is not None and execution.status in (
            ExecutionStatus.IDLE,
            ExecutionStatus.STARTING,
        ):
            self.store.update_workflow_status(message.task_id, ExecutionStatus.RUNNING)
        logger.info(f"Workflow started task_id={message.task_id}")
        if self._on_started is not None:
            self._on_started(message.task_id)

    def _ensure_step(self, message: StepProgress | StepStatusChanged) -> None:
        node = message.node
        definition = StepDefinition(
            id=message.step_id,
            title=(node.node_name if node and node.node_name else message.step_id),
            description=(node.descript or "") if node else "",
            enabled=node.enabled if node else True,
            is_automatic=node.is_auto if node else True,
        )
        self.store.ensure_step(message.task_id, definition)

    def _apply_step_progress(self, message: StepProgress) -> None:
        self._ensure_step(message)
        self.store.update_step_progress(
            message.task_id,
            message.step_id,
            progress=message.progress,
            processed=message.processed_records,
            total=message.total_records,
        )

    def _apply_step_status(self, message: StepStatusChanged) -> None:
        self._ensure_step(message)
        task_id = message.task_id
        execution = self.store.get(task_id)
        current = execution.step(message.step_id) if execution else None
        if current is None:
            return

        counters = {}
        if message.progress is not None:
            counters["progress"] = message.progress
        if message.processed_records is not None:
            counters["processed_records"] = message.processed_records
        if message.total_records is not None:
            counters["total_records"] = message.total_records
        if message.error is not None:
            counters["error"] = message.error
        elif message.status is StepStatus.ERROR and current.error is None:
            counters["error"] = f"Step {message.step_id} failed"

        snapshot = current.model_copy(update=counters)
        self.store.update_step_status(task_id, message.step_id, message.status, snapshot)

    def _apply_ended(self, message: WorkflowEnded) -> None:
        task_id = message.task_id
        execution = self.store.get(task_id)
        if execution is None or execution.is_finished:
            return

        if message.outcome is ExecutionStatus.COMPLETED:
            for step in execution.enabled_steps:
                if step.status in (StepStatus.IDLE, StepStatus.RUNNING):
                    self.store.update_step_status(task_id, step.id, StepStatus.COMPLETED)

        self.store.update_workflow_status(task_id, message.outcome, error=message.error)
        if self._on_ended is not None:
            self._on_ended(task_id, message.outcome)
