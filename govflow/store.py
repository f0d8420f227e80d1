"""In-process arena of workflow executions keyed by task id."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel

from .contracts import ExecutionMessage, ExecutionStatus, StepStatus, TaskId, utc_now
from .models import RESUMABLE_STEP_STATUSES, StepDefinition, WorkflowExecution, WorkflowStep
from .subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)

DEFAULT_KEEP_COUNT = 10
DEFAULT_EVICTED_MEMORY = 1000


class ExecutionStats(BaseModel):
    total: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


class ExecutionStore:
    """Owns every tracked execution and enforces its invariants.

    Records are frozen snapshots; each mutation swaps in a new snapshot and
    notifies subscribers synchronously. Updates addressed to unknown task ids
    are ignored so late messages after eviction are harmless.

    Evicted ids are remembered up to ``evicted_memory`` entries, oldest
    forgotten first. ``message_limit`` bounds the in-memory message log of each
    execution; ``None`` keeps every message.
    """

    def __init__(
        self,
        notifier: Optional[SubscriptionRegistry] = None,
        pipeline: Sequence[StepDefinition] = (),
        evicted_memory: int = DEFAULT_EVICTED_MEMORY,
        message_limit: Optional[int] = None,
    ) -> None:
        if evicted_memory < 0:
            raise ValueError("evicted_memory must be non-negative")
        if message_limit is not None and message_limit < 1:
            raise ValueError("message_limit must be positive")
        self.notifier = notifier if notifier is not None else SubscriptionRegistry()
        self._pipeline: Tuple[StepDefinition, ...] = tuple(pipeline)
        self._executions: Dict[TaskId, WorkflowExecution] = {}
        self._active: List[TaskId] = []
        self._evicted: Dict[TaskId, None] = {}
        self._evicted_memory = evicted_memory
        self._message_limit = message_limit
        self._resuming: Set[TaskId] = set()

    # ------------------------------------------------------------------
    # Queries
    def __contains__(self, task_id: object) -> bool:
        if not isinstance(task_id, str) or not task_id.strip():
            return False
        return TaskId(task_id) in self._executions

    def __len__(self) -> int:
        return len(self._executions)

    def get(self, task_id: str) -> Optional[WorkflowExecution]:
        return self._executions.get(TaskId(task_id))

    def list_executions(self) -> List[WorkflowExecution]:
        """Return all executions, most recently started first."""
        return sorted(
            self._executions.values(), key=lambda e: e.start_time, reverse=True
        )

    @property
    def active_task_ids(self) -> List[TaskId]:
        return list(self._active)

    def has_active(self) -> bool:
        return bool(self._active)

    def is_evicted(self, task_id: str) -> bool:
        return TaskId(task_id) in self._evicted

    def overall_progress(self, task_id: str) -> int:
        execution = self.get(task_id)
        return execution.overall_progress() if execution else 0

    def processed_totals(self, task_id: str) -> Tuple[int, int]:
        execution = self.get(task_id)
        return execution.processed_totals() if execution else (0, 0)

    def stats(self) -> ExecutionStats:
        executions = self._executions.values()
        return ExecutionStats(
            total=len(self._executions),
            active=len(self._active),
            completed=sum(1 for e in executions if e.status is ExecutionStatus.COMPLETED),
            failed=sum(1 for e in executions if e.status is ExecutionStatus.ERROR),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    def _mutable(self, task_id: TaskId) -> Optional[WorkflowExecution]:
        execution = self._executions.get(task_id)
        if execution is None:
            logger.debug(f"Ignoring update for unknown task_id={task_id}")
            return None
        if execution.is_finished:
            logger.debug(
                f"Ignoring update for finished task_id={task_id} ({execution.status.value})"
            )
            return None
        return execution

    def _replace_step(
        self, execution: WorkflowExecution, step: WorkflowStep
    ) -> WorkflowExecution:
        steps = tuple(step if s.id == step.id else s for s in execution.steps)
        updated = execution.model_copy(update={"steps": steps})
        return updated.model_copy(update={"progress": updated.overall_progress()})

    def _commit(self, execution: WorkflowExecution) -> WorkflowExecution:
        self._executions[execution.task_id] = execution
        return execution

    def _remember_evicted(self, task_id: TaskId) -> None:
        self._evicted[task_id] = None
        while len(self._evicted) > self._evicted_memory:
            del self._evicted[next(iter(self._evicted))]

    def _deactivate(self, task_id: TaskId) -> None:
        if task_id in self._active:
            self._active.remove(task_id)
        self._resuming.discard(task_id)

    # ------------------------------------------------------------------
    # Lifecycle
    def initialize(
        self, task_id: str, steps: Optional[Iterable[StepDefinition]] = None
    ) -> Optional[WorkflowExecution]:
        """Create the execution for ``task_id`` if it does not exist yet."""
        key = TaskId(task_id)
        existing = self._executions.get(key)
        if existing is not None:
            return existing
        if key in self._evicted:
            logger.debug(f"Not re-creating evicted task_id={key}")
            return None

        definitions = tuple(steps) if steps is not None else self._pipeline
        execution = WorkflowExecution(
            task_id=key,
            status=ExecutionStatus.STARTING,
            steps=tuple(definition.to_step() for definition in definitions),
        )
        execution = execution.model_copy(update={"progress": execution.overall_progress()})
        self._commit(execution)
        self._active.append(key)
        logger.info(f"Tracking workflow execution task_id={key}")
        self.notifier.notify_workflow_status(execution)
        return execution

    def record_message(
        self, task_id: str, message: ExecutionMessage
    ) -> Optional[WorkflowExecution]:
        """Append ``message`` to the execution log, creating the execution if needed."""
        key = TaskId(task_id)
        if key not in self._executions and self.initialize(key) is None:
            return None
        execution = self._mutable(key)
        if execution is None:
            return None
        messages = execution.messages + (message,)
        if self._message_limit is not None:
            messages = messages[-self._message_limit :]
        return self._commit(execution.model_copy(update={"messages": messages}))

    def ensure_step(
        self, task_id: str, definition: StepDefinition
    ) -> Optional[WorkflowStep]:
        """Return the named step, appending it from ``definition`` when missing."""
        key = TaskId(task_id)
        execution = self._mutable(key)
        if execution is None:
            return None
        step = execution.step(definition.id)
        if step is not None:
            return step
        step = definition.to_step()
        updated = execution.model_copy(update={"steps": execution.steps + (step,)})
        self._commit(updated.model_copy(update={"progress": updated.overall_progress()}))
        return step

    def update_step_progress(
        self,
        task_id: str,
        step_id: str,
        progress: Optional[int] = None,
        processed: Optional[int] = None,
        total: Optional[int] = None,
    ) -> Optional[WorkflowStep]:
        """Update one step's counters; no-op for unknown tasks or steps."""
        key = TaskId(task_id)
        execution = self._mutable(key)
        if execution is None:
            return None
        step = execution.step(step_id)
        if step is None:
            logger.debug(f"Ignoring progress for unknown step {step_id} of task_id={key}")
            return None
        if step.status not in (StepStatus.IDLE, StepStatus.RUNNING):
            logger.debug(
                f"Ignoring progress for step {step_id} in status {step.status.value}"
            )
            return None

        update: Dict[str, Any] = {}
        if total is not None:
            update["total_records"] = max(0, total)
        if processed is not None:
            update["processed_records"] = max(0, processed)
        if progress is not None:
            update["progress"] = max(0, min(100, progress))
        elif processed is not None:
            denominator = update.get("total_records", step.total_records)
            if denominator:
                update["progress"] = max(0, min(100, round(processed / denominator * 100)))

        started = step.status is StepStatus.IDLE
        if started:
            update["status"] = StepStatus.RUNNING
            update["start_time"] = step.start_time or utc_now()

        new_step = step.model_copy(update=update)
        previous_progress = execution.progress
        updated = self._replace_step(execution, new_step)
        if updated.status is ExecutionStatus.STARTING:
            updated = updated.model_copy(update={"status": ExecutionStatus.RUNNING})
        self._commit(updated)

        if started:
            self.notifier.notify_step_status(key, new_step)
        self.notifier.notify_step_progress(
            key,
            new_step.id,
            new_step.progress,
            new_step.processed_records,
            new_step.total_records,
        )
        if started or updated.progress != previous_progress:
            self.notifier.notify_workflow_status(updated)
        return new_step

    def update_step_status(
        self,
        task_id: str,
        step_id: str,
        status: StepStatus,
        step: Optional[WorkflowStep] = None,
    ) -> Optional[WorkflowStep]:
        """Replace a step with a fresh snapshot in ``status``.

        ``step`` supplies the full replacement snapshot; when omitted the
        current snapshot is carried forward with timestamps adjusted.
        Backward transitions are ignored.
        """
        key = TaskId(task_id)
        execution = self._mutable(key)
        if execution is None:
            return None
        current = execution.step(step_id)
        if current is None:
            logger.debug(f"Ignoring status for unknown step {step_id} of task_id={key}")
            return None
        if step is not None and step.id != step_id:
            raise ValueError(f"Snapshot id {step.id} does not match step {step_id}")

        resuming = key in self._resuming
        if not current.can_transition_to(status, resuming=resuming):
            logger.warning(
                f"Rejecting step transition {current.status.value} -> {status.value} "
                f"for step {step_id} of task_id={key}"
            )
            return None

        base = step if step is not None else current
        update: Dict[str, Any] = {"status": status}
        now = utc_now()
        if status is StepStatus.RUNNING:
            update["start_time"] = base.start_time or now
            update["end_time"] = None
            update["error"] = None
            if current.status in RESUMABLE_STEP_STATUSES:
                self._resuming.discard(key)
        elif status in (StepStatus.COMPLETED, StepStatus.ERROR, StepStatus.SKIPPED):
            update["end_time"] = base.end_time or now
            if status is StepStatus.SKIPPED:
                update["progress"] = 100
            elif status is StepStatus.COMPLETED:
                update["progress"] = 100
                if base.total_records:
                    update["processed_records"] = base.total_records
        new_step = base.model_copy(update=update)

        updated = self._replace_step(execution, new_step)
        if updated.status is ExecutionStatus.STARTING:
            updated = updated.model_copy(update={"status": ExecutionStatus.RUNNING})
        self._commit(updated)
        self.notifier.notify_step_status(key, new_step)
        self.notifier.notify_workflow_status(updated)
        return new_step

    def update_workflow_status(
        self,
        task_id: str,
        status: ExecutionStatus,
        *,
        progress: Optional[int] = None,
        error: Optional[str] = None,
        end_time: Optional[datetime] = None,
    ) -> Optional[WorkflowExecution]:
        """Swap in a new overall status and progress in one step."""
        key = TaskId(task_id)
        execution = self._mutable(key)
        if execution is None:
            return None

        update: Dict[str, Any] = {"status": status}
        update["progress"] = (
            max(0, min(100, progress)) if progress is not None else execution.overall_progress()
        )
        if error is not None:
            update["error"] = error
        if status.is_terminal:
            update["end_time"] = end_time or utc_now()
        updated = self._commit(execution.model_copy(update=update))

        if status.is_terminal:
            self._deactivate(key)
            logger.info(f"Workflow task_id={key} finished with status {status.value}")
        self.notifier.notify_workflow_status(updated)
        return updated

    def request_resume(self, task_id: str) -> bool:
        """Allow paused or failed manual steps of ``task_id`` to run again.

        Returns ``False`` when the execution has no such step; automatic steps
        are never resumed.
        """
        key = TaskId(task_id)
        execution = self._executions.get(key)
        if execution is None or execution.is_finished:
            return False
        if not execution.resumable_steps:
            logger.debug(f"No manually resumable step for task_id={key}")
            return False
        self._resuming.add(key)
        return True

    def remove(self, task_id: str) -> bool:
        """Delete the execution and drop it from the active index."""
        key = TaskId(task_id)
        self._deactivate(key)
        removed = self._executions.pop(key, None)
        return removed is not None

    def cleanup_completed(self, keep_count: int = DEFAULT_KEEP_COUNT) -> List[TaskId]:
        """Keep only the ``keep_count`` most recently ended completed/errored runs."""
        if keep_count < 0:
            raise ValueError("keep_count must be non-negative")

        finished = sorted(
            (
                e
                for e in self._executions.values()
                if e.status in (ExecutionStatus.COMPLETED, ExecutionStatus.ERROR)
            ),
            key=lambda e: e.end_time.timestamp() if e.end_time else 0.0,
            reverse=True,
        )
        evicted: List[TaskId] = []
        for execution in finished[keep_count:]:
            del self._executions[execution.task_id]
            self._deactivate(execution.task_id)
            self._remember_evicted(execution.task_id)
            evicted.append(execution.task_id)
        if evicted:
            logger.info(f"Evicted {len(evicted)} finished workflow executions")
        return evicted
