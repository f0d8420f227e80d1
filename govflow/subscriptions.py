"""Per-task callback registry with explicit subscription handles."""

from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .contracts import StepStatus, TaskId
from .models import WorkflowExecution, WorkflowStep

logger = logging.getLogger(__name__)

StepProgressCallback = Callable[[str, int, int, int], None]
StepStatusCallback = Callable[[str, StepStatus, WorkflowStep], None]
WorkflowStatusCallback = Callable[[WorkflowExecution], None]


class WorkflowEventType(str, Enum):
    COMPLETED = "completed"
    CLOSED = "closed"
    ERROR = "error"


class WorkflowEvent(BaseModel):
    """Lifecycle notification for a tracked workflow."""

    model_config = ConfigDict(frozen=True)

    type: WorkflowEventType
    task_id: TaskId
    detail: Optional[str] = None


LifecycleCallback = Callable[[WorkflowEvent], None]


class Channel(str, Enum):
    STEP_PROGRESS = "step_progress"
    STEP_STATUS = "step_status"
    WORKFLOW_STATUS = "workflow_status"
    LIFECYCLE = "lifecycle"


class Subscription:
    """Handle for one registered callback.

    Release it with :meth:`unsubscribe` or by using it as a context manager.
    """

    def __init__(
        self,
        registry: "SubscriptionRegistry",
        channel: Channel,
        task_id: TaskId,
        callback: Callable[..., Any],
    ) -> None:
        self._registry = registry
        self.channel = channel
        self.task_id = task_id
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._registry._release(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()


class SubscriptionScope:
    """Group of subscriptions released together when the scope exits."""

    def __init__(self, registry: "SubscriptionRegistry") -> None:
        self._registry = registry
        self._subscriptions: List[Subscription] = []

    def _track(self, subscription: Subscription) -> Subscription:
        self._subscriptions.append(subscription)
        return subscription

    def on_step_progress(self, task_id: str, callback: StepProgressCallback) -> Subscription:
        return self._track(self._registry.on_step_progress(task_id, callback))

    def on_step_status(self, task_id: str, callback: StepStatusCallback) -> Subscription:
        return self._track(self._registry.on_step_status(task_id, callback))

    def on_workflow_status(
        self, task_id: str, callback: WorkflowStatusCallback
    ) -> Subscription:
        return self._track(self._registry.on_workflow_status(task_id, callback))

    def on_lifecycle(self, task_id: str, callback: LifecycleCallback) -> Subscription:
        return self._track(self._registry.on_lifecycle(task_id, callback))

    def close(self) -> None:
        while self._subscriptions:
            self._subscriptions.pop().unsubscribe()

    def __enter__(self) -> "SubscriptionScope":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class SubscriptionRegistry:
    """Routes store updates to the callbacks registered for a task."""

    def __init__(self) -> None:
        self._callbacks: Dict[Tuple[Channel, TaskId], List[Subscription]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Registration
    def _register(
        self, channel: Channel, task_id: str, callback: Callable[..., Any]
    ) -> Subscription:
        if not callable(callback):
            raise ValueError("callback must be callable")
        subscription = Subscription(self, channel, TaskId(task_id), callback)
        self._callbacks[(channel, subscription.task_id)].append(subscription)
        return subscription

    def _release(self, subscription: Subscription) -> None:
        key = (subscription.channel, subscription.task_id)
        subscriptions = self._callbacks.get(key)
        if not subscriptions:
            return
        try:
            subscriptions.remove(subscription)
        except ValueError:
            return
        if not subscriptions:
            del self._callbacks[key]

    def on_step_progress(self, task_id: str, callback: StepProgressCallback) -> Subscription:
        """Call ``callback(step_id, progress, processed, total)`` on counter updates."""
        return self._register(Channel.STEP_PROGRESS, task_id, callback)

    def on_step_status(self, task_id: str, callback: StepStatusCallback) -> Subscription:
        """Call ``callback(step_id, status, step)`` when a step snapshot is replaced."""
        return self._register(Channel.STEP_STATUS, task_id, callback)

    def on_workflow_status(
        self, task_id: str, callback: WorkflowStatusCallback
    ) -> Subscription:
        """Call ``callback(execution)`` when overall status or progress changes."""
        return self._register(Channel.WORKFLOW_STATUS, task_id, callback)

    def on_lifecycle(self, task_id: str, callback: LifecycleCallback) -> Subscription:
        """Call ``callback(event)`` when the workflow completes, closes or errors."""
        return self._register(Channel.LIFECYCLE, task_id, callback)

    def scope(self) -> SubscriptionScope:
        return SubscriptionScope(self)

    def subscriber_count(self, task_id: Optional[str] = None) -> int:
        if task_id is None:
            return sum(len(subs) for subs in self._callbacks.values())
        key_id = TaskId(task_id)
        return sum(
            len(subs) for (_, tid), subs in self._callbacks.items() if tid == key_id
        )

    def clear(self, task_id: str) -> None:
        """Release every subscription registered for ``task_id``."""
        key_id = TaskId(task_id)
        for key in [key for key in self._callbacks if key[1] == key_id]:
            for subscription in list(self._callbacks.get(key, ())):
                subscription.unsubscribe()

    # ------------------------------------------------------------------
    # Delivery
    def _deliver(self, channel: Channel, task_id: TaskId, *args: Any) -> None:
        for subscription in list(self._callbacks.get((channel, task_id), ())):
            if not subscription.active:
                continue
            try:
                subscription.callback(*args)
            except Exception:
                logger.exception(
                    f"{channel.value} callback failed for task_id={task_id}"
                )

    def notify_step_progress(
        self,
        task_id: TaskId,
        step_id: str,
        progress: int,
        processed: int,
        total: int,
    ) -> None:
        self._deliver(Channel.STEP_PROGRESS, task_id, step_id, progress, processed, total)

    def notify_step_status(self, task_id: TaskId, step: WorkflowStep) -> None:
        self._deliver(Channel.STEP_STATUS, task_id, step.id, step.status, step)

    def notify_workflow_status(self, execution: WorkflowExecution) -> None:
        self._deliver(Channel.WORKFLOW_STATUS, execution.task_id, execution)

    def notify_lifecycle(self, event: WorkflowEvent) -> None:
        self._deliver(Channel.LIFECYCLE, event.task_id, event)
