"""Workflow tracker: start, resume and watch governance workflows over SSE."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from .config import GovflowConfig, load_config
from .contracts import ExecutionMessage, ExecutionStatus, TaskId, decode_event
from .models import WorkflowExecution
from .persistence import (
    InMemoryMessageLogRepository,
    MessageLogRepository,
    get_repository,
)
from .reducer import ExecutionReducer, ReductionOutcome
from .store import ExecutionStore
from .subscriptions import (
    LifecycleCallback,
    Subscription,
    SubscriptionRegistry,
    WorkflowEvent,
    WorkflowEventType,
)
from .transports import (
    BaseEventSource,
    ConnectionState,
    ServerSentEvent,
    SSEConnection,
    get_event_source,
)

logger = logging.getLogger(__name__)

START_PATH = "/task/process/start"
CONTINUE_PATH = "/task/process/continue/{task_id}"
PROGRESS_PATH = "/task/sse/progress/{task_id}"


class StartWorkflowOptions(BaseModel):
    """Callbacks and request body for one workflow stream.

    ``on_success`` receives the task id once the server reports the workflow
    as started, ``on_error`` a message when the connection gives up, and
    ``on_message`` every applied message. Callbacks may be coroutines.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    payload: Optional[Dict[str, Any]] = None
    on_success: Optional[Callable[[str], Any]] = None
    on_error: Optional[Callable[[str], Any]] = None
    on_message: Optional[Callable[[ExecutionMessage], Any]] = None


class _WorkflowStream:
    """One SSE connection and the task it is bound to."""

    def __init__(self, options: StartWorkflowOptions, task_id: Optional[TaskId] = None) -> None:
        self.options = options
        self.task_id = task_id
        self.connection: Optional[SSEConnection] = None

    @property
    def is_live(self) -> bool:
        return self.connection is not None and self.connection.is_running


async def _invoke(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Workflow callback failed")


class WorkflowTracker:
    """Track workflow executions streamed from the governance platform.

    The tracker owns its store, subscription registry and event source, so
    independent instances never share state. Use it as an async context
    manager to release connections on exit.
    """

    def __init__(
        self,
        config: Optional[GovflowConfig] = None,
        *,
        event_source: Optional[BaseEventSource] = None,
        store: Optional[ExecutionStore] = None,
        subscriptions: Optional[SubscriptionRegistry] = None,
        repository: Optional[MessageLogRepository] = None,
    ) -> None:
        self.config = config or load_config()
        if subscriptions is None:
            subscriptions = store.notifier if store is not None else SubscriptionRegistry()
        self.subscriptions = subscriptions
        if store is None:
            retention = self.config.retention
            store = ExecutionStore(
                subscriptions,
                pipeline=self.config.pipeline,
                evicted_memory=retention.evicted_memory,
                message_limit=retention.max_messages,
            )
        self.store = store
        self.reducer = ExecutionReducer(self.store)
        self._owns_source = event_source is None
        self.event_source = (
            event_source if event_source is not None else get_event_source(config=self.config)
        )
        if repository is None:
            repository = (
                get_repository(self.config.database_url)
                if self.config.database_url
                else InMemoryMessageLogRepository()
            )
        self.repository = repository
        self._streams: List[_WorkflowStream] = []

    async def __aenter__(self) -> "WorkflowTracker":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Workflow operations
    async def start_workflow(self, options: Optional[StartWorkflowOptions] = None) -> bool:
        """Start a new workflow run; ``True`` when the connection was initiated."""
        options = options or StartWorkflowOptions()
        stream = _WorkflowStream(options)
        return self._open(stream, self.config.api.url(START_PATH), "POST", options.payload or {})

    async def continue_workflow(
        self, task_id: str, options: Optional[StartWorkflowOptions] = None
    ) -> bool:
        """Resume a paused or failed task and follow its stream."""
        key = TaskId(task_id)
        if not await self._prepare_task(key):
            return False
        if not self.store.request_resume(key):
            logger.debug(f"Continuing task_id={key} without a locally resumable step")
        options = options or StartWorkflowOptions()
        stream = _WorkflowStream(options, task_id=key)
        url = self.config.api.url(CONTINUE_PATH.format(task_id=key))
        return self._open(stream, url, "POST", options.payload)

    async def watch_workflow(
        self, task_id: str, options: Optional[StartWorkflowOptions] = None
    ) -> bool:
        """Follow the progress stream of a running task without changing it."""
        key = TaskId(task_id)
        if not await self._prepare_task(key):
            return False
        options = options or StartWorkflowOptions()
        stream = _WorkflowStream(options, task_id=key)
        return self._open(stream, self._progress_url(key), "GET", None)

    async def stop_workflow(self, task_id: Optional[str] = None) -> None:
        """Close stream(s) and mark their unfinished executions cancelled.

        Already applied state is kept.
        """
        key = TaskId(task_id) if task_id is not None else None
        targets = [s for s in self._streams if key is None or s.task_id == key]
        task_ids = {s.task_id for s in targets if s.task_id is not None}
        if key is not None:
            task_ids.add(key)

        for stream in targets:
            await self._close(stream)

        for tid in task_ids:
            execution = self.store.get(tid)
            if execution is not None and not execution.is_finished:
                self.store.update_workflow_status(tid, ExecutionStatus.CANCELLED)
                logger.info(f"Workflow task_id={tid} cancelled")

    def reset_workflow(self) -> None:
        """Forget finished connections so their state no longer reports."""
        self._streams = [s for s in self._streams if s.is_live]

    async def wait_closed(self, task_id: Optional[str] = None) -> None:
        """Wait until the matching stream(s) have stopped."""
        key = TaskId(task_id) if task_id is not None else None
        for stream in list(self._streams):
            if stream.connection is None:
                continue
            if key is None or stream.task_id == key:
                await stream.connection.wait_closed()

    async def aclose(self) -> None:
        for stream in list(self._streams):
            await self._close(stream)
        if self._owns_source:
            await self.event_source.aclose()

    # ------------------------------------------------------------------
    # Queries
    def connection_state(self, task_id: Optional[str] = None) -> ConnectionState:
        """State of the task's stream, or of the most recent stream."""
        candidates = self._streams
        if task_id is not None:
            key = TaskId(task_id)
            candidates = [s for s in self._streams if s.task_id == key]
        for stream in reversed(candidates):
            if stream.connection is not None:
                return stream.connection.state
        return ConnectionState.DISCONNECTED

    def is_workflow_running(self) -> bool:
        return any(
            stream.connection is not None
            and stream.connection.state
            in (ConnectionState.CONNECTED, ConnectionState.CONNECTING)
            for stream in self._streams
        )

    def get_execution(self, task_id: str) -> Optional[WorkflowExecution]:
        return self.store.get(task_id)

    def subscribe_workflow(self, task_id: str, callback: LifecycleCallback) -> Subscription:
        """Receive completed/closed/error events for ``task_id``."""
        return self.subscriptions.on_lifecycle(task_id, callback)

    async def restore_execution(self, task_id: str) -> Optional[WorkflowExecution]:
        """Return the tracked execution, rebuilding it from the message log if needed."""
        key = TaskId(task_id)
        execution = self.store.get(key)
        if execution is not None:
            return execution
        if self.store.is_evicted(key):
            return None
        messages = await self.repository.get_messages(key)
        if not messages:
            return None
        applied = self.reducer.replay(message.payload for message in messages)
        logger.info(f"Restored task_id={key} from {applied} logged messages")
        return self.store.get(key)

    def cleanup(self, keep_count: Optional[int] = None) -> List[TaskId]:
        """Evict old finished executions and release their subscriptions."""
        if keep_count is None:
            keep_count = self.config.retention.keep_completed
        evicted = self.store.cleanup_completed(keep_count)
        for task_id in evicted:
            self.subscriptions.clear(task_id)
        return evicted

    # ------------------------------------------------------------------
    # Internal helpers
    def _progress_url(self, task_id: TaskId) -> str:
        return self.config.api.url(PROGRESS_PATH.format(task_id=task_id))

    def _headers(self) -> Dict[str, str]:
        token = self.config.api.access_token
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _live_stream(self, task_id: TaskId) -> Optional[_WorkflowStream]:
        for stream in reversed(self._streams):
            if stream.task_id == task_id and stream.is_live:
                return stream
        return None

    async def _prepare_task(self, task_id: TaskId) -> bool:
        """Make ``task_id`` ready for a new stream, replacing a live one if allowed."""
        execution = self.store.get(task_id)
        if execution is not None and execution.is_finished:
            logger.warning(
                f"Workflow task_id={task_id} already finished ({execution.status.value})"
            )
            return False

        existing = self._live_stream(task_id)
        if existing is not None:
            if not self.config.sse.replace_active_connection:
                logger.warning(f"Workflow task_id={task_id} already has an active stream")
                return False
            logger.info(f"Replacing active stream for task_id={task_id}")
            await self._close(existing)

        if self.store.initialize(task_id) is None:
            logger.warning(f"Workflow task_id={task_id} was evicted and cannot be tracked")
            return False
        return True

    def _open(
        self, stream: _WorkflowStream, url: str, method: str, body: Optional[Any]
    ) -> bool:
        if stream.task_id is not None:
            self._streams = [
                s for s in self._streams if s.task_id != stream.task_id or s.is_live
            ]
        stream.connection = SSEConnection(
            self.event_source,
            url,
            method,
            headers=self._headers(),
            body=body,
            on_open=lambda: self._handle_open(stream),
            on_message=lambda event: self._handle_event(stream, event),
            on_close=lambda: self._handle_close(stream),
            on_max_reconnect_attempts_reached=lambda: self._handle_gave_up(stream),
            max_reconnect_attempts=self.config.sse.max_reconnect_attempts,
            reconnect_interval=self.config.sse.reconnect_interval,
        )
        try:
            stream.connection.start()
        except RuntimeError as exc:
            logger.error(f"Could not open workflow stream {method} {url}: {exc}")
            return False
        self._streams.append(stream)
        logger.info(f"Opening workflow stream {method} {url}")
        return True

    async def _close(self, stream: _WorkflowStream) -> None:
        if stream in self._streams:
            self._streams.remove(stream)
        if stream.connection is not None:
            await stream.connection.disconnect()

    def _bind(self, stream: _WorkflowStream, task_id: TaskId) -> None:
        stream.task_id = task_id
        # Reconnects must not re-run the start request.
        if stream.connection is not None:
            stream.connection.retarget(self._progress_url(task_id))
        logger.info(f"Workflow stream bound to task_id={task_id}")

    def _accepts(self, task_id: TaskId) -> bool:
        if self.store.is_evicted(task_id):
            return False
        execution = self.store.get(task_id)
        return execution is None or not execution.is_finished

    async def _persist(self, message: ExecutionMessage) -> None:
        try:
            await self.repository.append_message(
                message.task_id, message.raw, received_at=message.received_at
            )
        except Exception:
            logger.exception(f"Failed to persist message for task_id={message.task_id}")

    # ------------------------------------------------------------------
    # Connection callbacks
    def _handle_open(self, stream: _WorkflowStream) -> None:
        if stream.task_id is not None and stream.connection is not None:
            stream.connection.retarget(self._progress_url(stream.task_id))

    async def _handle_event(self, stream: _WorkflowStream, event: ServerSentEvent) -> None:
        if not event.data.strip():
            return
        message = decode_event(event.data)
        if message is None:
            return

        if stream.task_id is None:
            self._bind(stream, message.task_id)
        elif message.task_id != stream.task_id:
            logger.warning(
                f"Discarding message for task_id={message.task_id} "
                f"on stream bound to task_id={stream.task_id}"
            )
            return

        if not self._accepts(message.task_id):
            logger.debug(f"Dropping late message for task_id={message.task_id}")
            return

        await self._persist(message)
        outcome = self.reducer.apply(message)
        if outcome is ReductionOutcome.DISCARDED:
            return

        await _invoke(stream.options.on_message, message)
        if outcome is ReductionOutcome.STARTED:
            await _invoke(stream.options.on_success, str(message.task_id))
        elif outcome is ReductionOutcome.ENDED:
            execution = self.store.get(message.task_id)
            detail = execution.status.value if execution is not None else None
            self.subscriptions.notify_lifecycle(
                WorkflowEvent(
                    type=WorkflowEventType.COMPLETED,
                    task_id=message.task_id,
                    detail=detail,
                )
            )
            if stream.connection is not None:
                await stream.connection.disconnect()

    def _handle_close(self, stream: _WorkflowStream) -> None:
        if stream.task_id is None:
            return
        logger.info(f"Workflow stream closed for task_id={stream.task_id}")
        self.subscriptions.notify_lifecycle(
            WorkflowEvent(type=WorkflowEventType.CLOSED, task_id=stream.task_id)
        )

    async def _handle_gave_up(self, stream: _WorkflowStream) -> None:
        attempts = stream.connection.max_reconnect_attempts if stream.connection else 0
        message = f"Connection lost after {attempts} reconnect attempts"
        if stream.task_id is not None:
            self.subscriptions.notify_lifecycle(
                WorkflowEvent(
                    type=WorkflowEventType.ERROR, task_id=stream.task_id, detail=message
                )
            )
        await _invoke(stream.options.on_error, message)
