"""End-to-end tests for the workflow tracker over scripted event streams."""

import asyncio

import pytest

from govflow import StartWorkflowOptions, WorkflowTracker
from govflow.config import ApiConfig, GovflowConfig, SSEConfig
from govflow.contracts import ExecutionStatus, StepStatus
from govflow.models import StepDefinition
from govflow.persistence import InMemoryMessageLogRepository
from govflow.subscriptions import WorkflowEventType
from govflow.transports import HOLD, ConnectionState, InMemoryEventSource

BASE_URL = "http://gov.test/api"
PIPELINE = [
    StepDefinition(id="a", title="Step A", is_automatic=False),
    StepDefinition(id="b", title="Step B"),
    StepDefinition(id="c", title="Step C", enabled=False),
]


def _config(**sse):
    return GovflowConfig(
        api=ApiConfig(base_url=BASE_URL, access_token="token"),
        sse=SSEConfig(reconnect_interval=0, max_reconnect_attempts=2, **sse),
        pipeline=PIPELINE,
    )


def _msg(status, /, task_id="t1", **fields):
    return {"taskId": task_id, "executionStatus": status, **fields}


def _tracker(source, **kwargs):
    repository = kwargs.pop("repository", InMemoryMessageLogRepository())
    return WorkflowTracker(_config(**kwargs), event_source=source, repository=repository)


async def _until(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


async def _closed(tracker, task_id=None):
    await asyncio.wait_for(tracker.wait_closed(task_id), timeout=2)


@pytest.mark.asyncio
async def test_start_workflow_follows_stream_to_completion():
    source = InMemoryEventSource(
        [
            [
                _msg("start"),
                _msg("running", stepId="a", progress=50),
                _msg("running", stepId="a", status="completed"),
                _msg("end"),
            ]
        ]
    )
    tracker = _tracker(source)
    started, messages, events = [], [], []
    tracker.subscribe_workflow("t1", events.append)

    ok = await tracker.start_workflow(
        StartWorkflowOptions(
            payload={"steps": ["a", "b"]},
            on_success=started.append,
            on_message=messages.append,
        )
    )
    assert ok
    await _closed(tracker)

    execution = tracker.get_execution("t1")
    assert started == ["t1"]
    assert len(messages) == 4
    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.progress == 100
    assert [e.type for e in events] == [WorkflowEventType.COMPLETED, WorkflowEventType.CLOSED]
    assert events[0].detail == "completed"

    request = source.requests[0]
    assert request.method == "POST"
    assert request.url == f"{BASE_URL}/task/process/start"
    assert request.body == {"steps": ["a", "b"]}
    assert request.headers["Authorization"] == "Bearer token"

    logged = await tracker.repository.get_messages("t1")
    assert [m.payload["executionStatus"] for m in logged] == [
        "start",
        "running",
        "running",
        "end",
    ]
    assert tracker.connection_state() is ConnectionState.DISCONNECTED
    await tracker.aclose()


@pytest.mark.asyncio
async def test_reconnect_after_start_uses_progress_endpoint():
    source = InMemoryEventSource([[_msg("start")], [_msg("end")]])
    tracker = _tracker(source)

    await tracker.start_workflow()
    await _closed(tracker)

    assert [(r.method, r.url) for r in source.requests] == [
        ("POST", f"{BASE_URL}/task/process/start"),
        ("GET", f"{BASE_URL}/task/sse/progress/t1"),
    ]
    assert tracker.get_execution("t1").status is ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_malformed_and_foreign_messages_are_ignored():
    source = InMemoryEventSource(
        [
            [
                "not json",
                {"taskId": "t1"},
                _msg("start"),
                _msg("start", task_id="t2"),
                "",
                _msg("end"),
            ]
        ]
    )
    tracker = _tracker(source)

    await tracker.start_workflow()
    await _closed(tracker)

    assert "t2" not in tracker.store
    assert len(tracker.get_execution("t1").messages) == 2


@pytest.mark.asyncio
async def test_start_reports_error_when_connection_gives_up():
    source = InMemoryEventSource()
    tracker = _tracker(source)
    errors = []

    assert await tracker.start_workflow(StartWorkflowOptions(on_error=errors.append))
    await _closed(tracker)

    assert source.open_count == 3
    assert errors == ["Connection lost after 2 reconnect attempts"]
    assert tracker.connection_state() is ConnectionState.MAX_RECONNECT_REACHED
    assert not tracker.is_workflow_running()


@pytest.mark.asyncio
async def test_reset_workflow_forgets_finished_connections():
    tracker = _tracker(InMemoryEventSource())

    await tracker.start_workflow()
    await _closed(tracker)
    assert tracker.connection_state() is ConnectionState.MAX_RECONNECT_REACHED

    tracker.reset_workflow()

    assert tracker.connection_state() is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_watch_emits_error_lifecycle_for_bound_task():
    source = InMemoryEventSource()
    tracker = _tracker(source)
    events = []
    tracker.subscribe_workflow("t9", events.append)

    assert await tracker.watch_workflow("t9")
    await _closed(tracker, "t9")

    assert source.requests[0].method == "GET"
    assert source.requests[0].url == f"{BASE_URL}/task/sse/progress/t9"
    assert [e.type for e in events] == [WorkflowEventType.ERROR, WorkflowEventType.CLOSED]
    assert tracker.connection_state("t9") is ConnectionState.MAX_RECONNECT_REACHED
    assert tracker.get_execution("t9").status is ExecutionStatus.STARTING


@pytest.mark.asyncio
async def test_continue_resumes_paused_step():
    source = InMemoryEventSource(
        [[_msg("running", stepId="a", status="running"), _msg("end")]]
    )
    tracker = _tracker(source)
    tracker.reducer.apply_raw(_msg("start"))
    tracker.reducer.apply_raw(_msg("running", stepId="a", status="running"))
    tracker.reducer.apply_raw(_msg("running", stepId="a", status="paused"))
    changes = []
    tracker.subscriptions.on_step_status(
        "t1", lambda step_id, status, step: changes.append((step_id, status))
    )

    assert await tracker.continue_workflow("t1")
    await _closed(tracker)

    assert source.requests[0].method == "POST"
    assert source.requests[0].url == f"{BASE_URL}/task/process/continue/t1"
    assert changes == [
        ("a", StepStatus.RUNNING),
        ("a", StepStatus.COMPLETED),
        ("b", StepStatus.COMPLETED),
    ]
    assert tracker.get_execution("t1").status is ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_continue_does_not_resume_automatic_step():
    source = InMemoryEventSource(
        [[_msg("running", stepId="b", status="running"), _msg("end")]]
    )
    tracker = _tracker(source)
    tracker.reducer.apply_raw(_msg("start"))
    tracker.reducer.apply_raw(_msg("running", stepId="b", status="running"))
    tracker.reducer.apply_raw(_msg("running", stepId="b", status="paused"))
    changes = []
    tracker.subscriptions.on_step_status(
        "t1", lambda step_id, status, step: changes.append((step_id, status))
    )

    assert await tracker.continue_workflow("t1")
    await _closed(tracker)

    assert source.requests[0].url == f"{BASE_URL}/task/process/continue/t1"
    assert changes == [("a", StepStatus.COMPLETED)]
    assert tracker.get_execution("t1").step("b").status is StepStatus.PAUSED


@pytest.mark.asyncio
async def test_continue_refused_for_finished_execution():
    source = InMemoryEventSource()
    tracker = _tracker(source)
    tracker.reducer.apply_raw(_msg("start"))
    tracker.reducer.apply_raw(_msg("end"))

    assert not await tracker.continue_workflow("t1")
    assert source.open_count == 0


@pytest.mark.asyncio
async def test_continue_replaces_active_connection_by_default():
    source = InMemoryEventSource([[HOLD], [HOLD]])
    tracker = _tracker(source)

    assert await tracker.watch_workflow("t1")
    await _until(lambda: source.open_count == 1)
    assert await tracker.continue_workflow("t1")
    await _until(lambda: source.open_count == 2)

    assert tracker.is_workflow_running()
    assert source.requests[1].url == f"{BASE_URL}/task/process/continue/t1"
    await tracker.aclose()
    assert not tracker.is_workflow_running()


@pytest.mark.asyncio
async def test_continue_refused_while_connected_when_replacement_disabled():
    source = InMemoryEventSource([[HOLD]])
    tracker = _tracker(source, replace_active_connection=False)

    assert await tracker.watch_workflow("t1")
    await _until(lambda: source.open_count == 1)

    assert not await tracker.continue_workflow("t1")
    assert source.open_count == 1
    await tracker.aclose()


@pytest.mark.asyncio
async def test_stop_workflow_cancels_without_rollback():
    source = InMemoryEventSource([[_msg("running", stepId="a", progress=40), HOLD]])
    tracker = _tracker(source)
    events = []
    tracker.subscribe_workflow("t1", events.append)

    await tracker.watch_workflow("t1")
    await _until(lambda: tracker.get_execution("t1").step("a").progress == 40)
    await tracker.stop_workflow("t1")

    execution = tracker.get_execution("t1")
    assert execution.status is ExecutionStatus.CANCELLED
    assert execution.step("a").progress == 40
    assert tracker.connection_state("t1") is ConnectionState.DISCONNECTED
    assert [e.type for e in events] == [WorkflowEventType.CLOSED]


@pytest.mark.asyncio
async def test_restore_execution_replays_message_log():
    repository = InMemoryMessageLogRepository()
    await repository.append_message("t1", _msg("start"))
    await repository.append_message("t1", _msg("running", stepId="a", progress=40))
    tracker = _tracker(InMemoryEventSource(), repository=repository)

    execution = await tracker.restore_execution("t1")

    assert execution.status is ExecutionStatus.RUNNING
    assert execution.step("a").progress == 40
    assert execution.progress == 20
    assert await tracker.restore_execution("t1") is execution
    assert await tracker.restore_execution("unknown") is None


@pytest.mark.asyncio
async def test_cleanup_releases_evicted_subscriptions():
    tracker = _tracker(InMemoryEventSource())
    subscriptions = {}
    for task_id in ("t1", "t2", "t3"):
        tracker.reducer.apply_raw(_msg("start", task_id=task_id))
        tracker.reducer.apply_raw(_msg("end", task_id=task_id))
        subscriptions[task_id] = tracker.subscribe_workflow(task_id, lambda event: None)

    evicted = tracker.cleanup(keep_count=1)

    assert len(evicted) == 2
    assert len(tracker.store) == 1
    for task_id, subscription in subscriptions.items():
        assert subscription.active is (task_id not in evicted)


@pytest.mark.asyncio
async def test_trackers_do_not_share_state():
    first = _tracker(InMemoryEventSource())
    second = _tracker(InMemoryEventSource())

    first.reducer.apply_raw(_msg("start"))

    assert "t1" in first.store
    assert "t1" not in second.store
