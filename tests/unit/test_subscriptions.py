"""Tests for subscription handles."""

import pytest

from govflow.contracts import TaskId
from govflow.subscriptions import SubscriptionRegistry, WorkflowEvent, WorkflowEventType


def _event(task_id="t1"):
    return WorkflowEvent(type=WorkflowEventType.COMPLETED, task_id=task_id)


def test_unsubscribe_is_idempotent():
    registry = SubscriptionRegistry()
    received = []
    subscription = registry.on_lifecycle("t1", received.append)

    registry.notify_lifecycle(_event())
    subscription.unsubscribe()
    subscription.unsubscribe()
    registry.notify_lifecycle(_event())

    assert len(received) == 1
    assert not subscription.active
    assert registry.subscriber_count() == 0


def test_subscription_context_manager_releases():
    registry = SubscriptionRegistry()
    with registry.on_lifecycle("t1", lambda event: None) as subscription:
        assert registry.subscriber_count("t1") == 1
    assert not subscription.active
    assert registry.subscriber_count("t1") == 0


def test_scope_releases_on_error_path():
    registry = SubscriptionRegistry()
    with pytest.raises(RuntimeError):
        with registry.scope() as scope:
            scope.on_lifecycle("t1", lambda event: None)
            scope.on_workflow_status("t1", lambda execution: None)
            scope.on_step_progress("t2", lambda *args: None)
            assert registry.subscriber_count() == 3
            raise RuntimeError("view torn down")
    assert registry.subscriber_count() == 0


def test_delivery_is_per_task():
    registry = SubscriptionRegistry()
    first = []
    second = []
    registry.on_lifecycle("t1", first.append)
    registry.on_lifecycle("t2", second.append)

    registry.notify_lifecycle(_event("t1"))

    assert [e.task_id for e in first] == [TaskId("t1")]
    assert second == []


def test_failing_callback_does_not_block_others(caplog):
    registry = SubscriptionRegistry()
    received = []

    def broken(event):
        raise RuntimeError("boom")

    registry.on_lifecycle("t1", broken)
    registry.on_lifecycle("t1", received.append)
    registry.notify_lifecycle(_event())

    assert len(received) == 1
    assert "callback failed" in caplog.text


def test_unsubscribe_during_delivery_is_safe():
    registry = SubscriptionRegistry()
    calls = []
    holder = {}

    def once(event):
        calls.append(event)
        holder["sub"].unsubscribe()

    holder["sub"] = registry.on_lifecycle("t1", once)
    registry.notify_lifecycle(_event())
    registry.notify_lifecycle(_event())

    assert len(calls) == 1


def test_clear_releases_task_subscriptions():
    registry = SubscriptionRegistry()
    sub = registry.on_step_status("t1", lambda *args: None)
    registry.on_step_status("t2", lambda *args: None)

    registry.clear("t1")

    assert not sub.active
    assert registry.subscriber_count("t1") == 0
    assert registry.subscriber_count("t2") == 1


def test_non_callable_rejected():
    with pytest.raises(ValueError):
        SubscriptionRegistry().on_lifecycle("t1", "not callable")
