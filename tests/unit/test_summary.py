from datetime import timedelta

from govflow.contracts import ExecutionStatus, StepStatus, utc_now
from govflow.models import WorkflowExecution, WorkflowStep
from govflow.summary import format_duration, summarize


def test_format_duration():
    assert format_duration(timedelta(seconds=125)) == "2m 5s"
    assert format_duration(timedelta(seconds=-3)) == "0m 0s"


def test_summarize_counts_enabled_steps():
    start = utc_now()
    execution = WorkflowExecution(
        task_id="t1",
        status=ExecutionStatus.RUNNING,
        start_time=start,
        progress=50,
        steps=(
            WorkflowStep(
                id="a",
                title="A",
                status=StepStatus.COMPLETED,
                progress=100,
                processed_records=10,
                total_records=10,
            ),
            WorkflowStep(
                id="b",
                title="B",
                status=StepStatus.ERROR,
                processed_records=3,
                total_records=10,
                error="bad rows",
            ),
            WorkflowStep(id="c", title="C", enabled=False, total_records=99),
        ),
    )

    summary = summarize(execution, now=start + timedelta(seconds=61))

    assert summary.processed_records == 13
    assert summary.total_records == 20
    assert summary.current_step == 2
    assert summary.total_steps == 2
    assert summary.duration == "1m 1s"
    assert summary.error == "bad rows"
    assert summary.steps == ["A", "B", "C"]
    assert summary.enabled_steps == ["A", "B"]


def test_summarize_flags_manual_step_awaiting_confirmation():
    execution = WorkflowExecution(
        task_id="t1",
        status=ExecutionStatus.RUNNING,
        steps=(
            WorkflowStep(id="a", title="A", status=StepStatus.SKIPPED, progress=100),
            WorkflowStep(id="b", title="B", status=StepStatus.PAUSED, is_automatic=False),
            WorkflowStep(id="c", title="C"),
        ),
    )

    summary = summarize(execution)

    assert summary.awaiting_confirmation
    assert summary.current_step == 2
    assert summary.total_steps == 3
    assert summary.error is None
