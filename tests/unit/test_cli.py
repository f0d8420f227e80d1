import asyncio

from typer.testing import CliRunner

import govflow.persistence as persistence
from govflow.cli import app
from govflow.persistence import InMemoryMessageLogRepository


def _setup_repo(monkeypatch) -> InMemoryMessageLogRepository:
    monkeypatch.delenv("GOVFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("GOVFLOW_CONFIG", raising=False)
    repo = InMemoryMessageLogRepository()
    monkeypatch.setattr(persistence, "_repository_instance", repo)
    return repo


def _record(repo, task_id, *statuses, **fields):
    for status in statuses:
        payload = {"taskId": task_id, "executionStatus": status, **fields}
        asyncio.run(repo.append_message(task_id, payload))


def test_history_list_shows_recorded_tasks(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    repo = _setup_repo(monkeypatch)
    _record(repo, "task-1", "start", "end")
    _record(repo, "task-2", "start")

    result = CliRunner().invoke(app, ["history", "list"])

    assert result.exit_code == 0, result.output
    assert "task-1\tend\t2" in result.output
    assert "task-2\tstart\t1" in result.output


def test_history_list_empty(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    _setup_repo(monkeypatch)

    result = CliRunner().invoke(app, ["history", "list"])

    assert result.exit_code == 0
    assert "No executions found" in result.output


def test_history_show_replays_execution(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "govflow.yaml").write_text("pipeline: governance\n")
    repo = _setup_repo(monkeypatch)
    _record(repo, "task-1", "start")
    _record(repo, "task-1", "running", stepId="data-cleaning", progress=60)
    _record(repo, "task-1", "end")

    result = CliRunner().invoke(app, ["history", "show", "task-1"])

    assert result.exit_code == 0, result.output
    assert "Workflow task-1: completed (100%)" in result.output
    assert "- Data cleansing: completed 100%" in result.output


def test_history_show_flags_manual_confirmation(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    repo = _setup_repo(monkeypatch)
    _record(repo, "task-1", "start")
    _record(
        repo,
        "task-1",
        "running",
        node={"nodeType": "dataAccess", "nodeName": "Data access", "isAuto": False},
        status=3,
    )

    result = CliRunner().invoke(app, ["history", "show", "task-1"])

    assert result.exit_code == 0, result.output
    assert "Workflow task-1: running (0%) - awaiting confirmation" in result.output
    assert "- Data access: paused 0%" in result.output


def test_history_show_missing_task(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    _setup_repo(monkeypatch)

    result = CliRunner().invoke(app, ["history", "show", "nope"])

    assert result.exit_code == 1
    assert "Execution not found" in result.output


def test_history_delete(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    repo = _setup_repo(monkeypatch)
    _record(repo, "task-1", "start")

    runner = CliRunner()
    assert runner.invoke(app, ["history", "delete", "task-1"]).exit_code == 0
    assert asyncio.run(repo.get_messages("task-1")) == []
    assert runner.invoke(app, ["history", "delete", "task-1"]).exit_code == 1


def test_workflow_start_rejects_bad_payload(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    _setup_repo(monkeypatch)

    result = CliRunner().invoke(app, ["workflow", "start", "--payload", "{oops"])

    assert result.exit_code == 1
    assert "Invalid JSON payload" in result.output


def test_workflow_start_fails_when_connection_gives_up(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    _setup_repo(monkeypatch)
    monkeypatch.delenv("GOVFLOW_TRANSPORT", raising=False)
    config_path = tmp_path / "govflow.yaml"
    config_path.write_text(
        """
transport:
  backend: inmemory
sse:
  reconnect_interval: 0
  max_reconnect_attempts: 0
"""
    )

    result = CliRunner().invoke(app, ["--config", str(config_path), "workflow", "start"])

    assert result.exit_code == 1
    assert "Connection lost after 0 reconnect attempts" in result.output
