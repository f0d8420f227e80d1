"""Tests for message-log repositories."""

import uuid

import pytest

import govflow.persistence as persistence
from govflow.config import GovflowConfig
from govflow.persistence import (
    InMemoryMessageLogRepository,
    SQLiteMessageLogRepository,
    get_repository,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteMessageLogRepository(tmp_path / "log.db")
    return InMemoryMessageLogRepository()


@pytest.mark.asyncio
async def test_messages_are_appended_in_order(repo):
    task_id = str(uuid.uuid4())
    first = await repo.append_message(task_id, {"taskId": task_id, "executionStatus": "start"})
    second = await repo.append_message(
        task_id, {"taskId": task_id, "executionStatus": "running", "progress": 5}
    )

    assert (first.sequence, second.sequence) == (1, 2)
    messages = await repo.get_messages(task_id)
    assert [m.payload["executionStatus"] for m in messages] == ["start", "running"]
    assert messages[1].payload["progress"] == 5
    assert await repo.get_messages("missing") == []


@pytest.mark.asyncio
async def test_list_tasks_summarises_logs(repo):
    await repo.append_message("a", {"taskId": "a", "executionStatus": "start"})
    await repo.append_message("b", {"taskId": "b", "executionStatus": "start"})
    await repo.append_message("a", {"taskId": "a", "executionStatus": "end"})

    tasks = {t.task_id: t for t in await repo.list_tasks()}
    assert tasks["a"].message_count == 2
    assert tasks["a"].last_execution_status == "end"
    assert tasks["b"].message_count == 1
    assert tasks["b"].last_execution_status == "start"


@pytest.mark.asyncio
async def test_delete_task_drops_whole_log(repo):
    await repo.append_message("a", {"taskId": "a", "executionStatus": "start"})

    assert await repo.delete_task("a")
    assert await repo.get_messages("a") == []
    assert not await repo.delete_task("a")


@pytest.mark.asyncio
async def test_sqlite_log_survives_reopen(tmp_path):
    db_path = tmp_path / "log.db"
    repo = SQLiteMessageLogRepository(db_path)
    await repo.append_message("a", {"taskId": "a", "executionStatus": "start"})
    repo.close()

    reopened = SQLiteMessageLogRepository(db_path)
    messages = await reopened.get_messages("a")
    assert len(messages) == 1
    assert messages[0].received_at.tzinfo is not None


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("GOVFLOW_DATABASE_URL", raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)

    assert isinstance(get_repository(config=GovflowConfig()), InMemoryMessageLogRepository)
    sqlite_repo = get_repository(f"sqlite://{tmp_path / 'log.db'}")
    assert isinstance(sqlite_repo, SQLiteMessageLogRepository)
    assert get_repository() is sqlite_repo
    with pytest.raises(ValueError):
        get_repository("mysql://nope", config=GovflowConfig())
