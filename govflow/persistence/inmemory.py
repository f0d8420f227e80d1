"""In-memory implementation of the message-log repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List

from ..contracts import utc_now
from .models import LoggedMessage, TaskLogSummary
from .repository import MessageLogRepository


class InMemoryMessageLogRepository(MessageLogRepository):
    """Store message logs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._logs: Dict[str, List[LoggedMessage]] = {}
        self._message_id = 0

    # ------------------------------------------------------------------
    async def append_message(
        self, task_id: str, payload: dict, received_at: datetime | None = None
    ) -> LoggedMessage:
        log = self._logs.setdefault(task_id, [])
        self._message_id += 1
        message = LoggedMessage(
            id=self._message_id,
            task_id=task_id,
            sequence=len(log) + 1,
            received_at=received_at or utc_now(),
            payload=dict(payload),
        )
        log.append(message)
        return message

    async def get_messages(self, task_id: str) -> list[LoggedMessage]:
        return list(self._logs.get(task_id, []))

    async def list_tasks(self) -> list[TaskLogSummary]:
        summaries = [
            TaskLogSummary(
                task_id=task_id,
                message_count=len(log),
                first_received_at=log[0].received_at,
                last_received_at=log[-1].received_at,
                last_execution_status=log[-1].execution_status,
            )
            for task_id, log in self._logs.items()
            if log
        ]
        summaries.sort(key=lambda s: s.last_received_at, reverse=True)
        return summaries

    async def delete_task(self, task_id: str) -> bool:
        return self._logs.pop(task_id, None) is not None
