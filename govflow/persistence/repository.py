"""Repository abstraction for execution message logs."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from .models import LoggedMessage, TaskLogSummary


class MessageLogRepository(Protocol):
    """Protocol for message-log persistence backends.

    Logs are append-only; a task's log can only be dropped as a whole.
    """

    async def append_message(
        self, task_id: str, payload: dict, received_at: datetime | None = None
    ) -> LoggedMessage:
        """Persist one raw message at the end of the task's log."""

    async def get_messages(self, task_id: str) -> list[LoggedMessage]:
        """Return the task's log in arrival order."""

    async def list_tasks(self) -> list[TaskLogSummary]:
        """Return a summary of every logged task, most recent activity first."""

    async def delete_task(self, task_id: str) -> bool:
        """Drop the task's whole log; ``False`` when nothing was stored."""
