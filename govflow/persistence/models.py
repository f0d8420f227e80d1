"""Data models for persisted execution message logs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class LoggedMessage(BaseModel):
    """One raw execution message as it arrived on the stream."""

    id: Optional[int] = None
    task_id: str
    sequence: int
    received_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def execution_status(self) -> Optional[str]:
        value = self.payload.get("executionStatus")
        return None if value is None else str(value)


class TaskLogSummary(BaseModel):
    """Overview of the message log stored for one task."""

    task_id: str
    message_count: int = 0
    first_received_at: Optional[datetime] = None
    last_received_at: Optional[datetime] = None
    last_execution_status: Optional[str] = None
