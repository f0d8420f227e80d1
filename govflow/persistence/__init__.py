"""Persistence layer for execution message logs."""

from __future__ import annotations

import os
from typing import Optional

from ..config import GovflowConfig, load_config
from .inmemory import InMemoryMessageLogRepository
from .models import LoggedMessage, TaskLogSummary
from .repository import MessageLogRepository
from .sqlite import SQLiteMessageLogRepository

_repository_instance: MessageLogRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[GovflowConfig] = None
) -> MessageLogRepository:
    """Factory function to obtain a message-log repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``GOVFLOW_DATABASE_URL``, or from
    loaded configuration. When no database is configured, an in-memory
    repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("GOVFLOW_DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryMessageLogRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        if not path:
            raise ValueError(f"Missing SQLite path in database URL: {database_url}")
        _repository_instance = SQLiteMessageLogRepository(path)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "LoggedMessage",
    "TaskLogSummary",
    "MessageLogRepository",
    "SQLiteMessageLogRepository",
    "InMemoryMessageLogRepository",
    "get_repository",
]
