"""SQLite implementation of the message-log repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from ..contracts import utc_now
from .models import LoggedMessage, TaskLogSummary
from .repository import MessageLogRepository


class SQLiteMessageLogRepository(MessageLogRepository):
    """Persist execution message logs using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                received_at TEXT NOT NULL,
                execution_status TEXT,
                payload TEXT NOT NULL,
                UNIQUE (task_id, sequence)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _insert_message(
        self, task_id: str, received_at: datetime, payload: dict
    ) -> LoggedMessage:
        cur = self._conn.cursor()
        cur.execute(
            "SELECT COALESCE(MAX(sequence), 0) + 1 FROM execution_messages WHERE task_id = ?",
            (task_id,),
        )
        sequence = cur.fetchone()[0]
        status = payload.get("executionStatus")
        cur.execute(
            """
            INSERT INTO execution_messages
                (task_id, sequence, received_at, execution_status, payload)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                task_id,
                sequence,
                received_at.isoformat(),
                None if status is None else str(status),
                json.dumps(payload),
            ),
        )
        self._conn.commit()
        return LoggedMessage(
            id=cur.lastrowid,
            task_id=task_id,
            sequence=sequence,
            received_at=received_at,
            payload=payload,
        )

    # ------------------------------------------------------------------
    # Repository API
    async def append_message(
        self, task_id: str, payload: dict, received_at: datetime | None = None
    ) -> LoggedMessage:
        return await asyncio.to_thread(
            self._insert_message, task_id, received_at or utc_now(), dict(payload)
        )

    async def get_messages(self, task_id: str) -> list[LoggedMessage]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT id, task_id, sequence, received_at, payload FROM execution_messages WHERE task_id = ? ORDER BY sequence",
            task_id,
        )
        return [
            LoggedMessage(
                id=r["id"],
                task_id=r["task_id"],
                sequence=r["sequence"],
                received_at=datetime.fromisoformat(r["received_at"]),
                payload=json.loads(r["payload"]),
            )
            for r in rows
        ]

    async def list_tasks(self) -> list[TaskLogSummary]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT
                m.task_id AS task_id,
                COUNT(*) AS message_count,
                MIN(m.received_at) AS first_received_at,
                MAX(m.received_at) AS last_received_at,
                (
                    SELECT l.execution_status FROM execution_messages l
                    WHERE l.task_id = m.task_id
                    ORDER BY l.sequence DESC LIMIT 1
                ) AS last_execution_status
            FROM execution_messages m
            GROUP BY m.task_id
            ORDER BY last_received_at DESC
            """,
        )
        return [
            TaskLogSummary(
                task_id=r["task_id"],
                message_count=r["message_count"],
                first_received_at=datetime.fromisoformat(r["first_received_at"]),
                last_received_at=datetime.fromisoformat(r["last_received_at"]),
                last_execution_status=r["last_execution_status"],
            )
            for r in rows
        ]

    async def delete_task(self, task_id: str) -> bool:
        deleted = await asyncio.to_thread(
            self._execute,
            "DELETE FROM execution_messages WHERE task_id = ?",
            task_id,
        )
        return deleted > 0

    def close(self) -> None:
        self._conn.close()
