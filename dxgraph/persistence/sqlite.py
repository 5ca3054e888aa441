"""SQLite implementation of the checkpoint store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import (
    Checkpoint,
    CheckpointMetadata,
    Session,
    SessionStatus,
    StateTransition,
    utcnow,
)
from .repository import CheckpointStore

_CHECKPOINT_COLUMNS = (
    "checkpoint_id, workflow_id, thread_id, state, execution_context, timestamp, metadata"
)
_SESSION_COLUMNS = (
    "session_id, workflow_id, thread_id, start_time, last_checkpoint_id, status, "
    "metadata, created_at, updated_at"
)


def _epoch(value: datetime) -> float:
    return value.timestamp()


def _from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SQLiteCheckpointStore(CheckpointStore):
    """Persist checkpoints using SQLite."""

    def __init__(self, db_path: str | Path, max_checkpoints: int | None = None):
        self.db_path = str(db_path)
        self.max_checkpoints = max_checkpoints
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS checkpoints (
                checkpoint_id TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                state TEXT NOT NULL,
                execution_context TEXT,
                timestamp REAL NOT NULL,
                metadata TEXT,
                PRIMARY KEY (workflow_id, thread_id, checkpoint_id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                start_time REAL NOT NULL,
                last_checkpoint_id TEXT,
                status TEXT NOT NULL,
                metadata TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS state_transitions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                checkpoint_id TEXT,
                from_node TEXT NOT NULL,
                to_node TEXT NOT NULL,
                transition_type TEXT NOT NULL,
                timestamp REAL NOT NULL,
                duration_ms REAL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_checkpoints_thread "
            "ON checkpoints (workflow_id, thread_id, timestamp)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_sessions_workflow ON sessions (workflow_id, status)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _row_to_checkpoint(row: sqlite3.Row) -> Checkpoint:
        return Checkpoint(
            checkpoint_id=row["checkpoint_id"],
            workflow_id=row["workflow_id"],
            thread_id=row["thread_id"],
            state=json.loads(row["state"]),
            execution_context=(
                json.loads(row["execution_context"]) if row["execution_context"] else None
            ),
            timestamp=_from_epoch(row["timestamp"]),
            metadata=CheckpointMetadata(**json.loads(row["metadata"] or "{}")),
        )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            session_id=row["session_id"],
            workflow_id=row["workflow_id"],
            thread_id=row["thread_id"],
            start_time=_from_epoch(row["start_time"]),
            last_checkpoint_id=row["last_checkpoint_id"],
            status=row["status"],
            metadata=json.loads(row["metadata"] or "{}"),
            created_at=_from_epoch(row["created_at"]),
            updated_at=_from_epoch(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Sessions
    async def create_session(
        self, workflow_id: str, thread_id: str, metadata: dict | None = None
    ) -> str:
        session_id = f"session-{uuid.uuid4().hex}"
        now = _epoch(utcnow())
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            session_id,
            workflow_id,
            thread_id,
            now,
            None,
            "active",
            json.dumps(metadata or {}),
            now,
            now,
        )
        return session_id

    async def get_session(self, session_id: str) -> Session | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE session_id = ?",
            session_id,
        )
        return self._row_to_session(row) if row else None

    async def list_sessions(
        self,
        workflow_id: str,
        status: SessionStatus | None = None,
        thread_id: str | None = None,
    ) -> list[Session]:
        query = f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE workflow_id = ?"
        params: list[Any] = [workflow_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        if thread_id:
            query += " AND thread_id = ?"
            params.append(thread_id)
        query += " ORDER BY start_time DESC"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_session(r) for r in rows]

    async def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE sessions SET status = ?, updated_at = ? WHERE session_id = ?",
            status,
            _epoch(utcnow()),
            session_id,
        )

    # ------------------------------------------------------------------
    # Checkpoints
    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        await asyncio.to_thread(
            self._execute,
            f"""
            INSERT INTO checkpoints ({_CHECKPOINT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (workflow_id, thread_id, checkpoint_id) DO UPDATE SET
                state = excluded.state,
                execution_context = excluded.execution_context,
                timestamp = excluded.timestamp,
                metadata = excluded.metadata
            WHERE excluded.timestamp >= checkpoints.timestamp
            """,
            checkpoint.checkpoint_id,
            checkpoint.workflow_id,
            checkpoint.thread_id,
            json.dumps(checkpoint.state),
            json.dumps(checkpoint.execution_context) if checkpoint.execution_context else None,
            _epoch(checkpoint.timestamp),
            checkpoint.metadata.model_dump_json(),
        )
        await asyncio.to_thread(
            self._execute,
            "UPDATE sessions SET last_checkpoint_id = ?, updated_at = ? "
            "WHERE workflow_id = ? AND thread_id = ?",
            checkpoint.checkpoint_id,
            _epoch(utcnow()),
            checkpoint.workflow_id,
            checkpoint.thread_id,
        )
        if self.max_checkpoints:
            await asyncio.to_thread(
                self._execute,
                """
                DELETE FROM checkpoints
                WHERE workflow_id = ? AND thread_id = ? AND checkpoint_id NOT IN (
                    SELECT checkpoint_id FROM checkpoints
                    WHERE workflow_id = ? AND thread_id = ?
                    ORDER BY timestamp DESC LIMIT ?
                )
                """,
                checkpoint.workflow_id,
                checkpoint.thread_id,
                checkpoint.workflow_id,
                checkpoint.thread_id,
                self.max_checkpoints,
            )

    async def load_checkpoint(
        self,
        checkpoint_id: str,
        workflow_id: str | None = None,
        thread_id: str | None = None,
    ) -> Checkpoint | None:
        query = f"SELECT {_CHECKPOINT_COLUMNS} FROM checkpoints WHERE checkpoint_id = ?"
        params: list[Any] = [checkpoint_id]
        if workflow_id:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if thread_id:
            query += " AND thread_id = ?"
            params.append(thread_id)
        query += " ORDER BY timestamp DESC LIMIT 1"
        row = await asyncio.to_thread(self._fetchone, query, *params)
        return self._row_to_checkpoint(row) if row else None

    async def latest_checkpoint(
        self,
        workflow_id: str,
        thread_id: str | None = None,
        before: datetime | None = None,
    ) -> Checkpoint | None:
        query = f"SELECT {_CHECKPOINT_COLUMNS} FROM checkpoints WHERE workflow_id = ?"
        params: list[Any] = [workflow_id]
        if thread_id:
            query += " AND thread_id = ?"
            params.append(thread_id)
        if before:
            query += " AND timestamp < ?"
            params.append(_epoch(before))
        query += " ORDER BY timestamp DESC, rowid DESC LIMIT 1"
        row = await asyncio.to_thread(self._fetchone, query, *params)
        return self._row_to_checkpoint(row) if row else None

    async def list_checkpoints(
        self, workflow_id: str, thread_id: str | None = None
    ) -> list[Checkpoint]:
        query = f"SELECT {_CHECKPOINT_COLUMNS} FROM checkpoints WHERE workflow_id = ?"
        params: list[Any] = [workflow_id]
        if thread_id:
            query += " AND thread_id = ?"
            params.append(thread_id)
        query += " ORDER BY timestamp DESC, rowid DESC"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_checkpoint(r) for r in rows]

    # ------------------------------------------------------------------
    # Transitions
    async def record_transition(self, transition: StateTransition) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO state_transitions (
                workflow_id, thread_id, checkpoint_id, from_node, to_node,
                transition_type, timestamp, duration_ms
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            transition.workflow_id,
            transition.thread_id,
            transition.checkpoint_id,
            transition.from_node,
            transition.to_node,
            transition.transition_type,
            _epoch(transition.timestamp),
            transition.duration_ms,
        )

    async def get_transition_history(
        self, workflow_id: str, thread_id: str | None = None
    ) -> list[StateTransition]:
        query = (
            "SELECT id, workflow_id, thread_id, checkpoint_id, from_node, to_node, "
            "transition_type, timestamp, duration_ms FROM state_transitions WHERE workflow_id = ?"
        )
        params: list[Any] = [workflow_id]
        if thread_id:
            query += " AND thread_id = ?"
            params.append(thread_id)
        query += " ORDER BY id"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [
            StateTransition(
                id=r["id"],
                workflow_id=r["workflow_id"],
                thread_id=r["thread_id"],
                checkpoint_id=r["checkpoint_id"],
                from_node=r["from_node"],
                to_node=r["to_node"],
                transition_type=r["transition_type"],
                timestamp=_from_epoch(r["timestamp"]),
                duration_ms=r["duration_ms"],
            )
            for r in rows
        ]

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)
