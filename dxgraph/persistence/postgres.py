"""PostgreSQL implementation of the checkpoint store."""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any

import asyncpg

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


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresCheckpointStore(CheckpointStore):
    """Persist checkpoints using PostgreSQL."""

    def __init__(self, dsn: str, max_checkpoints: int | None = None):
        self._dsn = dsn
        self.max_checkpoints = max_checkpoints
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS checkpoints (
                checkpoint_id TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                state JSONB NOT NULL,
                execution_context JSONB,
                timestamp TIMESTAMPTZ NOT NULL,
                metadata JSONB,
                PRIMARY KEY (workflow_id, thread_id, checkpoint_id)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                start_time TIMESTAMPTZ NOT NULL,
                last_checkpoint_id TEXT,
                status TEXT NOT NULL,
                metadata JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS state_transitions (
                id SERIAL PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                checkpoint_id TEXT,
                from_node TEXT NOT NULL,
                to_node TEXT NOT NULL,
                transition_type TEXT NOT NULL,
                timestamp TIMESTAMPTZ NOT NULL,
                duration_ms DOUBLE PRECISION
            )
            """
        )

    @staticmethod
    def _row_to_checkpoint(row: asyncpg.Record) -> Checkpoint:
        return Checkpoint(
            checkpoint_id=row["checkpoint_id"],
            workflow_id=row["workflow_id"],
            thread_id=row["thread_id"],
            state=_json(row["state"]),
            execution_context=_json(row["execution_context"]),
            timestamp=row["timestamp"],
            metadata=CheckpointMetadata(**(_json(row["metadata"]) or {})),
        )

    @staticmethod
    def _row_to_session(row: asyncpg.Record) -> Session:
        return Session(
            session_id=row["session_id"],
            workflow_id=row["workflow_id"],
            thread_id=row["thread_id"],
            start_time=row["start_time"],
            last_checkpoint_id=row["last_checkpoint_id"],
            status=row["status"],
            metadata=_json(row["metadata"]) or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    async def create_session(
        self, workflow_id: str, thread_id: str, metadata: dict | None = None
    ) -> str:
        session_id = f"session-{uuid.uuid4().hex}"
        now = utcnow()
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO sessions ({_SESSION_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
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
        finally:
            await conn.close()
        return session_id

    async def get_session(self, session_id: str) -> Session | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE session_id = $1", session_id
            )
        finally:
            await conn.close()
        return self._row_to_session(row) if row else None

    async def list_sessions(
        self,
        workflow_id: str,
        status: SessionStatus | None = None,
        thread_id: str | None = None,
    ) -> list[Session]:
        query = f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE workflow_id = $1"
        params: list[Any] = [workflow_id]
        if status:
            params.append(status)
            query += f" AND status = ${len(params)}"
        if thread_id:
            params.append(thread_id)
            query += f" AND thread_id = ${len(params)}"
        query += " ORDER BY start_time DESC"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [self._row_to_session(r) for r in rows]

    async def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE sessions SET status = $1, updated_at = $2 WHERE session_id = $3",
                status,
                utcnow(),
                session_id,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    INSERT INTO checkpoints ({_CHECKPOINT_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    ON CONFLICT (workflow_id, thread_id, checkpoint_id) DO UPDATE SET
                        state = EXCLUDED.state,
                        execution_context = EXCLUDED.execution_context,
                        timestamp = EXCLUDED.timestamp,
                        metadata = EXCLUDED.metadata
                    WHERE EXCLUDED.timestamp >= checkpoints.timestamp
                    """,
                    checkpoint.checkpoint_id,
                    checkpoint.workflow_id,
                    checkpoint.thread_id,
                    json.dumps(checkpoint.state),
                    (
                        json.dumps(checkpoint.execution_context)
                        if checkpoint.execution_context
                        else None
                    ),
                    checkpoint.timestamp,
                    checkpoint.metadata.model_dump_json(),
                )
                await conn.execute(
                    "UPDATE sessions SET last_checkpoint_id = $1, updated_at = $2 "
                    "WHERE workflow_id = $3 AND thread_id = $4",
                    checkpoint.checkpoint_id,
                    utcnow(),
                    checkpoint.workflow_id,
                    checkpoint.thread_id,
                )
                if self.max_checkpoints:
                    await conn.execute(
                        """
                        DELETE FROM checkpoints
                        WHERE workflow_id = $1 AND thread_id = $2 AND checkpoint_id NOT IN (
                            SELECT checkpoint_id FROM checkpoints
                            WHERE workflow_id = $1 AND thread_id = $2
                            ORDER BY timestamp DESC LIMIT $3
                        )
                        """,
                        checkpoint.workflow_id,
                        checkpoint.thread_id,
                        self.max_checkpoints,
                    )
        finally:
            await conn.close()

    async def _fetch_checkpoints(
        self, query: str, params: list[Any], limit: int | None = None
    ) -> list[Checkpoint]:
        if limit is not None:
            query += f" LIMIT {int(limit)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [self._row_to_checkpoint(r) for r in rows]

    async def load_checkpoint(
        self,
        checkpoint_id: str,
        workflow_id: str | None = None,
        thread_id: str | None = None,
    ) -> Checkpoint | None:
        query = f"SELECT {_CHECKPOINT_COLUMNS} FROM checkpoints WHERE checkpoint_id = $1"
        params: list[Any] = [checkpoint_id]
        if workflow_id:
            params.append(workflow_id)
            query += f" AND workflow_id = ${len(params)}"
        if thread_id:
            params.append(thread_id)
            query += f" AND thread_id = ${len(params)}"
        query += " ORDER BY timestamp DESC"
        found = await self._fetch_checkpoints(query, params, limit=1)
        return found[0] if found else None

    async def latest_checkpoint(
        self,
        workflow_id: str,
        thread_id: str | None = None,
        before: datetime | None = None,
    ) -> Checkpoint | None:
        query = f"SELECT {_CHECKPOINT_COLUMNS} FROM checkpoints WHERE workflow_id = $1"
        params: list[Any] = [workflow_id]
        if thread_id:
            params.append(thread_id)
            query += f" AND thread_id = ${len(params)}"
        if before:
            params.append(before)
            query += f" AND timestamp < ${len(params)}"
        query += " ORDER BY timestamp DESC"
        found = await self._fetch_checkpoints(query, params, limit=1)
        return found[0] if found else None

    async def list_checkpoints(
        self, workflow_id: str, thread_id: str | None = None
    ) -> list[Checkpoint]:
        query = f"SELECT {_CHECKPOINT_COLUMNS} FROM checkpoints WHERE workflow_id = $1"
        params: list[Any] = [workflow_id]
        if thread_id:
            params.append(thread_id)
            query += f" AND thread_id = ${len(params)}"
        query += " ORDER BY timestamp DESC"
        return await self._fetch_checkpoints(query, params)

    # ------------------------------------------------------------------
    async def record_transition(self, transition: StateTransition) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO state_transitions (
                    workflow_id, thread_id, checkpoint_id, from_node, to_node,
                    transition_type, timestamp, duration_ms
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                transition.workflow_id,
                transition.thread_id,
                transition.checkpoint_id,
                transition.from_node,
                transition.to_node,
                transition.transition_type,
                transition.timestamp,
                transition.duration_ms,
            )
        finally:
            await conn.close()

    async def get_transition_history(
        self, workflow_id: str, thread_id: str | None = None
    ) -> list[StateTransition]:
        query = (
            "SELECT id, workflow_id, thread_id, checkpoint_id, from_node, to_node, "
            "transition_type, timestamp, duration_ms FROM state_transitions WHERE workflow_id = $1"
        )
        params: list[Any] = [workflow_id]
        if thread_id:
            params.append(thread_id)
            query += f" AND thread_id = ${len(params)}"
        query += " ORDER BY id"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [
            StateTransition(
                id=r["id"],
                workflow_id=r["workflow_id"],
                thread_id=r["thread_id"],
                checkpoint_id=r["checkpoint_id"],
                from_node=r["from_node"],
                to_node=r["to_node"],
                transition_type=r["transition_type"],
                timestamp=r["timestamp"],
                duration_ms=r["duration_ms"],
            )
            for r in rows
        ]

    async def close(self) -> None:
        return None
