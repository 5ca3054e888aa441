"""Checkpoint persistence for dxgraph runs."""

from __future__ import annotations

import os
from typing import Optional

from ..config import DxGraphConfig, load_config
from .inmemory import InMemoryCheckpointStore
from .models import Checkpoint, CheckpointMetadata, Session, SessionStatus, StateTransition
from .repository import CheckpointStore
from .sqlite import SQLiteCheckpointStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresCheckpointStore
except Exception:  # pragma: no cover - optional dependency
    PostgresCheckpointStore = None  # type: ignore


def get_checkpoint_store(
    database_url: Optional[str] = None, config: Optional[DxGraphConfig] = None
) -> CheckpointStore:
    """Build a checkpoint store.

    The backend is selected from ``database_url``, which can be provided
    explicitly, via environment variable ``DXGRAPH_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. Without a database an
    in-memory store is returned. Every call builds a new store; callers own
    its lifecycle.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("DXGRAPH_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.store.database_url
    )
    max_checkpoints = config.store.max_checkpoints

    if not database_url or database_url.startswith("memory://"):
        return InMemoryCheckpointStore(max_checkpoints=max_checkpoints)

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteCheckpointStore(path, max_checkpoints=max_checkpoints)
    if database_url.startswith("postgres://") or database_url.startswith("postgresql://"):
        if PostgresCheckpointStore is None:
            raise RuntimeError("Postgres support not available")
        return PostgresCheckpointStore(database_url, max_checkpoints=max_checkpoints)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "Checkpoint",
    "CheckpointMetadata",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "PostgresCheckpointStore",
    "SQLiteCheckpointStore",
    "Session",
    "SessionStatus",
    "StateTransition",
    "get_checkpoint_store",
]
