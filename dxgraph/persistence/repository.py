"""Checkpoint store abstraction."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from .models import Checkpoint, Session, SessionStatus, StateTransition


class CheckpointStore(Protocol):
    """Protocol for checkpoint persistence backends.

    Saves are idempotent per ``(workflow_id, thread_id, checkpoint_id)``: a
    repeated write replaces the stored record unless it is older.
    """

    async def create_session(
        self, workflow_id: str, thread_id: str, metadata: dict | None = None
    ) -> str:
        """Persist a new active session and return its id."""

    async def get_session(self, session_id: str) -> Session | None:
        """Retrieve a session by id."""

    async def list_sessions(
        self,
        workflow_id: str,
        status: SessionStatus | None = None,
        thread_id: str | None = None,
    ) -> list[Session]:
        """Sessions of a workflow, newest first."""

    async def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        """Record the session's new status."""

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Persist a checkpoint and link it to the thread's session."""

    async def load_checkpoint(
        self,
        checkpoint_id: str,
        workflow_id: str | None = None,
        thread_id: str | None = None,
    ) -> Checkpoint | None:
        """Retrieve a checkpoint by id."""

    async def latest_checkpoint(
        self,
        workflow_id: str,
        thread_id: str | None = None,
        before: datetime | None = None,
    ) -> Checkpoint | None:
        """Most recent checkpoint of a workflow or thread."""

    async def list_checkpoints(
        self, workflow_id: str, thread_id: str | None = None
    ) -> list[Checkpoint]:
        """Checkpoints of a workflow, newest first."""

    async def record_transition(self, transition: StateTransition) -> None:
        """Append a node transition to the audit log."""

    async def get_transition_history(
        self, workflow_id: str, thread_id: str | None = None
    ) -> list[StateTransition]:
        """Transitions in the order they were recorded."""

    async def close(self) -> None:
        """Release backend resources."""
