"""In-memory implementation of the checkpoint store."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Dict, List, Tuple

from .models import Checkpoint, Session, SessionStatus, StateTransition, utcnow
from .repository import CheckpointStore

CheckpointKey = Tuple[str, str, str]


class InMemoryCheckpointStore(CheckpointStore):
    """Store checkpoints in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self, max_checkpoints: int | None = None) -> None:
        self.max_checkpoints = max_checkpoints
        self._sessions: Dict[str, Session] = {}
        self._checkpoints: Dict[CheckpointKey, Checkpoint] = {}
        self._transitions: List[StateTransition] = []

    # ------------------------------------------------------------------
    async def create_session(
        self, workflow_id: str, thread_id: str, metadata: dict | None = None
    ) -> str:
        session_id = f"session-{uuid.uuid4().hex}"
        self._sessions[session_id] = Session(
            session_id=session_id,
            workflow_id=workflow_id,
            thread_id=thread_id,
            metadata=metadata or {},
        )
        return session_id

    async def get_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def list_sessions(
        self,
        workflow_id: str,
        status: SessionStatus | None = None,
        thread_id: str | None = None,
    ) -> list[Session]:
        sessions = [
            s.model_copy(deep=True)
            for s in self._sessions.values()
            if s.workflow_id == workflow_id
            and (status is None or s.status == status)
            and (thread_id is None or s.thread_id == thread_id)
        ]
        return sorted(sessions, key=lambda s: s.start_time, reverse=True)

    async def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        session = self._sessions.get(session_id)
        if session:
            session.status = status
            session.updated_at = utcnow()

    # ------------------------------------------------------------------
    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        key = (checkpoint.workflow_id, checkpoint.thread_id, checkpoint.checkpoint_id)
        existing = self._checkpoints.get(key)
        if existing is not None and existing.timestamp > checkpoint.timestamp:
            return
        self._checkpoints[key] = checkpoint.model_copy(deep=True)
        for session in self._sessions.values():
            if (
                session.workflow_id == checkpoint.workflow_id
                and session.thread_id == checkpoint.thread_id
            ):
                session.last_checkpoint_id = checkpoint.checkpoint_id
                session.updated_at = utcnow()
        self._prune(checkpoint.workflow_id, checkpoint.thread_id)

    def _prune(self, workflow_id: str, thread_id: str) -> None:
        if not self.max_checkpoints:
            return
        owned = self._matching(workflow_id, thread_id)
        for stale in owned[self.max_checkpoints:]:
            del self._checkpoints[(stale.workflow_id, stale.thread_id, stale.checkpoint_id)]

    def _matching(
        self, workflow_id: str | None, thread_id: str | None, checkpoint_id: str | None = None
    ) -> list[Checkpoint]:
        found = [
            cp
            for (wf, th, cp_id), cp in self._checkpoints.items()
            if (workflow_id is None or wf == workflow_id)
            and (thread_id is None or th == thread_id)
            and (checkpoint_id is None or cp_id == checkpoint_id)
        ]
        return sorted(found, key=lambda cp: cp.timestamp)[::-1]

    async def load_checkpoint(
        self,
        checkpoint_id: str,
        workflow_id: str | None = None,
        thread_id: str | None = None,
    ) -> Checkpoint | None:
        found = self._matching(workflow_id, thread_id, checkpoint_id)
        return found[0].model_copy(deep=True) if found else None

    async def latest_checkpoint(
        self,
        workflow_id: str,
        thread_id: str | None = None,
        before: datetime | None = None,
    ) -> Checkpoint | None:
        for cp in self._matching(workflow_id, thread_id):
            if before is None or cp.timestamp < before:
                return cp.model_copy(deep=True)
        return None

    async def list_checkpoints(
        self, workflow_id: str, thread_id: str | None = None
    ) -> list[Checkpoint]:
        return [cp.model_copy(deep=True) for cp in self._matching(workflow_id, thread_id)]

    # ------------------------------------------------------------------
    async def record_transition(self, transition: StateTransition) -> None:
        record = transition.model_copy(update={"id": len(self._transitions) + 1})
        self._transitions.append(record)

    async def get_transition_history(
        self, workflow_id: str, thread_id: str | None = None
    ) -> list[StateTransition]:
        return [
            t
            for t in self._transitions
            if t.workflow_id == workflow_id and (thread_id is None or t.thread_id == thread_id)
        ]

    async def close(self) -> None:
        return None
