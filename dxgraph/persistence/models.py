"""Data models for persisted checkpoints, sessions and transitions."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

SessionStatus = Literal["active", "completed", "failed", "interrupted", "awaiting_input"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckpointMetadata(BaseModel):
    """Summary of the run at the time the checkpoint was written."""

    execution_time: float = 0.0
    finding_count: int = 0
    error_count: int = 0
    severity: Optional[str] = None
    status: str = "running"
    current_node: Optional[str] = None


class Checkpoint(BaseModel):
    """Resumable snapshot of one run."""

    checkpoint_id: str
    workflow_id: str
    thread_id: str
    state: dict[str, Any] = Field(default_factory=dict)
    execution_context: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: CheckpointMetadata = Field(default_factory=CheckpointMetadata)


class Session(BaseModel):
    """Persisted record of a run across its checkpoints."""

    session_id: str
    workflow_id: str
    thread_id: str
    start_time: datetime = Field(default_factory=utcnow)
    last_checkpoint_id: Optional[str] = None
    status: SessionStatus = "active"
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class StateTransition(BaseModel):
    """Audit record of one move between nodes."""

    id: Optional[int] = None
    workflow_id: str
    thread_id: str
    checkpoint_id: Optional[str] = None
    from_node: str
    to_node: str
    transition_type: str = "edge"
    timestamp: datetime = Field(default_factory=utcnow)
    duration_ms: Optional[float] = None
