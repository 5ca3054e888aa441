"""Best-effort streaming of workflow execution events."""

from __future__ import annotations

import inspect
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .state import WorkflowState

logger = logging.getLogger(__name__)


class WorkflowEventType(str, Enum):
    NODE_EXECUTION = "node_execution"
    EDGE_TRAVERSAL = "edge_traversal"
    CHECKPOINT = "checkpoint"
    ERROR = "error"


class WorkflowEvent(BaseModel):
    """Payload delivered to event subscribers."""

    type: WorkflowEventType
    workflow_id: str
    thread_id: str
    node_id: Optional[str] = None
    state: Optional[WorkflowState] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = Field(default_factory=dict)


EventCallback = Callable[[WorkflowEvent], Union[None, Awaitable[None]]]


class EventEmitter:
    """Delivers events of one run to its subscribers.

    A failing subscriber is logged and skipped; it never aborts the run.
    """

    def __init__(
        self,
        workflow_id: str,
        thread_id: str,
        callbacks: Optional[List[EventCallback]] = None,
    ) -> None:
        self._workflow_id = workflow_id
        self._thread_id = thread_id
        self._callbacks = list(callbacks or [])

    @property
    def enabled(self) -> bool:
        return bool(self._callbacks)

    def subscribe(self, callback: EventCallback) -> None:
        self._callbacks.append(callback)

    async def _emit(self, event: WorkflowEvent) -> None:
        for callback in self._callbacks:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    f"Event delivery failed for {event.type.value} on {self._workflow_id}: {e}"
                )

    def _event(self, event_type: WorkflowEventType, **fields: Any) -> WorkflowEvent:
        return WorkflowEvent(
            type=event_type,
            workflow_id=self._workflow_id,
            thread_id=self._thread_id,
            **fields,
        )

    async def node_execution(self, node_id: str, state: WorkflowState, duration: float) -> None:
        if self.enabled:
            await self._emit(
                self._event(
                    WorkflowEventType.NODE_EXECUTION,
                    node_id=node_id,
                    state=state,
                    data={"duration": duration},
                )
            )

    async def edge_traversal(self, source: str, target: str, reason: str) -> None:
        if self.enabled:
            await self._emit(
                self._event(
                    WorkflowEventType.EDGE_TRAVERSAL,
                    node_id=source,
                    data={"source": source, "target": target, "reason": reason},
                )
            )

    async def checkpoint(self, checkpoint_id: str, state: WorkflowState) -> None:
        if self.enabled:
            await self._emit(
                self._event(
                    WorkflowEventType.CHECKPOINT,
                    node_id=state.current_node or None,
                    state=state,
                    data={"checkpoint_id": checkpoint_id},
                )
            )

    async def error(self, node_id: Optional[str], message: str) -> None:
        if self.enabled:
            await self._emit(
                self._event(WorkflowEventType.ERROR, node_id=node_id, data={"error": message})
            )
