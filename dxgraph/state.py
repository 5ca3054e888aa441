"""Run-wide workflow state, per-stage records and the state merge table."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field

from .context import DiagnosticContext
from .contracts import Finding, RoutingDecision, Severity, Stage, WorkflowDefinition

RunStatus = Literal["pending", "running", "awaiting_input", "completed", "failed"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED})


class StageExecutionData(BaseModel):
    """Execution record of a single stage within one run."""

    stage_id: str
    plugin_id: Optional[str] = None
    findings: List[Finding] = Field(default_factory=list)
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    execution_time: float = 0.0
    error: Optional[str] = None
    input_data: Optional[Dict[str, Any]] = None
    output_data: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def finish(
        self,
        status: StageStatus,
        *,
        findings: Optional[List[Finding]] = None,
        error: Optional[str] = None,
        output_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Move the record to a terminal status. Terminal records are never rewritten."""
        if self.is_terminal:
            raise RuntimeError(
                f"Stage {self.stage_id} already finished with status {self.status.value}"
            )
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status.value} is not a terminal stage status")
        self.status = status
        self.ended_at = _utcnow()
        if self.started_at is not None:
            self.execution_time = (self.ended_at - self.started_at).total_seconds()
        if findings is not None:
            self.findings = list(findings)
        if error is not None:
            self.error = error
        if output_data is not None:
            self.output_data = output_data


class StageAggregate(BaseModel):
    findings: List[Finding] = Field(default_factory=list)
    total_execution_time: float = 0.0
    stage_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0


class WorkflowExecutionContext(BaseModel):
    """Mutable per-run record of stage results and shared aggregates.

    One instance belongs to exactly one run and is never shared.
    """

    workflow_id: str
    thread_id: Optional[str] = None
    start_time: datetime = Field(default_factory=_utcnow)
    current_stage: Optional[str] = None
    stage_data: Dict[str, StageExecutionData] = Field(default_factory=dict)
    global_context: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_definition(
        cls, definition: WorkflowDefinition, thread_id: Optional[str] = None
    ) -> "WorkflowExecutionContext":
        ctx = cls(workflow_id=definition.id, thread_id=thread_id)
        for stage in definition.stages:
            ctx.stage_data[stage.id] = StageExecutionData(
                stage_id=stage.id, plugin_id=stage.plugin_id
            )
        return ctx

    def begin(self, stage: Stage) -> StageExecutionData:
        """Start a fresh execution record for ``stage``."""
        data = StageExecutionData(
            stage_id=stage.id,
            plugin_id=stage.plugin_id,
            status=StageStatus.RUNNING,
            started_at=_utcnow(),
        )
        self.current_stage = stage.id
        self.stage_data[stage.id] = data
        return data

    def get(self, stage_id: str) -> Optional[StageExecutionData]:
        return self.stage_data.get(stage_id)

    def all_findings(self) -> List[Finding]:
        findings: List[Finding] = []
        for data in self.stage_data.values():
            if data.status == StageStatus.COMPLETED:
                findings.extend(data.findings)
        return findings

    def aggregate_results(self, stage_ids: Optional[List[str]] = None) -> StageAggregate:
        records = [
            data
            for data in self.stage_data.values()
            if stage_ids is None or data.stage_id in stage_ids
        ]
        aggregate = StageAggregate(stage_count=len(records))
        for data in records:
            aggregate.findings.extend(data.findings)
            aggregate.total_execution_time += data.execution_time
            if data.status == StageStatus.COMPLETED:
                aggregate.success_count += 1
            elif data.status == StageStatus.FAILED:
                aggregate.failure_count += 1
            elif data.status == StageStatus.SKIPPED:
                aggregate.skipped_count += 1
        return aggregate


class MergeRule(str, Enum):
    REPLACE = "replace"
    APPEND = "append"
    MERGE = "merge"


class WorkflowState(BaseModel):
    """State folded through every node of a run."""

    endpoint: str = ""
    findings: List[Finding] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    current_node: str = ""
    visited_nodes: List[str] = Field(default_factory=list)
    execution_path: List[str] = Field(default_factory=list)
    severity: Optional[Severity] = None
    finding_count: int = 0
    has_blockers: bool = False
    has_major: bool = False
    awaiting_user_input: bool = False
    user_prompt: Optional[str] = None
    user_response: Optional[str] = None
    context: DiagnosticContext = Field(default_factory=DiagnosticContext)
    status: RunStatus = "pending"
    start_time: datetime = Field(default_factory=_utcnow)
    node_timings: Dict[str, float] = Field(default_factory=dict)
    routing_decisions: List[RoutingDecision] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_snapshot(self) -> Dict[str, Any]:
        """JSON-safe dump with live context resources detached."""
        data = self.model_dump(mode="json", exclude={"context"})
        data["context"] = self.context.to_snapshot()
        return data

    @classmethod
    def from_snapshot(
        cls, data: Mapping[str, Any], context: Optional[DiagnosticContext] = None
    ) -> "WorkflowState":
        payload = dict(data)
        snapshot_context = payload.pop("context", None) or {}
        payload["context"] = context or DiagnosticContext.from_snapshot(snapshot_context)
        return cls.model_validate(payload)


MERGE_RULES: Dict[str, MergeRule] = {
    "endpoint": MergeRule.REPLACE,
    "findings": MergeRule.APPEND,
    "errors": MergeRule.APPEND,
    "current_node": MergeRule.REPLACE,
    "visited_nodes": MergeRule.APPEND,
    "execution_path": MergeRule.APPEND,
    "severity": MergeRule.REPLACE,
    "finding_count": MergeRule.REPLACE,
    "has_blockers": MergeRule.REPLACE,
    "has_major": MergeRule.REPLACE,
    "awaiting_user_input": MergeRule.REPLACE,
    "user_prompt": MergeRule.REPLACE,
    "user_response": MergeRule.REPLACE,
    "context": MergeRule.REPLACE,
    "status": MergeRule.REPLACE,
    "start_time": MergeRule.REPLACE,
    "node_timings": MergeRule.MERGE,
    "routing_decisions": MergeRule.APPEND,
    "metadata": MergeRule.MERGE,
}


def merge_state(state: WorkflowState, update: Mapping[str, Any]) -> WorkflowState:
    """Fold a partial update into ``state`` and return a new state.

    Each field is combined according to ``MERGE_RULES``; the input state is
    left untouched.
    """
    values = {name: getattr(state, name) for name in WorkflowState.model_fields}
    for key, value in update.items():
        rule = MERGE_RULES.get(key)
        if rule is None:
            raise ValueError(f"Unknown workflow state field: {key}")
        if rule is MergeRule.APPEND:
            values[key] = [*values[key], *(value or [])]
        elif rule is MergeRule.MERGE:
            values[key] = {**values[key], **(value or {})}
        else:
            values[key] = value
    return WorkflowState.model_validate(values)


def new_run_state(data: Mapping[str, Any], context: DiagnosticContext) -> WorkflowState:
    """Build the starting state of a run from caller-supplied fields."""
    payload = dict(data)
    payload["context"] = context
    payload.setdefault("endpoint", context.endpoint)
    payload["status"] = "running"
    return WorkflowState.model_validate(payload)
