"""Core contracts describing workflow definitions and routing results."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

Severity = Literal["blocker", "major", "minor", "info"]
ConditionValue = Union[bool, int, float, str, List[str], None]
FallbackCondition = Literal["error", "timeout", "no_match", "custom"]


class StageKind(str, Enum):
    """Closed set of node kinds a stage can take."""

    PLUGIN = "plugin"
    DECISION = "decision"
    AGGREGATION = "aggregation"
    HUMAN_INPUT = "human_input"


class ConditionType(str, Enum):
    SEVERITY = "severity"
    FINDING_COUNT = "finding_count"
    HAS_BLOCKERS = "has_blockers"
    HAS_MAJOR = "has_major"
    ERROR_COUNT = "error_count"
    NODE_VISITED = "node_visited"
    CUSTOM = "custom"


class ComparisonOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    IN = "in"


class Finding(BaseModel):
    """A single diagnostic observation emitted by a plugin."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    area: str = "general"
    severity: Severity
    title: str
    description: Optional[str] = None
    evidence: List[Dict[str, Any]] = Field(default_factory=list)
    confidence: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Condition(BaseModel):
    """Declarative predicate evaluated against workflow state."""

    model_config = ConfigDict(frozen=True)

    type: ConditionType
    operator: ComparisonOperator = ComparisonOperator.EQ
    value: ConditionValue = None
    field: Optional[str] = Field(default=None, description="Dot path for custom conditions")
    negate: bool = False


class Branch(BaseModel):
    """Prioritised, condition-gated routing rule."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    target_node: str
    conditions: List[Condition] = Field(default_factory=list)
    condition_logic: Literal["AND", "OR"] = "AND"
    priority: int = 0
    fallback: bool = False


class Dependency(BaseModel):
    """Ordering and data edge between two stages."""

    model_config = ConfigDict(frozen=True)

    from_stage: str
    to_stage: str
    data_flow: List[str] = Field(default_factory=list)
    required: bool = True


class Edge(BaseModel):
    """Control-flow edge of the workflow graph."""

    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    condition: Optional[Condition] = None
    label: Optional[str] = None


class Stage(BaseModel):
    """One executable unit of a workflow."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    name: str
    kind: StageKind = StageKind.PLUGIN
    plugin_id: Optional[str] = None
    handler: Optional[Callable[..., Any]] = Field(default=None, exclude=True)
    input_mapping: Dict[str, str] = Field(default_factory=dict)
    condition: Optional[Condition] = None
    branches: List[Branch] = Field(default_factory=list)
    order: int = 0
    timeout: Optional[float] = Field(default=None, gt=0)
    prompt: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _default_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("name") and data.get("id"):
            data = {**data, "name": data["id"]}
        return data


class FallbackPath(BaseModel):
    """Alternate route used on error, timeout or routing failure."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    from_node: str
    to_node: str
    condition: FallbackCondition
    custom_condition: Optional[Callable[[Any], bool]] = Field(default=None, exclude=True)


class WorkflowDefinition(BaseModel):
    """Immutable description of a diagnostic workflow."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"workflow-{uuid.uuid4()}")
    name: str = ""
    description: str = ""
    stages: List[Stage] = Field(default_factory=list)
    dependencies: List[Dependency] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    entry_point: Optional[str] = None
    fallback_paths: List[FallbackPath] = Field(default_factory=list)
    timeout: Optional[float] = Field(default=None, gt=0)
    enable_checkpointing: bool = True

    def get_stage(self, stage_id: str) -> Optional[Stage]:
        return next((s for s in self.stages if s.id == stage_id), None)

    @property
    def stage_ids(self) -> List[str]:
        return [s.id for s in self.stages]

    def incoming(self, stage_id: str) -> List[Dependency]:
        """Dependencies whose target is ``stage_id``."""
        return [d for d in self.dependencies if d.to_stage == stage_id]

    def required_upstream(self, stage_id: str) -> List[str]:
        return [d.from_stage for d in self.incoming(stage_id) if d.required]


class ExecutionPlan(BaseModel):
    """Planner output: ordered batches, dependency graph and critical path."""

    workflow_id: str
    execution_order: List[List[Stage]] = Field(default_factory=list)
    dependency_graph: Dict[str, List[str]] = Field(default_factory=dict)
    critical_path: List[str] = Field(default_factory=list)

    def flattened(self) -> List[str]:
        return [stage.id for batch in self.execution_order for stage in batch]


class DataMappingResult(BaseModel):
    mapped_data: Dict[str, Any] = Field(default_factory=dict)
    sources_used: List[str] = Field(default_factory=list)
    missing_dependencies: List[str] = Field(default_factory=list)


class ConditionEvaluation(BaseModel):
    condition: Condition
    result: bool
    actual_value: Any = None
    expected_value: Any = None
    reason: str = ""


class RoutingDecision(BaseModel):
    """Outcome of one branch evaluation, kept for audit."""

    target_node: str
    branch_id: str
    branch_name: str
    reason: str
    conditions_evaluated: List[ConditionEvaluation] = Field(default_factory=list)
