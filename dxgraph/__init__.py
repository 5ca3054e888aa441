"""dxgraph: Stateful orchestration of multi-stage diagnostic workflows."""

from .branching import ConditionalBranchingEngine
from .config import DxGraphConfig, load_config
from .context import DiagnosticContext, UnavailableResource
from .contracts import (
    Branch,
    ComparisonOperator,
    Condition,
    ConditionType,
    Dependency,
    Edge,
    ExecutionPlan,
    FallbackPath,
    Finding,
    RoutingDecision,
    Stage,
    StageKind,
    WorkflowDefinition,
)
from .mapping import DataMapper, extract_outputs
from .orchestrator import ExecutionResult, GraphOrchestrator
from .persistence import get_checkpoint_store
from .planner import StagePlanner, validate_definition
from .plugins import PluginRegistry
from .registry import WorkflowRegistry
from .state import WorkflowExecutionContext, WorkflowState, merge_state

__version__ = "0.1.0"
__all__ = [
    "Branch",
    "ComparisonOperator",
    "Condition",
    "ConditionType",
    "ConditionalBranchingEngine",
    "DataMapper",
    "Dependency",
    "DiagnosticContext",
    "DxGraphConfig",
    "Edge",
    "ExecutionPlan",
    "ExecutionResult",
    "FallbackPath",
    "Finding",
    "GraphOrchestrator",
    "PluginRegistry",
    "RoutingDecision",
    "Stage",
    "StageKind",
    "StagePlanner",
    "UnavailableResource",
    "WorkflowDefinition",
    "WorkflowExecutionContext",
    "WorkflowRegistry",
    "WorkflowState",
    "extract_outputs",
    "get_checkpoint_store",
    "load_config",
    "merge_state",
    "validate_definition",
]
