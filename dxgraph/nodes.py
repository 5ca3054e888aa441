"""One executor per stage kind.

Each executor returns a partial state update which the orchestrator folds into
the run state with :func:`dxgraph.state.merge_state`.
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional

from .constants import SEVERITY_ORDER
from .contracts import Finding, Severity, Stage, StageKind
from .plugins import PluginExecutor
from .state import WorkflowState, merge_state

logger = logging.getLogger(__name__)

StateUpdate = Dict[str, Any]


def severity_summary(findings: List[Finding]) -> StateUpdate:
    """Aggregate fields derived from the full findings list."""
    present = {finding.severity for finding in findings}
    return {
        "finding_count": len(findings),
        "has_blockers": "blocker" in present,
        "has_major": "major" in present,
    }


def highest_severity(findings: List[Finding]) -> Optional[Severity]:
    present = {finding.severity for finding in findings}
    return next((severity for severity in SEVERITY_ORDER if severity in present), None)


class NodeExecutor(ABC):
    """Kind-specific behaviour of a stage."""

    kind: StageKind

    @abstractmethod
    async def run(
        self,
        stage: Stage,
        state: WorkflowState,
        inputs: Dict[str, Any],
        plugins: PluginExecutor,
    ) -> StateUpdate:
        """Return the state update produced by ``stage``."""


class PluginNode(NodeExecutor):
    kind = StageKind.PLUGIN

    async def run(self, stage, state, inputs, plugins):
        if not stage.plugin_id:
            return {}
        findings = await plugins.execute(stage.plugin_id, state.context, inputs)
        update = severity_summary([*state.findings, *findings])
        update["findings"] = findings
        return update


class DecisionNode(NodeExecutor):
    kind = StageKind.DECISION

    async def run(self, stage, state, inputs, plugins):
        update = severity_summary(state.findings)
        severity = highest_severity(state.findings)
        if severity is not None:
            update["severity"] = severity
        return update


class AggregationNode(NodeExecutor):
    """Downstream consumers read the already merged state."""

    kind = StageKind.AGGREGATION

    async def run(self, stage, state, inputs, plugins):
        return {}


class HumanInputNode(NodeExecutor):
    kind = StageKind.HUMAN_INPUT

    async def run(self, stage, state, inputs, plugins):
        return {"awaiting_user_input": True, "user_prompt": stage.prompt or stage.name}


NODE_EXECUTORS: Dict[StageKind, NodeExecutor] = {
    executor.kind: executor
    for executor in (PluginNode(), DecisionNode(), AggregationNode(), HumanInputNode())
}


async def run_handler(stage: Stage, state: WorkflowState, inputs: Dict[str, Any]) -> StateUpdate:
    """Invoke the stage's custom handler, if any, and return its update."""
    if stage.handler is None:
        return {}
    result = stage.handler(state, inputs)
    if inspect.isawaitable(result):
        result = await result
    if result is None:
        return {}
    if not isinstance(result, Mapping):
        raise TypeError(
            f"Handler of stage {stage.id} returned {type(result).__name__}, expected a mapping"
        )
    return dict(result)


async def execute_node(
    stage: Stage,
    state: WorkflowState,
    inputs: Dict[str, Any],
    plugins: PluginExecutor,
) -> WorkflowState:
    """Run the kind executor, then the custom handler, folding both updates."""
    executor = NODE_EXECUTORS[stage.kind]
    state = merge_state(state, await executor.run(stage, state, inputs, plugins))
    handler_update = await run_handler(stage, state, inputs)
    if handler_update:
        logger.debug(f"Handler of stage {stage.id} updated {sorted(handler_update)}")
        state = merge_state(state, handler_update)
    return state
