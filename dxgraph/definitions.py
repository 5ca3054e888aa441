"""Built-in diagnostic workflows and loading of workflow definition files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from .contracts import (
    Branch,
    Condition,
    ConditionType,
    Dependency,
    Edge,
    Stage,
    StageKind,
    WorkflowDefinition,
)
from .nodes import highest_severity, severity_summary
from .plugins import resolve_reference
from .state import WorkflowState

logger = logging.getLogger(__name__)


def summarize_severity(state: WorkflowState, inputs: Dict[str, Any]) -> Dict[str, Any]:
    """Publish blocker/major flags and the highest severity seen so far."""
    update = severity_summary(state.findings)
    severity = highest_severity(state.findings)
    if severity is not None:
        update["severity"] = severity
    return update


def annotate_summary(state: WorkflowState, inputs: Dict[str, Any]) -> Dict[str, Any]:
    blockers = sum(1 for f in state.findings if f.severity == "blocker")
    majors = sum(1 for f in state.findings if f.severity == "major")
    summary = f"Findings: {len(state.findings)}; blockers={blockers}; majors={majors}"
    logger.info(f"[{state.current_node}] {summary}")
    return {"metadata": {"summary": summary}}


def _plugin(stage_id: str, plugin_id: str, order: int, name: str = "") -> Stage:
    return Stage(id=stage_id, name=name or stage_id, plugin_id=plugin_id, order=order)


def _flow(source: str, target: str, *keys: str, required: bool = True) -> Dependency:
    return Dependency(from_stage=source, to_stage=target, data_flow=list(keys), required=required)


def default_workflows() -> List[WorkflowDefinition]:
    """Workflows registered by the CLI and service start-up."""
    baseline = WorkflowDefinition(
        id="workflow.baseline",
        name="Baseline MCP Regression",
        description="Runs discovery, protocol and streaming checks with governance gating.",
        stages=[
            _plugin("discovery", "discovery", 1),
            _plugin("protocol", "protocol", 2),
            _plugin("streaming", "streaming", 3),
            _plugin("governance", "governance", 4),
        ],
        dependencies=[
            _flow("discovery", "protocol", "artifacts"),
            _flow("protocol", "streaming", "findings"),
            _flow("streaming", "governance", "findings", required=False),
        ],
        timeout=300.0,
    )
    security_sprint = WorkflowDefinition(
        id="workflow.security-sprint",
        name="Security Sprint",
        description="Auth audit followed by parallel rate limit and permissioning probes, "
        "threat modelling and dependency scanning.",
        stages=[
            _plugin("auth", "auth", 1),
            _plugin("ratelimit", "ratelimit", 2),
            _plugin("permissioning", "permissioning", 2),
            _plugin("threat", "threat-model", 3),
            _plugin("dependencies", "dependency-scanner", 4),
        ],
        dependencies=[
            _flow("auth", "ratelimit", "headers"),
            _flow("auth", "permissioning", "tokens"),
            _flow("ratelimit", "threat", "findings", required=False),
            _flow("permissioning", "threat", "findings", required=False),
            _flow("threat", "dependencies", "findings", required=False),
        ],
        timeout=420.0,
    )
    agent_baseline = WorkflowDefinition(
        id="agent.baseline",
        name="Baseline Diagnostic Graph",
        description="Graph workflow executing discovery, protocol and summary nodes "
        "with checkpointing.",
        entry_point="context-init",
        stages=[
            Stage(id="context-init", name="Context Builder", kind=StageKind.AGGREGATION),
            _plugin("discovery", "discovery", 0, "Discovery Probe"),
            _plugin("protocol", "protocol", 0, "Protocol Compliance"),
            _plugin("streaming", "streaming", 0, "Streaming Health"),
            Stage(
                id="severity-gate",
                name="Severity Gate",
                kind=StageKind.DECISION,
                handler=summarize_severity,
            ),
            Stage(
                id="report",
                name="Report Synthesizer",
                kind=StageKind.AGGREGATION,
                handler=annotate_summary,
            ),
        ],
        edges=[
            Edge(source="context-init", target="discovery"),
            Edge(source="discovery", target="protocol"),
            Edge(source="protocol", target="streaming"),
            Edge(source="streaming", target="severity-gate"),
            Edge(source="severity-gate", target="report"),
        ],
        timeout=600.0,
    )
    agent_security = WorkflowDefinition(
        id="agent.security",
        name="Security Sweep Graph",
        description="Auth, permissioning and threat model with a conditional dependency scanner.",
        entry_point="auth",
        stages=[
            _plugin("auth", "auth", 0, "Authentication Audit"),
            _plugin("permissioning", "permissioning", 0, "Permissioning Review"),
            _plugin("ratelimit", "ratelimit", 0, "Rate Limit Probe"),
            _plugin("threat", "threat-model", 0, "Threat Model"),
            Stage(
                id="decision-security",
                name="Security Branch",
                kind=StageKind.DECISION,
                handler=summarize_severity,
                branches=[
                    Branch(
                        id="escalate",
                        name="Major or blocker findings",
                        target_node="dependencies",
                        conditions=[
                            Condition(type=ConditionType.HAS_MAJOR, value=True),
                            Condition(type=ConditionType.HAS_BLOCKERS, value=True),
                        ],
                        condition_logic="OR",
                        priority=10,
                    ),
                    Branch(
                        id="report",
                        name="Clean run",
                        target_node="security-report",
                        fallback=True,
                    ),
                ],
            ),
            _plugin("dependencies", "dependency-scanner", 0, "Dependency Scanner"),
            Stage(
                id="security-report",
                name="Security Summary",
                kind=StageKind.AGGREGATION,
                handler=annotate_summary,
            ),
        ],
        edges=[
            Edge(source="auth", target="permissioning"),
            Edge(source="permissioning", target="ratelimit"),
            Edge(source="ratelimit", target="threat"),
            Edge(source="threat", target="decision-security"),
            Edge(source="dependencies", target="security-report"),
        ],
        timeout=900.0,
    )
    return [baseline, security_sprint, agent_baseline, agent_security]


def _resolve_callables(data: Dict[str, Any]) -> Dict[str, Any]:
    resolved = dict(data)
    stages = []
    for stage in resolved.get("stages", []):
        stage = dict(stage)
        if isinstance(stage.get("handler"), str):
            stage["handler"] = resolve_reference(stage["handler"])
        stages.append(stage)
    resolved["stages"] = stages
    paths = []
    for path in resolved.get("fallback_paths", []):
        path = dict(path)
        if isinstance(path.get("custom_condition"), str):
            path["custom_condition"] = resolve_reference(path["custom_condition"])
        paths.append(path)
    resolved["fallback_paths"] = paths
    return resolved


def parse_definitions(data: Any) -> List[WorkflowDefinition]:
    """Build definitions from a parsed document.

    Accepts a single workflow mapping or a mapping with a ``workflows`` list.
    Handlers and custom fallback predicates are given as ``module:function``.
    """
    if not data:
        return []
    if isinstance(data, dict) and "workflows" in data:
        items = data["workflows"] or []
    elif isinstance(data, list):
        items = data
    else:
        items = [data]
    return [WorkflowDefinition.model_validate(_resolve_callables(item)) for item in items]


def load_definitions(path: Union[str, Path]) -> List[WorkflowDefinition]:
    """Load workflow definitions from a YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f)
    definitions = parse_definitions(data)
    logger.info(f"Loaded {len(definitions)} workflow definitions from {path}")
    return definitions
