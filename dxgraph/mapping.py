"""Data flow between stages: input mapping and canonical output extraction."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from .constants import SEVERITY_ORDER
from .contracts import DataMappingResult, Finding, Stage, WorkflowDefinition
from .state import StageExecutionData, StageStatus, WorkflowExecutionContext

logger = logging.getLogger(__name__)

_MISSING = object()

FINDING_EXTRACTORS: Dict[str, Callable[[List[Finding]], Any]] = {
    "severities": lambda findings: [f.severity for f in findings],
    "areas": lambda findings: [f.area for f in findings],
    "titles": lambda findings: [f.title for f in findings],
    "blocker_count": lambda findings: sum(1 for f in findings if f.severity == "blocker"),
    "major_count": lambda findings: sum(1 for f in findings if f.severity == "major"),
}


def extract_outputs(findings: List[Finding]) -> Dict[str, Any]:
    """Canonical output payload of a completed stage.

    ``severity_counts`` always carries all four severities, ``area_counts`` only
    the areas that occur.
    """
    severity_counts = {severity: 0 for severity in SEVERITY_ORDER}
    for finding in findings:
        severity_counts[finding.severity] += 1
    area_counts = dict(Counter(finding.area for finding in findings))
    return {
        "finding_count": len(findings),
        "severity_counts": severity_counts,
        "area_counts": area_counts,
        "has_blockers": severity_counts["blocker"] > 0,
        "has_major": severity_counts["major"] > 0,
    }


def resolve_flow_value(upstream: StageExecutionData, key: str) -> Any:
    """Resolve one ``data_flow`` key against an upstream record.

    Returns ``_MISSING`` when nothing provides the key.
    """
    output = upstream.output_data or {}
    if key in output:
        return output[key]
    if key == "findings":
        return list(upstream.findings)
    if key == "execution_time":
        return upstream.execution_time
    extractor = FINDING_EXTRACTORS.get(key)
    if extractor is not None:
        return extractor(upstream.findings)
    return _MISSING


class DataMapper:
    """Assembles stage inputs from upstream results."""

    def map_inputs(
        self,
        stage: Stage,
        definition: WorkflowDefinition,
        context: WorkflowExecutionContext,
    ) -> DataMappingResult:
        result = DataMappingResult()
        for dep in definition.incoming(stage.id):
            upstream = context.get(dep.from_stage)
            if upstream is None or upstream.status != StageStatus.COMPLETED:
                result.missing_dependencies.append(dep.from_stage)
                continue
            result.sources_used.append(dep.from_stage)
            for key in dep.data_flow:
                value = resolve_flow_value(upstream, key)
                if value is _MISSING:
                    logger.debug(
                        f"Dropping unknown data flow key {key} from {dep.from_stage} to {stage.id}"
                    )
                    continue
                result.mapped_data[stage.input_mapping.get(key, key)] = value
        return result

    @staticmethod
    def missing_required(
        stage: Stage, definition: WorkflowDefinition, result: DataMappingResult
    ) -> List[str]:
        """Required upstream stages among the mapping's missing dependencies."""
        required = set(definition.required_upstream(stage.id))
        return [stage_id for stage_id in result.missing_dependencies if stage_id in required]

    @staticmethod
    def update_global_context(
        context: WorkflowExecutionContext,
        stage_id: str,
        data: Optional[StageExecutionData] = None,
    ) -> None:
        """Publish a finished stage's results and the run-wide aggregates."""
        data = data or context.get(stage_id)
        if data is not None:
            context.global_context[f"{stage_id}_findings"] = list(data.findings)
            context.global_context[f"{stage_id}_execution_time"] = data.execution_time
            context.global_context[f"{stage_id}_status"] = data.status.value
        findings = context.all_findings()
        context.global_context["total_findings"] = len(findings)
        context.global_context["total_blockers"] = sum(
            1 for f in findings if f.severity == "blocker"
        )
        context.global_context["total_major"] = sum(1 for f in findings if f.severity == "major")
