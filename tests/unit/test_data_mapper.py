"""Tests for stage input mapping and output extraction."""

from dxgraph.contracts import Dependency, Finding, Stage, WorkflowDefinition
from dxgraph.mapping import DataMapper, extract_outputs
from dxgraph.state import StageStatus, WorkflowExecutionContext


def _findings():
    return [
        Finding(area="auth", severity="blocker", title="No auth"),
        Finding(area="auth", severity="major", title="Weak token"),
        Finding(area="streaming", severity="info", title="SSE ok"),
    ]


def _definition(input_mapping=None, required=True):
    return WorkflowDefinition(
        id="wf",
        stages=[
            Stage(id="a", plugin_id="a"),
            Stage(id="b", plugin_id="b", input_mapping=input_mapping or {}),
        ],
        dependencies=[
            Dependency(
                from_stage="a",
                to_stage="b",
                data_flow=[
                    "artifacts",
                    "findings",
                    "execution_time",
                    "severities",
                    "blocker_count",
                    "unknown",
                ],
                required=required,
            )
        ],
    )


def _completed_context(definition):
    ctx = WorkflowExecutionContext.for_definition(definition)
    record = ctx.begin(definition.get_stage("a"))
    record.finish(
        StageStatus.COMPLETED,
        findings=_findings(),
        output_data={"artifacts": ["tools.json"], **extract_outputs(_findings())},
    )
    return ctx


def test_map_inputs_resolves_values_in_priority_order():
    definition = _definition()
    ctx = _completed_context(definition)

    result = DataMapper().map_inputs(definition.get_stage("b"), definition, ctx)

    assert result.sources_used == ["a"]
    assert result.missing_dependencies == []
    assert result.mapped_data["artifacts"] == ["tools.json"]
    assert len(result.mapped_data["findings"]) == 3
    assert result.mapped_data["execution_time"] == ctx.get("a").execution_time
    assert result.mapped_data["severities"] == ["blocker", "major", "info"]
    assert result.mapped_data["blocker_count"] == 1
    assert "unknown" not in result.mapped_data


def test_map_inputs_keeps_finding_models_after_serialization():
    definition = _definition()
    ctx = _completed_context(definition)
    restored = WorkflowExecutionContext.model_validate(ctx.model_dump(mode="json"))

    result = DataMapper().map_inputs(definition.get_stage("b"), definition, restored)

    assert all(isinstance(f, Finding) for f in result.mapped_data["findings"])
    assert [f.title for f in result.mapped_data["findings"]] == ["No auth", "Weak token", "SSE ok"]


def test_map_inputs_renames_keys_through_input_mapping():
    definition = _definition(input_mapping={"findings": "upstream_findings"})
    ctx = _completed_context(definition)

    result = DataMapper().map_inputs(definition.get_stage("b"), definition, ctx)

    assert "findings" not in result.mapped_data
    assert len(result.mapped_data["upstream_findings"]) == 3


def test_incomplete_upstream_is_reported_missing_and_contributes_nothing():
    definition = _definition()
    ctx = WorkflowExecutionContext.for_definition(definition)

    result = DataMapper().map_inputs(definition.get_stage("b"), definition, ctx)

    assert result.missing_dependencies == ["a"]
    assert result.sources_used == []
    assert result.mapped_data == {}
    assert DataMapper.missing_required(definition.get_stage("b"), definition, result) == ["a"]


def test_failed_upstream_of_optional_dependency_is_not_required():
    definition = _definition(required=False)
    ctx = WorkflowExecutionContext.for_definition(definition)
    ctx.begin(definition.get_stage("a")).finish(StageStatus.FAILED, error="boom")

    result = DataMapper().map_inputs(definition.get_stage("b"), definition, ctx)

    assert result.missing_dependencies == ["a"]
    assert DataMapper.missing_required(definition.get_stage("b"), definition, result) == []


def test_extract_outputs_shape():
    outputs = extract_outputs(_findings())
    assert outputs["finding_count"] == 3
    assert outputs["severity_counts"] == {"blocker": 1, "major": 1, "minor": 0, "info": 1}
    assert outputs["area_counts"] == {"auth": 2, "streaming": 1}
    assert outputs["has_blockers"] is True
    assert outputs["has_major"] is True
    assert "findings" not in outputs


def test_extract_outputs_empty_keeps_all_severities():
    outputs = extract_outputs([])
    assert outputs["severity_counts"] == {"blocker": 0, "major": 0, "minor": 0, "info": 0}
    assert outputs["area_counts"] == {}
    assert outputs["has_blockers"] is False


def test_extract_outputs_is_idempotent():
    findings = _findings()
    first = extract_outputs(findings)
    second = extract_outputs(findings)
    assert first["severity_counts"] == second["severity_counts"]
    assert first["area_counts"] == second["area_counts"]


def test_update_global_context_publishes_stage_and_totals():
    definition = _definition()
    ctx = _completed_context(definition)

    DataMapper.update_global_context(ctx, "a")

    assert ctx.global_context["a_status"] == "completed"
    assert len(ctx.global_context["a_findings"]) == 3
    assert ctx.global_context["total_findings"] == 3
    assert ctx.global_context["total_blockers"] == 1
    assert ctx.global_context["total_major"] == 1
