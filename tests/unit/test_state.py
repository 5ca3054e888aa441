"""Tests for workflow state merging, stage records and context snapshots."""

import pytest

from dxgraph.context import DiagnosticContext, UnavailableResource
from dxgraph.contracts import Finding, Stage, WorkflowDefinition
from dxgraph.exceptions import ResourceUnavailableError
from dxgraph.state import (
    MERGE_RULES,
    StageStatus,
    WorkflowExecutionContext,
    WorkflowState,
    merge_state,
    new_run_state,
)


def _finding(severity: str = "major") -> Finding:
    return Finding(area="auth", severity=severity, title="Token accepted without signature")


def test_merge_appends_list_fields():
    state = WorkflowState(findings=[_finding()], visited_nodes=["a"], errors=["first"])

    merged = merge_state(
        state, {"findings": [_finding("minor")], "visited_nodes": ["b"], "errors": ["second"]}
    )

    assert [f.severity for f in merged.findings] == ["major", "minor"]
    assert merged.visited_nodes == ["a", "b"]
    assert merged.errors == ["first", "second"]


def test_merge_replaces_scalars_and_merges_maps():
    state = WorkflowState(
        severity="minor", node_timings={"a": 0.5}, metadata={"summary": "old", "keep": 1}
    )

    merged = merge_state(
        state,
        {"severity": "blocker", "node_timings": {"b": 1.0}, "metadata": {"summary": "new"}},
    )

    assert merged.severity == "blocker"
    assert merged.node_timings == {"a": 0.5, "b": 1.0}
    assert merged.metadata == {"summary": "new", "keep": 1}


def test_merge_leaves_input_untouched():
    state = WorkflowState(errors=["x"])
    merge_state(state, {"errors": ["y"], "current_node": "b"})
    assert state.errors == ["x"]
    assert state.current_node == ""


def test_merge_rejects_unknown_field():
    with pytest.raises(ValueError, match="Unknown workflow state field"):
        merge_state(WorkflowState(), {"not_a_field": 1})


def test_every_state_field_has_a_merge_rule():
    assert set(MERGE_RULES) == set(WorkflowState.model_fields)


def test_new_run_state_takes_endpoint_from_context():
    context = DiagnosticContext(endpoint="https://mcp.example.com")
    state = new_run_state({"metadata": {"team": "core"}}, context)
    assert state.endpoint == "https://mcp.example.com"
    assert state.status == "running"
    assert state.context is context
    assert state.metadata == {"team": "core"}


def test_stage_record_is_finished_once():
    definition = WorkflowDefinition(id="wf", stages=[Stage(id="a", plugin_id="a")])
    ctx = WorkflowExecutionContext.for_definition(definition)
    assert ctx.get("a").status == StageStatus.PENDING

    record = ctx.begin(definition.get_stage("a"))
    record.finish(StageStatus.COMPLETED, findings=[_finding()])

    assert record.execution_time >= 0
    assert ctx.current_stage == "a"
    with pytest.raises(RuntimeError, match="already finished"):
        record.finish(StageStatus.FAILED, error="late")
    assert ctx.get("a").status == StageStatus.COMPLETED


def test_finish_requires_terminal_status():
    definition = WorkflowDefinition(id="wf", stages=[Stage(id="a", plugin_id="a")])
    record = WorkflowExecutionContext.for_definition(definition).begin(definition.stages[0])
    with pytest.raises(ValueError):
        record.finish(StageStatus.RUNNING)


def test_aggregate_results_counts_by_status():
    definition = WorkflowDefinition(
        id="wf", stages=[Stage(id=s, plugin_id=s) for s in ("a", "b", "c")]
    )
    ctx = WorkflowExecutionContext.for_definition(definition)
    ctx.begin(definition.get_stage("a")).finish(StageStatus.COMPLETED, findings=[_finding()])
    ctx.begin(definition.get_stage("b")).finish(StageStatus.FAILED, error="boom")
    ctx.begin(definition.get_stage("c")).finish(StageStatus.SKIPPED)

    aggregate = ctx.aggregate_results()

    assert aggregate.stage_count == 3
    assert (aggregate.success_count, aggregate.failure_count, aggregate.skipped_count) == (1, 1, 1)
    assert len(ctx.all_findings()) == 1
    assert ctx.aggregate_results(["b"]).stage_count == 1


def test_snapshot_detaches_live_resources():
    context = DiagnosticContext(
        endpoint="https://mcp.example.com",
        request=lambda *args: None,
        deterministic=True,
        deterministic_seed=7,
        tenant="acme",
    )
    state = WorkflowState(context=context, errors=["x"])

    snapshot = state.to_snapshot()
    assert snapshot["context"]["detached"] == ["request"]
    assert snapshot["context"]["tenant"] == "acme"

    restored = WorkflowState.from_snapshot(snapshot)
    assert restored.errors == ["x"]
    assert restored.context.deterministic_seed == 7
    assert restored.context.is_detached
    assert isinstance(restored.context.request, UnavailableResource)
    with pytest.raises(ResourceUnavailableError):
        restored.context.request("GET", "/")


def test_snapshot_restore_with_live_context():
    state = WorkflowState(context=DiagnosticContext(request=lambda *args: "ok"))
    live = DiagnosticContext(request=lambda *args: "live")

    restored = WorkflowState.from_snapshot(state.to_snapshot(), context=live)

    assert restored.context.request() == "live"
    assert not restored.context.is_detached
