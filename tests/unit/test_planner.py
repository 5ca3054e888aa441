"""Tests for stage planning and definition validation."""

import pytest

from dxgraph.contracts import (
    Branch,
    Dependency,
    Edge,
    FallbackPath,
    Stage,
    StageKind,
    WorkflowDefinition,
)
from dxgraph.exceptions import WorkflowValidationError
from dxgraph.planner import (
    StagePlanner,
    build_dependency_graph,
    find_cycle,
    validate_definition,
)


def _stage(stage_id: str, order: int = 0) -> Stage:
    return Stage(id=stage_id, plugin_id=stage_id, order=order)


def _dep(source: str, target: str, required: bool = True) -> Dependency:
    return Dependency(from_stage=source, to_stage=target, required=required)


def _security_sprint() -> WorkflowDefinition:
    return WorkflowDefinition(
        id="sprint",
        stages=[
            _stage("auth", 1),
            _stage("ratelimit", 2),
            _stage("permissioning", 2),
            _stage("threat", 3),
            _stage("dependencies", 4),
        ],
        dependencies=[
            _dep("auth", "ratelimit"),
            _dep("auth", "permissioning"),
            _dep("ratelimit", "threat", required=False),
            _dep("permissioning", "threat", required=False),
            _dep("threat", "dependencies", required=False),
        ],
    )


def test_dependency_graph_maps_stage_to_upstream():
    graph = build_dependency_graph(_security_sprint())
    assert graph["auth"] == []
    assert graph["threat"] == ["ratelimit", "permissioning"]
    assert graph["dependencies"] == ["threat"]


def test_batches_grouped_by_order():
    plan = StagePlanner().plan(_security_sprint())
    batches = [[stage.id for stage in batch] for batch in plan.execution_order]
    assert batches == [["auth"], ["ratelimit", "permissioning"], ["threat"], ["dependencies"]]


def test_batch_order_is_topological():
    definition = _security_sprint()
    plan = StagePlanner().plan(definition)
    position = {
        stage.id: index for index, batch in enumerate(plan.execution_order) for stage in batch
    }
    for dep in definition.dependencies:
        assert position[dep.from_stage] < position[dep.to_stage]


def test_stage_declared_before_dependency_is_moved_after_it():
    definition = WorkflowDefinition(
        id="misordered",
        stages=[_stage("a", 1), _stage("b", 1)],
        dependencies=[_dep("a", "b")],
    )
    plan = StagePlanner().plan(definition)
    assert [[s.id for s in batch] for batch in plan.execution_order] == [["a"], ["b"]]


def test_critical_path_is_longest_chain_source_to_sink():
    plan = StagePlanner().plan(_security_sprint())
    assert plan.critical_path == ["auth", "ratelimit", "threat", "dependencies"]


def test_critical_path_without_dependencies_is_single_stage():
    definition = WorkflowDefinition(id="flat", stages=[_stage("a"), _stage("b")])
    assert StagePlanner().plan(definition).critical_path == ["a"]


def test_plan_is_cached_per_workflow_id():
    planner = StagePlanner()
    definition = _security_sprint()
    assert planner.plan(definition) is planner.plan(definition)
    planner.invalidate(definition.id)
    assert planner.plan(definition) is not None


def test_find_cycle_reports_members():
    graph = {"a": ["c"], "b": ["a"], "c": ["b"]}
    cycle = find_cycle(graph)
    assert set(cycle) == {"a", "b", "c"}
    assert find_cycle({"a": [], "b": ["a"]}) == []


def test_validate_accepts_well_formed_definition():
    assert validate_definition(_security_sprint()) == []


def test_validate_rejects_cycles():
    definition = WorkflowDefinition(
        id="cyclic",
        stages=[_stage("a"), _stage("b")],
        dependencies=[_dep("a", "b"), _dep("b", "a")],
    )
    with pytest.raises(WorkflowValidationError) as exc:
        validate_definition(definition)
    assert any("Circular dependency" in error for error in exc.value.errors)


def test_validate_collects_all_errors():
    definition = WorkflowDefinition(
        id="broken",
        entry_point="missing",
        stages=[
            _stage("a"),
            _stage("a"),
            Stage(id="p", kind=StageKind.PLUGIN),
            Stage(
                id="gate",
                kind=StageKind.DECISION,
                branches=[Branch(id="x", name="x", target_node="nowhere")],
            ),
        ],
        dependencies=[_dep("ghost", "a")],
        edges=[Edge(source="a", target="elsewhere")],
        fallback_paths=[FallbackPath(from_node="a", to_node="void", condition="error")],
    )
    with pytest.raises(WorkflowValidationError) as exc:
        validate_definition(definition)
    errors = exc.value.errors
    assert "Duplicate stage IDs: a" in errors
    assert "Plugin stage p has no plugin_id" in errors
    assert "Dependency references unknown stage: ghost" in errors
    assert "Edge references unknown target: elsewhere" in errors
    assert "Fallback path references unknown node: void" in errors
    assert "Entry point missing is not a stage" in errors
    assert any("targets unknown node nowhere" in error for error in errors)


def test_validate_rejects_empty_workflow():
    with pytest.raises(WorkflowValidationError, match="at least one stage"):
        validate_definition(WorkflowDefinition(id="empty"))


def test_validate_warns_on_order_inversion():
    definition = WorkflowDefinition(
        id="inverted",
        stages=[_stage("a", 2), _stage("b", 1)],
        dependencies=[_dep("a", "b")],
    )
    warnings = validate_definition(definition)
    assert len(warnings) == 1
    assert "depends on a" in warnings[0]


def test_end_is_a_valid_target():
    definition = WorkflowDefinition(
        id="to-end",
        stages=[_stage("a")],
        edges=[Edge(source="a", target="END")],
    )
    assert validate_definition(definition) == []
