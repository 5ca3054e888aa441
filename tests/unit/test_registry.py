"""Tests for the workflow registry and event emitter."""

import pytest

from dxgraph.contracts import Dependency, Edge, FallbackPath, Stage, WorkflowDefinition
from dxgraph.events import EventEmitter, WorkflowEventType
from dxgraph.exceptions import WorkflowValidationError
from dxgraph.planner import StagePlanner
from dxgraph.registry import WorkflowRegistry, compile_definition
from dxgraph.state import WorkflowState


def _definition(workflow_id: str = "wf", **overrides) -> WorkflowDefinition:
    fields = dict(
        id=workflow_id,
        stages=[Stage(id="a", plugin_id="a", order=1), Stage(id="b", plugin_id="b", order=2)],
        dependencies=[Dependency(from_stage="a", to_stage="b")],
    )
    fields.update(overrides)
    return WorkflowDefinition(**fields)


def test_compile_builds_plan_edges_and_fallbacks():
    definition = _definition(
        edges=[Edge(source="a", target="b"), Edge(source="b", target="END")],
        fallback_paths=[FallbackPath(from_node="a", to_node="b", condition="error")],
    )

    compiled = compile_definition(definition, StagePlanner())

    assert compiled.entry_point == "a"
    assert [e.target for e in compiled.outgoing["a"]] == ["b"]
    assert compiled.engine.get_fallback_path("a", WorkflowState(), "error") == "b"
    assert compiled.plan_successor("a") == "b"
    assert compiled.plan_successor("b") is None
    assert compiled.plan_successor("ghost") is None


def test_compile_honours_explicit_entry_point():
    compiled = compile_definition(_definition(entry_point="b"), StagePlanner())
    assert compiled.entry_point == "b"


def test_compile_rejects_invalid_definition():
    bad = _definition(dependencies=[Dependency(from_stage="b", to_stage="a"), Dependency(from_stage="a", to_stage="b")])
    with pytest.raises(WorkflowValidationError):
        compile_definition(bad, StagePlanner())


def test_registry_register_replace_remove():
    registry = WorkflowRegistry()
    planner = StagePlanner()
    first = compile_definition(_definition(), planner)
    registry.register(first)
    assert "wf" in registry
    assert len(registry) == 1

    replacement = compile_definition(_definition(name="v2"), planner)
    registry.register(replacement)
    assert registry.get("wf") is replacement
    # handles already held by callers are unaffected
    assert first.definition.name == ""

    assert registry.remove("wf") is True
    assert registry.remove("wf") is False
    assert registry.get("wf") is None


def test_registry_init_replaces_contents():
    registry = WorkflowRegistry()
    planner = StagePlanner()
    registry.register(compile_definition(_definition("old"), planner))

    registry.init([compile_definition(_definition("x"), planner), compile_definition(_definition("y"), planner)])

    assert sorted(wf.workflow_id for wf in registry.list()) == ["x", "y"]


@pytest.mark.asyncio
async def test_event_emitter_delivers_to_sync_and_async_callbacks():
    received = []

    def on_sync(event):
        received.append(("sync", event.type))

    async def on_async(event):
        received.append(("async", event.type))

    emitter = EventEmitter("wf", "t1", [on_sync, on_async])
    await emitter.node_execution("a", WorkflowState(), 0.1)
    await emitter.edge_traversal("a", "b", "edge")

    assert received == [
        ("sync", WorkflowEventType.NODE_EXECUTION),
        ("async", WorkflowEventType.NODE_EXECUTION),
        ("sync", WorkflowEventType.EDGE_TRAVERSAL),
        ("async", WorkflowEventType.EDGE_TRAVERSAL),
    ]


@pytest.mark.asyncio
async def test_event_emitter_survives_failing_callback():
    received = []

    def broken(event):
        raise RuntimeError("subscriber gone")

    emitter = EventEmitter("wf", "t1", [broken, received.append])
    await emitter.error("a", "Node a failed: boom")
    await emitter.checkpoint("t1", WorkflowState(current_node="a"))

    assert [e.type for e in received] == [WorkflowEventType.ERROR, WorkflowEventType.CHECKPOINT]
    assert received[0].data == {"error": "Node a failed: boom"}
    assert received[1].node_id == "a"
    assert received[1].thread_id == "t1"


@pytest.mark.asyncio
async def test_event_emitter_without_subscribers_is_disabled():
    emitter = EventEmitter("wf", "t1")
    assert emitter.enabled is False
    await emitter.node_execution("a", WorkflowState(), 0.0)
