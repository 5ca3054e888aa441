"""Stage dependency planning and workflow definition validation."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, List, Set

from .constants import END
from .contracts import ExecutionPlan, Stage, StageKind, WorkflowDefinition
from .exceptions import WorkflowValidationError

logger = logging.getLogger(__name__)


def build_dependency_graph(definition: WorkflowDefinition) -> Dict[str, List[str]]:
    """Map every stage id to the ids of the stages it depends on."""
    graph: Dict[str, List[str]] = {stage.id: [] for stage in definition.stages}
    for dep in definition.dependencies:
        upstream = graph.setdefault(dep.to_stage, [])
        if dep.from_stage not in upstream:
            upstream.append(dep.from_stage)
    return graph


def find_cycle(graph: Dict[str, List[str]]) -> List[str]:
    """Return one dependency cycle as a list of stage ids, or an empty list."""
    visited: Set[str] = set()
    stack: List[str] = []
    on_stack: Set[str] = set()

    def dfs(node_id: str) -> List[str]:
        visited.add(node_id)
        stack.append(node_id)
        on_stack.add(node_id)
        for upstream in graph.get(node_id, []):
            if upstream not in visited:
                cycle = dfs(upstream)
                if cycle:
                    return cycle
            elif upstream in on_stack:
                return stack[stack.index(upstream):] + [upstream]
        stack.pop()
        on_stack.discard(node_id)
        return []

    for node_id in graph:
        if node_id not in visited:
            cycle = dfs(node_id)
            if cycle:
                return cycle
    return []


class StagePlanner:
    """Derives execution plans from immutable workflow definitions.

    Plans are pure functions of the definition, so they are cached per
    workflow id. Call :meth:`invalidate` when a definition is replaced.
    """

    def __init__(self) -> None:
        self._cache: Dict[str, ExecutionPlan] = {}

    def plan(self, definition: WorkflowDefinition) -> ExecutionPlan:
        cached = self._cache.get(definition.id)
        if cached is not None:
            return cached

        graph = build_dependency_graph(definition)
        plan = ExecutionPlan(
            workflow_id=definition.id,
            execution_order=self._batches(definition, graph),
            dependency_graph=graph,
            critical_path=self._critical_path(definition, graph),
        )
        self._cache[definition.id] = plan
        logger.debug(
            f"Planned workflow {definition.id}: {len(plan.execution_order)} batches, "
            f"critical path {' -> '.join(plan.critical_path)}"
        )
        return plan

    def invalidate(self, workflow_id: str) -> None:
        self._cache.pop(workflow_id, None)

    def _batches(
        self, definition: WorkflowDefinition, graph: Dict[str, List[str]]
    ) -> List[List[Stage]]:
        # A stage never shares a batch with, or precedes, a stage it depends on:
        # its effective order is bumped past its dependencies when needed.
        levels: Dict[str, int] = {}

        def level(stage_id: str, path: Set[str]) -> int:
            if stage_id in levels:
                return levels[stage_id]
            stage = definition.get_stage(stage_id)
            value = stage.order if stage else 0
            for upstream in graph.get(stage_id, []):
                if upstream in path:
                    continue
                value = max(value, level(upstream, path | {stage_id}) + 1)
            levels[stage_id] = value
            return value

        grouped: Dict[int, List[Stage]] = {}
        for stage in definition.stages:
            effective = level(stage.id, set())
            if effective != stage.order:
                logger.warning(
                    f"Stage {stage.id} declares order {stage.order} but runs after its "
                    f"dependencies at order {effective}"
                )
            grouped.setdefault(effective, []).append(stage)
        return [grouped[key] for key in sorted(grouped)]

    def _critical_path(
        self, definition: WorkflowDefinition, graph: Dict[str, List[str]]
    ) -> List[str]:
        longest: List[str] = []

        def walk(stage_id: str, path: List[str]) -> None:
            nonlocal longest
            path = path + [stage_id]
            if len(path) > len(longest):
                longest = path
            for upstream in graph.get(stage_id, []):
                if upstream not in path:
                    walk(upstream, path)

        for stage in definition.stages:
            walk(stage.id, [])
        return list(reversed(longest))


def validate_definition(definition: WorkflowDefinition) -> List[str]:
    """Check a definition for structural errors.

    Returns the list of non-fatal warnings and raises
    :class:`WorkflowValidationError` listing every error found.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not definition.stages:
        errors.append("Workflow must have at least one stage")

    counts = Counter(stage.id for stage in definition.stages)
    duplicates = sorted(stage_id for stage_id, count in counts.items() if count > 1)
    if duplicates:
        errors.append(f"Duplicate stage IDs: {', '.join(duplicates)}")

    known = set(counts)
    targets = known | {END}

    for stage in definition.stages:
        if stage.kind == StageKind.PLUGIN and not stage.plugin_id and stage.handler is None:
            errors.append(f"Plugin stage {stage.id} has no plugin_id")
        fallbacks = [b for b in stage.branches if b.fallback]
        if len(fallbacks) > 1:
            errors.append(f"Stage {stage.id} declares more than one fallback branch")
        for branch in stage.branches:
            if branch.target_node not in targets:
                errors.append(
                    f"Branch {branch.id} of stage {stage.id} targets unknown node {branch.target_node}"
                )

    for dep in definition.dependencies:
        for stage_id in (dep.from_stage, dep.to_stage):
            if stage_id not in known:
                errors.append(f"Dependency references unknown stage: {stage_id}")

    for edge in definition.edges:
        if edge.source not in known:
            errors.append(f"Edge references unknown source: {edge.source}")
        if edge.target not in targets:
            errors.append(f"Edge references unknown target: {edge.target}")

    for path in definition.fallback_paths:
        if path.from_node not in known:
            errors.append(f"Fallback path references unknown node: {path.from_node}")
        if path.to_node not in targets:
            errors.append(f"Fallback path references unknown node: {path.to_node}")
        if path.condition == "custom" and path.custom_condition is None:
            errors.append(f"Custom fallback path from {path.from_node} has no predicate")

    if definition.entry_point is not None and definition.entry_point not in known:
        errors.append(f"Entry point {definition.entry_point} is not a stage")

    cycle = find_cycle(build_dependency_graph(definition))
    if cycle:
        errors.append(f"Circular dependency detected: {' -> '.join(reversed(cycle))}")

    if errors:
        raise WorkflowValidationError(errors, workflow_id=definition.id)

    for dep in definition.dependencies:
        source = definition.get_stage(dep.from_stage)
        target = definition.get_stage(dep.to_stage)
        if source and target and source.order >= target.order:
            warnings.append(
                f"Stage {target.id} (order {target.order}) depends on {source.id} "
                f"(order {source.order}) which does not run earlier"
            )
    for warning in warnings:
        logger.warning(warning)
    return warnings
