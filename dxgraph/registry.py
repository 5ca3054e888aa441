"""Explicitly owned registry of compiled workflows."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .branching import ConditionalBranchingEngine
from .config import LoopDetectionConfig
from .contracts import Edge, ExecutionPlan, Stage, WorkflowDefinition
from .planner import StagePlanner, validate_definition

logger = logging.getLogger(__name__)


@dataclass
class CompiledWorkflow:
    """Executable handle of a definition.

    Runs hold a reference to the handle they started with, so replacing or
    removing the registry entry never affects them.
    """

    definition: WorkflowDefinition
    plan: ExecutionPlan
    engine: ConditionalBranchingEngine
    outgoing: Dict[str, List[Edge]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def workflow_id(self) -> str:
        return self.definition.id

    @property
    def entry_point(self) -> str:
        if self.definition.entry_point:
            return self.definition.entry_point
        order = self.plan.flattened()
        return order[0] if order else self.definition.stages[0].id

    def stage(self, stage_id: str) -> Optional[Stage]:
        return self.definition.get_stage(stage_id)

    def plan_successor(self, stage_id: str) -> Optional[str]:
        order = self.plan.flattened()
        if stage_id not in order:
            return None
        index = order.index(stage_id)
        return order[index + 1] if index + 1 < len(order) else None


def compile_definition(
    definition: WorkflowDefinition,
    planner: StagePlanner,
    loop_detection: Optional[LoopDetectionConfig] = None,
) -> CompiledWorkflow:
    """Validate a definition and build its plan, routing engine and edge table."""
    warnings = validate_definition(definition)
    planner.invalidate(definition.id)
    engine = ConditionalBranchingEngine(loop_detection)
    for path in definition.fallback_paths:
        engine.add_fallback_path(path)
    outgoing: Dict[str, List[Edge]] = {}
    for edge in definition.edges:
        outgoing.setdefault(edge.source, []).append(edge)
    return CompiledWorkflow(
        definition=definition,
        plan=planner.plan(definition),
        engine=engine,
        outgoing=outgoing,
        warnings=warnings,
    )


class WorkflowRegistry:
    """Maps workflow ids to compiled handles.

    Reads go to an immutable snapshot without locking; writes are serialised
    and publish a new snapshot.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, CompiledWorkflow] = {}

    def init(self, workflows: Iterable[CompiledWorkflow] = ()) -> None:
        """Clear the registry and load ``workflows``."""
        entries = {wf.workflow_id: wf for wf in workflows}
        with self._lock:
            self._entries = entries
        logger.info(f"Workflow registry initialised with {len(entries)} workflows")

    def register(self, workflow: CompiledWorkflow) -> None:
        with self._lock:
            entries = dict(self._entries)
            if workflow.workflow_id in entries:
                logger.info(f"Replacing workflow {workflow.workflow_id}")
            entries[workflow.workflow_id] = workflow
            self._entries = entries

    def get(self, workflow_id: str) -> Optional[CompiledWorkflow]:
        return self._entries.get(workflow_id)

    def remove(self, workflow_id: str) -> bool:
        with self._lock:
            if workflow_id not in self._entries:
                return False
            entries = dict(self._entries)
            del entries[workflow_id]
            self._entries = entries
        return True

    def list(self) -> List[CompiledWorkflow]:
        return list(self._entries.values())

    def __contains__(self, workflow_id: object) -> bool:
        return workflow_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
