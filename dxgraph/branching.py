"""Conditional branching, fallback paths and loop detection."""

from __future__ import annotations

import logging
import math
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel

from .config import LoopDetectionConfig
from .constants import END, LOOP_BREAK_BRANCH_ID
from .contracts import (
    Branch,
    ComparisonOperator,
    Condition,
    ConditionEvaluation,
    ConditionType,
    ConditionValue,
    FallbackCondition,
    FallbackPath,
    RoutingDecision,
)
from .exceptions import RoutingError
from .state import WorkflowState

logger = logging.getLogger(__name__)

_STATE_READERS = {
    ConditionType.SEVERITY: ("Severity", lambda s: s.severity),
    ConditionType.FINDING_COUNT: ("Finding count", lambda s: s.finding_count),
    ConditionType.HAS_BLOCKERS: ("Has blockers:", lambda s: s.has_blockers),
    ConditionType.HAS_MAJOR: ("Has major:", lambda s: s.has_major),
    ConditionType.ERROR_COUNT: ("Error count", lambda s: len(s.errors)),
}


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip()) if value.strip() else 0.0
        except ValueError:
            return math.nan
    return math.nan


def _strict_equal(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    if isinstance(actual, (int, float)) and isinstance(expected, (int, float)):
        return actual == expected
    return type(actual) is type(expected) and actual == expected


def compare_values(actual: Any, operator: ComparisonOperator, expected: ConditionValue) -> bool:
    """Apply ``operator`` to an actual state value and the declared expectation."""
    if operator == ComparisonOperator.EQ:
        return _strict_equal(actual, expected)
    if operator == ComparisonOperator.NE:
        return not _strict_equal(actual, expected)
    if operator in (
        ComparisonOperator.GT,
        ComparisonOperator.GTE,
        ComparisonOperator.LT,
        ComparisonOperator.LTE,
    ):
        left, right = _to_number(actual), _to_number(expected)
        if math.isnan(left) or math.isnan(right):
            return False
        if operator == ComparisonOperator.GT:
            return left > right
        if operator == ComparisonOperator.GTE:
            return left >= right
        if operator == ComparisonOperator.LT:
            return left < right
        return left <= right
    if operator == ComparisonOperator.CONTAINS:
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        if isinstance(actual, (list, tuple)):
            return expected in actual
        return False
    if operator == ComparisonOperator.IN:
        if isinstance(expected, list):
            return _stringify(actual) in expected
        return False
    return False


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def get_field_value(state: Any, field: str) -> Any:
    """Read a dot path from state, descending through models and mappings."""
    value = state
    for part in field.split("."):
        if isinstance(value, dict):
            if part not in value:
                return None
            value = value[part]
        elif isinstance(value, BaseModel):
            if part in type(value).model_fields or part in (value.model_extra or {}):
                value = getattr(value, part)
            else:
                return None
        elif isinstance(value, (list, tuple)) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return None
    return value


class ConditionalBranchingEngine:
    """Resolves the next node of a run from its accumulated state.

    Holds the fallback-path table for one compiled workflow and the loop
    detection limits; otherwise stateless.
    """

    def __init__(self, loop_detection: Optional[LoopDetectionConfig] = None) -> None:
        self._loop_detection = (loop_detection or LoopDetectionConfig()).model_copy()
        self._fallback_paths: Dict[str, List[FallbackPath]] = {}

    def evaluate_branches(self, state: WorkflowState, branches: List[Branch]) -> RoutingDecision:
        if self._loop_detection.detect_cycles and self._loop_detection.break_on_loop:
            if self.detect_loop(state):
                return self.loop_break_decision()

        ordered = sorted(branches, key=lambda b: b.priority, reverse=True)
        for branch in ordered:
            evaluations = [self.evaluate_condition(state, c) for c in branch.conditions]
            results = [e.result for e in evaluations]
            matches = all(results) if branch.condition_logic == "AND" else any(results)
            if matches:
                decision = RoutingDecision(
                    target_node=branch.target_node,
                    branch_id=branch.id,
                    branch_name=branch.name,
                    reason=f"All {branch.condition_logic} conditions met",
                    conditions_evaluated=evaluations,
                )
                logger.debug(f"Branch {branch.id} selected, routing to {branch.target_node}")
                return decision

        fallback = next((b for b in ordered if b.fallback), None)
        if fallback is not None:
            logger.debug(f"No branch matched, using fallback {fallback.id}")
            return RoutingDecision(
                target_node=fallback.target_node,
                branch_id=fallback.id,
                branch_name=fallback.name,
                reason="No conditions matched, using fallback branch",
            )
        raise RoutingError("No branch matched and no fallback branch defined")

    def evaluate_condition(self, state: WorkflowState, condition: Condition) -> ConditionEvaluation:
        op = condition.operator.value
        if condition.type in _STATE_READERS:
            label, reader = _STATE_READERS[condition.type]
            actual = reader(state)
            result = compare_values(actual, condition.operator, condition.value)
            reason = f"{label} {actual} {op} {condition.value}"
        elif condition.type == ConditionType.NODE_VISITED:
            actual = str(condition.value) in state.visited_nodes
            result = compare_values(actual, condition.operator, True)
            reason = f"Node {condition.value} visited: {actual}"
        elif condition.field:
            actual = get_field_value(state, condition.field)
            result = compare_values(actual, condition.operator, condition.value)
            reason = f"Custom field {condition.field}: {actual} {op} {condition.value}"
        else:
            actual = None
            result = False
            reason = "Custom condition missing field"

        if condition.negate:
            result = not result
            reason = f"NOT ({reason})"

        return ConditionEvaluation(
            condition=condition,
            result=result,
            actual_value=actual,
            expected_value=condition.value,
            reason=reason,
        )

    def detect_loop(self, state: Union[WorkflowState, Sequence[str]]) -> bool:
        """Pure check of a visited-node history against the loop limits."""
        visited = list(state.visited_nodes if isinstance(state, WorkflowState) else state)
        limits = self._loop_detection
        if len(visited) > limits.max_iterations:
            return True
        if any(count > limits.max_same_node_visits for count in Counter(visited).values()):
            return True
        return len(visited) >= 3 and visited[-3] == visited[-1]

    @staticmethod
    def loop_break_decision() -> RoutingDecision:
        return RoutingDecision(
            target_node=END,
            branch_id=LOOP_BREAK_BRANCH_ID,
            branch_name="Loop Break",
            reason="Loop detected, breaking execution",
        )

    @staticmethod
    def create_severity_routing(
        blocker_node: str, major_node: str, minor_node: str, info_node: str
    ) -> List[Branch]:
        """Standard blocker > major > minor > info ladder."""
        return [
            Branch(
                id="blocker-branch",
                name="Blocker Severity",
                target_node=blocker_node,
                conditions=[Condition(type=ConditionType.HAS_BLOCKERS, value=True)],
                priority=100,
            ),
            Branch(
                id="major-branch",
                name="Major Severity",
                target_node=major_node,
                conditions=[Condition(type=ConditionType.HAS_MAJOR, value=True)],
                priority=90,
            ),
            Branch(
                id="minor-branch",
                name="Minor Severity",
                target_node=minor_node,
                conditions=[Condition(type=ConditionType.SEVERITY, value="minor")],
                priority=80,
            ),
            Branch(
                id="info-branch",
                name="Info Severity",
                target_node=info_node,
                priority=0,
                fallback=True,
            ),
        ]

    def add_fallback_path(self, path: FallbackPath) -> None:
        self._fallback_paths.setdefault(path.from_node, []).append(path)

    def get_fallback_path(
        self, from_node: str, state: WorkflowState, condition: FallbackCondition
    ) -> Optional[str]:
        """Target of the first registered fallback for ``from_node`` and ``condition``."""
        for path in self._fallback_paths.get(from_node, []):
            if path.condition != condition:
                continue
            if path.custom_condition is not None:
                if path.custom_condition(state):
                    return path.to_node
            else:
                return path.to_node
        return None

    def fallback_paths(self) -> List[FallbackPath]:
        return [path for paths in self._fallback_paths.values() for path in paths]

    def update_loop_detection(self, **changes: Any) -> None:
        self._loop_detection = self._loop_detection.model_copy(update=changes)

    def get_loop_detection(self) -> LoopDetectionConfig:
        return self._loop_detection.model_copy()
