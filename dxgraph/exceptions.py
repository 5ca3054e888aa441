"""Exceptions raised by the dxgraph orchestration engine."""

from __future__ import annotations

from typing import List, Optional


class DxGraphError(Exception):
    """Base class for all dxgraph errors."""


class ConfigurationError(DxGraphError):
    """Raised before any stage runs when a request cannot be satisfied."""


class WorkflowNotFoundError(ConfigurationError):
    """Raised when a workflow id is not present in the registry."""

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class MissingContextError(ConfigurationError):
    """Raised when a run is started without a diagnostic context."""


class WorkflowValidationError(ConfigurationError):
    """Raised when a workflow definition is malformed."""

    def __init__(self, errors: List[str], workflow_id: Optional[str] = None):
        prefix = f"Invalid workflow definition {workflow_id}" if workflow_id else "Invalid workflow definition"
        super().__init__(f"{prefix}: {', '.join(errors)}")
        self.errors = errors
        self.workflow_id = workflow_id


class DependencyError(DxGraphError):
    """Raised when a stage is started while a required upstream stage is unmet."""

    def __init__(self, stage_id: str, missing: List[str]):
        super().__init__(f"Missing required dependencies: {', '.join(missing)}")
        self.stage_id = stage_id
        self.missing = missing


class StageExecutionError(DxGraphError):
    """Raised when a stage fails while running."""


class PluginNotFoundError(StageExecutionError):
    """Raised when a stage references a plugin that is not registered."""

    def __init__(self, plugin_id: str):
        super().__init__(f"Plugin not found: {plugin_id}")
        self.plugin_id = plugin_id


class StageTimeoutError(StageExecutionError):
    """Raised when a stage exceeds its time budget."""

    def __init__(self, stage_id: str, timeout: float):
        super().__init__(f"Execution timeout after {timeout:.3f}s")
        self.stage_id = stage_id
        self.timeout = timeout


class RoutingError(DxGraphError):
    """Raised when no branch matches and no fallback is available."""


class PersistenceError(DxGraphError):
    """Raised when checkpoint persistence fails and durability is required."""


class ResourceUnavailableError(DxGraphError):
    """Raised when a live resource is used after being restored from a checkpoint."""
