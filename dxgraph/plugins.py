"""Plugin executor interface and an in-process plugin registry."""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Union

from .context import DiagnosticContext
from .contracts import Finding
from .exceptions import DxGraphError, PluginNotFoundError, StageExecutionError

logger = logging.getLogger(__name__)

PluginFunction = Callable[[DiagnosticContext, Dict[str, Any]], Any]


class PluginExecutor(Protocol):
    """Runs a diagnostic plugin and returns its findings."""

    async def execute(
        self, plugin_id: str, context: DiagnosticContext, inputs: Dict[str, Any]
    ) -> List[Finding]:
        """Execute ``plugin_id`` against ``context`` with mapped ``inputs``."""


def resolve_reference(reference: str) -> Any:
    """Import the object named by a ``package.module:attribute`` reference."""
    module_name, sep, attr_path = reference.partition(":")
    if not sep or not module_name or not attr_path:
        raise ValueError(f"Invalid reference '{reference}', expected 'module:attribute'")
    try:
        target: Any = importlib.import_module(module_name)
        for part in attr_path.split("."):
            target = getattr(target, part)
    except (ImportError, AttributeError) as e:
        raise ValueError(f"Failed to resolve '{reference}': {e}") from e
    return target


def coerce_findings(result: Any) -> List[Finding]:
    if result is None:
        return []
    if isinstance(result, (Finding, dict)):
        result = [result]
    findings: List[Finding] = []
    for item in result:
        findings.append(item if isinstance(item, Finding) else Finding.model_validate(item))
    return findings


class PluginRegistry:
    """Maps plugin ids to callables.

    Plugins take ``(context, inputs)`` and return findings (models or dicts).
    Coroutine functions are awaited; plain functions run in a worker thread so a
    blocking plugin never stalls other runs.
    """

    def __init__(self, plugins: Optional[Dict[str, PluginFunction]] = None) -> None:
        self._plugins: Dict[str, PluginFunction] = dict(plugins or {})

    def register(self, plugin_id: str, func: PluginFunction) -> None:
        if plugin_id in self._plugins:
            logger.info(f"Replacing plugin {plugin_id}")
        self._plugins[plugin_id] = func

    def register_from(self, mapping: Dict[str, str]) -> None:
        """Register plugins given as ``{plugin_id: "module:function"}``."""
        for plugin_id, reference in mapping.items():
            self.register(plugin_id, resolve_reference(reference))

    def has_plugin(self, plugin_id: str) -> bool:
        return plugin_id in self._plugins

    def list_plugins(self) -> List[str]:
        return sorted(self._plugins)

    async def execute(
        self, plugin_id: str, context: DiagnosticContext, inputs: Dict[str, Any]
    ) -> List[Finding]:
        func = self._plugins.get(plugin_id)
        if func is None:
            raise PluginNotFoundError(plugin_id)
        try:
            if inspect.iscoroutinefunction(func):
                result = await func(context, inputs)
            else:
                result = await asyncio.to_thread(func, context, inputs)
                if inspect.isawaitable(result):
                    result = await result
            return coerce_findings(result)
        except DxGraphError:
            raise
        except Exception as e:
            raise StageExecutionError(f"Plugin execution failed: {plugin_id} - {e}") from e

    async def execute_parallel(
        self, plugin_ids: Iterable[str], context: DiagnosticContext, inputs: Dict[str, Any]
    ) -> Dict[str, Union[List[Finding], Exception]]:
        """Run several plugins concurrently; failures are returned, not raised."""
        ids = list(plugin_ids)
        results = await asyncio.gather(
            *(self.execute(plugin_id, context, inputs) for plugin_id in ids),
            return_exceptions=True,
        )
        outcome: Dict[str, Union[List[Finding], Exception]] = {}
        for plugin_id, result in zip(ids, results):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            if isinstance(result, Exception):
                logger.warning(f"Plugin {plugin_id} failed: {result}")
            outcome[plugin_id] = result
        return outcome
