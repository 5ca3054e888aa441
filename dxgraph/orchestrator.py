"""Stateful graph orchestrator driving workflow runs."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict

from .config import DxGraphConfig
from .constants import END
from .context import DiagnosticContext
from .contracts import ExecutionPlan, FallbackPath, Stage, WorkflowDefinition
from .events import EventCallback, EventEmitter
from .exceptions import (
    ConfigurationError,
    DependencyError,
    MissingContextError,
    PersistenceError,
    RoutingError,
    StageTimeoutError,
    WorkflowNotFoundError,
)
from .mapping import DataMapper, extract_outputs
from .nodes import execute_node
from .persistence import (
    Checkpoint,
    CheckpointMetadata,
    CheckpointStore,
    InMemoryCheckpointStore,
    SessionStatus,
    StateTransition,
)
from .planner import StagePlanner
from .plugins import PluginExecutor
from .registry import CompiledWorkflow, WorkflowRegistry, compile_definition
from .state import (
    RunStatus,
    StageStatus,
    WorkflowExecutionContext,
    WorkflowState,
    merge_state,
    new_run_state,
)

logger = logging.getLogger(__name__)


class NodeOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


class ExecutionResult(BaseModel):
    """What a caller gets back from every run, successful or not."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    workflow_id: str
    thread_id: str
    state: WorkflowState
    success: bool
    execution_time: float
    checkpoint_id: Optional[str] = None
    status: RunStatus
    session_id: Optional[str] = None
    execution_context: Optional[WorkflowExecutionContext] = None


@dataclass
class _Run:
    compiled: CompiledWorkflow
    thread_id: str
    checkpoint_id: str
    context: WorkflowExecutionContext
    emitter: EventEmitter
    started: float
    budget: Optional[float] = None
    session_id: Optional[str] = None
    checkpoint_after: Set[str] = field(default_factory=set)
    grace_node: Optional[str] = None

    @property
    def workflow_id(self) -> str:
        return self.compiled.workflow_id

    def remaining(self) -> Optional[float]:
        if self.budget is None:
            return None
        return self.budget - (time.perf_counter() - self.started)


class GraphOrchestrator:
    """Compiles workflow definitions and executes them node by node.

    The orchestrator owns no global state: the registry, plugin executor and
    checkpoint store are passed in by the caller that constructs it.
    """

    def __init__(
        self,
        plugins: PluginExecutor,
        store: Optional[CheckpointStore] = None,
        registry: Optional[WorkflowRegistry] = None,
        config: Optional[DxGraphConfig] = None,
    ) -> None:
        self._plugins = plugins
        self._store = store if store is not None else InMemoryCheckpointStore()
        self._registry = registry if registry is not None else WorkflowRegistry()
        self._config = config or DxGraphConfig()
        self._planner = StagePlanner()
        self._mapper = DataMapper()
        self._active_runs: Set[asyncio.Task] = set()

    @property
    def store(self) -> CheckpointStore:
        return self._store

    @property
    def registry(self) -> WorkflowRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Lifecycle
    def init(self, definitions: Iterable[WorkflowDefinition] = ()) -> None:
        """Clear the registry and load ``definitions``."""
        self._registry.init(self._compile(d) for d in definitions)

    async def teardown(self) -> None:
        """Cancel in-flight runs, wait for their checkpoints and close the store."""
        current = asyncio.current_task()
        tasks = [task for task in self._active_runs if task is not current and not task.done()]
        if tasks:
            logger.info(f"Cancelling {len(tasks)} in-flight runs")
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._store.close()

    # ------------------------------------------------------------------
    # Workflow registry API
    def _compile(self, definition: WorkflowDefinition) -> CompiledWorkflow:
        return compile_definition(definition, self._planner, self._config.loop_detection)

    def create_workflow(self, definition: WorkflowDefinition) -> CompiledWorkflow:
        compiled = self._compile(definition)
        self._registry.register(compiled)
        logger.info(f"Created workflow {definition.id} with {len(definition.stages)} stages")
        return compiled

    def compile_workflow(self, workflow_id: str) -> CompiledWorkflow:
        existing = self._require(workflow_id)
        compiled = self._compile(existing.definition)
        for path in existing.engine.fallback_paths():
            if path not in compiled.engine.fallback_paths():
                compiled.engine.add_fallback_path(path)
        self._registry.register(compiled)
        return compiled

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        compiled = self._registry.get(workflow_id)
        return compiled.definition if compiled else None

    def list_workflows(self) -> List[WorkflowDefinition]:
        return [compiled.definition for compiled in self._registry.list()]

    def delete_workflow(self, workflow_id: str) -> bool:
        removed = self._registry.remove(workflow_id)
        if removed:
            self._planner.invalidate(workflow_id)
            logger.info(f"Deleted workflow {workflow_id}")
        return removed

    def add_fallback_path(self, workflow_id: str, path: FallbackPath) -> None:
        compiled = self._require(workflow_id)
        if compiled.stage(path.from_node) is None:
            raise ConfigurationError(f"Fallback path references unknown node: {path.from_node}")
        compiled.engine.add_fallback_path(path)

    def plan(self, workflow_id: str) -> ExecutionPlan:
        return self._require(workflow_id).plan

    def _require(self, workflow_id: str) -> CompiledWorkflow:
        compiled = self._registry.get(workflow_id)
        if compiled is None:
            raise WorkflowNotFoundError(workflow_id)
        return compiled

    # ------------------------------------------------------------------
    # Execution API
    async def execute_workflow(
        self,
        workflow_id: str,
        initial_state: Optional[Mapping[str, Any]] = None,
        *,
        context: Optional[DiagnosticContext] = None,
        thread_id: Optional[str] = None,
        checkpoint_id: Optional[str] = None,
        stream_events: bool = False,
        on_event: Optional[EventCallback] = None,
        timeout: Optional[float] = None,
        checkpoint_after: Collection[str] = (),
    ) -> ExecutionResult:
        """Run a registered workflow from its entry point."""
        compiled = self._require(workflow_id)
        data = dict(initial_state or {})
        context = self._resolve_context(context, data.pop("context", None))
        thread_id = thread_id or f"thread-{uuid.uuid4().hex}"
        run = self._new_run(
            compiled,
            thread_id,
            checkpoint_id or thread_id,
            WorkflowExecutionContext.for_definition(compiled.definition, thread_id),
            stream_events,
            on_event,
            timeout,
            checkpoint_after,
        )
        state = new_run_state(data, context)
        run.session_id = await self._open_session(run, context)
        logger.info(f"Executing workflow {workflow_id} on thread {thread_id}")
        return await self._drive(run, state, compiled.entry_point)

    async def resume_workflow(
        self,
        workflow_id: str,
        thread_id: str,
        user_response: Optional[str] = None,
        *,
        checkpoint_id: Optional[str] = None,
        context: Optional[DiagnosticContext] = None,
        stream_events: bool = False,
        on_event: Optional[EventCallback] = None,
        timeout: Optional[float] = None,
        checkpoint_after: Collection[str] = (),
    ) -> ExecutionResult:
        """Continue a run from its latest (or a named) checkpoint."""
        compiled = self._require(workflow_id)
        if checkpoint_id:
            checkpoint = await self._store.load_checkpoint(checkpoint_id, workflow_id, thread_id)
        else:
            checkpoint = await self._store.latest_checkpoint(workflow_id, thread_id)
        if checkpoint is None:
            raise ConfigurationError(
                f"No checkpoint found for workflow {workflow_id} thread {thread_id}"
            )

        state = WorkflowState.from_snapshot(checkpoint.state, context=context)
        if checkpoint.execution_context:
            exec_ctx = WorkflowExecutionContext.model_validate(checkpoint.execution_context)
        else:
            exec_ctx = WorkflowExecutionContext.for_definition(compiled.definition, thread_id)
        update: Dict[str, Any] = {"awaiting_user_input": False, "status": "running"}
        if user_response is not None:
            update["user_response"] = user_response
        state = merge_state(state, update)

        base_checkpoint_id = checkpoint.checkpoint_id
        suffix = f":{state.current_node}"
        if state.current_node and base_checkpoint_id.endswith(suffix):
            base_checkpoint_id = base_checkpoint_id[: -len(suffix)]
        run = self._new_run(
            compiled,
            thread_id,
            base_checkpoint_id,
            exec_ctx,
            stream_events,
            on_event,
            timeout,
            checkpoint_after,
        )
        run.session_id = await self._reopen_session(run, state.context)
        logger.info(
            f"Resuming workflow {workflow_id} on thread {thread_id} "
            f"from checkpoint {checkpoint.checkpoint_id}"
        )

        current = state.current_node
        stage = compiled.stage(current) if current else None
        if stage is None:
            return await self._drive(run, state, compiled.entry_point)
        record = exec_ctx.get(stage.id)
        outcome = NodeOutcome.COMPLETED
        if record is not None and record.status == StageStatus.FAILED:
            outcome = NodeOutcome.FAILED
        return await self._drive(run, state, None, resume_from=(stage, outcome))

    # ------------------------------------------------------------------
    # Run internals
    def _resolve_context(
        self, context: Optional[DiagnosticContext], from_state: Any
    ) -> DiagnosticContext:
        candidate = context if context is not None else from_state
        if candidate is None:
            raise MissingContextError("A diagnostic context is required to execute a workflow")
        if isinstance(candidate, DiagnosticContext):
            return candidate
        if isinstance(candidate, Mapping):
            return DiagnosticContext(**candidate)
        raise MissingContextError(
            f"Unsupported diagnostic context type: {type(candidate).__name__}"
        )

    def _new_run(
        self,
        compiled: CompiledWorkflow,
        thread_id: str,
        checkpoint_id: str,
        exec_ctx: WorkflowExecutionContext,
        stream_events: bool,
        on_event: Optional[EventCallback],
        timeout: Optional[float],
        checkpoint_after: Collection[str],
    ) -> _Run:
        callbacks = [on_event] if stream_events and on_event is not None else []
        settings = self._config.orchestrator
        return _Run(
            compiled=compiled,
            thread_id=thread_id,
            checkpoint_id=checkpoint_id,
            context=exec_ctx,
            emitter=EventEmitter(compiled.workflow_id, thread_id, callbacks),
            started=time.perf_counter(),
            budget=timeout or settings.run_timeout or compiled.definition.timeout,
            checkpoint_after=set(checkpoint_after),
        )

    async def _drive(
        self,
        run: _Run,
        state: WorkflowState,
        start_node: Optional[str],
        resume_from: Optional[Tuple[Stage, NodeOutcome]] = None,
    ) -> ExecutionResult:
        task = asyncio.current_task()
        if task is not None:
            self._active_runs.add(task)
        try:
            try:
                if resume_from is not None:
                    stage, outcome = resume_from
                    state, start_node = await self._route(run, stage, state, outcome, 0.0)
                state = await self._walk(run, state, start_node)
            except RoutingError as e:
                state = merge_state(state, {"errors": [str(e)], "status": "failed"})
                await run.emitter.error(state.current_node or None, str(e))
                await self._finish(run, state)
                raise
            except asyncio.CancelledError:
                state = merge_state(state, {"errors": ["Run cancelled"], "status": "failed"})
                await self._finish(run, state)
                raise
            return await self._finish(run, state)
        finally:
            if task is not None:
                self._active_runs.discard(task)

    async def _walk(
        self, run: _Run, state: WorkflowState, node_id: Optional[str]
    ) -> WorkflowState:
        max_steps = self._config.orchestrator.max_steps
        steps = 0
        while node_id and node_id != END:
            steps += 1
            if steps > max_steps:
                state = merge_state(state, {"errors": [f"Maximum step count {max_steps} exceeded"]})
                break
            stage = run.compiled.stage(node_id)
            if stage is None:
                raise RoutingError(f"Routing target {node_id} is not a stage")
            remaining = run.remaining()
            if remaining is not None and remaining <= 0 and node_id != run.grace_node:
                message = f"Workflow timeout after {run.budget:.3f}s before node {node_id}"
                logger.warning(message)
                state = merge_state(state, {"errors": [message]})
                break

            started = time.perf_counter()
            state, outcome = await self._run_node(run, stage, state)
            duration = time.perf_counter() - started
            if stage.id in run.checkpoint_after:
                await self._persist(run, state, f"{run.checkpoint_id}:{stage.id}")
            if state.awaiting_user_input:
                logger.info(f"Workflow {run.workflow_id} awaiting input at {stage.id}")
                break
            state, node_id = await self._route(run, stage, state, outcome, duration)
        return state

    async def _run_node(
        self, run: _Run, stage: Stage, state: WorkflowState
    ) -> Tuple[WorkflowState, NodeOutcome]:
        definition = run.compiled.definition
        started = time.perf_counter()
        record = run.context.begin(stage)
        state = merge_state(
            state,
            {"current_node": stage.id, "visited_nodes": [stage.id], "execution_path": [stage.id]},
        )
        outcome = NodeOutcome.COMPLETED
        try:
            if stage.condition is not None and not run.compiled.engine.evaluate_condition(
                state, stage.condition
            ).result:
                logger.debug(f"Skipping stage {stage.id}: condition not met")
                record.finish(StageStatus.SKIPPED)
                outcome = NodeOutcome.SKIPPED
            else:
                mapping = self._mapper.map_inputs(stage, definition, run.context)
                missing = self._mapper.missing_required(stage, definition, mapping)
                if missing:
                    raise DependencyError(stage.id, missing)
                record.input_data = mapping.mapped_data
                before = len(state.findings)
                state = await self._with_timeout(
                    run,
                    stage,
                    execute_node(stage, state, mapping.mapped_data, self._plugins),
                )
                findings = state.findings[before:]
                record.finish(
                    StageStatus.COMPLETED,
                    findings=findings,
                    output_data=extract_outputs(findings),
                )
        except Exception as e:
            outcome = NodeOutcome.TIMEOUT if isinstance(e, StageTimeoutError) else NodeOutcome.FAILED
            message = f"Node {stage.id} failed: {e}"
            logger.warning(message)
            if not record.is_terminal:
                record.finish(StageStatus.FAILED, error=str(e))
            state = merge_state(state, {"errors": [message]})
            await run.emitter.error(stage.id, message)

        duration = time.perf_counter() - started
        state = merge_state(state, {"node_timings": {stage.id: duration}})
        self._mapper.update_global_context(run.context, stage.id, record)
        await run.emitter.node_execution(stage.id, state, duration)
        return state, outcome

    async def _with_timeout(self, run: _Run, stage: Stage, coro: Any) -> WorkflowState:
        limit = stage.timeout or self._config.orchestrator.default_stage_timeout
        remaining = run.remaining()
        if remaining is not None and stage.id != run.grace_node:
            limit = min(limit, remaining) if limit else remaining
        if limit is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, max(limit, 0.0))
        except asyncio.TimeoutError:
            raise StageTimeoutError(stage.id, limit) from None

    async def _route(
        self,
        run: _Run,
        stage: Stage,
        state: WorkflowState,
        outcome: NodeOutcome,
        duration: float,
    ) -> Tuple[WorkflowState, str]:
        state, target, kind = self._resolve_next(run, stage, state, outcome)
        logger.debug(f"Routing {stage.id} -> {target} ({kind})")
        await run.emitter.edge_traversal(stage.id, target, kind)
        await self._record_transition(run, stage.id, target, kind, duration)
        return state, target

    def _resolve_next(
        self,
        run: _Run,
        stage: Stage,
        state: WorkflowState,
        outcome: NodeOutcome,
    ) -> Tuple[WorkflowState, str, str]:
        compiled = run.compiled
        engine = compiled.engine
        limits = engine.get_loop_detection()

        if limits.detect_cycles and engine.detect_loop(state):
            if limits.break_on_loop:
                decision = engine.loop_break_decision()
                message = f"Loop detected at node {stage.id}, breaking execution"
                logger.warning(message)
                state = merge_state(state, {"routing_decisions": [decision], "errors": [message]})
                return state, decision.target_node, "loop_break"
            logger.warning(f"Loop detected at node {stage.id}, continuing")

        target = engine.get_fallback_path(stage.id, state, "custom")
        if target:
            return state, target, "fallback"

        if outcome in (NodeOutcome.FAILED, NodeOutcome.TIMEOUT):
            if outcome == NodeOutcome.TIMEOUT:
                target = engine.get_fallback_path(stage.id, state, "timeout")
                if target:
                    run.grace_node = target
                    return state, target, "fallback"
            target = engine.get_fallback_path(stage.id, state, "error")
            if target:
                return state, target, "fallback"
            if not self._config.orchestrator.continue_on_error:
                return state, END, "terminate"

        if stage.branches:
            try:
                decision = engine.evaluate_branches(state, stage.branches)
            except RoutingError:
                target = engine.get_fallback_path(stage.id, state, "no_match")
                if target is None:
                    raise
                return state, target, "fallback"
            state = merge_state(state, {"routing_decisions": [decision]})
            return state, decision.target_node, "branch"

        edges = compiled.outgoing.get(stage.id, [])
        for edge in edges:
            if edge.condition is None or engine.evaluate_condition(state, edge.condition).result:
                return state, edge.target, "edge"
        if edges:
            return state, END, "edge"

        if not compiled.definition.edges:
            successor = compiled.plan_successor(stage.id)
            if successor:
                return state, successor, "plan"
        return state, END, "end"

    # ------------------------------------------------------------------
    # Persistence
    async def _finish(self, run: _Run, state: WorkflowState) -> ExecutionResult:
        if state.awaiting_user_input:
            status: RunStatus = "awaiting_input"
        elif state.errors:
            status = "failed"
        else:
            status = "completed"
        state = merge_state(state, {"status": status})
        execution_time = time.perf_counter() - run.started

        checkpoint_id = None
        if run.compiled.definition.enable_checkpointing:
            checkpoint_id = await self._persist(run, state, run.checkpoint_id)
        await self._update_session(run, status)

        logger.info(
            f"Workflow {run.workflow_id} thread {run.thread_id} {status} in "
            f"{execution_time:.3f}s with {len(state.findings)} findings, {len(state.errors)} errors"
        )
        return ExecutionResult(
            workflow_id=run.workflow_id,
            thread_id=run.thread_id,
            state=state,
            success=not state.errors,
            execution_time=execution_time,
            checkpoint_id=checkpoint_id,
            status=status,
            session_id=run.session_id,
            execution_context=run.context,
        )

    def _persistence_failed(self, action: str, error: Exception) -> None:
        logger.exception(f"Failed to {action}: {error}")
        if self._config.orchestrator.durable_checkpoints:
            raise PersistenceError(f"Failed to {action}: {error}") from error

    async def _persist(self, run: _Run, state: WorkflowState, checkpoint_id: str) -> Optional[str]:
        checkpoint = Checkpoint(
            checkpoint_id=checkpoint_id,
            workflow_id=run.workflow_id,
            thread_id=run.thread_id,
            state=state.to_snapshot(),
            execution_context=run.context.model_dump(mode="json"),
            metadata=CheckpointMetadata(
                execution_time=time.perf_counter() - run.started,
                finding_count=len(state.findings),
                error_count=len(state.errors),
                severity=state.severity,
                status=state.status,
                current_node=state.current_node or None,
            ),
        )
        try:
            await self._store.save_checkpoint(checkpoint)
        except Exception as e:
            self._persistence_failed(f"save checkpoint {checkpoint_id}", e)
            return None
        await run.emitter.checkpoint(checkpoint_id, state)
        return checkpoint_id

    async def _open_session(self, run: _Run, context: DiagnosticContext) -> Optional[str]:
        meta = {
            "deterministic": context.deterministic,
            "deterministic_seed": context.deterministic_seed,
            "endpoint": context.endpoint,
        }
        try:
            return await self._store.create_session(run.workflow_id, run.thread_id, meta)
        except Exception as e:
            self._persistence_failed(f"create session for thread {run.thread_id}", e)
            return None

    async def _reopen_session(self, run: _Run, context: DiagnosticContext) -> Optional[str]:
        try:
            sessions = await self._store.list_sessions(run.workflow_id, thread_id=run.thread_id)
        except Exception as e:
            self._persistence_failed(f"look up session for thread {run.thread_id}", e)
            return None
        if not sessions:
            return await self._open_session(run, context)
        session_id = sessions[0].session_id
        try:
            await self._store.update_session_status(session_id, "active")
        except Exception as e:
            self._persistence_failed(f"reactivate session {session_id}", e)
        return session_id

    async def _update_session(self, run: _Run, status: SessionStatus) -> None:
        if run.session_id is None:
            return
        try:
            await self._store.update_session_status(run.session_id, status)
        except Exception as e:
            self._persistence_failed(f"update session {run.session_id}", e)

    async def _record_transition(
        self, run: _Run, source: str, target: str, kind: str, duration: float
    ) -> None:
        transition = StateTransition(
            workflow_id=run.workflow_id,
            thread_id=run.thread_id,
            checkpoint_id=run.checkpoint_id,
            from_node=source,
            to_node=target,
            transition_type=kind,
            duration_ms=duration * 1000,
        )
        try:
            await self._store.record_transition(transition)
        except Exception as e:
            self._persistence_failed(f"record transition {source} -> {target}", e)
