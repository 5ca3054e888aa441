"""Command line interface for dxgraph workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from .config import load_config
from .context import DiagnosticContext
from .contracts import WorkflowDefinition
from .definitions import default_workflows, load_definitions
from .exceptions import DxGraphError, WorkflowValidationError
from .orchestrator import GraphOrchestrator
from .persistence import get_checkpoint_store
from .planner import StagePlanner, validate_definition
from .plugins import PluginRegistry, resolve_reference

app = typer.Typer(help="CLI for dxgraph diagnostic workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
session_app = typer.Typer(help="Commands for inspecting sessions")
checkpoint_app = typer.Typer(help="Commands for inspecting checkpoints")

app.add_typer(workflow_app, name="workflow")
app.add_typer(session_app, name="session")
app.add_typer(checkpoint_app, name="checkpoint")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    """dxgraph CLI entry point."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)


def _load_workflows(source: str) -> List[WorkflowDefinition]:
    """Definitions from a YAML file, or the built-in workflow with that id."""
    path = Path(source)
    if path.exists():
        return load_definitions(path)
    builtin = [wf for wf in default_workflows() if wf.id == source]
    if not builtin:
        typer.secho(f"No workflow file or built-in workflow named {source}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return builtin


def _load_plugins(reference: Optional[str]) -> PluginRegistry:
    if not reference:
        return PluginRegistry()
    target = resolve_reference(reference)
    if callable(target) and not isinstance(target, PluginRegistry):
        target = target()
    if isinstance(target, PluginRegistry):
        return target
    if isinstance(target, dict):
        return PluginRegistry(target)
    typer.secho(f"{reference} is not a plugin registry or mapping", fg=typer.colors.RED)
    raise typer.Exit(code=1)


@workflow_app.command("list")
def workflow_list(
    file: Optional[Path] = typer.Option(None, help="YAML file with additional workflows"),
) -> None:
    """
    List available workflows.

    Shows the built-in workflows, plus those defined in ``--file``.

    Example:
        dxgraph workflow list
        # Output: workflow.baseline    Baseline MCP Regression    4 stages
    """
    workflows = default_workflows()
    if file is not None:
        workflows.extend(load_definitions(file))
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}\t{len(wf.stages)} stages")


@workflow_app.command("plan")
def workflow_plan(source: str) -> None:
    """
    Show execution batches and the critical path of a workflow.

    Args:
        source: YAML definition file or built-in workflow id
    """
    planner = StagePlanner()
    for wf in _load_workflows(source):
        plan = planner.plan(wf)
        typer.echo(f"Workflow {wf.id}")
        for index, batch in enumerate(plan.execution_order, start=1):
            typer.echo(f"  batch {index}: {', '.join(stage.id for stage in batch)}")
        typer.echo(f"  critical path: {' -> '.join(plan.critical_path)}")


@workflow_app.command("validate")
def workflow_validate(source: str) -> None:
    """Validate workflow definitions and report every problem found."""
    failed = False
    for wf in _load_workflows(source):
        try:
            warnings = validate_definition(wf)
        except WorkflowValidationError as e:
            failed = True
            typer.secho(f"{wf.id}: invalid", fg=typer.colors.RED)
            for error in e.errors:
                typer.echo(f"  - {error}")
            continue
        typer.secho(f"{wf.id}: ok", fg=typer.colors.GREEN)
        for warning in warnings:
            typer.echo(f"  warning: {warning}")
    if failed:
        raise typer.Exit(code=1)


@workflow_app.command("run")
def workflow_run(
    source: str,
    endpoint: str = typer.Option(..., help="Target server endpoint"),
    plugins: Optional[str] = typer.Option(
        None, help="module:attribute naming a PluginRegistry or {plugin_id: callable} mapping"
    ),
    workflow_id: Optional[str] = typer.Option(None, help="Workflow to run when the file has several"),
    thread_id: Optional[str] = typer.Option(None, help="Thread id for checkpointing"),
    timeout: Optional[float] = typer.Option(None, help="Run budget in seconds"),
    database_url: Optional[str] = typer.Option(None, help="Checkpoint store URL"),
) -> None:
    """
    Execute a workflow against an endpoint.

    Example:
        dxgraph workflow run workflow.baseline --endpoint http://localhost:3000 \\
            --plugins my_checks:PLUGINS
    """
    definitions = _load_workflows(source)
    if workflow_id:
        definitions = [wf for wf in definitions if wf.id == workflow_id]
        if not definitions:
            typer.secho(f"Workflow {workflow_id} not found in {source}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
    definition = definitions[0]

    config = load_config()
    orchestrator = GraphOrchestrator(
        _load_plugins(plugins),
        store=get_checkpoint_store(database_url, config),
        config=config,
    )

    async def _run():
        try:
            orchestrator.init(definitions)
            return await orchestrator.execute_workflow(
                definition.id,
                context=DiagnosticContext(endpoint=endpoint),
                thread_id=thread_id,
                timeout=timeout,
            )
        finally:
            await orchestrator.teardown()

    try:
        result = asyncio.run(_run())
    except DxGraphError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Workflow {result.workflow_id} thread {result.thread_id}: {result.status}")
    typer.echo(f"Path: {' -> '.join(result.state.execution_path)}")
    for finding in result.state.findings:
        typer.echo(f"- [{finding.severity}] {finding.area}: {finding.title}")
    for error in result.state.errors:
        typer.secho(f"error: {error}", fg=typer.colors.RED)
    if not result.success:
        raise typer.Exit(code=1)


@session_app.command("list")
def session_list(
    workflow_id: str,
    status: Optional[str] = typer.Option(None, help="Filter by session status"),
    database_url: Optional[str] = typer.Option(None, help="Checkpoint store URL"),
) -> None:
    """List sessions recorded for a workflow."""
    store = get_checkpoint_store(database_url)

    async def _list():
        try:
            return await store.list_sessions(workflow_id, status=status)
        finally:
            await store.close()

    sessions = asyncio.run(_list())
    if not sessions:
        typer.echo("No sessions found")
        return
    for session in sessions:
        typer.echo(
            f"{session.session_id}\t{session.thread_id}\t{session.status}\t"
            f"{session.last_checkpoint_id or '-'}"
        )


@checkpoint_app.command("show")
def checkpoint_show(
    workflow_id: str,
    thread_id: Optional[str] = typer.Option(None, help="Restrict to one thread"),
    database_url: Optional[str] = typer.Option(None, help="Checkpoint store URL"),
) -> None:
    """Show the latest checkpoint of a workflow or thread."""
    store = get_checkpoint_store(database_url)

    async def _latest():
        try:
            return await store.latest_checkpoint(workflow_id, thread_id)
        finally:
            await store.close()

    checkpoint = asyncio.run(_latest())
    if checkpoint is None:
        typer.echo("Checkpoint not found")
        raise typer.Exit(code=1)
    typer.echo(f"Checkpoint {checkpoint.checkpoint_id} ({checkpoint.thread_id})")
    typer.echo(f"Saved: {checkpoint.timestamp.isoformat()}")
    typer.echo(f"Metadata: {checkpoint.metadata.model_dump_json()}")
    typer.echo(
        json.dumps(
            {
                "current_node": checkpoint.state.get("current_node"),
                "findings": len(checkpoint.state.get("findings", [])),
                "errors": checkpoint.state.get("errors", []),
            },
            indent=2,
        )
    )


if __name__ == "__main__":  # pragma: no cover
    app()
