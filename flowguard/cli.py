"""Command line interface for managing flowguard workflows and executions."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError as PydanticValidationError

from flowguard import get_repository, get_transport
from flowguard.completion import PydanticAICompletionService
from flowguard.config import load_config
from flowguard.contracts import WorkflowDefinition
from flowguard.errors import FlowguardError, NotFoundError
from flowguard.execution import Execution, ExecutionEngine, ExecutionStatus, validate_workflow

app = typer.Typer(help="CLI for flowguard workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for inspecting and controlling executions")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
) -> None:
    """Flowguard CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_engine() -> ExecutionEngine:
    config = load_config()
    return ExecutionEngine(
        get_repository(),
        completion=PydanticAICompletionService(),
        transport=get_transport(config=config),
        config=config,
    )


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _echo_execution(execution: Execution) -> None:
    typer.echo(f"Execution {execution.execution_id}: {execution.status.value}")
    if execution.error_message:
        typer.echo(f"Error: {execution.error_message}")
    pending = execution.open_intervention()
    if pending is not None:
        typer.echo(
            f"Awaiting decision on intervention {pending.intervention_id}"
            + (f" after {pending.node}" if pending.node else "")
        )


# ----------------------------------------------------------------------
# Workflows
@workflow_app.command("register")
def workflow_register(path: Path) -> None:
    """
    Register a workflow definition from a YAML or JSON file.

    The definition is validated (unknown agents, broken connections, invalid
    conditions, cycles) before it is stored in the configured repository.

    Example:
        flowguard workflow register ./workflows/inspection.yaml
    """
    if not path.exists():
        _fail(f"File {path} does not exist")
    try:
        data = yaml.safe_load(path.read_text()) or {}
        definition = WorkflowDefinition.model_validate(data)
    except (yaml.YAMLError, PydanticValidationError) as e:
        _fail(f"Invalid workflow definition: {e}")

    errors = validate_workflow(definition)
    if errors:
        typer.secho("Workflow definition is invalid:", fg=typer.colors.RED)
        for error in errors:
            typer.echo(f"- {error}")
        raise typer.Exit(code=1)

    repo = get_repository()
    asyncio.run(repo.save_workflow(definition))
    typer.echo(f"Registered workflow {definition.id} (version {definition.version})")


@workflow_app.command("list")
def workflow_list() -> None:
    """List registered workflows with their version and status."""
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\tv{wf.version}\t{wf.status.value}\t{wf.name or ''}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow's agents, connections and execution statistics."""
    repo = get_repository()
    wf = asyncio.run(repo.load_workflow(workflow_id))
    if wf is None:
        _fail(f"Workflow {workflow_id} not found")
    typer.echo(f"Workflow {wf.id} v{wf.version}: {wf.status.value}")
    if wf.description:
        typer.echo(wf.description)
    typer.echo(f"Entry: {wf.resolved_entry_point}  Finish: {wf.resolved_finish_point}")
    for agent in wf.agents:
        gate = " (requires approval)" if agent.requires_approval else ""
        typer.echo(f"- {agent.id}: {agent.type}{gate}")
    for conn in wf.edges():
        condition = f" if {conn.condition}" if conn.condition else ""
        typer.echo(f"  {conn.from_node} -> {conn.to_node}{condition}")

    stats = asyncio.run(repo.get_workflow_stats(workflow_id))
    if stats is not None:
        typer.echo(
            f"Executions: {stats.execution_count}, success rate "
            f"{stats.success_rate:.0%}, average {stats.average_execution_time_ms:.0f}ms"
        )


@workflow_app.command("run")
def workflow_run(
    workflow_id: str,
    inputs: Optional[str] = typer.Option(None, help="Initial state as a JSON object"),
    initiated_by: str = typer.Option("cli", help="User recorded as the initiator"),
) -> None:
    """
    Run a workflow until it completes, fails or pauses for a decision.

    Example:
        flowguard workflow run inspection --inputs '{"site": "A-12"}'
    """
    initial_state = {}
    if inputs:
        try:
            initial_state = json.loads(inputs)
        except json.JSONDecodeError as e:
            _fail(f"Invalid --inputs JSON: {e}")
        if not isinstance(initial_state, dict):
            _fail("--inputs must be a JSON object")

    engine = _build_engine()
    try:
        execution = asyncio.run(
            engine.execute_workflow(
                workflow_id, inputs=initial_state, initiated_by=initiated_by
            )
        )
    except FlowguardError as e:
        _fail(e.message)

    _echo_execution(execution)
    if execution.status == ExecutionStatus.FAILED:
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# Executions
@execution_app.command("list")
def execution_list(
    workflow: Optional[str] = typer.Option(None, "--workflow", help="Filter by workflow id"),
    status: Optional[ExecutionStatus] = typer.Option(None, "--status", help="Filter by status"),
) -> None:
    """List executions, oldest first."""
    repo = get_repository()
    executions = asyncio.run(repo.list_executions(workflow_id=workflow, status=status))
    if not executions:
        typer.echo("No executions found")
        return
    for ex in executions:
        typer.echo(f"{ex.execution_id}\t{ex.workflow_id}\t{ex.status.value}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show an execution summary, its checkpoint trail and interventions."""
    engine = _build_engine()
    try:
        execution = asyncio.run(engine.get_execution(execution_id))
    except NotFoundError as e:
        _fail(e.message)

    metrics = execution.metrics
    _echo_execution(execution)
    typer.echo(f"Workflow: {execution.workflow_id}  Initiated by: {execution.initiated_by}")
    typer.echo(
        f"Nodes: {metrics.completed_nodes}/{metrics.total_nodes} completed, "
        f"{metrics.failed_nodes} failed, {metrics.agent_calls} agent calls, "
        f"{metrics.api_calls} api calls"
    )
    if execution.duration is not None:
        typer.echo(f"Duration: {execution.duration:.0f}ms")
    for checkpoint in execution.checkpoints:
        typer.echo(
            f"- {checkpoint.timestamp.isoformat()} {checkpoint.node}: {checkpoint.message}"
        )
    for intervention in execution.human_interventions:
        decision = intervention.decision or "pending"
        by = f" by {intervention.approved_by}" if intervention.approved_by else ""
        typer.echo(f"* intervention {intervention.intervention_id}: {decision}{by}")


@execution_app.command("cancel")
def execution_cancel(execution_id: str) -> None:
    """Cancel a pending, running or paused execution."""
    engine = _build_engine()
    try:
        execution = asyncio.run(engine.cancel(execution_id))
    except FlowguardError as e:
        _fail(e.message)
    _echo_execution(execution)


@execution_app.command("decide")
def execution_decide(
    execution_id: str,
    intervention_id: str,
    decision: str,
    approved_by: str = typer.Option(..., "--by", help="User making the decision"),
    comments: Optional[str] = typer.Option(None, help="Optional comments"),
) -> None:
    """
    Record a decision on the open intervention of a paused execution.

    Example:
        flowguard execution decide 1f0c... 9a2b... approve --by alice
    """
    engine = _build_engine()
    try:
        intervention = asyncio.run(
            engine.submit_decision(
                execution_id, intervention_id, decision, approved_by, comments
            )
        )
    except FlowguardError as e:
        _fail(e.message)
    typer.echo(
        f"Recorded '{intervention.decision}' by {intervention.approved_by} "
        f"for intervention {intervention.intervention_id}"
    )


@execution_app.command("resume")
def execution_resume(execution_id: str) -> None:
    """Resume a paused execution and run it further."""
    engine = _build_engine()
    try:
        execution = asyncio.run(engine.continue_execution(execution_id))
    except FlowguardError as e:
        _fail(e.message)
    _echo_execution(execution)
    if execution.status == ExecutionStatus.FAILED:
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover
    app()
