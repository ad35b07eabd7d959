"""Command line interface for inspecting runs and running ledgerflow workers."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer

from .config import load_config
from .dispatch import EventDispatcher
from .integration import build_worker
from .persistence import get_repository
from .transports import get_transport

app = typer.Typer(help="CLI for ledgerflow workflow runs and agent executions")

runs_app = typer.Typer(help="Commands for workflow runs")
executions_app = typer.Typer(help="Commands for agent executions")
worker_app = typer.Typer(help="Commands for event workers")

app.add_typer(runs_app, name="runs")
app.add_typer(executions_app, name="executions")
app.add_typer(worker_app, name="worker")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level (defaults to config log_level)"
    ),
) -> None:
    """ledgerflow CLI entry point."""
    level = (log_level or load_config().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@runs_app.command("list")
def runs_list() -> None:
    """
    List workflow runs with their current status.

    Example:
        ledgerflow runs list
        # Output: 6f1c...    COMPLETED
        #         a93b...    WAITING_APPROVAL
    """
    repo = get_repository()
    runs = asyncio.run(repo.list_runs())
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.run_id}\t{run.status.value}")


@runs_app.command("show")
def runs_show(run_id: str) -> None:
    """
    Show a workflow run with its persisted step results.

    Example:
        ledgerflow runs show 6f1c...
        # Output: Run 6f1c...: CANCELLED
        #         Reason: Rejected by u1 at step "Manager sign-off"
        #         - approve (human_approval): failed - Rejected by user
    """
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.run_id}: {run.status.value}")
    if run.reason:
        typer.echo(f"Reason: {run.reason}")
    if run.waiting_step_id:
        typer.echo(f"Waiting at: {run.waiting_step_id} (expires {run.approval_expires_at})")
    for result in run.step_results:
        typer.echo(
            f"- {result.step_id} ({result.type}): {result.outcome.value}"
            + (f" - {result.error}" if result.error else "")
        )


@runs_app.command("approve")
def runs_approve(
    run_id: str,
    by: str = typer.Option(..., "--by", help="User resolving the approval"),
    reject: bool = typer.Option(False, "--reject", help="Reject instead of approve"),
    step_id: Optional[str] = typer.Option(None, "--step", help="Waiting step to resolve"),
) -> None:
    """
    Publish a ``workflow.approved`` event for a waiting run.

    Example:
        ledgerflow runs approve 6f1c... --by u1
        ledgerflow runs approve 6f1c... --by u1 --reject
    """
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    decision = "rejected" if reject else "approved"
    dispatcher = EventDispatcher(get_transport())
    event = asyncio.run(dispatcher.emit_approval(run_id, decision, by, step_id=step_id))
    typer.echo(f"Published {decision} for run {run_id} (event {event.message_id})")


@executions_app.command("list")
def executions_list(
    organization_id: Optional[str] = typer.Option(None, "--org", help="Filter by organization"),
) -> None:
    """List agent executions with their status."""
    repo = get_repository()
    executions = asyncio.run(repo.list_executions(organization_id))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.execution_id}\t{execution.status.value}\t{execution.agent_definition_id}"
        )


@executions_app.command("show")
def executions_show(execution_id: str) -> None:
    """Show an agent execution, its outcome and every loop step."""
    repo = get_repository()
    execution = asyncio.run(repo.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.execution_id}: {execution.status.value}")
    if execution.outcome:
        typer.echo(f"Summary: {execution.outcome.summary}")
    if execution.fallback and execution.fallback.used:
        typer.echo(f"Fallback: {execution.fallback.reason}")
    usage = execution.usage
    typer.echo(f"Usage: {usage.tokens_used} tokens, ${usage.cost_usd:.4f}, {usage.llm_calls} calls")
    for step in execution.steps:
        tool = f" {step.tool_name}" if step.tool_name else ""
        typer.echo(f"{step.step_number}. {step.action}{tool}: {step.status}")


@executions_app.command("cancel")
def executions_cancel(execution_id: str) -> None:
    """Request cooperative cancellation of a running execution."""
    repo = get_repository()
    if not asyncio.run(repo.request_cancel(execution_id)):
        typer.echo("Execution not found or already finished")
        raise typer.Exit(code=1)
    typer.echo(f"Cancellation requested for {execution_id}")


@worker_app.command("start")
def worker_start(
    lifespan: Optional[float] = typer.Option(
        None, "--lifespan", help="Seconds to run before exiting (default: forever)"
    ),
) -> None:
    """
    Run a worker that consumes workflow.run, workflow.approved and agent.run events.

    Example:
        ledgerflow worker start
        ledgerflow worker start --lifespan 300
    """
    config = load_config()
    worker = build_worker(config, get_transport(config=config), get_repository())
    typer.echo("Starting ledgerflow worker")
    asyncio.run(worker.start(lifespan=lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
