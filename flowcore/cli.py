"""Command line interface for running and operating flowcore."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import typer

from .config import FlowcoreConfig, load_config
from .errors import FlowcoreError
from .persistence import WorkflowRepository, get_repository
from .registry import default_registry
from .runtime import Runtime

app = typer.Typer(help="CLI for flowcore workflow orchestration")

# Command groups
workflow_app = typer.Typer(help="Commands for inspecting and controlling workflows")
event_app = typer.Typer(help="Commands for submitting trigger events")

app.add_typer(workflow_app, name="workflow")
app.add_typer(event_app, name="event")


def _config(ctx: typer.Context) -> FlowcoreConfig:
    return ctx.obj["config"]


def _repository(ctx: typer.Context) -> WorkflowRepository:
    if ctx.obj["config_path"] is None:
        return get_repository()
    return get_repository(config=_config(ctx))


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to a YAML config file"
    ),
) -> None:
    """flowcore CLI entry point."""
    cfg = load_config(config)
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config": cfg, "config_path": config}


@app.command("serve")
def serve(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, help="Bind address (default from config)"),
    port: Optional[int] = typer.Option(None, help="Port (default from config)"),
) -> None:
    """
    Run the HTTP API together with the dispatcher, worker pool and scheduler.

    Example:
        flowcore serve --port 8080
    """
    import uvicorn

    from .api import create_app

    cfg = _config(ctx)
    application = create_app(Runtime(cfg, repository=_repository(ctx)))
    uvicorn.run(
        application,
        host=host or cfg.api.host,
        port=port or cfg.api.port,
        log_level=cfg.log_level.lower(),
    )


@workflow_app.command("types")
def workflow_types(ctx: typer.Context) -> None:
    """List the registered workflow types and their states."""
    registry = default_registry(_config(ctx).workflows)
    for workflow_type in registry.types():
        table = registry.get(workflow_type)
        states = ", ".join(sorted(table.states))
        typer.echo(f"{workflow_type}\tinitial={table.initial_state}\tstates={states}")


@workflow_app.command("list")
def workflow_list(
    ctx: typer.Context,
    state: Optional[str] = typer.Option(None, help="Only show workflows in this state"),
) -> None:
    """
    List workflows with their current state.

    Example:
        flowcore workflow list --state pending_approval
    """
    repo = _repository(ctx)
    workflows = asyncio.run(repo.list_workflows(state=state))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.workflow_type}\t{wf.current_state}")


@workflow_app.command("show")
def workflow_show(ctx: typer.Context, workflow_id: str) -> None:
    """Show a workflow, its transition history and its jobs."""
    repo = _repository(ctx)

    async def load():
        return (
            await repo.get_workflow(workflow_id),
            await repo.list_transitions(workflow_id),
            await repo.list_jobs(workflow_id),
        )

    wf, transitions, jobs = asyncio.run(load())
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)

    typer.echo(f"Workflow {wf.id} ({wf.workflow_type}): {wf.current_state}")
    typer.echo(f"Priority: {wf.priority}  Version: {wf.version}")
    typer.echo(f"Context: {json.dumps(wf.context, default=str)}")
    for t in transitions:
        line = (
            f"  {t.sequence}. {t.from_state} -> {t.to_state} on '{t.signal}' "
            f"[{t.outcome.value}] by {t.triggered_by} at {t.timestamp.isoformat()}"
        )
        if t.reason:
            line += f" ({t.reason})"
        typer.echo(line)
    for job in jobs:
        typer.echo(
            f"  job {job.id} {job.kind} step={job.step} status={job.status.value} "
            f"attempt={job.attempt}"
        )


@workflow_app.command("cancel")
def workflow_cancel(
    ctx: typer.Context,
    workflow_id: str,
    reason: Optional[str] = typer.Option(None, help="Recorded on the transition"),
) -> None:
    """Cancel a running workflow."""
    runtime = Runtime(_config(ctx), repository=_repository(ctx))
    try:
        instance = asyncio.run(runtime.cancel_workflow(workflow_id, "cli", reason))
    except FlowcoreError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {instance.id}: {instance.current_state}")


@event_app.command("submit")
def event_submit(
    ctx: typer.Context,
    source: str,
    type: str,
    payload: str = typer.Option("{}", help="JSON object passed as the event payload"),
    event_id: Optional[str] = typer.Option(None, "--id", help="Idempotency id for the event"),
) -> None:
    """
    Submit a manual trigger event.

    Example:
        flowcore event submit cli content-publish --payload '{"topic": "launch"}'
    """
    try:
        data = json.loads(payload)
    except ValueError as e:
        typer.secho(f"Invalid JSON payload: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("Payload must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    runtime = Runtime(_config(ctx), repository=_repository(ctx))
    try:
        result = asyncio.run(runtime.submit_event(source, type, data, event_id))
    except FlowcoreError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Event {result.event_id}")
    if result.workflow_id:
        typer.echo(f"Workflow {result.workflow_id}")
    for job_id in result.job_ids:
        typer.echo(f"Job {job_id}")
