"""Command line interface for running journeyflow processes."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from pydantic import ValidationError

from journeyflow import JourneyEngine, get_repository
from journeyflow.contracts import TriggerJob
from journeyflow.definitions import JourneyDefinition, install_definition
from journeyflow.graph import validate_graph

app = typer.Typer(help="CLI for journeyflow automation")

journey_app = typer.Typer(help="Commands for managing journeys")
trigger_app = typer.Typer(help="Commands for emitting trigger events")
runs_app = typer.Typer(help="Commands for inspecting journey runs")

app.add_typer(journey_app, name="journey")
app.add_typer(trigger_app, name="trigger")
app.add_typer(runs_app, name="runs")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Python logging level"),
) -> None:
    """journeyflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("worker")
def worker(lifespan: Optional[float] = None) -> None:
    """
    Run a worker consuming the journey.runs queue.

    Handles trigger jobs (matching and run launch) and step jobs (one node
    per job) until stopped or ``lifespan`` seconds have passed.

    Example:
        journeyflow worker
        journeyflow --log-level DEBUG worker --lifespan 300
    """

    async def _run() -> None:
        engine = await JourneyEngine.from_config()
        async with engine:
            await engine.worker.start(lifespan=lifespan)

    typer.echo("Starting journey worker")
    asyncio.run(_run())


@app.command("scheduler")
def scheduler(lifespan: Optional[float] = None) -> None:
    """
    Run the time-trigger poller.

    The interval comes from ``scheduler.interval_ms`` or the
    JOURNEY_SCHEDULER_INTERVAL_MS environment variable.
    """

    async def _run() -> None:
        engine = await JourneyEngine.from_config()
        async with engine:
            await engine.poller.run(lifespan=lifespan)

    typer.echo("Starting journey scheduler")
    asyncio.run(_run())


def _read_definition(path: Path) -> JourneyDefinition:
    try:
        return JourneyDefinition.from_yaml(path)
    except FileNotFoundError:
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except yaml.YAMLError as e:
        typer.secho(f"Could not parse {path}: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except ValidationError as e:
        typer.secho(f"Invalid journey definition in {path}:\n{e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@journey_app.command("validate")
def journey_validate(path: Path) -> None:
    """Check a YAML journey definition for structural problems."""
    definition = _read_definition(path)

    graph, _ = definition.build()
    problems = validate_graph(graph)
    if not problems:
        typer.echo(f"Journey '{definition.name}' is valid")
        return
    for problem in problems:
        typer.secho(f"- {problem}", fg=typer.colors.YELLOW)
    raise typer.Exit(code=1)


@journey_app.command("load")
def journey_load(path: Path) -> None:
    """
    Store a YAML journey definition in the configured repository.

    Prints the id of the new journey.

    Example:
        journeyflow journey load welcome.yaml
    """
    definition = _read_definition(path)

    repo = get_repository()
    graph = asyncio.run(install_definition(repo, definition))
    for problem in validate_graph(graph):
        typer.secho(f"warning: {problem}", fg=typer.colors.YELLOW)
    typer.echo(graph.journey.id)


@journey_app.command("list")
def journey_list(organization_id: str) -> None:
    """List journeys of a tenant with their status."""
    repo = get_repository()
    journeys = asyncio.run(repo.list_journeys(organization_id))
    if not journeys:
        typer.echo("No journeys found")
        return
    for journey in journeys:
        typer.echo(f"{journey.id}\t{journey.status}\t{journey.name}")


@journey_app.command("status")
def journey_status(journey_id: str, status: str) -> None:
    """Set a journey to draft, active, paused or archived."""
    if status not in ("draft", "active", "paused", "archived"):
        typer.secho(f"Unknown status: {status}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    repo = get_repository()
    journey = asyncio.run(repo.set_journey_status(journey_id, status))
    if journey is None:
        typer.echo("Journey not found")
        raise typer.Exit(code=1)
    typer.echo(f"Journey {journey.id}: {journey.status}")


@trigger_app.command("emit")
def trigger_emit(
    organization_id: str,
    trigger_type: str = typer.Option("inbound_message", "--type"),
    lead_id: Optional[str] = None,
    contact_id: Optional[str] = None,
    channel_id: Optional[str] = None,
    text: Optional[str] = None,
    tag: Optional[List[str]] = typer.Option(None, help="Event tag; repeatable"),
    stage: Optional[str] = None,
) -> None:
    """
    Enqueue a business event for trigger matching.

    Example:
        journeyflow trigger emit org-1 --lead-id lead-1 --text "hello"
    """
    job = TriggerJob(
        trigger_type=trigger_type,
        organization_id=organization_id,
        lead_id=lead_id,
        contact_id=contact_id,
        channel_id=channel_id,
        text=text,
        tags=list(tag) if tag else None,
        stage=stage,
    )

    async def _emit() -> None:
        engine = await JourneyEngine.from_config()
        async with engine:
            await engine.emit_trigger(job)

    asyncio.run(_emit())
    typer.echo(f"Queued {trigger_type} trigger for {organization_id}")


@runs_app.command("list")
def runs_list(journey_id: str, limit: int = 50, offset: int = 0) -> None:
    """List runs of a journey, newest first."""
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(journey_id, limit=limit, offset=offset))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.status}\t{run.lead_id or '-'}\t{run.started_at.isoformat()}")


@runs_app.command("steps")
def runs_steps(run_id: str) -> None:
    """Show the step history of a run."""
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id}: {run.status}")
    for step in asyncio.run(repo.list_steps(run_id)):
        line = f"- {step.node_id}: {step.status}"
        if step.error_message:
            line += f" ({step.error_message})"
        elif step.output:
            line += f" {json.dumps(step.output)}"
        typer.echo(line)


if __name__ == "__main__":
    app()
