"""Command line interface for inspecting and running stepflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, Optional

import typer

from stepflow.cli_utils.loader import _format_path, load_workflows
from stepflow.definition import WorkflowDefinition
from stepflow.engine import WorkflowEngine
from stepflow.errors import StepflowError

app = typer.Typer(help="CLI for stepflow workflows")

workflow_app = typer.Typer(help="Commands for inspecting and running workflows")

app.add_typer(workflow_app, name="workflow")


@app.callback()
def main() -> None:
    """stepflow CLI entry point."""
    pass


def _load_or_exit(path: Path) -> Dict[str, WorkflowDefinition]:
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        return load_workflows(path)
    except StepflowError as exc:
        typer.secho(f"Invalid workflow in {path}: {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except Exception as exc:
        typer.secho(
            f"Could not load workflows from {path}: {type(exc).__name__}: {exc}",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@workflow_app.command("list")
def workflow_list(path: Path) -> None:
    """
    List the workflows defined in a Python file.

    Example:
        stepflow workflow list ./guides/parallel_join.py
        # Output: fan-out    Fan-out and join    (4 steps)
    """
    workflows = _load_or_exit(path)
    if not workflows:
        typer.echo(f"No workflows found in {_format_path(path)}")
        return
    for definition in workflows.values():
        typer.echo(
            f"{definition.id}\t{definition.name}\t({len(definition.steps)} steps)"
        )


@workflow_app.command("show")
def workflow_show(path: Path, workflow_id: str) -> None:
    """
    Show the steps and edges of one workflow.

    Example:
        stepflow workflow show ./guides/parallel_join.py fan-out
    """
    workflows = _load_or_exit(path)
    definition = workflows.get(workflow_id)
    if definition is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    details = definition.to_dict()
    typer.echo(f"Workflow {definition.id}: {definition.name}")
    if definition.description:
        typer.echo(definition.description)
    for step in details["steps"]:
        flags = []
        if step["join"]:
            flags.append("join")
        if step["when"]:
            flags.append(f"when={step['when']}")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        typer.echo(f"- {step['id']}{suffix}")
    for edge in details["edges"]:
        mode = f" ({edge['mode']})" if edge["mode"] else ""
        typer.echo(f"  {edge['source']} -> {edge['target']}: {edge['kind']}{mode}")


@workflow_app.command("run")
def workflow_run(
    path: Path,
    workflow_id: str,
    input: Optional[str] = typer.Option(None, help="JSON object passed as trigger data"),
    watch: bool = typer.Option(False, help="Print every transition record as JSON"),
    log_level: str = typer.Option("WARNING", help="Logging level"),
) -> None:
    """
    Execute a workflow and print its result.

    The run is executed to completion or to its first suspension. A failed
    run prints its error and exits with code 1.

    Example:
        stepflow workflow run ./guides/parallel_join.py fan-out --input '{"n": 3}'
    """
    logging.basicConfig(level=log_level.upper())
    try:
        trigger_data = json.loads(input) if input else {}
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid --input JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    workflows = _load_or_exit(path)
    definition = workflows.get(workflow_id)
    if definition is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)

    async def _run():
        engine = WorkflowEngine()
        handle = engine.register(definition)
        if not watch:
            return await handle.execute(trigger_data)
        started = await handle.start_run(trigger_data)
        subscription = handle.watch(started.run_id)
        result = await handle.wait(started.run_id)
        for record in subscription.drain():
            typer.echo(record.to_json())
        return result

    try:
        result = asyncio.run(_run())
    except StepflowError as exc:
        typer.secho(f"Run failed: {exc.kind}: {exc.message}", fg=typer.colors.RED)
        if exc.result is not None:
            typer.echo(exc.result.to_json())
        raise typer.Exit(code=1)

    typer.echo(result.to_json())
    if result.error is not None:
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
