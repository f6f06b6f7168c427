"""CLI entrypoint (Typer).

- `stageflow plan "<problem>"`: stream the architect, print plan + graph JSON
- `stageflow run "<problem>" --data metrics.csv`: plan, then run every phase
- `stageflow serve`: start the HTTP API
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from stageflow.agent.data import load_upload
from stageflow.agent.graph import outputs_by_phase
from stageflow.agent.workflow import Orchestrator, OrchestratorError
from stageflow.config import get_settings
from stageflow.schemas import RunState


app = typer.Typer(help="Stageflow: staged multi-agent orchestration.")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _print_outputs(state: RunState) -> None:
    labels = {entry.node_id: entry.phase_label for entry in state.plan}
    for phase, outputs in outputs_by_phase(state.outputs).items():
        typer.secho(f"\n== {labels.get(outputs[0].node_id) or f'Stage {phase}'}", bold=True)
        for output in outputs:
            color = typer.colors.GREEN if output.status.value == "done" else typer.colors.RED
            typer.secho(f"-- {output.name} [{output.status.value}]", fg=color)
            typer.echo(output.text.strip() or "(no output)")
            if output.error:
                typer.secho(f"   error: {output.error}", fg=typer.colors.RED)
    if state.summary:
        typer.secho("\n== Summary", bold=True)
        typer.echo(state.summary.strip())


@app.command()
def plan(
    problem: str,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run the architect and print the normalized plan and graph."""
    _configure_logging(verbose)
    orchestrator = Orchestrator()
    try:
        state = asyncio.run(orchestrator.plan(problem))
    except OrchestratorError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    typer.echo(
        json.dumps(
            {
                "plan": [entry.model_dump(by_alias=True) for entry in state.plan],
                "inputs": [item.model_dump(by_alias=True) for item in state.inputs],
                "graph": state.graph.model_dump(by_alias=True),
            },
            indent=2,
        )
    )


@app.command()
def run(
    problem: str,
    data: list[Path] = typer.Option([], "--data", "-d", exists=True, dir_okay=False, help="Attach a .csv/.json/.txt file"),
    notes: str = typer.Option("", "--notes", help="Free-form notes for the agents"),
    plan_file: Optional[Path] = typer.Option(None, "--plan", exists=True, dir_okay=False, help="Use a saved plan JSON instead of the architect"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Plan (or load a plan), then run every phase and print the outputs."""
    _configure_logging(verbose)
    try:
        uploads = [load_upload(path) for path in data]
    except ValueError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)

    async def _run() -> RunState:
        orchestrator = Orchestrator()
        if plan_file is not None:
            orchestrator.adopt_plan(json.loads(plan_file.read_text(encoding="utf-8")), problem)
        else:
            await orchestrator.plan(problem)
        entries = orchestrator.select_data(
            [item.id for item in orchestrator.state.inputs],
            uploads,
            notes,
        )
        return await orchestrator.run(entries)

    try:
        state = asyncio.run(_run())
    except OrchestratorError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    _print_outputs(state)


@app.command()
def serve(reload: bool = typer.Option(False, "--reload")):
    """Start the HTTP API."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "stageflow.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=reload or settings.debug,
    )


if __name__ == "__main__":
    app()
