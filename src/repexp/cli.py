from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import orjson
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .config import Settings, load_settings
from .store import RunState, RunStore, StoreError
from .utils import read_json

app = typer.Typer(help="Repeatable experiment run store")
runs_app = typer.Typer(help="Run commands")
app.add_typer(runs_app, name="runs")
console = Console()

RESULTS_DIR_OPTION = typer.Option(None, "--results-dir", file_okay=False)
CONFIG_OPTION = typer.Option(None, "--config", exists=True, dir_okay=False)
VERBOSE_OPTION = typer.Option(False, "-v", "--verbose", help="Enable debug logging.")
SESSION_OPTION = typer.Option(None, "--session")
EXPERIMENT_ARGUMENT = typer.Argument(...)
CONFIG_FILE_ARGUMENT = typer.Argument(..., exists=True, dir_okay=False)

_STATE_STYLES = {
    RunState.COMPLETED: "green",
    RunState.RUNNING: "yellow",
    RunState.FAILED: "red",
}


@app.callback()
def main(
    ctx: typer.Context,
    results_dir: Optional[Path] = RESULTS_DIR_OPTION,
    config: Optional[Path] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = load_settings(config)
    except (orjson.JSONDecodeError, ValidationError) as exc:
        console.print(f"[red]invalid settings file {config}: {exc}[/red]")
        raise typer.Exit(code=1)
    if results_dir is not None:
        settings = settings.model_copy(update={"results_dir": str(results_dir)})
    ctx.obj = settings


def _store(ctx: typer.Context) -> RunStore:
    settings = ctx.obj if isinstance(ctx.obj, Settings) else Settings()
    return RunStore.from_settings(settings)


@runs_app.command("list")
def runs_list_cmd(
    ctx: typer.Context,
    experiment: str = EXPERIMENT_ARGUMENT,
    session: Optional[str] = SESSION_OPTION,
) -> None:
    store = _store(ctx)
    table = Table(title=f"Runs of {experiment}")
    table.add_column("Session")
    table.add_column("Config")
    table.add_column("Repeat", justify="right")
    table.add_column("State")
    counts = {state: 0 for state in RunState}
    try:
        for summary in store.list_runs(experiment, session):
            counts[summary.state] += 1
            style = _STATE_STYLES[summary.state]
            table.add_row(
                summary.session,
                summary.config_hash[:12],
                str(summary.repeat),
                f"[{style}]{summary.state.value}[/{style}]",
            )
    except StoreError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    console.print(table)
    console.print({state.value: count for state, count in counts.items()})


@runs_app.command("reconcile")
def runs_reconcile_cmd(
    ctx: typer.Context,
    experiment: str = EXPERIMENT_ARGUMENT,
    session: Optional[str] = SESSION_OPTION,
) -> None:
    store = _store(ctx)
    try:
        count = store.reconcile(experiment, session)
    except StoreError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    console.print({"experiment": experiment, "reconciled": count})


@app.command("sessions")
def sessions_cmd(ctx: typer.Context, experiment: str = EXPERIMENT_ARGUMENT) -> None:
    store = _store(ctx)
    try:
        sessions = store.sessions(experiment)
    except StoreError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    for session in sessions:
        console.print(session)


@app.command("hash")
def hash_cmd(ctx: typer.Context, config_file: Path = CONFIG_FILE_ARGUMENT) -> None:
    store = _store(ctx)
    try:
        config = read_json(config_file)
    except orjson.JSONDecodeError as exc:
        console.print(f"[red]invalid JSON in {config_file}: {exc}[/red]")
        raise typer.Exit(code=1)
    try:
        console.print(store.hasher.hash(config))
    except StoreError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
