"""Command-line interface for objectfs.

Commands:
    objectfs run KIND: Run one batch of a manipulator
    objectfs run-all: Run every manipulator once
    objectfs locations: Show object counts per location
    objectfs populate-filesizes: Back-fill unknown registry sizes
    objectfs delete-empty-dirs: Prune the local tier

Settings are read from ``--config`` (YAML or JSON) or, without it, from
``OBJECTFS_*`` environment variables.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from objectfs.base import ObjectFSError
from objectfs.config import ObjectFSConfig
from objectfs.log import RunSummary, format_bytes
from objectfs.maintenance import delete_empty_dirs, populate_filesizes
from objectfs.runner import RUN_ALL_ORDER, ManipulatorKind, ManipulatorRunner

app = typer.Typer(
    name="objectfs",
    help="Tiered object storage lifecycle management",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Configuration file (YAML or JSON)"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Print machine readable JSON"),
]


@app.callback()
def main_callback(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log progress to stderr"),
    ] = False,
) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config(config_file: Path | None) -> ObjectFSConfig:
    if config_file is not None:
        return ObjectFSConfig.from_file(config_file)
    return ObjectFSConfig.from_env()


def _build_runner(config_file: Path | None) -> ManipulatorRunner:
    try:
        return ManipulatorRunner.from_config(_load_config(config_file))
    except ObjectFSError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _print_summary(kind: ManipulatorKind, summary: RunSummary | None) -> None:
    if summary is None:
        console.print(
            f"[yellow]{kind.value}: skipped[/yellow] (tasks disabled or remote unavailable)"
        )
        return

    color = "red" if summary.failed else "green"
    console.print(
        f"[{color}]{kind.value}[/{color}]: {summary.succeeded} succeeded, "
        f"{summary.failed} failed, {summary.skipped} skipped of "
        f"{summary.candidates} candidates, {format_bytes(summary.bytes_moved)} "
        f"moved in {summary.elapsed:.2f}s"
    )
    if summary.deadline_reached:
        console.print(f"  Time limit reached, {summary.remaining} candidates left")
    for contenthash, error in summary.errors:
        console.print(f"  [red]{contenthash}[/red]: {error}")


@app.command(name="run")
def run_cmd(
    kind: Annotated[
        str,
        typer.Argument(help=f"Manipulator kind ({', '.join(k.value for k in ManipulatorKind)})"),
    ],
    config_file: ConfigOption = None,
    json_output: JsonOption = False,
) -> None:
    """Run one batch of a manipulator."""
    runner = _build_runner(config_file)
    try:
        manipulator_kind = ManipulatorKind.parse(kind)
        summary = runner.run_now(manipulator_kind)
    except ObjectFSError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if json_output:
        typer.echo(json.dumps(summary.to_dict() if summary else None, indent=2, default=str))
    else:
        _print_summary(manipulator_kind, summary)

    if summary is not None and summary.failed:
        raise typer.Exit(2)


@app.command(name="run-all")
def run_all_cmd(
    config_file: ConfigOption = None,
    json_output: JsonOption = False,
) -> None:
    """Run every manipulator once, in dependency order."""
    runner = _build_runner(config_file)
    try:
        summaries = runner.run_all()
    except ObjectFSError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if json_output:
        result = {
            kind.value: summary.to_dict() if summary else None
            for kind, summary in summaries.items()
        }
        typer.echo(json.dumps(result, indent=2, default=str))
    else:
        for kind in RUN_ALL_ORDER:
            _print_summary(kind, summaries[kind])

    if any(s is not None and s.failed for s in summaries.values()):
        raise typer.Exit(2)


@app.command(name="locations")
def locations_cmd(
    config_file: ConfigOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show object counts per location."""
    runner = _build_runner(config_file)
    try:
        status = runner.status()
    except ObjectFSError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if json_output:
        typer.echo(json.dumps(status, indent=2))
        return

    table = Table(title="Object Locations", show_header=True, header_style="bold magenta")
    table.add_column("Location", style="cyan")
    table.add_column("Objects", justify="right")
    for location, count in status["locations"].items():
        table.add_row(location, f"{count:,}")
    table.add_row("[bold]total[/bold]", f"[bold]{status['total']:,}[/bold]")
    console.print(table)

    available = "[green]yes[/green]" if status["remote_available"] else "[red]no[/red]"
    console.print(f"Backend: {status['backend']} (available: {available})")
    console.print(f"Tasks enabled: {status['enable_tasks']}")


@app.command(name="populate-filesizes")
def populate_filesizes_cmd(
    config_file: ConfigOption = None,
    max_updates: Annotated[
        int,
        typer.Option("--max-updates", help="Maximum number of records to update"),
    ] = 100000,
) -> None:
    """Back-fill unknown registry sizes from the file metadata."""
    runner = _build_runner(config_file)
    try:
        updated = populate_filesizes(runner.registry, runner.metadata, max_updates)
    except ObjectFSError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Updated filesize of {updated} objects")


@app.command(name="delete-empty-dirs")
def delete_empty_dirs_cmd(config_file: ConfigOption = None) -> None:
    """Remove empty directories and stale temporary files from the local tier."""
    runner = _build_runner(config_file)
    removed = delete_empty_dirs(runner.filesystem, runner.config)
    typer.echo(f"Removed {removed} empty directories")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
