import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
import uvicorn

from cloudcrowd.config import FleetConfiguration, resolve
from cloudcrowd.console import open_console
from cloudcrowd.database import database_path, load_schema
from cloudcrowd.errors import ConfigNotFound, SpawnFailure
from cloudcrowd.install import install_configuration
from cloudcrowd.server.app import create_app
from cloudcrowd.version import VERSION
from cloudcrowd.workers.lifecycle import FleetReport, LifecycleController
from cloudcrowd.workers.records import DaemonRecordStore
from cloudcrowd.workers.status import StatusReporter, format_report

logger = logging.getLogger("cloudcrowd.cli")

app = typer.Typer(no_args_is_help=True, help="Operate a CloudCrowd cluster.")
workers_app = typer.Typer(
    no_args_is_help=True,
    help="Control worker daemons: start | stop | restart | status | run",
)
app.add_typer(workers_app, name="workers")

SERVER_HOST = "0.0.0.0"

ACTION_LABELS = {
    "started": "started",
    "already_running": "already running",
    "failed": "FAILED",
    "stopped": "stopped",
    "killed": "killed after grace period",
    "already_gone": "was not running",
}


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(VERSION)
        raise typer.Exit()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log progress to stderr"),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version"
    ),
):
    """Operate a CloudCrowd cluster."""
    configure_logging(verbose)


def _resolve_or_exit(
    num_workers: Optional[int] = None,
    port: Optional[int] = None,
    database_config: Optional[Path] = None,
) -> FleetConfiguration:
    try:
        return resolve(num_workers=num_workers, port=port, database_config=database_config)
    except ConfigNotFound as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)


def _echo_fleet_report(report: FleetReport, empty_message: str) -> None:
    if not report.actions:
        typer.echo(empty_message)
        return
    for item in report.actions:
        label = ACTION_LABELS.get(item.action, item.action)
        pid = f" (PID: {item.pid})" if item.pid else ""
        typer.echo(f"worker {item.id}: {label}{pid}")
        if item.error:
            typer.echo(f"  {item.error}", err=True)


def _exit_on_failures(report: FleetReport, verb: str) -> None:
    failures = report.failures
    if failures:
        slots = ", ".join(str(item.id) for item in failures)
        typer.echo(f"{len(failures)} worker(s) failed to {verb}: {slots}", err=True)
        raise typer.Exit(code=1)


@workers_app.command("start")
def workers_start(
    count: Optional[int] = typer.Argument(None, min=0, help="Number of workers"),
    num_workers: Optional[int] = typer.Option(None, "--num-workers", "-n", min=0, help="Number of worker processes"),
):
    """Start workers; the count defaults to num_workers in config.yml."""
    requested = num_workers if num_workers is not None else count
    fleet_config = _resolve_or_exit(num_workers=requested)
    report = LifecycleController.for_config(fleet_config).start(fleet_config)
    _echo_fleet_report(report, "No workers requested.")
    _exit_on_failures(report, "start")


@workers_app.command("stop")
def workers_stop():
    """Stop all active workers."""
    fleet_config = _resolve_or_exit()
    report = LifecycleController.for_config(fleet_config).stop(fleet_config)
    _echo_fleet_report(report, "No workers running.")
    _exit_on_failures(report, "stop")


@workers_app.command("restart")
def workers_restart(
    num_workers: Optional[int] = typer.Option(None, "--num-workers", "-n", min=0, help="Number of worker processes"),
):
    """Stop all workers, then start the same number again."""
    fleet_config = _resolve_or_exit(num_workers=num_workers)
    report = LifecycleController.for_config(fleet_config).restart(fleet_config)
    _echo_fleet_report(report, "No workers to restart.")
    _exit_on_failures(report, "restart")


@workers_app.command("run")
def workers_run():
    """For debugging, run a single worker in this terminal, showing output."""
    fleet_config = _resolve_or_exit()
    try:
        exit_code = LifecycleController.for_config(fleet_config).run(fleet_config)
    except SpawnFailure as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        raise typer.Exit(code=130)
    if exit_code:
        raise typer.Exit(code=exit_code)


@workers_app.command("status")
def workers_status(
    as_json: bool = typer.Option(False, "--json", help="Print machine-readable output"),
):
    """Display the status of all recorded workers."""
    fleet_config = _resolve_or_exit()
    rows = StatusReporter(DaemonRecordStore(fleet_config.pid_dir)).report()
    if as_json:
        typer.echo(json.dumps([row.model_dump(mode="json") for row in rows], indent=2))
        return
    for line in format_report(rows):
        typer.echo(line)


@app.command()
def server(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Central server port number"),
    host: str = typer.Option(SERVER_HOST, "--host", help="Interface to bind"),
):
    """Start up the central server in the foreground."""
    fleet_config = _resolve_or_exit(port=port)
    typer.echo(f"Starting central server on {host}:{fleet_config.port}...")
    uvicorn.run(create_app(fleet_config), host=host, port=fleet_config.port)


@app.command()
def install(
    path: Path = typer.Argument(Path("."), help="Directory to install configuration into"),
):
    """Install the configuration files into the specified directory."""
    for dest, installed in install_configuration(path):
        typer.echo(f"installed {dest}" if installed else f"skipped {dest} (already exists)")


@app.command()
def console(
    database_config: Optional[Path] = typer.Option(None, "--database-config", "-d", help="Path to database.yml"),
):
    """Launch an interactive console with the cluster configuration loaded."""
    fleet_config = _resolve_or_exit(database_config=database_config)
    try:
        open_console(fleet_config)
    except ConfigNotFound as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)


@app.command("load-schema")
def load_schema_command(
    database_config: Optional[Path] = typer.Option(None, "--database-config", "-d", help="Path to database.yml"),
):
    """Load the schema into the database specified by database.yml."""
    fleet_config = _resolve_or_exit(database_config=database_config)
    try:
        db_path = database_path(fleet_config.database_config)
    except ConfigNotFound as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    applied = asyncio.run(load_schema(db_path))
    if applied:
        typer.echo(f"Loaded schema into {db_path} ({len(applied)} migrations applied)")
    else:
        typer.echo(f"Schema already up to date in {db_path}")


if __name__ == "__main__":
    app()
