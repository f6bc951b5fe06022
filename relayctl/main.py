"""Relay Jobs CLI - Main Entry Point"""

import asyncio
import importlib
import inspect
from collections.abc import Iterable
from typing import Any, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel

from relayjobs.config.logging import setup_logging
from relayjobs.config.settings import Settings, get_settings
from relayjobs.core.registries import ControllerRegistry, init_controllers
from relayjobs.infra.connections import ConnectionRegistry
from relayjobs.jobs.broker import Broker
from relayjobs.jobs.hooks import JobType
from relayjobs.jobs.schemas import RetryScanResult
from relayjobs.jobs.store import RecordStore
from relayjobs.jobs.worker import JobConsumer

from .utils.formatting import create_retry_table, print_error, print_info, print_success

console = Console()

app = typer.Typer(
    name="relayctl",
    help="Relay Jobs - durable background jobs",
    rich_markup_mode="rich",
)

JOBS_HELP = "Job types to load, as module:attribute"


def load_job_types(target: str) -> list[JobType]:
    """
    Import job definitions from a ``module:attribute`` reference.

    The attribute may be a JobType, an object with hook methods, an iterable
    of either, or a callable returning one of those.
    """
    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        raise typer.BadParameter(f"Expected module:attribute, got {target!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise typer.BadParameter(f"Cannot import {module_name}: {e}") from e

    try:
        value: Any = getattr(module, attribute)
    except AttributeError as e:
        raise typer.BadParameter(f"{module_name} has no attribute {attribute}") from e

    if inspect.isfunction(value):
        value = value()

    items: Iterable[Any] = value if isinstance(value, (list, tuple, set)) else [value]
    return [
        item if isinstance(item, JobType) else JobType.from_object(item)
        for item in items
    ]


def build_controllers(
    job_types: list[JobType], settings: Settings, connections: ConnectionRegistry
) -> ControllerRegistry:
    store = RecordStore(connections.database(settings), settings)
    broker = Broker(connections.redis(settings), settings)
    return init_controllers(job_types, store, broker, settings)


async def run_retry_scan(
    job_types: list[JobType], settings: Settings, only: str | None = None
) -> dict[str, RetryScanResult]:
    """Run one retry scan per controller (or only the named one)."""
    connections = ConnectionRegistry()
    try:
        controllers = build_controllers(job_types, settings, connections)
        selected = [controllers.get(only)] if only else list(controllers)
        return {controller.name: await controller.retry() for controller in selected}
    finally:
        await connections.close()


async def run_consumer(job_types: list[JobType], settings: Settings) -> None:
    """Consume every job's topic until interrupted."""
    connections = ConnectionRegistry()
    try:
        controllers = build_controllers(job_types, settings, connections)
        if settings.db_auto_create:
            await connections.database(settings).create_all()
        broker = Broker(connections.redis(settings), settings)
        consumer = JobConsumer(controllers, broker, settings)
        await consumer.start()
    finally:
        await connections.close()


@app.command()
def serve(
    jobs: str = typer.Option(..., "--jobs", "-j", help=JOBS_HELP),
    host: Optional[str] = typer.Option(None, help="Bind host"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
):
    """Serve the job HTTP routes"""
    import uvicorn

    from relayjobs.main import create_app

    settings = get_settings()
    job_types = load_job_types(jobs)
    app_instance = create_app(job_types, settings=settings)

    print_info(f"Serving {len(job_types)} job(s) on {host or settings.host}:{port or settings.port}")
    uvicorn.run(app_instance, host=host or settings.host, port=port or settings.port)


@app.command()
def worker(jobs: str = typer.Option(..., "--jobs", "-j", help=JOBS_HELP)):
    """Consume broker messages and process jobs"""
    settings = get_settings()
    setup_logging(settings)
    job_types = load_job_types(jobs)
    if not job_types:
        print_error("No job types found")
        raise typer.Exit(1)

    print_info(f"Consuming {', '.join(job_type.name for job_type in job_types)}")
    try:
        asyncio.run(run_consumer(job_types, settings))
    except KeyboardInterrupt:
        print_success("Worker stopped")


@app.command()
def retry(
    jobs: str = typer.Option(..., "--jobs", "-j", help=JOBS_HELP),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Only scan this job"),
):
    """Run one retry scan for every job"""
    settings = get_settings()
    setup_logging(settings)
    job_types = load_job_types(jobs)

    try:
        results = asyncio.run(run_retry_scan(job_types, settings, only=name))
    except KeyError as e:
        print_error(str(e))
        raise typer.Exit(1) from None

    console.print(create_retry_table(results))
    if any(result.errors for result in results.values()):
        print_error("Some records could not be retried")
        raise typer.Exit(1)
    print_success("Retry scan complete")


@app.command()
def cron(
    target: Optional[List[str]] = typer.Option(
        None, "--target", "-t", help="Retry endpoint to call (repeatable)"
    ),
    host: Optional[str] = typer.Option(None, help="Bind host"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
):
    """Run the cron engine that triggers retry endpoints"""
    import uvicorn

    from relayjobs.cron import create_cron_app

    settings = get_settings()
    setup_logging(settings)
    targets = target or settings.cron_targets
    if not targets:
        print_error("No cron targets configured")
        raise typer.Exit(1)

    print_info(f"Cron engine calling {len(targets)} target(s)")
    uvicorn.run(
        create_cron_app(targets, settings=settings),
        host=host or settings.host,
        port=port or settings.port,
    )


@app.command()
def version():
    """Show version information"""
    from . import __version__

    console.print(
        Panel(
            f"[bold cyan]Relay Jobs[/bold cyan]\n\n"
            f"• CLI version: [green]{__version__}[/green]\n"
            f"• Environment: [yellow]{get_settings().environment}[/yellow]",
            title="Version Info",
            border_style="cyan",
        )
    )


if __name__ == "__main__":
    app()
