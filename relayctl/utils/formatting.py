"""Rich formatting helpers for CLI output"""

from rich import box
from rich.console import Console
from rich.table import Table

from relayjobs.jobs.schemas import RetryScanResult

console = Console()


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def create_retry_table(results: dict[str, RetryScanResult]) -> Table:
    """Create a table summarizing one retry scan per job"""
    table = Table(title="Retry Scan", box=box.ROUNDED)

    table.add_column("Job", justify="left", style="cyan", no_wrap=True)
    table.add_column("Scanned", justify="right")
    table.add_column("Published", justify="right", style="green")
    table.add_column("Rescheduled", justify="right", style="yellow")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Errors", justify="right", style="red")

    for name, result in results.items():
        table.add_row(
            name,
            str(result.scanned),
            str(result.published),
            str(result.rescheduled),
            str(result.failed),
            str(result.errors),
        )

    return table
