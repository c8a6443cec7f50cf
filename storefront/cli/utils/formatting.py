"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def create_jobs_table(jobs: list[dict[str, Any]], title: str = "Jobs") -> Table:
    """Create a formatted table for a list of jobs"""
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Job", justify="left", style="magenta")
    table.add_column("Status", justify="center", style="bold")
    table.add_column("Attempts", justify="center", style="yellow")
    table.add_column("Last Error", justify="left", style="white")

    for job in jobs:
        table.add_row(
            str(job.get("id", "")),
            job.get("job_name", ""),
            job.get("status", ""),
            f"{job.get('attempt_count', 0)}/{job.get('max_attempts', 0)}",
            _truncate(job.get("last_error") or "—"),
        )

    return table


def create_stats_panel(stats: dict[str, Any]) -> Panel:
    """Create formatted panel for queue statistics"""
    by_status = stats.get("by_status", {})
    status_lines = "\n".join(
        f"  • {status}: [cyan]{count}[/cyan]" for status, count in sorted(by_status.items())
    )

    content = f"""
📊 [bold blue]Queue Statistics[/bold blue]

• Total Jobs: [blue]{stats.get("total_jobs", 0)}[/blue]
• Queue Depth: [yellow]{stats.get("queue_depth", 0)}[/yellow]
• Dead Letters: [red]{stats.get("dead_letter_count", 0)}[/red]
• Dead-lettered (1h): [red]{stats.get("dead_lettered_last_hour", 0)}[/red]

[bold]By status[/bold]
{status_lines or "  —"}
"""

    return Panel(content, title="Job Queue", border_style="green")


def _truncate(text: str, width: int = 60) -> str:
    return text[:width] + "..." if len(text) > width else text
