"""Rich formatting helpers for CLI output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "processing": "cyan",
    "completed": "green",
    "failed": "red",
}

HEALTH_STYLES = {
    "healthy": "green",
    "warning": "yellow",
    "critical": "red",
    "unknown": "dim",
}


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


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create a detail panel for one job"""
    lines = [
        f"• Status: {styled_status(job.get('status', ''))}",
        f"• Subject: [magenta]{job.get('subject_kind')}[/magenta]"
        f" [cyan]{job.get('subject_id')}[/cyan]",
        f"• Organization: {job.get('organization_id')}",
        f"• Attempts: {job.get('attempts')}/{job.get('max_attempts')}",
        f"• Created: {job.get('created_at')}",
        f"• Updated: {job.get('updated_at')}",
    ]
    if job.get("next_attempt_at") and job.get("status") == "pending":
        lines.append(f"• Next attempt: {job['next_attempt_at']}")
    if job.get("cancel_requested"):
        lines.append("• [yellow]Cancel requested[/yellow]")
    if job.get("error_message"):
        lines.append(f"• Error: [red]{job['error_message']}[/red]")

    border = STATUS_STYLES.get(job.get("status", ""), "white")
    return Panel("\n".join(lines), title=f"Job {job.get('id')}", border_style=border)


def create_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    """Create a formatted table for a job list"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Subject", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="center", style="yellow")
    table.add_column("Updated", justify="left", style="white")
    table.add_column("Error", justify="left", style="red")

    for job in jobs:
        error = job.get("error_message") or "—"
        table.add_row(
            str(job.get("id", ""))[:8],  # Short ID
            f"{job.get('subject_kind')}:{job.get('subject_id')}",
            styled_status(job.get("status", "")),
            f"{job.get('attempts')}/{job.get('max_attempts')}",
            str(job.get("updated_at", "")),
            error[:60],
        )

    return table


def create_health_table(endpoints: list[dict[str, Any]]) -> Table:
    """Create a formatted table of endpoint health"""
    table = Table(title="Endpoint Health", box=box.ROUNDED)

    table.add_column("Endpoint", justify="left", style="cyan")
    table.add_column("Health", justify="center")
    table.add_column("Success", justify="right")
    table.add_column("Executions", justify="right")
    table.add_column("Avg ms", justify="right")
    table.add_column("Score", justify="right", style="bold")

    for endpoint in endpoints:
        health = endpoint.get("health_status", "unknown")
        style = HEALTH_STYLES.get(health, "white")
        table.add_row(
            endpoint.get("endpoint_id", ""),
            f"[{style}]{health}[/{style}]",
            f"{endpoint.get('success_rate', 0):.1f}%",
            str(endpoint.get("total_executions", 0)),
            f"{endpoint.get('average_response_time_ms', 0):.0f}",
            f"{endpoint.get('performance_score', 0):.1f}",
        )

    return table


def create_distribution_table(distribution: list[dict[str, Any]]) -> Table:
    """Create a table of the response time distribution"""
    table = Table(title="Response Times", box=box.SIMPLE)

    table.add_column("Bucket", justify="left")
    table.add_column("Count", justify="right")
    table.add_column("Share", justify="right")

    for entry in distribution:
        table.add_row(
            entry["bucket"], str(entry["count"]), f"{entry['percentage']:.1f}%"
        )

    return table
