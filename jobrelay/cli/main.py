"""Job Relay CLI - Main Entry Point"""

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from jobrelay.cli.client import JobRelayClient, JobRelayError
from jobrelay.cli.formatting import (
    create_distribution_table,
    create_health_table,
    create_job_panel,
    create_jobs_table,
    print_error,
    print_info,
    print_success,
    print_warning,
    styled_status,
)

console = Console()

# Create main Typer app
app = typer.Typer(
    name="jobrelay",
    help="Job Relay - retryable extraction jobs and webhook deliveries",
    rich_markup_mode="rich",
)

state = {"api_url": "http://localhost:8000"}


@app.callback()
def main(
    api_url: str = typer.Option(
        "http://localhost:8000",
        "--api-url",
        envvar="JOBRELAY_API_URL",
        help="Base URL of the Job Relay API",
    ),
):
    state["api_url"] = api_url


def _client() -> JobRelayClient:
    return JobRelayClient(state["api_url"])


def _load_payload(payload: str | None, payload_file: Path | None) -> dict:
    if payload_file is not None:
        return json.loads(payload_file.read_text())
    if payload:
        return json.loads(payload)
    return {}


@app.command()
def status():
    """📊 Check API, database and dispatcher status"""
    base_url = state["api_url"]
    print_info(f"Checking connection to: {base_url}")

    try:
        with _client() as client:
            health = client.health_check()
    except JobRelayError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the Job Relay API is running at:\n"
                f"[blue]{base_url}[/blue]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    database = health.get("database") or {}
    dispatcher = health.get("dispatcher") or {}
    console.print(
        Panel(
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', '?')}[/yellow]\n"
            f"• Database: {'connected' if database.get('connected') else 'down'}\n"
            f"• Dispatcher: {dispatcher.get('state', 'unknown')}"
            f" (queue depth {dispatcher.get('queue_depth', 0)},"
            f" stale {dispatcher.get('stale_jobs_count', 0)})",
            title="System Status",
            border_style="green" if health.get("ok") else "red",
        )
    )


@app.command()
def enqueue(
    subject_kind: str = typer.Argument(
        ..., help="content_type, content_idea or webhook"
    ),
    subject_id: str = typer.Argument(..., help="Subject identifier"),
    organization_id: str = typer.Option(..., "--org", "-o", help="Organization"),
    payload: str | None = typer.Option(None, "--payload", "-p", help="Payload JSON"),
    payload_file: Path | None = typer.Option(
        None, "--payload-file", "-f", exists=True, help="Read payload JSON from file"
    ),
    reject: bool = typer.Option(
        False, "--reject", help="Fail instead of reusing an active job"
    ),
):
    """➕ Enqueue a job for a subject"""
    try:
        body = _load_payload(payload, payload_file)
    except json.JSONDecodeError as e:
        print_error(f"Invalid payload JSON: {e}")
        raise typer.Exit(1) from None

    try:
        with _client() as client:
            result = client.enqueue(
                subject_kind,
                subject_id,
                organization_id,
                body,
                on_conflict="reject" if reject else None,
            )
    except JobRelayError as e:
        print_error(f"Failed to enqueue job: {e}")
        raise typer.Exit(1) from None

    if result.get("deduplicated"):
        print_warning(f"Reused active job {result['job_id']} ({result['status']})")
    else:
        print_success(f"Enqueued job {result['job_id']}")


@app.command()
def job(job_id: str = typer.Argument(..., help="Job ID")):
    """🔍 Show one job"""
    try:
        with _client() as client:
            console.print(create_job_panel(client.get_job(job_id)))
    except JobRelayError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None


@app.command("jobs")
def list_jobs(
    organization_id: str | None = typer.Option(None, "--org", "-o"),
    status_filter: str | None = typer.Option(None, "--status", "-s"),
    limit: int = typer.Option(20, "--limit", "-l"),
):
    """📋 List recent jobs"""
    try:
        with _client() as client:
            result = client.list_jobs(organization_id, status_filter, limit)
            stats = client.get_stats(organization_id)
    except JobRelayError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None

    console.print(create_jobs_table(result.get("jobs", [])))
    by_status = ", ".join(
        f"{styled_status(name)} {count}"
        for name, count in stats.get("by_status", {}).items()
    )
    print_info(
        f"{result.get('total', 0)} jobs; queue depth {stats.get('queue_depth', 0)}"
        f"; {by_status or 'no jobs'}"
    )


@app.command()
def dispatch(
    subject_id: str = typer.Argument(..., help="Subject identifier"),
    subject_kind: str | None = typer.Option(None, "--kind", "-k"),
):
    """⚡ Retry now: dispatch the subject's pending job immediately"""
    try:
        with _client() as client:
            report = client.dispatch_subject(subject_id, subject_kind)
    except JobRelayError as e:
        print_error(f"Failed to dispatch: {e}")
        raise typer.Exit(1) from None

    if report.get("skipped"):
        print_warning("Dispatcher busy, the job will run on the next cycle")
    elif report.get("claimed"):
        print_success(
            f"Claimed {report['claimed']}: {report['completed']} completed,"
            f" {report['retried']} retried, {report['failed']} failed"
        )
    else:
        print_info("Nothing was claimable")


@app.command()
def retry(job_id: str = typer.Argument(..., help="Failed job ID")):
    """🔁 Enqueue a fresh job for a failed job"""
    try:
        with _client() as client:
            result = client.retry_job(job_id)
    except JobRelayError as e:
        print_error(f"Failed to retry job: {e}")
        raise typer.Exit(1) from None
    print_success(f"Retry enqueued as job {result['job_id']}")


@app.command()
def cancel(job_id: str = typer.Argument(..., help="Job ID")):
    """🛑 Request cancellation of an active job"""
    try:
        with _client() as client:
            snapshot = client.cancel_job(job_id)
    except JobRelayError as e:
        print_error(f"Failed to cancel job: {e}")
        raise typer.Exit(1) from None
    print_success(f"Cancel requested for job {snapshot['id']} ({snapshot['status']})")


@app.command()
def watch(
    subject_id: str = typer.Argument(..., help="Subject identifier"),
    organization_id: str | None = typer.Option(None, "--org", "-o"),
    timeout: float = typer.Option(300.0, "--timeout", "-t", help="Seconds to wait"),
    interval: float = typer.Option(4.0, "--interval", "-i", help="Poll interval"),
):
    """👀 Follow a subject's job until it completes or fails"""
    from jobrelay.v1.core.exceptions import JobFailedError
    from jobrelay.v1.realtime.reconciler import HttpStatusSource, Reconciler

    def _show_view(view) -> None:
        if view.snapshot is None:
            return
        console.print(
            f"{subject_id}: {styled_status(view.snapshot.status.value)}"
            f" (attempt {view.snapshot.attempts}/{view.snapshot.max_attempts})"
        )

    async def _watch():
        source = HttpStatusSource(state["api_url"])
        reconciler = Reconciler(source, poll_interval_s=interval)
        reconciler.add_listener(_show_view)
        try:
            return await reconciler.await_result(subject_id, organization_id, timeout)
        finally:
            await source.close()

    try:
        snapshot = asyncio.run(_watch())
    except JobFailedError as e:
        print_error(f"Job failed: {e.message}")
        raise typer.Exit(1) from None
    except TimeoutError:
        print_warning(f"No terminal status within {timeout:.0f}s")
        raise typer.Exit(2) from None

    print_success(f"Job {snapshot.id} completed after {snapshot.attempts} attempt(s)")


@app.command()
def metrics(
    endpoint_id: str | None = typer.Argument(None, help="Endpoint to detail"),
    window_minutes: int | None = typer.Option(None, "--window", "-w"),
):
    """📈 Show endpoint health and response time metrics"""
    try:
        with _client() as client:
            if endpoint_id is None:
                result = client.list_endpoint_health()
                console.print(create_health_table(result.get("endpoints", [])))
                return

            result = client.get_endpoint_metrics(endpoint_id, window_minutes)
    except JobRelayError as e:
        print_error(f"Failed to get metrics: {e}")
        raise typer.Exit(1) from None

    console.print(create_health_table([result["health"]]))
    window = result["metrics"]
    label = f"last {window_minutes} min" if window_minutes else "all time"
    print_info(
        f"{label}: {window['success_rate']:.1f}% success over"
        f" {window['total_executions']} executions, {window['health_status']}"
    )
    console.print(create_distribution_table(window["distribution"]))


@app.command()
def worker():
    """⚙️ Run a standalone dispatcher process"""
    from jobrelay.config.logging import setup_logging
    from jobrelay.config.settings import settings
    from jobrelay.infra.database import Database
    from jobrelay.v1.core.registries import ExecutorRegistry
    from jobrelay.v1.jobs.dispatcher import Dispatcher
    from jobrelay.v1.jobs.executor import register_executors
    from jobrelay.v1.jobs.store import JobStore
    from jobrelay.v1.metrics.service import HealthAggregator

    setup_logging(settings)

    async def _run():
        database = Database(settings)
        # Insert events come from other processes, so polling drives this worker
        dispatcher = Dispatcher(
            settings,
            database.SessionLocal,
            JobStore(),
            register_executors(settings, ExecutorRegistry()),
            HealthAggregator(),
        )
        try:
            await dispatcher.serve()
        finally:
            await database.close()

    print_info("Starting dispatcher worker (Ctrl+C to stop)")
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        print_info("Worker stopped")


@app.command()
def purge(
    days: int | None = typer.Option(
        None, "--days", "-d", help="Retention in days (defaults to settings)"
    ),
):
    """🧹 Delete terminal jobs older than the retention period"""
    from jobrelay.config.settings import settings
    from jobrelay.infra.database import Database
    from jobrelay.v1.jobs.service import JobService
    from jobrelay.v1.jobs.store import JobStore

    if not (days or settings.job_retention_days):
        print_warning("No retention configured; pass --days or set JOB_RETENTION_DAYS")
        raise typer.Exit(1)

    async def _purge() -> int:
        database = Database(settings)
        try:
            async with database.SessionLocal() as session:
                service = JobService(settings, JobStore())
                return await service.purge_terminal_jobs(session, days)
        finally:
            await database.close()

    deleted = asyncio.run(_purge())
    print_success(f"Purged {deleted} terminal job(s)")


@app.command()
def version():
    """📎 Show version information"""
    from jobrelay import __version__

    console.print(
        Panel(
            f"[bold cyan]Job Relay[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]",
            title="Version Info",
            border_style="cyan",
        )
    )


if __name__ == "__main__":
    app()
