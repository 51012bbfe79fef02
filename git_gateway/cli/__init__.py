"""
Command Line Interface for the Git Gateway.
"""

import asyncio
from typing import Optional

import typer
import uvicorn
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import get_settings
from ..db.base import get_session_local, init_database
from ..db.services import CompensationService, RepositoryService, WebhookEventService
from ..logging_config import configure_logging
from ..repositories.manager import RepositoryManager
from ..transactions.compensation import CompensationManager
from ..webhooks.engine import WebhookEngine
from ..worker.loop import run_worker

app = typer.Typer(help="Git Gateway - HTTP access to bare Git repositories")
console = Console()


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override LOG_LEVEL"),
    log_format: Optional[str] = typer.Option(None, help="json or console"),
):
    """Configure logging for every command."""
    configure_logging(level=log_level, fmt=log_format or "console")


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, help="Port to run the API server on"),
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
    dev: bool = typer.Option(False, help="Run with auto-reload"),
):
    """Start the HTTP API."""
    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    rprint(Panel.fit("🚀 Starting Git Gateway", style="bold blue"))
    console.print(f"Serving on http://{host}:{port} (git root: {settings.git_root})")
    uvicorn.run(
        "git_gateway.main:app",
        host=host,
        port=port,
        reload=dev,
        workers=1 if dev else settings.api_workers,
    )


@app.command("init-db")
def init_db():
    """Create all database tables."""
    asyncio.run(init_database())
    console.print("✅ Database initialized")


@app.command()
def worker(
    poll_interval: Optional[float] = typer.Option(None, help="Seconds between idle polls"),
    batch_size: Optional[int] = typer.Option(None, help="Events processed per cycle"),
    compensations: bool = typer.Option(True, help="Execute pending compensations"),
):
    """Run the background worker until interrupted."""
    run_worker(poll_interval=poll_interval, batch_size=batch_size, run_compensations=compensations)


@app.command()
def reconcile(repair: bool = typer.Option(False, help="Re-create missing and remove orphan directories")):
    """Compare repository rows with the directories under the git root."""
    db = get_session_local()()
    try:
        report = RepositoryManager(db).reconcile(repair=repair)
    finally:
        db.close()

    table = Table(title="Reconciliation", show_header=True, header_style="bold magenta")
    table.add_column("Kind", style="cyan")
    table.add_column("Repository")
    table.add_column("Path")
    for item in report["missing_directories"]:
        table.add_row("missing directory", item["repository_id"], item["git_path"])
    for path in report["orphan_directories"]:
        table.add_row("orphan directory", "-", path)
    console.print(table)

    if not report["missing_directories"] and not report["orphan_directories"]:
        console.print("✅ Rows and directories agree")
    elif repair:
        console.print("🔧 Repaired")


@app.command("process-pending")
def process_pending(limit: Optional[int] = typer.Option(None, help="Max events to process")):
    """Process unprocessed webhook events once."""
    db = get_session_local()()
    try:
        outcomes = asyncio.run(WebhookEngine(db).process_pending(limit=limit))
    finally:
        db.close()

    table = Table(title="Processed events", show_header=True, header_style="bold magenta")
    table.add_column("Event", style="cyan")
    table.add_column("Processed")
    table.add_column("Triggers")
    table.add_column("Errors")
    for outcome in outcomes:
        table.add_row(
            outcome.event_id,
            "🟢" if outcome.processed else "🔴",
            str(len(outcome.matched_triggers)),
            "; ".join(outcome.errors),
        )
    console.print(table)


@app.command()
def compensations(
    execute: bool = typer.Option(False, help="Execute pending entries"),
    clear: bool = typer.Option(False, help="Delete executed entries"),
    status: Optional[str] = typer.Option(None, help="Filter by status"),
):
    """List, execute or clear compensation entries."""
    db = get_session_local()()
    try:
        manager = CompensationManager(db)
        if execute:
            summary = asyncio.run(manager.execute_all_pending())
            console.print(
                f"Executed {summary['executed']} of {summary['total']} pending entries "
                f"({summary['failed']} failed)"
            )
        if clear:
            console.print(f"Cleared {manager.clear_executed()} executed entries")

        table = Table(title="Compensations", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="cyan")
        table.add_column("Action")
        table.add_column("Resource")
        table.add_column("Status")
        table.add_column("Retries")
        table.add_column("Last error")
        for entry in CompensationService(db).list(status=status):
            table.add_row(
                str(entry.id),
                entry.action,
                str(entry.resource_id),
                entry.status,
                f"{entry.retry_count}/{entry.max_retries}",
                entry.last_error or "",
            )
        console.print(table)
    finally:
        db.close()


@app.command()
def stats(repository_id: Optional[str] = typer.Argument(None, help="Repository to inspect")):
    """Show repository and webhook statistics."""
    db = get_session_local()()
    try:
        table = Table(title="Git Gateway statistics", show_header=True, header_style="bold magenta")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        if repository_id:
            repository = RepositoryService(db).get(repository_id)
            table.add_row("Repository", f"{repository.name} ({repository.id})")
            for key, value in RepositoryManager(db).stats(repository.id).items():
                table.add_row(key, str(value))
        else:
            _, total = RepositoryService(db).list(page=1, page_size=1)
            table.add_row("repositories", str(total))

        webhook_stats = WebhookEventService(db).statistics(repository_id)
        for key in ("total_events", "processed_events", "failed_events", "pending_events"):
            table.add_row(key, str(webhook_stats[key]))
        table.add_row("success_rate", f"{webhook_stats['success_rate'] * 100:.1f}%")
        console.print(table)
    finally:
        db.close()


if __name__ == "__main__":
    app()
