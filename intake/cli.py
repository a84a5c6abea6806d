"""
CLI interface for the voice call intake pipeline.
Provides commands for running the webhook server, maintenance and reporting.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from intake.config import get_settings
from intake.logging_config import setup_logging

app = typer.Typer(
    name="intake",
    help="Voice-AI call event intake: webhook receiver and store maintenance",
    add_completion=False,
)
console = Console()


def _run(coro):
    """Helper to run async code from sync CLI."""
    return asyncio.run(coro)


@app.command()
def serve():
    """Run the webhook receiver server (for Retell callbacks)."""
    import uvicorn

    settings = get_settings()
    console.print(f"\n[green]Webhook server running on {settings.host}:{settings.port}[/green]")
    uvicorn.run(
        "intake.server:app",
        host=settings.host,
        port=settings.port,
        log_level="info",
    )


@app.command()
def sweep(
    older_than: Optional[int] = typer.Option(
        None, help="Minutes a call may stay active (default: STALE_CALL_MINUTES)"
    ),
):
    """Complete conversations stuck in 'active' whose call_ended never arrived."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        from intake.conversations import close_stale_conversations
        from intake.database import create_database

        db = create_database(settings)
        await db.connect()
        try:
            closed = await close_stale_conversations(db, older_than or settings.stale_call_minutes)
            console.print(f"\n[green]✓ Closed {closed} stale conversation(s)[/green]")
        finally:
            await db.close()

    _run(_do())


@app.command()
def replay(
    since: Optional[datetime] = typer.Option(None, help="Only replay events received at/after this time"),
    limit: int = typer.Option(1000, help="Maximum number of events to replay"),
):
    """Re-run stored webhook events through the pipeline (no new audit rows)."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        from intake.database import create_database
        from intake.pipeline import CallPipeline
        from intake.retell_client import RetellClient

        db = create_database(settings)
        await db.connect()
        retell = RetellClient(settings)
        try:
            pipeline = CallPipeline(settings, db, retell=retell)
            events = await db.list_webhook_events(since=since, limit=limit)
            processed = skipped = 0
            for event in events:
                if event.event_id == "invalid_json":
                    skipped += 1
                    continue
                result = await pipeline.process(event.payload)
                if result.get("processed"):
                    processed += 1
                else:
                    skipped += 1

            console.print("\n[green]✓ Replay complete[/green]")
            console.print(f"  Events read:  {len(events)}")
            console.print(f"  Processed:    {processed}")
            console.print(f"  Skipped:      {skipped}")
        finally:
            await retell.close()
            await db.close()

    _run(_do())


@app.command()
def status():
    """Show row counts for every pipeline table."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from intake.database import create_database

        db = create_database(settings)
        await db.connect()
        try:
            counts = await db.table_counts()
            by_status = await db.conversation_status_counts()
        finally:
            await db.close()

        table = Table(title="Intake Store")
        table.add_column("Table", style="cyan")
        table.add_column("Rows", style="green")
        for name, count in counts.items():
            table.add_row(name, str(count))
        console.print(table)

        if by_status:
            status_table = Table(title="Conversations by Call Status")
            status_table.add_column("Status", style="cyan")
            status_table.add_column("Count", style="green")
            for s, c in sorted(by_status.items()):
                status_table.add_row(s, str(c))
            console.print(status_table)

    _run(_do())


if __name__ == "__main__":
    app()
