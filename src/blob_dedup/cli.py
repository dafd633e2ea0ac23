"""CLI for blob-dedup.

Commands:
    setup                      - Create database tables
    report-duplicates          - List duplicate blob groups and wasted storage
    cleanup-all                - Merge all duplicate blobs (reconciliation)
    backfill-reference-count   - Recompute reference counts from attachments
    purge-orphans              - Purge unreferenced blobs past the grace period
    stats                      - Blob / attachment totals
    show-blob <id>             - Show blob details
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Annotated
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import func, select

from blob_dedup.config import settings
from blob_dedup.db import async_session_factory, init_db
from blob_dedup.models import Attachment, Blob
from blob_dedup.policy import policy
from blob_dedup.services import (
    ReconciliationJob,
    backfill_reference_counts,
    purge_orphans,
    report_duplicates,
)
from blob_dedup.storage import build_registry

app = typer.Typer(
    name="blob-dedup",
    help="blob-dedup: content-level deduplication for stored blobs",
    no_args_is_help=True,
)
console = Console()


def run_async(coro):
    """Run an async coroutine in sync context."""
    return asyncio.run(coro)


def format_bytes(size: int) -> str:
    """Human-readable byte size (1024-based)."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.2f} {unit}"
        value /= 1024
    return f"{size} B"


@app.callback()
def configure_logging(
    log_level: Annotated[
        str | None, typer.Option("--log-level", help="Logging level (default from settings)")
    ] = None,
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("setup")
def setup():
    """Create database tables."""
    async def _setup():
        await init_db()

    run_async(_setup())
    console.print("[green]✓[/green] Database tables created")


@app.command("report-duplicates")
def report_duplicates_command():
    """Report duplicate blob groups without changing anything."""
    async def _report():
        await init_db()
        async with async_session_factory() as session:
            return await report_duplicates(session)

    console.print("Scanning for duplicate blobs...")
    report = run_async(_report())

    if not report.groups:
        console.print("[green]No duplicate blobs found![/green]")
        return

    table = Table(title="Duplicate Blob Groups")
    table.add_column("Checksum", no_wrap=True)
    table.add_column("Service")
    table.add_column("Filename")
    table.add_column("Blobs", justify="right")
    table.add_column("Keeper")
    table.add_column("Duplicates")
    table.add_column("Wasted", justify="right")

    for group in report.groups:
        table.add_row(
            group.checksum,
            group.service_name,
            group.filename,
            str(group.blob_count),
            str(group.keeper_id),
            "\n".join(str(blob_id) for blob_id in group.duplicate_ids),
            format_bytes(group.wasted_bytes),
        )
    console.print(table)

    console.print(f"\nTotal duplicate groups: {len(report.groups)}")
    console.print(f"Total duplicate blobs: {report.total_duplicate_blobs}")
    console.print(f"Wasted storage: {format_bytes(report.wasted_bytes)}")
    console.print("\n[dim]Run 'blob-dedup cleanup-all' to merge them.[/dim]")


@app.command("cleanup-all")
def cleanup_all():
    """Merge every duplicate blob into the oldest of its group."""
    async def _cleanup():
        await init_db()
        return await ReconciliationJob(async_session_factory, policy=policy).run()

    console.print("Running sanity check...")
    result = run_async(_cleanup())

    console.print(f"Duplicate groups found: {result.groups_found}")
    console.print(f"Blobs merged: {result.duplicates_merged}")
    console.print(f"Attachments moved: {result.attachments_moved}")
    if result.duplicates_failed:
        console.print(
            f"[yellow]Merges failed: {result.duplicates_failed} (see log; rerun to retry)[/yellow]"
        )
    console.print("[green]✓[/green] Cleanup complete")


@app.command("backfill-reference-count")
def backfill_reference_count(
    batch_size: Annotated[int, typer.Option(help="Blobs per UPDATE batch")] = 100,
):
    """Recompute reference_count for every blob from its attachments."""
    if batch_size <= 0:
        console.print("[red]Error:[/red] --batch-size must be positive")
        raise typer.Exit(1)

    def _progress(processed: int, total: int) -> None:
        console.print(f"Processed {processed}/{total} blobs")

    async def _backfill():
        await init_db()
        async with async_session_factory() as session:
            result = await backfill_reference_counts(
                session, batch_size=batch_size, progress=_progress
            )
            await session.commit()
            return result

    console.print("Backfilling reference_count...")
    result = run_async(_backfill())

    console.print("\nBackfill complete!")
    console.print(f"Total blobs: {result.total}")
    console.print(f"Updated: {result.updated}")


@app.command("purge-orphans")
def purge_orphans_command(
    older_than_hours: Annotated[
        int | None,
        typer.Option(help="Only purge blobs older than this (default from settings)"),
    ] = None,
):
    """Purge blobs that no attachment references."""
    hours = settings.orphan_grace_period_hours if older_than_hours is None else older_than_hours
    if hours < 0:
        console.print("[red]Error:[/red] --older-than-hours must not be negative")
        raise typer.Exit(1)

    async def _purge():
        await init_db()
        async with async_session_factory() as session:
            purged = await purge_orphans(
                session, policy, build_registry(settings), older_than=timedelta(hours=hours)
            )
            await session.commit()
            return purged

    purged = run_async(_purge())
    console.print(f"[green]✓[/green] Purged {purged} orphaned blob(s)")


@app.command()
def stats():
    """Show blob and attachment totals."""
    async def _stats():
        await init_db()
        async with async_session_factory() as session:
            blob_count = (await session.execute(select(func.count()).select_from(Blob))).scalar()
            attachment_count = (
                await session.execute(select(func.count()).select_from(Attachment))
            ).scalar()
            stored_bytes = (
                await session.execute(select(func.coalesce(func.sum(Blob.byte_size), 0)))
            ).scalar()
            logical_bytes = (
                await session.execute(
                    select(func.coalesce(func.sum(Blob.byte_size * Blob.reference_count), 0))
                )
            ).scalar()
            report = await report_duplicates(session)
            return blob_count, attachment_count, stored_bytes, logical_bytes, report

    blob_count, attachment_count, stored_bytes, logical_bytes, report = run_async(_stats())

    table = Table(title="blob-dedup Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Blobs", str(blob_count))
    table.add_row("Attachments", str(attachment_count))
    table.add_row("Stored", format_bytes(stored_bytes or 0))
    table.add_row("Referenced (logical)", format_bytes(logical_bytes or 0))
    saved = max((logical_bytes or 0) - (stored_bytes or 0), 0)
    table.add_row("Saved by dedup", format_bytes(saved))
    table.add_row("Duplicate groups", str(len(report.groups)))
    table.add_row("Wasted by duplicates", format_bytes(report.wasted_bytes))
    console.print(table)


@app.command("show-blob")
def show_blob(
    blob_id: Annotated[str, typer.Argument(help="Blob ID (UUID)")],
):
    """Show details for a specific blob."""
    try:
        bid = UUID(blob_id)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid UUID: {blob_id}")
        raise typer.Exit(1) from None

    async def _show():
        await init_db()
        async with async_session_factory() as session:
            blob = await session.get(Blob, bid)
            if blob is None:
                return None, []
            stmt = (
                select(Attachment)
                .where(Attachment.blob_id == bid)
                .order_by(Attachment.created_at)
            )
            attachments = (await session.execute(stmt)).scalars().all()
            return blob, attachments

    blob, attachments = run_async(_show())
    if blob is None:
        console.print(f"[red]Error:[/red] Blob not found: {blob_id}")
        raise typer.Exit(1)

    panel_content = []
    panel_content.append(f"[bold]ID:[/bold] {blob.blob_id}")
    panel_content.append(f"[bold]Key:[/bold] {blob.key}")
    panel_content.append(f"[bold]Filename:[/bold] {blob.filename}")
    panel_content.append(f"[bold]Content Type:[/bold] {blob.content_type or '-'}")
    panel_content.append(f"[bold]Service:[/bold] {blob.service_name}")
    panel_content.append(f"[bold]Size:[/bold] {format_bytes(blob.byte_size)}")
    panel_content.append(f"[bold]Checksum:[/bold] {blob.checksum or '-'}")
    panel_content.append(f"[bold]Reference Count:[/bold] {blob.reference_count}")
    panel_content.append(f"[bold]Attachments:[/bold] {len(attachments)}")
    panel_content.append(f"[bold]Created:[/bold] {blob.created_at}")

    if len(attachments) != blob.reference_count:
        panel_content.append(
            "[yellow]reference_count drift: run backfill-reference-count[/yellow]"
        )

    console.print(Panel("\n".join(panel_content), title="Blob Details"))

    if attachments:
        table = Table(title="Attachments")
        table.add_column("Owner")
        table.add_column("Slot")
        table.add_column("Attached")
        for attachment in attachments:
            table.add_row(
                f"{attachment.owner_type}#{attachment.owner_id}",
                attachment.name,
                str(attachment.created_at),
            )
        console.print(table)


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
