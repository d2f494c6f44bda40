"""History and status commands for the rsync-web CLI.

Both read local state directly (the history database and the
executable on PATH); neither needs a running server.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from rsyncweb.core.constants import DEFAULT_EXECUTABLE
from rsyncweb.jobs.history import HistoryStore
from rsyncweb.jobs.models import JobRecord, JobStatus
from rsyncweb.jobs.probe import probe_executable

from ..output import console, create_history_table


async def _load_history(
    db_path: Path, limit: int, status: JobStatus | None
) -> tuple[list[JobRecord], int]:
    async with HistoryStore(db_path) as store:
        return await store.list_jobs(limit=limit, status=status), await store.count(status)


def history(
    db_path: Path = typer.Option(
        Path("rsync-web.db"),
        "--db",
        help="SQLite history database",
    ),
    limit: int = typer.Option(20, "--limit", "-n", min=1, max=1000, help="Rows to show"),
    status: str | None = typer.Option(
        None,
        "--status",
        "-s",
        help="Only show jobs with this status (pending, running, completed, failed, cancelled)",
    ),
) -> None:
    """Show recent jobs from the history database.

    Examples:
        rsync-web history
        rsync-web history --status failed --limit 5
    """
    status_filter: JobStatus | None = None
    if status is not None:
        try:
            status_filter = JobStatus(status.lower())
        except ValueError:
            console.print(f"[red]Error:[/red] unknown status: {status}")
            raise typer.Exit(1) from None

    if not db_path.exists():
        console.print(f"[yellow]No history database at {db_path}[/yellow]")
        raise typer.Exit(1)

    records, total = asyncio.run(_load_history(db_path, limit, status_filter))
    if not records:
        console.print("[dim]No jobs found.[/dim]")
        return
    console.print(create_history_table(records, total))


def status(
    executable: str = typer.Option(
        DEFAULT_EXECUTABLE,
        "--executable",
        "-e",
        help="Synchronization tool to probe",
    ),
) -> None:
    """Check that the synchronization tool is installed.

    Exits with status 1 when it is not available.
    """
    result = asyncio.run(probe_executable(executable))
    if not result.available:
        console.print(f"[red]✗[/red] {executable} not available")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] {result.path}")
    if result.version:
        console.print(f"  [dim]{result.version}[/dim]")
