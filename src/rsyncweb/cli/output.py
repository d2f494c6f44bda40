"""Rich output formatting for the rsync-web CLI.

Centralizes the console, status colours and table/panel builders so
every command renders jobs the same way.
"""

from __future__ import annotations

from datetime import UTC, datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from rsyncweb.jobs.models import JobRecord, JobStatus

# =============================================================================
# Shared console instance
# =============================================================================

console = Console()


# =============================================================================
# Color schemes for status values
# =============================================================================


class StatusColors:
    """Color mappings for job status values."""

    JOB_STATUS: dict[JobStatus, str] = {
        JobStatus.PENDING: "yellow",
        JobStatus.RUNNING: "blue",
        JobStatus.COMPLETED: "green",
        JobStatus.FAILED: "red",
        JobStatus.CANCELLED: "dim",
    }

    @classmethod
    def get_job_color(cls, status: JobStatus) -> str:
        """Get color for a job status value."""
        return cls.JOB_STATUS.get(status, "white")


# =============================================================================
# Formatting
# =============================================================================


def format_duration(seconds: float | None) -> str:
    """Format a duration in seconds to human-readable string.

    Returns:
        Human-readable duration string (e.g., "5.2s", "3m 12s", "1h 30m").
    """
    if seconds is None:
        return "N/A"

    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def format_timestamp(ts: float | None) -> str:
    """Format an epoch timestamp as UTC, or "-" if None."""
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, UTC).strftime("%Y-%m-%d %H:%M:%S UTC")


def format_status(status: JobStatus) -> str:
    color = StatusColors.get_job_color(status)
    return f"[{color}]{status.value}[/{color}]"


# =============================================================================
# Tables and panels
# =============================================================================


def create_history_table(records: list[JobRecord], total: int) -> Table:
    """Build a styled table of job records, most recent first."""
    table = Table(title=f"rsync-web History ({len(records)} of {total})")
    table.add_column("ID", style="cyan", no_wrap=True, justify="right")
    table.add_column("Status", style="bold")
    table.add_column("Command", overflow="fold")
    table.add_column("Created", style="dim")
    table.add_column("Duration", style="dim", justify="right")
    table.add_column("Exit", justify="right")

    for record in records:
        duration = None
        if record.started_at is not None and record.ended_at is not None:
            duration = record.ended_at - record.started_at
        table.add_row(
            str(record.id),
            format_status(record.status),
            record.full_command,
            format_timestamp(record.created_at),
            format_duration(duration),
            "-" if record.exit_code is None else str(record.exit_code),
        )
    return table


def create_server_panel(host: str, port: int, work_dir: str, db_path: str) -> Panel:
    """Startup banner for the serve command."""
    return Panel(
        f"[bold]rsync-web[/bold]\n\n"
        f"API: http://{host}:{port}\n"
        f"Docs: http://{host}:{port}/docs\n"
        f"Working dir: {work_dir}\n"
        f"History: {db_path}\n\n"
        f"[dim]Press Ctrl+C to stop[/dim]",
        title="Starting Server",
    )
