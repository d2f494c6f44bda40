"""Server command for the rsync-web CLI."""

from __future__ import annotations

from pathlib import Path

import typer
import yaml
from pydantic import ValidationError as ConfigValidationError

from rsyncweb.config import load_config
from rsyncweb.core.logging import configure_logging

from ..output import console, create_server_panel


def serve(
    config_file: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML configuration file",
        envvar="RSYNC_WEB_CONFIG",
    ),
    host: str | None = typer.Option(None, "--host", help="Host to bind to"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on"),
    work_dir: Path | None = typer.Option(
        None,
        "--dir",
        "-d",
        help="Working directory for jobs and the file browser (defaults to current directory)",
    ),
    db_path: Path | None = typer.Option(None, "--db", help="SQLite history database"),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-L",
        help="Logging level (debug, info, warning, error)",
        envvar="RSYNC_WEB_LOG_LEVEL",
    ),
) -> None:
    """Start the rsync-web server.

    Examples:
        rsync-web serve                       # localhost:8000, current directory
        rsync-web serve --port 3000           # Custom port
        rsync-web serve --host 0.0.0.0        # Allow external connections
        rsync-web serve --dir /srv/backups    # Browse and run from /srv/backups
    """
    import uvicorn

    from rsyncweb.dashboard import create_app

    try:
        config = load_config(
            config_file,
            host=host,
            port=port,
            work_dir=work_dir,
            db_path=db_path,
            log_level=log_level.lower() if log_level else None,
        )
    except (ConfigValidationError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/red] invalid configuration: {e}")
        raise typer.Exit(1) from None

    configure_logging(
        level=config.log_level.upper(),
        format=config.log_format,
        file_path=config.log_file,
    )

    console.print(
        create_server_panel(config.host, config.port, str(config.work_dir), str(config.db_path))
    )

    try:
        uvicorn.run(
            create_app(config),
            host=config.host,
            port=config.port,
            log_level=config.log_level,
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped.[/yellow]")
