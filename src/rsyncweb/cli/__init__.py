"""rsync-web CLI.

Built with Typer; command logic lives in ``commands/`` and Rich
formatting in ``output.py``.

    rsync-web serve      # start the web server
    rsync-web history    # recent jobs from the history database
    rsync-web status     # is the synchronization tool installed?
"""

from __future__ import annotations

import typer

from rsyncweb import __version__

from .commands import history, serve, status
from .output import console

# =============================================================================
# Typer app definition
# =============================================================================

app = typer.Typer(
    name="rsync-web",
    help="Run and watch rsync jobs from the browser",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"rsync-web v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """rsync-web - run and watch rsync jobs from the browser."""


# =============================================================================
# Command registration
# =============================================================================

app.command()(serve)
app.command()(history)
app.command()(status)


__all__ = ["app"]
