"""Main CLI application for MoneySync.

This module provides the unified entry point for MoneySync CLI operations,
organizing commands into groups for synchronization and background jobs.
"""

import logging
from typing import Annotated

import typer

from ..config import set_current_profile
from ..logging import setup_logging
from .commands import jobs, sync

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="moneysync",
    help="MoneySync: offline-first sync for personal finance data",
    add_completion=False,
    rich_markup_mode="rich",
    no_args_is_help=True,
)


@app.callback()
def main_callback(
    profile: Annotated[
        str,
        typer.Option(
            "--profile",
            "-p",
            help="User profile to use (e.g., alice, bob). Default: default",
            envvar="MONEYSYNC_PROFILE",
        ),
    ] = "default",
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable verbose debug logging",
        ),
    ] = False,
) -> None:
    """Global options for MoneySync CLI.

    Each profile has its own database (data/{profile}/moneysync.duckdb), its
    own logs and its own .env.{profile} file.

    Examples:
      moneysync --profile=alice sync run       # Sync Alice's device now
      moneysync jobs enqueue-sync --user u1    # Queue a background sync
      moneysync jobs work --until-idle         # Drain the job queue

    Can also be set via MONEYSYNC_PROFILE environment variable.
    """
    setup_logging(cli_mode=True, verbose=verbose)

    try:
        set_current_profile(profile)
    except ValueError as e:
        logger.error(str(e))
        raise typer.BadParameter(str(e)) from e

    logger.debug(f"👤 Using profile: {profile}")


app.add_typer(sync.app, name="sync", help="Run and inspect sync cycles")
app.add_typer(jobs.app, name="jobs", help="Operate the background job queue")


def main() -> None:
    """Entry point for the MoneySync CLI application."""
    app()


if __name__ == "__main__":
    main()
