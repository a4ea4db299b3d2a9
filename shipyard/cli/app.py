"""Main Typer application — imports and registers all CLI commands.

Entry point: ``shipyard`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from shipyard.cli.commands.deploy import deploy_cmd
from shipyard.cli.commands.maintenance import (
    artifacts_cmd,
    prune_cmd,
    recover_cmd,
    verify_ledger_cmd,
)
from shipyard.cli.commands.status import cancel_cmd, plans_cmd, status_cmd
from shipyard.cli.commands.targets import targets_app
from shipyard.config import settings

app = typer.Typer(
    name="shipyard",
    help="Shipyard: build pushed revisions and roll them out to Docker hosts.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def configure(
    log_level: str = typer.Option(
        settings.log_level,
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    """Shipyard deployment controller."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


# Register subcommands
app.add_typer(targets_app, name="targets", help="Manage deploy targets.")
app.command(name="deploy", help="Build a revision and roll it out.")(deploy_cmd)
app.command(name="plans", help="List rollout plans.")(plans_cmd)
app.command(name="status", help="Show a rollout plan.")(status_cmd)
app.command(name="cancel", help="Cancel a rollout plan.")(cancel_cmd)
app.command(name="artifacts", help="List built artifacts.")(artifacts_cmd)
app.command(name="prune", help="Garbage-collect unreferenced artifacts.")(prune_cmd)
app.command(name="recover", help="Abort plans interrupted by a restart.")(recover_cmd)
app.command(name="verify-ledger", help="Verify rollout ledger hash chains.")(verify_ledger_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
