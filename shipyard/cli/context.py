"""Shared option defaults and controller construction for CLI commands."""

from __future__ import annotations

from pathlib import Path

import typer

from shipyard.config import settings
from shipyard.core.controller import DeployController

STATE_OPTION_HELP = "Path to the state SQLite database."
LEDGER_OPTION_HELP = "Path to the rollout ledger SQLite database."


def state_option() -> str:
    return typer.Option(str(settings.state_path), "--state", "-s", help=STATE_OPTION_HELP)


def ledger_option() -> str:
    return typer.Option(str(settings.ledger_path), "--ledger", "-l", help=LEDGER_OPTION_HELP)


def open_controller(state_db: str, ledger_db: str, **overrides: object) -> DeployController:
    """Build a controller over the given databases.

    Extra keyword arguments override individual settings fields.
    """
    configured = settings.model_copy(
        update={"state_path": Path(state_db), "ledger_path": Path(ledger_db), **overrides}
    )
    return DeployController(configured)
