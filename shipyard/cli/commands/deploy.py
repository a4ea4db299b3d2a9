"""``shipyard deploy REVISION SOURCE`` — build a revision and roll it out.

Runs the same path as a push notification: the event goes through intake,
the source tree is built into an artifact, and the resulting plan is
driven to a terminal state in this process.  Plans left running by an
earlier controller process are marked aborted first.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console

from shipyard.cli.context import ledger_option, open_controller, state_option
from shipyard.models.events import PushEvent
from shipyard.models.rollout import PlanState, RolloutMode
from shipyard.monitor.projection import PlanProjection
from shipyard.monitor.renderer import PlanRenderer

console = Console()

_SUCCESS_STATES = {PlanState.SUCCEEDED}


def deploy_cmd(
    revision: str = typer.Argument(..., help="Revision identifier, e.g. a commit hash."),
    source: Path = typer.Argument(..., help="Path to the checked-out source tree."),
    targets: list[str] = typer.Option(
        None,
        "--target",
        "-T",
        help="Deploy to this target (repeatable). Defaults to every non-draining target.",
    ),
    mode: str = typer.Option(None, "--mode", "-m", help="Rollout mode: serial or parallel."),
    max_parallel: int = typer.Option(None, "--max-parallel", "-n", help="Parallel bound."),
    no_rollback: bool = typer.Option(
        False, "--no-rollback", help="Leave failed targets as they are."
    ),
    author: str = typer.Option("", "--author", help="Revision author."),
    message: str = typer.Option("", "--message", help="Revision message."),
    state_db: str = state_option(),
    ledger_db: str = ledger_option(),
) -> None:
    """Build REVISION from SOURCE and roll it out.

    Exits non-zero unless the plan ends [green]succeeded[/green].
    """
    if not source.is_dir():
        console.print(f"[bold red]Source tree not found:[/bold red] {source}")
        raise typer.Exit(code=1)

    overrides: dict[str, object] = {}
    if mode is not None:
        try:
            overrides["rollout_mode"] = RolloutMode(mode).value
        except ValueError:
            console.print(f"[bold red]Unknown rollout mode:[/bold red] {mode}")
            raise typer.Exit(code=2)
    if max_parallel is not None:
        overrides["max_parallel"] = max_parallel
    if no_rollback:
        overrides["auto_rollback"] = False

    controller = open_controller(state_db, ledger_db, **overrides)
    controller.recover()
    if targets:
        controller.intake.target_names = list(targets)

    event = PushEvent(
        revision_id=revision,
        source_ref=str(source.resolve()),
        author=author,
        message=message,
    )
    plan = asyncio.run(controller.deploy(event))

    if plan is None:
        console.print(
            f"[bold red]No rollout for revision {revision}.[/bold red] "
            "[dim]See `shipyard verify-ledger --plan intake` for the intake journal.[/dim]"
        )
        raise typer.Exit(code=1)

    projection = PlanProjection(controller.store, controller.ledger)
    PlanRenderer(console=console).print_snapshot(projection.snapshot(plan.plan_id))
    console.print(f"[bold]{plan.plan_id}[/bold]")
    if plan.state not in _SUCCESS_STATES:
        raise typer.Exit(code=1)
