"""``shipyard status | plans | cancel`` — inspect and cancel rollout plans.

Status output is a read-only projection over the state store and the
rollout ledger; every display re-reads persisted state.
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console

from shipyard.cli.context import ledger_option, open_controller, state_option
from shipyard.core.rollout_ledger import RolloutLedger
from shipyard.core.state_store import StateStore
from shipyard.monitor.projection import PlanProjection
from shipyard.monitor.renderer import PlanRenderer, plan_state_markup

console = Console()


def _projection(state_db: str, ledger_db: str) -> PlanProjection:
    return PlanProjection(StateStore(state_db), RolloutLedger(ledger_db))


def _plan_not_found(plan_id: str, projection: PlanProjection) -> None:
    console.print(f"[bold red]Plan not found:[/bold red] {plan_id}")
    plans = projection.plans()
    if plans:
        console.print("\n[bold]Recent plans:[/bold]")
        for plan in plans[:10]:
            console.print(f"  [cyan]{plan.plan_id}[/cyan]")
        if len(plans) > 10:
            console.print(f"  [dim]... and {len(plans) - 10} more[/dim]")
    raise typer.Exit(code=1)


def status_cmd(
    plan_id: str = typer.Argument(..., help="The rollout plan ID to show."),
    live: bool = typer.Option(
        False,
        "--live",
        "-L",
        help="Keep refreshing until the plan finishes (Ctrl+C to exit).",
    ),
    verify_chain: bool = typer.Option(
        True,
        "--verify-chain/--no-verify-chain",
        help="Verify the plan's ledger hash chain before displaying.",
    ),
    refresh_hz: float = typer.Option(2.0, "--refresh", "-r", help="Refresh rate in Hz for live mode."),
    state_db: str = state_option(),
    ledger_db: str = ledger_option(),
) -> None:
    """Show the steps, target states and ledger status of a plan."""
    projection = _projection(state_db, ledger_db)
    renderer = PlanRenderer(console=console)

    try:
        snapshot = projection.snapshot(plan_id, verify_chain=verify_chain)
    except KeyError:
        _plan_not_found(plan_id, projection)
        return

    if live and not snapshot.plan.is_terminal:
        renderer.render_live(plan_id, projection, refresh_hz=refresh_hz)
        return

    renderer.print_snapshot(snapshot)
    if verify_chain and not snapshot.chain_valid:
        console.print(f"[bold red]{snapshot.chain_error}[/bold red]")
        raise typer.Exit(code=1)


def plans_cmd(
    revision: str = typer.Option(None, "--revision", help="Only plans for this revision."),
    state_db: str = state_option(),
    ledger_db: str = ledger_option(),
) -> None:
    """List rollout plans, newest first."""
    plans = _projection(state_db, ledger_db).plans()
    if revision is not None:
        plans = [p for p in plans if p.revision_id == revision]
    if not plans:
        console.print("[dim]No rollout plans.[/dim]")
        return
    console.print(PlanRenderer(console=console).render_plan_list(plans))


def cancel_cmd(
    plan_id: str = typer.Argument(..., help="The rollout plan ID to cancel."),
    reason: str = typer.Option("cancelled by operator", "--reason", help="Recorded reason."),
    state_db: str = state_option(),
    ledger_db: str = ledger_option(),
) -> None:
    """Cancel a plan.

    A plan that has not started is aborted at once.  A running plan stops
    before its next step, also when another ``shipyard`` process drives it.
    """
    controller = open_controller(state_db, ledger_db)
    try:
        plan = asyncio.run(controller.cancel(plan_id, reason=reason))
    except KeyError:
        _plan_not_found(plan_id, PlanProjection(controller.store, controller.ledger))
        return
    console.print(f"Plan [bold]{plan.plan_id}[/bold] is {plan_state_markup(plan.state)}")
    if plan.is_terminal:
        return
    owner = controller.owners.live_owner(plan.plan_id)
    if owner is None:
        console.print(
            "[yellow]No live controller is driving this plan; "
            "run `shipyard recover` to close it.[/yellow]"
        )
        raise typer.Exit(code=1)
    console.print(
        f"Cancellation recorded; controller {owner} will stop the plan before its next step."
    )
