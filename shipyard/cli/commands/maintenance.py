"""``shipyard recover | prune | artifacts | verify-ledger`` — housekeeping."""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from shipyard.cli.context import ledger_option, open_controller, state_option
from shipyard.core.artifact_catalog import ArtifactCatalog
from shipyard.core.errors import LedgerIntegrityError
from shipyard.core.rollout_ledger import RolloutLedger
from shipyard.core.state_store import StateStore
from shipyard.core.target_registry import TargetRegistry
from shipyard.monitor.renderer import PlanRenderer

console = Console()


def recover_cmd(
    state_db: str = state_option(),
    ledger_db: str = ledger_option(),
) -> None:
    """Mark plans left running by a previous controller as aborted_on_restart."""
    recovered = open_controller(state_db, ledger_db).recover()
    if not recovered:
        console.print("[dim]No interrupted plans.[/dim]")
        return
    for plan in recovered:
        console.print(f"[yellow]aborted_on_restart[/yellow] {plan.plan_id} ({plan.revision_id})")


def prune_cmd(
    everything: bool = typer.Option(
        False,
        "--all",
        help="Prune every unreferenced artifact, ignoring the retention window.",
    ),
    state_db: str = state_option(),
    ledger_db: str = ledger_option(),
) -> None:
    """Remove artifact records that no target is running."""
    removed = open_controller(state_db, ledger_db).prune_artifacts(
        everything_unreferenced=everything
    )
    if not removed:
        console.print("[dim]Nothing to prune.[/dim]")
        return
    for artifact in removed:
        console.print(f"pruned {artifact.short_id} ({artifact.revision_id}, {artifact.image_ref})")


def artifacts_cmd(state_db: str = state_option()) -> None:
    """List catalogued artifacts and which targets run them."""
    store = StateStore(state_db)
    artifacts = ArtifactCatalog(store).list()
    if not artifacts:
        console.print("[dim]No artifacts.[/dim]")
        return

    running: dict[str, list[str]] = {}
    for target in TargetRegistry(store).list():
        if target.current_artifact:
            running.setdefault(target.current_artifact, []).append(target.name)

    table = Table(title="Artifacts", header_style="bold cyan")
    table.add_column("Artifact", style="cyan")
    table.add_column("Revision")
    table.add_column("Image")
    table.add_column("Running On")
    table.add_column("Created")
    for a in artifacts:
        table.add_row(
            a.short_id,
            a.revision_id,
            a.image_ref,
            ", ".join(running.get(a.artifact_id, [])) or "[dim]-[/dim]",
            a.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


def verify_ledger_cmd(
    plan_id: str = typer.Option(None, "--plan", "-p", help="Verify only this plan's chain."),
    ledger_db: str = ledger_option(),
) -> None:
    """Verify the hash chain of every plan in the rollout ledger."""
    ledger = RolloutLedger(ledger_db)
    renderer = PlanRenderer(console=console)
    plan_ids = [plan_id] if plan_id else ledger.get_all_plan_ids()
    if not plan_ids:
        console.print("[dim]Ledger is empty.[/dim]")
        return

    broken = 0
    for pid in plan_ids:
        try:
            ledger.verify_chain(pid)
        except LedgerIntegrityError as exc:
            broken += 1
            renderer.print_chain_verification(pid, valid=False)
            console.print(f"  [dim]{exc}[/dim]")
        else:
            renderer.print_chain_verification(pid, valid=True)
    if broken:
        raise typer.Exit(code=1)
